from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from callmonitor.domain.analysis import CallAnalysis, ErrorAnalysis
from callmonitor.domain.models import Job, JobStatus


class JobSummary(BaseModel):
    id: str
    name: str
    status: JobStatus
    mime_type: str
    attempts: int = 0
    overall_score: Optional[float] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobSummary":
        return cls(
            id=job.id,
            name=job.name,
            status=job.status,
            mime_type=job.source.mime_type,
            attempts=job.attempts,
            overall_score=job.result.overallScore if job.result else None,
            failure_reason=job.failure_reason,
            created_at=job.created_at,
        )


class JobDetail(JobSummary):
    result: Optional[CallAnalysis] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobDetail":
        return cls(**JobSummary.from_job(job).model_dump(), result=job.result)


class JobListResponse(BaseModel):
    total: int
    completed: int
    jobs: List[JobSummary]


class JobsCreatedResponse(BaseModel):
    jobs: List[JobSummary]
    skipped: List[str] = []


class FlaggedLine(BaseModel):
    index: int
    speaker: str
    role: str
    text: str
    start_time: float
    timestamp: str
    error: ErrorAnalysis
