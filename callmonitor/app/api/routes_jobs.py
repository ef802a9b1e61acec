import logging
import os
from typing import List, Optional

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import Response

from callmonitor.app.schemas.jobs import (
    FlaggedLine,
    JobDetail,
    JobListResponse,
    JobsCreatedResponse,
    JobSummary,
)
from callmonitor.domain.analysis import format_time
from callmonitor.domain.models import JobStatus
from callmonitor.domain.services import job_service
from callmonitor.infrastructure.persistence.in_memory_repo import (
    InvalidTransitionError,
    JobLimitExceededError,
)

logger = logging.getLogger(__name__)

# Optional max upload size per file in MB (0 = no limit). Set MAX_UPLOAD_MB in env to cap size.
MAX_UPLOAD_MB = int(os.environ.get("MAX_UPLOAD_MB", "0"))  # 0 means no limit
MAX_UPLOAD_BYTES = MAX_UPLOAD_MB * 1024 * 1024 if MAX_UPLOAD_MB else 0
CHUNK_SIZE = 1024 * 1024  # 1 MB per read

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


async def _read_upload(file: UploadFile) -> bytes:
    size = getattr(file, "size", None)
    if MAX_UPLOAD_BYTES and size is not None and size > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File {file.filename} is too large. Maximum size is {MAX_UPLOAD_MB} MB.",
        )

    data = bytearray()
    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break
        data.extend(chunk)
        if MAX_UPLOAD_BYTES and len(data) > MAX_UPLOAD_BYTES:
            raise HTTPException(
                status_code=413,
                detail=f"File {file.filename} is too large. Maximum size is {MAX_UPLOAD_MB} MB.",
            )

    if not data:
        raise HTTPException(status_code=400, detail=f"Uploaded file {file.filename} is empty")
    return bytes(data)


def _get_or_404(job_id: str):
    job = job_service.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("", response_model=JobsCreatedResponse, status_code=202)
async def upload_recordings(files: List[UploadFile] = File(...)):
    """
    Queue a batch of call recordings for analysis.
    Non-audio files are skipped; the whole batch is refused if it would push
    the total number of jobs past the limit.
    """
    accepted = []
    skipped = []
    for file in files:
        if file.filename and job_service.is_audio_file(file.filename, file.content_type):
            accepted.append(file)
        else:
            skipped.append(file.filename or "")

    if not accepted:
        raise HTTPException(status_code=400, detail="No audio files uploaded")

    batch = []
    for file in accepted:
        data = await _read_upload(file)
        mime_type = job_service.resolve_mime_type(file.filename, file.content_type)
        batch.append((file.filename, data, mime_type))

    try:
        jobs = job_service.submit_files(batch)
    except JobLimitExceededError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    if skipped:
        logger.info("Skipped %d non-audio file(s): %s", len(skipped), ", ".join(skipped))

    return JobsCreatedResponse(
        jobs=[JobSummary.from_job(job) for job in jobs],
        skipped=skipped,
    )


@router.get("", response_model=JobListResponse)
async def list_jobs(q: Optional[str] = None):
    jobs = job_service.list_jobs(q)
    return JobListResponse(
        total=job_service.count_jobs(),
        completed=job_service.count_jobs(JobStatus.COMPLETED),
        jobs=[JobSummary.from_job(job) for job in jobs],
    )


@router.get("/{job_id}", response_model=JobDetail)
async def get_job_status(job_id: str):
    return JobDetail.from_job(_get_or_404(job_id))


@router.get("/{job_id}/audio")
async def get_job_audio(job_id: str):
    job = _get_or_404(job_id)
    return Response(content=job.source.data, media_type=job.source.mime_type)


@router.get("/{job_id}/errors", response_model=list[FlaggedLine])
async def get_job_errors(job_id: str):
    job = _get_or_404(job_id)

    if job.status != JobStatus.COMPLETED:
        raise HTTPException(
            status_code=409,
            detail=f"Job not completed yet (status={job.status.value})",
        )

    return [
        FlaggedLine(
            index=index,
            speaker=line.speaker,
            role=line.role,
            text=line.text,
            start_time=line.startTime,
            timestamp=format_time(line.startTime),
            error=line.error,
        )
        for index, line in job.result.flagged_lines()
    ]


@router.post("/{job_id}/retry", response_model=JobSummary, status_code=202)
async def retry_job(job_id: str):
    try:
        job = job_service.retry_job(job_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobSummary.from_job(job)
