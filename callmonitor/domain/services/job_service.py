import mimetypes
import os
import uuid
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from callmonitor.domain.models import AudioSource, Job, JobStatus
from callmonitor.domain.services.scheduler import AnalysisScheduler
from callmonitor.infrastructure.gemini_adapter import GeminiAnalyzer
from callmonitor.infrastructure.persistence.in_memory_repo import job_repository

MAX_CONCURRENT_ANALYSIS = int(os.environ.get("MAX_CONCURRENT_ANALYSIS", "2"))
ANALYSIS_TIMEOUT_SECONDS = float(os.environ.get("ANALYSIS_TIMEOUT_SECONDS", "0"))  # 0 means no timeout

AUDIO_EXTENSIONS = (".mp3", ".wav", ".m4a")

scheduler = AnalysisScheduler(
    job_repository,
    GeminiAnalyzer(),
    max_concurrent=MAX_CONCURRENT_ANALYSIS,
    timeout=ANALYSIS_TIMEOUT_SECONDS,
)


def is_audio_file(filename: str, content_type: Optional[str]) -> bool:
    """Accept anything declared as audio/*, or a known audio extension."""
    if content_type and content_type.startswith("audio/"):
        return True
    return filename.lower().endswith(AUDIO_EXTENSIONS)


def resolve_mime_type(filename: str, content_type: Optional[str]) -> str:
    """
    Declared media type, or one guessed from the extension when the client
    sent none (or only the generic octet-stream).
    """
    if content_type and content_type != "application/octet-stream":
        return content_type
    guessed, _ = mimetypes.guess_type(filename)
    if guessed:
        return guessed
    if Path(filename).suffix.lower() == ".m4a":
        return "audio/mp4"
    return "audio/mpeg"


def submit_files(files: Iterable[Tuple[str, bytes, str]]) -> List[Job]:
    """
    Create one PENDING job per (filename, data, mime_type) and queue them.

    Raises JobLimitExceededError if the batch would exceed the store's cap;
    nothing is queued in that case.
    """
    jobs = [
        Job(id=str(uuid.uuid4()), name=name, source=AudioSource(data=data, mime_type=mime_type))
        for name, data, mime_type in files
    ]
    return job_repository.append(jobs)


def get_job(job_id: str) -> Job | None:
    return job_repository.get(job_id)


def list_jobs(query: Optional[str] = None) -> List[Job]:
    """All jobs in submission order, optionally filtered by a case-insensitive name match."""
    jobs = job_repository.list()
    if query:
        needle = query.lower()
        jobs = [job for job in jobs if needle in job.name.lower()]
    return jobs


def count_jobs(status: Optional[JobStatus] = None) -> int:
    if status is None:
        return len(job_repository)
    return job_repository.count(status)


def retry_job(job_id: str) -> Job | None:
    """
    Send a failed job back to the queue. Returns None for an unknown id and
    raises InvalidTransitionError if the job has not failed.
    """
    return job_repository.reset(job_id)
