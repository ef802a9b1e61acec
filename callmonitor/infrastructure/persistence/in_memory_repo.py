import os
import logging
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional

from callmonitor.domain.analysis import CallAnalysis
from callmonitor.domain.models import Job, JobStatus

logger = logging.getLogger(__name__)

Listener = Callable[["InMemoryJobRepository"], None]

# status -> statuses it may move to
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.ANALYZING},
    JobStatus.ANALYZING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class JobLimitExceededError(Exception):
    def __init__(self, limit: int) -> None:
        super().__init__(f"Maximum number of files is {limit}")
        self.limit = limit


class InvalidTransitionError(Exception):
    pass


class InMemoryJobRepository:
    """
    Ordered in-memory job store for a single-process deployment.

    Jobs are kept in submission order and are never removed. Every mutation
    notifies the subscribed listeners (the analysis scheduler) once the lock
    has been released.
    """

    def __init__(self, max_jobs: int = 100) -> None:
        self.max_jobs = max_jobs
        self._jobs: Dict[str, Job] = {}
        self._lock = Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def append(self, jobs: Iterable[Job]) -> List[Job]:
        """
        Add a batch of pending jobs. The batch is rejected as a whole if it
        would push the store past ``max_jobs``.
        """
        batch = list(jobs)
        if not batch:
            return []
        with self._lock:
            if self.max_jobs and len(self._jobs) + len(batch) > self.max_jobs:
                raise JobLimitExceededError(self.max_jobs)
            ids = [job.id for job in batch]
            if len(set(ids)) != len(ids) or any(job_id in self._jobs for job_id in ids):
                raise ValueError("Duplicate job id in batch")
            for job in batch:
                job.status = JobStatus.PENDING
                self._jobs[job.id] = job
        logger.info("Queued %d job(s), %d in store", len(batch), len(self._jobs))
        self._notify()
        return batch

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        result: Optional[CallAnalysis] = None,
        failure_reason: Optional[str] = None,
    ) -> Optional[Job]:
        """
        Move a job to ``status`` and attach the result or failure reason.

        Unknown ids are ignored on purpose: an analysis may finish after the job
        it belongs to is gone, and that late completion must not raise.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.debug("Ignoring status update for unknown job %s", job_id)
                return None
            if status not in _TRANSITIONS[job.status]:
                raise InvalidTransitionError(
                    f"Job {job_id} cannot move from {job.status.value} to {status.value}"
                )
            if status == JobStatus.COMPLETED and result is None:
                raise ValueError("A completed job needs a result")

            job.status = status
            if status == JobStatus.ANALYZING:
                job.attempts += 1
            elif status == JobStatus.COMPLETED:
                job.result = result
            elif status == JobStatus.FAILED:
                job.failure_reason = failure_reason or "Analysis failed"
        self._notify()
        return job

    def reset(self, job_id: str) -> Optional[Job]:
        """Put a failed job back in the queue, clearing its failure reason."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if job.status != JobStatus.FAILED:
                raise InvalidTransitionError(
                    f"Only failed jobs can be retried (job {job_id} is {job.status.value})"
                )
            job.status = JobStatus.PENDING
            job.failure_reason = None
        self._notify()
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list(self) -> List[Job]:
        with self._lock:
            return list(self._jobs.values())

    def count(self, status: JobStatus) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status == status)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


# Single process-wide instance for this app
job_repository = InMemoryJobRepository(max_jobs=int(os.environ.get("MAX_JOBS", "100")))
