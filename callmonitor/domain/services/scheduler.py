"""
Bounded-concurrency analysis scheduler.

The scheduler never tracks a queue of its own. Every change to the job
repository schedules one admission check on the event loop, and each check
recomputes from the current job list:

- count jobs that are ANALYZING; stop if the limit is reached
- take the oldest PENDING job, mark it ANALYZING and start its analysis

Only one job is admitted per check. The ANALYZING transition is itself a
repository change, so the next free slot is filled by the following check,
and every completion or failure triggers another one. With N pending jobs
this keeps exactly ``max_concurrent`` analyses running until the pending
pool is empty.
"""
import asyncio
import logging
from threading import Lock
from typing import Optional, Set

from callmonitor.domain.models import AudioSource, JobStatus
from callmonitor.infrastructure.persistence.in_memory_repo import InMemoryJobRepository

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_MESSAGE = "Analysis failed"


class AnalysisScheduler:
    """
    Admit pending jobs to ``analyzer`` while fewer than ``max_concurrent`` are running.

    ``analyzer`` is any object with ``async analyze(source: AudioSource) -> CallAnalysis``.
    ``timeout`` bounds each analysis call in seconds; 0 disables it.
    """

    def __init__(
        self,
        repository: InMemoryJobRepository,
        analyzer,
        *,
        max_concurrent: int = 2,
        timeout: float = 0,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.repository = repository
        self.analyzer = analyzer
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self._tasks: Set[asyncio.Task] = set()
        self._check_lock = Lock()
        self._scheduled_on: Optional[asyncio.AbstractEventLoop] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        repository.subscribe(self._on_repository_changed)

    def _on_repository_changed(self, _repository: InMemoryJobRepository) -> None:
        self.kick()

    def kick(self) -> None:
        """
        Schedule an admission check. Checks requested while one is already
        waiting to run are folded into it.
        """
        try:
            loop = asyncio.get_running_loop()
            threadsafe = False
        except RuntimeError:
            # Called from a worker thread: hand over to the loop we last ran on
            loop = self._loop
            threadsafe = True
            if loop is None or loop.is_closed():
                logger.debug("No event loop to run the admission check on; waiting for the next change")
                return

        with self._check_lock:
            if self._scheduled_on is loop:
                return
            self._scheduled_on = loop
        self._loop = loop

        if threadsafe:
            loop.call_soon_threadsafe(self._evaluate)
        else:
            loop.call_soon(self._evaluate)

    def _evaluate(self) -> None:
        with self._check_lock:
            self._scheduled_on = None

        jobs = self.repository.list()
        active = sum(1 for job in jobs if job.status == JobStatus.ANALYZING)
        if active >= self.max_concurrent:
            return

        next_job = next((job for job in jobs if job.status == JobStatus.PENDING), None)
        if next_job is None:
            return

        if self.repository.update_status(next_job.id, JobStatus.ANALYZING) is None:
            return
        logger.info(
            "Admitted job %s (%s), %d/%d slots in use",
            next_job.id, next_job.name, active + 1, self.max_concurrent,
        )
        task = asyncio.get_running_loop().create_task(self._run(next_job.id, next_job.source))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_id: str, source: AudioSource) -> None:
        try:
            if self.timeout:
                result = await asyncio.wait_for(self.analyzer.analyze(source), self.timeout)
            else:
                result = await self.analyzer.analyze(source)
            if result is None:
                raise RuntimeError("Analyzer returned no result")
        except Exception as exc:  # noqa: BLE001 - failure stays local to the job
            if self.timeout and isinstance(exc, asyncio.TimeoutError):
                logger.warning("Analysis of job %s timed out after %gs", job_id, self.timeout)
                reason = f"Analysis timed out after {self.timeout:g} seconds"
            else:
                logger.warning("Analysis of job %s failed: %s", job_id, exc)
                reason = str(exc) or DEFAULT_FAILURE_MESSAGE
            self.repository.update_status(job_id, JobStatus.FAILED, failure_reason=reason)
        else:
            logger.info("Analysis of job %s completed", job_id)
            self.repository.update_status(job_id, JobStatus.COMPLETED, result=result)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until no analysis is running and no admission check is pending."""
        loop = asyncio.get_running_loop()
        while True:
            await asyncio.sleep(0)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            if self._scheduled_on is not loop:
                return
