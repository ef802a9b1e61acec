from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from callmonitor.domain.analysis import CallAnalysis


class JobStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass(frozen=True)
class AudioSource:
    """Raw audio payload as uploaded, with its declared media type."""
    data: bytes
    mime_type: str


@dataclass
class Job:
    id: str
    name: str
    source: AudioSource
    status: JobStatus = JobStatus.PENDING
    result: Optional[CallAnalysis] = None
    failure_reason: Optional[str] = None
    attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
