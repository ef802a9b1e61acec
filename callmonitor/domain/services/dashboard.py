"""
Aggregates over completed calls for the summary dashboard.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, Iterable, List, Optional

from callmonitor.domain.analysis import CRITERIA_NAMES, score_band
from callmonitor.domain.models import Job, JobStatus


@dataclass
class CategoryAverage:
    key: str
    label: str
    average: float
    band: str


@dataclass
class CallRow:
    job_id: str
    name: str
    manager_name: str
    overall_score: float
    scores: Dict[str, float]


@dataclass
class DashboardSummary:
    total_calls: int = 0
    average_score: float = 0.0
    categories: List[CategoryAverage] = field(default_factory=list)
    best_zone: Optional[CategoryAverage] = None
    worst_zone: Optional[CategoryAverage] = None
    calls: List[CallRow] = field(default_factory=list)


def _round1(value: float) -> float:
    """One decimal place, halves rounded up (7.25 -> 7.3)."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def completed_jobs(jobs: Iterable[Job]) -> List[Job]:
    return [job for job in jobs if job.status == JobStatus.COMPLETED and job.result is not None]


def build_summary(jobs: Iterable[Job]) -> DashboardSummary:
    done = completed_jobs(jobs)
    if not done:
        return DashboardSummary()

    n = len(done)
    categories = []
    for key, label in CRITERIA_NAMES.items():
        avg = _round1(sum(job.result.section(key).score for job in done) / n)
        categories.append(CategoryAverage(key=key, label=label, average=avg, band=score_band(avg)))

    # On ties the later category wins, for both extremes
    best = categories[0]
    worst = categories[0]
    for cat in categories[1:]:
        if not best.average > cat.average:
            best = cat
        if not worst.average < cat.average:
            worst = cat

    calls = [
        CallRow(
            job_id=job.id,
            name=job.name,
            manager_name=job.result.managerName,
            overall_score=job.result.overallScore,
            scores={key: job.result.section(key).score for key in CRITERIA_NAMES},
        )
        for job in done
    ]

    return DashboardSummary(
        total_calls=n,
        average_score=_round1(sum(job.result.overallScore for job in done) / n),
        categories=categories,
        best_zone=best,
        worst_zone=worst,
        calls=calls,
    )
