from typing import Dict, List, Optional

from pydantic import BaseModel


class CategoryAverageOut(BaseModel):
    key: str
    label: str
    average: float
    band: str


class CallRowOut(BaseModel):
    job_id: str
    name: str
    manager_name: str
    overall_score: float
    scores: Dict[str, float]


class DashboardResponse(BaseModel):
    total_calls: int
    average_score: float
    categories: List[CategoryAverageOut] = []
    best_zone: Optional[CategoryAverageOut] = None
    worst_zone: Optional[CategoryAverageOut] = None
    calls: List[CallRowOut] = []
