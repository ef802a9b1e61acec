from dataclasses import asdict

from fastapi import APIRouter

from callmonitor.app.schemas.dashboard import DashboardResponse
from callmonitor.domain.services import job_service
from callmonitor.domain.services.dashboard import build_summary

router = APIRouter(prefix="/api", tags=["dashboard"])


@router.get("/summary", response_model=DashboardResponse)
async def get_summary():
    """
    Averages over every completed call, plus the strongest and weakest stage.
    """
    summary = build_summary(job_service.list_jobs())
    return DashboardResponse.model_validate(asdict(summary))
