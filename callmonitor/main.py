import logging
import os
from pathlib import Path

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from callmonitor.app.api import routes_dashboard, routes_jobs
from callmonitor.domain.models import JobStatus
from callmonitor.domain.services import job_service

logger = logging.getLogger("uvicorn.access")

app = FastAPI(title="CallMonitor API", version="0.1.0")


class LogRequestsMiddleware(BaseHTTPMiddleware):
    """Log each request as it arrives, before a large upload body is read."""

    async def dispatch(self, request, call_next):
        method = request.method
        path = request.url.path
        logger.info("Request started: %s %s", method, path)
        return await call_next(request)


app.add_middleware(LogRequestsMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes_jobs.router)
app.include_router(routes_dashboard.router)


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "jobs": job_service.count_jobs(),
        "analyzing": job_service.count_jobs(JobStatus.ANALYZING),
        "max_concurrent": job_service.scheduler.max_concurrent,
    }


# Built front end (player, scorecards, dashboard) when bundled alongside the API
STATIC_DIR = Path(os.environ.get("STATIC_DIR", "static")).resolve()

if (STATIC_DIR / "index.html").is_file():
    if (STATIC_DIR / "assets").is_dir():
        app.mount("/assets", StaticFiles(directory=STATIC_DIR / "assets"), name="assets")

    @app.get("/{full_path:path}", include_in_schema=False)
    async def serve_frontend(full_path: str):
        if full_path.startswith(("api/", "assets/")):
            raise HTTPException(status_code=404, detail="Not found")
        path = (STATIC_DIR / full_path).resolve()
        if full_path and path.is_relative_to(STATIC_DIR) and path.is_file():
            return FileResponse(path)
        return FileResponse(STATIC_DIR / "index.html")
