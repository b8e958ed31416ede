"""
Job status and manual trigger API endpoints.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import Dict, Optional

from navpulse.core.deps import get_pipeline, require_admin

router = APIRouter(prefix="/jobs", tags=["jobs"])


class JobStatsItem(BaseModel):
    """Counts and last outcome for one job type."""
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    lastRun: Optional[str] = None
    lastResult: Optional[dict] = None
    lastError: Optional[str] = None
    schedule: Optional[str] = None
    description: str = ""


class JobStatsResponse(BaseModel):
    jobs: Dict[str, JobStatsItem]


class TriggerRequest(BaseModel):
    data: Optional[dict] = None


class TriggerResponse(BaseModel):
    jobId: str
    name: str
    state: str


@router.get("/stats", response_model=JobStatsResponse)
async def get_job_stats(pipeline=Depends(get_pipeline)):
    """
    Get queue counts for every job type.

    Returns:
        JobStatsResponse keyed by job name.
    """
    return JobStatsResponse(jobs=pipeline.scheduler.get_job_stats())


@router.post("/{job_name}/trigger", response_model=TriggerResponse, status_code=202)
async def trigger_job(
    job_name: str,
    body: Optional[TriggerRequest] = None,
    pipeline=Depends(get_pipeline),
    identity: dict = Depends(require_admin)
):
    """Queue an out-of-schedule run. It still goes through the job's calendar and lock checks."""
    job = pipeline.scheduler.trigger_job(job_name, body.data if body else None)
    return TriggerResponse(jobId=job.id, name=job.name, state=job.state.value)
