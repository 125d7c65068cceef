"""
Publishing scheduler control.

The timers run inside the API process; these endpoints inspect them, toggle
them and fire a tick by hand. The cron endpoints do the same work without
the in-process timers.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from adreel.deps import require_cron_secret
from adreel.errors import NotFound
from adreel.services.scheduler import scheduler_service

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"], dependencies=[Depends(require_cron_secret)])


class SchedulerStatus(BaseModel):
    running: bool
    jobs_count: int
    jobs: list[dict]


class JobIntervalUpdate(BaseModel):
    minutes: int = Field(ge=1, le=24 * 60)


@router.get("/status", response_model=SchedulerStatus)
async def get_scheduler_status():
    jobs = scheduler_service.get_jobs()
    return SchedulerStatus(running=scheduler_service.is_running(), jobs_count=len(jobs), jobs=jobs)


@router.post("/start")
async def start_scheduler():
    if scheduler_service.is_running():
        return {"status": "already_running"}
    scheduler_service.start()
    if not scheduler_service.is_running():
        # SCHEDULER_ENABLED=false
        return {"status": "disabled"}
    return {"status": "started", "jobs": scheduler_service.get_jobs()}


@router.post("/stop")
async def stop_scheduler():
    if not scheduler_service.is_running():
        return {"status": "already_stopped"}
    scheduler_service.stop()
    return {"status": "stopped"}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    job = next((j for j in scheduler_service.get_jobs() if j["id"] == job_id), None)
    if job is None:
        raise NotFound(f"Job {job_id} not found", "JOB_NOT_FOUND")
    return job


@router.patch("/jobs/{job_id}")
async def update_job_interval(job_id: str, data: JobIntervalUpdate):
    """Change how often a publishing job fires (until the next restart)."""
    job = scheduler_service.reschedule(job_id, data.minutes)
    if job is None:
        raise NotFound(f"Job {job_id} not found", "JOB_NOT_FOUND")
    return job


@router.post("/jobs/{job_id}/run")
async def run_job_now(job_id: str):
    """Fire one tick now. A tick already in progress makes this one a no-op."""
    result = await scheduler_service.run_now(job_id)
    if "error" in result and result["error"].endswith("not found"):
        raise NotFound(result["error"], "JOB_NOT_FOUND")
    if result.get("ok") and result.get("result") is None:
        return {"ok": True, "skipped": True, "lastRun": scheduler_service.last_run(job_id)}
    return result
