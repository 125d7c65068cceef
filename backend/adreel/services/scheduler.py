"""
Scheduler Service

Periodic jobs for the publishing side:
- publish_scheduled: run the due-post batch every PUBLISH_INTERVAL_MINUTES
- refresh_analytics: pull platform counters for posted posts

A single node fires the timers; a tick that is still running makes the next
one skip instead of overlapping. Controlled by SCHEDULER_ENABLED (default: true).
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from adreel.services.publisher import PostPublisher, get_publisher
from adreel.settings import get_settings

logger = logging.getLogger("scheduler")


class SchedulerService:
    """In-process APScheduler wrapper around the publisher jobs."""

    _instance: "SchedulerService | None" = None

    def __init__(self, publisher_factory: Callable[[], PostPublisher] = get_publisher):
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._publisher_factory = publisher_factory
        self._running = False
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_runs: dict[str, dict[str, Any]] = {}

    @classmethod
    def get_instance(cls) -> "SchedulerService":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def start(self):
        """Start the scheduler (respects SCHEDULER_ENABLED env)."""
        settings = get_settings()
        if not settings.scheduler_enabled:
            logger.info("Scheduler DISABLED by SCHEDULER_ENABLED=false, skipping start")
            return

        if self._running:
            return

        self.scheduler.add_job(
            self._run_publish_scheduled,
            IntervalTrigger(minutes=settings.publish_interval_minutes),
            id="publish_scheduled",
            name="Publish due scheduled posts",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.add_job(
            self._run_refresh_analytics,
            IntervalTrigger(minutes=settings.analytics_refresh_interval_minutes),
            id="refresh_analytics",
            name="Refresh posted analytics",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self._running = True
        logger.info(
            "Scheduler started (publish every %d min, analytics every %d min)",
            settings.publish_interval_minutes, settings.analytics_refresh_interval_minutes,
        )

    def stop(self):
        """Stop the scheduler."""
        if not self._running:
            return
        self.scheduler.shutdown(wait=False)
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._running = False
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        """Check if scheduler is running."""
        return self._running

    async def _guarded(self, name: str, job: Callable[[], Awaitable[Any]]) -> Any:
        lock = self._locks.setdefault(name, asyncio.Lock())
        if lock.locked():
            logger.info("[%s] previous tick still running, skipping", name)
            return None
        async with lock:
            started = datetime.now(timezone.utc)
            try:
                result = await job()
            except Exception as e:
                self._last_runs[name] = {"started_at": started.isoformat(), "ok": False, "error": str(e)}
                raise
            self._last_runs[name] = {"started_at": started.isoformat(), "ok": True, "result": result}
            return result

    def last_run(self, job_id: str) -> dict[str, Any] | None:
        return self._last_runs.get(job_id)

    async def _run_publish_scheduled(self) -> dict | None:
        async def job():
            result = await self._publisher_factory().run_due_batch()
            return result.to_dict()

        try:
            return await self._guarded("publish_scheduled", job)
        except Exception:
            logger.exception("[publish_scheduled] tick failed")
            raise

    async def _run_refresh_analytics(self) -> dict | None:
        async def job():
            return await self._publisher_factory().refresh_posted_analytics()

        try:
            return await self._guarded("refresh_analytics", job)
        except Exception:
            logger.exception("[refresh_analytics] tick failed")
            raise

    def get_jobs(self) -> list[dict]:
        """Get list of all scheduled jobs."""
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            jobs.append({
                "id": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
                "trigger": str(job.trigger),
                "last_run": self._last_runs.get(job.id),
            })
        return jobs

    def reschedule(self, job_id: str, minutes: int) -> dict | None:
        """Change a job's interval. Returns the updated job, or None if unknown."""
        if self.scheduler.get_job(job_id) is None:
            return None
        self.scheduler.reschedule_job(job_id, trigger=IntervalTrigger(minutes=minutes))
        logger.info("[%s] interval set to %d min", job_id, minutes)
        return next((j for j in self.get_jobs() if j["id"] == job_id), None)

    async def run_now(self, job_id: str) -> dict:
        """Run a job immediately."""
        job = self.scheduler.get_job(job_id)
        if not job:
            return {"error": f"Job {job_id} not found"}

        try:
            result = await job.func()
            return {"ok": True, "result": result}
        except Exception as e:
            logger.error("Failed to run job %s: %s", job_id, e)
            return {"error": str(e)}


# Global instance
scheduler_service = SchedulerService.get_instance()
