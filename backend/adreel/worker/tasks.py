"""
Celery tasks for video production.

Main task: production.produce_video runs VideoProduction in a synchronous
Celery worker context using asyncio.run(). The production job records its
own failures on the Video, so the task is not auto-retried: a retry would
restart a job that already moved the record to a terminal state.
"""
from __future__ import annotations

import asyncio
import logging

from adreel.worker.celery_app import celery_app

logger = logging.getLogger(__name__)


async def _produce_video_async(video_id: str, owner_id: str, request_data: dict) -> dict:
    """Run one production job with a worker-owned engine."""
    from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

    from adreel.schemas import VideoCreateRequest
    from adreel.services.production import VideoProduction
    from adreel.settings import get_settings

    engine = create_async_engine(get_settings().async_database_url, echo=False)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        request = VideoCreateRequest.model_validate(request_data)
        status = await VideoProduction(session_factory).run(video_id, owner_id, request)
        logger.info(f"[worker] Video {video_id} finished: {status}")
        return {"video_id": video_id, "status": status}
    finally:
        await engine.dispose()


@celery_app.task(
    bind=True,
    name="production.produce_video",
    queue="production",
)
def produce_video(self, video_id: str, owner_id: str, request_data: dict) -> dict:
    """Celery task: drive one Video through the production stages."""
    logger.info(f"[worker] Starting video {video_id} (celery_id={self.request.id})")
    return asyncio.run(_produce_video_async(video_id, owner_id, request_data))
