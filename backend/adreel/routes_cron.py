"""
Timer entry points, called by an external cron (Bearer CRON_SECRET).
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from .deps import require_cron_secret
from .errors import NotFound
from .services.publisher import get_publisher
from .services.rate_limit import get_rate_limiter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


async def _publish_scheduled():
    result = await get_publisher().run_due_batch()
    return {"success": True, **result.to_dict()}


@router.get("/publish-scheduled")
async def publish_scheduled_get():
    return await _publish_scheduled()


@router.post("/publish-scheduled")
async def publish_scheduled_post():
    return await _publish_scheduled()


@router.post("/publish-scheduled/{post_id}")
async def publish_one(post_id: str):
    """Publish one draft or scheduled post out of band."""
    outcome = await get_publisher().publish_post(post_id)
    if outcome.skipped and outcome.status == "missing":
        raise NotFound("Post not found", "POST_NOT_FOUND")
    return {"success": outcome.success, "result": outcome.to_dict()}


@router.post("/refresh-analytics")
async def refresh_analytics():
    summary = await get_publisher().refresh_posted_analytics()
    return {"success": True, **summary}


@router.post("/cleanup-rate-limits")
async def cleanup_rate_limits():
    removed = get_rate_limiter().cleanup()
    return {"success": True, "removed": removed}
