from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .deps import get_owner_id, rate_limit
from .errors import Conflict, NotFound
from .models import Post, PostStatus
from .repositories import get_post
from .schemas import PostCreateRequest, PostRead, RescheduleRequest
from .services.publisher import get_publisher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/posts", tags=["posts"])

SessionDep = Depends(get_session)
OwnerDep = Depends(get_owner_id)


def _post_json(post: Post) -> dict:
    return PostRead.model_validate(post).model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[rate_limit("posts.create")])
async def create_posts(data: PostCreateRequest, owner_id: str = OwnerDep):
    """Publish a completed video now, or schedule it for later, on each platform."""
    posts, outcomes = await get_publisher().create_posts(
        owner_id,
        video_id=data.video_id,
        platforms=data.platforms,
        caption=data.caption,
        captions=data.captions,
        hashtags=data.hashtags,
        schedule_at=data.schedule_at,
    )
    scheduled = data.schedule_at is not None
    return {
        "success": scheduled or all(o.success for o in outcomes),
        "scheduled": scheduled,
        "posts": [_post_json(p) for p in posts],
        "results": [o.to_dict() for o in outcomes],
    }


@router.get("")
async def list_posts(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    platform: Optional[str] = Query(default=None),
    video_id: Optional[str] = Query(default=None, alias="videoId"),
    upcoming: bool = Query(default=False),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    owner_id: str = OwnerDep,
    session: AsyncSession = SessionDep,
):
    stmt = select(Post).where(Post.owner_id == owner_id)
    if status_filter:
        stmt = stmt.where(Post.status == status_filter)
    if platform:
        stmt = stmt.where(Post.platform == platform)
    if video_id:
        stmt = stmt.where(Post.video_id == video_id)
    if upcoming:
        stmt = stmt.where(Post.status == PostStatus.scheduled.value, Post.scheduled_at >= datetime.now(timezone.utc))
        order = Post.scheduled_at.asc()
    else:
        order = Post.created_at.desc()

    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    rows = (await session.execute(stmt.order_by(order).offset((page - 1) * limit).limit(limit))).scalars().all()

    total_pages = math.ceil(total / limit) if total else 0
    return {
        "success": True,
        "posts": [_post_json(p) for p in rows],
        "pagination": {"page": page, "limit": limit, "total": total, "totalPages": total_pages},
    }


@router.get("/{post_id}")
async def get_post_detail(
    post_id: str,
    refresh: bool = Query(default=False),
    owner_id: str = OwnerDep,
    session: AsyncSession = SessionDep,
):
    post = await get_post(session, post_id, owner_id)
    if post is None:
        raise NotFound("Post not found", "POST_NOT_FOUND")

    refreshed = False
    if refresh and post.status == PostStatus.posted.value:
        refreshed = await get_publisher().refresh_analytics(post_id, owner_id)
        if refreshed:
            post = await session.get(Post, post_id, populate_existing=True)

    return {"success": True, "post": _post_json(post), "analyticsRefreshed": refreshed}


@router.patch("/{post_id}/schedule")
async def reschedule_post(post_id: str, data: RescheduleRequest, owner_id: str = OwnerDep):
    post = await get_publisher().reschedule(
        post_id,
        owner_id,
        data.scheduled_at,
        caption=data.caption,
        hashtags=data.hashtags,
    )
    return {"success": True, "post": _post_json(post)}


@router.delete("/{post_id}/schedule")
async def cancel_scheduled_post(post_id: str, owner_id: str = OwnerDep):
    await get_publisher().cancel(post_id, owner_id)
    return {"success": True, "postId": post_id}


@router.delete("/{post_id}")
async def delete_post(post_id: str, owner_id: str = OwnerDep, session: AsyncSession = SessionDep):
    """Remove a post record. A post that is being published cannot be removed."""
    post = await get_post(session, post_id, owner_id)
    if post is None:
        raise NotFound("Post not found", "POST_NOT_FOUND")

    result = await session.execute(
        delete(Post)
        .where(Post.id == post_id, Post.owner_id == owner_id, Post.status != PostStatus.posting.value)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    if result.rowcount != 1:
        raise Conflict("Post is being published", "POST_PUBLISHING")
    return {"success": True, "postId": post_id}
