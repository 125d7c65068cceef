"""
Owner-scoped, optimistic row updates.

Every status change is a single ``UPDATE ... WHERE id AND owner AND status IN
(allowed)``; a zero row count means another writer moved the record first (or
the move is not allowed) and the caller decides what to do. No explicit row
locks are taken.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import Post, PostStatus, Video, VideoStatus


async def get_video(session: AsyncSession, video_id: str, owner_id: str | None = None) -> Video | None:
    stmt = select(Video).where(Video.id == video_id)
    if owner_id is not None:
        stmt = stmt.where(Video.owner_id == owner_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def advance_video_status(
    session: AsyncSession,
    video_id: str,
    owner_id: str,
    new_status: VideoStatus,
    *,
    error_message: str | None = None,
    **fields: Any,
) -> bool:
    """Move a Video forward (or to failed). Returns False if the move was refused.

    `error_message` is only kept for `failed`; every other transition clears it.
    """
    allowed = VideoStatus.predecessors(new_status.value)
    if not allowed:
        return False
    values: dict[str, Any] = {
        "status": new_status.value,
        "error_message": error_message if new_status is VideoStatus.failed else None,
        **fields,
    }
    result = await session.execute(
        update(Video)
        .where(Video.id == video_id, Video.owner_id == owner_id, Video.status.in_(allowed))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def update_video_fields(session: AsyncSession, video_id: str, owner_id: str, **fields: Any) -> bool:
    """Update non-status columns."""
    if not fields:
        return False
    result = await session.execute(
        update(Video)
        .where(Video.id == video_id, Video.owner_id == owner_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount == 1


async def get_post(session: AsyncSession, post_id: str, owner_id: str | None = None) -> Post | None:
    stmt = select(Post).where(Post.id == post_id)
    if owner_id is not None:
        stmt = stmt.where(Post.owner_id == owner_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def transition_post(
    session: AsyncSession,
    post_id: str,
    from_statuses: Iterable[PostStatus],
    to_status: PostStatus,
    *,
    owner_id: str | None = None,
    error_message: str | None = None,
    external_post_id: str | None = None,
    external_post_url: str | None = None,
    posted_at: datetime | None = None,
    **fields: Any,
) -> bool:
    """Compare-and-set a Post's status.

    Keeps the Post invariants: external ids and posted_at exist only on
    `posted`, error_message only on `failed`.
    """
    values: dict[str, Any] = {"status": to_status.value, **fields}
    if to_status is PostStatus.posted:
        if not external_post_id or posted_at is None:
            raise ValueError("posted requires external_post_id and posted_at")
        values.update(
            external_post_id=external_post_id,
            external_post_url=external_post_url,
            posted_at=posted_at,
            error_message=None,
        )
    else:
        values.update(external_post_id=None, external_post_url=None, posted_at=None)
        values["error_message"] = error_message if to_status is PostStatus.failed else None

    stmt = update(Post).where(
        Post.id == post_id,
        Post.status.in_([s.value for s in from_statuses]),
    )
    if owner_id is not None:
        stmt = stmt.where(Post.owner_id == owner_id)
    result = await session.execute(stmt.values(**values).execution_options(synchronize_session=False))
    await session.commit()
    return result.rowcount == 1
