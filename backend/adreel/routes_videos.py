from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_session
from .deps import get_owner_id, rate_limit
from .errors import Conflict, NotFound, PrerequisiteMissing, ValidationFailed
from .models import PROCESSING_STATUSES, Post, Product, UserAccount, Video, VideoStatus
from .repositories import get_video, update_video_fields
from .schemas import PostRead, VideoCreateRequest, VideoCreateResponse, VideoDetail, VideoRead, VideoUpdateRequest
from .services.blob_store import get_blob_store
from .services.job_tracker import build_status_payload, is_in_progress, job_tracker
from .services.production import start_production

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/videos", tags=["videos"])

SessionDep = Depends(get_session)
OwnerDep = Depends(get_owner_id)


async def _owned_video(session: AsyncSession, video_id: str, owner_id: str) -> Video:
    video = await get_video(session, video_id, owner_id)
    if video is None:
        raise NotFound("Video not found", "NOT_FOUND")
    return video


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=VideoCreateResponse,
    response_model_by_alias=True,
    dependencies=[rate_limit("videos.create")],
)
async def create_video(
    data: VideoCreateRequest,
    owner_id: str = OwnerDep,
    session: AsyncSession = SessionDep,
):
    """Create a pending Video and start its production job in the background."""
    user = await session.get(UserAccount, owner_id)
    if user is None or not user.storage_folders:
        raise PrerequisiteMissing("Storage folders are not initialized", "FOLDERS_NOT_INITIALIZED")

    product = (
        await session.execute(select(Product).where(Product.id == data.product_id, Product.owner_id == owner_id))
    ).scalar_one_or_none()
    if product is None:
        raise NotFound("Product not found", "PRODUCT_NOT_FOUND")

    video = Video(
        owner_id=owner_id,
        product_id=product.id,
        title=data.title or f"{product.name} - AI Video",
        script=data.script if data.mode == "manual" else None,
        duration=float(data.duration),
        aspect_ratio=data.aspect_ratio,
        style=data.style,
        voice=data.voice,
        music=data.music,
        model_text=data.models.text,
        model_video=data.models.video,
        model_tts=data.models.tts,
        status=VideoStatus.pending.value,
        watermark_enabled=data.watermark.enabled,
        watermark_text=data.watermark.text,
        watermark_position=data.watermark.position,
        subtitle_enabled=data.subtitle.enabled,
        subtitle_style=data.subtitle.style,
        subtitle_position=data.subtitle.position,
    )
    session.add(video)
    await session.commit()

    if data.title is None:
        data.title = video.title
    mode = start_production(video.id, owner_id, data)
    logger.info("[videos] video %s created for owner %s (%s)", video.id, owner_id, mode)

    return VideoCreateResponse(
        message="Video production started",
        video_id=video.id,
        status_url=f"/api/videos/{video.id}/status",
    )


@router.get("/{video_id}/status")
async def get_video_status(video_id: str, owner_id: str = OwnerDep, session: AsyncSession = SessionDep):
    """Live progress when this process runs the job, stored status otherwise."""
    video = await _owned_video(session, video_id, owner_id)
    job = job_tracker.get_job(video_id)
    if job is not None and job.owner_id != owner_id:
        job = None
    return build_status_payload(video, job)


@router.get("")
async def list_videos(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    product_id: Optional[str] = Query(default=None, alias="productId"),
    search: Optional[str] = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    owner_id: str = OwnerDep,
    session: AsyncSession = SessionDep,
):
    stmt = select(Video).where(Video.owner_id == owner_id)
    if status_filter:
        stmt = stmt.where(Video.status == status_filter)
    if product_id:
        stmt = stmt.where(Video.product_id == product_id)
    if search:
        stmt = stmt.where(Video.title.ilike(f"%{search}%"))

    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    rows = (
        await session.execute(stmt.order_by(Video.created_at.desc()).offset((page - 1) * limit).limit(limit))
    ).scalars().all()

    total_pages = math.ceil(total / limit) if total else 0
    return {
        "success": True,
        "videos": [VideoRead.model_validate(v).model_dump(mode="json") for v in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


@router.get("/{video_id}", response_model=VideoDetail)
async def get_video_detail(video_id: str, owner_id: str = OwnerDep, session: AsyncSession = SessionDep):
    video = await _owned_video(session, video_id, owner_id)
    posts = (
        await session.execute(
            select(Post).where(Post.video_id == video_id, Post.owner_id == owner_id).order_by(Post.created_at.desc())
        )
    ).scalars().all()
    return VideoDetail(**VideoRead.model_validate(video).model_dump(), posts=[PostRead.model_validate(p) for p in posts])


@router.patch("/{video_id}", response_model=VideoRead)
async def update_video(
    video_id: str,
    data: VideoUpdateRequest,
    owner_id: str = OwnerDep,
    session: AsyncSession = SessionDep,
):
    await _owned_video(session, video_id, owner_id)
    updates = data.model_dump(exclude_unset=True, exclude_none=True)
    if not updates:
        raise ValidationFailed("Nothing to update", "NO_UPDATES")

    await update_video_fields(session, video_id, owner_id, **updates)
    video = await session.get(Video, video_id, populate_existing=True)
    return video


@router.delete("/{video_id}")
async def delete_video(video_id: str, owner_id: str = OwnerDep, session: AsyncSession = SessionDep):
    """Delete a Video, its posts and its stored artifacts. Rejected while production runs."""
    video = await _owned_video(session, video_id, owner_id)
    if is_in_progress(video, job_tracker):
        raise Conflict("Video is still being processed", "VIDEO_PROCESSING")

    blob_ids = [
        blob_id
        for blob_id in (video.original_file_id, video.optimized_file_id, video.thumbnail_file_id, video.audio_file_id)
        if blob_id
    ]

    await session.execute(delete(Post).where(Post.video_id == video_id, Post.owner_id == owner_id))
    result = await session.execute(
        delete(Video)
        .where(Video.id == video_id, Video.owner_id == owner_id, Video.status.not_in(PROCESSING_STATUSES))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await session.rollback()
        raise Conflict("Video is still being processed", "VIDEO_PROCESSING")
    await session.commit()

    store = get_blob_store()
    deleted = 0
    for blob_id in blob_ids:
        try:
            if await store.delete(blob_id):
                deleted += 1
        except Exception as exc:
            logger.warning("[videos] could not delete blob %s: %s", blob_id, exc)
    job_tracker.remove_job(video_id)

    return {"success": True, "videoId": video_id, "deletedFiles": deleted}
