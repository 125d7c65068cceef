"""
Scheduled multi-platform publisher.

A batch run selects due posts (status=scheduled, scheduled_at <= now) in
scheduled order, capped at PUBLISH_BATCH_SIZE, and drives each one through
its platform adapter:

    scheduled -> posting -> posted | failed

Items run one after another with PUBLISH_ITEM_DELAY_SEC between them. With
PUBLISH_MAX_PARALLEL_PLATFORMS > 1, posts are grouped per platform and the
groups run concurrently; order and pacing hold inside each group. One item's
failure is recorded on that Post and never stops the rest of the batch.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adreel import repositories
from adreel.errors import AuthError, Conflict, NotFound, PlatformError, ValidationFailed, sanitize_error
from adreel.models import Platform, Post, PostStatus, VideoStatus, as_utc
from adreel.services.platforms import PlatformAdapter, get_adapter
from adreel.services.telegram_notifier import TelegramNotifier, get_notifier
from adreel.settings import Settings, get_settings

logger = logging.getLogger("publisher")

CLAIMABLE_STATUSES = (PostStatus.scheduled, PostStatus.draft)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PublishOutcome:
    post_id: str
    platform: str
    success: bool
    status: str
    external_post_id: str | None = None
    external_post_url: str | None = None
    error: str | None = None
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[PublishOutcome] = field(default_factory=list)

    def add(self, outcome: PublishOutcome) -> None:
        self.results.append(outcome)
        self.processed += 1
        if outcome.skipped:
            self.skipped += 1
        elif outcome.success:
            self.successful += 1
        else:
            self.failed += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [r.to_dict() for r in self.results],
        }


class PostPublisher:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        adapters: dict[str, PlatformAdapter] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        notifier: TelegramNotifier | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings if settings is not None else get_settings()
        self.adapters = adapters if adapters is not None else {}
        self.sleep = sleep if sleep is not None else asyncio.sleep
        self.notifier = notifier if notifier is not None else get_notifier()

    def _adapter(self, platform: str) -> PlatformAdapter | None:
        return self.adapters.get(platform) or get_adapter(platform)

    # ── Batch ────────────────────────────────────────────────

    async def due_posts(self, now: datetime | None = None, limit: int | None = None) -> list[tuple[str, str]]:
        now = now or utcnow()
        limit = limit or self.settings.publish_batch_size
        async with self.session_factory() as session:
            rows = await session.execute(
                select(Post.id, Post.platform)
                .where(Post.status == PostStatus.scheduled.value, Post.scheduled_at <= now)
                .order_by(Post.scheduled_at.asc(), Post.created_at.asc())
                .limit(limit)
            )
            return [(row.id, row.platform) for row in rows]

    async def run_due_batch(self, now: datetime | None = None) -> BatchResult:
        due = await self.due_posts(now)
        result = BatchResult()
        if not due:
            logger.info("[publisher] no due posts")
            return result

        logger.info("[publisher] %d due post(s)", len(due))
        parallel = max(1, self.settings.publish_max_parallel_platforms)

        if parallel == 1:
            outcomes = await self._run_sequence([post_id for post_id, _ in due])
        else:
            groups: dict[str, list[tuple[int, str]]] = {}
            for index, (post_id, platform) in enumerate(due):
                groups.setdefault(platform, []).append((index, post_id))
            limiter = asyncio.Semaphore(parallel)

            async def run_group(items: list[tuple[int, str]]) -> list[tuple[int, PublishOutcome]]:
                async with limiter:
                    group_outcomes = await self._run_sequence([post_id for _, post_id in items])
                return list(zip([i for i, _ in items], group_outcomes))

            indexed: list[tuple[int, PublishOutcome]] = []
            for chunk in await asyncio.gather(*(run_group(items) for items in groups.values())):
                indexed.extend(chunk)
            outcomes = [outcome for _, outcome in sorted(indexed, key=lambda pair: pair[0])]

        for outcome in outcomes:
            result.add(outcome)
        logger.info(
            "[publisher] batch done: processed=%d ok=%d failed=%d skipped=%d",
            result.processed, result.successful, result.failed, result.skipped,
        )
        return result

    async def _run_sequence(
        self, post_ids: list[str], claim_from: tuple[PostStatus, ...] = (PostStatus.scheduled,)
    ) -> list[PublishOutcome]:
        outcomes = []
        for i, post_id in enumerate(post_ids):
            if i:
                await self.sleep(self.settings.publish_item_delay_sec)
            try:
                outcome = await self.publish_post(post_id, claim_from=claim_from)
            except Exception as exc:
                logger.exception("[publisher][post=%s] could not be processed", post_id)
                outcome = PublishOutcome(
                    post_id, "", False, PostStatus.failed.value,
                    error=sanitize_error(str(exc) or type(exc).__name__),
                )
            outcomes.append(outcome)
        return outcomes

    # ── Single post ──────────────────────────────────────────

    async def publish_post(
        self,
        post_id: str,
        owner_id: str | None = None,
        *,
        claim_from: Iterable[PostStatus] = CLAIMABLE_STATUSES,
    ) -> PublishOutcome:
        """Claim one post and publish it.

        Platform and adapter failures are recorded on the Post and returned as a
        failed outcome. Database errors while loading or claiming propagate.
        """
        async with self.session_factory() as session:
            post = await repositories.get_post(session, post_id, owner_id)
            if post is None:
                return PublishOutcome(post_id, "", False, "missing", error="Post not found", skipped=True)
            platform = post.platform
            owner = post.owner_id

            claimed = await repositories.transition_post(
                session, post_id, claim_from, PostStatus.posting, owner_id=owner
            )
            if not claimed:
                current = (await session.execute(select(Post.status).where(Post.id == post_id))).scalar_one_or_none()
                logger.info("[publisher][post=%s] not claimable (status=%s), skipped", post_id, current)
                return PublishOutcome(
                    post_id, platform, False, current or "missing",
                    error=f"Post is {current}, not publishable", skipped=True,
                )

            try:
                published = await self._post_to_platform(session, post_id, owner)
            except Exception as exc:
                return await self._record_failure(session, post_id, platform, owner, exc)

            try:
                await repositories.transition_post(
                    session,
                    post_id,
                    (PostStatus.posting,),
                    PostStatus.posted,
                    owner_id=owner,
                    external_post_id=published.id,
                    external_post_url=published.url,
                    posted_at=utcnow(),
                )
            except Exception:
                # The platform has the video; the row stays in posting for manual review
                logger.exception("[publisher][post=%s] published as %s but could not record it", post_id, published.id)
                return PublishOutcome(
                    post_id, platform, True, PostStatus.posting.value,
                    external_post_id=published.id, external_post_url=published.url,
                )

        logger.info("[publisher][post=%s] posted to %s: %s", post_id, platform, published.url or published.id)
        await self.notifier.notify_post_published(platform, published.url)
        return PublishOutcome(
            post_id, platform, True, PostStatus.posted.value,
            external_post_id=published.id, external_post_url=published.url,
        )

    async def _post_to_platform(self, session: AsyncSession, post_id: str, owner_id: str):
        post = await repositories.get_post(session, post_id, owner_id)
        video = await repositories.get_video(session, post.video_id, owner_id)
        if video is None or video.status != VideoStatus.completed.value or not video.public_url:
            raise PlatformError(post.platform, "Video artifact URL not found")

        adapter = self._adapter(post.platform)
        if adapter is None:
            raise PlatformError(post.platform, f"Platform {post.platform} not supported")

        credential = await adapter.get_token(session, owner_id)
        if credential is None:
            raise AuthError(f"No connected {post.platform} account")

        return await adapter.post_video(credential, video.public_url, post.caption, post.hashtags or [])

    async def _record_failure(
        self, session: AsyncSession, post_id: str, platform: str, owner_id: str, exc: Exception
    ) -> PublishOutcome:
        message = sanitize_error(str(exc) or type(exc).__name__)
        if isinstance(exc, AuthError):
            message = sanitize_error(f"Authorization required: {exc}")
        elif not isinstance(exc, PlatformError):
            logger.exception("[publisher][post=%s] unexpected error", post_id)
        logger.warning("[publisher][post=%s] %s publish failed: %s", post_id, platform, message)

        try:
            await session.rollback()
            await repositories.transition_post(
                session, post_id, (PostStatus.posting,), PostStatus.failed,
                owner_id=owner_id, error_message=message,
            )
        except Exception:
            logger.exception("[publisher][post=%s] could not record failure", post_id)

        await self.notifier.notify_post_failed(platform, post_id, message)
        return PublishOutcome(post_id, platform, False, PostStatus.failed.value, error=message)

    # ── Post management ──────────────────────────────────────

    async def create_posts(
        self,
        owner_id: str,
        *,
        video_id: str | None,
        platforms: list[str],
        caption: str | None = None,
        captions: dict[str, str] | None = None,
        hashtags: dict[str, list[str]] | None = None,
        schedule_at: datetime | None = None,
        now: datetime | None = None,
    ) -> tuple[list[Post], list[PublishOutcome]]:
        """Create one post per platform; publish right away unless scheduled."""
        if not video_id:
            raise ValidationFailed("videoId is required", "MISSING_VIDEO_ID")
        if not platforms:
            raise ValidationFailed("At least one platform is required", "MISSING_PLATFORMS")
        supported = {p.value for p in Platform}
        invalid = [p for p in platforms if p not in supported]
        if invalid:
            raise ValidationFailed(f"Unsupported platform(s): {', '.join(invalid)}", "INVALID_PLATFORM")

        now = now or utcnow()
        if schedule_at is not None:
            schedule_at = as_utc(schedule_at)
            if schedule_at <= now:
                raise ValidationFailed("Scheduled time must be in the future", "INVALID_SCHEDULE_TIME")

        captions = captions or {}
        hashtags = hashtags or {}
        status = PostStatus.scheduled if schedule_at else PostStatus.draft

        async with self.session_factory() as session:
            video = await repositories.get_video(session, video_id, owner_id)
            if video is None:
                raise NotFound("Video not found", "VIDEO_NOT_FOUND")
            if video.status != VideoStatus.completed.value:
                raise ValidationFailed("Video is not ready for publishing", "VIDEO_NOT_READY")

            posts = []
            for platform in dict.fromkeys(platforms):
                post = Post(
                    owner_id=owner_id,
                    video_id=video_id,
                    platform=platform,
                    caption=captions.get(platform, caption),
                    hashtags=list(hashtags.get(platform) or hashtags.get("default") or []),
                    status=status.value,
                    scheduled_at=schedule_at,
                )
                session.add(post)
                posts.append(post)
            await session.commit()
            post_ids = [p.id for p in posts]

        outcomes: list[PublishOutcome] = []
        if schedule_at is None:
            outcomes = await self._run_sequence(post_ids, claim_from=(PostStatus.draft,))

        async with self.session_factory() as session:
            rows = (await session.execute(select(Post).where(Post.id.in_(post_ids)))).scalars().all()
            by_id = {p.id: p for p in rows}
            return [by_id[i] for i in post_ids if i in by_id], outcomes

    async def _get_scheduled(self, session: AsyncSession, post_id: str, owner_id: str) -> Post:
        post = await repositories.get_post(session, post_id, owner_id)
        if post is None:
            raise NotFound("Post not found", "POST_NOT_FOUND")
        if post.status != PostStatus.scheduled.value:
            raise Conflict("Only scheduled posts can be changed", "NOT_SCHEDULED")
        return post

    async def reschedule(
        self,
        post_id: str,
        owner_id: str,
        new_time: datetime | None,
        *,
        caption: str | None = None,
        hashtags: list[str] | None = None,
        now: datetime | None = None,
    ) -> Post:
        """Move a scheduled post to a strictly future time (and optionally edit its text)."""
        now = now or utcnow()
        async with self.session_factory() as session:
            await self._get_scheduled(session, post_id, owner_id)

            fields: dict[str, Any] = {}
            if new_time is not None:
                new_time = as_utc(new_time)
                if new_time <= now:
                    raise ValidationFailed("Scheduled time must be in the future", "INVALID_SCHEDULE_TIME")
                fields["scheduled_at"] = new_time
            if caption is not None:
                fields["caption"] = caption
            if hashtags is not None:
                fields["hashtags"] = hashtags
            if not fields:
                raise ValidationFailed("Nothing to update", "NO_UPDATES")

            moved = await repositories.transition_post(
                session, post_id, (PostStatus.scheduled,), PostStatus.scheduled, owner_id=owner_id, **fields
            )
            if not moved:
                raise Conflict("Only scheduled posts can be changed", "NOT_SCHEDULED")
            logger.info("[publisher][post=%s] rescheduled to %s", post_id, fields.get("scheduled_at"))
            return await session.get(Post, post_id, populate_existing=True)

    async def cancel(self, post_id: str, owner_id: str) -> None:
        """Cancel a scheduled post; the post is removed."""
        async with self.session_factory() as session:
            await self._get_scheduled(session, post_id, owner_id)
            result = await session.execute(
                delete(Post)
                .where(Post.id == post_id, Post.owner_id == owner_id, Post.status == PostStatus.scheduled.value)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            if result.rowcount != 1:
                raise Conflict("Only scheduled posts can be changed", "NOT_SCHEDULED")
        logger.info("[publisher][post=%s] cancelled", post_id)

    # ── Analytics ────────────────────────────────────────────

    async def refresh_analytics(self, post_id: str, owner_id: str | None = None) -> bool:
        """Pull counters for one posted post. Failures are logged and reported as False."""
        async with self.session_factory() as session:
            post = await repositories.get_post(session, post_id, owner_id)
            if post is None or post.status != PostStatus.posted.value or not post.external_post_id:
                return False
            adapter = self._adapter(post.platform)
            if adapter is None:
                return False
            try:
                credential = await adapter.get_token(session, post.owner_id)
                if credential is None:
                    raise AuthError(f"No connected {post.platform} account")
                stats = await adapter.get_analytics(credential, post.external_post_id)
            except (AuthError, PlatformError) as exc:
                logger.warning("[publisher][post=%s] analytics refresh failed: %s", post_id, sanitize_error(str(exc)))
                return False

            await session.execute(
                update(Post)
                .where(Post.id == post_id, Post.status == PostStatus.posted.value)
                .values(**stats.to_dict(), analytics_updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return True

    async def refresh_posted_analytics(self, limit: int | None = None) -> dict[str, int]:
        """Refresh the posts whose counters are the stalest."""
        limit = limit or self.settings.analytics_refresh_limit
        async with self.session_factory() as session:
            post_ids = (
                await session.execute(
                    select(Post.id)
                    .where(Post.status == PostStatus.posted.value, Post.external_post_id.is_not(None))
                    .order_by(Post.analytics_updated_at.asc().nulls_first(), Post.posted_at.desc())
                    .limit(limit)
                )
            ).scalars().all()

        refreshed = failed = 0
        for i, post_id in enumerate(post_ids):
            if i:
                await self.sleep(self.settings.publish_item_delay_sec)
            if await self.refresh_analytics(post_id):
                refreshed += 1
            else:
                failed += 1
        logger.info("[publisher] analytics refreshed=%d failed=%d", refreshed, failed)
        return {"checked": len(post_ids), "refreshed": refreshed, "failed": failed}


_publisher: PostPublisher | None = None


def get_publisher() -> PostPublisher:
    global _publisher
    if _publisher is None:
        from adreel.db import AsyncSessionLocal

        _publisher = PostPublisher(AsyncSessionLocal)
    return _publisher


def set_publisher(publisher: PostPublisher | None) -> None:
    global _publisher
    _publisher = publisher
