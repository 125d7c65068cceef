"""
Video production job.

    pending -> generating_script -> generating_video -> [adding_audio]
            -> [adding_subtitles] -> optimizing -> completed
    any non-terminal state -> failed

Stages run strictly in order; each stage's output feeds the next. At stage
entry the in-process tracker is updated first (authoritative for live
polling) and the durable status is mirrored best-effort. Any stage error
marks the Video failed with a user-safe message and stops the job; it never
propagates out of `run()`. Artifacts are uploaded only after optimizing
succeeds, and artifact references are written together with `completed`.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adreel import repositories
from adreel.errors import GenerationError, PrerequisiteMissing, TransformError, sanitize_error
from adreel.models import Product, UserAccount, VideoStatus
from adreel.schemas import VideoCreateRequest
from adreel.services import media
from adreel.services.blob_store import BlobStore, get_blob_store
from adreel.services.generators import Generators, ProductBrief, get_generators, load_music_track
from adreel.services.job_tracker import JobTracker, ProcessingStep, job_tracker
from adreel.services.retry import RetryExhausted, RetryPolicy, is_transient_error, with_retry
from adreel.services.telegram_notifier import TelegramNotifier, get_notifier
from adreel.settings import Settings, get_settings

logger = logging.getLogger("production")

T = TypeVar("T")

MAX_REFERENCE_IMAGES = 5

STAGE_LABELS = {
    "initializing": "Preparing production",
    "analyzing": "Product analysis",
    "generating_script": "Script generation",
    "downloading_images": "Image download",
    "generating_video": "Video generation",
    "generating_voiceover": "Voiceover generation",
    "adding_audio": "Audio mixing",
    "adding_subtitles": "Subtitles",
    "adding_watermark": "Watermark",
    "adding_music": "Background music",
    "optimizing": "Optimization",
    "uploading": "Upload",
    "completed": "Completion",
}


@dataclass
class ProductionContext:
    """State carried from stage to stage."""

    video_id: str
    owner_id: str
    request: VideoCreateRequest
    product: ProductBrief | None = None
    folders: dict[str, Any] = field(default_factory=dict)
    stage: str = "initializing"
    script: str = ""
    image_urls: list[str] = field(default_factory=list)
    images: list[bytes] = field(default_factory=list)
    video: bytes | None = None
    audio: bytes | None = None
    optimized: bytes | None = None
    thumbnail: bytes | None = None
    duration: float | None = None


def folder_for(folders: dict[str, Any], *path: str) -> str:
    """Resolve a nested folder id; missing entries are a prerequisite error."""
    node: Any = folders
    for key in path:
        if not isinstance(node, dict) or key not in node:
            raise PrerequisiteMissing(f"Storage folder '{'.'.join(path)}' is not initialized", "FOLDERS_NOT_INITIALIZED")
        node = node[key]
    if isinstance(node, dict):
        node = node.get("root")
    if not node:
        raise PrerequisiteMissing(f"Storage folder '{'.'.join(path)}' is not initialized", "FOLDERS_NOT_INITIALIZED")
    return str(node)


def summarize_error(stage: str, exc: BaseException) -> str:
    """User-safe one-line failure message for the Video record."""
    label = STAGE_LABELS.get(stage, stage.replace("_", " ").capitalize())
    cause: BaseException = exc
    suffix = ""
    if isinstance(exc, RetryExhausted):
        cause = exc.last_error
        if exc.attempts > 1:
            suffix = f" (gave up after {exc.attempts} attempts)"
    if isinstance(cause, TransformError):
        detail = f"media processing error{f' (exit code {cause.returncode})' if cause.returncode is not None else ''}"
        if cause.stderr:
            detail += f": {cause.stderr.strip().splitlines()[-1] if cause.stderr.strip() else ''}"
    else:
        detail = str(cause) or type(cause).__name__
    return sanitize_error(f"{label} failed: {detail}{suffix}")


class VideoProduction:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        tracker: JobTracker | None = None,
        generators: Generators | None = None,
        blob_store: BlobStore | None = None,
        settings: Settings | None = None,
        notifier: TelegramNotifier | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.session_factory = session_factory
        self.tracker = tracker if tracker is not None else job_tracker
        self.generators = generators if generators is not None else get_generators()
        self.blob_store = blob_store if blob_store is not None else get_blob_store()
        self.settings = settings if settings is not None else get_settings()
        self.notifier = notifier if notifier is not None else get_notifier()
        self.http_transport = http_transport

    # ── Policies ─────────────────────────────────────────────

    def _generation_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            timeout_ms=self.settings.generation_timeout_ms,
            initial_backoff_ms=self.settings.retry_initial_backoff_ms,
            max_backoff_ms=self.settings.retry_max_backoff_ms,
            should_retry=is_transient_error,
        )

    def _transform_policy(self) -> RetryPolicy:
        # The transcoder enforces its own timeout
        return RetryPolicy(
            max_attempts=self.settings.transform_max_attempts,
            timeout_ms=None,
            initial_backoff_ms=self.settings.retry_initial_backoff_ms,
            max_backoff_ms=self.settings.retry_max_backoff_ms,
            should_retry=lambda exc: isinstance(exc, TransformError) or is_transient_error(exc),
        )

    def _io_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.retry_max_attempts,
            timeout_ms=self.settings.retry_timeout_ms,
            initial_backoff_ms=self.settings.retry_initial_backoff_ms,
            max_backoff_ms=self.settings.retry_max_backoff_ms,
            should_retry=is_transient_error,
        )

    async def _generate(self, op: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(op, self._generation_policy())

    async def _transform(self, op: Callable[[], Awaitable[T]]) -> T:
        return await with_retry(op, self._transform_policy())

    # ── Entry point ──────────────────────────────────────────

    async def run(self, video_id: str, owner_id: str, request: VideoCreateRequest) -> str:
        """Drive one Video through every stage. Returns the final status."""
        ctx = ProductionContext(video_id=video_id, owner_id=owner_id, request=request)
        if self.tracker.get_job(video_id) is None:
            self.tracker.set_job(video_id, owner_id)
        logger.info("[production][video=%s] started (mode=%s)", video_id, request.mode)

        try:
            await self._load_inputs(ctx)
            await self._stage_script(ctx)
            await self._stage_images(ctx)
            await self._stage_video(ctx)
            if request.voice and ctx.script:
                await self._stage_voiceover(ctx)
            if request.subtitle.enabled and ctx.script:
                await self._stage_subtitles(ctx)
            if request.watermark.enabled and request.watermark.text:
                await self._stage_watermark(ctx)
            if request.music:
                await self._stage_music(ctx)
            await self._stage_optimize(ctx)
            await self._stage_upload_and_complete(ctx)
        except Exception as exc:
            await self._fail(ctx, exc)
            return VideoStatus.failed.value

        logger.info("[production][video=%s] completed", video_id)
        return VideoStatus.completed.value

    # ── Stage helpers ────────────────────────────────────────

    async def _enter(self, ctx: ProductionContext, step: ProcessingStep, status: VideoStatus | None = None) -> None:
        ctx.stage = step.info.step
        self.tracker.update_progress(ctx.video_id, step)
        if status is None:
            return
        self.tracker.update_status(ctx.video_id, status.value)
        try:
            async with self.session_factory() as session:
                moved = await repositories.advance_video_status(session, ctx.video_id, ctx.owner_id, status)
            if not moved:
                logger.warning("[production][video=%s] durable status not moved to %s", ctx.video_id, status.value)
        except Exception:
            logger.exception("[production][video=%s] failed to mirror status %s", ctx.video_id, status.value)

    async def _load_inputs(self, ctx: ProductionContext) -> None:
        async with self.session_factory() as session:
            product = (
                await session.execute(
                    select(Product).where(Product.id == ctx.request.product_id, Product.owner_id == ctx.owner_id)
                )
            ).scalar_one_or_none()
            user = await session.get(UserAccount, ctx.owner_id)

        if product is None:
            raise GenerationError(f"Product {ctx.request.product_id} no longer exists")
        if user is None or not user.storage_folders:
            raise PrerequisiteMissing("Storage folders are not initialized", "FOLDERS_NOT_INITIALIZED")

        ctx.folders = user.storage_folders
        ctx.product = ProductBrief(
            name=product.name,
            description=product.description,
            price=float(product.price) if product.price is not None else None,
            category=product.category,
            images=list(product.images or []),
        )

    async def _stage_script(self, ctx: ProductionContext) -> None:
        request = ctx.request
        if ctx.product is None:
            raise GenerationError("Product details were not loaded")

        if request.mode == "auto":
            await self._enter(ctx, ProcessingStep.ANALYZING, VideoStatus.generating_script)
            try:
                analysis = await self._generate(
                    lambda: self.generators.script.analyze(product=ctx.product, model=request.models.text)
                )
                if not request.camera_angles:
                    request.camera_angles = list(analysis.get("suggestedCameraAngles") or [])
            except Exception as exc:
                logger.warning("[production][video=%s] product analysis skipped: %s", ctx.video_id, exc)

            await self._enter(ctx, ProcessingStep.GENERATING_SCRIPT)
            ctx.script = await self._generate(
                lambda: self.generators.script.generate(
                    product=ctx.product,
                    style=request.style,
                    duration=request.duration,
                    language=self.settings.script_language,
                    model=request.models.text,
                )
            )
            ctx.image_urls = list(ctx.product.images)
        else:
            await self._enter(ctx, ProcessingStep.GENERATING_SCRIPT, VideoStatus.generating_script)
            ctx.script = (request.script or "").strip()
            ctx.image_urls = list(request.images)

        if not ctx.script:
            raise GenerationError("Script is empty")
        try:
            async with self.session_factory() as session:
                await repositories.update_video_fields(session, ctx.video_id, ctx.owner_id, script=ctx.script)
        except Exception:
            logger.exception("[production][video=%s] failed to store script", ctx.video_id)

    async def _stage_images(self, ctx: ProductionContext) -> None:
        if not ctx.image_urls:
            return
        await self._enter(ctx, ProcessingStep.DOWNLOADING_IMAGES)

        async with httpx.AsyncClient(timeout=30, follow_redirects=True, transport=self.http_transport) as client:
            for url in ctx.image_urls[:MAX_REFERENCE_IMAGES]:
                async def fetch(url: str = url) -> bytes:
                    resp = await client.get(url)
                    resp.raise_for_status()
                    return resp.content

                try:
                    ctx.images.append(await with_retry(fetch, self._io_policy()))
                except Exception as exc:
                    logger.warning("[production][video=%s] image %s skipped: %s", ctx.video_id, url, sanitize_error(str(exc)))

        if not ctx.images:
            raise GenerationError("Could not download any reference image")

    async def _stage_video(self, ctx: ProductionContext) -> None:
        request = ctx.request
        await self._enter(ctx, ProcessingStep.GENERATING_VIDEO, VideoStatus.generating_video)
        ctx.video = await self._generate(
            lambda: self.generators.video.generate(
                script=ctx.script,
                images=ctx.images,
                aspect_ratio=request.aspect_ratio,
                duration=request.duration,
                style=request.style,
                model=request.models.video,
            )
        )
        if not ctx.video:
            raise GenerationError("Video generator returned no data")

    async def _stage_voiceover(self, ctx: ProductionContext) -> None:
        request = ctx.request
        await self._enter(ctx, ProcessingStep.GENERATING_VOICEOVER, VideoStatus.adding_audio)
        ctx.audio = await self._generate(
            lambda: self.generators.speech.synthesize(script=ctx.script, voice=request.voice, model=request.models.tts)
        )
        await self._enter(ctx, ProcessingStep.ADDING_AUDIO)
        video, audio = ctx.video, ctx.audio
        ctx.video = await self._transform(lambda: media.mux_voiceover(video, audio))

    async def _stage_subtitles(self, ctx: ProductionContext) -> None:
        sub = ctx.request.subtitle
        await self._enter(ctx, ProcessingStep.ADDING_SUBTITLES, VideoStatus.adding_subtitles)
        style = media.SubtitleStyle.from_request(sub.style, sub.position, sub.color)
        video = ctx.video
        ctx.video = await self._transform(
            lambda: media.burn_subtitles(
                video, ctx.script, style, seconds_per_cue=self.settings.subtitle_seconds_per_cue
            )
        )

    async def _stage_watermark(self, ctx: ProductionContext) -> None:
        wm = ctx.request.watermark
        await self._enter(ctx, ProcessingStep.ADDING_WATERMARK)
        options = media.WatermarkOptions(
            text=wm.text or "",
            position=wm.position,
            opacity=wm.opacity,
            size=wm.size,
            color=wm.color,
        )
        video = ctx.video
        ctx.video = await self._transform(lambda: media.add_watermark(video, options))

    async def _stage_music(self, ctx: ProductionContext) -> None:
        await self._enter(ctx, ProcessingStep.ADDING_MUSIC)
        track = await asyncio.to_thread(load_music_track, ctx.request.music)
        video = ctx.video
        ctx.video = await self._transform(lambda: media.add_background_music(video, track))

    async def _stage_optimize(self, ctx: ProductionContext) -> None:
        request = ctx.request
        await self._enter(ctx, ProcessingStep.OPTIMIZING, VideoStatus.optimizing)
        if request.target_platform:
            profile = media.get_profile(request.target_platform)
        else:
            profile = media.profile_for_aspect_ratio(request.aspect_ratio)

        video = ctx.video
        ctx.optimized = await self._transform(lambda: media.optimize_for_platform(video, profile))
        optimized = ctx.optimized
        ctx.duration = await self._transform(lambda: media.get_duration(optimized))
        offset = min(self.settings.thumbnail_offset_sec, max(ctx.duration / 2, 0.0))
        ctx.thumbnail = await self._transform(lambda: media.extract_thumbnail(optimized, offset))

    async def _upload(self, data: bytes, filename: str, mime_type: str, folder: str):
        return await with_retry(
            lambda: self.blob_store.upload(data, filename, mime_type, folder),
            self._io_policy(),
        )

    async def _stage_upload_and_complete(self, ctx: ProductionContext) -> None:
        await self._enter(ctx, ProcessingStep.UPLOADING)
        vid = ctx.video_id
        original = await self._upload(
            ctx.video, f"video_{vid}.mp4", "video/mp4", folder_for(ctx.folders, "videos", "originals")
        )
        optimized = await self._upload(
            ctx.optimized, f"video_{vid}_optimized.mp4", "video/mp4", folder_for(ctx.folders, "videos", "optimized")
        )
        thumbnail = await self._upload(
            ctx.thumbnail, f"thumbnail_{vid}.jpg", "image/jpeg", folder_for(ctx.folders, "videos", "thumbnails")
        )
        audio = None
        if ctx.audio:
            audio = await self._upload(ctx.audio, f"voice_{vid}.mp3", "audio/mpeg", folder_for(ctx.folders, "audio"))

        ctx.stage = "completed"
        async with self.session_factory() as session:
            moved = await repositories.advance_video_status(
                session,
                vid,
                ctx.owner_id,
                VideoStatus.completed,
                original_file_id=original.id,
                optimized_file_id=optimized.id,
                thumbnail_file_id=thumbnail.id,
                audio_file_id=audio.id if audio else None,
                public_url=optimized.public_url,
                thumbnail_url=thumbnail.public_url,
                duration=ctx.duration,
            )
        if not moved:
            raise GenerationError("Video record changed while processing")

        self.tracker.update_status(vid, VideoStatus.completed.value)
        await self.notifier.notify_video_completed(vid, ctx.request.title, ctx.duration)

    async def _fail(self, ctx: ProductionContext, exc: BaseException) -> None:
        message = summarize_error(ctx.stage, exc)
        logger.error(
            "[production][video=%s] %s (%s: %s)",
            ctx.video_id, message, type(exc).__name__, sanitize_error(str(exc)),
        )
        self.tracker.set_error(ctx.video_id, message)
        try:
            async with self.session_factory() as session:
                await repositories.advance_video_status(
                    session, ctx.video_id, ctx.owner_id, VideoStatus.failed, error_message=message
                )
        except Exception:
            logger.exception("[production][video=%s] could not record failure", ctx.video_id)
        await self.notifier.notify_video_failed(ctx.video_id, ctx.request.title, message)


# ── Dispatch ─────────────────────────────────────────────────

_background_tasks: set[asyncio.Task] = set()


def start_production(video_id: str, owner_id: str, request: VideoCreateRequest) -> str:
    """Hand the job to Celery or to a background asyncio task.

    Returns the dispatch mode ("celery" or "local").
    """
    settings = get_settings()
    if settings.celery_enabled:
        from adreel.worker.tasks import produce_video

        produce_video.apply_async(
            args=[video_id, owner_id, request.model_dump(mode="json", by_alias=True)],
            queue="production",
        )
        logger.info("[production][video=%s] dispatched to Celery", video_id)
        return "celery"

    from adreel.db import AsyncSessionLocal

    job_tracker.set_job(video_id, owner_id)
    production = VideoProduction(AsyncSessionLocal)
    task = asyncio.create_task(production.run(video_id, owner_id, request), name=f"production:{video_id}")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return "local"
