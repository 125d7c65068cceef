from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship as sa_relationship

from .db import Base


def relationship(*args, **kwargs):
    """Wrap SQLAlchemy relationship to forbid lazy loading by default."""
    kwargs.setdefault("lazy", "raise")
    return sa_relationship(*args, **kwargs)


def new_id() -> str:
    return str(uuid.uuid4())


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a datetime read back from the store to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class VideoStatus(str, Enum):
    pending = "pending"
    generating_script = "generating_script"
    generating_video = "generating_video"
    adding_audio = "adding_audio"
    adding_subtitles = "adding_subtitles"
    optimizing = "optimizing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (VideoStatus.completed, VideoStatus.failed)

    @classmethod
    def can_transition(cls, old: str, new: str) -> bool:
        """Forward-only moves; `failed` is reachable from any non-terminal state."""
        old_s, new_s = cls(old), cls(new)
        if old_s.is_terminal:
            return False
        if new_s is cls.failed:
            return True
        return _VIDEO_ORDER.index(new_s) > _VIDEO_ORDER.index(old_s)

    @classmethod
    def predecessors(cls, new: str) -> list[str]:
        """Statuses from which `new` may be entered."""
        return [s.value for s in cls if cls.can_transition(s.value, new)]


_VIDEO_ORDER = [
    VideoStatus.pending,
    VideoStatus.generating_script,
    VideoStatus.generating_video,
    VideoStatus.adding_audio,
    VideoStatus.adding_subtitles,
    VideoStatus.optimizing,
    VideoStatus.completed,
]

# Statuses during which the production job owns the record
PROCESSING_STATUSES = (
    VideoStatus.generating_script.value,
    VideoStatus.generating_video.value,
    VideoStatus.adding_audio.value,
    VideoStatus.adding_subtitles.value,
    VideoStatus.optimizing.value,
)


class PostStatus(str, Enum):
    draft = "draft"
    scheduled = "scheduled"
    posting = "posting"
    posted = "posted"
    failed = "failed"


class Platform(str, Enum):
    tiktok = "tiktok"
    facebook = "facebook"
    youtube = "youtube"


class AspectRatio(str, Enum):
    portrait = "9:16"
    landscape = "16:9"
    square = "1:1"


class UserAccount(Base):
    __tablename__ = "user_accounts"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    # {"videos": {"originals", "optimized", "thumbnails"}, "audio": ...}
    storage_folders: Mapped[dict | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(sa.String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    description: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    price: Mapped[float | None] = mapped_column(sa.Numeric(12, 2), nullable=True)
    category: Mapped[str | None] = mapped_column(sa.String(255), nullable=True)
    images: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


class Video(Base):
    __tablename__ = "videos"
    __table_args__ = (sa.Index("ix_videos_owner_status", "owner_id", "status"),)

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    product_id: Mapped[str | None] = mapped_column(
        sa.ForeignKey("products.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    script: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    duration: Mapped[float | None] = mapped_column(sa.Float(), nullable=True)
    aspect_ratio: Mapped[str] = mapped_column(sa.String(8), nullable=False, server_default="9:16")
    style: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    voice: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    music: Mapped[str | None] = mapped_column(sa.String(128), nullable=True)
    model_text: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    model_video: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    model_tts: Mapped[str | None] = mapped_column(sa.String(64), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=VideoStatus.pending.value)
    # Artifact references, trustworthy only once status = completed
    original_file_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    optimized_file_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    thumbnail_file_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    audio_file_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    public_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    thumbnail_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    watermark_enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false())
    watermark_text: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    watermark_position: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    subtitle_enabled: Mapped[bool] = mapped_column(sa.Boolean(), nullable=False, server_default=sa.false())
    subtitle_style: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    subtitle_position: Mapped[str | None] = mapped_column(sa.String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    posts: Mapped[list["Post"]] = relationship(
        back_populates="video", cascade="all, delete-orphan", passive_deletes=True
    )


class Post(Base):
    __tablename__ = "posts"
    __table_args__ = (
        sa.Index("ix_posts_status_scheduled_at", "status", "scheduled_at"),
        sa.Index("ix_posts_owner", "owner_id"),
    )

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True, default=new_id)
    owner_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    video_id: Mapped[str] = mapped_column(sa.ForeignKey("videos.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    caption: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    hashtags: Mapped[list | None] = mapped_column(sa.JSON(), nullable=True)
    status: Mapped[str] = mapped_column(sa.String(32), nullable=False, server_default=PostStatus.draft.value)
    scheduled_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    posted_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    external_post_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    external_post_url: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    views: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    likes: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    comments: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    shares: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    clicks: Mapped[int] = mapped_column(sa.Integer(), nullable=False, server_default="0", default=0)
    analytics_updated_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )

    video: Mapped[Video] = relationship(back_populates="posts")


class PlatformToken(Base):
    __tablename__ = "platform_tokens"
    __table_args__ = (sa.UniqueConstraint("owner_id", "platform", name="uq_platform_tokens_owner_platform"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    platform: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    access_token: Mapped[str] = mapped_column(sa.Text(), nullable=False)
    refresh_token: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(sa.DateTime(timezone=True), nullable=True)
    # channel id / page id / open id, depending on platform
    account_id: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    account_name: Mapped[str | None] = mapped_column(sa.Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime(timezone=True), server_default=sa.func.now(), onupdate=sa.func.now(), nullable=False
    )
