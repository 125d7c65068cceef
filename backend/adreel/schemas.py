from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

WatermarkPosition = Literal["top-left", "top-right", "bottom-left", "bottom-right", "center"]
ProfileName = Literal["tiktok", "facebook", "youtube", "instagram"]


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ModelsConfig(CamelModel):
    text: str | None = None
    video: str = Field(min_length=1)
    tts: str | None = None


class WatermarkConfig(CamelModel):
    enabled: bool = False
    text: str | None = None
    position: WatermarkPosition = "bottom-right"
    opacity: float = Field(default=0.7, ge=0, le=1)
    size: int = Field(default=24, ge=8, le=200)
    color: str = "white"


class SubtitleConfig(CamelModel):
    enabled: bool = False
    style: str | None = None
    position: Literal["top", "center", "bottom"] = "bottom"
    color: str | None = None


class VideoCreateRequest(CamelModel):
    product_id: str = Field(alias="productId", min_length=1)
    mode: Literal["auto", "manual"]
    title: str | None = None
    images: list[str] = Field(default_factory=list)
    script: str | None = None
    camera_angles: list[str] = Field(default_factory=list, alias="cameraAngles")
    aspect_ratio: Literal["9:16", "16:9", "1:1"] = Field(alias="aspectRatio")
    duration: int = Field(ge=5, le=180)
    style: str | None = None
    voice: str | None = None
    music: str | None = None
    models: ModelsConfig
    watermark: WatermarkConfig = Field(default_factory=WatermarkConfig)
    subtitle: SubtitleConfig = Field(default_factory=SubtitleConfig)
    target_platform: ProfileName | None = Field(default=None, alias="targetPlatform")

    @field_validator("product_id")
    @classmethod
    def strip_product_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("productId is required")
        return value

    @model_validator(mode="after")
    def manual_mode_needs_material(self) -> "VideoCreateRequest":
        if self.mode == "manual":
            if not self.images:
                raise ValueError("manual mode requires at least one image")
            if not (self.script and self.script.strip()):
                raise ValueError("manual mode requires a script")
        if self.watermark.enabled and not (self.watermark.text and self.watermark.text.strip()):
            raise ValueError("watermark.text is required when watermark is enabled")
        return self


class VideoCreateResponse(CamelModel):
    success: bool = True
    message: str
    video_id: str = Field(serialization_alias="videoId")
    status: str = "processing"
    status_url: str = Field(serialization_alias="statusUrl")


class VideoUpdateRequest(BaseModel):
    title: str | None = None
    script: str | None = None


class PostRead(BaseModel):
    id: str
    video_id: str
    platform: str
    caption: str | None = None
    hashtags: list[str] | None = None
    status: str
    scheduled_at: datetime | None = None
    posted_at: datetime | None = None
    external_post_id: str | None = None
    external_post_url: str | None = None
    error_message: str | None = None
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    clicks: int = 0
    analytics_updated_at: datetime | None = None
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class VideoRead(BaseModel):
    id: str
    product_id: str | None = None
    title: str | None = None
    script: str | None = None
    duration: float | None = None
    aspect_ratio: str
    style: str | None = None
    voice: str | None = None
    status: str
    public_url: str | None = None
    thumbnail_url: str | None = None
    original_file_id: str | None = None
    optimized_file_id: str | None = None
    thumbnail_file_id: str | None = None
    audio_file_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class VideoDetail(VideoRead):
    posts: list[PostRead] = Field(default_factory=list)


class PostCreateRequest(CamelModel):
    """Shape checks only; missing fields are reported with specific error codes."""

    video_id: str | None = Field(default=None, alias="videoId")
    platforms: list[str] = Field(default_factory=list)
    caption: str | None = None
    captions: dict[str, str] = Field(default_factory=dict)
    hashtags: dict[str, list[str]] = Field(default_factory=dict)
    schedule_at: datetime | None = Field(default=None, alias="scheduleAt")


class RescheduleRequest(CamelModel):
    scheduled_at: datetime | None = Field(default=None, alias="scheduledAt")
    caption: str | None = None
    hashtags: list[str] | None = None


class PublishItemResult(BaseModel):
    post_id: str
    platform: str
    success: bool
    status: str
    external_post_id: str | None = None
    external_post_url: str | None = None
    error: str | None = None
    skipped: bool = False


class BatchRunResponse(BaseModel):
    processed: int
    successful: int
    failed: int
    skipped: int = 0
    results: list[PublishItemResult]
