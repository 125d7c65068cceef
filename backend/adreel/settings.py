from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "adreel-factory"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "ADREEL_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/adreel",
        validation_alias=AliasChoices("DATABASE_URL", "ADREEL_DATABASE_URL"),
    )
    auto_create_tables: bool = Field(default=False, validation_alias=AliasChoices("AUTO_CREATE_TABLES", "ADREEL_AUTO_CREATE_TABLES"))
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "ADREEL_REDIS_URL"))
    celery_enabled: bool = Field(default=False, validation_alias=AliasChoices("CELERY_ENABLED", "ADREEL_CELERY_ENABLED"))

    # Scheduler / publisher
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "ADREEL_SCHEDULER_ENABLED"))
    publish_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("PUBLISH_INTERVAL_MINUTES", "ADREEL_PUBLISH_INTERVAL_MINUTES"))
    publish_batch_size: int = Field(default=50, validation_alias=AliasChoices("PUBLISH_BATCH_SIZE", "ADREEL_PUBLISH_BATCH_SIZE"))
    publish_item_delay_sec: float = Field(default=1.0, validation_alias=AliasChoices("PUBLISH_ITEM_DELAY_SEC", "ADREEL_PUBLISH_ITEM_DELAY_SEC"))
    publish_max_parallel_platforms: int = Field(default=1, validation_alias=AliasChoices("PUBLISH_MAX_PARALLEL_PLATFORMS", "ADREEL_PUBLISH_MAX_PARALLEL_PLATFORMS"))
    analytics_refresh_interval_minutes: int = Field(default=60, validation_alias=AliasChoices("ANALYTICS_REFRESH_INTERVAL_MINUTES", "ADREEL_ANALYTICS_REFRESH_INTERVAL_MINUTES"))
    analytics_refresh_limit: int = Field(default=100, validation_alias=AliasChoices("ANALYTICS_REFRESH_LIMIT", "ADREEL_ANALYTICS_REFRESH_LIMIT"))
    cron_secret: str | None = Field(default=None, validation_alias=AliasChoices("CRON_SECRET", "ADREEL_CRON_SECRET"))

    # Per-owner request limits on expensive endpoints
    rate_limit_enabled: bool = Field(default=True, validation_alias=AliasChoices("RATE_LIMIT_ENABLED", "ADREEL_RATE_LIMIT_ENABLED"))
    rate_limit_redis_enabled: bool = Field(default=False, validation_alias=AliasChoices("RATE_LIMIT_REDIS_ENABLED", "ADREEL_RATE_LIMIT_REDIS_ENABLED"))

    # Storage
    data_dir: str = Field(default="/data", validation_alias=AliasChoices("DATA_DIR", "ADREEL_DATA_DIR"))
    public_base_url: str = Field(default="http://localhost:8000", validation_alias=AliasChoices("PUBLIC_BASE_URL", "ADREEL_PUBLIC_BASE_URL"))
    music_dir: str = Field(default="/data/music", validation_alias=AliasChoices("MUSIC_DIR", "ADREEL_MUSIC_DIR"))

    # Transcoder
    ffmpeg_bin: str = Field(default="ffmpeg", validation_alias=AliasChoices("FFMPEG_BIN", "ADREEL_FFMPEG_BIN"))
    ffprobe_bin: str = Field(default="ffprobe", validation_alias=AliasChoices("FFPROBE_BIN", "ADREEL_FFPROBE_BIN"))
    pipeline_ffmpeg_timeout_sec: int = Field(default=1800, validation_alias=AliasChoices("PIPELINE_FFMPEG_TIMEOUT_SEC", "ADREEL_PIPELINE_FFMPEG_TIMEOUT_SEC"))
    max_ffmpeg_concurrency: int = Field(default=2, validation_alias=AliasChoices("MAX_FFMPEG_CONCURRENCY", "ADREEL_MAX_FFMPEG_CONCURRENCY"))
    redis_semaphore_enabled: bool = Field(default=False, validation_alias=AliasChoices("REDIS_SEMAPHORE_ENABLED", "ADREEL_REDIS_SEMAPHORE_ENABLED"))
    redis_semaphore_ttl_sec: int = Field(default=7200, validation_alias=AliasChoices("REDIS_SEMAPHORE_TTL_SEC", "ADREEL_REDIS_SEMAPHORE_TTL_SEC"))
    semaphore_wait_timeout_sec: int = Field(default=1200, validation_alias=AliasChoices("SEMAPHORE_WAIT_TIMEOUT_SEC", "ADREEL_SEMAPHORE_WAIT_TIMEOUT_SEC"))
    transform_max_attempts: int = Field(default=1, validation_alias=AliasChoices("TRANSFORM_MAX_ATTEMPTS", "ADREEL_TRANSFORM_MAX_ATTEMPTS"))
    subtitle_seconds_per_cue: float = Field(default=3.0, validation_alias=AliasChoices("SUBTITLE_SECONDS_PER_CUE", "ADREEL_SUBTITLE_SECONDS_PER_CUE"))
    thumbnail_offset_sec: float = Field(default=1.0, validation_alias=AliasChoices("THUMBNAIL_OFFSET_SEC", "ADREEL_THUMBNAIL_OFFSET_SEC"))

    # Retry policy for external calls
    retry_max_attempts: int = Field(default=3, validation_alias=AliasChoices("RETRY_MAX_ATTEMPTS", "ADREEL_RETRY_MAX_ATTEMPTS"))
    retry_timeout_ms: int = Field(default=30000, validation_alias=AliasChoices("RETRY_TIMEOUT_MS", "ADREEL_RETRY_TIMEOUT_MS"))
    retry_initial_backoff_ms: int = Field(default=1000, validation_alias=AliasChoices("RETRY_INITIAL_BACKOFF_MS", "ADREEL_RETRY_INITIAL_BACKOFF_MS"))
    retry_max_backoff_ms: int = Field(default=30000, validation_alias=AliasChoices("RETRY_MAX_BACKOFF_MS", "ADREEL_RETRY_MAX_BACKOFF_MS"))
    generation_timeout_ms: int = Field(default=600000, validation_alias=AliasChoices("GENERATION_TIMEOUT_MS", "ADREEL_GENERATION_TIMEOUT_MS"))

    # Generators
    generator_provider: str = Field(default="stub", validation_alias=AliasChoices("GENERATOR_PROVIDER", "ADREEL_GENERATOR_PROVIDER"))
    llm_api_url: str = Field(default="https://api.openai.com/v1", validation_alias=AliasChoices("LLM_API_URL", "ADREEL_LLM_API_URL"))
    llm_api_key: str | None = Field(default=None, validation_alias=AliasChoices("LLM_API_KEY", "ADREEL_LLM_API_KEY"))
    video_api_url: str | None = Field(default=None, validation_alias=AliasChoices("VIDEO_API_URL", "ADREEL_VIDEO_API_URL"))
    video_api_key: str | None = Field(default=None, validation_alias=AliasChoices("VIDEO_API_KEY", "ADREEL_VIDEO_API_KEY"))
    video_poll_interval_sec: float = Field(default=5.0, validation_alias=AliasChoices("VIDEO_POLL_INTERVAL_SEC", "ADREEL_VIDEO_POLL_INTERVAL_SEC"))
    video_poll_max_attempts: int = Field(default=120, validation_alias=AliasChoices("VIDEO_POLL_MAX_ATTEMPTS", "ADREEL_VIDEO_POLL_MAX_ATTEMPTS"))
    tts_api_url: str | None = Field(default=None, validation_alias=AliasChoices("TTS_API_URL", "ADREEL_TTS_API_URL"))
    tts_api_key: str | None = Field(default=None, validation_alias=AliasChoices("TTS_API_KEY", "ADREEL_TTS_API_KEY"))
    # stub | http | edge; empty follows GENERATOR_PROVIDER
    tts_provider: str | None = Field(default=None, validation_alias=AliasChoices("TTS_PROVIDER", "ADREEL_TTS_PROVIDER"))
    edge_tts_voice: str = Field(default="en-US-AriaNeural", validation_alias=AliasChoices("EDGE_TTS_VOICE", "ADREEL_EDGE_TTS_VOICE"))
    script_language: str = Field(default="th", validation_alias=AliasChoices("SCRIPT_LANGUAGE", "ADREEL_SCRIPT_LANGUAGE"))

    # Platforms
    tiktok_client_key: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_CLIENT_KEY", "ADREEL_TIKTOK_CLIENT_KEY"))
    tiktok_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_CLIENT_SECRET", "ADREEL_TIKTOK_CLIENT_SECRET"))
    tiktok_status_poll_interval_sec: float = Field(default=5.0, validation_alias=AliasChoices("TIKTOK_STATUS_POLL_INTERVAL_SEC", "ADREEL_TIKTOK_STATUS_POLL_INTERVAL_SEC"))
    tiktok_status_poll_attempts: int = Field(default=30, validation_alias=AliasChoices("TIKTOK_STATUS_POLL_ATTEMPTS", "ADREEL_TIKTOK_STATUS_POLL_ATTEMPTS"))
    youtube_client_id: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_CLIENT_ID", "ADREEL_YOUTUBE_CLIENT_ID"))
    youtube_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_CLIENT_SECRET", "ADREEL_YOUTUBE_CLIENT_SECRET"))
    facebook_graph_version: str = Field(default="v19.0", validation_alias=AliasChoices("FACEBOOK_GRAPH_VERSION", "ADREEL_FACEBOOK_GRAPH_VERSION"))

    # Notifications / status polling
    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "ADREEL_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "ADREEL_TELEGRAM_CHAT_ID"))
    job_retention_sec: int = Field(default=3600, validation_alias=AliasChoices("JOB_RETENTION_SEC", "ADREEL_JOB_RETENTION_SEC"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
