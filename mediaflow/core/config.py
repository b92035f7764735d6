from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Secrets(BaseSettings):
    """Secrets configuration, loaded from the environment or a secrets management service."""

    model_config = SettingsConfigDict(
        env_prefix="MEDIAFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    jwt_secret: str = Field(default="change-me", description="Signing secret for bearer token validation.")

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Secrets":
        return cls()


class Settings(BaseSettings):
    """Centralised runtime configuration for the media pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="MEDIAFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Mediaflow API"
    environment: str = Field(default="development", description="Deployment environment label.")
    version: str = Field(default="0.1.0", description="API version for metadata and OpenAPI.")
    log_level: str = Field(default="info")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./mediaflow.db",
        description="SQLAlchemy compatible DSN.",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for background jobs.",
    )

    storage_root: Path = Field(default_factory=lambda: Path("storage"), description="Root for original and derived blobs.")

    max_upload_size_bytes: int = Field(default=512 * 1024 * 1024, description="Hard limit for uploads.")
    allowed_mime_types: tuple[str, ...] = Field(
        default=(
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/gif",
            "image/webp",
            "video/mp4",
            "video/mpeg",
            "video/quicktime",
            "video/x-msvideo",
            "video/webm",
        ),
        description="MIME types accepted at intake.",
    )

    jwt_algorithm: str = Field(default="HS256", description="Algorithm used for JWT tokens.")
    jwt_issuer: Optional[str] = None
    jwt_audience: Optional[str] = None

    job_queue_backend: Literal["immediate", "inline", "rq"] = Field(
        default="immediate",
        description="Backend for async jobs (inline executes inline; rq schedules via Redis).",
    )
    job_queue_name: str = Field(default="mediaflow-stages", description="RQ queue name for stage work.")
    job_max_retries: int = Field(default=3, ge=1, description="Maximum attempts per stage.")
    job_retry_backoff_base: float = Field(default=2.0, description="Backoff multiplier between retries.")
    job_retry_initial_delay_s: float = Field(default=1.0, ge=0, description="Initial delay before the first retry.")

    compression_timeout_s: float = Field(default=3600.0, gt=0)
    thumbnail_timeout_s: float = Field(default=600.0, gt=0)
    metadata_timeout_s: float = Field(default=300.0, gt=0)

    image_max_width: int = Field(default=1920, ge=1)
    image_max_height: int = Field(default=1080, ge=1)
    image_jpeg_quality: int = Field(default=85, ge=1, le=100)

    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"

    video_codec: str = "libx264"
    video_crf: int = Field(default=28, ge=0, le=51)
    video_preset: str = "medium"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    thumbnail_jpeg_quality: int = Field(default=90, ge=1, le=100)
    thumbnail_sizes: dict[str, tuple[int, int]] = Field(
        default_factory=lambda: {"small": (150, 150), "medium": (300, 300), "large": (800, 800)},
        description="Named thumbnail size classes, in generation order.",
    )
    canonical_thumbnail: str = Field(default="medium", description="Size class used as the thumbnail reference.")
    video_thumbnail_offset_s: float = Field(default=1.0, ge=0)

    completion_subscribers: tuple[str, ...] = Field(
        default=("mediaflow.pipeline.events:log_completion",),
        description="Dotted paths of callables notified when an asset reaches a terminal status.",
    )

    secrets: Secrets = Field(default_factory=Secrets, description="Holds sensitive configuration.")

    @property
    def environment_lower(self) -> str:
        return self.environment.lower()

    @property
    def normalized_job_backend(self) -> str:
        if self.job_queue_backend == "inline":
            return "immediate"
        return self.job_queue_backend


@lru_cache()
def get_settings() -> Settings:
    load_dotenv(".env", override=False)

    _ENV_ALIAS_MAP = {
        "MEDIAFLOW_ENV": "MEDIAFLOW_ENVIRONMENT",
        "MEDIAFLOW_DB_URL": "MEDIAFLOW_DATABASE_URL",
        "MEDIAFLOW_JOB_BACKEND": "MEDIAFLOW_JOB_QUEUE_BACKEND",
    }

    for source, target in _ENV_ALIAS_MAP.items():
        value = os.getenv(source)
        if value:
            os.environ[target] = value

    settings = Settings()
    secrets = Secrets.from_settings(settings)

    if settings.environment_lower == "production" and secrets.jwt_secret == "change-me":
        raise ValueError("Production environment must have a non-default JWT secret.")

    if settings.canonical_thumbnail not in settings.thumbnail_sizes:
        raise ValueError(f"canonical_thumbnail {settings.canonical_thumbnail!r} is not a configured size class")

    settings.secrets = secrets
    return settings


__all__ = ["Settings", "Secrets", "get_settings"]
