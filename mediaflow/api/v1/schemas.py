from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from mediaflow.schemas import AssetSnapshot, StatusReport


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EnvCheckResponse(BaseModel):
    ffmpeg: bool
    ffprobe: bool
    opencv: bool


class MetadataResponse(BaseModel):
    width: Optional[int] = None
    height: Optional[int] = None
    duration_s: Optional[int] = None
    codec: Optional[str] = None
    bitrate: Optional[int] = None
    frame_rate: Optional[float] = None
    extras: Dict[str, Any] = Field(default_factory=dict)


class AssetResponse(BaseModel):
    id: int
    name: str
    original_name: str
    mime_type: str
    kind: str
    size_bytes: int
    status: str
    error_message: Optional[str] = None
    progress: int = Field(ge=0, le=100)
    original_path: str
    compressed_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    thumbnails: Dict[str, str] = Field(default_factory=dict)
    metadata: Optional[MetadataResponse] = None
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_snapshot(cls, snapshot: AssetSnapshot, progress: int) -> "AssetResponse":
        return cls(
            id=snapshot.id,
            name=snapshot.name,
            original_name=snapshot.original_name,
            mime_type=snapshot.mime_type,
            kind=snapshot.kind.value,
            size_bytes=snapshot.size_bytes,
            status=snapshot.status.value,
            error_message=snapshot.error_message,
            progress=progress,
            original_path=snapshot.original_path,
            compressed_path=snapshot.compressed_path,
            thumbnail_path=snapshot.thumbnail_path,
            thumbnails=dict(snapshot.thumbnails),
            metadata=MetadataResponse(**snapshot.metadata.model_dump()) if snapshot.metadata else None,
            tags=list(snapshot.tags),
            created_at=snapshot.created_at,
            updated_at=snapshot.updated_at,
        )


class StatusResponse(BaseModel):
    id: int
    status: str
    progress: int = Field(ge=0, le=100)
    error_message: Optional[str] = None
    has_compressed: bool
    has_thumbnails: bool
    has_metadata: bool

    @classmethod
    def from_report(cls, report: StatusReport) -> "StatusResponse":
        return cls(**report.model_dump(exclude={"status"}), status=report.status.value)


class StageRunResponse(BaseModel):
    stage: str
    cycle: int
    status: str
    attempts: int
    error: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[Any] = None


__all__ = [
    "HealthResponse",
    "EnvCheckResponse",
    "MetadataResponse",
    "AssetResponse",
    "StatusResponse",
    "StageRunResponse",
    "ErrorResponse",
]
