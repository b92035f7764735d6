from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from mediaflow.db.models import AssetKind, AssetStatus


class MetadataSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    width: Optional[int] = Field(default=None, description="Pixel width of the original.")
    height: Optional[int] = Field(default=None, description="Pixel height of the original.")
    duration_s: Optional[int] = Field(default=None, description="Duration in whole seconds (videos only).")
    codec: Optional[str] = Field(default=None, description="Codec identifier of the primary video stream.")
    bitrate: Optional[int] = Field(default=None, description="Container bitrate in bits per second.")
    frame_rate: Optional[float] = Field(default=None, description="Frames per second, rounded to 2 decimals.")
    extras: Dict[str, Any] = Field(default_factory=dict, description="Format-specific extras.")


class AssetSnapshot(BaseModel):
    """Point-in-time view of an asset record, handed to completion subscribers."""

    model_config = ConfigDict(frozen=True)

    id: int
    owner_id: str
    name: str
    original_name: str
    mime_type: str
    kind: AssetKind
    size_bytes: int
    original_path: str
    compressed_path: Optional[str] = None
    thumbnail_path: Optional[str] = None
    thumbnails: Dict[str, str] = Field(default_factory=dict)
    metadata: Optional[MetadataSnapshot] = None
    status: AssetStatus
    error_message: Optional[str] = None
    cycle: int = 0
    tags: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class StatusReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    status: AssetStatus
    progress: int = Field(ge=0, le=100)
    error_message: Optional[str] = None
    has_compressed: bool
    has_thumbnails: bool
    has_metadata: bool


__all__ = ["MetadataSnapshot", "AssetSnapshot", "StatusReport"]
