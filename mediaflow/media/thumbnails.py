from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, List, Mapping, Tuple

from mediaflow.db.models import AssetKind

if TYPE_CHECKING:
    from .transcoder import Transcoder


@dataclass(slots=True, frozen=True)
class ThumbnailSpec:
    """A named size class with its target pixel box."""

    name: str
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int]:
        return self.width, self.height


def thumbnail_specs(sizes: Mapping[str, Tuple[int, int]]) -> List[ThumbnailSpec]:
    """Build size classes ordered from smallest to largest box."""
    specs = [ThumbnailSpec(name=name, width=int(box[0]), height=int(box[1])) for name, box in sizes.items()]
    return sorted(specs, key=lambda spec: (spec.width * spec.height, spec.name))


def thumbnail_key(asset_id: int, spec: ThumbnailSpec) -> str:
    return (Path("media") / "thumbnails" / str(asset_id) / f"{spec.name}.jpg").as_posix()


def cover_geometry(width: int, height: int, box: Tuple[int, int]) -> Tuple[int, int, int, int]:
    """Scale so the image fills ``box``, then centre-crop.

    Returns:
        ``(scaled_width, scaled_height, crop_x, crop_y)``.
    """
    if width <= 0 or height <= 0:
        raise ValueError("image has no pixels")
    box_w, box_h = box
    scale = max(box_w / width, box_h / height)
    scaled_w = max(box_w, math.ceil(width * scale))
    scaled_h = max(box_h, math.ceil(height * scale))
    return scaled_w, scaled_h, (scaled_w - box_w) // 2, (scaled_h - box_h) // 2


def fit_within(width: int, height: int, envelope: Tuple[int, int]) -> Tuple[int, int]:
    """Scale down (never up) so the image fits ``envelope``, preserving aspect ratio."""
    if width <= 0 or height <= 0:
        raise ValueError("image has no pixels")
    max_w, max_h = envelope
    scale = min(max_w / width, max_h / height, 1.0)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def letterbox_filter(box: Tuple[int, int]) -> str:
    """ffmpeg filter that fits a frame inside ``box`` and pads it to the exact box."""
    width, height = box
    return (
        f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
        f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
    )


def render_thumbnail(
    transcoder: "Transcoder",
    kind: AssetKind,
    source: Path,
    output: Path,
    spec: ThumbnailSpec,
    *,
    quality: int,
    video_offset_s: float,
    timeout_s: float,
) -> Path:
    """Render one size class of the thumbnail set into ``output``."""
    if kind is AssetKind.image:
        return transcoder.cover_thumbnail(source, output, box=spec.box, quality=quality)
    return transcoder.extract_frame(
        source,
        output,
        offset_s=video_offset_s,
        box=spec.box,
        timeout_s=timeout_s,
    )


__all__ = [
    "ThumbnailSpec",
    "thumbnail_specs",
    "thumbnail_key",
    "cover_geometry",
    "fit_within",
    "letterbox_filter",
    "render_thumbnail",
]
