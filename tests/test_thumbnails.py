from __future__ import annotations

from pathlib import Path

import pytest

from mediaflow.db.models import AssetKind
from mediaflow.media.thumbnails import (
    ThumbnailSpec,
    cover_geometry,
    fit_within,
    letterbox_filter,
    render_thumbnail,
    thumbnail_key,
    thumbnail_specs,
)


def test_specs_are_ordered_small_to_large():
    specs = thumbnail_specs({"large": (800, 800), "small": (150, 150), "medium": (300, 300)})

    assert [spec.name for spec in specs] == ["small", "medium", "large"]
    assert specs[1].box == (300, 300)


def test_thumbnail_key_is_deterministic():
    spec = ThumbnailSpec(name="medium", width=300, height=300)

    assert thumbnail_key(42, spec) == "media/thumbnails/42/medium.jpg"


def test_cover_geometry_fills_and_centres():
    assert cover_geometry(400, 200, (100, 100)) == (200, 100, 50, 0)
    assert cover_geometry(100, 400, (100, 100)) == (100, 400, 0, 150)


def test_cover_geometry_upscales_small_sources():
    scaled_w, scaled_h, crop_x, crop_y = cover_geometry(64, 48, (150, 150))

    assert scaled_h == 150
    assert scaled_w >= 150
    assert crop_x == (scaled_w - 150) // 2
    assert crop_y == 0


def test_fit_within_never_upscales():
    assert fit_within(4000, 3000, (1920, 1080)) == (1440, 1080)
    assert fit_within(100, 50, (1920, 1080)) == (100, 50)


@pytest.mark.parametrize("size", [(0, 10), (10, 0)])
def test_geometry_rejects_empty_images(size):
    with pytest.raises(ValueError):
        fit_within(*size, (10, 10))
    with pytest.raises(ValueError):
        cover_geometry(*size, (10, 10))


def test_letterbox_filter_pads_to_box():
    assert letterbox_filter((300, 200)) == (
        "scale=300:200:force_original_aspect_ratio=decrease,pad=300:200:(ow-iw)/2:(oh-ih)/2"
    )


def test_render_dispatches_on_kind(fake_transcoder, tmp_path: Path):
    spec = ThumbnailSpec(name="small", width=150, height=150)
    options = dict(quality=90, video_offset_s=1.0, timeout_s=5.0)

    render_thumbnail(fake_transcoder, AssetKind.image, tmp_path / "in.png", tmp_path / "a.jpg", spec, **options)
    render_thumbnail(fake_transcoder, AssetKind.video, tmp_path / "in.mp4", tmp_path / "b.jpg", spec, **options)

    assert fake_transcoder.calls == ["cover_thumbnail", "extract_frame"]
    assert (tmp_path / "b.jpg").read_text() == "frame 150x150 @1.0"
