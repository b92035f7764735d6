from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple


@dataclass(slots=True)
class VideoProbe:
    """Normalised technical facts about a video container."""

    width: int
    height: int
    duration_s: int
    codec: Optional[str]
    bitrate: Optional[int]
    frame_rate: Optional[float]
    extras: Dict[str, Any] = field(default_factory=dict)


def parse_probe_json(raw: Dict[str, Any]) -> VideoProbe:
    """Normalise ffprobe JSON into a :class:`VideoProbe`.

    Args:
        raw: The raw ffprobe JSON (``-show_format -show_streams``).

    Returns:
        The normalised probe result.

    Raises:
        ValueError: If the container holds no video stream.
    """
    format_info = raw.get("format") or {}
    streams = list(raw.get("streams") or [])
    video_streams, audio_streams = _split_streams(streams)
    if not video_streams:
        raise ValueError("no_video_stream")

    video = video_streams[0]
    extras: Dict[str, Any] = {
        "container": format_info.get("format_name") or "unknown",
        "stream_count": len(streams),
    }
    for key in ("profile", "pix_fmt", "color_space"):
        value = video.get(key)
        if value not in (None, "", "unknown"):
            extras[key] = value
    if audio_streams:
        audio = audio_streams[0]
        extras["audio_codec"] = audio.get("codec_name") or "unknown"
        channels = _int_or_none(audio.get("channels"))
        if channels is not None:
            extras["audio_channels"] = channels

    return VideoProbe(
        width=_int_or_none(video.get("width")) or 0,
        height=_int_or_none(video.get("height")) or 0,
        duration_s=_parse_duration_seconds(format_info.get("duration")),
        codec=video.get("codec_name") or None,
        bitrate=_int_or_none(format_info.get("bit_rate")),
        frame_rate=_frame_rate_from_stream(video),
        extras=extras,
    )


def _split_streams(streams: Iterable[Dict[str, Any]]) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split ffprobe streams into video and audio, ordered by stream index.

    Attached pictures (cover art) are not treated as video.
    """
    video_streams: List[Dict[str, Any]] = []
    audio_streams: List[Dict[str, Any]] = []
    for stream in sorted(streams, key=lambda item: item.get("index", 0)):
        codec_type = str(stream.get("codec_type") or "").lower()
        if codec_type == "video" and not _is_attached_picture(stream):
            video_streams.append(stream)
        elif codec_type == "audio":
            audio_streams.append(stream)
    return video_streams, audio_streams


def _is_attached_picture(stream: Dict[str, Any]) -> bool:
    disposition = stream.get("disposition")
    if not isinstance(disposition, dict):
        return False
    return bool(disposition.get("attached_pic"))


def _parse_duration_seconds(raw_value: Any) -> int:
    """Parse the container duration, truncated to whole seconds.

    Args:
        raw_value: The raw duration value.

    Returns:
        The duration in seconds, 0 when unavailable.
    """
    if raw_value in (None, "N/A", ""):
        return 0
    try:
        return int(float(raw_value))
    except (TypeError, ValueError):
        return 0


def _int_or_none(value: Any) -> Optional[int]:
    if value in (None, "N/A", ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _frame_rate_from_stream(stream: Dict[str, Any]) -> Optional[float]:
    """Get the frame rate from a stream, preferring the real base rate."""
    for key in ("r_frame_rate", "avg_frame_rate"):
        rate = parse_rational(stream.get(key))
        if rate is not None:
            return rate
    return None


def parse_rational(value: Optional[str]) -> Optional[float]:
    """Parse an ffprobe rational such as ``30000/1001`` into a decimal.

    Args:
        value: The rational number as a string.

    Returns:
        The value rounded to 2 decimals, or None if it's not valid.
    """
    if not value or value in {"0/0", "N/A"}:
        return None
    value = str(value).strip()
    if "/" not in value:
        try:
            parsed = float(value)
        except ValueError:
            return None
        return round(parsed, 2) if math.isfinite(parsed) else None
    numerator_str, denominator_str = value.split("/", 1)
    try:
        numerator = float(numerator_str)
        denominator = float(denominator_str)
    except ValueError:
        return None
    if math.isclose(denominator, 0.0) or not (math.isfinite(numerator) and math.isfinite(denominator)):
        return None
    return round(numerator / denominator, 2)


__all__ = ["VideoProbe", "parse_probe_json", "parse_rational"]
