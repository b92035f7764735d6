"""External tool boundary: ffmpeg/ffprobe for video, OpenCV for stills.

Every call is synchronous and surfaces one of three distinguishable outcomes on failure:
:class:`ToolTimeoutError` (the child was killed at its ceiling), :class:`ToolExecutionError`
(crash, missing binary, non-zero exit) and :class:`UnsupportedInputError` (the input is not
media the tool understands).
"""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Sequence, Tuple

import cv2  # type: ignore

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import ToolExecutionError, ToolTimeoutError, UnsupportedInputError
from mediaflow.core.logging import get_logger
from mediaflow.db.models import AssetKind

from .ffprobe_parser import VideoProbe, parse_probe_json
from .thumbnails import cover_geometry, fit_within, letterbox_filter

_UNSUPPORTED_MARKERS = (
    "Invalid data found when processing input",
    "does not contain any stream",
    "no_video_stream",
)

_MAGIC_FORMATS: Tuple[Tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "jpeg"),
    (b"\x89PNG\r\n\x1a\n", "png"),
    (b"GIF87a", "gif"),
    (b"GIF89a", "gif"),
    (b"BM", "bmp"),
    (b"II*\x00", "tiff"),
    (b"MM\x00*", "tiff"),
)


@dataclass(slots=True, frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str
    color_model: str
    bit_depth: int


@dataclass(slots=True, frozen=True)
class TranscodeTarget:
    """What the compressed derivative should look like for one asset kind."""

    kind: AssetKind
    max_width: int = 1920
    max_height: int = 1080
    jpeg_quality: int = 85
    video_codec: str = "libx264"
    crf: int = 28
    preset: str = "medium"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    @property
    def extension(self) -> str:
        return ".jpg" if self.kind is AssetKind.image else ".mp4"

    @classmethod
    def from_settings(cls, settings: Settings, kind: AssetKind) -> "TranscodeTarget":
        return cls(
            kind=kind,
            max_width=settings.image_max_width,
            max_height=settings.image_max_height,
            jpeg_quality=settings.image_jpeg_quality,
            video_codec=settings.video_codec,
            crf=settings.video_crf,
            preset=settings.video_preset,
            audio_codec=settings.audio_codec,
            audio_bitrate=settings.audio_bitrate,
        )


class Transcoder:
    def __init__(self, *, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe"):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.logger = get_logger(component="transcoder")

    def probe(self, path: Path, *, timeout_s: float) -> VideoProbe:
        command = [
            self.ffprobe,
            "-v",
            "error",
            "-show_format",
            "-show_streams",
            "-print_format",
            "json",
            str(path),
        ]
        proc = self._run(command, timeout_s=timeout_s, tool="ffprobe")
        try:
            raw = json.loads(proc.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ToolExecutionError("ffprobe returned malformed JSON", tool="ffprobe") from exc
        try:
            return parse_probe_json(raw)
        except ValueError as exc:
            raise UnsupportedInputError(str(exc), tool="ffprobe") from exc

    def inspect(self, path: Path) -> ImageInfo:
        image = self._read_image(path, flags=cv2.IMREAD_UNCHANGED)
        height, width = image.shape[:2]
        channels = 1 if image.ndim == 2 else image.shape[2]
        return ImageInfo(
            width=int(width),
            height=int(height),
            format=_sniff_format(path),
            color_model=_color_model(channels),
            bit_depth=int(image.dtype.itemsize * 8),
        )

    def transcode(self, source: Path, output: Path, target: TranscodeTarget, *, timeout_s: float) -> Path:
        if target.kind is AssetKind.image:
            return self._compress_image(source, output, target)
        command = [
            self.ffmpeg,
            "-nostdin",
            "-v",
            "error",
            "-y",
            "-i",
            str(source),
            "-vf",
            "scale=trunc(iw/2)*2:trunc(ih/2)*2",
            "-c:v",
            target.video_codec,
            "-crf",
            str(target.crf),
            "-preset",
            target.preset,
            "-pix_fmt",
            "yuv420p",
            "-c:a",
            target.audio_codec,
            "-b:a",
            target.audio_bitrate,
            "-movflags",
            "+faststart",
            str(output),
        ]
        self._run(command, timeout_s=timeout_s, tool="ffmpeg")
        _require_output(output, tool="ffmpeg")
        return output

    def extract_frame(
        self,
        source: Path,
        output: Path,
        *,
        offset_s: float,
        box: Tuple[int, int],
        timeout_s: float,
    ) -> Path:
        # Clips shorter than the offset yield no frame; fall back to the first one.
        seeks = (offset_s, 0.0) if offset_s > 0 else (0.0,)
        for seek in seeks:
            command = [
                self.ffmpeg,
                "-nostdin",
                "-v",
                "error",
                "-ss",
                f"{max(seek, 0.0):.3f}",
                "-i",
                str(source),
                "-frames:v",
                "1",
                "-vf",
                letterbox_filter(box),
                "-q:v",
                "2",
                "-y",
                str(output),
            ]
            self._run(command, timeout_s=timeout_s, tool="ffmpeg")
            if output.exists() and output.stat().st_size > 0:
                return output
            self.logger.info("frame_missing_at_offset", source=str(source), offset_s=seek)
        raise ToolExecutionError("ffmpeg produced no frame", tool="ffmpeg")

    def cover_thumbnail(self, source: Path, output: Path, *, box: Tuple[int, int], quality: int) -> Path:
        image = self._read_image(source, flags=cv2.IMREAD_COLOR)
        height, width = image.shape[:2]
        scaled_w, scaled_h, crop_x, crop_y = cover_geometry(width, height, box)
        interpolation = cv2.INTER_AREA if scaled_w < width else cv2.INTER_CUBIC
        resized = self._resize(image, (scaled_w, scaled_h), interpolation)
        cropped = resized[crop_y : crop_y + box[1], crop_x : crop_x + box[0]]
        self._write_jpeg(output, cropped, quality)
        return output

    def _compress_image(self, source: Path, output: Path, target: TranscodeTarget) -> Path:
        image = self._read_image(source, flags=cv2.IMREAD_COLOR)
        height, width = image.shape[:2]
        new_w, new_h = fit_within(width, height, (target.max_width, target.max_height))
        if (new_w, new_h) != (width, height):
            image = self._resize(image, (new_w, new_h), cv2.INTER_AREA)
        self._write_jpeg(output, image, target.jpeg_quality)
        return output

    @staticmethod
    def _read_image(path: Path, *, flags: int) -> Any:
        if not path.is_file():
            raise ToolExecutionError(f"source missing: {path}", tool="opencv")
        image = cv2.imread(str(path), flags)
        if image is None or image.size == 0:
            raise UnsupportedInputError(f"cannot decode image: {path.name}", tool="opencv")
        return image

    @staticmethod
    def _resize(image: Any, size: Tuple[int, int], interpolation: int) -> Any:
        try:
            return cv2.resize(image, size, interpolation=interpolation)
        except cv2.error as exc:
            raise ToolExecutionError(f"resize to {size[0]}x{size[1]} failed: {exc}", tool="opencv") from exc

    @staticmethod
    def _write_jpeg(output: Path, image: Any, quality: int) -> None:
        try:
            written = cv2.imwrite(str(output), image, [cv2.IMWRITE_JPEG_QUALITY, int(quality)])
        except cv2.error as exc:
            raise ToolExecutionError(f"failed to encode {output.name}: {exc}", tool="opencv") from exc
        if not written:
            raise ToolExecutionError(f"failed to encode {output.name}", tool="opencv")

    def _run(self, command: Sequence[str], *, timeout_s: float, tool: str) -> subprocess.CompletedProcess:
        self.logger.debug("tool_run", tool=tool, command=list(command), timeout_s=timeout_s)
        try:
            # subprocess.run kills the child when the timeout expires.
            return subprocess.run(
                list(command),
                check=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired as exc:
            raise ToolTimeoutError(
                f"{tool} exceeded {timeout_s:.0f}s and was terminated",
                tool=tool,
                timeout_s=timeout_s,
                stderr=_text(exc.stderr),
            ) from exc
        except FileNotFoundError as exc:
            raise ToolExecutionError(f"{tool} binary not found", tool=tool) from exc
        except subprocess.CalledProcessError as exc:
            stderr = _text(exc.stderr) or ""
            if any(marker in stderr for marker in _UNSUPPORTED_MARKERS):
                raise UnsupportedInputError(
                    f"{tool} rejected input: {_last_line(stderr)}", tool=tool, stderr=stderr
                ) from exc
            raise ToolExecutionError(
                f"{tool} exited with {exc.returncode}: {_last_line(stderr)}",
                tool=tool,
                returncode=exc.returncode,
                stderr=stderr,
            ) from exc


def _require_output(output: Path, *, tool: str) -> None:
    if not output.exists() or output.stat().st_size == 0:
        raise ToolExecutionError(f"{tool} produced no output", tool=tool)


def _sniff_format(path: Path) -> str:
    with path.open("rb") as handle:
        header = handle.read(16)
    for magic, name in _MAGIC_FORMATS:
        if header.startswith(magic):
            return name
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "webp"
    return path.suffix.lstrip(".").lower() or "unknown"


def _color_model(channels: int) -> str:
    return {1: "gray", 2: "gray-alpha", 3: "rgb", 4: "rgba"}.get(channels, f"{channels}-channel")


def _text(value: Optional[str | bytes]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _last_line(stderr: str) -> str:
    lines = [line.strip() for line in stderr.splitlines() if line.strip()]
    return lines[-1] if lines else "no diagnostic output"


def check_toolchain(settings: Settings) -> dict[str, bool]:
    """Report which external tools are usable with the configured binaries."""
    results = {}
    for label, binary in (("ffmpeg", settings.ffmpeg_binary), ("ffprobe", settings.ffprobe_binary)):
        try:
            subprocess.run([binary, "-version"], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=True, timeout=10)
        except (OSError, subprocess.SubprocessError):
            results[label] = False
        else:
            results[label] = True
    results["opencv"] = bool(getattr(cv2, "__version__", None))
    return results


def get_transcoder(settings: Settings) -> Transcoder:
    return Transcoder(ffmpeg=settings.ffmpeg_binary, ffprobe=settings.ffprobe_binary)


__all__ = ["Transcoder", "TranscodeTarget", "ImageInfo", "VideoProbe", "check_toolchain", "get_transcoder"]
