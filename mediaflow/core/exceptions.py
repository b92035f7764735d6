"""Error taxonomy shared by intake, the transcoder boundary and the pipeline."""

from __future__ import annotations

from typing import Optional


class MediaflowError(Exception):
    """Base exception for all pipeline errors."""


class ValidationError(MediaflowError):
    """Raised at intake when an upload is rejected before entering the pipeline."""


class NotFoundError(MediaflowError):
    """Raised when an asset is missing, soft-deleted, or owned by a newer processing cycle."""

    def __init__(self, asset_id: int, reason: str = "asset_not_found") -> None:
        super().__init__(f"{reason}: {asset_id}")
        self.asset_id = asset_id
        self.reason = reason


class InvalidStateError(MediaflowError):
    """Raised when an operation needs the asset in a different status."""


class ToolError(MediaflowError):
    """Base class for failures reported by the external tool boundary."""

    def __init__(self, message: str, *, tool: str, stderr: Optional[str] = None) -> None:
        super().__init__(message)
        self.tool = tool
        self.stderr = stderr


class TransientToolError(ToolError):
    """A tool invocation failed in a way that may succeed on retry."""


class ToolTimeoutError(TransientToolError):
    """A tool invocation exceeded its time ceiling and was terminated."""

    def __init__(self, message: str, *, tool: str, timeout_s: float, stderr: Optional[str] = None) -> None:
        super().__init__(message, tool=tool, stderr=stderr)
        self.timeout_s = timeout_s


class ToolExecutionError(TransientToolError):
    """A tool crashed, was missing, or exited non-zero."""

    def __init__(
        self,
        message: str,
        *,
        tool: str,
        returncode: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message, tool=tool, stderr=stderr)
        self.returncode = returncode


class UnsupportedInputError(ToolError):
    """The tool cannot handle the input at all. Never retried."""


class StageError(MediaflowError):
    """A stage gave up after exhausting its retry budget."""

    def __init__(self, stage: str, cause: BaseException, attempts: int) -> None:
        super().__init__(f"{stage} failed after {attempts} attempt(s): {cause}")
        self.stage = stage
        self.cause = cause
        self.attempts = attempts


class FatalStageError(StageError):
    """The mandatory stage failed; the asset ends up failed."""


class NonFatalStageError(StageError):
    """An optional stage failed; the artifact is simply absent."""


__all__ = [
    "MediaflowError",
    "ValidationError",
    "NotFoundError",
    "InvalidStateError",
    "ToolError",
    "TransientToolError",
    "ToolTimeoutError",
    "ToolExecutionError",
    "UnsupportedInputError",
    "StageError",
    "FatalStageError",
    "NonFatalStageError",
]
