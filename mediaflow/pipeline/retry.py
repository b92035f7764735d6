from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type, TypeVar

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import StageError, TransientToolError, UnsupportedInputError

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    attempts: int = 3
    initial_delay_s: float = 1.0
    backoff_base: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.job_max_retries,
            initial_delay_s=settings.job_retry_initial_delay_s,
            backoff_base=settings.job_retry_backoff_base,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number ``attempt`` (1-based)."""
        return self.initial_delay_s * (self.backoff_base ** (attempt - 1))


def call_with_retries(
    body: Callable[[], T],
    policy: RetryPolicy,
    *,
    stage: str,
    error_cls: Type[StageError],
    logger: Any,
    sleep: Callable[[float], None] = time.sleep,
) -> Tuple[T, int]:
    """Run ``body`` until it succeeds or the retry budget is spent.

    :class:`TransientToolError` and ``OSError`` (disk full, blob store I/O) are retried.
    Unsupported input fails on the spot.

    Returns:
        The body's result and the number of attempts it took.

    Raises:
        StageError: ``error_cls`` wrapping the last cause.
    """
    attempts = max(1, policy.attempts)
    for attempt in range(1, attempts + 1):
        try:
            return body(), attempt
        except UnsupportedInputError as exc:
            logger.warning(f"{stage}_input_unsupported", attempt=attempt, tool=exc.tool, error=str(exc))
            raise error_cls(stage, exc, attempt) from exc
        except (TransientToolError, OSError) as exc:
            logger.warning(
                f"{stage}_attempt_failed",
                attempt=attempt,
                max_attempts=attempts,
                tool=getattr(exc, "tool", "io"),
                error=str(exc),
            )
            if attempt == attempts:
                raise error_cls(stage, exc, attempt) from exc
            sleep(policy.delay_for(attempt))
    raise AssertionError("unreachable")  # pragma: no cover


__all__ = ["RetryPolicy", "call_with_retries"]
