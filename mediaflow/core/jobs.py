from __future__ import annotations

import asyncio
import enum
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Optional

from redis import Redis
from rq import Queue

from .config import Settings, get_settings

# Slack on top of the tool ceilings for blob I/O and database round trips.
JOB_TIMEOUT_MARGIN_S = 60


class JobTask(str, enum.Enum):
    submit = "submit"
    thumbnails = "thumbnails"
    metadata = "metadata"


def job_timeout_for(task: JobTask, settings: Settings) -> int:
    """Upper bound for one queued task: every attempt hitting its ceiling plus the backoff."""
    attempts = settings.job_max_retries
    backoff = sum(
        settings.job_retry_initial_delay_s * settings.job_retry_backoff_base**index for index in range(attempts - 1)
    )
    if task is JobTask.thumbnails:
        ceiling = settings.thumbnail_timeout_s * len(settings.thumbnail_sizes)
        backoff *= len(settings.thumbnail_sizes)
    elif task is JobTask.metadata:
        ceiling = settings.metadata_timeout_s
    else:
        ceiling = settings.compression_timeout_s
    return int(ceiling * attempts + backoff) + JOB_TIMEOUT_MARGIN_S


class BaseJobBackend(ABC):
    @abstractmethod
    async def enqueue(self, task: JobTask, asset_id: int, cycle: Optional[int] = None) -> None: ...


class ImmediateJobBackend(BaseJobBackend):
    async def enqueue(self, task: JobTask, asset_id: int, cycle: Optional[int] = None) -> None:
        from mediaflow.workers.tasks import run_task

        await asyncio.to_thread(run_task, task.value, asset_id, cycle)


class RQJobBackend(BaseJobBackend):
    def __init__(self, queue: Queue, settings: Settings):
        self.queue = queue
        self.settings = settings

    async def enqueue(self, task: JobTask, asset_id: int, cycle: Optional[int] = None) -> None:
        from mediaflow.workers.tasks import run_task

        self.queue.enqueue(
            run_task,
            task.value,
            asset_id,
            cycle,
            job_timeout=job_timeout_for(task, self.settings),
            description=f"{task.value}:{asset_id}",
        )


@lru_cache()
def get_job_backend() -> BaseJobBackend:
    settings = get_settings()
    backend = settings.normalized_job_backend
    if backend == "immediate":
        return ImmediateJobBackend()
    if backend == "rq":  # pragma: no cover - requires redis
        connection = Redis.from_url(settings.redis_url)
        return RQJobBackend(Queue(settings.job_queue_name, connection=connection), settings)
    raise ValueError(f"Unsupported job backend: {settings.job_queue_backend}")


__all__ = [
    "BaseJobBackend",
    "ImmediateJobBackend",
    "JobTask",
    "RQJobBackend",
    "get_job_backend",
    "job_timeout_for",
]
