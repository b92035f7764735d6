"""Stage workers: compression (mandatory), thumbnails and metadata (best effort).

A worker reloads the asset before acting, runs the blocking tool work on a thread with the
retry policy applied, and persists only its own fields through a field-scoped write. An asset
that was deleted or re-claimed for a newer cycle turns the run into a skipped no-op.
"""

from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Any, Callable, ClassVar, Optional, Tuple, Type

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import (
    FatalStageError,
    NonFatalStageError,
    NotFoundError,
    StageError,
    UnsupportedInputError,
)
from mediaflow.core.logging import get_logger
from mediaflow.db.models import AssetKind, Stage, StageRunStatus
from mediaflow.media.thumbnails import ThumbnailSpec, render_thumbnail, thumbnail_key, thumbnail_specs
from mediaflow.media.transcoder import TranscodeTarget
from mediaflow.schemas import AssetSnapshot, MetadataSnapshot

from .context import PipelineContext
from .retry import call_with_retries


@dataclass(slots=True, frozen=True)
class StageOutcome:
    stage: Stage
    asset_id: int
    status: StageRunStatus
    attempts: int = 0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is StageRunStatus.succeeded

    @property
    def skipped(self) -> bool:
        return self.status is StageRunStatus.skipped


def compressed_key(asset_id: int, extension: str) -> str:
    return (Path("media") / "compressed" / f"{asset_id}{extension}").as_posix()


class StageWorker(ABC):
    stage: ClassVar[Stage]
    error_cls: ClassVar[Type[StageError]] = NonFatalStageError

    def __init__(self, context: PipelineContext, *, sleep: Callable[[float], None] = time.sleep):
        self.context = context
        self.sleep = sleep
        self.logger = get_logger(component="stage_worker", stage=self.stage.value)

    @property
    def settings(self) -> Settings:
        return self.context.settings

    async def run(self, asset_id: int, *, cycle: Optional[int] = None) -> StageOutcome:
        """Run the stage once for ``asset_id``.

        Args:
            asset_id: Asset to process.
            cycle: Processing cycle the work was scheduled for. When given, an asset that has
                since moved to another cycle is left untouched.

        Returns:
            The stage outcome. Failures are reported here, never raised.
        """
        repository = self.context.repository
        log = self.logger.bind(asset_id=asset_id, cycle=cycle)

        snapshot = await repository.get_snapshot(asset_id)
        if snapshot is None:
            log.info("stage_skipped", reason="asset_not_found")
            return StageOutcome(self.stage, asset_id, StageRunStatus.skipped)
        if cycle is not None and snapshot.cycle != cycle:
            log.info("stage_skipped", reason="superseded", current_cycle=snapshot.cycle)
            return StageOutcome(self.stage, asset_id, StageRunStatus.skipped)

        run_cycle = snapshot.cycle
        await repository.start_stage_run(asset_id, self.stage, run_cycle)
        log.info(f"{self.stage.value}_started", kind=snapshot.kind.value)

        try:
            result, attempts = await asyncio.to_thread(self.execute, snapshot)
        except StageError as exc:
            return await self._fail(snapshot, run_cycle, exc)
        except Exception as exc:
            # Faults outside the tool taxonomy still end the stage, never the caller.
            log.exception(f"{self.stage.value}_crashed")
            return await self._fail(snapshot, run_cycle, self.error_cls(self.stage.value, exc, 1))

        try:
            await self.persist(snapshot, result, cycle)
        except NotFoundError as exc:
            await repository.finish_stage_run(
                asset_id, self.stage, run_cycle, status=StageRunStatus.skipped, attempts=attempts, error=exc.reason
            )
            log.info("stage_skipped", reason=exc.reason)
            return StageOutcome(self.stage, asset_id, StageRunStatus.skipped, attempts)

        await repository.finish_stage_run(
            asset_id, self.stage, run_cycle, status=StageRunStatus.succeeded, attempts=attempts
        )
        log.info(f"{self.stage.value}_succeeded", attempts=attempts)
        return StageOutcome(self.stage, asset_id, StageRunStatus.succeeded, attempts)

    async def _fail(self, snapshot: AssetSnapshot, run_cycle: int, exc: StageError) -> StageOutcome:
        await self.context.repository.finish_stage_run(
            snapshot.id,
            self.stage,
            run_cycle,
            status=StageRunStatus.failed,
            attempts=exc.attempts,
            error=str(exc.cause),
        )
        self.logger.warning(
            f"{self.stage.value}_failed", asset_id=snapshot.id, cycle=run_cycle, attempts=exc.attempts, error=str(exc)
        )
        return StageOutcome(self.stage, snapshot.id, StageRunStatus.failed, exc.attempts, str(exc))

    def execute(self, snapshot: AssetSnapshot) -> Tuple[Any, int]:
        return call_with_retries(
            partial(self.perform, snapshot),
            self.context.retry_policy,
            stage=self.stage.value,
            error_cls=self.error_cls,
            logger=self.logger.bind(asset_id=snapshot.id),
            sleep=self.sleep,
        )

    def perform(self, snapshot: AssetSnapshot) -> Any:
        """Blocking tool work for one attempt."""
        raise NotImplementedError

    @abstractmethod
    async def persist(self, snapshot: AssetSnapshot, result: Any, cycle: Optional[int]) -> None: ...

    def source_path(self, snapshot: AssetSnapshot) -> Path:
        path = self.context.blob_store.resolve_path(snapshot.original_path)
        if not path.is_file():
            raise UnsupportedInputError(f"original blob missing: {snapshot.original_path}", tool="blob_store")
        return path


class CompressionWorker(StageWorker):
    stage = Stage.compression
    error_cls = FatalStageError

    def perform(self, snapshot: AssetSnapshot) -> str:
        source = self.source_path(snapshot)
        target = TranscodeTarget.from_settings(self.settings, snapshot.kind)
        key = compressed_key(snapshot.id, target.extension)
        with self.context.blob_store.atomic_output(key) as staging:
            self.context.transcoder.transcode(
                source, staging, target, timeout_s=self.settings.compression_timeout_s
            )
        return key

    async def persist(self, snapshot: AssetSnapshot, result: str, cycle: Optional[int]) -> None:
        await self.context.repository.set_compressed_path(snapshot.id, result, cycle=cycle)


class ThumbnailWorker(StageWorker):
    stage = Stage.thumbnails

    def execute(self, snapshot: AssetSnapshot) -> Tuple[dict[str, str], int]:
        # Each size class gets its own retry budget; a class that still fails is left out.
        produced: dict[str, str] = {}
        attempts_total = 0
        last_cause: BaseException = ValueError("no thumbnail size classes configured")
        for spec in thumbnail_specs(self.settings.thumbnail_sizes):
            try:
                key, attempts = call_with_retries(
                    partial(self.render, snapshot, spec),
                    self.context.retry_policy,
                    stage=self.stage.value,
                    error_cls=self.error_cls,
                    logger=self.logger.bind(asset_id=snapshot.id, size=spec.name),
                    sleep=self.sleep,
                )
            except StageError as exc:
                attempts_total += exc.attempts
                last_cause = exc.cause
                self.logger.warning("thumbnail_size_skipped", asset_id=snapshot.id, size=spec.name, error=str(exc.cause))
                continue
            attempts_total += attempts
            produced[spec.name] = key

        if not produced:
            raise self.error_cls(self.stage.value, last_cause, attempts_total)
        return produced, attempts_total

    def render(self, snapshot: AssetSnapshot, spec: ThumbnailSpec) -> str:
        source = self.source_path(snapshot)
        key = thumbnail_key(snapshot.id, spec)
        with self.context.blob_store.atomic_output(key) as staging:
            render_thumbnail(
                self.context.transcoder,
                snapshot.kind,
                source,
                staging,
                spec,
                quality=self.settings.thumbnail_jpeg_quality,
                video_offset_s=self.settings.video_thumbnail_offset_s,
                timeout_s=self.settings.thumbnail_timeout_s,
            )
        return key

    async def persist(self, snapshot: AssetSnapshot, result: dict[str, str], cycle: Optional[int]) -> None:
        await self.context.repository.set_thumbnails(
            snapshot.id,
            result,
            canonical=self.settings.canonical_thumbnail,
            cycle=cycle,
        )


class MetadataWorker(StageWorker):
    stage = Stage.metadata

    def perform(self, snapshot: AssetSnapshot) -> MetadataSnapshot:
        source = self.source_path(snapshot)
        transcoder = self.context.transcoder
        if snapshot.kind is AssetKind.image:
            info = transcoder.inspect(source)
            return MetadataSnapshot(
                width=info.width,
                height=info.height,
                extras={
                    "format": info.format,
                    "color_model": info.color_model,
                    "bit_depth": info.bit_depth,
                },
            )
        probe = transcoder.probe(source, timeout_s=self.settings.metadata_timeout_s)
        return MetadataSnapshot(
            width=probe.width,
            height=probe.height,
            duration_s=probe.duration_s,
            codec=probe.codec,
            bitrate=probe.bitrate,
            frame_rate=probe.frame_rate,
            extras=dict(probe.extras),
        )

    async def persist(self, snapshot: AssetSnapshot, result: MetadataSnapshot, cycle: Optional[int]) -> None:
        await self.context.repository.replace_metadata(snapshot.id, result, cycle=cycle)


_WORKERS: dict[Stage, Type[StageWorker]] = {
    Stage.compression: CompressionWorker,
    Stage.thumbnails: ThumbnailWorker,
    Stage.metadata: MetadataWorker,
}


def worker_for(stage: Stage, context: PipelineContext) -> StageWorker:
    return _WORKERS[stage](context)


__all__ = [
    "StageOutcome",
    "StageWorker",
    "CompressionWorker",
    "ThumbnailWorker",
    "MetadataWorker",
    "compressed_key",
    "worker_for",
]
