"""Narrow persistence interface used by intake, the orchestrator and the stage workers.

Every method opens its own short-lived session so that callers always observe the
committed state of the record, never an identity-map copy from before scheduling.
Writers are field-scoped ``UPDATE`` statements filtered on the asset id, liveness and,
where given, the processing cycle, so a stale or concurrent caller can never clobber
fields it does not own.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from mediaflow.core.exceptions import NotFoundError
from mediaflow.db.models import (
    Asset,
    AssetKind,
    AssetMetadata,
    AssetStatus,
    Stage,
    StageRun,
    StageRunStatus,
    Tag,
)
from mediaflow.schemas import AssetSnapshot, MetadataSnapshot

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str) -> str:
    return _SLUG_RE.sub("-", name.strip().lower()).strip("-")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssetRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_asset(
        self,
        *,
        owner_id: str,
        kind: AssetKind,
        size_bytes: int,
        mime_type: str,
        original_path: str,
        original_name: str,
        name: str | None = None,
        tags: Iterable[str] = (),
    ) -> AssetSnapshot:
        async with self._session_factory() as session:
            asset = Asset(
                owner_id=owner_id,
                name=name or original_name,
                original_name=original_name,
                mime_type=mime_type,
                kind=kind,
                size_bytes=size_bytes,
                original_path=original_path,
                status=AssetStatus.pending,
                cycle=0,
                tags=[],
            )
            session.add(asset)
            await session.flush()
            await self._attach_tags(session, asset.id, tags)
            await session.commit()
            asset_id = asset.id
        return await self.require_snapshot(asset_id)

    async def get_snapshot(self, asset_id: int, *, include_deleted: bool = False) -> AssetSnapshot | None:
        async with self._session_factory() as session:
            stmt = (
                select(Asset)
                .where(Asset.id == asset_id)
                .options(selectinload(Asset.metadata_record), selectinload(Asset.tags))
            )
            if not include_deleted:
                stmt = stmt.where(Asset.deleted_at.is_(None))
            asset = (await session.execute(stmt)).scalar_one_or_none()
            if asset is None:
                return None
            return _to_snapshot(asset)

    async def require_snapshot(self, asset_id: int) -> AssetSnapshot:
        snapshot = await self.get_snapshot(asset_id)
        if snapshot is None:
            raise NotFoundError(asset_id)
        return snapshot

    async def claim_for_processing(self, asset_id: int) -> int | None:
        """Move ``pending`` to ``processing`` and open a new cycle.

        Returns the new cycle number, or ``None`` when another caller already claimed the
        asset (or it is terminal, or gone).
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Asset)
                .where(
                    Asset.id == asset_id,
                    Asset.status == AssetStatus.pending,
                    Asset.deleted_at.is_(None),
                )
                .values(status=AssetStatus.processing, cycle=Asset.cycle + 1, error_message=None)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            cycle = (await session.execute(select(Asset.cycle).where(Asset.id == asset_id))).scalar_one()
            await session.commit()
            return cycle

    async def commit_terminal_status(
        self,
        asset_id: int,
        *,
        cycle: int,
        status: AssetStatus,
        error_message: str | None = None,
    ) -> bool:
        """Commit ``processing`` to a terminal status exactly once per cycle."""
        if not status.is_terminal:
            raise ValueError(f"not a terminal status: {status.value}")
        if status is AssetStatus.failed:
            error_message = (error_message or "").strip() or "processing failed"
        else:
            error_message = None

        async with self._session_factory() as session:
            result = await session.execute(
                update(Asset)
                .where(
                    Asset.id == asset_id,
                    Asset.cycle == cycle,
                    Asset.status == AssetStatus.processing,
                    Asset.deleted_at.is_(None),
                )
                .values(status=status, error_message=error_message)
            )
            await session.commit()
            return result.rowcount == 1

    async def set_compressed_path(self, asset_id: int, path: str, *, cycle: int | None = None) -> None:
        await self._scoped_update(asset_id, cycle, compressed_path=path)

    async def set_thumbnails(
        self,
        asset_id: int,
        thumbnails: dict[str, str],
        *,
        canonical: str | None,
        cycle: int | None = None,
    ) -> None:
        await self._scoped_update(
            asset_id,
            cycle,
            thumbnails=dict(thumbnails) or None,
            thumbnail_path=thumbnails.get(canonical) if canonical else None,
        )

    async def replace_metadata(
        self,
        asset_id: int,
        metadata: MetadataSnapshot,
        *,
        cycle: int | None = None,
    ) -> None:
        async with self._session_factory() as session:
            await self._ensure_live(session, asset_id, cycle)
            await session.execute(delete(AssetMetadata).where(AssetMetadata.asset_id == asset_id))
            session.add(
                AssetMetadata(
                    asset_id=asset_id,
                    width=metadata.width,
                    height=metadata.height,
                    duration_s=metadata.duration_s,
                    codec=metadata.codec,
                    bitrate=metadata.bitrate,
                    frame_rate=metadata.frame_rate,
                    extras=dict(metadata.extras),
                )
            )
            await session.commit()

    async def soft_delete(self, asset_id: int, *, owner_id: str | None = None) -> bool:
        async with self._session_factory() as session:
            stmt = update(Asset).where(Asset.id == asset_id, Asset.deleted_at.is_(None))
            if owner_id is not None:
                stmt = stmt.where(Asset.owner_id == owner_id)
            result = await session.execute(stmt.values(deleted_at=_utcnow()))
            await session.commit()
            return result.rowcount == 1

    async def reset_for_reprocessing(self, asset_id: int) -> bool:
        """Send a terminal asset back to ``pending`` with its derivatives cleared.

        The cycle moves on as well, so optional stages still queued for the finished cycle
        can no longer write onto the reset record.
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(Asset)
                .where(
                    Asset.id == asset_id,
                    Asset.status.in_([AssetStatus.completed, AssetStatus.failed]),
                    Asset.deleted_at.is_(None),
                )
                .values(
                    status=AssetStatus.pending,
                    error_message=None,
                    cycle=Asset.cycle + 1,
                    compressed_path=None,
                    thumbnails=None,
                    thumbnail_path=None,
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.execute(delete(AssetMetadata).where(AssetMetadata.asset_id == asset_id))
            await session.commit()
            return True

    async def attach_tags(self, asset_id: int, names: Iterable[str]) -> None:
        async with self._session_factory() as session:
            await self._ensure_live(session, asset_id, None)
            await self._attach_tags(session, asset_id, names)
            await session.commit()

    async def start_stage_run(self, asset_id: int, stage: Stage, cycle: int) -> None:
        async with self._session_factory() as session:
            run = await self._get_stage_run(session, asset_id, stage, cycle)
            if run is None:
                run = StageRun(asset_id=asset_id, stage=stage, cycle=cycle)
                session.add(run)
            run.status = StageRunStatus.running
            run.attempts = 0
            run.error = None
            run.started_at = _utcnow()
            run.finished_at = None
            await session.commit()

    async def finish_stage_run(
        self,
        asset_id: int,
        stage: Stage,
        cycle: int,
        *,
        status: StageRunStatus,
        attempts: int,
        error: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            run = await self._get_stage_run(session, asset_id, stage, cycle)
            if run is None:
                run = StageRun(asset_id=asset_id, stage=stage, cycle=cycle, started_at=_utcnow())
                session.add(run)
            run.status = status
            run.attempts = attempts
            run.error = error
            run.finished_at = _utcnow()
            await session.commit()

    async def list_stage_runs(self, asset_id: int) -> list[dict[str, Any]]:
        async with self._session_factory() as session:
            stmt = select(StageRun).where(StageRun.asset_id == asset_id).order_by(StageRun.cycle, StageRun.id)
            runs = (await session.execute(stmt)).scalars().all()
            return [
                {
                    "stage": run.stage.value,
                    "cycle": run.cycle,
                    "status": run.status.value,
                    "attempts": run.attempts,
                    "error": run.error,
                }
                for run in runs
            ]

    async def _scoped_update(self, asset_id: int, cycle: Optional[int], **values: Any) -> None:
        async with self._session_factory() as session:
            stmt = update(Asset).where(Asset.id == asset_id, Asset.deleted_at.is_(None))
            if cycle is not None:
                stmt = stmt.where(Asset.cycle == cycle)
            result = await session.execute(stmt.values(**values))
            await session.commit()
            if result.rowcount != 1:
                raise NotFoundError(asset_id, "asset_gone_or_superseded")

    @staticmethod
    async def _ensure_live(session: AsyncSession, asset_id: int, cycle: Optional[int]) -> None:
        stmt = select(Asset.id).where(Asset.id == asset_id, Asset.deleted_at.is_(None))
        if cycle is not None:
            stmt = stmt.where(Asset.cycle == cycle)
        if (await session.execute(stmt)).scalar_one_or_none() is None:
            raise NotFoundError(asset_id, "asset_gone_or_superseded")

    @staticmethod
    async def _get_stage_run(session: AsyncSession, asset_id: int, stage: Stage, cycle: int) -> StageRun | None:
        stmt = select(StageRun).where(
            StageRun.asset_id == asset_id,
            StageRun.stage == stage,
            StageRun.cycle == cycle,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    async def _attach_tags(session: AsyncSession, asset_id: int, names: Iterable[str]) -> None:
        wanted: dict[str, str] = {}
        for raw in names:
            name = raw.strip()
            slug = slugify(name)
            if slug:
                wanted.setdefault(slug, name)
        if not wanted:
            return

        existing = (await session.execute(select(Tag).where(Tag.slug.in_(list(wanted))))).scalars().all()
        by_slug = {tag.slug: tag for tag in existing}
        for slug, name in wanted.items():
            if slug not in by_slug:
                tag = Tag(name=name, slug=slug)
                session.add(tag)
                by_slug[slug] = tag
        await session.flush()

        asset = (
            await session.execute(select(Asset).where(Asset.id == asset_id).options(selectinload(Asset.tags)))
        ).scalar_one()
        current = {tag.slug for tag in asset.tags}
        for slug, tag in by_slug.items():
            if slug not in current:
                asset.tags.append(tag)


def _to_snapshot(asset: Asset) -> AssetSnapshot:
    metadata = None
    if asset.metadata_record is not None:
        record = asset.metadata_record
        metadata = MetadataSnapshot(
            width=record.width,
            height=record.height,
            duration_s=record.duration_s,
            codec=record.codec,
            bitrate=record.bitrate,
            frame_rate=record.frame_rate,
            extras=dict(record.extras or {}),
        )
    return AssetSnapshot(
        id=asset.id,
        owner_id=asset.owner_id,
        name=asset.name,
        original_name=asset.original_name,
        mime_type=asset.mime_type,
        kind=asset.kind,
        size_bytes=asset.size_bytes,
        original_path=asset.original_path,
        compressed_path=asset.compressed_path,
        thumbnail_path=asset.thumbnail_path,
        thumbnails=dict(asset.thumbnails or {}),
        metadata=metadata,
        status=asset.status,
        error_message=asset.error_message,
        cycle=asset.cycle,
        tags=sorted(tag.name for tag in asset.tags),
        created_at=asset.created_at,
        updated_at=asset.updated_at,
    )


__all__ = ["AssetRepository", "slugify"]
