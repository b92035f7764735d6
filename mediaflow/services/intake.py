from __future__ import annotations

import asyncio
import mimetypes
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Iterable, Optional
from uuid import uuid4

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from mediaflow.core.jobs import BaseJobBackend, JobTask
from mediaflow.core.logging import get_logger
from mediaflow.core.storage import BlobStore
from mediaflow.db.models import AssetKind
from mediaflow.db.repository import AssetRepository
from mediaflow.pipeline.progress import status_report
from mediaflow.schemas import AssetSnapshot, StatusReport


def normalize_mime_type(mime_type: str) -> str:
    return mime_type.split(";", 1)[0].strip().lower()


def detect_kind(mime_type: str) -> AssetKind:
    prefix = normalize_mime_type(mime_type).split("/", 1)[0]
    try:
        return AssetKind(prefix)
    except ValueError as exc:
        raise ValidationError(f"unsupported_media_kind: {mime_type}") from exc


def original_key(kind: AssetKind, filename: str, mime_type: str, *, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    extension = Path(filename).suffix.lower() or mimetypes.guess_extension(mime_type) or ""
    return (Path("media") / kind.value / f"{now:%Y}" / f"{now:%m}" / f"{uuid4().hex}{extension}").as_posix()


def _payload_size(payload: bytes | BinaryIO) -> int:
    if isinstance(payload, (bytes, bytearray)):
        return len(payload)
    payload.seek(0, os.SEEK_END)
    size = payload.tell()
    payload.seek(0)
    return size


class IntakeService:
    """Upload-side entry point: validates, stores the original, records it and submits it."""

    def __init__(
        self,
        settings: Settings,
        repository: AssetRepository,
        blob_store: BlobStore,
        dispatcher: BaseJobBackend,
    ):
        self.settings = settings
        self.repository = repository
        self.blob_store = blob_store
        self.dispatcher = dispatcher
        self.logger = get_logger(component="intake_service")

    async def upload(
        self,
        *,
        owner_id: str,
        filename: str,
        mime_type: str,
        payload: bytes | BinaryIO,
        tags: Iterable[str] = (),
        name: Optional[str] = None,
    ) -> AssetSnapshot:
        """Accept an upload and hand it to the pipeline.

        Args:
            owner_id: Identity of the uploading user.
            filename: Client-side filename, kept as ``original_name``.
            mime_type: Declared content type.
            payload: File bytes or a seekable binary stream.
            tags: Labels to attach; created on first use.
            name: Display name, defaults to ``filename``.

        Returns:
            The freshly created asset, still ``pending`` unless the job backend ran inline.

        Raises:
            ValidationError: The type is not allowed, or the file is empty or too large.
        """
        mime = normalize_mime_type(mime_type)
        if mime not in self.settings.allowed_mime_types:
            raise ValidationError(f"unsupported_mime_type: {mime_type}")
        kind = detect_kind(mime)

        size = _payload_size(payload)
        if size == 0:
            raise ValidationError("empty_upload")
        if size > self.settings.max_upload_size_bytes:
            raise ValidationError(f"upload_too_large: {size} > {self.settings.max_upload_size_bytes}")

        key = original_key(kind, filename, mime)
        await asyncio.to_thread(self.blob_store.write_blob, key, payload)
        try:
            asset = await self.repository.create_asset(
                owner_id=owner_id,
                kind=kind,
                size_bytes=size,
                mime_type=mime,
                original_path=key,
                original_name=Path(filename).name or key,
                name=name,
                tags=tags,
            )
        except Exception:
            await asyncio.to_thread(self.blob_store.delete, key)
            raise

        self.logger.info("asset_uploaded", asset_id=asset.id, owner_id=owner_id, kind=kind.value, size_bytes=size)
        await self._submit(asset.id)
        return await self.repository.get_snapshot(asset.id) or asset

    async def delete(self, asset_id: int, *, owner_id: Optional[str] = None) -> None:
        if not await self.repository.soft_delete(asset_id, owner_id=owner_id):
            raise NotFoundError(asset_id)
        self.logger.info("asset_deleted", asset_id=asset_id)

    async def reprocess(self, asset_id: int, *, owner_id: Optional[str] = None) -> AssetSnapshot:
        snapshot = await self.get_asset(asset_id, owner_id=owner_id)
        if not await self.repository.reset_for_reprocessing(asset_id):
            raise InvalidStateError(f"asset_not_terminal: {snapshot.status.value}")
        self.logger.info("asset_reprocess_requested", asset_id=asset_id, previous_status=snapshot.status.value)
        await self._submit(asset_id)
        return await self.get_asset(asset_id, owner_id=owner_id)

    async def get_asset(self, asset_id: int, *, owner_id: Optional[str] = None) -> AssetSnapshot:
        snapshot = await self.repository.get_snapshot(asset_id)
        if snapshot is None or (owner_id is not None and snapshot.owner_id != owner_id):
            raise NotFoundError(asset_id)
        return snapshot

    async def get_status(self, asset_id: int, *, owner_id: Optional[str] = None) -> StatusReport:
        return status_report(await self.get_asset(asset_id, owner_id=owner_id))

    async def _submit(self, asset_id: int) -> None:
        try:
            await self.dispatcher.enqueue(JobTask.submit, asset_id)
        except Exception:
            # The record stays pending and can be submitted again from the CLI.
            self.logger.exception("submit_dispatch_failed", asset_id=asset_id)


__all__ = ["IntakeService", "detect_kind", "normalize_mime_type", "original_key"]
