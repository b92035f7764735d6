from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaflow.core.config import Settings
from mediaflow.core.storage import BlobStore, get_blob_store
from mediaflow.db.repository import AssetRepository
from mediaflow.media.transcoder import Transcoder, get_transcoder

from .retry import RetryPolicy


@dataclass(slots=True)
class PipelineContext:
    """Collaborators shared by the orchestrator and every stage worker."""

    settings: Settings
    repository: AssetRepository
    blob_store: BlobStore
    transcoder: Transcoder

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(self.settings)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> "PipelineContext":
        return cls(
            settings=settings,
            repository=AssetRepository(session_factory),
            blob_store=get_blob_store(settings),
            transcoder=get_transcoder(settings),
        )


__all__ = ["PipelineContext"]
