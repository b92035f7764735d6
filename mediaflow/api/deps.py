from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaflow.core.auth import AuthContext, get_auth_context
from mediaflow.core.config import Settings, get_settings
from mediaflow.core.jobs import get_job_backend
from mediaflow.core.storage import BlobStore
from mediaflow.db.repository import AssetRepository
from mediaflow.services.intake import IntakeService


def get_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    session_factory = request.app.state.session_factory
    if not isinstance(session_factory, async_sessionmaker):  # pragma: no cover - defensive
        raise RuntimeError("session_factory_not_configured")
    return session_factory


def get_blob_store(request: Request) -> BlobStore:
    blob_store: BlobStore = request.app.state.blob_store
    return blob_store


def get_app_settings() -> Settings:
    return get_settings()


def get_repository(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AssetRepository:
    return AssetRepository(session_factory)


def get_intake_service(
    repository: AssetRepository = Depends(get_repository),
    blob_store: BlobStore = Depends(get_blob_store),
    settings: Settings = Depends(get_app_settings),
) -> IntakeService:
    return IntakeService(settings, repository, blob_store, get_job_backend())


IntakeDependency = Annotated[IntakeService, Depends(get_intake_service)]
RepositoryDependency = Annotated[AssetRepository, Depends(get_repository)]
AuthDependency = Annotated[AuthContext, Depends(get_auth_context)]


__all__ = [
    "get_session_factory",
    "get_blob_store",
    "get_app_settings",
    "get_repository",
    "get_intake_service",
    "IntakeDependency",
    "RepositoryDependency",
    "AuthDependency",
]
