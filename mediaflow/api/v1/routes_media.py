from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, Response, UploadFile, status

from mediaflow.api import deps
from mediaflow.core.exceptions import InvalidStateError, NotFoundError, ValidationError
from mediaflow.pipeline.progress import compute_progress

from . import schemas


router = APIRouter(prefix="/media", tags=["media"])


def _split_tags(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


@router.post("", response_model=schemas.AssetResponse, status_code=status.HTTP_202_ACCEPTED)
async def upload_media(
    service: deps.IntakeDependency,
    context: deps.AuthDependency,
    response: Response,
    file: UploadFile = File(...),
    tags: Optional[str] = Form(default=None, description="Comma separated labels."),
    name: Optional[str] = Form(default=None),
) -> schemas.AssetResponse:
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="filename_required")
    try:
        snapshot = await service.upload(
            owner_id=context.owner_id,
            filename=file.filename,
            mime_type=file.content_type or "application/octet-stream",
            payload=file.file,
            tags=_split_tags(tags),
            name=name,
        )
    except ValidationError as exc:
        message = str(exc)
        if message.startswith("upload_too_large"):
            raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=message) from exc
        if message.startswith("unsupported_"):
            raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=message) from exc
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message) from exc
    finally:
        await file.close()

    response.headers["Location"] = f"/v1/media/{snapshot.id}/status"
    return schemas.AssetResponse.from_snapshot(snapshot, compute_progress(snapshot))


@router.get("/{asset_id}", response_model=schemas.AssetResponse)
async def get_media(
    asset_id: int,
    service: deps.IntakeDependency,
    context: deps.AuthDependency,
) -> schemas.AssetResponse:
    try:
        snapshot = await service.get_asset(asset_id, owner_id=context.owner_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return schemas.AssetResponse.from_snapshot(snapshot, compute_progress(snapshot))


@router.get("/{asset_id}/status", response_model=schemas.StatusResponse)
async def get_media_status(
    asset_id: int,
    service: deps.IntakeDependency,
    context: deps.AuthDependency,
) -> schemas.StatusResponse:
    try:
        report = await service.get_status(asset_id, owner_id=context.owner_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return schemas.StatusResponse.from_report(report)


@router.get("/{asset_id}/stages", response_model=list[schemas.StageRunResponse])
async def list_media_stage_runs(
    asset_id: int,
    service: deps.IntakeDependency,
    repository: deps.RepositoryDependency,
    context: deps.AuthDependency,
) -> list[schemas.StageRunResponse]:
    try:
        await service.get_asset(asset_id, owner_id=context.owner_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    runs = await repository.list_stage_runs(asset_id)
    return [schemas.StageRunResponse(**run) for run in runs]


@router.post("/{asset_id}/reprocess", response_model=schemas.AssetResponse, status_code=status.HTTP_202_ACCEPTED)
async def reprocess_media(
    asset_id: int,
    service: deps.IntakeDependency,
    context: deps.AuthDependency,
) -> schemas.AssetResponse:
    try:
        snapshot = await service.reprocess(asset_id, owner_id=context.owner_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    except InvalidStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return schemas.AssetResponse.from_snapshot(snapshot, compute_progress(snapshot))


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_media(
    asset_id: int,
    service: deps.IntakeDependency,
    context: deps.AuthDependency,
) -> Response:
    try:
        await service.delete(asset_id, owner_id=context.owner_id)
    except NotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="asset_not_found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


__all__ = ["router"]
