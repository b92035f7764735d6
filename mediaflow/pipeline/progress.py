from __future__ import annotations

from mediaflow.db.models import AssetStatus, Stage
from mediaflow.db.repository import AssetRepository
from mediaflow.schemas import AssetSnapshot, StatusReport

STAGE_WEIGHTS: dict[Stage, int] = {
    Stage.compression: 40,
    Stage.thumbnails: 30,
    Stage.metadata: 30,
}


def artifacts_present(snapshot: AssetSnapshot) -> dict[Stage, bool]:
    return {
        Stage.compression: bool(snapshot.compressed_path),
        Stage.thumbnails: bool(snapshot.thumbnails) or bool(snapshot.thumbnail_path),
        Stage.metadata: snapshot.metadata is not None,
    }


def compute_progress(snapshot: AssetSnapshot) -> int:
    """Coarse 0-100 estimate derived only from status and artifact presence.

    ``completed`` is always 100 and ``failed`` always 0; anything else is capped at 99 until
    the terminal transition is committed.
    """
    if snapshot.status is AssetStatus.completed:
        return 100
    if snapshot.status is AssetStatus.failed:
        return 0
    present = artifacts_present(snapshot)
    total = sum(weight for stage, weight in STAGE_WEIGHTS.items() if present[stage])
    return min(total, 99)


def status_report(snapshot: AssetSnapshot) -> StatusReport:
    present = artifacts_present(snapshot)
    return StatusReport(
        id=snapshot.id,
        status=snapshot.status,
        progress=compute_progress(snapshot),
        error_message=snapshot.error_message,
        has_compressed=present[Stage.compression],
        has_thumbnails=present[Stage.thumbnails],
        has_metadata=present[Stage.metadata],
    )


async def get_status(repository: AssetRepository, asset_id: int) -> StatusReport:
    return status_report(await repository.require_snapshot(asset_id))


__all__ = ["STAGE_WEIGHTS", "artifacts_present", "compute_progress", "get_status", "status_report"]
