"""Asset state machine.

``pending --submit--> processing --(compression ok)--> completed``
``processing --(compression failed)--> failed``

The orchestrator is the only writer of ``status``. Both transitions are conditional updates,
so a second ``submit`` (or a late ``finalize``) against an asset that already moved on is a
reported no-op and the completion event fires at most once per processing cycle.
"""

from __future__ import annotations

import enum

from mediaflow.core.jobs import BaseJobBackend, JobTask
from mediaflow.core.logging import get_logger
from mediaflow.db.models import AssetStatus

from .context import PipelineContext
from .events import CompletionNotifier
from .stages import CompressionWorker, StageOutcome

OPTIONAL_TASKS = (JobTask.thumbnails, JobTask.metadata)


class SubmitResult(str, enum.Enum):
    completed = "completed"
    failed = "failed"
    noop = "noop"
    not_found = "not_found"


class Orchestrator:
    def __init__(self, context: PipelineContext, dispatcher: BaseJobBackend, notifier: CompletionNotifier):
        self.context = context
        self.dispatcher = dispatcher
        self.notifier = notifier
        self.logger = get_logger(component="orchestrator")

    async def submit(self, asset_id: int) -> SubmitResult:
        """Claim a pending asset, fan out the optional stages and drive compression.

        Returns:
            The terminal status reached, ``noop`` when the asset was not pending, or
            ``not_found`` when it is missing or was deleted mid-run.
        """
        repository = self.context.repository
        cycle = await repository.claim_for_processing(asset_id)
        if cycle is None:
            snapshot = await repository.get_snapshot(asset_id)
            if snapshot is None:
                self.logger.info("submit_skipped", asset_id=asset_id, reason="asset_not_found")
                return SubmitResult.not_found
            self.logger.info("submit_noop", asset_id=asset_id, status=snapshot.status.value)
            return SubmitResult.noop

        log = self.logger.bind(asset_id=asset_id, cycle=cycle)
        log.info("processing_started")

        for task in OPTIONAL_TASKS:
            try:
                await self.dispatcher.enqueue(task, asset_id, cycle)
            except Exception:
                # Optional stages are best effort; a dispatch failure only costs the artifact.
                log.exception("stage_dispatch_failed", task=task.value)

        outcome = await CompressionWorker(self.context).run(asset_id, cycle=cycle)
        return await self.finalize(asset_id, cycle, outcome)

    async def finalize(self, asset_id: int, cycle: int, outcome: StageOutcome) -> SubmitResult:
        """Commit the terminal status for ``cycle`` and publish the completion event."""
        log = self.logger.bind(asset_id=asset_id, cycle=cycle)
        if outcome.skipped:
            log.info("finalize_skipped", reason="asset_gone_or_superseded")
            return SubmitResult.not_found

        status = AssetStatus.completed if outcome.succeeded else AssetStatus.failed
        committed = await self.context.repository.commit_terminal_status(
            asset_id,
            cycle=cycle,
            status=status,
            error_message=outcome.error,
        )
        if not committed:
            log.info("finalize_noop", status=status.value)
            return SubmitResult.noop

        snapshot = await self.context.repository.get_snapshot(asset_id, include_deleted=True)
        if snapshot is not None:
            await self.notifier.publish(snapshot)

        if status is AssetStatus.completed:
            log.info("asset_completed")
            return SubmitResult.completed
        log.warning("asset_failed", error=outcome.error)
        return SubmitResult.failed


__all__ = ["Orchestrator", "SubmitResult", "OPTIONAL_TASKS"]
