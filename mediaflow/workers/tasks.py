from __future__ import annotations

import asyncio
from typing import Optional

from mediaflow.core.config import get_settings
from mediaflow.core.db import create_engine, create_session_factory
from mediaflow.core.jobs import BaseJobBackend, JobTask, get_job_backend
from mediaflow.core.logging import configure_logging, level_from_name
from mediaflow.db.models import Stage
from mediaflow.pipeline.context import PipelineContext
from mediaflow.pipeline.events import CompletionNotifier, build_notifier
from mediaflow.pipeline.orchestrator import Orchestrator
from mediaflow.pipeline.stages import worker_for

_STAGE_FOR_TASK = {
    JobTask.thumbnails: Stage.thumbnails,
    JobTask.metadata: Stage.metadata,
}


class InProcessJobBackend(BaseJobBackend):
    """Runs stage tasks on the caller's event loop against an already built context."""

    def __init__(self, context: PipelineContext, notifier: CompletionNotifier):
        self.context = context
        self.notifier = notifier

    async def enqueue(self, task: JobTask, asset_id: int, cycle: Optional[int] = None) -> None:
        await execute_task(
            task,
            asset_id,
            cycle,
            context=self.context,
            notifier=self.notifier,
            dispatcher=self,
        )


async def execute_task(
    task: JobTask,
    asset_id: int,
    cycle: Optional[int],
    *,
    context: PipelineContext,
    notifier: CompletionNotifier,
    dispatcher: BaseJobBackend,
) -> str:
    """Dispatch one unit of work; returns the submit result or the stage run status."""
    if task is JobTask.submit:
        result = await Orchestrator(context, dispatcher, notifier).submit(asset_id)
        return result.value
    outcome = await worker_for(_STAGE_FOR_TASK[task], context).run(asset_id, cycle=cycle)
    return outcome.status.value


def run_task(task: str, asset_id: int, cycle: Optional[int] = None) -> str:
    """Entry-point executed by the job backend (RQ or inline)."""

    settings = get_settings()
    configure_logging(level_from_name(settings.log_level))
    job_task = JobTask(task)

    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    async def _runner() -> str:
        try:
            context = PipelineContext.from_settings(settings, session_factory)
            notifier = build_notifier(settings)
            dispatcher: BaseJobBackend
            if settings.normalized_job_backend == "immediate":
                dispatcher = InProcessJobBackend(context, notifier)
            else:
                dispatcher = get_job_backend()
            return await execute_task(
                job_task,
                asset_id,
                cycle,
                context=context,
                notifier=notifier,
                dispatcher=dispatcher,
            )
        finally:
            await engine.dispose()

    return asyncio.run(_runner())


__all__ = ["InProcessJobBackend", "execute_task", "run_task"]
