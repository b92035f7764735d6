from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from rich.console import Console
from rich.table import Table

from .core.config import Settings, get_settings
from .core.db import create_engine, create_schema, create_session_factory
from .core.exceptions import NotFoundError, ToolError
from .core.jobs import JobTask
from .core.logging import configure_logging, level_from_name
from .db.models import AssetKind
from .media.thumbnails import render_thumbnail, thumbnail_specs
from .media.transcoder import check_toolchain, get_transcoder
from .pipeline.context import PipelineContext
from .pipeline.events import build_notifier
from .pipeline.progress import get_status
from .workers.tasks import InProcessJobBackend, execute_task

console = Console()


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(level_from_name(settings.log_level))

    if getattr(args, "check", False):
        _run_environment_check(settings)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    args.func(args, settings)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mediaflow developer CLI")
    parser.add_argument("--check", action="store_true", help="Validate presence of ffmpeg/ffprobe/OpenCV")

    subparsers = parser.add_subparsers(dest="command")

    probe_parser = subparsers.add_parser("probe", help="Print the technical metadata of a local file")
    probe_parser.add_argument("--file", required=True, help="Path to the source media file")
    probe_parser.set_defaults(func=_cmd_probe)

    thumbs_parser = subparsers.add_parser("thumbs", help="Render every thumbnail size class for a local file")
    thumbs_parser.add_argument("--file", required=True, help="Path to the source media file")
    thumbs_parser.add_argument("--out", default="thumbs", help="Directory receiving <size>.jpg files")
    thumbs_parser.set_defaults(func=_cmd_thumbs)

    status_parser = subparsers.add_parser("status", help="Show processing status and stage runs of an asset")
    status_parser.add_argument("--asset-id", required=True, type=int)
    status_parser.set_defaults(func=_cmd_status)

    process_parser = subparsers.add_parser("process", help="Run the pipeline for a pending asset in-process")
    process_parser.add_argument("--asset-id", required=True, type=int)
    process_parser.add_argument(
        "--stage",
        choices=[task.value for task in JobTask],
        default=JobTask.submit.value,
        help="Run a single optional stage instead of the full submit.",
    )
    process_parser.set_defaults(func=_cmd_process)

    init_parser = subparsers.add_parser("init-db", help="Create database tables (development only)")
    init_parser.set_defaults(func=_cmd_init_db)

    worker_parser = subparsers.add_parser("worker", help="Start an RQ worker for stage jobs")
    worker_parser.add_argument("--burst", action="store_true", help="Exit once the queue is empty")
    worker_parser.set_defaults(func=_cmd_worker)
    return parser


def _resolve_media(path_arg: str) -> tuple[Path, AssetKind]:
    media_path = Path(path_arg).expanduser().resolve()
    if not media_path.is_file():
        console.print(f"[red]File not found: {media_path}[/]")
        sys.exit(2)
    mime_type, _ = mimetypes.guess_type(media_path.name)
    if mime_type and mime_type.startswith("image/"):
        return media_path, AssetKind.image
    if mime_type and mime_type.startswith("video/"):
        return media_path, AssetKind.video
    console.print(f"[red]Cannot tell whether {media_path.name} is an image or a video[/]")
    sys.exit(2)


def _cmd_probe(args: argparse.Namespace, settings: Settings) -> None:
    media_path, kind = _resolve_media(args.file)
    transcoder = get_transcoder(settings)
    try:
        if kind is AssetKind.image:
            info = transcoder.inspect(media_path)
            payload: dict[str, Any] = {
                "kind": kind.value,
                "width": info.width,
                "height": info.height,
                "format": info.format,
                "color_model": info.color_model,
                "bit_depth": info.bit_depth,
            }
        else:
            probe = transcoder.probe(media_path, timeout_s=settings.metadata_timeout_s)
            payload = {
                "kind": kind.value,
                "width": probe.width,
                "height": probe.height,
                "duration_s": probe.duration_s,
                "codec": probe.codec,
                "bitrate": probe.bitrate,
                "frame_rate": probe.frame_rate,
                "extras": probe.extras,
            }
    except ToolError as exc:
        console.print(f"[red]{exc.tool} failed:[/] {exc}")
        sys.exit(3)
    console.print_json(data=payload)


def _cmd_thumbs(args: argparse.Namespace, settings: Settings) -> None:
    media_path, kind = _resolve_media(args.file)
    out_dir = Path(args.out).expanduser().resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    transcoder = get_transcoder(settings)

    written: dict[str, str] = {}
    for spec in thumbnail_specs(settings.thumbnail_sizes):
        output = out_dir / f"{spec.name}.jpg"
        try:
            render_thumbnail(
                transcoder,
                kind,
                media_path,
                output,
                spec,
                quality=settings.thumbnail_jpeg_quality,
                video_offset_s=settings.video_thumbnail_offset_s,
                timeout_s=settings.thumbnail_timeout_s,
            )
        except ToolError as exc:
            console.print(f"[yellow]{spec.name} skipped:[/] {exc}")
            continue
        written[spec.name] = str(output)
    console.print_json(data=written)
    if not written:
        sys.exit(3)


def _cmd_status(args: argparse.Namespace, settings: Settings) -> None:
    async def _status(context: PipelineContext) -> None:
        try:
            report = await get_status(context.repository, args.asset_id)
        except NotFoundError:
            console.print(f"[red]Asset {args.asset_id} not found[/]")
            sys.exit(2)
        console.print_json(data=report.model_dump(mode="json"))

        table = Table(title="Stage runs")
        for column in ("stage", "cycle", "status", "attempts", "error"):
            table.add_column(column)
        for run in await context.repository.list_stage_runs(args.asset_id):
            table.add_row(run["stage"], str(run["cycle"]), run["status"], str(run["attempts"]), run["error"] or "")
        console.print(table)

    _run_with_context(settings, _status)


def _cmd_process(args: argparse.Namespace, settings: Settings) -> None:
    async def _process(context: PipelineContext) -> None:
        notifier = build_notifier(settings)
        dispatcher = InProcessJobBackend(context, notifier)
        result = await execute_task(
            JobTask(args.stage),
            args.asset_id,
            None,
            context=context,
            notifier=notifier,
            dispatcher=dispatcher,
        )
        colour = "green" if result in {"completed", "succeeded"} else "yellow"
        console.print(f"[{colour}]{args.stage}: {result}[/]")

    _run_with_context(settings, _process)


def _cmd_init_db(args: argparse.Namespace, settings: Settings) -> None:
    async def _init() -> None:
        engine = create_engine(settings)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(_init())
    console.print(f"[green]Schema ready at {settings.database_url}[/]")


def _cmd_worker(args: argparse.Namespace, settings: Settings) -> None:  # pragma: no cover - requires redis
    from redis import Redis
    from rq import Queue, Worker

    connection = Redis.from_url(settings.redis_url)
    queue = Queue(settings.job_queue_name, connection=connection)
    console.print(f"[bold]Listening on {settings.job_queue_name}[/] ({settings.redis_url})")
    Worker([queue], connection=connection).work(burst=args.burst)


def _run_with_context(settings: Settings, body: Callable[[PipelineContext], Awaitable[None]]) -> None:
    async def _runner() -> None:
        engine = create_engine(settings)
        try:
            await body(PipelineContext.from_settings(settings, create_session_factory(engine)))
        finally:
            await engine.dispose()

    asyncio.run(_runner())


def _run_environment_check(settings: Settings) -> None:
    results = check_toolchain(settings)

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[red]Missing dependencies detected. Consult pyproject.toml and install ffmpeg.[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
