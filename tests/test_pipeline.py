from __future__ import annotations

import asyncio
import sqlite3

import pytest

from mediaflow.core.exceptions import NotFoundError, ToolExecutionError, ToolTimeoutError, UnsupportedInputError
from mediaflow.db.models import AssetKind, AssetStatus, StageRunStatus
from mediaflow.pipeline.orchestrator import SubmitResult
from mediaflow.pipeline.progress import compute_progress, get_status, status_report
from mediaflow.pipeline.stages import CompressionWorker, MetadataWorker, ThumbnailWorker


def _db_path(settings) -> str:
    return settings.database_url.split("///", 1)[1]


def _stage_statuses(runs, cycle):
    return {run["stage"]: run["status"] for run in runs if run["cycle"] == cycle}


def test_image_progress_builds_up_then_completes(run_pipeline):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        assert compute_progress(asset) == 0

        await CompressionWorker(h.context).run(asset.id)
        after_compression = await h.repository.get_snapshot(asset.id)
        await ThumbnailWorker(h.context).run(asset.id)
        after_thumbnails = await h.repository.get_snapshot(asset.id)
        await MetadataWorker(h.context).run(asset.id)
        after_metadata = await h.repository.get_snapshot(asset.id)

        result = await h.orchestrator.submit(asset.id)
        final = await h.repository.get_snapshot(asset.id)
        return after_compression, after_thumbnails, after_metadata, result, final

    after_compression, after_thumbnails, after_metadata, result, final = run_pipeline(scenario)

    assert after_compression.status is AssetStatus.pending
    assert compute_progress(after_compression) == 40
    assert compute_progress(after_thumbnails) == 70
    assert compute_progress(after_metadata) == 99
    assert result is SubmitResult.completed
    assert final.status is AssetStatus.completed
    assert compute_progress(final) == 100
    assert final.error_message is None


def test_image_submit_walks_pending_processing_completed(run_pipeline, fake_transcoder):
    observed: list[str] = []

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)

        def peek_status() -> None:
            with sqlite3.connect(_db_path(h.settings)) as conn:
                row = conn.execute("SELECT status FROM assets WHERE id = ?", (asset.id,)).fetchone()
            observed.append(row[0])

        fake_transcoder.hooks["transcode"] = peek_status
        before = asset.status
        result = await h.orchestrator.submit(asset.id)
        final = await h.repository.get_snapshot(asset.id)
        runs = await h.repository.list_stage_runs(asset.id)
        return before, result, final, runs, list(h.events)

    before, result, final, runs, events = run_pipeline(scenario)

    assert before is AssetStatus.pending
    assert observed == ["processing"]
    assert result is SubmitResult.completed
    assert final.status is AssetStatus.completed
    assert final.cycle == 1
    assert final.compressed_path == f"media/compressed/{final.id}.jpg"
    assert set(final.thumbnails) == {"small", "medium", "large"}
    assert final.thumbnail_path == final.thumbnails["medium"]
    assert final.metadata is not None and final.metadata.width == 640
    assert final.metadata.extras["color_model"] == "rgb"
    assert _stage_statuses(runs, 1) == {
        "compression": "succeeded",
        "thumbnails": "succeeded",
        "metadata": "succeeded",
    }
    assert len(events) == 1
    assert events[0].status is AssetStatus.completed
    assert events[0].compressed_path == final.compressed_path


def test_video_compression_timeout_fails_asset(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always(
        "transcode", ToolTimeoutError("ffmpeg exceeded 3600s and was terminated", tool="ffmpeg", timeout_s=3600)
    )

    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        result = await h.orchestrator.submit(asset.id)
        return result, await h.repository.get_snapshot(asset.id), list(h.events)

    result, final, events = run_pipeline(scenario)

    assert result is SubmitResult.failed
    assert final.status is AssetStatus.failed
    assert final.error_message
    assert "compression failed after 3 attempt(s)" in final.error_message
    assert compute_progress(final) == 0
    assert fake_transcoder.count("transcode") == 3
    # Thumbnails landed before compression gave up; they are kept.
    assert set(final.thumbnails) == {"small", "medium", "large"}
    assert final.metadata is not None and final.metadata.frame_rate == 29.97
    assert final.compressed_path is None
    assert [event.status for event in events] == [AssetStatus.failed]


def test_thumbnail_failure_is_not_fatal(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("cover_thumbnail", ToolExecutionError("opencv crashed", tool="opencv", returncode=-11))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        result = await h.orchestrator.submit(asset.id)
        final = await h.repository.get_snapshot(asset.id)
        return result, final, await h.repository.list_stage_runs(asset.id)

    result, final, runs = run_pipeline(scenario)

    assert result is SubmitResult.completed
    assert final.status is AssetStatus.completed
    assert final.thumbnails == {}
    assert final.thumbnail_path is None
    assert final.metadata is not None
    assert compute_progress(final) == 100
    assert fake_transcoder.count("cover_thumbnail") == 9
    assert _stage_statuses(runs, 1)["thumbnails"] == "failed"
    thumbnails = next(run for run in runs if run["stage"] == "thumbnails")
    assert thumbnails["error"] == "opencv crashed"
    assert thumbnails["attempts"] == 9

    report = status_report(final)
    assert report.has_thumbnails is False
    assert report.has_metadata is True


def test_concurrent_submits_run_compression_once(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        results = await asyncio.gather(h.orchestrator.submit(asset.id), h.orchestrator.submit(asset.id))
        return results, await h.repository.get_snapshot(asset.id), list(h.events)

    results, final, events = run_pipeline(scenario)

    assert sorted(result.value for result in results) == ["completed", "noop"]
    assert fake_transcoder.count("transcode") == 1
    assert final.status is AssetStatus.completed
    assert final.cycle == 1
    assert len(events) == 1


def test_resubmitting_terminal_asset_is_a_noop(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        await h.orchestrator.submit(asset.id)
        first = await h.repository.get_snapshot(asset.id)
        again = await h.orchestrator.submit(asset.id)
        second = await h.repository.get_snapshot(asset.id)
        return first, again, second, list(h.events)

    first, again, second, events = run_pipeline(scenario)

    assert again is SubmitResult.noop
    assert second == first
    assert len(events) == 1
    assert fake_transcoder.count("transcode") == 1


def test_resubmitting_failed_asset_is_a_noop(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("transcode", UnsupportedInputError("not media", tool="ffmpeg"))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        await h.orchestrator.submit(asset.id)
        first = await h.repository.get_snapshot(asset.id)
        again = await h.orchestrator.submit(asset.id)
        return first, again, await h.repository.get_snapshot(asset.id), list(h.events)

    first, again, second, events = run_pipeline(scenario)

    assert first.status is AssetStatus.failed
    assert again is SubmitResult.noop
    assert second == first
    assert len(events) == 1


def test_unsupported_input_is_not_retried(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("transcode", UnsupportedInputError("Invalid data found", tool="ffmpeg"))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        await h.orchestrator.submit(asset.id)
        return await h.repository.get_snapshot(asset.id)

    final = run_pipeline(scenario)

    assert fake_transcoder.count("transcode") == 1
    assert final.status is AssetStatus.failed
    assert "after 1 attempt(s)" in final.error_message


def test_transient_failures_are_retried_until_success(run_pipeline, fake_transcoder):
    fake_transcoder.fail_times("transcode", 2, ToolExecutionError("ffmpeg exited with 1", tool="ffmpeg", returncode=1))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        result = await h.orchestrator.submit(asset.id)
        return result, await h.repository.list_stage_runs(asset.id)

    result, runs = run_pipeline(scenario)

    assert result is SubmitResult.completed
    compression = [run for run in runs if run["stage"] == "compression"]
    assert compression == [
        {"stage": "compression", "cycle": 1, "status": "succeeded", "attempts": 3, "error": None}
    ]


def test_video_thumbnails_come_from_frames(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        await h.orchestrator.submit(asset.id)
        return await h.repository.get_snapshot(asset.id)

    final = run_pipeline(scenario)

    assert fake_transcoder.count("extract_frame") == 3
    assert fake_transcoder.count("cover_thumbnail") == 0
    assert final.compressed_path == f"media/compressed/{final.id}.mp4"
    assert final.metadata.duration_s == 12
    assert final.metadata.codec == "h264"


def test_partial_thumbnail_set_is_kept(run_pipeline, fake_transcoder):
    fake_transcoder.failing_boxes.add((800, 800))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        outcome = await ThumbnailWorker(h.context).run(asset.id)
        return outcome, await h.repository.get_snapshot(asset.id)

    outcome, snapshot = run_pipeline(scenario)

    assert outcome.succeeded
    assert set(snapshot.thumbnails) == {"small", "medium"}
    assert snapshot.thumbnail_path == f"media/thumbnails/{snapshot.id}/medium.jpg"


def test_missing_canonical_size_leaves_reference_empty(run_pipeline, fake_transcoder):
    fake_transcoder.failing_boxes.add((300, 300))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        await ThumbnailWorker(h.context).run(asset.id)
        return await h.repository.get_snapshot(asset.id)

    snapshot = run_pipeline(scenario)

    assert set(snapshot.thumbnails) == {"small", "large"}
    assert snapshot.thumbnail_path is None
    assert compute_progress(snapshot) == 30


def test_optional_stages_are_idempotent(run_pipeline):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        await ThumbnailWorker(h.context).run(asset.id)
        await MetadataWorker(h.context).run(asset.id)
        once = await h.repository.get_snapshot(asset.id)
        await ThumbnailWorker(h.context).run(asset.id)
        await MetadataWorker(h.context).run(asset.id)
        twice = await h.repository.get_snapshot(asset.id)
        return once, twice

    once, twice = run_pipeline(scenario)

    assert twice.thumbnails == once.thumbnails
    assert twice.thumbnail_path == once.thumbnail_path
    assert twice.metadata == once.metadata
    assert twice.status == once.status
    assert compute_progress(twice) == compute_progress(once) == 60


def test_stage_scheduled_for_old_cycle_is_skipped(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        outcome = await MetadataWorker(h.context).run(asset.id, cycle=asset.cycle + 5)
        return outcome, await h.repository.get_snapshot(asset.id)

    outcome, snapshot = run_pipeline(scenario)

    assert outcome.skipped
    assert snapshot.metadata is None
    assert fake_transcoder.count("inspect") == 0


def test_stage_on_deleted_asset_is_a_silent_noop(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        await h.repository.soft_delete(asset.id)
        outcome = await ThumbnailWorker(h.context).run(asset.id)
        result = await h.orchestrator.submit(asset.id)
        return outcome, result

    outcome, result = run_pipeline(scenario)

    assert outcome.skipped
    assert result is SubmitResult.not_found
    assert fake_transcoder.calls == []


def test_asset_deleted_during_compression_never_finalizes(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)

        def delete_behind_the_pipeline() -> None:
            with sqlite3.connect(_db_path(h.settings)) as conn:
                conn.execute("UPDATE assets SET deleted_at = CURRENT_TIMESTAMP WHERE id = ?", (asset.id,))

        fake_transcoder.hooks["transcode"] = delete_behind_the_pipeline
        result = await h.orchestrator.submit(asset.id)
        return result, await h.repository.get_snapshot(asset.id, include_deleted=True), list(h.events)

    result, snapshot, events = run_pipeline(scenario)

    assert result is SubmitResult.not_found
    assert snapshot.compressed_path is None
    assert snapshot.status is AssetStatus.processing
    assert events == []


def test_missing_original_fails_compression(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        h.context.blob_store.delete(asset.original_path)
        result = await h.orchestrator.submit(asset.id)
        return result, await h.repository.get_snapshot(asset.id)

    result, snapshot = run_pipeline(scenario)

    assert result is SubmitResult.failed
    assert "original blob missing" in snapshot.error_message
    assert fake_transcoder.calls == []


def test_optional_stage_may_still_write_to_failed_asset(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("transcode", UnsupportedInputError("not media", tool="ffmpeg"))
    fake_transcoder.fail_always("probe", ToolTimeoutError("ffprobe timed out", tool="ffprobe", timeout_s=300))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        await h.orchestrator.submit(asset.id)
        failed = await h.repository.get_snapshot(asset.id)
        del fake_transcoder._always["probe"]
        outcome = await MetadataWorker(h.context).run(asset.id, cycle=failed.cycle)
        return failed, outcome, await h.repository.get_snapshot(asset.id)

    failed, outcome, late = run_pipeline(scenario)

    assert failed.metadata is None
    assert outcome.succeeded
    assert late.metadata is not None
    assert late.status is AssetStatus.failed
    assert compute_progress(late) == 0


def test_reprocessing_opens_a_new_cycle(run_pipeline, fake_transcoder):
    fake_transcoder.fail_times("transcode", 3, ToolExecutionError("ffmpeg exited with 1", tool="ffmpeg", returncode=1))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        first = await h.orchestrator.submit(asset.id)
        reset = await h.repository.reset_for_reprocessing(asset.id)
        pending = await h.repository.get_snapshot(asset.id)
        second = await h.orchestrator.submit(asset.id)
        return first, reset, pending, second, await h.repository.get_snapshot(asset.id), list(h.events)

    first, reset, pending, second, final, events = run_pipeline(scenario)

    assert first is SubmitResult.failed
    assert reset is True
    assert pending.status is AssetStatus.pending
    assert pending.cycle == 2
    assert pending.error_message is None
    assert pending.thumbnails == {} and pending.metadata is None
    assert second is SubmitResult.completed
    assert final.cycle == 3
    assert [event.status for event in events] == [AssetStatus.failed, AssetStatus.completed]


def test_disk_full_during_compression_fails_asset(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("transcode", OSError(28, "No space left on device"))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.video)
        result = await h.orchestrator.submit(asset.id)
        snapshot = await h.repository.get_snapshot(asset.id)
        return result, snapshot, await h.repository.list_stage_runs(asset.id), list(h.events)

    result, final, runs, events = run_pipeline(scenario)

    assert result is SubmitResult.failed
    assert final.status is AssetStatus.failed
    assert "No space left on device" in final.error_message
    assert fake_transcoder.count("transcode") == 3
    compression = [run for run in runs if run["stage"] == "compression"]
    assert [(run["status"], run["attempts"]) for run in compression] == [("failed", 3)]
    assert [event.status for event in events] == [AssetStatus.failed]


def test_unexpected_compression_error_fails_asset(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("transcode", ValueError("bad key"))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        result = await h.orchestrator.submit(asset.id)
        snapshot = await h.repository.get_snapshot(asset.id)
        return result, snapshot, await h.repository.list_stage_runs(asset.id), list(h.events)

    result, final, runs, events = run_pipeline(scenario)

    assert result is SubmitResult.failed
    assert final.status is AssetStatus.failed
    assert final.error_message == "compression failed after 1 attempt(s): bad key"
    assert fake_transcoder.count("transcode") == 1
    assert _stage_statuses(runs, 1)["compression"] == "failed"
    assert len(events) == 1


def test_unexpected_thumbnail_error_is_not_fatal(run_pipeline, fake_transcoder):
    fake_transcoder.fail_always("cover_thumbnail", RuntimeError("codec table missing"))

    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        outcome = await ThumbnailWorker(h.context).run(asset.id)
        return outcome, await h.repository.get_snapshot(asset.id)

    outcome, snapshot = run_pipeline(scenario)

    assert outcome.status is StageRunStatus.failed
    assert "codec table missing" in outcome.error
    assert snapshot.thumbnails == {}
    assert snapshot.status is AssetStatus.pending


def test_stage_left_over_from_before_reprocessing_is_skipped(run_pipeline, fake_transcoder):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        await h.orchestrator.submit(asset.id)
        finished = await h.repository.get_snapshot(asset.id)
        await h.repository.reset_for_reprocessing(asset.id)
        thumbs = await ThumbnailWorker(h.context).run(asset.id, cycle=finished.cycle)
        metadata = await MetadataWorker(h.context).run(asset.id, cycle=finished.cycle)
        return finished, thumbs, metadata, await h.repository.get_snapshot(asset.id)

    finished, thumbs, metadata, snapshot = run_pipeline(scenario)

    assert finished.status is AssetStatus.completed
    assert thumbs.skipped and metadata.skipped
    assert snapshot.status is AssetStatus.pending
    assert snapshot.cycle == finished.cycle + 1
    assert snapshot.thumbnails == {}
    assert snapshot.thumbnail_path is None
    assert snapshot.metadata is None
    assert compute_progress(snapshot) == 0


def test_get_status_reads_the_live_record(run_pipeline):
    async def scenario(h):
        asset = await h.create_asset(AssetKind.image)
        before = await get_status(h.repository, asset.id)
        await h.orchestrator.submit(asset.id)
        after = await get_status(h.repository, asset.id)
        await h.repository.soft_delete(asset.id)
        with pytest.raises(NotFoundError):
            await get_status(h.repository, asset.id)
        return before, after

    before, after = run_pipeline(scenario)

    assert (before.status, before.progress) == (AssetStatus.pending, 0)
    assert (after.status, after.progress) == (AssetStatus.completed, 100)
