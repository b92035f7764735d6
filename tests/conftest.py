import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable
from uuid import uuid4

import cv2
import jwt
import numpy as np
import pytest
from fastapi.testclient import TestClient

from mediaflow.core.config import Settings, get_settings
from mediaflow.core.db import create_engine, create_schema, create_session_factory
from mediaflow.core.exceptions import ToolExecutionError
from mediaflow.core.jobs import get_job_backend
from mediaflow.core.storage import LocalBlobStore
from mediaflow.db.models import AssetKind
from mediaflow.db.repository import AssetRepository
from mediaflow.main import create_app
from mediaflow.media.ffprobe_parser import VideoProbe
from mediaflow.media.transcoder import ImageInfo
from mediaflow.pipeline.context import PipelineContext
from mediaflow.pipeline.events import CompletionNotifier
from mediaflow.pipeline.orchestrator import Orchestrator
from mediaflow.schemas import AssetSnapshot
from mediaflow.workers.tasks import InProcessJobBackend

JWT_SECRET = "test-secret"
JWT_ISSUER = "mediaflow-test"
JWT_AUDIENCE = "mediaflow"


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default Mediaflow environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        get_job_backend.cache_clear()
        yield None
        get_job_backend.cache_clear()
        get_settings.cache_clear()
        return
    db_path = tmp_path / "mediaflow_test.db"
    storage_root = tmp_path / "storage"

    monkeypatch.setenv("MEDIAFLOW_ENV", "test")
    monkeypatch.setenv("MEDIAFLOW_LOG_LEVEL", "debug")
    monkeypatch.setenv("MEDIAFLOW_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("MEDIAFLOW_STORAGE_ROOT", str(storage_root))
    monkeypatch.setenv("MEDIAFLOW_JOB_BACKEND", "inline")
    monkeypatch.setenv("MEDIAFLOW_JOB_RETRY_INITIAL_DELAY_S", "0")
    monkeypatch.setenv("MEDIAFLOW_REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("MEDIAFLOW_JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("MEDIAFLOW_JWT_ISSUER", JWT_ISSUER)
    monkeypatch.setenv("MEDIAFLOW_JWT_AUDIENCE", JWT_AUDIENCE)

    get_settings.cache_clear()
    get_job_backend.cache_clear()
    settings = get_settings()

    async def _setup() -> None:
        engine = create_engine(settings)
        try:
            await create_schema(engine)
        finally:
            await engine.dispose()

    asyncio.run(_setup())

    yield settings

    get_job_backend.cache_clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(configure_environment):
    app = create_app()
    with TestClient(app) as client:
        yield client


def build_token(owner_id: str | None, *, scopes: list[str] | None = None) -> str:
    payload: dict[str, Any] = {"iss": JWT_ISSUER, "aud": JWT_AUDIENCE}
    if owner_id:
        payload["sub"] = owner_id
    if scopes:
        payload["scopes"] = scopes
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


@pytest.fixture()
def owner_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('user-1')}"}


@pytest.fixture()
def other_owner_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('user-2')}"}


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {build_token('admin-1', scopes=['admin'])}"}


def make_png(width: int = 64, height: int = 48) -> bytes:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, : width // 2] = (0, 0, 255)
    image[:, width // 2 :] = (0, 255, 0)
    ok, encoded = cv2.imencode(".png", image)
    assert ok
    return encoded.tobytes()


@pytest.fixture()
def png_bytes() -> bytes:
    return make_png()


class FakeTranscoder:
    """In-process stand-in for the tool boundary with scriptable failures."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self._failures: dict[str, list[BaseException]] = {}
        self._always: dict[str, BaseException] = {}
        self.hooks: dict[str, Callable[[], None]] = {}
        self.failing_boxes: set[tuple[int, int]] = set()

    def fail_times(self, method: str, times: int, error: BaseException) -> None:
        self._failures.setdefault(method, []).extend([error] * times)

    def fail_always(self, method: str, error: BaseException) -> None:
        self._always[method] = error

    def count(self, method: str) -> int:
        return self.calls.count(method)

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        hook = self.hooks.get(method)
        if hook is not None:
            hook()
        if method in self._always:
            raise self._always[method]
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _check_box(self, box) -> None:
        if tuple(box) in self.failing_boxes:
            raise ToolExecutionError(f"cannot render {box[0]}x{box[1]}", tool="fake", returncode=1)

    def transcode(self, source: Path, output: Path, target, *, timeout_s: float) -> Path:
        self._enter("transcode")
        output.write_bytes(b"compressed:" + source.read_bytes()[:16])
        return output

    def cover_thumbnail(self, source: Path, output: Path, *, box, quality: int) -> Path:
        self._enter("cover_thumbnail")
        self._check_box(box)
        output.write_bytes(f"thumb {box[0]}x{box[1]}".encode())
        return output

    def extract_frame(self, source: Path, output: Path, *, offset_s: float, box, timeout_s: float) -> Path:
        self._enter("extract_frame")
        self._check_box(box)
        output.write_bytes(f"frame {box[0]}x{box[1]} @{offset_s}".encode())
        return output

    def inspect(self, path: Path) -> ImageInfo:
        self._enter("inspect")
        return ImageInfo(width=640, height=480, format="png", color_model="rgb", bit_depth=8)

    def probe(self, path: Path, *, timeout_s: float) -> VideoProbe:
        self._enter("probe")
        return VideoProbe(
            width=1280,
            height=720,
            duration_s=12,
            codec="h264",
            bitrate=800_000,
            frame_rate=29.97,
            extras={"container": "mov,mp4,m4a,3gp,3g2,mj2", "audio_codec": "aac"},
        )


@pytest.fixture()
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@dataclass
class PipelineHarness:
    settings: Settings
    context: PipelineContext
    dispatcher: InProcessJobBackend
    orchestrator: Orchestrator
    events: list[AssetSnapshot] = field(default_factory=list)

    @property
    def repository(self) -> AssetRepository:
        return self.context.repository

    async def create_asset(
        self,
        kind: AssetKind = AssetKind.image,
        *,
        payload: bytes = b"original-bytes",
        owner_id: str = "user-1",
        tags: tuple[str, ...] = (),
    ) -> AssetSnapshot:
        extension = ".png" if kind is AssetKind.image else ".mp4"
        mime_type = "image/png" if kind is AssetKind.image else "video/mp4"
        key = f"media/{kind.value}/2026/10/{uuid4().hex}{extension}"
        self.context.blob_store.write_blob(key, payload)
        return await self.repository.create_asset(
            owner_id=owner_id,
            kind=kind,
            size_bytes=len(payload),
            mime_type=mime_type,
            original_path=key,
            original_name=f"upload{extension}",
            tags=tags,
        )


@pytest.fixture()
def run_pipeline(configure_environment, fake_transcoder):
    """Run an async scenario against a harness whose engine lives on the scenario's loop."""

    def _run(body: Callable[[PipelineHarness], Awaitable[Any]]) -> Any:
        async def _runner() -> Any:
            settings = get_settings()
            engine = create_engine(settings)
            try:
                context = PipelineContext(
                    settings=settings,
                    repository=AssetRepository(create_session_factory(engine)),
                    blob_store=LocalBlobStore(Path(settings.storage_root)),
                    transcoder=fake_transcoder,  # type: ignore[arg-type]
                )
                events: list[AssetSnapshot] = []
                notifier = CompletionNotifier([events.append])
                dispatcher = InProcessJobBackend(context, notifier)
                harness = PipelineHarness(
                    settings=settings,
                    context=context,
                    dispatcher=dispatcher,
                    orchestrator=Orchestrator(context, dispatcher, notifier),
                    events=events,
                )
                return await body(harness)
            finally:
                await engine.dispose()

        return asyncio.run(_runner())

    return _run
