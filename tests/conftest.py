"""
Pytest fixtures for splitrender tests.

Everything runs against a LocalStorageService rooted in a temporary directory.
Celery is replaced by a recording invocation client that can also play the
part of the workers, and FFmpeg by a merge function that concatenates bytes.
"""

import json
import shutil
import time
import uuid
from pathlib import Path

import pytest

from splitrender.constants.keys import (
    chunk_key,
    chunk_timings_key,
    invocation_marker_key,
)
from splitrender.exceptions import DispatchSubmitError
from splitrender.schemas.optimization import ChunkTimingSample
from splitrender.schemas.render import FireGroupPayload, RenderChunkPayload
from splitrender.services.dispatcher import SubmissionReceipt
from splitrender.services.storage_service import LocalStorageService


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring the ffmpeg binary (skipped without it)",
    )


requires_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None,
    reason="ffmpeg not available",
)


@pytest.fixture
def store(tmp_path: Path) -> LocalStorageService:
    """Durable store rooted in a temporary directory."""
    return LocalStorageService(tmp_path / "store")


def simulate_chunk_render(
    store: LocalStorageService,
    render: RenderChunkPayload,
    ms_per_frame=lambda frame: 10.0,
) -> None:
    """Do what a render worker leaves behind: marker, timings and chunk output."""
    store.put(
        invocation_marker_key(render.render_id, render.chunk, render.attempt),
        json.dumps({"chunk": render.chunk, "attempt": render.attempt}),
    )
    start, end = render.frame_range
    elapsed = 0.0
    timings = []
    for frame in range(start, end):
        elapsed += ms_per_frame(frame)
        timings.append(elapsed)
    sample = ChunkTimingSample(
        chunk=render.chunk,
        frame_range=render.frame_range,
        start_date=int(time.time() * 1000),
        frame_timings=timings,
    )
    store.put(chunk_timings_key(render.render_id, render.chunk), sample.model_dump_json())
    store.put(
        chunk_key(render.render_id, render.chunk, render.codec),
        f"[chunk {render.chunk}]".encode(),
        privacy=render.privacy,
    )


class FakeInvocationClient:
    """Records dispatched payloads instead of submitting Celery tasks.

    With ``store`` set it renders every chunk of a fire-group payload right
    away. ``fail_times`` makes the first N dispatches fail.
    """

    def __init__(self, store=None, fail_times: int = 0, ms_per_frame=None) -> None:
        self.store = store
        self.fail_times = fail_times
        self.ms_per_frame = ms_per_frame or (lambda frame: 10.0)
        self.dispatched: list[tuple[str, dict]] = []

    def dispatch(self, function_name: str, payload: dict) -> SubmissionReceipt:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DispatchSubmitError("broker unavailable")
        self.dispatched.append((function_name, payload))
        if self.store is not None and payload.get("type") == "fire-group":
            fire = FireGroupPayload.model_validate(payload)
            for render in fire.payloads:
                simulate_chunk_render(self.store, render, self.ms_per_frame)
        return SubmissionReceipt(function_name=function_name, submission_id=str(uuid.uuid4()))


@pytest.fixture
def fake_client() -> FakeInvocationClient:
    return FakeInvocationClient()


async def concat_bytes(chunk_files: list[str], output_path: str) -> None:
    """Stand-in for the FFmpeg merge."""
    with open(output_path, "wb") as out:
        for path in chunk_files:
            out.write(Path(path).read_bytes())


def make_launch_payload(**overrides) -> dict:
    payload = {
        "type": "launch",
        "render_id": "render-abc",
        "serve_url": "https://example.com/site/index.html",
        "composition": {
            "id": "intro",
            "duration_in_frames": 100,
            "fps": 30,
            "width": 1920,
            "height": 1080,
        },
        "codec": "h264",
        "privacy": "public",
        "frames_per_chunk": 20,
        "max_retries": 2,
        "enable_chunk_optimization": True,
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def launch_payload() -> dict:
    return make_launch_payload()
