"""Throttled, monotonic encoding progress snapshots.

Only the orchestrator writes progress for its job. Snapshots are written when
the fraction moved by at least the threshold since the last write, and always
at completion. A failed write is recorded as a non-fatal error and the render
carries on.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from splitrender.config import get_settings
from splitrender.constants.keys import encoding_progress_key
from splitrender.exceptions import ProgressWriteError
from splitrender.schemas.render import EncodingProgress
from splitrender.services.error_reporter import ErrorReporter

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ProgressState:
    last_reported: float = 0.0
    encoding_stop: int | None = None  # epoch ms


def observe_progress(
    state: ProgressState,
    frames_encoded: int,
    total_frames: int,
    job_start: int,
    threshold: float,
    timestamp: int,
) -> EncodingProgress | None:
    """Advance ``state`` with one observation.

    Returns the snapshot to persist, or None if the observation is throttled.
    """
    relative = frames_encoded / total_frames
    if relative >= 1 and state.encoding_stop is None:
        state.encoding_stop = timestamp

    if relative >= 1 and state.last_reported >= 1:
        return None
    # 1e-9 absorbs float error in steps such as 0.2 -> 0.3
    if relative < 1 and relative - state.last_reported < threshold - 1e-9:
        return None
    if relative < state.last_reported:
        return None

    state.last_reported = relative
    return EncodingProgress(
        frames_encoded=frames_encoded,
        total_frames=total_frames,
        done_in=state.encoding_stop - job_start if state.encoding_stop is not None else None,
        time_to_invoke=None,
    )


class ProgressReporter:
    """Owns the progress state of one job and writes its snapshots.

    ``report`` can be called from synchronous callbacks; writes run as tasks on
    the current loop and are serialized so a slower write can never overwrite a
    newer snapshot. ``flush`` waits for all scheduled writes.
    """

    def __init__(
        self,
        store,
        job_id: str,
        total_frames: int,
        error_reporter: ErrorReporter,
        threshold: float | None = None,
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._total_frames = total_frames
        self._errors = error_reporter
        self._threshold = get_settings().progress_threshold if threshold is None else threshold
        self.state = ProgressState()
        self._persisted = -1.0
        self._lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    @property
    def encoding_stop(self) -> int | None:
        return self.state.encoding_stop

    def mark_encoding_stopped(self, timestamp: int | None = None) -> int:
        if self.state.encoding_stop is None:
            self.state.encoding_stop = timestamp or now_ms()
        return self.state.encoding_stop

    def report(self, frames_encoded: int, job_start: int) -> EncodingProgress | None:
        snapshot = observe_progress(
            self.state,
            frames_encoded,
            self._total_frames,
            job_start,
            self._threshold,
            now_ms(),
        )
        if snapshot is None:
            logger.debug("Throttled progress %d/%d", frames_encoded, self._total_frames)
            return None
        task = asyncio.get_running_loop().create_task(self._write(snapshot))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return snapshot

    async def _write(self, snapshot: EncodingProgress) -> None:
        relative = snapshot.frames_encoded / snapshot.total_frames
        async with self._lock:
            if relative < self._persisted:
                return
            try:
                await self.write_snapshot(snapshot)
            except Exception as e:
                await self._errors.report_non_fatal(
                    ProgressWriteError(str(e)), "Could not upload stitching progress"
                )
                return
            self._persisted = relative

    async def write_snapshot(self, snapshot: EncodingProgress) -> None:
        await asyncio.to_thread(
            self._store.put,
            encoding_progress_key(self._job_id),
            snapshot.model_dump_json(),
            "private",
            "application/json",
        )

    async def flush(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending))
