"""Classifying and durably recording failures.

Every record is appended under the job's error prefix with a unique key, so
workers and the orchestrator never overwrite each other's records.
"""

import asyncio
import errno
import logging
import os
import shutil
import tempfile
import time
import traceback

from splitrender.constants.keys import error_key
from splitrender.exceptions import SplitRenderError
from splitrender.schemas.errors import (
    ErrorInfo,
    OrchestratorError,
    TmpDirDiagnostic,
    TmpFileEntry,
)

logger = logging.getLogger(__name__)

ENOSPC_MARKERS = ("ENOSPC", "No space left on device")
MAX_DIAGNOSTIC_FILES = 20


def format_stack(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))


def _is_out_of_space(exc: BaseException | None, stack: str) -> bool:
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, OSError) and exc.errno == errno.ENOSPC:
            return True
        exc = exc.__cause__ or exc.__context__
    return any(marker in stack for marker in ENOSPC_MARKERS)


def get_tmp_dir_state(tmp_dir: str | None = None) -> TmpDirDiagnostic:
    """Free space and the largest files of the temp directory."""
    tmp_dir = tmp_dir or tempfile.gettempdir()
    usage = shutil.disk_usage(tmp_dir)
    files: list[TmpFileEntry] = []
    for root, _dirs, names in os.walk(tmp_dir):
        for name in names:
            path = os.path.join(root, name)
            try:
                files.append(TmpFileEntry(path=path, size=os.path.getsize(path)))
            except OSError:
                continue
    files.sort(key=lambda f: f.size, reverse=True)
    return TmpDirDiagnostic(
        free_bytes=usage.free,
        total_bytes=usage.total,
        files=files[:MAX_DIAGNOSTIC_FILES],
    )


def get_tmp_dir_state_if_enospc(
    exc: BaseException | None,
    stack: str,
    tmp_dir: str | None = None,
) -> TmpDirDiagnostic | None:
    """Capture temp dir state only when the failure looks like a full disk."""
    if not _is_out_of_space(exc, stack):
        return None
    try:
        return get_tmp_dir_state(tmp_dir)
    except OSError:
        logger.exception("Could not inspect temp directory")
        return None


def build_orchestrator_error(
    exc: BaseException,
    *,
    is_fatal: bool,
    stack: str | None = None,
    message: str | None = None,
) -> OrchestratorError:
    stack = stack or format_stack(exc)
    if message:
        stack = f"{message} {stack}"
    return OrchestratorError(
        code=exc.code if isinstance(exc, SplitRenderError) else "INTERNAL_ERROR",
        stack=stack,
        is_fatal=is_fatal,
        attempt=1,
        total_attempts=1,
        will_retry=False,
        timestamp=int(time.time() * 1000),
        diagnostic=get_tmp_dir_state_if_enospc(exc, stack) if is_fatal else None,
    )


async def write_error_info(store, job_id: str, error_info: ErrorInfo) -> str:
    key = error_key(
        job_id,
        error_info.source,
        error_info.chunk,
        error_info.attempt,
        error_info.timestamp,
    )
    await asyncio.to_thread(
        store.put,
        key,
        error_info.model_dump_json(),
        "private",
        "application/json",
    )
    return key


class ErrorReporter:
    """Best-effort error channel of one job.

    Reporting never raises: a failure to persist is logged and swallowed.
    """

    def __init__(self, store, job_id: str) -> None:
        self._store = store
        self._job_id = job_id

    async def _persist(self, error_info: ErrorInfo) -> str | None:
        try:
            return await write_error_info(self._store, self._job_id, error_info)
        except Exception:
            logger.exception("Could not persist error record for %s", self._job_id)
            return None

    async def report_fatal(self, exc: BaseException, stack: str | None = None) -> str | None:
        logger.error("Launch %s failed: %s", self._job_id, exc)
        return await self._persist(build_orchestrator_error(exc, is_fatal=True, stack=stack))

    async def report_non_fatal(self, exc: BaseException, message: str) -> str | None:
        logger.warning("%s for %s: %s", message, self._job_id, exc)
        return await self._persist(
            build_orchestrator_error(exc, is_fatal=False, message=message)
        )
