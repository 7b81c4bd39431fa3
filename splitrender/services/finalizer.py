"""Post-render bookkeeping: statistics, error inspection, cleanup and the manifest."""

import asyncio
import logging
import time
from dataclasses import dataclass, field

import pydantic
from pydantic import TypeAdapter

from splitrender.constants.keys import (
    chunk_index_from_key,
    chunk_key,
    errors_prefix,
    invocations_prefix,
    post_render_data_key,
)
from splitrender.schemas.errors import EnhancedErrorInfo, ErrorInfo
from splitrender.schemas.optimization import ChunkTimingSample
from splitrender.schemas.render import (
    ExpensiveChunk,
    ObjectSummary,
    PostRenderManifest,
    RenderMetadata,
    RetryInfo,
)
from splitrender.services.storage_service import StoredObject

logger = logging.getLogger(__name__)

_error_info_adapter = TypeAdapter(ErrorInfo)

MOST_EXPENSIVE_CHUNKS = 5

# (substring of the stack, explanation) checked in order
ERROR_EXPLANATIONS: list[tuple[str, str]] = [
    (
        "No space left on device",
        "The worker ran out of disk space. Render fewer frames per chunk or "
        "increase the worker's scratch disk.",
    ),
    (
        "ENOSPC",
        "The worker ran out of disk space. Render fewer frames per chunk or "
        "increase the worker's scratch disk.",
    ),
    (
        "SoftTimeLimitExceeded",
        "The chunk did not finish within the task time limit. Lower framesPerChunk "
        "so each chunk does less work.",
    ),
    (
        "TimeLimitExceeded",
        "The chunk did not finish within the task time limit. Lower framesPerChunk "
        "so each chunk does less work.",
    ),
    (
        "MemoryError",
        "The worker ran out of memory. Lower the resolution or give workers more memory.",
    ),
    (
        "429",
        "The platform rate-limited requests. Reduce concurrency or request a quota increase.",
    ),
]


def get_explanation(stack: str) -> str | None:
    for needle, explanation in ERROR_EXPLANATIONS:
        if needle in stack:
            return explanation
    return None


# =============================================================================
# Invocation statistics
# =============================================================================


@dataclass
class InvocationStats:
    invoked_chunks: int
    time_to_invoke: int | None
    retries: list[RetryInfo] = field(default_factory=list)


def _to_ms(obj: StoredObject) -> int:
    return int(obj.last_modified.timestamp() * 1000)


def get_invocation_stats(
    objects: list[StoredObject],
    job_id: str,
    expected_chunks: int,
    started_date: int,
) -> InvocationStats:
    """Derive dispatch latency from the markers workers write when they start.

    ``time_to_invoke`` is the time from launch until the last chunk was first
    seen running, and is only known once every chunk has a marker.
    """
    prefix = invocations_prefix(job_id)
    first_seen: dict[int, int] = {}
    attempts: dict[int, int] = {}
    for obj in objects:
        if not obj.key.startswith(prefix):
            continue
        index = chunk_index_from_key(obj.key)
        attempt = int(obj.key.rsplit("attempt-", 1)[-1].split(".")[0])
        seen = _to_ms(obj)
        first_seen[index] = min(first_seen.get(index, seen), seen)
        attempts[index] = max(attempts.get(index, 0), attempt)

    time_to_invoke = None
    if first_seen and len(first_seen) >= expected_chunks:
        time_to_invoke = max(0, max(first_seen.values()) - started_date)

    retries = [
        RetryInfo(chunk=index, attempts=count)
        for index, count in sorted(attempts.items())
        if count > 1
    ]
    return InvocationStats(
        invoked_chunks=len(first_seen),
        time_to_invoke=time_to_invoke,
        retries=retries,
    )


# =============================================================================
# Error inspection
# =============================================================================


async def inspect_errors(store, objects: list[StoredObject], job_id: str) -> list[EnhancedErrorInfo]:
    """Load every error record of the job and attach an explanation."""
    keys = [obj.key for obj in objects if obj.key.startswith(errors_prefix(job_id))]
    raws = await asyncio.gather(*[asyncio.to_thread(store.get, key) for key in keys])
    errors = []
    for key, raw in zip(keys, raws):
        try:
            error = _error_info_adapter.validate_json(raw)
        except pydantic.ValidationError as e:
            logger.warning("Skipping unreadable error record %s: %s", key, e)
            continue
        errors.append(
            EnhancedErrorInfo(error=error, key=key, explanation=get_explanation(error.stack))
        )
    return errors


# =============================================================================
# Cleanup
# =============================================================================


@dataclass(frozen=True)
class CleanupJob:
    type: str  # "exact" or "prefix"
    name: str


def get_files_to_delete(chunk_count: int, job_id: str, codec: str) -> list[CleanupJob]:
    """Intermediate objects that are no longer needed once the output exists."""
    jobs = [
        CleanupJob(type="exact", name=chunk_key(job_id, index, codec))
        for index in range(chunk_count)
    ]
    jobs.append(CleanupJob(type="prefix", name=invocations_prefix(job_id)))
    return jobs


def _matches(job: CleanupJob, key: str) -> bool:
    if job.type == "exact":
        return key == job.name
    return key.startswith(job.name)


@dataclass
class CleanupResult:
    files_deleted: int
    time_to_delete: int  # ms


async def cleanup_files(store, objects: list[StoredObject], jobs: list[CleanupJob]) -> CleanupResult:
    started = time.perf_counter()
    keys = [obj.key for obj in objects if any(_matches(job, obj.key) for job in jobs)]
    await asyncio.gather(*[asyncio.to_thread(store.delete, key) for key in keys])
    return CleanupResult(
        files_deleted=len(keys),
        time_to_delete=int((time.perf_counter() - started) * 1000),
    )


# =============================================================================
# Manifest
# =============================================================================


def get_most_expensive_chunks(
    samples: list[ChunkTimingSample],
    limit: int = MOST_EXPENSIVE_CHUNKS,
) -> list[ExpensiveChunk]:
    ranked = sorted(samples, key=lambda s: (-s.duration, s.frame_range[0]))[:limit]
    return [
        ExpensiveChunk(chunk=s.chunk, frame_range=s.frame_range, time_in_ms=s.duration)
        for s in ranked
    ]


def get_time_to_render_chunks(samples: list[ChunkTimingSample]) -> float | None:
    """Wall time from the first chunk starting to the last chunk finishing."""
    if not samples:
        return None
    first_start = min(s.start_date for s in samples)
    last_end = max(s.start_date + s.duration for s in samples)
    return last_end - first_start


def create_post_render_manifest(
    *,
    render_metadata: RenderMetadata,
    output_key: str,
    output_size: int,
    objects: list[StoredObject],
    errors: list[EnhancedErrorInfo],
    invocation_stats: InvocationStats,
    cleanup: CleanupResult,
    timings: list[ChunkTimingSample],
    time_to_encode: int,
    end_time: int,
) -> PostRenderManifest:
    time_to_finish = end_time - render_metadata.started_date
    return PostRenderManifest(
        render_metadata=render_metadata,
        output_key=output_key,
        output_size=output_size,
        render_size=sum(obj.size for obj in objects),
        start_time=render_metadata.started_date,
        end_time=end_time,
        time_to_finish=time_to_finish,
        time_to_encode=time_to_encode,
        time_to_clean_up=cleanup.time_to_delete,
        invoked_chunks=invocation_stats.invoked_chunks,
        time_to_invoke=invocation_stats.time_to_invoke,
        time_to_render_chunks=get_time_to_render_chunks(timings),
        estimated_billed_duration_ms=sum(s.duration for s in timings) + time_to_finish,
        files_cleaned_up=cleanup.files_deleted,
        objects=[ObjectSummary(key=obj.key, size=obj.size) for obj in objects],
        errors=errors,
        retries_info=invocation_stats.retries,
        most_expensive_frame_ranges=get_most_expensive_chunks(timings),
    )


async def write_post_render_manifest(store, job_id: str, manifest: PostRenderManifest) -> None:
    await asyncio.to_thread(
        store.put,
        post_render_data_key(job_id),
        manifest.model_dump_json(),
        "private",
        "application/json",
    )
