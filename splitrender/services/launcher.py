"""Launch orchestration.

A launch walks through::

    INIT -> VALIDATED -> PLANNED -> METADATA_PERSISTED -> DISPATCHED
         -> AWAITING_CONCAT -> CONCAT_DONE -> (OPTIMIZING) -> FINALIZING
         -> FINALIZED

and any stage can end in FAILED. ``LaunchOrchestrator.run`` never raises; it
returns a ``LaunchResult``. ``handle_launch`` is the boundary that turns a
failed result into a persisted error record. A payload whose ``render_id``
is known but whose body does not parse fails at INIT and is reported the
same way.

Ordering guarantees:
- render metadata is durable before the first group is submitted
- the final progress snapshot is durable before the manifest is written
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import pydantic
from pydantic import TypeAdapter

from splitrender.config import get_settings
from splitrender.constants.keys import (
    get_site_hash,
    out_name,
    render_metadata_key,
    renders_prefix,
)
from splitrender.exceptions import (
    MetadataPersistError,
    PayloadTypeMismatchError,
    ValidationError,
)
from splitrender.schemas.render import (
    EncodingProgress,
    LaunchPayload,
    PostRenderManifest,
    RenderMetadata,
    RoutineHeader,
    RoutinePayload,
)
from splitrender.services.concatenator import ConcatResult, concat_chunks, merge_with_ffmpeg
from splitrender.services.dispatcher import (
    CeleryInvocationClient,
    InvocationClient,
    build_render_payloads,
    dispatch_groups,
    invoker_count,
)
from splitrender.services.error_reporter import ErrorReporter, format_stack
from splitrender.services.finalizer import (
    cleanup_files,
    create_post_render_manifest,
    get_files_to_delete,
    get_invocation_stats,
    inspect_errors,
    write_post_render_manifest,
)
from splitrender.services.frame_planner import plan_frame_ranges
from splitrender.services.optimization_store import (
    collect_chunk_information,
    get_optimization_profile,
    update_optimization_profile,
)
from splitrender.services.progress_reporter import ProgressReporter, now_ms
from splitrender.services.storage_service import get_storage_service
from splitrender.services.validation import validate_launch_payload

logger = logging.getLogger(__name__)

_routine_adapter = TypeAdapter(RoutinePayload)
_header_adapter = TypeAdapter(RoutineHeader)
_launch_adapter = TypeAdapter(LaunchPayload)


class LaunchStage(str, Enum):
    INIT = "init"
    VALIDATED = "validated"
    PLANNED = "planned"
    METADATA_PERSISTED = "metadata_persisted"
    DISPATCHED = "dispatched"
    AWAITING_CONCAT = "awaiting_concat"
    CONCAT_DONE = "concat_done"
    OPTIMIZING = "optimizing"
    FINALIZING = "finalizing"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass
class LaunchResult:
    stage: LaunchStage
    manifest: PostRenderManifest | None = None
    failed_at: LaunchStage | None = None
    error: BaseException | None = None
    stack: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.stage == LaunchStage.FINALIZED


def parse_routine_payload(raw: dict):
    """Parse a raw payload into its routine model, keyed on ``type``."""
    try:
        return _routine_adapter.validate_python(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed payload: {e}") from e


def parse_routine_header(raw: dict) -> RoutineHeader:
    try:
        return _header_adapter.validate_python(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed payload: {e}") from e


def parse_launch_payload(raw: dict) -> LaunchPayload:
    try:
        return _launch_adapter.validate_python(raw)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Malformed launch payload: {e}") from e


async def persist_render_metadata(store, job_id: str, render_metadata: RenderMetadata) -> None:
    """Write the job's metadata; must succeed before anything is dispatched."""
    try:
        await asyncio.to_thread(
            store.put,
            render_metadata_key(job_id),
            render_metadata.model_dump_json(),
            "private",
            "application/json",
        )
    except Exception as e:
        raise MetadataPersistError(f"Could not persist render metadata: {e}") from e


class LaunchOrchestrator:
    """Runs one launch end to end for a single job id."""

    def __init__(
        self,
        payload: LaunchPayload,
        *,
        store=None,
        invocation_client: InvocationClient | None = None,
        merge: Callable[[list[str], str], Awaitable[None]] = merge_with_ffmpeg,
    ) -> None:
        self.payload = payload
        self.store = store or get_storage_service()
        self.invocation_client = invocation_client or CeleryInvocationClient()
        self.merge = merge
        self.settings = get_settings()
        self.errors = ErrorReporter(self.store, payload.render_id)
        self.stage = LaunchStage.INIT

    def _advance(self, stage: LaunchStage) -> None:
        logger.info("Launch %s: %s -> %s", self.payload.render_id, self.stage.value, stage.value)
        self.stage = stage

    async def run(self) -> LaunchResult:
        try:
            manifest = await self._launch()
        except Exception as e:
            failed_at = self.stage
            self._advance(LaunchStage.FAILED)
            return LaunchResult(
                stage=LaunchStage.FAILED,
                failed_at=failed_at,
                error=e,
                stack=format_stack(e),
            )
        return LaunchResult(stage=LaunchStage.FINALIZED, manifest=manifest)

    async def _launch(self) -> PostRenderManifest:
        params = self.payload
        settings = self.settings

        validate_launch_payload(params)
        self._advance(LaunchStage.VALIDATED)

        composition = params.composition
        frame_count = composition.duration_in_frames
        site_hash = get_site_hash(params.serve_url)

        optimization = None
        if params.enable_chunk_optimization:
            optimization = await get_optimization_profile(
                self.store, site_hash, composition.id, settings.region
            )
        plan = plan_frame_ranges(
            frame_count,
            params.frames_per_chunk,
            optimization,
            params.enable_chunk_optimization,
        )
        invokers = invoker_count(plan.chunk_count)
        payloads = build_render_payloads(params, composition, plan.chunks)
        self._advance(LaunchStage.PLANNED)

        render_metadata = RenderMetadata(
            render_id=params.render_id,
            started_date=now_ms(),
            composition=composition,
            composition_id=composition.id,
            site_id=site_hash,
            total_chunks=plan.chunk_count,
            estimated_total_invocations=plan.chunk_count + invokers,
            estimated_render_invocations=plan.chunk_count,
            codec=params.codec,
            image_format=params.image_format,
            privacy=params.privacy,
            input_props=params.input_props,
            uses_optimization_profile=plan.used_optimization,
            frames_per_chunk=params.frames_per_chunk,
            memory_size_mb=settings.memory_size_mb,
            region=settings.region,
            schema_version=settings.app_version,
        )
        await persist_render_metadata(self.store, params.render_id, render_metadata)
        self._advance(LaunchStage.METADATA_PERSISTED)

        await dispatch_groups(self.invocation_client, params.render_id, payloads, invokers)
        self._advance(LaunchStage.DISPATCHED)

        progress = ProgressReporter(self.store, params.render_id, frame_count, self.errors)
        concat: ConcatResult | None = None
        self._advance(LaunchStage.AWAITING_CONCAT)
        try:
            concat = await concat_chunks(
                self.store,
                job_id=params.render_id,
                chunks=plan.chunks,
                codec=params.codec,
                on_progress=progress.report,
                merge=self.merge,
            )
            encoding_stop = concat.encoding_stop
            progress.mark_encoding_stopped(encoding_stop)
            self._advance(LaunchStage.CONCAT_DONE)

            output_key = out_name(params.render_id, params.codec)
            output_size = os.path.getsize(concat.outfile)
            await asyncio.to_thread(
                self.store.put_file, output_key, concat.outfile, params.privacy
            )

            timings = await collect_chunk_information(self.store, params.render_id)
            if params.enable_chunk_optimization:
                self._advance(LaunchStage.OPTIMIZING)
            _, objects = await asyncio.gather(
                self._optimize(timings, site_hash),
                asyncio.to_thread(self.store.list, renders_prefix(params.render_id)),
            )
            self._advance(LaunchStage.FINALIZING)

            invocation_stats = get_invocation_stats(
                objects,
                params.render_id,
                render_metadata.estimated_render_invocations,
                render_metadata.started_date,
            )
            await progress.flush()
            final_progress = EncodingProgress(
                frames_encoded=frame_count,
                total_frames=frame_count,
                done_in=encoding_stop - concat.encoding_start,
                time_to_invoke=invocation_stats.time_to_invoke,
            )
            _, errors, cleanup = await asyncio.gather(
                progress.write_snapshot(final_progress),
                inspect_errors(self.store, objects, params.render_id),
                cleanup_files(
                    self.store,
                    objects,
                    get_files_to_delete(plan.chunk_count, params.render_id, params.codec),
                ),
            )
            manifest = create_post_render_manifest(
                render_metadata=render_metadata,
                output_key=output_key,
                output_size=output_size,
                objects=objects,
                errors=errors,
                invocation_stats=invocation_stats,
                cleanup=cleanup,
                timings=timings,
                time_to_encode=encoding_stop - concat.encoding_start,
                end_time=now_ms(),
            )
            await write_post_render_manifest(self.store, params.render_id, manifest)
            self._advance(LaunchStage.FINALIZED)
            return manifest
        finally:
            await progress.flush()
            if concat is not None:
                concat.cleanup()

    async def _optimize(self, timings, site_hash: str) -> None:
        """Update the composition's profile; failures here never fail the launch."""
        if not self.payload.enable_chunk_optimization:
            return
        try:
            await update_optimization_profile(
                self.store,
                timings,
                job_id=self.payload.render_id,
                frame_count=self.payload.composition.duration_in_frames,
                frames_per_chunk=self.payload.frames_per_chunk,
                site_hash=site_hash,
                composition_id=self.payload.composition.id,
                region=self.settings.region,
            )
        except Exception as e:
            await self.errors.report_non_fatal(e, "Could not update optimization profile")


async def handle_launch(
    raw: dict,
    *,
    store=None,
    invocation_client: InvocationClient | None = None,
    merge: Callable[[list[str], str], Awaitable[None]] = merge_with_ffmpeg,
) -> LaunchResult:
    """Entry point of the launch routine.

    Raises:
        PayloadTypeMismatchError: the payload is not a launch payload
        ValidationError: the payload has no ``type`` or ``render_id``
    """
    header = parse_routine_header(raw)
    if header.type != "launch":
        raise PayloadTypeMismatchError("launch", header.type)

    store = store or get_storage_service()
    try:
        payload = parse_launch_payload(raw)
    except ValidationError as e:
        logger.error("Launch %s: payload rejected: %s", header.render_id, e)
        result = LaunchResult(
            stage=LaunchStage.FAILED,
            failed_at=LaunchStage.INIT,
            error=e,
            stack=format_stack(e),
        )
    else:
        result = await LaunchOrchestrator(
            payload,
            store=store,
            invocation_client=invocation_client,
            merge=merge,
        ).run()
    if not result.succeeded:
        await ErrorReporter(store, header.render_id).report_fatal(result.error, result.stack)
    return result
