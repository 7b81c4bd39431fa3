"""Two-level invocation fan-out.

The launch does not submit every chunk render itself. It splits the render
payloads into ``round(sqrt(chunk_count))`` contiguous groups and submits one
fire-group invocation per group; each of those submits its own chunk renders.
Submission is fire-and-forget: only acceptance by the broker is awaited.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Protocol, TypeVar

from kombu.exceptions import KombuError

from splitrender.celery_app import celery_app
from splitrender.config import get_settings
from splitrender.exceptions import DispatchSubmitError
from splitrender.schemas.render import (
    CompositionDescriptor,
    FireGroupPayload,
    LaunchPayload,
    RenderChunkPayload,
)
from splitrender.services.frame_planner import Chunk

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class SubmissionReceipt:
    function_name: str
    submission_id: str


class InvocationClient(Protocol):
    def dispatch(self, function_name: str, payload: dict) -> SubmissionReceipt: ...


class CeleryInvocationClient:
    """Submits routine payloads as Celery tasks without waiting for results.

    Publishing is retried by Celery up to ``attempts`` times in total; only
    then is the submission reported as failed.
    """

    def __init__(self, app=None, queue: str | None = None, attempts: int | None = None) -> None:
        settings = get_settings()
        self._app = app or celery_app
        self._queue = queue or settings.render_queue
        attempts = settings.dispatch_submit_attempts if attempts is None else attempts
        self._retry_policy = {
            "max_retries": max(0, attempts - 1),
            "interval_start": 0,
            "interval_step": settings.dispatch_retry_interval_s,
            "interval_max": settings.dispatch_retry_interval_s * 4,
        }

    def dispatch(self, function_name: str, payload: dict) -> SubmissionReceipt:
        try:
            result = self._app.send_task(
                function_name,
                kwargs={"payload": payload},
                queue=self._queue,
                retry=True,
                retry_policy=self._retry_policy,
            )
        except (KombuError, OSError) as e:
            raise DispatchSubmitError(f"Could not submit {function_name}: {e}") from e
        return SubmissionReceipt(function_name=function_name, submission_id=result.id)


def invoker_count(chunk_count: int) -> int:
    return round(math.sqrt(chunk_count))


def split_into_groups(items: list[T], group_count: int) -> list[list[T]]:
    """Split into ``group_count`` contiguous groups whose sizes differ by at most one.

    Larger groups come first. No group is empty while ``len(items) >= group_count``.
    """
    if group_count < 1:
        return []
    size, remainder = divmod(len(items), group_count)
    groups: list[list[T]] = []
    position = 0
    for i in range(group_count):
        length = size + (1 if i < remainder else 0)
        groups.append(items[position:position + length])
        position += length
    return groups


def build_render_payloads(
    launch: LaunchPayload,
    composition: CompositionDescriptor,
    chunks: list[Chunk],
) -> list[RenderChunkPayload]:
    """One render payload per chunk, in planned order, with ``attempt=1``."""
    return [
        RenderChunkPayload(
            render_id=launch.render_id,
            serve_url=launch.serve_url,
            composition=composition,
            frame_range=chunk.frame_range,
            chunk=chunk.index,
            input_props=launch.input_props,
            codec=launch.codec,
            image_format=launch.image_format,
            quality=launch.quality,
            crf=launch.crf,
            pixel_format=launch.pixel_format,
            pro_res_profile=launch.pro_res_profile,
            privacy=launch.privacy,
            env_variables=launch.env_variables,
            retries_left=launch.max_retries,
            attempt=1,
        )
        for chunk in chunks
    ]


async def dispatch_groups(
    client: InvocationClient,
    render_id: str,
    payloads: list[RenderChunkPayload],
    invokers: int,
) -> list[SubmissionReceipt]:
    """Submit one fire-group invocation per payload group, concurrently.

    Retrying a rejected publish is the invocation client's job; a failure
    that reaches this point fails the launch.

    Raises:
        DispatchSubmitError: a group could not be submitted
    """
    settings = get_settings()
    groups = split_into_groups(payloads, invokers)

    async def submit(index: int, group: list[RenderChunkPayload]) -> SubmissionReceipt:
        started = time.perf_counter()
        fire = FireGroupPayload(render_id=render_id, payloads=group)
        try:
            receipt = await asyncio.to_thread(
                client.dispatch, settings.fire_task_name, fire.model_dump(mode="json")
            )
        except DispatchSubmitError as e:
            logger.error("Group %d (%d chunks) was not accepted: %s", index, len(group), e)
            raise DispatchSubmitError(str(e), group_index=index) from e
        logger.debug(
            "Submitted group %d (%d chunks) in %.0fms",
            index,
            len(group),
            (time.perf_counter() - started) * 1000,
        )
        return receipt

    return list(await asyncio.gather(*[submit(i, g) for i, g in enumerate(groups)]))


async def fire_group(client: InvocationClient, payload: FireGroupPayload) -> list[SubmissionReceipt]:
    """Body of the fire-group routine: submit each chunk render of the group."""
    settings = get_settings()
    return list(
        await asyncio.gather(
            *[
                asyncio.to_thread(
                    client.dispatch, settings.render_task_name, render.model_dump(mode="json")
                )
                for render in payload.payloads
            ]
        )
    )
