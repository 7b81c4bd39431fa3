"""Frame range planning.

Turns a frame count and chunk size into an ordered partition of ``[0, frame_count)``.
A stored optimization profile replaces the default partition when it was
recorded for the same frame count.
"""

import logging
import math
from dataclasses import dataclass

from splitrender.exceptions import InvalidCompositionError, InvalidFramesPerChunkError
from splitrender.schemas.optimization import OptimizationProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Chunk:
    """Contiguous frame range ``[start, end)`` assigned to one render worker.

    ``index`` is the position of the range in frame-ascending order.
    """

    index: int
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def frame_range(self) -> tuple[int, int]:
        return (self.start, self.end)


@dataclass
class FramePlan:
    chunks: list[Chunk]
    used_optimization: bool

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)


def ranges_partition_exactly(frame_ranges: list[tuple[int, int]], frame_count: int) -> bool:
    """True if the ranges are non-empty, contiguous and cover ``[0, frame_count)``."""
    if not frame_ranges:
        return False
    position = 0
    for start, end in sorted(frame_ranges):
        if start != position or end <= start:
            return False
        position = end
    return position == frame_count


def default_frame_ranges(frame_count: int, frames_per_chunk: int) -> list[tuple[int, int]]:
    chunk_count = math.ceil(frame_count / frames_per_chunk)
    return [
        (i * frames_per_chunk, min((i + 1) * frames_per_chunk, frame_count))
        for i in range(chunk_count)
    ]


def chunks_from_ranges(frame_ranges: list[tuple[int, int]]) -> list[Chunk]:
    """Build chunks in the given order, indexed by frame-ascending position."""
    order = {r: i for i, r in enumerate(sorted(frame_ranges))}
    return [Chunk(index=order[(start, end)], start=start, end=end) for start, end in frame_ranges]


def plan_frame_ranges(
    frame_count: int,
    frames_per_chunk: int,
    optimization: OptimizationProfile | None = None,
    use_optimization: bool = False,
) -> FramePlan:
    """Partition ``frame_count`` frames into chunks.

    The profile's ranges are used verbatim, in their stored order, when
    optimization is requested and the profile matches the frame count.

    Raises:
        InvalidFramesPerChunkError: ``frames_per_chunk`` is below 1
        InvalidCompositionError: ``frame_count`` is below 1
    """
    if frames_per_chunk < 1:
        raise InvalidFramesPerChunkError(frames_per_chunk)
    if frame_count < 1:
        raise InvalidCompositionError("duration_in_frames", frame_count, "must be at least 1")

    if use_optimization and optimization is not None:
        if optimization.frame_count != frame_count:
            logger.info(
                "Ignoring optimization profile recorded for %d frames (job has %d)",
                optimization.frame_count,
                frame_count,
            )
        elif not ranges_partition_exactly(optimization.frame_ranges, frame_count):
            logger.warning("Ignoring optimization profile with an invalid partition")
        else:
            return FramePlan(
                chunks=chunks_from_ranges([tuple(r) for r in optimization.frame_ranges]),
                used_optimization=True,
            )

    return FramePlan(
        chunks=chunks_from_ranges(default_frame_ranges(frame_count, frames_per_chunk)),
        used_optimization=False,
    )
