"""Profile-guided chunk boundary optimization.

Measured per-frame render times from one job are used to move chunk boundaries
so the next job of the same composition finishes its slowest chunk sooner. The
objective is the makespan (duration of the slowest chunk), not the average.
Everything here is pure and deterministic.
"""

import logging

from splitrender.schemas.optimization import ChunkTimingSample
from splitrender.services.frame_planner import ranges_partition_exactly

logger = logging.getLogger(__name__)


def get_profile_duration(samples: list[ChunkTimingSample]) -> float:
    """Makespan of a profile: duration of its slowest chunk."""
    return max((s.duration for s in samples), default=0.0)


def get_frame_ranges_from_profile(samples: list[ChunkTimingSample]) -> list[tuple[int, int]]:
    return [s.frame_range for s in samples]


def _frame_costs(samples: list[ChunkTimingSample]) -> dict[int, float]:
    """Render time of every frame, derived from cumulative chunk timings.

    Chunks whose timings don't line up with their frame count are assumed to
    spend the same time on every frame.
    """
    costs: dict[int, float] = {}
    for sample in samples:
        start, end = sample.frame_range
        count = end - start
        if count <= 0:
            continue
        timings = sample.frame_timings
        if len(timings) == count:
            previous = 0.0
            for offset, elapsed in enumerate(timings):
                costs[start + offset] = max(0.0, elapsed - previous)
                previous = max(previous, elapsed)
        else:
            per_frame = sample.duration / count
            for frame in range(start, end):
                costs[frame] = per_frame
    return costs


def _resample(
    costs: dict[int, float],
    index: int,
    frame_range: tuple[int, int],
    start_date: int,
) -> ChunkTimingSample:
    elapsed = 0.0
    timings: list[float] = []
    for frame in range(*frame_range):
        elapsed += costs.get(frame, 0.0)
        timings.append(elapsed)
    return ChunkTimingSample(
        chunk=index,
        frame_range=frame_range,
        start_date=start_date,
        frame_timings=timings,
    )


def shift_frames(
    frame_ranges: list[tuple[int, int]],
    from_chunk: int,
    to_chunk: int,
    frames_to_shift: int,
) -> list[tuple[int, int]]:
    """Move ``frames_to_shift`` frames from one chunk towards another.

    ``frame_ranges`` must be sorted by start. Every boundary between the two
    chunks moves by the same amount, so chunks in between keep their length and
    only the source shrinks. For neighbours this is a single shared boundary.
    """
    ranges = list(frame_ranges)
    k = frames_to_shift
    if from_chunk < to_chunk:
        start, end = ranges[from_chunk]
        ranges[from_chunk] = (start, end - k)
        for i in range(from_chunk + 1, to_chunk):
            start, end = ranges[i]
            ranges[i] = (start - k, end - k)
        start, end = ranges[to_chunk]
        ranges[to_chunk] = (start - k, end)
    elif from_chunk > to_chunk:
        start, end = ranges[from_chunk]
        ranges[from_chunk] = (start + k, end)
        for i in range(to_chunk + 1, from_chunk):
            start, end = ranges[i]
            ranges[i] = (start + k, end + k)
        start, end = ranges[to_chunk]
        ranges[to_chunk] = (start, end + k)
    return ranges


def _apply_shift(
    by_start: list[ChunkTimingSample],
    costs: dict[int, float],
    slow: int,
    fast: int,
    frames_to_shift: int,
) -> list[ChunkTimingSample]:
    ranges = shift_frames(
        [s.frame_range for s in by_start], slow, fast, frames_to_shift
    )
    return [
        _resample(costs, i, frame_range, by_start[i].start_date)
        for i, frame_range in enumerate(ranges)
    ]


def optimize_profile(samples: list[ChunkTimingSample]) -> list[ChunkTimingSample]:
    """One rebalancing step: move load from the slowest chunk to the fastest.

    The shift starts at half the duration gap expressed in frames of the slowest
    chunk and is halved until the makespan does not get worse. Returns the
    samples sorted by start, unchanged if no step improves or keeps the makespan.
    """
    by_start = sorted(samples, key=lambda s: s.frame_range[0])
    if len(by_start) < 2:
        return by_start

    durations = [s.duration for s in by_start]
    slow = max(range(len(durations)), key=lambda i: (durations[i], -i))
    fast = min(range(len(durations)), key=lambda i: (durations[i], i))
    slowest = by_start[slow]
    if durations[slow] <= durations[fast] or slowest.frame_count <= 1:
        return by_start

    costs = _frame_costs(by_start)
    per_frame = durations[slow] / slowest.frame_count
    gap = durations[slow] - durations[fast]
    frames_to_shift = max(1, min(slowest.frame_count - 1, int(gap / per_frame / 2)))

    makespan = durations[slow]
    while frames_to_shift >= 1:
        candidate = _apply_shift(by_start, costs, slow, fast, frames_to_shift)
        if get_profile_duration(candidate) <= makespan:
            return candidate
        frames_to_shift //= 2
    return by_start


def optimize_profile_recursively(
    samples: list[ChunkTimingSample],
    iterations: int = 400,
) -> list[ChunkTimingSample]:
    """Repeat ``optimize_profile`` until it stops changing or the cap is hit."""
    current = sorted(samples, key=lambda s: s.frame_range[0])
    for iteration in range(iterations):
        candidate = optimize_profile(current)
        if get_frame_ranges_from_profile(candidate) == get_frame_ranges_from_profile(current):
            logger.debug("Optimizer converged after %d iterations", iteration)
            break
        current = candidate
    return current


def optimize_invocation_order(samples: list[ChunkTimingSample]) -> list[ChunkTimingSample]:
    """Order chunks slowest first so long renders are dispatched earliest.

    Only the order changes; frame ranges are left alone.
    """
    return sorted(samples, key=lambda s: (-s.duration, s.frame_range[0]))


def is_valid_optimization_profile(
    samples: list[ChunkTimingSample],
    frame_count: int,
) -> bool:
    """A profile is usable only if it partitions ``[0, frame_count)`` exactly."""
    return ranges_partition_exactly(get_frame_ranges_from_profile(samples), frame_count)
