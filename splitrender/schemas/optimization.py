from pydantic import BaseModel, Field


class ChunkTimingSample(BaseModel):
    """Timing artifact a worker writes next to its chunk output.

    ``frame_timings[i]`` is the elapsed time in ms, measured from the start of
    the chunk render, at which frame ``frame_range[0] + i`` finished.
    """

    chunk: int
    frame_range: tuple[int, int]  # [start, end)
    start_date: int  # epoch ms
    frame_timings: list[float] = Field(default_factory=list)

    @property
    def frame_count(self) -> int:
        return self.frame_range[1] - self.frame_range[0]

    @property
    def duration(self) -> float:
        return self.frame_timings[-1] if self.frame_timings else 0.0


class OptimizationProfile(BaseModel):
    """Historical partition of a composition, shared across its jobs."""

    frame_ranges: list[tuple[int, int]]
    old_timing: float
    new_timing: float
    frame_count: int
    source_render_id: str
    chunk_size_hint: int
    schema_version: str
