"""Payloads exchanged between routines and the records a launch persists."""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from splitrender.schemas.errors import EnhancedErrorInfo


class CompositionDescriptor(BaseModel):
    id: str
    duration_in_frames: int
    fps: float
    width: int
    height: int


# =============================================================================
# Routine payloads (discriminated on ``type``)
# =============================================================================


class LaunchPayload(BaseModel):
    type: Literal["launch"] = "launch"
    render_id: str
    serve_url: str
    composition: CompositionDescriptor
    input_props: dict[str, Any] = Field(default_factory=dict)
    codec: str = "h264"
    image_format: str = "jpeg"
    quality: int | None = None
    crf: int | None = None
    pixel_format: str | None = None
    pro_res_profile: str | None = None
    privacy: str = "public"
    frames_per_chunk: int
    max_retries: int = 1
    enable_chunk_optimization: bool = True
    env_variables: dict[str, str] = Field(default_factory=dict)


class RenderChunkPayload(BaseModel):
    type: Literal["render-chunk"] = "render-chunk"
    render_id: str
    serve_url: str
    composition: CompositionDescriptor
    frame_range: tuple[int, int]  # [start, end)
    chunk: int
    input_props: dict[str, Any] = Field(default_factory=dict)
    codec: str
    image_format: str
    quality: int | None = None
    crf: int | None = None
    pixel_format: str | None = None
    pro_res_profile: str | None = None
    privacy: str
    env_variables: dict[str, str] = Field(default_factory=dict)
    retries_left: int
    attempt: int = 1


class FireGroupPayload(BaseModel):
    type: Literal["fire-group"] = "fire-group"
    render_id: str
    payloads: list[RenderChunkPayload]


RoutinePayload = Annotated[
    Union[LaunchPayload, RenderChunkPayload, FireGroupPayload],
    Field(discriminator="type"),
]


class RoutineHeader(BaseModel):
    """Fields every routine payload carries; read before the full payload is parsed."""

    type: str
    render_id: str


# =============================================================================
# Persisted records
# =============================================================================


class RenderMetadata(BaseModel):
    """Written once before dispatch; makes the job queryable."""

    model_config = ConfigDict(frozen=True)

    type: Literal["video"] = "video"
    render_id: str
    started_date: int  # epoch ms
    composition: CompositionDescriptor
    composition_id: str
    site_id: str
    total_chunks: int
    estimated_total_invocations: int
    estimated_render_invocations: int
    codec: str
    image_format: str
    privacy: str
    input_props: dict[str, Any] = Field(default_factory=dict)
    uses_optimization_profile: bool
    frames_per_chunk: int
    memory_size_mb: int
    region: str
    schema_version: str


class EncodingProgress(BaseModel):
    frames_encoded: int
    total_frames: int
    done_in: int | None = None  # ms
    time_to_invoke: int | None = None  # ms


class ObjectSummary(BaseModel):
    key: str
    size: int


class RetryInfo(BaseModel):
    chunk: int
    attempts: int


class ExpensiveChunk(BaseModel):
    chunk: int
    frame_range: tuple[int, int]
    time_in_ms: float


class PostRenderManifest(BaseModel):
    """Terminal summary of a launch, written exactly once."""

    render_metadata: RenderMetadata
    output_key: str
    output_size: int
    render_size: int
    start_time: int
    end_time: int
    time_to_finish: int
    time_to_encode: int
    time_to_clean_up: int
    invoked_chunks: int = 0
    time_to_invoke: int | None = None
    time_to_render_chunks: float | None = None
    estimated_billed_duration_ms: float
    files_cleaned_up: int
    objects: list[ObjectSummary] = Field(default_factory=list)
    errors: list[EnhancedErrorInfo] = Field(default_factory=list)
    retries_info: list[RetryInfo] = Field(default_factory=list)
    most_expensive_frame_ranges: list[ExpensiveChunk] = Field(default_factory=list)
