from splitrender.schemas.errors import (
    EnhancedErrorInfo,
    ErrorInfo,
    OrchestratorError,
    TmpDirDiagnostic,
    WorkerError,
)
from splitrender.schemas.optimization import ChunkTimingSample, OptimizationProfile
from splitrender.schemas.render import (
    CompositionDescriptor,
    EncodingProgress,
    FireGroupPayload,
    LaunchPayload,
    PostRenderManifest,
    RenderChunkPayload,
    RenderMetadata,
    RoutineHeader,
    RoutinePayload,
)

__all__ = [
    "ChunkTimingSample",
    "CompositionDescriptor",
    "EncodingProgress",
    "EnhancedErrorInfo",
    "ErrorInfo",
    "FireGroupPayload",
    "LaunchPayload",
    "OptimizationProfile",
    "OrchestratorError",
    "PostRenderManifest",
    "RenderChunkPayload",
    "RenderMetadata",
    "RoutineHeader",
    "RoutinePayload",
    "TmpDirDiagnostic",
    "WorkerError",
]
