"""Failure records persisted under a job's error prefix.

Records are a tagged union on ``source``: the orchestrator never has a chunk,
a worker always does.
"""

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class TmpFileEntry(BaseModel):
    path: str
    size: int


class TmpDirDiagnostic(BaseModel):
    """Temp directory state captured when a failure looks like a full disk."""

    free_bytes: int
    total_bytes: int
    files: list[TmpFileEntry] = Field(default_factory=list)


class _ErrorInfoBase(BaseModel):
    code: str = "INTERNAL_ERROR"
    stack: str
    is_fatal: bool
    attempt: int
    total_attempts: int
    will_retry: bool
    timestamp: int  # epoch ms
    diagnostic: TmpDirDiagnostic | None = None


class OrchestratorError(_ErrorInfoBase):
    source: Literal["orchestrator"] = "orchestrator"
    chunk: None = None
    frame: None = None


class WorkerError(_ErrorInfoBase):
    source: Literal["worker"] = "worker"
    chunk: int
    frame: int | None = None


ErrorInfo = Annotated[Union[OrchestratorError, WorkerError], Field(discriminator="source")]


class EnhancedErrorInfo(BaseModel):
    error: ErrorInfo
    key: str
    explanation: str | None = None
