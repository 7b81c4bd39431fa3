"""Custom exceptions for the splitrender orchestrator.

Each exception carries a machine-readable code from
``splitrender.constants.error_codes`` so the error reporter can classify it.
"""

from splitrender.constants.error_codes import get_error_spec


class SplitRenderError(Exception):
    """Base exception for all splitrender errors."""

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        super().__init__(self.message)

    @property
    def fatal(self) -> bool:
        return get_error_spec(self.code).get("fatal", True)

    @property
    def retryable(self) -> bool:
        return get_error_spec(self.code).get("retryable", False)


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(SplitRenderError):
    """Base class for validation errors."""

    code = "VALIDATION_ERROR"
    message = "Invalid launch request"


class InvalidFramesPerChunkError(ValidationError):
    code = "INVALID_FRAMES_PER_CHUNK"
    message = "framesPerChunk must be a positive integer"

    def __init__(self, value: object = None, minimum: int = 1):
        super().__init__(f"framesPerChunk must be an integer >= {minimum}, got {value!r}")


class InvalidCompositionError(ValidationError):
    code = "INVALID_COMPOSITION"
    message = "Invalid composition"

    def __init__(self, field: str, value: object, reason: str):
        self.field = field
        super().__init__(f"Invalid composition {field}={value!r}: {reason}")


class InvalidPrivacyError(ValidationError):
    code = "INVALID_PRIVACY"
    message = "Invalid privacy"

    def __init__(self, value: object):
        super().__init__(f'Privacy must be "public", "private" or "no-acl", got {value!r}')


class PayloadTypeMismatchError(ValidationError):
    code = "PAYLOAD_TYPE_MISMATCH"
    message = "Expected launch type"

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected {expected} type, got {actual}")


# =============================================================================
# Coordination Errors
# =============================================================================


class MetadataPersistError(SplitRenderError):
    code = "METADATA_PERSIST_FAILED"
    message = "Could not persist render metadata"


class DispatchSubmitError(SplitRenderError):
    code = "DISPATCH_SUBMIT_FAILED"
    message = "Could not submit fan-out group"

    def __init__(self, message: str | None = None, *, group_index: int | None = None):
        self.group_index = group_index
        super().__init__(message)


class ProgressWriteError(SplitRenderError):
    code = "PROGRESS_WRITE_FAILED"
    message = "Could not write progress"


class ConcatenationError(SplitRenderError):
    code = "CONCATENATION_FAILED"
    message = "Chunk concatenation failed"


class ConcatenationTimeoutError(ConcatenationError):
    code = "CONCATENATION_TIMEOUT"
    message = "Timed out waiting for chunk outputs"

    def __init__(self, found: int, expected: int, timeout_s: float):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Only {found} of {expected} chunk outputs appeared within {timeout_s:.0f}s"
        )


# =============================================================================
# Storage Errors
# =============================================================================


class StorageError(SplitRenderError):
    code = "STORAGE_ERROR"
    message = "Storage request failed"


class ObjectNotFoundError(StorageError):
    code = "OBJECT_NOT_FOUND"
    message = "Object not found"

    def __init__(self, key: str | None = None):
        self.key = key
        super().__init__(f"Object not found: {key}" if key else self.message)
