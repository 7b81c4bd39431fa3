"""Error codes dictionary for the launch orchestrator.

Single source of truth for how each failure kind is disposed of: whether it
terminates the launch and whether a later attempt could succeed.
"""

from typing import TypedDict


class ErrorCodeSpec(TypedDict, total=False):
    """Specification for an error code."""

    fatal: bool
    retryable: bool
    description: str


ERROR_CODES: dict[str, ErrorCodeSpec] = {
    # ==========================================================================
    # Validation errors (fatal, raised before anything is dispatched)
    # ==========================================================================
    "VALIDATION_ERROR": {
        "fatal": True,
        "retryable": False,
        "description": "The launch request is malformed",
    },
    "INVALID_FRAMES_PER_CHUNK": {
        "fatal": True,
        "retryable": False,
        "description": "framesPerChunk must be a positive integer",
    },
    "INVALID_COMPOSITION": {
        "fatal": True,
        "retryable": False,
        "description": "Composition duration, fps or dimensions are invalid",
    },
    "INVALID_PRIVACY": {
        "fatal": True,
        "retryable": False,
        "description": "Privacy must be one of public, private or no-acl",
    },
    "PAYLOAD_TYPE_MISMATCH": {
        "fatal": True,
        "retryable": False,
        "description": "The payload was routed to the wrong routine",
    },
    # ==========================================================================
    # Coordination errors
    # ==========================================================================
    "METADATA_PERSIST_FAILED": {
        "fatal": True,
        "retryable": True,
        "description": "Render metadata could not be written before dispatch",
    },
    "DISPATCH_SUBMIT_FAILED": {
        "fatal": True,
        "retryable": True,
        "description": "A fan-out group could not be submitted",
    },
    "PROGRESS_WRITE_FAILED": {
        "fatal": False,
        "retryable": False,
        "description": "A progress snapshot could not be written",
    },
    "CONCATENATION_TIMEOUT": {
        "fatal": True,
        "retryable": False,
        "description": "Not every chunk output appeared before the deadline",
    },
    "CONCATENATION_FAILED": {
        "fatal": True,
        "retryable": False,
        "description": "Chunk outputs could not be merged",
    },
    # ==========================================================================
    # Storage errors
    # ==========================================================================
    "STORAGE_ERROR": {
        "fatal": True,
        "retryable": True,
        "description": "The durable store rejected a request",
    },
    "OBJECT_NOT_FOUND": {
        "fatal": False,
        "retryable": False,
        "description": "The requested key does not exist",
    },
    "INTERNAL_ERROR": {
        "fatal": True,
        "retryable": False,
        "description": "Unexpected failure",
    },
}


def get_error_spec(code: str) -> ErrorCodeSpec:
    """Get error specification by code.

    Args:
        code: The error code

    Returns:
        ErrorCodeSpec with fatal and retryable flags
    """
    return ERROR_CODES.get(code, ERROR_CODES["INTERNAL_ERROR"])
