"""Input validation for launch requests.

Runs before anything is written to the store, so a rejected launch leaves no
state behind besides its error record.
"""

import math

from splitrender.config import get_settings
from splitrender.constants.keys import CODEC_EXTENSIONS
from splitrender.exceptions import (
    InvalidCompositionError,
    InvalidFramesPerChunkError,
    InvalidPrivacyError,
    ValidationError,
)
from splitrender.schemas.render import CompositionDescriptor, LaunchPayload
from splitrender.services.storage_service import PRIVACY_VALUES


def validate_frames_per_chunk(frames_per_chunk: object) -> int:
    minimum = get_settings().min_frames_per_chunk
    if isinstance(frames_per_chunk, bool) or not isinstance(frames_per_chunk, int):
        raise InvalidFramesPerChunkError(frames_per_chunk, minimum)
    if frames_per_chunk < max(1, minimum):
        raise InvalidFramesPerChunkError(frames_per_chunk, max(1, minimum))
    return frames_per_chunk


def validate_duration_in_frames(duration: object) -> None:
    if isinstance(duration, bool) or not isinstance(duration, int):
        raise InvalidCompositionError("duration_in_frames", duration, "must be an integer")
    if duration < 1:
        raise InvalidCompositionError("duration_in_frames", duration, "must be at least 1")


def validate_fps(fps: object) -> None:
    if isinstance(fps, bool) or not isinstance(fps, (int, float)):
        raise InvalidCompositionError("fps", fps, "must be a number")
    if not math.isfinite(fps) or fps <= 0:
        raise InvalidCompositionError("fps", fps, "must be a finite number above 0")


def validate_dimension(value: object, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidCompositionError(name, value, "must be an integer")
    if value < 1:
        raise InvalidCompositionError(name, value, "must be at least 1")


def validate_composition(composition: CompositionDescriptor) -> None:
    validate_duration_in_frames(composition.duration_in_frames)
    validate_fps(composition.fps)
    validate_dimension(composition.width, "width")
    validate_dimension(composition.height, "height")


def validate_privacy(privacy: object) -> None:
    if privacy not in PRIVACY_VALUES:
        raise InvalidPrivacyError(privacy)


def validate_codec(codec: str) -> None:
    if codec not in CODEC_EXTENSIONS:
        raise ValidationError(
            f"Unknown codec {codec!r}, expected one of {', '.join(sorted(CODEC_EXTENSIONS))}"
        )


def validate_launch_payload(payload: LaunchPayload) -> None:
    """Validate everything a launch needs before it plans or writes anything."""
    validate_frames_per_chunk(payload.frames_per_chunk)
    validate_composition(payload.composition)
    validate_privacy(payload.privacy)
    validate_codec(payload.codec)
    if payload.max_retries < 0:
        raise ValidationError(f"max_retries must be >= 0, got {payload.max_retries}")
