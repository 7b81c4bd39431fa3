"""Loading, collecting and persisting optimization profiles."""

import asyncio
import logging

import pydantic

from splitrender.config import get_settings
from splitrender.constants.keys import (
    chunk_timings_prefix,
    optimization_profile_key,
)
from splitrender.exceptions import ObjectNotFoundError
from splitrender.schemas.optimization import ChunkTimingSample, OptimizationProfile
from splitrender.services.chunk_optimizer import (
    get_frame_ranges_from_profile,
    get_profile_duration,
    is_valid_optimization_profile,
    optimize_invocation_order,
    optimize_profile_recursively,
)

logger = logging.getLogger(__name__)


async def get_optimization_profile(
    store,
    site_hash: str,
    composition_id: str,
    region: str,
) -> OptimizationProfile | None:
    """Read the shared profile; a missing or unreadable profile means no optimization."""
    key = optimization_profile_key(site_hash, composition_id, region)
    try:
        raw = await asyncio.to_thread(store.get, key)
    except ObjectNotFoundError:
        return None

    try:
        return OptimizationProfile.model_validate_json(raw)
    except pydantic.ValidationError as e:
        logger.warning("Discarding unreadable optimization profile %s: %s", key, e)
        return None


async def write_optimization_profile(
    store,
    profile: OptimizationProfile,
    site_hash: str,
    composition_id: str,
    region: str,
) -> None:
    key = optimization_profile_key(site_hash, composition_id, region)
    await asyncio.to_thread(
        store.put,
        key,
        profile.model_dump_json(),
        "private",
        "application/json",
    )
    logger.info(
        "Wrote optimization profile %s (%d chunks, %.0fms -> %.0fms)",
        key,
        len(profile.frame_ranges),
        profile.old_timing,
        profile.new_timing,
    )


async def collect_chunk_information(store, job_id: str) -> list[ChunkTimingSample]:
    """Gather the timing artifact of every chunk worker of a job."""
    objects = await asyncio.to_thread(store.list, chunk_timings_prefix(job_id))
    raws = await asyncio.gather(
        *[asyncio.to_thread(store.get, obj.key) for obj in objects]
    )
    samples = []
    for obj, raw in zip(objects, raws):
        try:
            samples.append(ChunkTimingSample.model_validate_json(raw))
        except pydantic.ValidationError as e:
            logger.warning("Skipping unreadable chunk timings %s: %s", obj.key, e)
    return sorted(samples, key=lambda s: s.frame_range[0])


async def update_optimization_profile(
    store,
    chunk_data: list[ChunkTimingSample],
    *,
    job_id: str,
    frame_count: int,
    frames_per_chunk: int,
    site_hash: str,
    composition_id: str,
    region: str,
) -> OptimizationProfile | None:
    """Optimize, validate and persist a new profile from collected chunk timings.

    Returns the persisted profile, or None if the result was discarded.
    Never raises for an invalid partition.
    """
    settings = get_settings()
    if not chunk_data:
        logger.info("No chunk timings for %s, skipping optimization", job_id)
        return None

    optimized = optimize_invocation_order(
        optimize_profile_recursively(chunk_data, settings.optimization_iterations)
    )
    if not is_valid_optimization_profile(optimized, frame_count):
        logger.warning("Discarding invalid optimization profile for %s", job_id)
        return None

    profile = OptimizationProfile(
        frame_ranges=get_frame_ranges_from_profile(optimized),
        old_timing=get_profile_duration(chunk_data),
        new_timing=get_profile_duration(optimized),
        frame_count=frame_count,
        source_render_id=job_id,
        chunk_size_hint=frames_per_chunk,
        schema_version=settings.app_version,
    )
    if settings.optimization_regression_guard and profile.new_timing > profile.old_timing:
        logger.info(
            "Keeping previous profile: new makespan %.0fms is worse than %.0fms",
            profile.new_timing,
            profile.old_timing,
        )
        return None

    await write_optimization_profile(store, profile, site_hash, composition_id, region)
    return profile
