"""Key namespace of the durable store.

Everything a job writes lives under ``renders/{job_id}/``. Optimization profiles
are scoped to a site, composition and region instead, so successive jobs of the
same composition share one profile.
"""

import hashlib
import uuid

RENDERS_FOLDER = "renders"
OPTIMIZATION_PROFILES_FOLDER = "optimization-profiles"

CODEC_EXTENSIONS: dict[str, str] = {
    "h264": "mp4",
    "h265": "mp4",
    "vp8": "webm",
    "vp9": "webm",
    "prores": "mov",
    "gif": "gif",
    "mp3": "mp3",
    "aac": "aac",
    "wav": "wav",
}


def get_file_extension(codec: str) -> str:
    return CODEC_EXTENSIONS[codec]


def get_site_hash(serve_url: str) -> str:
    """Stable short digest of the site a composition is served from."""
    return hashlib.sha256(serve_url.encode("utf-8")).hexdigest()[:16]


def renders_prefix(job_id: str) -> str:
    return f"{RENDERS_FOLDER}/{job_id}/"


def render_metadata_key(job_id: str) -> str:
    return f"{renders_prefix(job_id)}pre-render-metadata.json"


def encoding_progress_key(job_id: str) -> str:
    return f"{renders_prefix(job_id)}encoding-progress.json"


def post_render_data_key(job_id: str) -> str:
    return f"{renders_prefix(job_id)}post-render-metadata.json"


def out_name(job_id: str, codec: str) -> str:
    return f"{renders_prefix(job_id)}out.{get_file_extension(codec)}"


def chunk_prefix(job_id: str) -> str:
    return f"{renders_prefix(job_id)}chunks/"


def chunk_key(job_id: str, index: int, codec: str) -> str:
    return f"{chunk_prefix(job_id)}chunk-{index:08d}.{get_file_extension(codec)}"


def chunk_index_from_key(key: str) -> int:
    """Parse the chunk index back out of a chunk or marker key."""
    name = key.rsplit("/", 1)[-1]
    return int(name.split("-")[1].split(".")[0])


def chunk_timings_prefix(job_id: str) -> str:
    return f"{renders_prefix(job_id)}chunk-timings/"


def chunk_timings_key(job_id: str, index: int) -> str:
    return f"{chunk_timings_prefix(job_id)}chunk-{index:08d}.json"


def invocations_prefix(job_id: str) -> str:
    return f"{renders_prefix(job_id)}invocations/"


def invocation_marker_key(job_id: str, index: int, attempt: int) -> str:
    return f"{invocations_prefix(job_id)}chunk-{index:08d}-attempt-{attempt}.json"


def errors_prefix(job_id: str) -> str:
    return f"{renders_prefix(job_id)}errors/"


def error_key(
    job_id: str,
    source: str,
    chunk: int | None,
    attempt: int,
    timestamp_ms: int,
) -> str:
    """Key of one error record; the random suffix keeps same-millisecond reports apart."""
    chunk_part = f"chunk-{chunk:08d}" if chunk is not None else "no-chunk"
    return (
        f"{errors_prefix(job_id)}{source}-{chunk_part}-attempt-{attempt}"
        f"-{timestamp_ms}-{uuid.uuid4().hex[:12]}.json"
    )


def optimization_profile_key(site_hash: str, composition_id: str, region: str) -> str:
    return f"{OPTIMIZATION_PROFILES_FOLDER}/{site_hash}/{composition_id}/{region}.json"
