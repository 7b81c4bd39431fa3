"""Waiting for chunk outputs and merging them.

Workers upload one output object per chunk. The concatenator polls the chunk
prefix until every expected chunk is present, downloads each as it appears and
merges them in frame order with the FFmpeg concat demuxer.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from splitrender.config import get_settings
from splitrender.constants.keys import chunk_index_from_key, chunk_prefix, get_file_extension
from splitrender.exceptions import ConcatenationError, ConcatenationTimeoutError
from splitrender.services.frame_planner import Chunk

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], object]
MergeFunction = Callable[[list[str], str], Awaitable[None]]


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ConcatResult:
    outfile: str
    encoding_start: int  # epoch ms
    encoding_stop: int  # epoch ms
    tmp_dir: str

    def cleanup(self) -> None:
        """Remove downloaded chunks and the local merged file."""
        shutil.rmtree(self.tmp_dir, ignore_errors=True)


async def merge_with_ffmpeg(
    chunk_files: list[str],
    output_path: str,
    ffmpeg_path: str | None = None,
) -> None:
    """Concatenate chunk files using FFmpeg concat demuxer.

    Uses -c copy for lossless concatenation (no re-encoding).
    """
    if len(chunk_files) == 1:
        shutil.copy2(chunk_files[0], output_path)
        return

    concat_list_path = os.path.join(os.path.dirname(output_path), "concat_list.txt")
    with open(concat_list_path, "w") as f:
        for chunk_file in chunk_files:
            # FFmpeg concat requires escaped paths
            escaped = chunk_file.replace("'", "'\\''")
            f.write(f"file '{escaped}'\n")

    cmd = [
        ffmpeg_path or get_settings().ffmpeg_path,
        "-y",
        "-f", "concat",
        "-safe", "0",
        "-i", concat_list_path,
        "-c", "copy",
        "-movflags", "+faststart",
        output_path,
    ]
    logger.info(f"[CONCAT] Command: {' '.join(cmd)}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ConcatenationError(f"FFmpeg not found: {cmd[0]}") from e
    _, stderr = await proc.communicate()

    if proc.returncode != 0:
        stderr_text = stderr.decode("utf-8", errors="replace")
        logger.error(f"[CONCAT] Failed: {stderr_text}")
        raise ConcatenationError(f"Chunk concatenation failed: {stderr_text[-2000:]}")


async def concat_chunks(
    store,
    *,
    job_id: str,
    chunks: list[Chunk],
    codec: str,
    on_progress: ProgressCallback,
    timeout_s: float | None = None,
    poll_interval_s: float | None = None,
    merge: MergeFunction = merge_with_ffmpeg,
) -> ConcatResult:
    """Wait for every chunk output, then merge them into one local file.

    ``on_progress(frames_available, encoding_start)`` is called each time new
    chunk outputs are discovered.

    Raises:
        ConcatenationTimeoutError: not every chunk output appeared in time
        ConcatenationError: the merge failed
    """
    settings = get_settings()
    timeout_s = settings.concat_timeout_s if timeout_s is None else timeout_s
    poll_interval_s = settings.concat_poll_interval_s if poll_interval_s is None else poll_interval_s

    lengths = {chunk.index: chunk.length for chunk in chunks}
    expected = len(lengths)
    tmp_dir = tempfile.mkdtemp(prefix=f"splitrender_{job_id}_")
    encoding_start = now_ms()
    downloaded: dict[int, str] = {}
    deadline = time.monotonic() + timeout_s

    try:
        while len(downloaded) < expected:
            objects = await asyncio.to_thread(store.list, chunk_prefix(job_id))
            new = {}
            for obj in objects:
                index = chunk_index_from_key(obj.key)
                if index in lengths and index not in downloaded:
                    new[index] = obj.key

            if new:
                paths = await asyncio.gather(
                    *[
                        asyncio.to_thread(
                            store.download_file,
                            key,
                            os.path.join(tmp_dir, key.rsplit("/", 1)[-1]),
                        )
                        for key in new.values()
                    ]
                )
                downloaded.update(zip(new.keys(), paths))
                frames = sum(lengths[i] for i in downloaded)
                logger.debug("Chunks available for %s: %d/%d", job_id, len(downloaded), expected)
                on_progress(frames, encoding_start)
                continue

            if time.monotonic() >= deadline:
                raise ConcatenationTimeoutError(len(downloaded), expected, timeout_s)
            await asyncio.sleep(poll_interval_s)

        outfile = os.path.join(tmp_dir, f"out.{get_file_extension(codec)}")
        try:
            await merge([downloaded[i] for i in sorted(downloaded)], outfile)
        except OSError as e:
            raise ConcatenationError(f"Could not merge chunks: {e}") from e
        return ConcatResult(
            outfile=outfile,
            encoding_start=encoding_start,
            encoding_stop=now_ms(),
            tmp_dir=tmp_dir,
        )
    except BaseException:
        shutil.rmtree(tmp_dir, ignore_errors=True)
        raise
