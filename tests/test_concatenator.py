"""Tests for chunk collection and merging."""

import asyncio
import os
import subprocess
import tempfile

import pytest

from splitrender.constants.keys import chunk_key
from splitrender.exceptions import ConcatenationError, ConcatenationTimeoutError
from splitrender.services.concatenator import concat_chunks, merge_with_ffmpeg
from splitrender.services.frame_planner import plan_frame_ranges
from tests.conftest import concat_bytes, requires_ffmpeg


class TestConcatChunks:
    @pytest.mark.asyncio
    async def test_merges_in_frame_order(self, store):
        plan = plan_frame_ranges(60, 20)
        # Uploaded out of order
        for index in (2, 0, 1):
            store.put(chunk_key("r1", index, "h264"), f"<{index}>".encode())

        progress = []
        result = await concat_chunks(
            store,
            job_id="r1",
            chunks=plan.chunks,
            codec="h264",
            on_progress=lambda frames, start: progress.append(frames),
            merge=concat_bytes,
        )
        try:
            with open(result.outfile, "rb") as f:
                assert f.read() == b"<0><1><2>"
            assert result.outfile.endswith(".mp4")
            assert progress == [60]
            assert result.encoding_stop >= result.encoding_start
        finally:
            result.cleanup()
        assert not os.path.exists(result.tmp_dir)

    @pytest.mark.asyncio
    async def test_progress_grows_as_chunks_appear(self, store):
        plan = plan_frame_ranges(50, 20)
        store.put(chunk_key("r1", 0, "h264"), b"a")

        async def late_upload():
            await asyncio.sleep(0.05)
            store.put(chunk_key("r1", 2, "h264"), b"c")
            await asyncio.sleep(0.05)
            store.put(chunk_key("r1", 1, "h264"), b"b")

        progress = []
        uploader = asyncio.create_task(late_upload())
        result = await concat_chunks(
            store,
            job_id="r1",
            chunks=plan.chunks,
            codec="h264",
            on_progress=lambda frames, start: progress.append(frames),
            timeout_s=5,
            poll_interval_s=0.01,
            merge=concat_bytes,
        )
        await uploader
        result.cleanup()
        assert progress == [20, 30, 50]

    @pytest.mark.asyncio
    async def test_timeout_removes_tmp_dir(self, store, monkeypatch):
        created = []
        real_mkdtemp = tempfile.mkdtemp

        def tracking_mkdtemp(*args, **kwargs):
            path = real_mkdtemp(*args, **kwargs)
            created.append(path)
            return path

        monkeypatch.setattr("splitrender.services.concatenator.tempfile.mkdtemp", tracking_mkdtemp)
        plan = plan_frame_ranges(40, 20)
        store.put(chunk_key("r1", 0, "h264"), b"a")

        with pytest.raises(ConcatenationTimeoutError) as exc_info:
            await concat_chunks(
                store,
                job_id="r1",
                chunks=plan.chunks,
                codec="h264",
                on_progress=lambda frames, start: None,
                timeout_s=0.05,
                poll_interval_s=0.01,
                merge=concat_bytes,
            )
        assert exc_info.value.found == 1
        assert exc_info.value.expected == 2
        assert created and not os.path.exists(created[0])

    @pytest.mark.asyncio
    async def test_merge_os_error_is_concatenation_error(self, store):
        plan = plan_frame_ranges(20, 20)
        store.put(chunk_key("r1", 0, "h264"), b"a")

        async def broken_merge(chunk_files, output_path):
            raise OSError("disk gone")

        with pytest.raises(ConcatenationError):
            await concat_chunks(
                store,
                job_id="r1",
                chunks=plan.chunks,
                codec="h264",
                on_progress=lambda frames, start: None,
                merge=broken_merge,
            )


class TestMergeWithFFmpeg:
    @pytest.mark.asyncio
    async def test_single_chunk_is_copied(self, tmp_path):
        chunk = tmp_path / "chunk-0.mp4"
        chunk.write_bytes(b"only")
        output = tmp_path / "out.mp4"
        await merge_with_ffmpeg([str(chunk)], str(output))
        assert output.read_bytes() == b"only"

    @pytest.mark.asyncio
    async def test_missing_binary(self, tmp_path):
        chunks = []
        for i in range(2):
            path = tmp_path / f"chunk-{i}.mp4"
            path.write_bytes(b"x")
            chunks.append(str(path))
        with pytest.raises(ConcatenationError):
            await merge_with_ffmpeg(chunks, str(tmp_path / "out.mp4"), ffmpeg_path="/nonexistent/ffmpeg")

    @requires_ffmpeg
    @pytest.mark.requires_ffmpeg
    @pytest.mark.asyncio
    async def test_concatenates_real_chunks(self, tmp_path):
        chunks = []
        for i in range(2):
            path = tmp_path / f"chunk-{i}.mp4"
            subprocess.run(
                [
                    "ffmpeg", "-y", "-f", "lavfi", "-i", "color=c=black:s=64x64:d=1",
                    "-c:v", "mpeg4", str(path),
                ],
                check=True,
                capture_output=True,
            )
            chunks.append(str(path))

        output = tmp_path / "out.mp4"
        await merge_with_ffmpeg(chunks, str(output), ffmpeg_path="ffmpeg")
        assert output.stat().st_size > 0
