"""End-to-end tests of the launch routine against a local store."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from splitrender.config import get_settings
from splitrender.constants.keys import (
    chunk_prefix,
    encoding_progress_key,
    errors_prefix,
    get_site_hash,
    optimization_profile_key,
    out_name,
    post_render_data_key,
    render_metadata_key,
    renders_prefix,
)
from splitrender.exceptions import (
    ConcatenationTimeoutError,
    DispatchSubmitError,
    InvalidFramesPerChunkError,
    MetadataPersistError,
    PayloadTypeMismatchError,
    StorageError,
    ValidationError,
)
from splitrender.schemas.render import FireGroupPayload
from splitrender.services.launcher import LaunchResult, LaunchStage, handle_launch
from splitrender.services.storage_service import LocalStorageService
from tests.conftest import FakeInvocationClient, concat_bytes, make_launch_payload


def _profile_key(payload):
    return optimization_profile_key(
        get_site_hash(payload["serve_url"]),
        payload["composition"]["id"],
        get_settings().region,
    )


def _dispatched_ranges(client):
    return [
        tuple(render["frame_range"])
        for _, fire in client.dispatched
        for render in fire["payloads"]
    ]


def _error_records(store, job_id):
    return [json.loads(store.get(obj.key)) for obj in store.list(errors_prefix(job_id))]


class TestSuccessfulLaunch:
    @pytest.mark.asyncio
    async def test_renders_and_finalizes(self, store, launch_payload):
        client = FakeInvocationClient(store=store)
        result = await handle_launch(
            launch_payload, store=store, invocation_client=client, merge=concat_bytes
        )

        assert result.succeeded
        assert result.stage == LaunchStage.FINALIZED
        manifest = result.manifest
        assert manifest.output_key == out_name("render-abc", "h264")
        assert store.get(manifest.output_key) == b"".join(
            f"[chunk {i}]".encode() for i in range(5)
        )
        assert manifest.output_size == len(store.get(manifest.output_key))
        assert manifest.errors == []
        assert manifest.files_cleaned_up == 10  # 5 chunk outputs + 5 invocation markers
        assert manifest.invoked_chunks == 5

    @pytest.mark.asyncio
    async def test_fans_out_in_two_groups(self, store, launch_payload):
        client = FakeInvocationClient(store=store)
        await handle_launch(launch_payload, store=store, invocation_client=client, merge=concat_bytes)

        assert len(client.dispatched) == 2
        sizes = sorted(len(FireGroupPayload.model_validate(p).payloads) for _, p in client.dispatched)
        assert sizes == [2, 3]
        assert sorted(_dispatched_ranges(client)) == [
            (0, 20), (20, 40), (40, 60), (60, 80), (80, 100),
        ]

    @pytest.mark.asyncio
    async def test_writes_metadata_progress_and_manifest(self, store, launch_payload):
        client = FakeInvocationClient(store=store)
        await handle_launch(launch_payload, store=store, invocation_client=client, merge=concat_bytes)

        metadata = json.loads(store.get(render_metadata_key("render-abc")))
        assert metadata["total_chunks"] == 5
        assert metadata["estimated_render_invocations"] == 5
        assert metadata["estimated_total_invocations"] == 7
        assert metadata["uses_optimization_profile"] is False

        progress = json.loads(store.get(encoding_progress_key("render-abc")))
        assert progress["frames_encoded"] == progress["total_frames"] == 100
        assert progress["done_in"] is not None

        manifest = json.loads(store.get(post_render_data_key("render-abc")))
        assert manifest["render_metadata"]["render_id"] == "render-abc"

    @pytest.mark.asyncio
    async def test_cleans_up_intermediate_outputs(self, store, launch_payload):
        client = FakeInvocationClient(store=store)
        await handle_launch(launch_payload, store=store, invocation_client=client, merge=concat_bytes)

        assert store.list(chunk_prefix("render-abc")) == []
        assert store.file_exists(out_name("render-abc", "h264"))

    @pytest.mark.asyncio
    async def test_unreadable_error_record_does_not_fail_launch(self, store, launch_payload):
        store.put(f"{errors_prefix('render-abc')}worker-truncated.json", b'{"source": "wor')
        client = FakeInvocationClient(store=store)
        result = await handle_launch(launch_payload, store=store, invocation_client=client, merge=concat_bytes)

        assert result.succeeded
        assert result.manifest.errors == []
        assert store.file_exists(post_render_data_key("render-abc"))

    @pytest.mark.asyncio
    async def test_output_keeps_job_privacy(self, store):
        payload = make_launch_payload(privacy="private")
        client = FakeInvocationClient(store=store)
        await handle_launch(payload, store=store, invocation_client=client, merge=concat_bytes)

        (output,) = [o for o in store.list(renders_prefix("render-abc")) if o.key.endswith("out.mp4")]
        assert output.metadata["privacy"] == "private"


class TestOptimizationAcrossLaunches:
    @pytest.mark.asyncio
    async def test_profile_written_then_used(self, store):
        slow_intro = lambda frame: 40.0 if frame < 25 else 10.0  # noqa: E731
        first = make_launch_payload(render_id="render-1")
        await handle_launch(
            first,
            store=store,
            invocation_client=FakeInvocationClient(store=store, ms_per_frame=slow_intro),
            merge=concat_bytes,
        )

        profile = json.loads(store.get(_profile_key(first)))
        assert profile["source_render_id"] == "render-1"
        assert profile["new_timing"] < profile["old_timing"]

        second = make_launch_payload(render_id="render-2")
        client = FakeInvocationClient(store=store, ms_per_frame=slow_intro)
        result = await handle_launch(second, store=store, invocation_client=client, merge=concat_bytes)

        assert result.succeeded
        assert result.manifest.render_metadata.uses_optimization_profile is True
        assert sorted(_dispatched_ranges(client)) == sorted(tuple(r) for r in profile["frame_ranges"])

    @pytest.mark.asyncio
    async def test_disabled_optimization_leaves_no_profile(self, store):
        payload = make_launch_payload(enable_chunk_optimization=False)
        result = await handle_launch(
            payload,
            store=store,
            invocation_client=FakeInvocationClient(store=store),
            merge=concat_bytes,
        )
        assert result.succeeded
        assert not store.file_exists(_profile_key(payload))

    @pytest.mark.asyncio
    async def test_profile_for_other_duration_is_ignored(self, store):
        await handle_launch(
            make_launch_payload(render_id="render-1"),
            store=store,
            invocation_client=FakeInvocationClient(store=store),
            merge=concat_bytes,
        )
        longer = make_launch_payload(render_id="render-2")
        longer["composition"] = dict(longer["composition"], duration_in_frames=120)
        result = await handle_launch(
            longer,
            store=store,
            invocation_client=FakeInvocationClient(store=store),
            merge=concat_bytes,
        )
        assert result.manifest.render_metadata.uses_optimization_profile is False
        assert result.manifest.render_metadata.total_chunks == 6

    @pytest.mark.asyncio
    async def test_optimization_failure_is_not_fatal(self, store, launch_payload):
        with patch(
            "splitrender.services.launcher.update_optimization_profile",
            AsyncMock(side_effect=StorageError("profile bucket down")),
        ):
            result = await handle_launch(
                launch_payload,
                store=store,
                invocation_client=FakeInvocationClient(store=store),
                merge=concat_bytes,
            )

        assert result.succeeded
        records = _error_records(store, "render-abc")
        assert len(records) == 1
        assert records[0]["is_fatal"] is False
        assert "Could not update optimization profile" in records[0]["stack"]


class TestFailedLaunch:
    @pytest.mark.asyncio
    async def test_invalid_frames_per_chunk_writes_only_error(self, store, fake_client):
        payload = make_launch_payload(frames_per_chunk=0)
        result = await handle_launch(payload, store=store, invocation_client=fake_client, merge=concat_bytes)

        assert result.stage == LaunchStage.FAILED
        assert result.failed_at == LaunchStage.INIT
        assert isinstance(result.error, InvalidFramesPerChunkError)
        assert fake_client.dispatched == []
        keys = [o.key for o in store.list(renders_prefix("render-abc"))]
        assert keys and all(k.startswith(errors_prefix("render-abc")) for k in keys)

        (record,) = _error_records(store, "render-abc")
        assert record["is_fatal"] is True
        assert record["code"] == "INVALID_FRAMES_PER_CHUNK"

    @pytest.mark.asyncio
    async def test_metadata_failure_prevents_dispatch(self, tmp_path, fake_client, launch_payload):
        class NoMetadataStore(LocalStorageService):
            def put(self, storage_key, body, privacy="private", content_type=None):
                if storage_key.endswith("pre-render-metadata.json"):
                    raise StorageError("write rejected")
                super().put(storage_key, body, privacy, content_type)

        store = NoMetadataStore(tmp_path / "store")
        result = await handle_launch(
            launch_payload, store=store, invocation_client=fake_client, merge=concat_bytes
        )

        assert result.failed_at == LaunchStage.PLANNED
        assert isinstance(result.error, MetadataPersistError)
        assert fake_client.dispatched == []
        (record,) = _error_records(store, "render-abc")
        assert record["code"] == "METADATA_PERSIST_FAILED"

    @pytest.mark.asyncio
    async def test_dispatch_failure_after_metadata(self, store, launch_payload):
        client = FakeInvocationClient(fail_times=100)
        result = await handle_launch(launch_payload, store=store, invocation_client=client, merge=concat_bytes)

        assert result.failed_at == LaunchStage.METADATA_PERSISTED
        assert isinstance(result.error, DispatchSubmitError)
        assert store.file_exists(render_metadata_key("render-abc"))

    @pytest.mark.asyncio
    async def test_concat_timeout(self, store, fake_client, launch_payload, monkeypatch):
        monkeypatch.setattr(get_settings(), "concat_timeout_s", 0.05)
        monkeypatch.setattr(get_settings(), "concat_poll_interval_s", 0.01)

        result = await handle_launch(
            launch_payload, store=store, invocation_client=fake_client, merge=concat_bytes
        )

        assert result.failed_at == LaunchStage.AWAITING_CONCAT
        assert isinstance(result.error, ConcatenationTimeoutError)
        assert len(fake_client.dispatched) == 2
        (record,) = _error_records(store, "render-abc")
        assert record["code"] == "CONCATENATION_TIMEOUT"
        assert record["source"] == "orchestrator"
        assert not store.file_exists(post_render_data_key("render-abc"))

    @pytest.mark.asyncio
    async def test_wrong_payload_type(self, store):
        with pytest.raises(PayloadTypeMismatchError):
            await handle_launch(
                {"type": "fire-group", "render_id": "render-abc", "payloads": []},
                store=store,
            )

    @pytest.mark.asyncio
    async def test_malformed_payload_is_reported(self, store, fake_client):
        result = await handle_launch(
            {"type": "launch", "render_id": "render-abc"},
            store=store,
            invocation_client=fake_client,
            merge=concat_bytes,
        )

        assert result.stage == LaunchStage.FAILED
        assert result.failed_at == LaunchStage.INIT
        assert isinstance(result.error, ValidationError)
        assert fake_client.dispatched == []
        (record,) = _error_records(store, "render-abc")
        assert record["is_fatal"] is True
        assert record["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_mistyped_field_is_reported(self, store, fake_client):
        payload = make_launch_payload(frames_per_chunk="twenty")
        result = await handle_launch(
            payload, store=store, invocation_client=fake_client, merge=concat_bytes
        )

        assert result.failed_at == LaunchStage.INIT
        (record,) = _error_records(store, "render-abc")
        assert record["is_fatal"] is True

    @pytest.mark.asyncio
    async def test_payload_without_render_id_raises(self, store):
        with pytest.raises(ValidationError):
            await handle_launch({"type": "launch"}, store=store)

    @pytest.mark.asyncio
    async def test_manifest_failure_fails_while_finalizing(self, store, launch_payload):
        with patch(
            "splitrender.services.launcher.write_post_render_manifest",
            AsyncMock(side_effect=StorageError("manifest write rejected")),
        ):
            result = await handle_launch(
                launch_payload,
                store=store,
                invocation_client=FakeInvocationClient(store=store),
                merge=concat_bytes,
            )

        assert result.failed_at == LaunchStage.FINALIZING
        assert isinstance(result.error, StorageError)
        fatal = [r for r in _error_records(store, "render-abc") if r["is_fatal"]]
        assert len(fatal) == 1

    @pytest.mark.asyncio
    async def test_final_progress_failure_is_fatal(self, tmp_path, launch_payload):
        class NoProgressStore(LocalStorageService):
            def put(self, storage_key, body, privacy="private", content_type=None):
                if storage_key == encoding_progress_key("render-abc"):
                    raise StorageError("progress write rejected")
                super().put(storage_key, body, privacy, content_type)

        store = NoProgressStore(tmp_path / "store")
        result = await handle_launch(
            launch_payload,
            store=store,
            invocation_client=FakeInvocationClient(store=store),
            merge=concat_bytes,
        )

        assert result.failed_at == LaunchStage.FINALIZING
        assert not store.file_exists(post_render_data_key("render-abc"))
        fatal = [r for r in _error_records(store, "render-abc") if r["is_fatal"]]
        assert len(fatal) == 1


class TestLaunchTask:
    def test_reports_failure(self):
        from splitrender.tasks.launch_task import launch_task

        failed = LaunchResult(
            stage=LaunchStage.FAILED,
            failed_at=LaunchStage.AWAITING_CONCAT,
            error=ConcatenationTimeoutError(3, 5, 840),
        )
        with patch("splitrender.tasks.launch_task.handle_launch", AsyncMock(return_value=failed)):
            outcome = launch_task(make_launch_payload())

        assert outcome["status"] == "failed"
        assert outcome["failed_at"] == "awaiting_concat"
        assert outcome["render_id"] == "render-abc"
