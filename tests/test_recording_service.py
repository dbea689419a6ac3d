import asyncio
import os
import re
import threading

import pytest

from match_recorder.models.api import RecordingRequest
from match_recorder.models.domain import RecordingStatus
from match_recorder.services.recording_service import (
    MAX_DURATION_REASON,
    RESTART_REASON,
    AlreadyActive,
    AlreadyTerminal,
    CaptureStartError,
    InsufficientResources,
    NotActive,
    NotUploaded,
    RecordingNotFound,
    UnknownStreamSource,
)

from tests.helpers import eventually


class FullDisk:
    def has_capacity_for_capture(self):
        return False


class StubCatalog:
    sources = {"supersport-1": "https://streams.example.com/supersport/1.m3u8"}

    def stream_url(self, source_key):
        return self.sources.get(source_key)

    def upcoming_matches(self, now):
        return []


async def finish_and_settle(manager, captures, recording_id):
    captures.for_recording(recording_id).finish()
    await eventually(lambda: recording_id not in manager.registry)


@pytest.mark.asyncio
async def test_start_persists_recording_and_registers_capture(manager, store, captures, make_recording):
    recording = make_recording()

    recording_id = await manager.start(recording)

    saved = store.get_recording(recording_id)
    assert saved.status == RecordingStatus.RECORDING
    assert saved.started_at is not None
    assert re.search(rf"/{recording_id}/{recording_id}_\d{{8}}_\d{{6}}\.mp4$", saved.file_path)
    assert recording_id in manager.registry

    capture = captures.for_recording(recording_id)
    assert capture.started
    assert capture.command[-1] == saved.file_path
    assert recording.stream_url in capture.command

    await manager.stop(recording_id)


@pytest.mark.asyncio
async def test_second_start_is_already_active(manager, captures, make_recording):
    recording = make_recording()
    await manager.start(recording)

    with pytest.raises(AlreadyActive):
        await manager.start(recording)
    assert len(captures.captures) == 1

    await manager.stop(recording.id)


@pytest.mark.asyncio
async def test_concurrent_double_start_launches_one_capture(manager, captures, make_recording):
    recording = make_recording()

    results = await asyncio.gather(manager.start(recording), manager.start(recording), return_exceptions=True)

    assert results.count(recording.id) == 1
    assert sum(isinstance(result, AlreadyActive) for result in results) == 1
    assert len(captures.captures) == 1

    await manager.stop(recording.id)


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [RecordingStatus.COMPLETED, RecordingStatus.FAILED, RecordingStatus.STOPPED])
async def test_start_rejects_terminal_recording(manager, captures, make_recording, status):
    recording = make_recording(status=status)

    with pytest.raises(AlreadyTerminal):
        await manager.start(recording)

    assert recording.id not in manager.registry
    assert captures.captures == []


@pytest.mark.asyncio
async def test_start_unknown_recording(manager):
    from match_recorder.models.domain import Recording

    with pytest.raises(RecordingNotFound):
        await manager.start(Recording(id="ghost", title="ghost", stream_url="https://example.com"))
    assert len(manager.registry) == 0


@pytest.mark.asyncio
async def test_start_refused_when_disk_is_full(manager, store, captures, make_recording):
    manager.resource_monitor = FullDisk()
    recording = make_recording()

    with pytest.raises(InsufficientResources):
        await manager.start(recording)

    assert store.get_recording(recording.id).status == RecordingStatus.PENDING
    assert recording.id not in manager.registry
    assert captures.captures == []


@pytest.mark.asyncio
async def test_launch_failure_marks_recording_failed(manager, store, captures, make_recording):
    captures.launch_error = "Capture binary not found: ffmpeg"
    recording = make_recording()

    with pytest.raises(CaptureStartError) as excinfo:
        await manager.start(recording)

    assert excinfo.value.recording_id == recording.id
    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.FAILED
    assert "not found" in saved.error_message
    assert recording.id not in manager.registry


@pytest.mark.asyncio
async def test_stop_inactive_has_no_side_effects(manager, store, make_recording):
    recording = make_recording()

    with pytest.raises(NotActive):
        await manager.stop(recording.id, reason="nothing to stop")

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.PENDING
    assert saved.error_message is None


@pytest.mark.asyncio
async def test_stop_terminates_and_persists_stopped(manager, store, captures, make_recording):
    recording = make_recording()
    await manager.start(recording)

    stopped = await manager.stop(recording.id, reason="half time")

    assert stopped.status == RecordingStatus.STOPPED
    assert stopped.error_message == "half time"
    assert stopped.completed_at is not None
    assert captures.for_recording(recording.id).terminate_calls == 1
    assert recording.id not in manager.registry

    # The terminated capture's completion event must not override the stop
    await asyncio.sleep(0.05)
    assert store.get_recording(recording.id).status == RecordingStatus.STOPPED


@pytest.mark.asyncio
async def test_stop_kills_unresponsive_capture(manager, store, captures, make_recording):
    captures.exit_on_terminate = False
    recording = make_recording()
    await manager.start(recording)

    stopped = await manager.stop(recording.id)

    assert stopped.status == RecordingStatus.STOPPED
    assert stopped.error_message is None
    assert not captures.for_recording(recording.id).is_running


@pytest.mark.asyncio
async def test_finish_racing_stop_leaves_stopped(manager, store, captures, object_store, make_recording):
    recording = make_recording()
    await manager.start(recording)

    captures.for_recording(recording.id).finish()
    stopped = await manager.stop(recording.id)
    await eventually(lambda: manager.get_statistics()['archiving'] == 0)

    assert stopped.status == RecordingStatus.STOPPED
    assert store.get_recording(recording.id).status == RecordingStatus.STOPPED
    assert manager.get_statistics()['completed'] == 0


@pytest.mark.asyncio
async def test_clean_finish_uploads_and_completes(manager, store, captures, object_store, make_recording):
    recording = make_recording()
    transitions = []
    original = store.transition_recording

    def spy(recording_id, from_states, to_state, **fields):
        changed = original(recording_id, from_states, to_state, **fields)
        if changed:
            transitions.append(to_state)
        return changed

    store.transition_recording = spy

    await manager.start(recording)
    local_path = store.get_recording(recording.id).file_path
    await finish_and_settle(manager, captures, recording.id)

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.COMPLETED
    assert saved.storage_key == f"recordings/{recording.id}/{os.path.basename(local_path)}"
    assert saved.storage_url is not None
    assert saved.file_path is None
    assert saved.file_size == 2048
    assert not os.path.exists(local_path)
    assert transitions == [RecordingStatus.RECORDING, RecordingStatus.COMPLETED]


@pytest.mark.asyncio
async def test_capture_failure_marks_failed(manager, store, captures, make_recording):
    recording = make_recording()
    await manager.start(recording)

    captures.for_recording(recording.id).fail()
    await eventually(lambda: recording.id not in manager.registry)

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.FAILED
    assert "Connection refused" in saved.error_message


@pytest.mark.asyncio
async def test_upload_outage_fails_and_keeps_file(manager, store, captures, object_store, make_recording):
    object_store.fail_puts = True
    recording = make_recording()
    await manager.start(recording)
    local_path = store.get_recording(recording.id).file_path

    await finish_and_settle(manager, captures, recording.id)

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.FAILED
    assert saved.file_path == local_path
    assert os.path.exists(local_path)
    assert saved.storage_key is None
    assert "Upload failed" in saved.error_message


@pytest.mark.asyncio
async def test_watchdog_stops_after_max_duration(manager, store, config, captures, make_recording):
    manager.config = config.model_copy(update={'max_duration_seconds': 0.2})
    recording = make_recording()
    await manager.start(recording)

    await eventually(lambda: store.get_recording(recording.id).status == RecordingStatus.STOPPED, timeout=3)

    saved = store.get_recording(recording.id)
    assert saved.error_message == MAX_DURATION_REASON
    assert recording.id not in manager.registry
    assert captures.for_recording(recording.id).terminate_calls == 1


@pytest.mark.asyncio
async def test_stop_during_upload_waits_for_terminal_state(manager, store, captures, object_store, make_recording):
    gate = threading.Event()
    original_put = object_store.put

    def slow_put(*args):
        gate.wait(5)
        return original_put(*args)

    object_store.put = slow_put
    recording = make_recording()
    await manager.start(recording)
    captures.for_recording(recording.id).finish()
    await eventually(lambda: getattr(manager.registry.get(recording.id), 'phase', None) == "uploading")

    stop_task = asyncio.create_task(manager.stop(recording.id, reason="too late"))
    await asyncio.sleep(0.05)
    assert not stop_task.done()

    gate.set()
    result = await asyncio.wait_for(stop_task, timeout=5)

    assert result.status == RecordingStatus.COMPLETED
    assert recording.id not in manager.registry


@pytest.mark.asyncio
async def test_start_manual_resolves_named_source(manager, store, config):
    manager.catalog = StubCatalog()

    recording_id = await manager.start_manual(RecordingRequest(title="Soweto Derby", source="supersport-1"))

    saved = store.get_recording(recording_id)
    assert saved.stream_url == StubCatalog.sources["supersport-1"]
    assert saved.quality == config.default_quality
    assert saved.format == config.default_format
    assert saved.status == RecordingStatus.RECORDING

    await manager.stop(recording_id)


@pytest.mark.asyncio
async def test_start_manual_with_raw_url_and_overrides(manager, store, captures):
    recording_id = await manager.start_manual(RecordingRequest(
        title="Cup final", stream_url="rtmp://ingest.example.com/live/final", quality="medium", format="flv"
    ))

    saved = store.get_recording(recording_id)
    assert saved.file_path.endswith(".flv")
    command = captures.for_recording(recording_id).command
    assert command[command.index('-q:v') + 1] == "5"

    await manager.stop(recording_id)


@pytest.mark.asyncio
async def test_start_manual_unknown_source(manager, store):
    manager.catalog = StubCatalog()

    with pytest.raises(UnknownStreamSource):
        await manager.start_manual(RecordingRequest(title="x", source="nope"))
    assert store.list_recordings() == []


@pytest.mark.asyncio
async def test_active_snapshot(manager, make_recording):
    first = make_recording(title="A vs B")
    second = make_recording(title="C vs D")
    await manager.start(first)
    await manager.start(second)

    snapshot = await manager.active_snapshot()

    assert [entry['recording_id'] for entry in snapshot] == [first.id, second.id]
    assert snapshot[0]['title'] == "A vs B"
    assert snapshot[0]['elapsed_seconds'] >= 0

    await manager.shutdown()


@pytest.mark.asyncio
async def test_playback_url_requires_upload(manager, captures, make_recording):
    recording = make_recording()
    with pytest.raises(NotUploaded):
        manager.playback_url(recording.id)
    with pytest.raises(RecordingNotFound):
        manager.playback_url("ghost")

    await manager.start(recording)
    await finish_and_settle(manager, captures, recording.id)

    url = manager.playback_url(recording.id, ttl_seconds=120)
    assert f"recordings/{recording.id}/" in url
    assert "expires=120" in url
    assert "expires=3600" in manager.playback_url(recording.id)


@pytest.mark.asyncio
async def test_delete_completed_recording_removes_object(manager, store, captures, object_store, make_recording):
    recording = make_recording()
    await manager.start(recording)
    await finish_and_settle(manager, captures, recording.id)
    key = store.get_recording(recording.id).storage_key

    await manager.delete_recording(recording.id)

    assert object_store.deleted == [key]
    assert store.get_recording(recording.id) is None


@pytest.mark.asyncio
async def test_delete_active_recording_stops_it_first(manager, store, captures, make_recording):
    recording = make_recording()
    await manager.start(recording)
    local_path = store.get_recording(recording.id).file_path
    os.makedirs(os.path.dirname(local_path), exist_ok=True)
    with open(local_path, 'wb') as f:
        f.write(b"partial")

    await manager.delete_recording(recording.id)

    assert captures.for_recording(recording.id).terminate_calls == 1
    assert recording.id not in manager.registry
    assert store.get_recording(recording.id) is None
    assert not os.path.exists(local_path)


@pytest.mark.asyncio
async def test_delete_unknown_recording(manager):
    with pytest.raises(RecordingNotFound):
        await manager.delete_recording("ghost")


def test_recover_orphans_fails_stale_recordings(manager, store, make_recording):
    orphan = make_recording(status=RecordingStatus.RECORDING)
    untouched = make_recording()

    assert manager.recover_orphans() == 1

    saved = store.get_recording(orphan.id)
    assert saved.status == RecordingStatus.FAILED
    assert saved.error_message == RESTART_REASON
    assert store.get_recording(untouched.id).status == RecordingStatus.PENDING


@pytest.mark.asyncio
async def test_shutdown_stops_everything(manager, store, make_recording):
    recordings = [make_recording(), make_recording()]
    for recording in recordings:
        await manager.start(recording)

    await manager.shutdown()

    assert len(manager.registry) == 0
    for recording in recordings:
        saved = store.get_recording(recording.id)
        assert saved.status == RecordingStatus.STOPPED
        assert saved.error_message == "service shutdown"

    stats = manager.get_statistics()
    assert stats['started'] == 2
    assert stats['stopped'] == 2
    assert stats['active'] == 0


class GatedMonitor:
    """Resource monitor that holds admission until the test opens the gate."""

    def __init__(self):
        self.gate = threading.Event()

    def has_capacity_for_capture(self):
        self.gate.wait(5)
        return True


@pytest.mark.asyncio
async def test_create_leaves_recording_pending_until_started(manager, store, captures):
    recording = await manager.create(RecordingRequest(
        title="Raja vs Wydad", stream_url="https://streams.example.com/casablanca.m3u8"
    ))

    assert store.get_recording(recording.id).status == RecordingStatus.PENDING
    assert recording.id not in manager.registry
    assert captures.captures == []

    assert await manager.start_by_id(recording.id) == recording.id
    assert store.get_recording(recording.id).status == RecordingStatus.RECORDING

    await manager.stop(recording.id)


@pytest.mark.asyncio
async def test_start_by_id_unknown_recording(manager):
    with pytest.raises(RecordingNotFound):
        await manager.start_by_id("ghost")


@pytest.mark.asyncio
async def test_stopped_capture_output_is_uploaded(manager, store, captures, object_store, make_recording):
    recording = make_recording()
    await manager.start(recording)
    local_path = store.get_recording(recording.id).file_path
    os.makedirs(os.path.dirname(local_path), exist_ok=True)
    with open(local_path, 'wb') as f:
        f.write(b"\x00" * 1024)

    await manager.stop(recording.id, reason="full time")
    await eventually(lambda: store.get_recording(recording.id).storage_key is not None)

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.STOPPED
    assert saved.error_message == "full time"
    assert saved.file_path is None
    assert saved.file_size == 1024
    assert saved.storage_key in object_store.objects
    assert not os.path.exists(local_path)


@pytest.mark.asyncio
async def test_failed_upload_of_stopped_output_keeps_stop_reason(manager, store, captures, object_store,
                                                                make_recording):
    object_store.fail_puts = True
    recording = make_recording()
    await manager.start(recording)
    local_path = store.get_recording(recording.id).file_path
    os.makedirs(os.path.dirname(local_path), exist_ok=True)
    with open(local_path, 'wb') as f:
        f.write(b"\x00" * 1024)

    await manager.stop(recording.id, reason="full time")
    await eventually(lambda: manager.get_statistics()['archiving'] == 0)

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.STOPPED
    assert saved.error_message == "full time"
    assert saved.file_path == local_path
    assert os.path.exists(local_path)


@pytest.mark.asyncio
async def test_shutdown_keeps_stopped_output_local(manager, store, captures, object_store, make_recording):
    recording = make_recording()
    await manager.start(recording)
    local_path = store.get_recording(recording.id).file_path
    os.makedirs(os.path.dirname(local_path), exist_ok=True)
    with open(local_path, 'wb') as f:
        f.write(b"\x00" * 1024)

    await manager.shutdown()

    assert object_store.objects == {}
    assert os.path.exists(local_path)
    assert store.get_recording(recording.id).file_path == local_path


@pytest.mark.asyncio
async def test_stop_during_launch_waits_for_capture(manager, store, captures, make_recording):
    monitor = GatedMonitor()
    manager.resource_monitor = monitor
    recording = make_recording()

    start_task = asyncio.create_task(manager.start(recording))
    await eventually(lambda: recording.id in manager.registry)
    stop_task = asyncio.create_task(manager.stop(recording.id, reason="called off"))
    await asyncio.sleep(0.05)
    assert not stop_task.done()

    monitor.gate.set()
    assert await asyncio.wait_for(start_task, timeout=5) == recording.id
    stopped = await asyncio.wait_for(stop_task, timeout=5)

    assert stopped.status == RecordingStatus.STOPPED
    assert stopped.error_message == "called off"
    assert captures.for_recording(recording.id).terminate_calls == 1
    assert recording.id not in manager.registry


@pytest.mark.asyncio
async def test_stop_during_failed_launch_is_not_active(manager, store, captures, make_recording):
    monitor = GatedMonitor()
    manager.resource_monitor = monitor
    captures.launch_error = "Capture binary not found: ffmpeg"
    recording = make_recording()

    start_task = asyncio.create_task(manager.start(recording))
    await eventually(lambda: recording.id in manager.registry)
    stop_task = asyncio.create_task(manager.stop(recording.id))
    await asyncio.sleep(0.05)

    monitor.gate.set()
    with pytest.raises(CaptureStartError):
        await asyncio.wait_for(start_task, timeout=5)
    with pytest.raises(NotActive):
        await asyncio.wait_for(stop_task, timeout=5)

    assert store.get_recording(recording.id).status == RecordingStatus.FAILED
