import os

# main.py configures logging at import time
os.environ.setdefault("LOG_TO_FILE", "false")

import pytest

from match_recorder.models.config import RecorderConfig
from match_recorder.models.domain import Recording
from match_recorder.services.persistence import SQLitePersistenceStore
from match_recorder.services.recording_service import RecordingLifecycleManager
from match_recorder.services.upload_service import UploadPipeline

from tests.helpers import FakeCaptureFactory, FakeObjectStore


@pytest.fixture
def config(tmp_path):
    return RecorderConfig(
        recordings_dir=str(tmp_path / "recordings"),
        config_dir=str(tmp_path / "config"),
        database_path=str(tmp_path / "recorder.db"),
        log_dir=str(tmp_path / "logs"),
        ffmpeg_path="ffmpeg",
        ffprobe_path=str(tmp_path / "no-ffprobe"),
        min_free_disk_mb=0,
        stop_grace_seconds=0.5,
        watchdog_interval_seconds=0.05,
    )


@pytest.fixture
def store(config):
    return SQLitePersistenceStore(config.database_path)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def captures():
    return FakeCaptureFactory()


@pytest.fixture
def upload_pipeline(object_store, store, config):
    pipeline = UploadPipeline(object_store, store, key_prefix="recordings", ffprobe_path=config.ffprobe_path)
    yield pipeline
    pipeline.close()


@pytest.fixture
def manager(store, upload_pipeline, config, captures, object_store):
    return RecordingLifecycleManager(
        store,
        upload_pipeline,
        config,
        object_store=object_store,
        capture_factory=captures,
    )


@pytest.fixture
def make_recording(store):
    """Persist a pending recording and return it."""
    counter = {'n': 0}

    def _make(**overrides):
        counter['n'] += 1
        fields = {
            'id': f"rec-{counter['n']}",
            'title': f"Recording {counter['n']}",
            'stream_url': "https://streams.example.com/live/index.m3u8",
        }
        fields.update(overrides)
        return store.create_recording(Recording(**fields))

    return _make
