# Services module

from .interfaces import PersistenceStore, ObjectStore, StreamCatalog, StoredObject
from .config_manager import ConfigManager, ConfigurationError
from .persistence import SQLitePersistenceStore, PersistenceError
from .object_store import S3ObjectStore, ObjectStoreError
from .capture import CaptureProcess, CaptureFinished, CaptureFailed
from .registry import RecordingRegistry, ActiveCapture
from .upload_service import UploadPipeline, UploadResult
from .recording_service import RecordingLifecycleManager, RecordingLifecycleError
from .scheduler_service import ScheduleDispatcher, ScheduleError
from .catalog import PersistedStreamCatalog

__all__ = [
    "PersistenceStore",
    "ObjectStore",
    "StreamCatalog",
    "StoredObject",
    "ConfigManager",
    "ConfigurationError",
    "SQLitePersistenceStore",
    "PersistenceError",
    "S3ObjectStore",
    "ObjectStoreError",
    "CaptureProcess",
    "CaptureFinished",
    "CaptureFailed",
    "RecordingRegistry",
    "ActiveCapture",
    "UploadPipeline",
    "UploadResult",
    "RecordingLifecycleManager",
    "RecordingLifecycleError",
    "ScheduleDispatcher",
    "ScheduleError",
    "PersistedStreamCatalog"
]
