# Models module

from .domain import (
    Match,
    Recording,
    RecordingStatus,
    Schedule,
    ScheduleStatus,
    TERMINAL_RECORDING_STATES,
    NON_TERMINAL_SCHEDULE_STATES,
    utcnow,
)
from .config import RecorderConfig, StorageConfig, StreamSourceConfig
from .api import (
    RecordingRequest,
    StartRecordingResponse,
    StopRecordingRequest,
    ActiveRecording,
    ActiveRecordingsResponse,
    MatchRequest,
    AutoRecordRequest,
    CreateScheduleRequest,
    PresignedUrlResponse,
    HealthResponse,
    ErrorResponse,
)

__all__ = [
    "Match",
    "Recording",
    "RecordingStatus",
    "Schedule",
    "ScheduleStatus",
    "TERMINAL_RECORDING_STATES",
    "NON_TERMINAL_SCHEDULE_STATES",
    "utcnow",
    "RecorderConfig",
    "StorageConfig",
    "StreamSourceConfig",
    "RecordingRequest",
    "StartRecordingResponse",
    "StopRecordingRequest",
    "ActiveRecording",
    "ActiveRecordingsResponse",
    "MatchRequest",
    "AutoRecordRequest",
    "CreateScheduleRequest",
    "PresignedUrlResponse",
    "HealthResponse",
    "ErrorResponse",
]
