"""Domain records for recordings, schedules and matches."""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class RecordingStatus(str, Enum):
    """Lifecycle states of a recording."""

    PENDING = "pending"
    RECORDING = "recording"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RECORDING_STATES

    def can_transition_to(self, target: "RecordingStatus") -> bool:
        """Check a transition against Pending -> Recording -> terminal."""
        return target in _RECORDING_TRANSITIONS[self]


TERMINAL_RECORDING_STATES = frozenset({
    RecordingStatus.COMPLETED,
    RecordingStatus.FAILED,
    RecordingStatus.STOPPED,
})

_RECORDING_TRANSITIONS = {
    RecordingStatus.PENDING: frozenset({RecordingStatus.RECORDING, RecordingStatus.FAILED}),
    RecordingStatus.RECORDING: TERMINAL_RECORDING_STATES,
    RecordingStatus.COMPLETED: frozenset(),
    RecordingStatus.FAILED: frozenset(),
    RecordingStatus.STOPPED: frozenset(),
}


class ScheduleStatus(str, Enum):
    """Lifecycle states of a schedule."""

    PENDING = "pending"
    EXECUTING = "executing"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScheduleStatus.COMPLETED, ScheduleStatus.FAILED)


NON_TERMINAL_SCHEDULE_STATES = (
    ScheduleStatus.PENDING,
    ScheduleStatus.EXECUTING,
    ScheduleStatus.ACTIVE,
)


@dataclass
class Recording:
    """A single capture attempt."""

    id: str
    title: str
    stream_url: str
    description: Optional[str] = None
    quality: str = "best"
    format: str = "mp4"
    status: RecordingStatus = RecordingStatus.PENDING
    file_path: Optional[str] = None
    storage_key: Optional[str] = None
    storage_url: Optional[str] = None
    file_size: int = 0
    duration: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data['status'] = self.status.value
        for key in ('created_at', 'started_at', 'completed_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class Schedule:
    """An intent to start, and optionally stop, a recording at given times."""

    id: str
    scheduled_start: datetime
    scheduled_end: Optional[datetime] = None
    match_id: Optional[str] = None
    recording_id: Optional[str] = None
    status: ScheduleStatus = ScheduleStatus.PENDING
    auto_generated: bool = False
    executed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        for key in ('scheduled_start', 'scheduled_end', 'executed_at', 'created_at', 'updated_at'):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


@dataclass
class Match:
    """Fixture data consumed from the stream catalog."""

    id: str
    home_team: str
    away_team: str
    match_date: datetime
    competition: Optional[str] = None
    external_id: Optional[str] = None
    stream_url: Optional[str] = None
    auto_record: bool = False

    @property
    def title(self) -> str:
        return f"{self.home_team} vs {self.away_team}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['match_date'] = self.match_date.isoformat()
        data['title'] = self.title
        return data
