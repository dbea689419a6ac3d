"""Interfaces for the collaborators of the recording core."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol

from match_recorder.models.domain import (
    Match,
    Recording,
    RecordingStatus,
    Schedule,
    ScheduleStatus,
)


@dataclass
class StoredObject:
    """Result of a successful object store put."""
    key: str
    url: str
    size: int


class PersistenceStore(Protocol):
    """Durable store for recording, schedule and match rows."""

    def create_recording(self, recording: Recording) -> Recording:
        """Insert a new recording row."""
        ...

    def get_recording(self, recording_id: str) -> Optional[Recording]:
        """Get a recording by id."""
        ...

    def update_recording(self, recording_id: str, **fields: Any) -> Optional[Recording]:
        """Update non-state fields of a recording."""
        ...

    def transition_recording(
        self,
        recording_id: str,
        from_states: Iterable[RecordingStatus],
        to_state: RecordingStatus,
        **fields: Any
    ) -> bool:
        """Set the state only if the current state is one of from_states."""
        ...

    def list_recordings(self, status: Optional[RecordingStatus] = None) -> List[Recording]:
        ...

    def delete_recording(self, recording_id: str) -> bool:
        ...

    def create_schedule(self, schedule: Schedule) -> Schedule:
        ...

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        ...

    def update_schedule(self, schedule_id: str, **fields: Any) -> Optional[Schedule]:
        ...

    def list_schedules(self, status: Optional[ScheduleStatus] = None) -> List[Schedule]:
        ...

    def list_due_schedules(self, horizon: datetime) -> List[Schedule]:
        """Pending schedules whose start falls before the horizon."""
        ...

    def transition_schedule(
        self,
        schedule_id: str,
        from_states: Iterable[ScheduleStatus],
        to_state: ScheduleStatus,
        **fields: Any
    ) -> bool:
        """Set the state only if the current state is one of from_states."""
        ...

    def create_match_schedule(self, schedule: Schedule) -> Optional[Schedule]:
        """Insert unless the match already has a non-terminal schedule."""
        ...

    def count_schedules_by_status(self) -> Dict[str, int]:
        ...

    def upsert_match(self, match: Match) -> Match:
        ...

    def get_match(self, match_id: str) -> Optional[Match]:
        ...

    def find_match_by_external_id(self, external_id: str) -> Optional[Match]:
        ...

    def set_match_auto_record(self, match_id: str, enabled: bool) -> Optional[Match]:
        """Flip the auto-record flag; None when the match does not exist."""
        ...

    def list_upcoming_matches(self, after: datetime, auto_record_only: bool = False) -> List[Match]:
        ...


class ObjectStore(Protocol):
    """Durable blob storage."""

    def put(self, key: str, local_path: str, content_type: str) -> StoredObject:
        """Stream a local file to the store."""
        ...

    def delete(self, key: str) -> None:
        ...

    def presigned_url(self, key: str, ttl_seconds: int, operation: str = "get_object") -> str:
        ...


class StreamCatalog(Protocol):
    """Read-only feed of fixtures and named stream sources."""

    def upcoming_matches(self, now: datetime) -> List[Match]:
        """Matches kicking off after now."""
        ...

    def stream_url(self, source_key: str) -> Optional[str]:
        """URL of a named stream source."""
        ...
