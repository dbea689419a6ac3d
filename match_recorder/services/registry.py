"""In-memory registry of active captures."""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from match_recorder.models.domain import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ActiveCapture:
    """Handle for a capture that still owns local resources."""
    recording_id: str
    title: str
    started_at: datetime = field(default_factory=utcnow)
    output_path: Optional[str] = None
    process: Any = None
    supervisor: Optional[asyncio.Task] = None
    watchdog: Optional[asyncio.Task] = None
    phase: str = "starting"
    stop_reason: Optional[str] = None
    stopped: asyncio.Event = field(default_factory=asyncio.Event)
    launched: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def stopping(self) -> bool:
        return self.stop_reason is not None

    def elapsed_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.started_at).total_seconds()

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        return {
            'recording_id': self.recording_id,
            'title': self.title,
            'started_at': self.started_at,
            'elapsed_seconds': self.elapsed_seconds(now),
            'phase': self.phase,
            'output_path': self.output_path,
            'pid': getattr(self.process, 'pid', None),
        }


class RecordingRegistry:
    """Authoritative set of active captures keyed by recording id.

    ``try_insert`` is the only admission point for new captures.
    """

    def __init__(self):
        self._entries: Dict[str, ActiveCapture] = {}
        self._lock = asyncio.Lock()

    async def try_insert(self, entry: ActiveCapture) -> bool:
        """Insert the entry unless its recording id is already present."""
        async with self._lock:
            if entry.recording_id in self._entries:
                logger.debug(f"Registry already holds {entry.recording_id}")
                return False
            self._entries[entry.recording_id] = entry
            logger.debug(f"Registered active capture {entry.recording_id}", extra={
                'recording_id': entry.recording_id,
                'active_count': len(self._entries)
            })
            return True

    async def remove(self, recording_id: str) -> Optional[ActiveCapture]:
        """Remove and return the entry, or None if absent."""
        async with self._lock:
            entry = self._entries.pop(recording_id, None)
            if entry is not None:
                logger.debug(f"Unregistered active capture {recording_id}", extra={
                    'recording_id': recording_id,
                    'active_count': len(self._entries)
                })
            return entry

    def get(self, recording_id: str) -> Optional[ActiveCapture]:
        return self._entries.get(recording_id)

    async def snapshot(self) -> List[ActiveCapture]:
        """Point-in-time copy of all entries, oldest first."""
        async with self._lock:
            entries = list(self._entries.values())
        return sorted(entries, key=lambda entry: entry.started_at)

    def __contains__(self, recording_id: str) -> bool:
        return recording_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)
