"""SQLite-backed persistence for recordings, schedules and matches."""

import asyncio
import functools
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from match_recorder.models.domain import (
    Match,
    NON_TERMINAL_SCHEDULE_STATES,
    Recording,
    RecordingStatus,
    Schedule,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS recordings (
    id             TEXT PRIMARY KEY,
    title          TEXT NOT NULL,
    description    TEXT,
    stream_url     TEXT NOT NULL,
    status         TEXT NOT NULL DEFAULT 'pending',
    file_path      TEXT,
    storage_key    TEXT,
    storage_url    TEXT,
    duration       INTEGER NOT NULL DEFAULT 0,
    file_size      INTEGER NOT NULL DEFAULT 0,
    format         TEXT NOT NULL DEFAULT 'mp4',
    quality        TEXT NOT NULL DEFAULT 'best',
    created_at     TEXT NOT NULL,
    started_at     TEXT,
    completed_at   TEXT,
    error_message  TEXT
);

CREATE TABLE IF NOT EXISTS matches (
    id           TEXT PRIMARY KEY,
    external_id  TEXT UNIQUE,
    home_team    TEXT NOT NULL,
    away_team    TEXT NOT NULL,
    competition  TEXT,
    match_date   TEXT NOT NULL,
    stream_url   TEXT,
    auto_record  INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS schedules (
    id               TEXT PRIMARY KEY,
    match_id         TEXT REFERENCES matches(id),
    recording_id     TEXT REFERENCES recordings(id),
    scheduled_start  TEXT NOT NULL,
    scheduled_end    TEXT,
    status           TEXT NOT NULL DEFAULT 'pending',
    auto_generated   INTEGER NOT NULL DEFAULT 0,
    executed_at      TEXT,
    error_message    TEXT,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_recordings_status ON recordings(status);
CREATE INDEX IF NOT EXISTS idx_matches_match_date ON matches(match_date);
CREATE INDEX IF NOT EXISTS idx_schedules_scheduled_start ON schedules(scheduled_start);
CREATE INDEX IF NOT EXISTS idx_schedules_status ON schedules(status);
CREATE INDEX IF NOT EXISTS idx_schedules_match_id ON schedules(match_id);
"""

_RECORDING_COLUMNS = frozenset({
    'title', 'description', 'stream_url', 'file_path', 'storage_key', 'storage_url',
    'duration', 'file_size', 'format', 'quality', 'started_at', 'completed_at', 'error_message',
})

_SCHEDULE_COLUMNS = frozenset({
    'match_id', 'recording_id', 'scheduled_start', 'scheduled_end',
    'executed_at', 'error_message',
})


async def run_blocking(func, *args, **kwargs):
    """Run a blocking store call on the loop's default executor."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as fixed-width UTC ISO text so string order is time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_time(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class PersistenceError(Exception):
    """Exception raised for invalid persistence requests."""
    pass


class SQLitePersistenceStore:
    """PersistenceStore implementation on a single SQLite file.

    Every call opens its own connection, so the store is safe to use from
    the event loop and from worker threads alike.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()
        logger.info(f"Persistence store ready: {self.db_path}")

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self.get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA_SQL)

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        with self.get_connection() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        with self.get_connection() as conn:
            return conn.execute(sql, params).fetchall()

    def _execute(self, sql: str, params: tuple = ()) -> int:
        with self.get_connection() as conn:
            return conn.execute(sql, params).rowcount

    @staticmethod
    def _set_clause(fields: Dict[str, Any], allowed: frozenset) -> tuple:
        unknown = set(fields) - allowed
        if unknown:
            raise PersistenceError(f"Unknown or protected fields: {', '.join(sorted(unknown))}")
        clause = ", ".join(f"{key} = ?" for key in fields)
        values = tuple(_to_db_value(value) for value in fields.values())
        return clause, values

    # Recordings

    @staticmethod
    def _row_to_recording(row: sqlite3.Row) -> Recording:
        return Recording(
            id=row['id'],
            title=row['title'],
            description=row['description'],
            stream_url=row['stream_url'],
            quality=row['quality'],
            format=row['format'],
            status=RecordingStatus(row['status']),
            file_path=row['file_path'],
            storage_key=row['storage_key'],
            storage_url=row['storage_url'],
            file_size=row['file_size'],
            duration=row['duration'],
            created_at=from_db_time(row['created_at']),
            started_at=from_db_time(row['started_at']),
            completed_at=from_db_time(row['completed_at']),
            error_message=row['error_message'],
        )

    def create_recording(self, recording: Recording) -> Recording:
        self._execute(
            """INSERT INTO recordings
               (id, title, description, stream_url, status, file_path, storage_key, storage_url,
                duration, file_size, format, quality, created_at, started_at, completed_at, error_message)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                recording.id, recording.title, recording.description, recording.stream_url,
                recording.status.value, recording.file_path, recording.storage_key,
                recording.storage_url, recording.duration, recording.file_size,
                recording.format, recording.quality, to_db_time(recording.created_at),
                to_db_time(recording.started_at), to_db_time(recording.completed_at),
                recording.error_message,
            )
        )
        return self.get_recording(recording.id)

    def get_recording(self, recording_id: str) -> Optional[Recording]:
        row = self._fetchone("SELECT * FROM recordings WHERE id = ?", (recording_id,))
        return self._row_to_recording(row) if row else None

    def list_recordings(self, status: Optional[RecordingStatus] = None) -> List[Recording]:
        if status is None:
            rows = self._fetchall("SELECT * FROM recordings ORDER BY created_at DESC")
        else:
            rows = self._fetchall(
                "SELECT * FROM recordings WHERE status = ? ORDER BY created_at DESC",
                (status.value,)
            )
        return [self._row_to_recording(row) for row in rows]

    def update_recording(self, recording_id: str, **fields: Any) -> Optional[Recording]:
        if fields:
            clause, values = self._set_clause(fields, _RECORDING_COLUMNS)
            self._execute(f"UPDATE recordings SET {clause} WHERE id = ?", values + (recording_id,))
        return self.get_recording(recording_id)

    def transition_recording(
        self,
        recording_id: str,
        from_states: Iterable[RecordingStatus],
        to_state: RecordingStatus,
        **fields: Any
    ) -> bool:
        from_states = tuple(from_states)
        illegal = [state for state in from_states if not state.can_transition_to(to_state)]
        if illegal:
            raise PersistenceError(
                f"Illegal recording transition {illegal[0].value} -> {to_state.value}"
            )
        clause, values = self._set_clause(fields, _RECORDING_COLUMNS)
        set_sql = "status = ?" + (f", {clause}" if clause else "")
        placeholders = ", ".join("?" for _ in from_states)
        changed = self._execute(
            f"UPDATE recordings SET {set_sql} WHERE id = ? AND status IN ({placeholders})",
            (to_state.value,) + values + (recording_id,) + tuple(s.value for s in from_states)
        )
        return changed == 1

    def delete_recording(self, recording_id: str) -> bool:
        with self.get_connection() as conn:
            conn.execute("UPDATE schedules SET recording_id = NULL WHERE recording_id = ?", (recording_id,))
            return conn.execute("DELETE FROM recordings WHERE id = ?", (recording_id,)).rowcount > 0

    # Schedules

    @staticmethod
    def _row_to_schedule(row: sqlite3.Row) -> Schedule:
        return Schedule(
            id=row['id'],
            match_id=row['match_id'],
            recording_id=row['recording_id'],
            scheduled_start=from_db_time(row['scheduled_start']),
            scheduled_end=from_db_time(row['scheduled_end']),
            status=ScheduleStatus(row['status']),
            auto_generated=bool(row['auto_generated']),
            executed_at=from_db_time(row['executed_at']),
            error_message=row['error_message'],
            created_at=from_db_time(row['created_at']),
            updated_at=from_db_time(row['updated_at']),
        )

    @staticmethod
    def _schedule_params(schedule: Schedule) -> tuple:
        return (
            schedule.id, schedule.match_id, schedule.recording_id,
            to_db_time(schedule.scheduled_start), to_db_time(schedule.scheduled_end),
            schedule.status.value, int(schedule.auto_generated), to_db_time(schedule.executed_at),
            schedule.error_message, to_db_time(schedule.created_at), to_db_time(schedule.updated_at),
        )

    def create_schedule(self, schedule: Schedule) -> Schedule:
        self._execute(
            """INSERT INTO schedules
               (id, match_id, recording_id, scheduled_start, scheduled_end, status,
                auto_generated, executed_at, error_message, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            self._schedule_params(schedule)
        )
        return self.get_schedule(schedule.id)

    def create_match_schedule(self, schedule: Schedule) -> Optional[Schedule]:
        if schedule.match_id is None:
            raise PersistenceError("Match schedules require a match reference")
        states = tuple(state.value for state in NON_TERMINAL_SCHEDULE_STATES)
        placeholders = ", ".join("?" for _ in states)
        inserted = self._execute(
            f"""INSERT INTO schedules
                (id, match_id, recording_id, scheduled_start, scheduled_end, status,
                 auto_generated, executed_at, error_message, created_at, updated_at)
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE NOT EXISTS (
                    SELECT 1 FROM schedules WHERE match_id = ? AND status IN ({placeholders})
                )""",
            self._schedule_params(schedule) + (schedule.match_id,) + states
        )
        return self.get_schedule(schedule.id) if inserted == 1 else None

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        row = self._fetchone("SELECT * FROM schedules WHERE id = ?", (schedule_id,))
        return self._row_to_schedule(row) if row else None

    def update_schedule(self, schedule_id: str, **fields: Any) -> Optional[Schedule]:
        if fields:
            fields['updated_at'] = datetime.now(timezone.utc)
            clause, values = self._set_clause(fields, _SCHEDULE_COLUMNS | {'updated_at'})
            self._execute(f"UPDATE schedules SET {clause} WHERE id = ?", values + (schedule_id,))
        return self.get_schedule(schedule_id)

    def list_schedules(self, status: Optional[ScheduleStatus] = None) -> List[Schedule]:
        if status is None:
            rows = self._fetchall("SELECT * FROM schedules ORDER BY scheduled_start ASC")
        else:
            rows = self._fetchall(
                "SELECT * FROM schedules WHERE status = ? ORDER BY scheduled_start ASC",
                (status.value,)
            )
        return [self._row_to_schedule(row) for row in rows]

    def list_due_schedules(self, horizon: datetime) -> List[Schedule]:
        rows = self._fetchall(
            """SELECT * FROM schedules
               WHERE status = ? AND scheduled_start < ?
               ORDER BY scheduled_start ASC""",
            (ScheduleStatus.PENDING.value, to_db_time(horizon))
        )
        return [self._row_to_schedule(row) for row in rows]

    def transition_schedule(
        self,
        schedule_id: str,
        from_states: Iterable[ScheduleStatus],
        to_state: ScheduleStatus,
        **fields: Any
    ) -> bool:
        from_states = tuple(from_states)
        fields['updated_at'] = datetime.now(timezone.utc)
        clause, values = self._set_clause(fields, _SCHEDULE_COLUMNS | {'updated_at'})
        placeholders = ", ".join("?" for _ in from_states)
        changed = self._execute(
            f"UPDATE schedules SET status = ?, {clause} WHERE id = ? AND status IN ({placeholders})",
            (to_state.value,) + values + (schedule_id,) + tuple(s.value for s in from_states)
        )
        return changed == 1

    def count_schedules_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ScheduleStatus}
        for row in self._fetchall("SELECT status, COUNT(*) AS total FROM schedules GROUP BY status"):
            counts[row['status']] = row['total']
        return counts

    # Matches

    @staticmethod
    def _row_to_match(row: sqlite3.Row) -> Match:
        return Match(
            id=row['id'],
            external_id=row['external_id'],
            home_team=row['home_team'],
            away_team=row['away_team'],
            competition=row['competition'],
            match_date=from_db_time(row['match_date']),
            stream_url=row['stream_url'],
            auto_record=bool(row['auto_record']),
        )

    def upsert_match(self, match: Match) -> Match:
        if not match.id:
            match.id = str(uuid.uuid4())
        self._execute(
            """INSERT INTO matches
               (id, external_id, home_team, away_team, competition, match_date, stream_url, auto_record)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   external_id = excluded.external_id,
                   home_team = excluded.home_team,
                   away_team = excluded.away_team,
                   competition = excluded.competition,
                   match_date = excluded.match_date,
                   stream_url = excluded.stream_url,
                   auto_record = excluded.auto_record""",
            (
                match.id, match.external_id, match.home_team, match.away_team,
                match.competition, to_db_time(match.match_date), match.stream_url,
                int(match.auto_record),
            )
        )
        return self.get_match(match.id)

    def get_match(self, match_id: str) -> Optional[Match]:
        row = self._fetchone("SELECT * FROM matches WHERE id = ?", (match_id,))
        return self._row_to_match(row) if row else None

    def find_match_by_external_id(self, external_id: str) -> Optional[Match]:
        row = self._fetchone("SELECT * FROM matches WHERE external_id = ?", (external_id,))
        return self._row_to_match(row) if row else None

    def set_match_auto_record(self, match_id: str, enabled: bool) -> Optional[Match]:
        changed = self._execute("UPDATE matches SET auto_record = ? WHERE id = ?", (int(enabled), match_id))
        return self.get_match(match_id) if changed else None

    def list_upcoming_matches(self, after: datetime, auto_record_only: bool = False) -> List[Match]:
        sql = "SELECT * FROM matches WHERE match_date > ?"
        if auto_record_only:
            sql += " AND auto_record = 1"
        rows = self._fetchall(sql + " ORDER BY match_date ASC", (to_db_time(after),))
        return [self._row_to_match(row) for row in rows]
