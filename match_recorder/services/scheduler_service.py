"""Schedule dispatcher: turns due schedules and auto-record matches into recordings."""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from match_recorder.models.config import RecorderConfig
from match_recorder.models.domain import (
    Recording,
    RecordingStatus,
    Schedule,
    ScheduleStatus,
    utcnow,
)
from match_recorder.services.interfaces import PersistenceStore, StreamCatalog
from match_recorder.services.persistence import run_blocking
from match_recorder.services.recording_service import RESTART_REASON, NotActive, RecordingLifecycleManager
from match_recorder.utils.logging_config import get_schedule_logger

logger = logging.getLogger(__name__)


class ScheduleError(Exception):
    """Base exception for schedule errors."""

    def __init__(self, message: str, schedule_id: Optional[str] = None):
        super().__init__(message)
        self.schedule_id = schedule_id
        self.timestamp = utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'error_type': self.__class__.__name__,
            'message': str(self),
            'schedule_id': self.schedule_id,
            'timestamp': self.timestamp.isoformat()
        }


class ScheduleNotFound(ScheduleError):
    pass


class ScheduleNotPending(ScheduleError):
    """The schedule was already claimed or finished."""
    pass


class ScheduleResolutionError(ScheduleError):
    """No recording could be resolved for the schedule."""
    pass


class InvalidSchedule(ScheduleError):
    pass


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ScheduleDispatcher:
    """Polls due schedules and hands their recordings to the lifecycle manager.

    Dispatch atomicity comes from the persisted Pending -> Executing claim:
    a schedule is executed only by the tick whose claim succeeded, so
    overlapping ticks never start the same schedule twice.
    """

    def __init__(
        self,
        store: PersistenceStore,
        manager: RecordingLifecycleManager,
        config: RecorderConfig,
        catalog: Optional[StreamCatalog] = None
    ):
        self.store = store
        self.manager = manager
        self.config = config
        self.catalog = catalog

        self._executions: Set[asyncio.Task] = set()
        self._deferred_stops: Dict[str, asyncio.Task] = {}
        self._dispatch_task: Optional[asyncio.Task] = None
        self._auto_schedule_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self._stats = {
            'ticks': 0,
            'dispatched': 0,
            'dispatch_failures': 0,
            'auto_generated': 0
        }

    @property
    def is_running(self) -> bool:
        return self._dispatch_task is not None and not self._dispatch_task.done()

    async def start(self) -> None:
        """Start the dispatch and auto-schedule loops."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        self._auto_schedule_task = asyncio.create_task(self._auto_schedule_loop())
        logger.info("Schedule dispatcher started", extra={
            'tick_interval_seconds': self.config.tick_interval_seconds,
            'lookahead_seconds': self.config.lookahead_seconds,
            'auto_schedule_interval_seconds': self.config.auto_schedule_interval_seconds
        })

    async def stop(self) -> None:
        """Stop the loops and cancel pending deferred stops."""
        self._stop_event.set()
        for task in (self._dispatch_task, self._auto_schedule_task):
            if task and not task.done():
                try:
                    await asyncio.wait_for(task, timeout=5.0)
                except asyncio.TimeoutError:
                    task.cancel()

        for task in list(self._deferred_stops.values()):
            task.cancel()
        self._deferred_stops.clear()

        if self._executions:
            await asyncio.gather(*self._executions, return_exceptions=True)
        logger.info("Schedule dispatcher stopped")

    async def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error("Error in dispatch loop", extra={
                    'error': str(e),
                    'error_type': type(e).__name__
                })
            await self._sleep(self.config.tick_interval_seconds)

    async def _auto_schedule_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await run_blocking(self.generate_auto_schedules)
            except Exception as e:
                logger.error("Error in auto-schedule loop", extra={
                    'error': str(e),
                    'error_type': type(e).__name__
                })
            await self._sleep(self.config.auto_schedule_interval_seconds)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def tick(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """Run one dispatch pass.

        Reconciles active schedules, then claims every pending schedule that
        starts before ``now + lookahead`` and executes each claimed schedule
        in its own task.

        Args:
            now: Reference time (defaults to the current UTC time)

        Returns:
            The execution tasks spawned by this tick
        """
        now = now or utcnow()
        self._stats['ticks'] += 1

        try:
            await run_blocking(self.reconcile)
        except Exception as e:
            logger.error(f"Schedule reconciliation failed: {e}", exc_info=True)

        horizon = now + timedelta(seconds=self.config.lookahead_seconds)
        try:
            due = await run_blocking(self.store.list_due_schedules, horizon)
        except Exception as e:
            logger.error(f"Could not load due schedules: {e}", exc_info=True)
            return []

        tasks = []
        for schedule in due:
            try:
                claimed = await run_blocking(
                    self.store.transition_schedule,
                    schedule.id, [ScheduleStatus.PENDING], ScheduleStatus.EXECUTING, executed_at=now
                )
            except Exception as e:
                logger.error(f"Could not claim schedule {schedule.id}: {e}")
                continue
            if not claimed:
                logger.debug(f"Schedule {schedule.id} already claimed")
                continue
            tasks.append(self._spawn_execution(schedule, now))

        if tasks:
            logger.info(f"Dispatched {len(tasks)} schedules")
        return tasks

    def _spawn_execution(self, schedule: Schedule, now: datetime) -> asyncio.Task:
        task = asyncio.create_task(self._execute(schedule, now))
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)
        return task

    async def _execute(self, schedule: Schedule, now: datetime) -> None:
        """Start the recording behind a claimed schedule."""
        schedule_logger = get_schedule_logger(schedule.id, schedule.match_id)
        try:
            if schedule.scheduled_end is not None and schedule.scheduled_end <= now:
                raise ScheduleResolutionError(
                    f"Scheduled end {schedule.scheduled_end.isoformat()} has already passed",
                    schedule_id=schedule.id
                )
            recording = await run_blocking(self._resolve_recording, schedule)
            await self.manager.start(recording)
        except Exception as e:
            self._stats['dispatch_failures'] += 1
            await run_blocking(
                self.store.transition_schedule,
                schedule.id, [ScheduleStatus.EXECUTING], ScheduleStatus.FAILED, error_message=str(e)
            )
            schedule_logger.error(f"Schedule execution failed: {e}", extra={
                'error_type': type(e).__name__
            })
            return

        self._stats['dispatched'] += 1
        if not await run_blocking(
            self.store.transition_schedule,
            schedule.id, [ScheduleStatus.EXECUTING], ScheduleStatus.ACTIVE, recording_id=recording.id
        ):
            schedule_logger.warning("Schedule left the executing state during dispatch")
        schedule_logger.info("Schedule active", extra={'recording_id': recording.id})

        if schedule.scheduled_end is not None:
            self._arm_deferred_stop(schedule, recording.id, now)

    def _resolve_recording(self, schedule: Schedule) -> Recording:
        if schedule.recording_id:
            recording = self.store.get_recording(schedule.recording_id)
            if recording is None:
                raise ScheduleResolutionError(
                    f"Recording {schedule.recording_id} does not exist", schedule_id=schedule.id
                )
            return recording

        if schedule.match_id:
            match = self.store.get_match(schedule.match_id)
            if match is None:
                raise ScheduleResolutionError(
                    f"Match {schedule.match_id} does not exist", schedule_id=schedule.id
                )
            if not match.stream_url:
                raise ScheduleResolutionError(
                    f"Match {match.id} has no stream URL", schedule_id=schedule.id
                )
            recording = self.store.create_recording(Recording(
                id=str(uuid.uuid4()),
                title=match.title,
                description=match.competition,
                stream_url=match.stream_url,
                quality=self.config.default_quality,
                format=self.config.default_format,
            ))
            self.store.update_schedule(schedule.id, recording_id=recording.id)
            logger.info(f"Created recording {recording.id} for match {match.title}")
            return recording

        raise ScheduleResolutionError(
            "Schedule references neither a recording nor a match", schedule_id=schedule.id
        )

    def _arm_deferred_stop(self, schedule: Schedule, recording_id: str, now: datetime) -> None:
        delay = max(0.0, (schedule.scheduled_end - now).total_seconds())
        task = asyncio.create_task(self._deferred_stop(schedule.id, recording_id, delay))
        self._deferred_stops[schedule.id] = task
        task.add_done_callback(lambda _, schedule_id=schedule.id: self._deferred_stops.pop(schedule_id, None))
        logger.debug(f"Deferred stop for {recording_id} in {delay:.0f}s")

    async def _deferred_stop(self, schedule_id: str, recording_id: str, delay: float) -> None:
        await asyncio.sleep(delay)
        schedule_logger = get_schedule_logger(schedule_id)
        try:
            await self.manager.stop(recording_id)
            schedule_logger.info("Scheduled end reached, recording stopped", extra={'recording_id': recording_id})
        except NotActive:
            schedule_logger.info("Scheduled end reached, recording was no longer active",
                                 extra={'recording_id': recording_id})
        except Exception as e:
            schedule_logger.error(f"Deferred stop failed: {e}", extra={'recording_id': recording_id})

        schedule = await run_blocking(self.store.get_schedule, schedule_id)
        if schedule is not None and schedule.status == ScheduleStatus.ACTIVE:
            await run_blocking(self._reconcile_schedule, schedule)

    def reconcile(self) -> int:
        """Close active schedules whose recording has finished.

        Returns:
            Number of schedules moved to a terminal state
        """
        changed = 0
        for schedule in self.store.list_schedules(ScheduleStatus.ACTIVE):
            if self._reconcile_schedule(schedule):
                changed += 1
        return changed

    def recover_interrupted(self) -> int:
        """Fail schedules a previous process claimed but never finished executing.

        Must run before the dispatch loop starts; at that point no execution
        task of this process can own an executing schedule.

        Returns:
            Number of schedules failed
        """
        recovered = 0
        for schedule in self.store.list_schedules(ScheduleStatus.EXECUTING):
            if self.store.transition_schedule(
                schedule.id, [ScheduleStatus.EXECUTING], ScheduleStatus.FAILED, error_message=RESTART_REASON
            ):
                recovered += 1
                get_schedule_logger(schedule.id, schedule.match_id).warning(
                    "Schedule interrupted by service restart", extra={'recording_id': schedule.recording_id}
                )
        return recovered

    def _reconcile_schedule(self, schedule: Schedule) -> bool:
        recording = self.store.get_recording(schedule.recording_id) if schedule.recording_id else None
        if recording is None:
            target, error = ScheduleStatus.FAILED, "Recording no longer exists"
        elif not recording.status.is_terminal:
            return False
        elif recording.status == RecordingStatus.FAILED:
            target, error = ScheduleStatus.FAILED, recording.error_message
        else:
            target, error = ScheduleStatus.COMPLETED, None

        fields = {'error_message': error} if error else {}
        changed = self.store.transition_schedule(schedule.id, [ScheduleStatus.ACTIVE], target, **fields)
        if changed:
            get_schedule_logger(schedule.id, schedule.match_id).info(
                f"Schedule {target.value}", extra={'recording_id': schedule.recording_id}
            )
        return changed

    def generate_auto_schedules(self, now: Optional[datetime] = None) -> List[Schedule]:
        """Create schedules for upcoming auto-record matches that have none.

        Returns:
            The schedules created by this pass
        """
        now = now or utcnow()
        if self.catalog is not None:
            matches = self.catalog.upcoming_matches(now)
        else:
            matches = self.store.list_upcoming_matches(now, auto_record_only=True)

        lead = timedelta(seconds=self.config.auto_schedule_lead_seconds)
        tail = timedelta(seconds=self.config.auto_schedule_tail_seconds)
        created = []
        for match in matches:
            if not match.auto_record:
                continue
            schedule = self.store.create_match_schedule(Schedule(
                id=str(uuid.uuid4()),
                match_id=match.id,
                scheduled_start=match.match_date - lead,
                scheduled_end=match.match_date + tail,
                auto_generated=True,
            ))
            if schedule is not None:
                created.append(schedule)
                get_schedule_logger(schedule.id, match.id).info(
                    f"Auto-schedule created for {match.title}",
                    extra={'scheduled_start': schedule.scheduled_start.isoformat()}
                )

        self._stats['auto_generated'] += len(created)
        if created:
            logger.info(f"Created {len(created)} auto-schedules")
        return created

    def create_schedule(
        self,
        scheduled_start: datetime,
        scheduled_end: Optional[datetime] = None,
        match_id: Optional[str] = None,
        recording_id: Optional[str] = None
    ) -> Schedule:
        """Create a manual schedule.

        Raises:
            InvalidSchedule: Missing reference, bad time window, unknown
                reference or a match that already has a live schedule
        """
        scheduled_start = _as_utc(scheduled_start)
        scheduled_end = _as_utc(scheduled_end)

        if not match_id and not recording_id:
            raise InvalidSchedule("A schedule needs a match or a recording")
        if scheduled_end is not None and scheduled_end <= scheduled_start:
            raise InvalidSchedule("Scheduled end must be after scheduled start")
        if recording_id:
            recording = self.store.get_recording(recording_id)
            if recording is None:
                raise InvalidSchedule(f"Recording {recording_id} does not exist")
            if recording.status != RecordingStatus.PENDING:
                raise InvalidSchedule(f"Recording {recording_id} is already {recording.status.value}")
        if match_id and self.store.get_match(match_id) is None:
            raise InvalidSchedule(f"Match {match_id} does not exist")

        schedule = Schedule(
            id=str(uuid.uuid4()),
            match_id=match_id,
            recording_id=recording_id,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
        )
        if match_id:
            created = self.store.create_match_schedule(schedule)
            if created is None:
                raise InvalidSchedule(f"Match {match_id} already has an active schedule")
        else:
            created = self.store.create_schedule(schedule)

        get_schedule_logger(created.id, match_id).info("Schedule created", extra={
            'recording_id': recording_id,
            'scheduled_start': scheduled_start.isoformat()
        })
        return created

    async def execute_schedule_now(self, schedule_id: str) -> Schedule:
        """Claim and execute a pending schedule regardless of its start time.

        Raises:
            ScheduleNotFound: No such schedule
            ScheduleNotPending: The schedule is not pending
        """
        schedule = await run_blocking(self.store.get_schedule, schedule_id)
        if schedule is None:
            raise ScheduleNotFound(f"Schedule {schedule_id} does not exist", schedule_id=schedule_id)

        now = utcnow()
        if not await run_blocking(
            self.store.transition_schedule,
            schedule_id, [ScheduleStatus.PENDING], ScheduleStatus.EXECUTING, executed_at=now
        ):
            raise ScheduleNotPending(
                f"Schedule {schedule_id} is {schedule.status.value}", schedule_id=schedule_id
            )

        await self._execute(schedule, now)
        return await run_blocking(self.store.get_schedule, schedule_id)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            'running': self.is_running,
            'schedules': self.store.count_schedules_by_status(),
            'deferred_stops': len(self._deferred_stops),
            **self._stats
        }
