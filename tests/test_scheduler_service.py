import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from match_recorder.models.domain import (
    Match,
    RecordingStatus,
    Schedule,
    ScheduleStatus,
    utcnow,
)
from match_recorder.services.recording_service import RESTART_REASON
from match_recorder.services.scheduler_service import (
    InvalidSchedule,
    ScheduleDispatcher,
    ScheduleNotFound,
    ScheduleNotPending,
)

from tests.helpers import eventually


@pytest_asyncio.fixture
async def dispatcher(store, manager, config):
    dispatcher = ScheduleDispatcher(store, manager, config)
    yield dispatcher
    await dispatcher.stop()
    await manager.shutdown()


@pytest.fixture
def make_schedule(store):
    counter = {'n': 0}

    def _make(start_offset, end_offset=None, **fields):
        counter['n'] += 1
        now = utcnow()
        schedule = Schedule(
            id=f"sched-{counter['n']}",
            scheduled_start=now + start_offset,
            scheduled_end=now + end_offset if end_offset is not None else None,
            **fields
        )
        return store.create_schedule(schedule)

    return _make


async def run_tick(dispatcher, now=None):
    tasks = await dispatcher.tick(now)
    await asyncio.gather(*tasks)
    return tasks


@pytest.mark.asyncio
async def test_due_schedule_starts_its_recording(dispatcher, store, make_recording, make_schedule):
    recording = make_recording()
    schedule = make_schedule(timedelta(minutes=2), recording_id=recording.id)

    tasks = await run_tick(dispatcher)

    assert len(tasks) == 1
    saved = store.get_schedule(schedule.id)
    assert saved.status == ScheduleStatus.ACTIVE
    assert saved.executed_at is not None
    assert store.get_recording(recording.id).status == RecordingStatus.RECORDING


@pytest.mark.asyncio
async def test_schedule_outside_lookahead_waits(dispatcher, store, captures, make_recording, make_schedule):
    schedule = make_schedule(timedelta(hours=1), recording_id=make_recording().id)

    assert await run_tick(dispatcher) == []
    assert store.get_schedule(schedule.id).status == ScheduleStatus.PENDING
    assert captures.captures == []


@pytest.mark.asyncio
async def test_double_tick_dispatches_once(dispatcher, store, captures, make_recording, make_schedule):
    make_schedule(timedelta(seconds=30), recording_id=make_recording().id)

    first, second = await asyncio.gather(dispatcher.tick(), dispatcher.tick())
    await asyncio.gather(*first, *second)

    assert len(first) + len(second) == 1
    assert len(captures.captures) == 1


@pytest.mark.asyncio
async def test_late_schedule_runs_once(dispatcher, store, captures, make_recording, make_schedule):
    recording = make_recording()
    schedule = make_schedule(timedelta(minutes=-10), timedelta(hours=1), recording_id=recording.id)

    await run_tick(dispatcher)
    await run_tick(dispatcher)

    assert store.get_schedule(schedule.id).status == ScheduleStatus.ACTIVE
    assert store.get_recording(recording.id).status == RecordingStatus.RECORDING
    assert len(captures.captures) == 1


@pytest.mark.asyncio
async def test_match_schedule_synthesizes_recording(dispatcher, store, config, make_schedule):
    store.upsert_match(Match(
        id="m1", home_team="Mamelodi Sundowns", away_team="Esperance", competition="CAF Champions League",
        match_date=utcnow() + timedelta(minutes=5), stream_url="https://streams.example.com/caf/live.m3u8",
    ))
    schedule = make_schedule(timedelta(minutes=1), match_id="m1")

    await run_tick(dispatcher)

    saved = store.get_schedule(schedule.id)
    assert saved.status == ScheduleStatus.ACTIVE
    recording = store.get_recording(saved.recording_id)
    assert recording.title == "Mamelodi Sundowns vs Esperance"
    assert recording.stream_url == "https://streams.example.com/caf/live.m3u8"
    assert recording.quality == config.default_quality
    assert recording.status == RecordingStatus.RECORDING


@pytest.mark.asyncio
async def test_match_without_stream_fails_schedule(dispatcher, store, captures, make_schedule):
    store.upsert_match(Match(id="m1", home_team="A", away_team="B", match_date=utcnow()))
    schedule = make_schedule(timedelta(minutes=1), match_id="m1")

    await run_tick(dispatcher)

    saved = store.get_schedule(schedule.id)
    assert saved.status == ScheduleStatus.FAILED
    assert "no stream URL" in saved.error_message
    assert captures.captures == []


@pytest.mark.asyncio
async def test_unknown_match_fails_schedule(dispatcher, store, make_schedule):
    schedule = make_schedule(timedelta(minutes=1), match_id="ghost")

    await run_tick(dispatcher)

    assert store.get_schedule(schedule.id).status == ScheduleStatus.FAILED


@pytest.mark.asyncio
async def test_start_failure_fails_schedule(dispatcher, store, make_recording, make_schedule):
    recording = make_recording(status=RecordingStatus.COMPLETED)
    schedule = make_schedule(timedelta(minutes=1), recording_id=recording.id)

    await run_tick(dispatcher)

    saved = store.get_schedule(schedule.id)
    assert saved.status == ScheduleStatus.FAILED
    assert "already completed" in saved.error_message


@pytest.mark.asyncio
async def test_schedule_past_its_end_is_not_started(dispatcher, store, captures, make_recording, make_schedule):
    recording = make_recording()
    schedule = make_schedule(timedelta(hours=-3), timedelta(hours=-1), recording_id=recording.id)

    await run_tick(dispatcher)

    saved = store.get_schedule(schedule.id)
    assert saved.status == ScheduleStatus.FAILED
    assert "already passed" in saved.error_message
    assert store.get_recording(recording.id).status == RecordingStatus.PENDING
    assert captures.captures == []


@pytest.mark.asyncio
async def test_deferred_stop_at_scheduled_end(dispatcher, store, make_recording, make_schedule):
    recording = make_recording()
    schedule = make_schedule(timedelta(minutes=-1), timedelta(seconds=0.3), recording_id=recording.id)

    await run_tick(dispatcher)
    await eventually(lambda: store.get_schedule(schedule.id).status == ScheduleStatus.COMPLETED, timeout=3)

    saved = store.get_recording(recording.id)
    assert saved.status == RecordingStatus.STOPPED
    assert saved.error_message is None


@pytest.mark.asyncio
async def test_deferred_stop_after_recording_finished(dispatcher, store, manager, captures, make_recording,
                                                      make_schedule):
    recording = make_recording()
    schedule = make_schedule(timedelta(minutes=-1), timedelta(seconds=0.3), recording_id=recording.id)

    await run_tick(dispatcher)
    captures.for_recording(recording.id).finish()
    await eventually(lambda: store.get_recording(recording.id).status == RecordingStatus.COMPLETED)
    await eventually(lambda: store.get_schedule(schedule.id).status == ScheduleStatus.COMPLETED, timeout=3)


@pytest.mark.asyncio
async def test_reconcile_closes_finished_schedules(dispatcher, store, make_recording):
    failed = make_recording(status=RecordingStatus.FAILED, error_message="Network error during capture")
    stopped = make_recording(status=RecordingStatus.STOPPED)
    running = make_recording(status=RecordingStatus.RECORDING)
    for name, recording in (("s-failed", failed), ("s-stopped", stopped), ("s-running", running)):
        store.create_schedule(Schedule(id=name, scheduled_start=utcnow(), recording_id=recording.id,
                                       status=ScheduleStatus.ACTIVE))

    assert dispatcher.reconcile() == 2

    assert store.get_schedule("s-failed").status == ScheduleStatus.FAILED
    assert store.get_schedule("s-failed").error_message == "Network error during capture"
    assert store.get_schedule("s-stopped").status == ScheduleStatus.COMPLETED
    assert store.get_schedule("s-running").status == ScheduleStatus.ACTIVE


def test_generate_auto_schedules_once_per_match(store, manager, config):
    dispatcher = ScheduleDispatcher(store, manager, config)
    now = utcnow()
    kickoff = now + timedelta(hours=4)
    store.upsert_match(Match(id="m1", home_team="A", away_team="B", match_date=kickoff, auto_record=True))
    store.upsert_match(Match(id="m2", home_team="C", away_team="D", match_date=kickoff, auto_record=False))
    store.upsert_match(Match(id="m3", home_team="E", away_team="F", match_date=now - timedelta(hours=1),
                             auto_record=True))

    created = dispatcher.generate_auto_schedules(now)

    assert [schedule.match_id for schedule in created] == ["m1"]
    schedule = created[0]
    assert schedule.auto_generated
    assert schedule.scheduled_start == kickoff - timedelta(seconds=300)
    assert schedule.scheduled_end == kickoff + timedelta(seconds=7200)

    assert dispatcher.generate_auto_schedules(now) == []
    assert dispatcher.get_statistics()['auto_generated'] == 1


def test_create_schedule_validation(store, manager, config, make_recording):
    dispatcher = ScheduleDispatcher(store, manager, config)
    start = utcnow() + timedelta(hours=1)

    with pytest.raises(InvalidSchedule):
        dispatcher.create_schedule(scheduled_start=start)
    with pytest.raises(InvalidSchedule):
        dispatcher.create_schedule(scheduled_start=start, scheduled_end=start, recording_id=make_recording().id)
    with pytest.raises(InvalidSchedule):
        dispatcher.create_schedule(scheduled_start=start, match_id="ghost")
    with pytest.raises(InvalidSchedule):
        dispatcher.create_schedule(scheduled_start=start, recording_id="ghost")
    with pytest.raises(InvalidSchedule):
        dispatcher.create_schedule(scheduled_start=start,
                                   recording_id=make_recording(status=RecordingStatus.STOPPED).id)


def test_create_schedule_for_match_is_unique(store, manager, config):
    dispatcher = ScheduleDispatcher(store, manager, config)
    store.upsert_match(Match(id="m1", home_team="A", away_team="B", match_date=utcnow() + timedelta(days=1)))
    start = datetime(2030, 5, 1, 18, 0)

    schedule = dispatcher.create_schedule(scheduled_start=start, match_id="m1")

    assert schedule.scheduled_start == datetime(2030, 5, 1, 18, 0, tzinfo=timezone.utc)
    assert not schedule.auto_generated
    with pytest.raises(InvalidSchedule):
        dispatcher.create_schedule(scheduled_start=start, match_id="m1")


@pytest.mark.asyncio
async def test_execute_schedule_now(dispatcher, store, make_recording):
    recording = make_recording()
    schedule = dispatcher.create_schedule(scheduled_start=utcnow() + timedelta(days=2), recording_id=recording.id)

    executed = await dispatcher.execute_schedule_now(schedule.id)

    assert executed.status == ScheduleStatus.ACTIVE
    assert store.get_recording(recording.id).status == RecordingStatus.RECORDING
    with pytest.raises(ScheduleNotPending):
        await dispatcher.execute_schedule_now(schedule.id)
    with pytest.raises(ScheduleNotFound):
        await dispatcher.execute_schedule_now("ghost")


@pytest.mark.asyncio
async def test_background_loop_dispatches(dispatcher, store, make_recording, make_schedule):
    schedule = make_schedule(timedelta(seconds=10), recording_id=make_recording().id)

    await dispatcher.start()
    assert dispatcher.is_running
    await eventually(lambda: store.get_schedule(schedule.id).status == ScheduleStatus.ACTIVE, timeout=3)
    await dispatcher.stop()

    assert not dispatcher.is_running
    stats = dispatcher.get_statistics()
    assert stats['dispatched'] == 1
    assert stats['schedules']['active'] == 1


def test_recover_interrupted_frees_the_match_for_rescheduling(store, manager, config):
    dispatcher = ScheduleDispatcher(store, manager, config)
    kickoff = utcnow() + timedelta(minutes=3)
    store.upsert_match(Match(id="m1", home_team="A", away_team="B", match_date=kickoff, auto_record=True))
    claimed = dispatcher.generate_auto_schedules()[0]
    store.transition_schedule(claimed.id, [ScheduleStatus.PENDING], ScheduleStatus.EXECUTING, executed_at=utcnow())
    store.create_schedule(Schedule(id="waiting", scheduled_start=utcnow(), recording_id="x"))
    assert dispatcher.generate_auto_schedules() == []

    assert dispatcher.recover_interrupted() == 1

    saved = store.get_schedule(claimed.id)
    assert saved.status == ScheduleStatus.FAILED
    assert saved.error_message == RESTART_REASON
    assert store.get_schedule("waiting").status == ScheduleStatus.PENDING
    assert [schedule.match_id for schedule in dispatcher.generate_auto_schedules()] == ["m1"]
