from __future__ import annotations

import datetime as dt

import pytest

from tasktracker import events
from tasktracker.config import settings
from tasktracker.entities import MAX_MEAL_BREAK_MS, Snapshot
from tasktracker.errors import (
    EntryStillRunningError,
    InvalidDurationError,
    MealBreakAlreadyActiveError,
    NoActiveMealBreakError,
    NoActiveTimerError,
    TaskNotFoundError,
    TimeEntryNotFoundError,
    TimerAlreadyActiveError,
    ValidationError,
)
from tasktracker.events import EventBus
from tasktracker.persistence import DataService
from tasktracker.state import RuntimeState
from tasktracker.timer import AUTO_STOP_REASON
from tasktracker.utils import MS_PER_HOUR

from fakes import START, EventRecorder, make_entry, make_meal, make_task


@pytest.fixture()
def task(tasks):
    return tasks.create_task("Docs")


def test_start_and_stop_records_elapsed_time(timer, tasks, task, clock, recorder):
    entry = timer.start_timer(task.id)
    assert entry.is_running
    assert entry.date == "2023-09-25"
    assert tasks.get_task(task.id).is_active

    clock.advance(seconds=5)
    assert len(recorder.of(events.TIMER_TICK)) == 5
    assert recorder.of(events.TIMER_TICK)[-1]["elapsed"] == 5000

    stopped = timer.stop_timer()
    assert stopped.id == entry.id
    assert stopped.duration == 5000
    assert stopped.end_time == START + dt.timedelta(seconds=5)
    updated = tasks.get_task(task.id)
    assert updated.total_time == 5000
    assert not updated.is_active
    assert not timer.is_running

    clock.advance(seconds=5)
    assert len(recorder.of(events.TIMER_TICK)) == 5


def test_start_refreshes_work_day(timer, task, data, clock):
    timer.start_timer(task.id)
    clock.advance(minutes=30)
    timer.stop_timer()
    work_day = data.current().find_work_day("2023-09-25")
    assert work_day.arrival_time == START
    assert work_day.total_task_time == 30 * 60000


def test_second_start_is_rejected(timer, task, data):
    timer.start_timer(task.id)
    with pytest.raises(TimerAlreadyActiveError):
        timer.start_timer(task.id)
    assert len([entry for entry in data.current().time_entries if entry.is_running]) == 1


def test_start_requires_live_task(timer, tasks):
    with pytest.raises(TaskNotFoundError):
        timer.start_timer("missing")
    deleted = tasks.create_task("Old")
    tasks.delete_task(deleted.id)
    with pytest.raises(TaskNotFoundError):
        timer.start_timer(deleted.id)


def test_stop_without_timer(timer):
    with pytest.raises(NoActiveTimerError):
        timer.stop_timer()


def test_timer_auto_stops_at_max_duration(timer, tasks, task, clock, recorder):
    entry = timer.start_timer(task.id)
    clock.advance(hours=12, seconds=1)

    auto = recorder.of(events.TIMER_AUTO_STOPPED)
    assert len(auto) == 1
    assert auto[0]["reason"] == AUTO_STOP_REASON
    assert auto[0]["max_duration"] == 12 * MS_PER_HOUR
    closed = auto[0]["entry"]
    assert closed.id == entry.id
    assert closed.duration == 12 * MS_PER_HOUR
    assert closed.end_time == START + dt.timedelta(hours=12)
    assert recorder.of(events.TIMER_STOPPED) == []
    assert not timer.is_running
    assert tasks.get_task(task.id).total_time == 12 * MS_PER_HOUR
    with pytest.raises(NoActiveTimerError):
        timer.stop_timer()


def test_stop_caps_duration_when_tick_missed(timer, task, clock):
    timer.start_timer(task.id)
    timer._task_channel.cancel_tick()
    clock.set(START + dt.timedelta(hours=13))
    stopped = timer.stop_timer()
    assert stopped.duration == 12 * MS_PER_HOUR


def test_switch_task_closes_and_opens_at_same_instant(timer, tasks, task, clock, recorder, data):
    other = tasks.create_task("Mail")
    first = timer.start_timer(task.id)
    clock.advance(seconds=10)
    result = timer.switch_task(other.id)

    assert result.stopped.id == first.id
    assert result.stopped.duration == 10000
    assert result.stopped.end_time <= result.started.start_time
    assert result.started.task_id == other.id
    assert tasks.get_active_task().id == other.id
    assert not tasks.get_task(task.id).is_active
    assert len([entry for entry in data.current().time_entries if entry.is_running]) == 1
    assert recorder.names()[-3:] == [events.TIMER_STOPPED, events.TIMER_STARTED, events.TASK_SWITCHED]


def test_switch_without_running_timer_starts_one(timer, task):
    result = timer.switch_task(task.id)
    assert result.stopped is None
    assert timer.is_running


def test_switch_to_unknown_task_keeps_timer(timer, task):
    entry = timer.start_timer(task.id)
    with pytest.raises(TaskNotFoundError):
        timer.switch_task("missing")
    assert timer.get_current_timer()["entry"].id == entry.id


def test_current_timer_status(timer, task, clock):
    assert timer.get_current_timer() is None
    timer.start_timer(task.id)
    clock.advance(minutes=1, seconds=5)
    current = timer.get_current_timer()
    assert current["elapsed"] == 65000
    assert current["formatted"] == "00:01:05"
    assert current["task"].id == task.id
    assert current["remaining"] == 12 * MS_PER_HOUR - 65000


def test_adjust_time_updates_entry_and_task_total(timer, tasks, task, clock, recorder):
    timer.start_timer(task.id)
    clock.advance(seconds=5)
    entry = timer.stop_timer()
    clock.advance(minutes=5)

    adjusted = timer.adjust_time(entry.id, 10000, "  Forgot to stop earlier ")
    assert adjusted.duration == 10000
    assert adjusted.end_time == entry.start_time + dt.timedelta(seconds=10)
    assert adjusted.is_manually_adjusted
    assert adjusted.adjustment_note == "Forgot to stop earlier"
    assert adjusted.adjustment_timestamp == clock.now()
    assert tasks.get_task(task.id).total_time == 10000
    assert recorder.of(events.TIME_ADJUSTED)[0]["previous_duration"] == 5000


def test_adjust_time_validation(timer, task, clock, data):
    entry = timer.start_timer(task.id)
    with pytest.raises(EntryStillRunningError):
        timer.adjust_time(entry.id, 1000, "note")
    clock.advance(seconds=5)
    timer.stop_timer()
    before = data.current()
    with pytest.raises(InvalidDurationError):
        timer.adjust_time(entry.id, -1, "note")
    with pytest.raises(InvalidDurationError):
        timer.adjust_time(entry.id, 12 * MS_PER_HOUR + 1, "note")
    with pytest.raises(ValidationError):
        timer.adjust_time(entry.id, 1000, "   ")
    with pytest.raises(TimeEntryNotFoundError):
        timer.adjust_time("missing", 1000, "note")
    assert data.current() is before


def test_adjust_to_zero(timer, tasks, task, clock):
    timer.start_timer(task.id)
    clock.advance(seconds=5)
    entry = timer.stop_timer()
    adjusted = timer.adjust_time(entry.id, 0, "Started by mistake")
    assert adjusted.duration == 0
    assert adjusted.end_time == adjusted.start_time
    assert tasks.get_task(task.id).total_time == 0


def test_meal_break_lifecycle(timer, clock, data, recorder):
    meal = timer.start_meal_break()
    assert meal.meal_type == "breakfast"
    with pytest.raises(MealBreakAlreadyActiveError):
        timer.start_meal_break()
    assert len([item for item in data.current().meal_breaks if item.is_running]) == 1

    clock.advance(minutes=20)
    status = timer.get_current_meal_break()
    assert status["elapsed"] == 20 * 60000
    assert status["max_duration"] == MAX_MEAL_BREAK_MS

    stopped = timer.stop_meal_break()
    assert stopped.duration == 20 * 60000
    assert data.current().find_work_day("2023-09-25").meal_break_time == 20 * 60000
    assert recorder.of(events.MEAL_BREAK_STOPPED)[0]["auto"] is False
    with pytest.raises(NoActiveMealBreakError):
        timer.stop_meal_break()


def test_meal_break_auto_stops_after_three_hours(timer, clock, recorder):
    timer.start_meal_break()
    clock.advance(hours=3, seconds=1)
    auto = recorder.of(events.MEAL_BREAK_AUTO_STOPPED)
    assert len(auto) == 1
    assert auto[0]["meal_break"].duration == MAX_MEAL_BREAK_MS
    assert not timer.meal_break_running


def test_meal_break_runs_alongside_task_timer(timer, task, clock):
    timer.start_timer(task.id)
    timer.start_meal_break()
    clock.advance(seconds=3)
    assert timer.is_running
    assert timer.meal_break_running
    assert timer.stop_meal_break().duration == 3000
    assert timer.stop_timer().duration == 3000


def test_max_duration_follows_settings(state, timer, task, clock, recorder):
    state.preferences.update_settings({"timer_max_duration": 2 * MS_PER_HOUR})
    assert timer.max_duration_ms == 2 * MS_PER_HOUR
    timer.start_timer(task.id)
    clock.advance(hours=2, seconds=1)
    assert recorder.of(events.TIMER_AUTO_STOPPED)[0]["entry"].duration == 2 * MS_PER_HOUR


def test_set_max_duration_bounds(timer):
    with pytest.raises(InvalidDurationError):
        timer.set_max_duration(MS_PER_HOUR - 1)
    with pytest.raises(InvalidDurationError):
        timer.set_max_duration(24 * MS_PER_HOUR + 1)


def _seed(store, snapshot: Snapshot, clock, bus) -> RuntimeState:
    DataService(store, EventBus(), clock, storage_key=settings.storage_key).save(snapshot)
    return RuntimeState(settings, store=store, clock=clock, bus=bus)


def test_open_records_resume_after_restart(store, clock, bus):
    recorder = EventRecorder(bus)
    task = make_task("Docs", is_active=True)
    started = START - dt.timedelta(minutes=10)
    snapshot = (
        Snapshot()
        .with_task(task)
        .with_entry(make_entry(task.id, started, None, entry_id="open"))
        .with_meal_break(make_meal(START - dt.timedelta(minutes=5), None, meal_id="meal"))
    )
    runtime = _seed(store, snapshot, clock, bus)
    runtime.start(auto_save=False, auto_cleanup=False)
    try:
        assert runtime.timer.is_running
        assert runtime.timer.meal_break_running
        assert recorder.of(events.TIMER_RESUMED)[0]["entry"].id == "open"
        clock.advance(seconds=30)
        stopped = runtime.timer.stop_timer()
        assert stopped.duration == 10 * 60000 + 30000
        assert runtime.timer.stop_meal_break().duration == 5 * 60000 + 30000
    finally:
        runtime.shutdown()


def test_overdue_entry_is_auto_stopped_on_start(store, clock, bus):
    recorder = EventRecorder(bus)
    task = make_task("Docs", is_active=True)
    snapshot = Snapshot().with_task(task).with_entry(
        make_entry(task.id, START - dt.timedelta(hours=13), None, entry_id="stale")
    )
    runtime = _seed(store, snapshot, clock, bus)
    runtime.start(auto_save=False, auto_cleanup=False)
    try:
        assert not runtime.timer.is_running
        closed = recorder.of(events.TIMER_AUTO_STOPPED)[0]["entry"]
        assert closed.duration == 12 * MS_PER_HOUR
        assert runtime.data.current().open_entry() is None
        assert not runtime.tasks.get_task(task.id).is_active
    finally:
        runtime.shutdown()


def test_destroy_cancels_ticks(timer, task, clock, recorder):
    timer.start_timer(task.id)
    timer.destroy()
    clock.advance(seconds=10)
    assert recorder.of(events.TIMER_TICK) == []


def test_import_resyncs_running_timer(timer, task, data):
    timer.start_timer(task.id)
    data.import_data(Snapshot().model_dump_json(by_alias=True))
    assert not timer.is_running
    assert timer.get_current_timer() is None
