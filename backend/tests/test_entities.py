from __future__ import annotations

import datetime as dt

import pytest

from tasktracker.entities import (
    ActivityCounter,
    MealBreak,
    Snapshot,
    Task,
    TimeEntry,
    TrackerSettings,
    WorkDay,
)
from tasktracker.errors import InvalidDateError, StateConflictError, ValidationError
from tasktracker.utils import (
    MS_PER_HOUR,
    efficiency,
    format_hm,
    format_hms,
    monday_of,
    parse_iso_date,
    week_dates,
)

from fakes import START, make_entry, make_meal, make_task


def test_task_name_is_trimmed():
    task = Task.create(id="t1", name="  Write report  ", created_at=START)
    assert task.name == "Write report"
    assert task.color == "primary"
    assert task.total_time == 0


@pytest.mark.parametrize("name", ["", "   ", "x" * 101])
def test_task_name_bounds(name):
    with pytest.raises(ValidationError):
        Task.create(id="t1", name=name, created_at=START)


def test_task_rejects_unknown_color():
    with pytest.raises(ValidationError):
        Task.create(id="t1", name="Docs", color="purple", created_at=START)


def test_deleted_task_cannot_be_active():
    with pytest.raises(ValidationError):
        Task.create(id="t1", name="Docs", created_at=START, is_active=True, is_deleted=True)


def test_evolve_returns_new_validated_record():
    task = make_task("Docs")
    renamed = task.evolve(name="  Reading ")
    assert renamed.name == "Reading"
    assert task.name == "Docs"
    with pytest.raises(ValidationError):
        task.evolve(total_time=-1)


def test_time_entry_duration_must_match_interval():
    with pytest.raises(ValidationError):
        TimeEntry.create(
            id="e1",
            task_id="t1",
            start_time=START,
            end_time=START + dt.timedelta(seconds=10),
            duration=5000,
            date="2023-09-25",
        )


def test_time_entry_duration_tolerates_one_second():
    entry = TimeEntry.create(
        id="e1",
        task_id="t1",
        start_time=START,
        end_time=START + dt.timedelta(seconds=10),
        duration=9200,
        date="2023-09-25",
    )
    assert not entry.is_running


def test_time_entry_end_before_start_rejected():
    with pytest.raises(ValidationError):
        TimeEntry.create(
            id="e1",
            task_id="t1",
            start_time=START,
            end_time=START - dt.timedelta(seconds=1),
            duration=0,
            date="2023-09-25",
        )


def test_adjusted_entry_needs_note():
    with pytest.raises(ValidationError):
        make_entry("t1", START, 5000, is_manually_adjusted=True, adjustment_timestamp=START)


def test_entry_date_must_be_iso():
    with pytest.raises(ValidationError):
        TimeEntry.create(id="e1", task_id="t1", start_time=START, date="25.09.2023")


def test_entry_from_camel_case_payload():
    entry = TimeEntry.from_payload(
        {
            "id": "e1",
            "taskId": "t1",
            "startTime": "2023-09-25T09:00:00.123456",
            "endTime": "2023-09-25T09:00:05.123999",
            "duration": 5000,
            "date": "2023-09-25",
        }
    )
    assert entry.task_id == "t1"
    assert entry.start_time.microsecond == 123000
    assert entry.to_json()["taskId"] == "t1"


def test_aware_timestamps_become_local_naive():
    aware = dt.datetime(2023, 9, 25, 7, 0, tzinfo=dt.timezone.utc)
    entry = TimeEntry.create(id="e1", task_id="t1", start_time=aware, date="2023-09-25")
    assert entry.start_time.tzinfo is None
    assert entry.start_time == aware.astimezone().replace(tzinfo=None)


def test_meal_break_capped_at_three_hours():
    with pytest.raises(ValidationError):
        make_meal(START, 3 * MS_PER_HOUR + 1)
    assert make_meal(START, 3 * MS_PER_HOUR).duration == 3 * MS_PER_HOUR


@pytest.mark.parametrize(
    ("hour", "meal_type"),
    [(7, "breakfast"), (12, "lunch"), (18, "dinner"), (23, "snack"), (3, "snack")],
)
def test_meal_type_follows_start_hour(hour, meal_type):
    assert make_meal(START.replace(hour=hour), None).meal_type == meal_type


def test_activity_type_is_normalized():
    counter = ActivityCounter.create(date="2023-09-25", activity_type="  Coffee ", count=2)
    assert counter.activity_type == "coffee"
    assert counter.is_predefined
    with pytest.raises(ValidationError):
        ActivityCounter.create(date="2023-09-25", activity_type="coffee", count=1001)


def test_work_day_derivation():
    entries = [
        make_entry("t1", START, 4 * MS_PER_HOUR),
        make_entry("t2", START.replace(hour=13, minute=30), 2 * MS_PER_HOUR),
    ]
    meals = [make_meal(START.replace(hour=13), 30 * 60 * 1000)]
    day = WorkDay.derive("2023-09-25", entries, meals)
    assert day.arrival_time == START
    assert day.departure_time == START.replace(hour=15, minute=30)
    assert day.total_presence_time == 6.5 * MS_PER_HOUR
    assert day.meal_break_time == 30 * 60 * 1000
    assert day.working_time == 6 * MS_PER_HOUR
    assert day.total_task_time == 6 * MS_PER_HOUR


def test_work_day_ignores_running_durations():
    entries = [make_entry("t1", START, MS_PER_HOUR), make_entry("t1", START.replace(hour=11), None)]
    day = WorkDay.derive("2023-09-25", entries, [])
    assert day.total_task_time == MS_PER_HOUR
    assert day.departure_time == START.replace(hour=11)


def test_work_day_task_time_bounded_by_working_time():
    with pytest.raises(ValidationError):
        WorkDay.create(date="2023-09-25", working_time=1000, total_task_time=2000)


def test_settings_defaults_and_bounds():
    defaults = TrackerSettings()
    assert defaults.required_daily_presence == 8 * MS_PER_HOUR
    assert defaults.timer_max_duration == 12 * MS_PER_HOUR
    assert defaults.auto_save_interval == 30000
    assert defaults.data_retention_weeks == 5
    assert defaults.to_json()["timeFormat24h"] is True
    with pytest.raises(ValidationError):
        defaults.evolve(timer_max_duration=25 * MS_PER_HOUR)
    with pytest.raises(ValidationError):
        defaults.evolve(theme="neon")
    assert "last_updated" not in TrackerSettings.field_names()


def test_snapshot_rejects_two_running_entries():
    snapshot = Snapshot().with_entry(make_entry("t1", START, None, entry_id="e1"))
    snapshot = snapshot.with_entry(make_entry("t2", START.replace(hour=10), None, entry_id="e2"))
    with pytest.raises(StateConflictError):
        snapshot.check_invariants()


def test_snapshot_live_tasks_filters_soft_deleted():
    snapshot = Snapshot().with_task(make_task("Docs")).with_task(make_task("Old", is_deleted=True))
    assert [task.name for task in snapshot.live_tasks()] == ["Docs"]
    assert snapshot.find_task("task-old") is None
    assert snapshot.find_task("task-old", include_deleted=True).name == "Old"


def test_snapshot_upsert_replaces_by_id():
    task = make_task("Docs")
    snapshot = Snapshot().with_task(task).with_task(task.evolve(total_time=10))
    assert len(snapshot.tasks) == 1
    assert snapshot.tasks[0].total_time == 10


@pytest.mark.parametrize("value", ["2023-02-30", "2023-9-1", "1899-12-31", "2101-01-01", "tomorrow"])
def test_parse_iso_date_rejects(value):
    with pytest.raises(InvalidDateError):
        parse_iso_date(value)


def test_parse_iso_date_rejects_datetime():
    with pytest.raises(InvalidDateError):
        parse_iso_date(START)


def test_week_helpers():
    assert monday_of(dt.date(2023, 9, 28)) == dt.date(2023, 9, 25)
    days = week_dates(dt.date(2023, 9, 25))
    assert days[0] == dt.date(2023, 9, 25)
    assert days[-1] == dt.date(2023, 9, 29)


def test_formatting_and_efficiency():
    assert format_hms(3_723_000) == "01:02:03"
    assert format_hm(3_723_000) == "01:02"
    assert efficiency(1, 8) == 13
    assert efficiency(5, 0) == 0
    assert efficiency(7 * MS_PER_HOUR, 7 * MS_PER_HOUR) == 100


def test_time_entry_derives_date_and_duration():
    entry = TimeEntry.from_payload(
        {"id": "e1", "taskId": "t1", "startTime": "2023-09-25T23:59:00", "endTime": "2023-09-26T00:01:00"}
    )
    assert entry.date == "2023-09-25"
    assert entry.duration == 120000


def test_unadjusted_entry_has_no_adjustment_timestamp():
    with pytest.raises(ValidationError):
        make_entry("t1", START, 5000, adjustment_timestamp=START)


def test_meal_break_date_follows_start_time():
    with pytest.raises(ValidationError):
        MealBreak.create(id="m1", date="2023-09-26", start_time=START)
    assert MealBreak.create(id="m1", start_time=START).date == "2023-09-25"
