from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from .errors import InvalidDurationError, StateConflictError, ValidationError
from .utils import DATE_PATTERN, MS_PER_HOUR, MS_PER_SECOND, ms_between, truncate_ms

CURRENT_VERSION = "1.0.0"

MAX_TASK_NAME_LENGTH = 100
MAX_ACTIVITY_TYPE_LENGTH = 50
MAX_ACTIVITY_COUNT = 1000
# Highest value timerMaxDuration may be configured to
MAX_TIMER_DURATION_MS = 24 * MS_PER_HOUR
MAX_MEAL_BREAK_MS = 3 * MS_PER_HOUR
DURATION_TOLERANCE_MS = MS_PER_SECOND

TASK_COLORS = (
    "primary",
    "secondary",
    "accent",
    "neutral",
    "info",
    "success",
    "warning",
    "error",
    "ghost",
    "link",
)

THEMES = (
    "bumblebee",
    "light",
    "dark",
    "cupcake",
    "emerald",
    "corporate",
    "synthwave",
    "retro",
    "cyberpunk",
    "valentine",
    "halloween",
    "garden",
    "forest",
    "aqua",
    "lofi",
    "pastel",
    "fantasy",
    "wireframe",
    "black",
    "luxury",
    "dracula",
    "cmyk",
    "autumn",
    "business",
    "acid",
    "lemonade",
    "night",
    "coffee",
    "winter",
)

PREDEFINED_ACTIVITIES = (
    "coffee",
    "break",
    "bathroom",
    "water",
    "phone",
    "meeting",
    "interruption",
    "discussion",
)

R = TypeVar("R", bound="_Record")


def _describe(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or str(exc)


def _to_local_naive(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return truncate_ms(value)


_DATETIME = TypeAdapter(dt.datetime)


def _with_derived_fields(data: Any) -> Any:
    """Fill ``date`` from the start time and ``duration`` from the endpoints when absent."""
    if not isinstance(data, dict):
        return data
    start_key = "start_time" if "start_time" in data else "startTime"
    end_key = "end_time" if "end_time" in data else "endTime"
    if data.get(start_key) is None:
        return data
    try:
        start = _to_local_naive(_DATETIME.validate_python(data[start_key]))
        end = data.get(end_key)
        end = _to_local_naive(_DATETIME.validate_python(end)) if end is not None else None
    except PydanticValidationError:
        # field validation reports the bad timestamp
        return data
    data = dict(data)
    if not data.get("date"):
        data["date"] = start.date().isoformat()
    if end is not None and not data.get("duration"):
        data["duration"] = max(0, ms_between(start, end))
    return data


def _check_closed_duration(start: dt.datetime, end: Optional[dt.datetime], duration: int) -> None:
    if end is None:
        return
    if end < start:
        raise ValueError("End time must not be before start time")
    if abs(ms_between(start, end) - duration) > DURATION_TOLERANCE_MS:
        raise ValueError("Duration does not match start and end time")


class _Record(BaseModel):
    """Immutable, validated record. Changes go through ``evolve``."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    @field_validator("*")
    @classmethod
    def _local_times(cls, value: Any) -> Any:
        if isinstance(value, dt.datetime):
            return _to_local_naive(value)
        return value

    @field_validator("date", check_fields=False)
    @classmethod
    def _iso_date(cls, value: str) -> str:
        if not DATE_PATTERN.match(value):
            raise ValueError("Date must be in ISO format (YYYY-MM-DD)")
        return value

    @classmethod
    def create(cls: type[R], **data: Any) -> R:
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid {cls.__name__}: {_describe(exc)}") from exc

    @classmethod
    def from_payload(cls: type[R], payload: Dict[str, Any]) -> R:
        return cls.create(**payload)

    def evolve(self: R, **changes: Any) -> R:
        data = self.model_dump()
        data.update(changes)
        return type(self).create(**data)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Task(_Record):
    id: str = Field(min_length=1)
    name: str
    color: str = "primary"
    total_time: int = Field(default=0, ge=0)
    is_active: bool = False
    is_deleted: bool = False
    created_at: dt.datetime
    updated_at: Optional[dt.datetime] = None
    activated_at: Optional[dt.datetime] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Task name is required")
        if len(value) > MAX_TASK_NAME_LENGTH:
            raise ValueError(f"Task name must be {MAX_TASK_NAME_LENGTH} characters or less")
        return value

    @field_validator("color")
    @classmethod
    def _check_color(cls, value: str) -> str:
        if value not in TASK_COLORS:
            raise ValueError(f"Color must be one of: {', '.join(TASK_COLORS)}")
        return value

    @model_validator(mode="after")
    def _deleted_is_inactive(self) -> "Task":
        if self.is_deleted and self.is_active:
            raise ValueError("A deleted task cannot be active")
        return self


class TimeEntry(_Record):
    id: str = Field(min_length=1)
    task_id: str = Field(min_length=1)
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    duration: int = Field(default=0, ge=0, le=MAX_TIMER_DURATION_MS)
    date: str
    is_manually_adjusted: bool = False
    adjustment_note: str = ""
    adjustment_timestamp: Optional[dt.datetime] = None

    @property
    def is_running(self) -> bool:
        return self.end_time is None

    @model_validator(mode="before")
    @classmethod
    def _derive(cls, data: Any) -> Any:
        return _with_derived_fields(data)

    @model_validator(mode="after")
    def _check_consistency(self) -> "TimeEntry":
        _check_closed_duration(self.start_time, self.end_time, self.duration)
        if self.is_manually_adjusted:
            if not (self.adjustment_note or "").strip():
                raise ValueError("Adjusted entries require an adjustment note")
            if self.adjustment_timestamp is None:
                raise ValueError("Adjusted entries require an adjustment timestamp")
        elif self.adjustment_timestamp is not None:
            raise ValueError("Only adjusted entries carry an adjustment timestamp")
        return self


class MealBreak(_Record):
    id: str = Field(min_length=1)
    date: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime] = None
    duration: int = Field(default=0, ge=0, le=MAX_MEAL_BREAK_MS)

    @property
    def is_running(self) -> bool:
        return self.end_time is None

    @model_validator(mode="before")
    @classmethod
    def _derive(cls, data: Any) -> Any:
        return _with_derived_fields(data)

    @model_validator(mode="after")
    def _check_consistency(self) -> "MealBreak":
        _check_closed_duration(self.start_time, self.end_time, self.duration)
        if self.date != self.start_time.date().isoformat():
            raise ValueError("Meal break date must be the date of its start time")
        return self

    @property
    def meal_type(self) -> str:
        hour = self.start_time.hour
        if 6 <= hour < 11:
            return "breakfast"
        if 11 <= hour < 16:
            return "lunch"
        if 16 <= hour < 22:
            return "dinner"
        return "snack"


class ActivityCounter(_Record):
    date: str
    activity_type: str
    count: int = Field(default=0, ge=0, le=MAX_ACTIVITY_COUNT)
    last_updated: Optional[dt.datetime] = None

    @field_validator("activity_type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("Activity type must be a non-empty string")
        if len(value) > MAX_ACTIVITY_TYPE_LENGTH:
            raise ValueError(f"Activity type must be {MAX_ACTIVITY_TYPE_LENGTH} characters or less")
        return value

    @property
    def is_predefined(self) -> bool:
        return self.activity_type in PREDEFINED_ACTIVITIES


class WorkDay(_Record):
    date: str
    arrival_time: Optional[dt.datetime] = None
    departure_time: Optional[dt.datetime] = None
    total_presence_time: int = Field(default=0, ge=0)
    meal_break_time: int = Field(default=0, ge=0)
    working_time: int = Field(default=0, ge=0)
    total_task_time: int = Field(default=0, ge=0)
    activity_counters: Dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_totals(self) -> "WorkDay":
        if self.arrival_time and self.departure_time and self.departure_time < self.arrival_time:
            raise ValueError("Departure time must not be before arrival time")
        if self.total_task_time > self.working_time:
            raise ValueError("Total task time cannot exceed working time")
        for label, count in self.activity_counters.items():
            if count < 0:
                raise ValueError(f"Activity counter for {label} must be non-negative")
        return self

    @classmethod
    def derive(
        cls,
        date: str,
        entries: Iterable[TimeEntry],
        meal_breaks: Iterable[MealBreak],
        counters: Iterable[ActivityCounter] = (),
    ) -> "WorkDay":
        """Build the day summary from the raw records of one date.

        Running records count towards presence from their start only;
        their durations are excluded until they close.
        """
        entries = list(entries)
        meal_breaks = list(meal_breaks)
        counts = {counter.activity_type: counter.count for counter in counters}
        records: List[Any] = [*entries, *meal_breaks]
        if not records:
            return cls.create(date=date, activity_counters=counts)
        arrival = min(record.start_time for record in records)
        departure = max(record.end_time or record.start_time for record in records)
        presence = ms_between(arrival, departure)
        meal_time = sum(meal.duration for meal in meal_breaks if not meal.is_running)
        task_time = sum(entry.duration for entry in entries if not entry.is_running)
        return cls.create(
            date=date,
            arrival_time=arrival,
            departure_time=departure,
            total_presence_time=presence,
            meal_break_time=meal_time,
            working_time=max(presence - meal_time, task_time, 0),
            total_task_time=task_time,
            activity_counters=counts,
        )


class TrackerSettings(_Record):
    required_daily_presence: int = Field(default=8 * MS_PER_HOUR, ge=MS_PER_HOUR, le=16 * MS_PER_HOUR)
    timer_max_duration: int = Field(default=12 * MS_PER_HOUR, ge=MS_PER_HOUR, le=MAX_TIMER_DURATION_MS)
    auto_save_interval: int = Field(default=30 * MS_PER_SECOND, ge=MS_PER_SECOND, le=300 * MS_PER_SECOND)
    data_retention_weeks: int = Field(default=5, ge=1, le=52)
    theme: str = "bumblebee"
    time_format_24h: bool = Field(default=True, alias="timeFormat24h")
    show_seconds_in_timer: bool = True
    default_task_color: str = "primary"
    enable_notifications: bool = False
    notify_on_auto_stop: bool = True
    notify_on_long_break: bool = True
    enable_sounds: bool = False
    confirm_on_task_delete: bool = True
    start_day_automatically: bool = False
    last_updated: Optional[dt.datetime] = None

    @field_validator("theme")
    @classmethod
    def _check_theme(cls, value: str) -> str:
        if value not in THEMES:
            raise ValueError(f"Unknown theme: {value}")
        return value

    @field_validator("default_task_color")
    @classmethod
    def _check_color(cls, value: str) -> str:
        if value not in TASK_COLORS:
            raise ValueError(f"Color must be one of: {', '.join(TASK_COLORS)}")
        return value

    @classmethod
    def field_names(cls) -> List[str]:
        return [name for name in cls.model_fields if name != "last_updated"]


T = TypeVar("T")


def _upsert(items: Tuple[T, ...], item: T, key: Callable[[T], Any]) -> Tuple[T, ...]:
    wanted = key(item)
    result: List[T] = []
    replaced = False
    for existing in items:
        if key(existing) == wanted:
            result.append(item)
            replaced = True
        else:
            result.append(existing)
    if not replaced:
        result.append(item)
    return tuple(result)


class Snapshot(_Record):
    """The complete persisted state, stored as one blob."""

    version: str = CURRENT_VERSION
    last_updated: Optional[dt.datetime] = None
    tasks: Tuple[Task, ...] = ()
    time_entries: Tuple[TimeEntry, ...] = ()
    meal_breaks: Tuple[MealBreak, ...] = ()
    work_days: Tuple[WorkDay, ...] = ()
    activity_counters: Tuple[ActivityCounter, ...] = ()
    settings: TrackerSettings = Field(default_factory=TrackerSettings)

    # Soft-deleted tasks are filtered here and nowhere else.
    def live_tasks(self) -> List[Task]:
        return [task for task in self.tasks if not task.is_deleted]

    def find_task(self, task_id: str, include_deleted: bool = False) -> Optional[Task]:
        pool = self.tasks if include_deleted else self.live_tasks()
        return next((task for task in pool if task.id == task_id), None)

    def active_task(self) -> Optional[Task]:
        return next((task for task in self.live_tasks() if task.is_active), None)

    def find_entry(self, entry_id: str) -> Optional[TimeEntry]:
        return next((entry for entry in self.time_entries if entry.id == entry_id), None)

    def find_meal_break(self, meal_id: str) -> Optional[MealBreak]:
        return next((meal for meal in self.meal_breaks if meal.id == meal_id), None)

    def open_entry(self) -> Optional[TimeEntry]:
        return next((entry for entry in self.time_entries if entry.is_running), None)

    def open_meal_break(self) -> Optional[MealBreak]:
        return next((meal for meal in self.meal_breaks if meal.is_running), None)

    def entries_on(self, date: str) -> List[TimeEntry]:
        return [entry for entry in self.time_entries if entry.date == date]

    def meal_breaks_on(self, date: str) -> List[MealBreak]:
        return [meal for meal in self.meal_breaks if meal.date == date]

    def counters_on(self, date: str) -> List[ActivityCounter]:
        return [counter for counter in self.activity_counters if counter.date == date]

    def find_counter(self, date: str, activity_type: str) -> Optional[ActivityCounter]:
        wanted = activity_type.strip().lower()
        return next(
            (counter for counter in self.counters_on(date) if counter.activity_type == wanted),
            None,
        )

    def find_work_day(self, date: str) -> Optional[WorkDay]:
        return next((day for day in self.work_days if day.date == date), None)

    def with_task(self, task: Task) -> "Snapshot":
        return self.model_copy(update={"tasks": _upsert(self.tasks, task, lambda item: item.id)})

    def with_entry(self, entry: TimeEntry) -> "Snapshot":
        return self.model_copy(
            update={"time_entries": _upsert(self.time_entries, entry, lambda item: item.id)}
        )

    def with_meal_break(self, meal: MealBreak) -> "Snapshot":
        return self.model_copy(
            update={"meal_breaks": _upsert(self.meal_breaks, meal, lambda item: item.id)}
        )

    def with_counter(self, counter: ActivityCounter) -> "Snapshot":
        updated = _upsert(
            self.activity_counters, counter, lambda item: (item.date, item.activity_type)
        )
        return self.model_copy(update={"activity_counters": updated})

    def with_settings(self, settings: TrackerSettings) -> "Snapshot":
        return self.model_copy(update={"settings": settings})

    def with_work_day(self, date: str) -> "Snapshot":
        """Re-derive and store the work day for ``date``."""
        day = WorkDay.derive(
            date, self.entries_on(date), self.meal_breaks_on(date), self.counters_on(date)
        )
        return self.model_copy(update={"work_days": _upsert(self.work_days, day, lambda item: item.date)})

    def check_invariants(self) -> None:
        running = [entry.id for entry in self.time_entries if entry.is_running]
        if len(running) > 1:
            raise StateConflictError(f"Only one time entry may be running, found {len(running)}")
        active = [task.id for task in self.tasks if task.is_active]
        if len(active) > 1:
            raise StateConflictError(f"Only one task may be active, found {len(active)}")
        open_meals = [meal.id for meal in self.meal_breaks if meal.is_running]
        if len(open_meals) > 1:
            raise StateConflictError(f"Only one meal break may be open, found {len(open_meals)}")

    def check_duration_caps(self) -> None:
        cap = self.settings.timer_max_duration
        for entry in self.time_entries:
            if entry.duration > cap:
                raise InvalidDurationError(
                    f"Time entry {entry.id} lasts {entry.duration} ms, above the {cap} ms timer limit"
                )

    def record_counts(self) -> Dict[str, int]:
        return {
            "tasks": len(self.tasks),
            "time_entries": len(self.time_entries),
            "meal_breaks": len(self.meal_breaks),
            "work_days": len(self.work_days),
            "activity_counters": len(self.activity_counters),
        }
