from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .clock import Cancellable, Clock
from .config import settings as app_settings
from .entities import MAX_MEAL_BREAK_MS, MealBreak, Snapshot, TimeEntry
from .errors import (
    EntryStillRunningError,
    InvalidDurationError,
    MealBreakAlreadyActiveError,
    NoActiveMealBreakError,
    NoActiveTimerError,
    StateConflictError,
    TaskNotFoundError,
    TimeEntryNotFoundError,
    TimerAlreadyActiveError,
    TrackerError,
    ValidationError,
)
from .events import (
    DATA_CLEARED,
    DATA_IMPORTED,
    MEAL_BREAK_AUTO_STOPPED,
    MEAL_BREAK_RESUMED,
    MEAL_BREAK_STARTED,
    MEAL_BREAK_STOPPED,
    MEAL_BREAK_TICK,
    SETTINGS_CHANGED,
    TASK_SWITCHED,
    TIME_ADJUSTED,
    TIMER_AUTO_STOPPED,
    TIMER_RESUMED,
    TIMER_STARTED,
    TIMER_STOPPED,
    TIMER_TICK,
    EventBus,
)
from .persistence import DataService
from .tasks import activate_in
from .utils import MS_PER_HOUR, add_ms, format_hms, ms_between, new_id

logger = logging.getLogger(__name__)

AUTO_STOP_REASON = "Maximum duration exceeded"
MIN_TIMER_DURATION_MS = MS_PER_HOUR


class TimerChannel:
    """Single-slot register for the open record of one timer.

    Holds the id of the running TimeEntry or MealBreak and the handle of the
    pending tick. Idle when empty.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._record_id: Optional[str] = None
        self._tick: Optional[Cancellable] = None

    @property
    def record_id(self) -> Optional[str]:
        return self._record_id

    @property
    def is_running(self) -> bool:
        return self._record_id is not None

    def occupy(self, record_id: str) -> None:
        if self._record_id is not None:
            raise StateConflictError(f"The {self.name} timer is already running")
        self._record_id = record_id

    def release(self) -> Optional[str]:
        self.cancel_tick()
        record_id, self._record_id = self._record_id, None
        return record_id

    def set_tick(self, handle: Cancellable) -> None:
        self.cancel_tick()
        self._tick = handle

    def tick_fired(self) -> None:
        self._tick = None

    def cancel_tick(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None


@dataclasses.dataclass(frozen=True)
class SwitchResult:
    stopped: Optional[TimeEntry]
    started: TimeEntry


class TimerEngine:
    """Task timer and meal-break timer over the shared snapshot.

    Both channels follow Idle -> Running -> Idle. A running record is closed
    by a stop call or automatically once it exceeds its cap; the tick that
    notices the overrun closes the record exactly at the cap.
    """

    def __init__(
        self,
        data: DataService,
        bus: EventBus,
        clock: Clock,
        *,
        tick_seconds: float = app_settings.tick_interval_seconds,
    ) -> None:
        self._data = data
        self._bus = bus
        self._clock = clock
        self._tick_seconds = tick_seconds
        self._task_channel = TimerChannel("task")
        self._meal_channel = TimerChannel("meal break")
        self._max_duration_ms = data.current().settings.timer_max_duration
        self._unsubscribers: List[Callable[[], None]] = [
            bus.subscribe(SETTINGS_CHANGED, self._on_settings_changed),
            bus.subscribe(DATA_IMPORTED, self._resync),
            bus.subscribe(DATA_CLEARED, self._resync),
        ]

    @property
    def max_duration_ms(self) -> int:
        return self._max_duration_ms

    @property
    def is_running(self) -> bool:
        return self._task_channel.is_running

    @property
    def meal_break_running(self) -> bool:
        return self._meal_channel.is_running

    # -- task timer -----------------------------------------------------

    def start_timer(self, task_id: str) -> TimeEntry:
        if self._task_channel.is_running:
            raise TimerAlreadyActiveError()
        snapshot = self._data.current()
        task = snapshot.find_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        now = self._clock.now()
        entry = self._new_entry(task.id, now)
        snapshot, _ = activate_in(snapshot.with_entry(entry), task.id, now)
        self._data.commit(snapshot.with_work_day(entry.date))
        self._task_channel.occupy(entry.id)
        self._schedule_task_tick()
        logger.info("Timer started for task %s", task.id)
        self._bus.emit(TIMER_STARTED, {"entry": entry, "task": snapshot.find_task(task.id)})
        return entry

    def stop_timer(self) -> TimeEntry:
        entry = self._running_entry()
        if entry is None:
            raise NoActiveTimerError()
        snapshot, closed = self._close_entry(self._data.current(), entry, self._clock.now())
        self._data.commit(snapshot)
        self._task_channel.release()
        logger.info("Timer stopped for task %s after %d ms", closed.task_id, closed.duration)
        self._bus.emit(TIMER_STOPPED, {"entry": closed, "auto": False})
        return closed

    def switch_task(self, new_task_id: str) -> SwitchResult:
        """Close the running entry and open one for ``new_task_id`` at the same instant."""
        snapshot = self._data.current()
        task = snapshot.find_task(new_task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {new_task_id} not found")
        now = self._clock.now()
        stopped: Optional[TimeEntry] = None
        running = self._running_entry()
        if running is not None:
            snapshot, stopped = self._close_entry(snapshot, running, now)
        entry = self._new_entry(task.id, now)
        snapshot, _ = activate_in(snapshot.with_entry(entry), task.id, now)
        self._data.commit(snapshot.with_work_day(entry.date))
        self._task_channel.release()
        self._task_channel.occupy(entry.id)
        self._schedule_task_tick()
        if stopped is not None:
            self._bus.emit(TIMER_STOPPED, {"entry": stopped, "auto": False, "switched": True})
        self._bus.emit(TIMER_STARTED, {"entry": entry, "task": snapshot.find_task(task.id)})
        self._bus.emit(TASK_SWITCHED, {"stopped": stopped, "started": entry})
        logger.info("Switched timer to task %s", task.id)
        return SwitchResult(stopped=stopped, started=entry)

    def adjust_time(self, entry_id: str, new_duration: int, note: str) -> TimeEntry:
        snapshot = self._data.current()
        entry = snapshot.find_entry(entry_id)
        if entry is None:
            raise TimeEntryNotFoundError(f"Time entry {entry_id} not found")
        if entry.is_running:
            raise EntryStillRunningError()
        if isinstance(new_duration, bool) or not isinstance(new_duration, int):
            raise InvalidDurationError("Duration must be a whole number of milliseconds")
        if new_duration < 0 or new_duration > self._max_duration_ms:
            raise InvalidDurationError(
                f"Duration must be between 0 and {self._max_duration_ms} ms"
            )
        note = (note or "").strip()
        if not note:
            raise ValidationError("An adjustment note is required")

        now = self._clock.now()
        adjusted = entry.evolve(
            duration=new_duration,
            end_time=add_ms(entry.start_time, new_duration),
            is_manually_adjusted=True,
            adjustment_note=note,
            adjustment_timestamp=now,
        )
        snapshot = snapshot.with_entry(adjusted)
        task = snapshot.find_task(entry.task_id, include_deleted=True)
        if task is not None:
            total = max(0, task.total_time + new_duration - entry.duration)
            snapshot = snapshot.with_task(task.evolve(total_time=total, updated_at=now))
        self._data.commit(snapshot.with_work_day(entry.date))
        logger.info("Adjusted entry %s from %d to %d ms", entry_id, entry.duration, new_duration)
        self._bus.emit(
            TIME_ADJUSTED,
            {"entry": adjusted, "previous_duration": entry.duration, "note": note},
        )
        return adjusted

    def get_current_timer(self) -> Optional[Dict[str, Any]]:
        entry = self._running_entry()
        if entry is None:
            return None
        elapsed = max(0, ms_between(entry.start_time, self._clock.now()))
        return {
            "entry": entry,
            "task": self._data.current().find_task(entry.task_id, include_deleted=True),
            "elapsed": elapsed,
            "formatted": format_hms(elapsed),
            "max_duration": self._max_duration_ms,
            "remaining": max(0, self._max_duration_ms - elapsed),
        }

    def set_max_duration(self, milliseconds: int) -> None:
        if not MIN_TIMER_DURATION_MS <= milliseconds <= 24 * MS_PER_HOUR:
            raise InvalidDurationError("Maximum timer duration must be between 1 and 24 hours")
        self._max_duration_ms = milliseconds
        logger.info("Maximum timer duration set to %d ms", milliseconds)

    def _new_entry(self, task_id: str, now: dt.datetime) -> TimeEntry:
        return TimeEntry.create(
            id=new_id("entry"), task_id=task_id, start_time=now, date=now.date().isoformat()
        )

    def _running_entry(self) -> Optional[TimeEntry]:
        record_id = self._task_channel.record_id
        if record_id is None:
            return None
        entry = self._data.current().find_entry(record_id)
        if entry is None or not entry.is_running:
            self._task_channel.release()
            return None
        return entry

    def _close_entry(
        self, snapshot: Snapshot, entry: TimeEntry, end_time: dt.datetime
    ) -> Tuple[Snapshot, TimeEntry]:
        duration = min(max(0, ms_between(entry.start_time, end_time)), self._max_duration_ms)
        closed = entry.evolve(end_time=add_ms(entry.start_time, duration), duration=duration)
        snapshot = snapshot.with_entry(closed)
        task = snapshot.find_task(entry.task_id, include_deleted=True)
        if task is not None:
            snapshot = snapshot.with_task(
                task.evolve(
                    total_time=task.total_time + duration,
                    is_active=False,
                    updated_at=self._clock.now(),
                )
            )
        return snapshot.with_work_day(entry.date), closed

    def _schedule_task_tick(self) -> None:
        self._task_channel.set_tick(self._clock.call_later(self._tick_seconds, self._task_tick))

    def _task_tick(self) -> None:
        self._task_channel.tick_fired()
        entry = self._running_entry()
        if entry is None:
            return
        elapsed = ms_between(entry.start_time, self._clock.now())
        if elapsed > self._max_duration_ms:
            try:
                self._auto_stop_timer(entry)
            except TrackerError:
                logger.exception("Auto-stop of entry %s failed, retrying on next tick", entry.id)
                self._schedule_task_tick()
            return
        self._bus.emit(
            TIMER_TICK,
            {"entry_id": entry.id, "elapsed": elapsed, "formatted": format_hms(elapsed)},
        )
        self._schedule_task_tick()

    def _auto_stop_timer(self, entry: TimeEntry) -> TimeEntry:
        end_time = add_ms(entry.start_time, self._max_duration_ms)
        snapshot, closed = self._close_entry(self._data.current(), entry, end_time)
        self._data.commit(snapshot)
        self._task_channel.release()
        logger.warning("Timer for task %s auto-stopped after %d ms", closed.task_id, closed.duration)
        self._bus.emit(
            TIMER_AUTO_STOPPED,
            {"entry": closed, "reason": AUTO_STOP_REASON, "max_duration": self._max_duration_ms},
        )
        return closed

    # -- meal break -----------------------------------------------------

    def start_meal_break(self) -> MealBreak:
        if self._meal_channel.is_running or self._data.current().open_meal_break() is not None:
            raise MealBreakAlreadyActiveError()
        now = self._clock.now()
        meal = MealBreak.create(id=new_id("meal"), date=now.date().isoformat(), start_time=now)
        self._data.commit(self._data.current().with_meal_break(meal).with_work_day(meal.date))
        self._meal_channel.occupy(meal.id)
        self._schedule_meal_tick()
        logger.info("Meal break started")
        self._bus.emit(MEAL_BREAK_STARTED, {"meal_break": meal})
        return meal

    def stop_meal_break(self) -> MealBreak:
        meal = self._running_meal_break()
        if meal is None:
            raise NoActiveMealBreakError()
        closed = self._close_meal_break(meal, self._clock.now())
        logger.info("Meal break stopped after %d ms", closed.duration)
        self._bus.emit(MEAL_BREAK_STOPPED, {"meal_break": closed, "auto": False})
        return closed

    def get_current_meal_break(self) -> Optional[Dict[str, Any]]:
        meal = self._running_meal_break()
        if meal is None:
            return None
        elapsed = max(0, ms_between(meal.start_time, self._clock.now()))
        return {
            "meal_break": meal,
            "meal_type": meal.meal_type,
            "elapsed": elapsed,
            "formatted": format_hms(elapsed),
            "max_duration": MAX_MEAL_BREAK_MS,
            "remaining": max(0, MAX_MEAL_BREAK_MS - elapsed),
        }

    def _running_meal_break(self) -> Optional[MealBreak]:
        record_id = self._meal_channel.record_id
        if record_id is None:
            return None
        meal = self._data.current().find_meal_break(record_id)
        if meal is None or not meal.is_running:
            self._meal_channel.release()
            return None
        return meal

    def _close_meal_break(self, meal: MealBreak, end_time: dt.datetime) -> MealBreak:
        duration = min(max(0, ms_between(meal.start_time, end_time)), MAX_MEAL_BREAK_MS)
        closed = meal.evolve(end_time=add_ms(meal.start_time, duration), duration=duration)
        self._data.commit(self._data.current().with_meal_break(closed).with_work_day(meal.date))
        self._meal_channel.release()
        return closed

    def _schedule_meal_tick(self) -> None:
        self._meal_channel.set_tick(self._clock.call_later(self._tick_seconds, self._meal_tick))

    def _meal_tick(self) -> None:
        self._meal_channel.tick_fired()
        meal = self._running_meal_break()
        if meal is None:
            return
        elapsed = ms_between(meal.start_time, self._clock.now())
        if elapsed > MAX_MEAL_BREAK_MS:
            try:
                self._auto_stop_meal_break(meal)
            except TrackerError:
                logger.exception("Auto-stop of meal break %s failed, retrying on next tick", meal.id)
                self._schedule_meal_tick()
            return
        self._bus.emit(
            MEAL_BREAK_TICK,
            {"meal_break_id": meal.id, "elapsed": elapsed, "formatted": format_hms(elapsed)},
        )
        self._schedule_meal_tick()

    def _auto_stop_meal_break(self, meal: MealBreak) -> MealBreak:
        closed = self._close_meal_break(meal, add_ms(meal.start_time, MAX_MEAL_BREAK_MS))
        logger.warning("Meal break auto-stopped after %d ms", closed.duration)
        self._bus.emit(
            MEAL_BREAK_AUTO_STOPPED,
            {"meal_break": closed, "reason": AUTO_STOP_REASON, "max_duration": MAX_MEAL_BREAK_MS},
        )
        return closed

    # -- lifecycle ------------------------------------------------------

    def initialize(self) -> None:
        """Resume the records left open in the loaded snapshot."""
        snapshot = self._data.current()
        self._max_duration_ms = snapshot.settings.timer_max_duration
        now = self._clock.now()

        entry = snapshot.open_entry()
        if entry is not None and not self._task_channel.is_running:
            self._task_channel.occupy(entry.id)
            if ms_between(entry.start_time, now) > self._max_duration_ms:
                self._auto_stop_timer(entry)
            else:
                self._schedule_task_tick()
                logger.info("Resumed timer entry %s", entry.id)
                self._bus.emit(TIMER_RESUMED, {"entry": entry})

        meal = snapshot.open_meal_break()
        if meal is not None and not self._meal_channel.is_running:
            self._meal_channel.occupy(meal.id)
            if ms_between(meal.start_time, now) > MAX_MEAL_BREAK_MS:
                self._auto_stop_meal_break(meal)
            else:
                self._schedule_meal_tick()
                logger.info("Resumed meal break %s", meal.id)
                self._bus.emit(MEAL_BREAK_RESUMED, {"meal_break": meal})

    def destroy(self) -> None:
        self._task_channel.cancel_tick()
        self._meal_channel.cancel_tick()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def _on_settings_changed(self, event: Dict[str, Any]) -> None:
        updated = event.get("settings")
        if updated is not None and updated.timer_max_duration != self._max_duration_ms:
            self.set_max_duration(updated.timer_max_duration)

    def _resync(self, event: Dict[str, Any]) -> None:
        self._task_channel.release()
        self._meal_channel.release()
        self.initialize()
