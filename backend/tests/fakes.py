from __future__ import annotations

import datetime as dt
import heapq
import itertools
from typing import Any, Callable, Dict, List, Optional, Tuple

from tasktracker import events
from tasktracker.entities import MealBreak, Task, TimeEntry
from tasktracker.errors import StorageAccessError
from tasktracker.utils import add_ms

START = dt.datetime(2023, 9, 25, 9, 0, 0)


class FakeHandle:
    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeClock:
    """Manually advanced clock; due callbacks run in order during ``advance``."""

    def __init__(self, start: dt.datetime = START) -> None:
        self._now = start
        self._queue: List[Tuple[dt.datetime, int, FakeHandle]] = []
        self._seq = itertools.count()

    def now(self) -> dt.datetime:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> FakeHandle:
        handle = FakeHandle(callback)
        when = self._now + dt.timedelta(seconds=delay)
        heapq.heappush(self._queue, (when, next(self._seq), handle))
        return handle

    def advance(self, **delta: float) -> None:
        target = self._now + dt.timedelta(**delta)
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            handle.callback()
        self._now = target

    def set(self, moment: dt.datetime) -> None:
        self._now = moment

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)


class MemoryBlobStore:
    def __init__(self) -> None:
        self.blobs: Dict[str, str] = {}
        self.fail = False
        self.writes = 0

    def read(self, key: str) -> Optional[str]:
        if self.fail:
            raise StorageAccessError("storage offline")
        return self.blobs.get(key)

    def write(self, key: str, value: str) -> None:
        if self.fail:
            raise StorageAccessError("storage offline")
        self.writes += 1
        self.blobs[key] = value

    def delete(self, key: str) -> None:
        if self.fail:
            raise StorageAccessError("storage offline")
        self.blobs.pop(key, None)


ALL_EVENTS = [value for name, value in vars(events).items() if name.isupper() and isinstance(value, str)]


class EventRecorder:
    def __init__(self, bus: events.EventBus) -> None:
        self.events: List[Dict[str, Any]] = []
        for name in ALL_EVENTS:
            bus.subscribe(name, self.events.append)

    def names(self) -> List[str]:
        return [event["type"] for event in self.events]

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event["type"] == name]


def make_task(name: str, task_id: Optional[str] = None, **extra: Any) -> Task:
    return Task.create(
        id=task_id or f"task-{name.lower()}",
        name=name,
        created_at=START,
        updated_at=START,
        **extra,
    )


def make_entry(
    task_id: str,
    start: dt.datetime,
    duration_ms: Optional[int],
    entry_id: Optional[str] = None,
    **extra: Any,
) -> TimeEntry:
    """Closed entry of ``duration_ms``; running when ``duration_ms`` is None."""
    data: Dict[str, Any] = {
        "id": entry_id or f"entry-{task_id}-{start:%Y%m%d%H%M%S}",
        "task_id": task_id,
        "start_time": start,
        "date": start.date().isoformat(),
    }
    if duration_ms is not None:
        data.update(end_time=add_ms(start, duration_ms), duration=duration_ms)
    data.update(extra)
    return TimeEntry.create(**data)


def make_meal(start: dt.datetime, duration_ms: Optional[int], meal_id: Optional[str] = None) -> MealBreak:
    data: Dict[str, Any] = {
        "id": meal_id or f"meal-{start:%Y%m%d%H%M%S}",
        "date": start.date().isoformat(),
        "start_time": start,
    }
    if duration_ms is not None:
        data.update(end_time=add_ms(start, duration_ms), duration=duration_ms)
    return MealBreak.create(**data)
