from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .clock import Clock
from .entities import MAX_ACTIVITY_COUNT, PREDEFINED_ACTIVITIES, ActivityCounter
from .errors import ValidationError
from .events import ACTIVITY_COUNTED, EventBus
from .persistence import DataService
from .utils import parse_iso_date

logger = logging.getLogger(__name__)


class ActivityTracker:
    """Per-day tallies of small interruptions such as coffee or phone calls."""

    def __init__(self, data: DataService, bus: EventBus, clock: Clock) -> None:
        self._data = data
        self._bus = bus
        self._clock = clock

    def _resolve_date(self, date: Optional[str]) -> str:
        if date is None:
            return self._clock.now().date().isoformat()
        return parse_iso_date(date).isoformat()

    def _current_count(self, date: str, activity_type: str) -> int:
        counter = self._data.current().find_counter(date, activity_type)
        return counter.count if counter else 0

    def set_count(self, activity_type: str, count: int, date: Optional[str] = None) -> ActivityCounter:
        day = self._resolve_date(date)
        if isinstance(count, bool) or not isinstance(count, int) or not 0 <= count <= MAX_ACTIVITY_COUNT:
            raise ValidationError(f"Count must be an integer between 0 and {MAX_ACTIVITY_COUNT}")
        previous = self._current_count(day, activity_type)
        counter = ActivityCounter.create(
            date=day,
            activity_type=activity_type,
            count=count,
            last_updated=self._clock.now(),
        )
        snapshot = self._data.current().with_counter(counter).with_work_day(day)
        self._data.commit(snapshot)
        logger.debug("Activity %s on %s: %d -> %d", counter.activity_type, day, previous, count)
        self._bus.emit(ACTIVITY_COUNTED, {"counter": counter, "previous": previous})
        return counter

    def increment(self, activity_type: str, amount: int = 1, date: Optional[str] = None) -> ActivityCounter:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError("Increment amount must be a positive integer")
        day = self._resolve_date(date)
        return self.set_count(activity_type, self._current_count(day, activity_type) + amount, day)

    def decrement(self, activity_type: str, amount: int = 1, date: Optional[str] = None) -> ActivityCounter:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError("Decrement amount must be a positive integer")
        day = self._resolve_date(date)
        return self.set_count(activity_type, max(0, self._current_count(day, activity_type) - amount), day)

    def reset(self, activity_type: str, date: Optional[str] = None) -> ActivityCounter:
        return self.set_count(activity_type, 0, date)

    def counters_for(self, date: Optional[str] = None) -> Dict[str, int]:
        day = self._resolve_date(date)
        counters = self._data.current().counters_on(day)
        return {counter.activity_type: counter.count for counter in sorted(counters, key=lambda c: c.activity_type)}

    def summary(self, date: Optional[str] = None) -> Dict[str, Any]:
        counts = self.counters_for(date)
        total = sum(counts.values())
        active = {label: count for label, count in counts.items() if count > 0}
        most_active = max(active, key=lambda label: active[label]) if active else None
        return {
            "date": self._resolve_date(date),
            "counters": counts,
            "total": total,
            "unique_activities": len(active),
            "most_active": most_active,
            "average_per_activity": round(total / len(active), 1) if active else 0.0,
            "predefined": list(PREDEFINED_ACTIVITIES),
        }
