from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

from .clock import Clock
from .entities import Snapshot, Task
from .errors import (
    ActiveTaskDeleteError,
    DuplicateTaskNameError,
    InvalidDateRangeError,
    TaskNotFoundError,
    ValidationError,
)
from .events import TASK_ACTIVATED, TASK_CREATED, TASK_DELETED, TASK_UPDATED, EventBus
from .persistence import DataService
from .utils import new_id, parse_iso_date

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {"name", "color", "is_active"}


def activate_in(snapshot: Snapshot, task_id: str, now: dt.datetime) -> Tuple[Snapshot, List[str]]:
    """Make ``task_id`` the only active task. Returns the ids that changed."""
    changed: List[str] = []
    for task in snapshot.live_tasks():
        if task.id == task_id and not task.is_active:
            snapshot = snapshot.with_task(task.evolve(is_active=True, activated_at=now, updated_at=now))
            changed.append(task.id)
        elif task.id != task_id and task.is_active:
            snapshot = snapshot.with_task(task.evolve(is_active=False, updated_at=now))
            changed.append(task.id)
    return snapshot, changed


def deactivate_in(snapshot: Snapshot, now: dt.datetime) -> Tuple[Snapshot, List[Task]]:
    deactivated: List[Task] = []
    for task in snapshot.tasks:
        if task.is_active:
            updated = task.evolve(is_active=False, updated_at=now)
            snapshot = snapshot.with_task(updated)
            deactivated.append(updated)
    return snapshot, deactivated


def parse_date_range(date_range: Optional[Tuple[Any, Any]]) -> Optional[Tuple[dt.date, dt.date]]:
    if not date_range:
        return None
    start_raw, end_raw = date_range
    start, end = parse_iso_date(start_raw), parse_iso_date(end_raw)
    if start > end:
        raise InvalidDateRangeError(f"Start date {start} is after end date {end}")
    return start, end


def _clean_name(name: Any) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Task name is required")
    return name.strip()


class TaskRegistry:
    def __init__(self, data: DataService, bus: EventBus, clock: Clock) -> None:
        self._data = data
        self._bus = bus
        self._clock = clock

    def list_tasks(self, include_deleted: bool = False) -> List[Task]:
        snapshot = self._data.current()
        return list(snapshot.tasks) if include_deleted else snapshot.live_tasks()

    def get_task(self, task_id: str) -> Task:
        task = self._data.current().find_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    def get_active_task(self) -> Optional[Task]:
        return self._data.current().active_task()

    def _ensure_unique(self, snapshot: Snapshot, name: str, exclude_id: Optional[str] = None) -> None:
        wanted = name.lower()
        for task in snapshot.live_tasks():
            if task.id != exclude_id and task.name.lower() == wanted:
                raise DuplicateTaskNameError(f"A task named '{task.name}' already exists")

    def create_task(self, name: str, color: str = "primary") -> Task:
        snapshot = self._data.current()
        name = _clean_name(name)
        self._ensure_unique(snapshot, name)
        now = self._clock.now()
        task = Task.create(id=new_id("task"), name=name, color=color, created_at=now, updated_at=now)
        self._data.commit(snapshot.with_task(task))
        logger.info("Created task %s (%s)", task.id, task.name)
        self._bus.emit(TASK_CREATED, {"task": task, "changes": ["name", "color"]})
        return task

    def update_task(self, task_id: str, updates: Dict[str, Any]) -> Task:
        unknown = set(updates) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        snapshot = self._data.current()
        task = self.get_task(task_id)
        changes: Dict[str, Any] = {}
        if "name" in updates:
            name = _clean_name(updates["name"])
            if name != task.name:
                self._ensure_unique(snapshot, name, exclude_id=task_id)
                changes["name"] = name
        if "color" in updates and updates["color"] != task.color:
            changes["color"] = updates["color"]

        activate = updates.get("is_active")
        now = self._clock.now()
        activated = False
        if changes:
            snapshot = snapshot.with_task(task.evolve(updated_at=now, **changes))
        if activate is True and not task.is_active:
            snapshot, _ = activate_in(snapshot, task_id, now)
            changes["is_active"] = True
            activated = True
        elif activate is False and task.is_active:
            current = snapshot.find_task(task_id)
            snapshot = snapshot.with_task(current.evolve(is_active=False, updated_at=now))
            changes["is_active"] = False
        if not changes:
            return task

        self._data.commit(snapshot)
        updated = snapshot.find_task(task_id)
        self._bus.emit(TASK_UPDATED, {"task": updated, "changes": sorted(changes)})
        if activated:
            self._bus.emit(TASK_ACTIVATED, {"task": updated, "changes": ["is_active", "activated_at"]})
        return updated

    def delete_task(self, task_id: str) -> Task:
        snapshot = self._data.current()
        task = self.get_task(task_id)
        if task.is_active:
            raise ActiveTaskDeleteError(f"Task '{task.name}' is active and cannot be deleted")
        deleted = task.evolve(is_deleted=True, updated_at=self._clock.now())
        self._data.commit(snapshot.with_task(deleted))
        logger.info("Deleted task %s", task_id)
        self._bus.emit(TASK_DELETED, {"task": deleted, "changes": ["is_deleted"]})
        return deleted

    def set_active_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task.is_active:
            return task
        snapshot, changed = activate_in(self._data.current(), task_id, self._clock.now())
        self._data.commit(snapshot)
        activated = snapshot.find_task(task_id)
        self._bus.emit(
            TASK_ACTIVATED,
            {
                "task": activated,
                "deactivated": [item for item in changed if item != task_id],
                "changes": ["is_active", "activated_at"],
            },
        )
        return activated

    def deactivate_all(self) -> List[Task]:
        snapshot, deactivated = deactivate_in(self._data.current(), self._clock.now())
        if not deactivated:
            return []
        self._data.commit(snapshot)
        for task in deactivated:
            self._bus.emit(TASK_UPDATED, {"task": task, "changes": ["is_active"]})
        return deactivated

    def get_stats(self, task_id: str, date_range: Optional[Tuple[Any, Any]] = None) -> Dict[str, Any]:
        """Time totals of one task over its closed entries, optionally within a date range."""
        snapshot = self._data.current()
        task = snapshot.find_task(task_id, include_deleted=True)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        bounds = parse_date_range(date_range)
        entries = [e for e in snapshot.time_entries if e.task_id == task_id and not e.is_running]
        if bounds:
            start, end = (day.isoformat() for day in bounds)
            entries = [e for e in entries if start <= e.date <= end]
        entries.sort(key=lambda e: e.start_time)
        per_day: Dict[str, int] = defaultdict(int)
        for entry in entries:
            per_day[entry.date] += entry.duration
        total = sum(entry.duration for entry in entries)
        return {
            "task_id": task.id,
            "task_name": task.name,
            "total_time": total,
            "session_count": len(entries),
            "average_session": total // len(entries) if entries else 0,
            "daily_breakdown": dict(sorted(per_day.items())),
            "first_session": entries[0].start_time if entries else None,
            "last_session": entries[-1].start_time if entries else None,
        }
