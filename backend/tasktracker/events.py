from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]

TASK_CREATED = "taskCreated"
TASK_UPDATED = "taskUpdated"
TASK_DELETED = "taskDeleted"
TASK_ACTIVATED = "taskActivated"

TIMER_STARTED = "timerStarted"
TIMER_STOPPED = "timerStopped"
TIMER_TICK = "timerTick"
TIMER_AUTO_STOPPED = "timerAutoStopped"
TIMER_RESUMED = "timerResumed"
TASK_SWITCHED = "taskSwitched"
TIME_ADJUSTED = "timeAdjusted"

MEAL_BREAK_STARTED = "mealBreakStarted"
MEAL_BREAK_STOPPED = "mealBreakStopped"
MEAL_BREAK_TICK = "mealBreakTick"
MEAL_BREAK_AUTO_STOPPED = "mealBreakAutoStopped"
MEAL_BREAK_RESUMED = "mealBreakResumed"

ACTIVITY_COUNTED = "activityCounted"

DATA_SAVED = "dataSaved"
DATA_LOADED = "dataLoaded"
DATA_CLEARED = "dataCleared"
DATA_IMPORTED = "dataImported"
DATA_EXPORTED = "dataExported"
STORAGE_ERROR = "storageError"
AUTO_SAVE_COMPLETED = "autoSaveCompleted"
AUTO_SAVE_ERROR = "autoSaveError"
DATA_CLEANUP_COMPLETED = "dataCleanupCompleted"
AUTO_CLEANUP_COMPLETED = "autoCleanupCompleted"
AUTO_CLEANUP_ERROR = "autoCleanupError"

SETTINGS_CHANGED = "settingsChanged"
SETTINGS_RESET = "settingsReset"

REPORT_GENERATED = "reportGenerated"


class EventBus:
    """Synchronous publish/subscribe hub shared by all tracker services.

    Handlers run in subscription order on the emitting call. A handler that
    raises is logged and skipped so one faulty listener cannot break the
    operation that emitted the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        self._handlers[event].append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event, handler)

        return unsubscribe

    def unsubscribe(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        message = {"type": event, **(payload or {})}
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(message)
            except Exception:
                logger.exception("Handler %r failed for event %s", handler, event)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))
