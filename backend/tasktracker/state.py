from __future__ import annotations

import logging
from typing import Optional

from .activities import ActivityTracker
from .clock import Clock, SystemClock
from .config import Settings
from .entities import Snapshot, TrackerSettings
from .events import EventBus
from .persistence import DataService
from .preferences import SettingsService
from .reports import ReportAggregator
from .storage import BlobStore, build_blob_store
from .tasks import TaskRegistry
from .timer import TimerEngine

logger = logging.getLogger(__name__)


class RuntimeState:
    """All tracker services, wired around one snapshot owner."""

    def __init__(
        self,
        base_settings: Settings,
        *,
        store: Optional[BlobStore] = None,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ):
        self.settings = base_settings
        self.bus = bus or EventBus()
        self.clock = clock or SystemClock()
        self.store = store if store is not None else build_blob_store(base_settings)
        self.data = DataService(
            self.store,
            self.bus,
            self.clock,
            storage_key=base_settings.storage_key,
            max_bytes=base_settings.max_snapshot_bytes,
        )
        self.tasks = TaskRegistry(self.data, self.bus, self.clock)
        self.timer = TimerEngine(
            self.data, self.bus, self.clock, tick_seconds=base_settings.tick_interval_seconds
        )
        self.activities = ActivityTracker(self.data, self.bus, self.clock)
        self.preferences = SettingsService(self.data, self.bus, self.clock)
        self.reports = ReportAggregator(self.data, self.bus)
        self.started = False

    def start(self, *, auto_save: bool = True, auto_cleanup: bool = True) -> None:
        """Load or create the snapshot, resume open timers and start background jobs."""
        if self.started:
            return
        if self.data.load() is None:
            logger.info("No stored data found, creating defaults")
            self.data.save(Snapshot(settings=TrackerSettings(last_updated=self.clock.now())))
        self.timer.initialize()
        if auto_save:
            self.data.schedule_auto_save(self.data.current().settings.auto_save_interval)
        if auto_cleanup:
            self.data.start_auto_cleanup(self.settings.cleanup_interval_hours)
        self.started = True
        logger.info("%s started", self.settings.app_name)

    def shutdown(self) -> None:
        if not self.started:
            return
        self.timer.destroy()
        self.data.stop_auto_cleanup()
        self.data.stop_auto_save()
        self.started = False
        logger.info("%s stopped", self.settings.app_name)
