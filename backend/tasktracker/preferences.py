from __future__ import annotations

import logging
from typing import Any, Dict

from .clock import Clock
from .entities import TrackerSettings
from .errors import ValidationError
from .events import SETTINGS_CHANGED, SETTINGS_RESET, EventBus
from .persistence import DataService

logger = logging.getLogger(__name__)


class SettingsService:
    """Validated access to the user settings stored in the snapshot."""

    def __init__(self, data: DataService, bus: EventBus, clock: Clock) -> None:
        self._data = data
        self._bus = bus
        self._clock = clock

    def get_settings(self) -> TrackerSettings:
        return self._data.current().settings

    def get_setting(self, key: str) -> Any:
        if key not in TrackerSettings.model_fields:
            raise ValidationError(f"Unknown setting: {key}")
        return getattr(self.get_settings(), key)

    def update_settings(self, updates: Dict[str, Any]) -> TrackerSettings:
        allowed = set(TrackerSettings.field_names())
        unknown = set(updates) - allowed
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")
        current = self.get_settings()
        changes = {key: value for key, value in updates.items() if getattr(current, key) != value}
        if not changes:
            return current
        updated = current.evolve(last_updated=self._clock.now(), **changes)
        self._apply(updated)
        logger.info("Settings changed: %s", ", ".join(sorted(changes)))
        self._bus.emit(SETTINGS_CHANGED, {"settings": updated, "changes": sorted(changes)})
        return updated

    def reset_to_defaults(self) -> TrackerSettings:
        current = self.get_settings()
        defaults = TrackerSettings(last_updated=self._clock.now())
        changes = [key for key in TrackerSettings.field_names() if getattr(current, key) != getattr(defaults, key)]
        self._apply(defaults)
        logger.info("Settings reset to defaults")
        self._bus.emit(SETTINGS_RESET, {"settings": defaults})
        self._bus.emit(SETTINGS_CHANGED, {"settings": defaults, "changes": changes})
        return defaults

    def _apply(self, updated: TrackerSettings) -> None:
        previous_interval = self.get_settings().auto_save_interval
        snapshot = self._data.current().with_settings(updated)
        snapshot.check_duration_caps()
        self._data.commit(snapshot)
        if self._data.auto_save_enabled and updated.auto_save_interval != previous_interval:
            self._data.schedule_auto_save(updated.auto_save_interval)
