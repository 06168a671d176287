from __future__ import annotations

import datetime as dt
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

from .clock import Cancellable, Clock
from .config import settings as app_settings
from .entities import CURRENT_VERSION, Snapshot, TrackerSettings
from .errors import SnapshotSyntaxError, StorageError, StorageQuotaExceededError, TrackerError, ValidationError
from .events import (
    AUTO_CLEANUP_COMPLETED,
    AUTO_CLEANUP_ERROR,
    AUTO_SAVE_COMPLETED,
    AUTO_SAVE_ERROR,
    DATA_CLEANUP_COMPLETED,
    DATA_CLEARED,
    DATA_EXPORTED,
    DATA_IMPORTED,
    DATA_LOADED,
    DATA_SAVED,
    STORAGE_ERROR,
    EventBus,
)
from .storage import BlobStore
from .utils import MS_PER_HOUR

logger = logging.getLogger(__name__)

COLLECTION_KEYS = ("tasks", "timeEntries", "mealBreaks", "workDays", "activityCounters")
CLEANED_COLLECTIONS = (
    ("time_entries", "timeEntries"),
    ("meal_breaks", "mealBreaks"),
    ("work_days", "workDays"),
    ("activity_counters", "activityCounters"),
)


def validate_shape(data: Any) -> None:
    """Reject payloads whose top level is not a snapshot."""
    if not isinstance(data, dict):
        raise ValidationError("Snapshot must be a JSON object")
    for key in COLLECTION_KEYS:
        if key in data and not isinstance(data[key], list):
            raise ValidationError(f"{key} must be an array")
    if "settings" in data and not isinstance(data["settings"], dict):
        raise ValidationError("settings must be an object")


def migrate_snapshot(data: Dict[str, Any]) -> Dict[str, Any]:
    """Bring a stored payload of another version up to ``CURRENT_VERSION``."""
    previous = data.get("version")
    migrated = dict(data)
    for key in COLLECTION_KEYS:
        if migrated.get(key) is None:
            migrated[key] = []
    stored_settings = migrated.get("settings")
    stored_settings = dict(stored_settings) if isinstance(stored_settings, dict) else {}
    daily_hours = stored_settings.pop("dailyHours", None)
    if daily_hours is not None and "requiredDailyPresence" not in stored_settings:
        stored_settings["requiredDailyPresence"] = int(float(daily_hours) * MS_PER_HOUR)
    migrated["settings"] = stored_settings
    migrated["version"] = CURRENT_VERSION
    logger.info("Migrated snapshot from version %s to %s", previous, CURRENT_VERSION)
    return migrated


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, json.JSONDecodeError) as exc:
        raise SnapshotSyntaxError(f"Stored data is not valid JSON: {exc}") from exc


@dataclass
class CleanupResult:
    cutoff_date: str
    deleted: Dict[str, int] = field(default_factory=dict)
    retained: Dict[str, int] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return sum(self.deleted.values())

    @property
    def total_retained(self) -> int:
        return sum(self.retained.values())

    @property
    def message(self) -> str:
        if not self.total_deleted:
            return "No old data to clean up"
        return f"Cleaned up {self.total_deleted} old records, retained {self.total_retained} records"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cutoff_date": self.cutoff_date,
            "deleted": dict(self.deleted),
            "retained": dict(self.retained),
            "total_deleted": self.total_deleted,
            "total_retained": self.total_retained,
            "message": self.message,
        }


class AutoSaveScheduler:
    """Debounce slot: at most one pending flush, fired once per interval."""

    def __init__(self, clock: Clock, flush: Callable[[], None]) -> None:
        self._clock = clock
        self._flush = flush
        self._interval_ms: Optional[int] = None
        self._handle: Optional[Cancellable] = None

    @property
    def enabled(self) -> bool:
        return self._interval_ms is not None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    @property
    def interval_ms(self) -> Optional[int]:
        return self._interval_ms

    def start(self, interval_ms: int) -> None:
        rescheduled = self.pending
        self.cancel()
        self._interval_ms = interval_ms
        if rescheduled:
            self.request()

    def request(self) -> bool:
        if not self.enabled:
            return False
        if self._handle is None:
            self._handle = self._clock.call_later(self._interval_ms / 1000, self._fire)
        return True

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def stop(self) -> None:
        self.cancel()
        self._interval_ms = None

    def _fire(self) -> None:
        self._handle = None
        self._flush()


class DataService:
    """Owner of the canonical snapshot and its storage blob.

    Other services read through :meth:`current` and hand every new snapshot
    to :meth:`commit`. With auto-save enabled, commits are staged in memory
    and written by a single debounced flush per interval.
    """

    def __init__(
        self,
        store: BlobStore,
        bus: EventBus,
        clock: Clock,
        *,
        storage_key: str = app_settings.storage_key,
        max_bytes: int = app_settings.max_snapshot_bytes,
    ) -> None:
        self._store = store
        self._bus = bus
        self._clock = clock
        self.storage_key = storage_key
        self.max_bytes = max_bytes
        self._snapshot = Snapshot()
        self._pending: Optional[str] = None
        self._scheduler = AutoSaveScheduler(clock, self._scheduled_flush)
        self._cleanup_handle: Optional[Cancellable] = None
        self._cleanup_interval_hours: Optional[float] = None

    def current(self) -> Snapshot:
        return self._snapshot

    @property
    def has_pending_changes(self) -> bool:
        return self._pending is not None

    @property
    def auto_save_enabled(self) -> bool:
        return self._scheduler.enabled

    def _serialize(self, snapshot: Snapshot) -> Tuple[Snapshot, str]:
        stamped = snapshot.model_copy(
            update={"version": CURRENT_VERSION, "last_updated": self._clock.now()}
        )
        payload = json.dumps(stamped.to_json())
        size = len(payload.encode("utf-8"))
        if size > self.max_bytes:
            raise StorageQuotaExceededError(
                f"Snapshot of {size} bytes exceeds the storage quota of {self.max_bytes} bytes"
            )
        return stamped, payload

    def _report_storage_error(self, operation: str, exc: TrackerError) -> None:
        logger.error("Storage %s failed: %s", operation, exc)
        self._bus.emit(
            STORAGE_ERROR,
            {"operation": operation, "error": str(exc), "error_type": type(exc).__name__},
        )

    def _write(self, payload: str) -> None:
        try:
            self._store.write(self.storage_key, payload)
        except StorageError as exc:
            self._report_storage_error("save", exc)
            raise
        self._bus.emit(DATA_SAVED, {"size": len(payload)})

    def save(self, snapshot: Optional[Any] = None) -> Snapshot:
        """Write ``snapshot`` (or the current one) to storage right away."""
        if snapshot is None:
            snapshot = self._snapshot
        elif not isinstance(snapshot, Snapshot):
            validate_shape(snapshot)
            snapshot = Snapshot.from_payload(snapshot)
        snapshot.check_invariants()
        try:
            stamped, payload = self._serialize(snapshot)
        except StorageQuotaExceededError as exc:
            self._report_storage_error("save", exc)
            raise
        self._write(payload)
        self._scheduler.cancel()
        self._snapshot = stamped
        self._pending = None
        return stamped

    def commit(self, snapshot: Snapshot) -> Snapshot:
        """Adopt ``snapshot`` as canonical and persist it now or at the next flush.

        Invariants and the quota are checked first; a failing commit leaves
        the canonical snapshot untouched.
        """
        snapshot.check_invariants()
        try:
            stamped, payload = self._serialize(snapshot)
        except StorageQuotaExceededError as exc:
            self._report_storage_error("save", exc)
            raise
        if self._scheduler.enabled:
            self._snapshot = stamped
            self._pending = payload
            self._scheduler.request()
        else:
            self._write(payload)
            self._snapshot = stamped
            self._pending = None
        return stamped

    def flush(self) -> bool:
        self._scheduler.cancel()
        if self._pending is None:
            return False
        self._write(self._pending)
        self._pending = None
        return True

    def _scheduled_flush(self) -> None:
        try:
            written = self.flush()
        except StorageError as exc:
            logger.warning("Auto-save failed, changes stay pending: %s", exc)
            self._bus.emit(AUTO_SAVE_ERROR, {"error": str(exc)})
            return
        if written:
            logger.debug("Auto-save completed")
            self._bus.emit(AUTO_SAVE_COMPLETED, {"timestamp": self._clock.now()})

    def schedule_auto_save(self, interval_ms: int) -> None:
        if interval_ms <= 0:
            raise ValidationError("Auto-save interval must be positive")
        self._scheduler.start(interval_ms)
        if self._pending is not None:
            self._scheduler.request()
        logger.info("Auto-save every %d ms", interval_ms)

    def stop_auto_save(self) -> None:
        self._scheduler.stop()
        self.flush()

    def load(self) -> Optional[Snapshot]:
        try:
            raw = self._store.read(self.storage_key)
        except StorageError as exc:
            self._report_storage_error("load", exc)
            raise
        if raw is None:
            return None
        try:
            data = _parse_json(raw)
            if not isinstance(data, dict):
                raise SnapshotSyntaxError("Stored data is not a JSON object")
        except SnapshotSyntaxError as exc:
            self._report_storage_error("load", exc)
            raise
        if data.get("version") != CURRENT_VERSION:
            data = migrate_snapshot(data)
        validate_shape(data)
        snapshot = Snapshot.from_payload(data)
        snapshot.check_duration_caps()
        self._snapshot = snapshot
        self._pending = None
        logger.info(
            "Loaded snapshot version %s with %d tasks and %d time entries",
            snapshot.version,
            len(snapshot.tasks),
            len(snapshot.time_entries),
        )
        self._bus.emit(DATA_LOADED, {"version": snapshot.version, "counts": snapshot.record_counts()})
        return snapshot

    def clear(self) -> Snapshot:
        try:
            self._store.delete(self.storage_key)
        except StorageError as exc:
            self._report_storage_error("clear", exc)
            raise
        self._scheduler.cancel()
        self._pending = None
        self._snapshot = Snapshot(settings=TrackerSettings(last_updated=self._clock.now()))
        logger.info("All data cleared")
        self._bus.emit(DATA_CLEARED, {})
        return self._snapshot

    def export_data(self) -> str:
        payload = self._snapshot.to_json()
        payload["exportedAt"] = self._clock.now().isoformat()
        text = json.dumps(payload, indent=2)
        self._bus.emit(DATA_EXPORTED, {"format": "snapshot", "size": len(text)})
        return text

    def import_data(self, text: str) -> Snapshot:
        """Replace all data with an exported snapshot and save it immediately."""
        data = _parse_json(text)
        validate_shape(data)
        data = dict(data)
        data.pop("exportedAt", None)
        if data.get("version") != CURRENT_VERSION:
            data = migrate_snapshot(data)
        snapshot = Snapshot.from_payload(data)
        snapshot.check_duration_caps()
        saved = self.save(snapshot)
        logger.info("Imported snapshot with %d tasks", len(saved.tasks))
        self._bus.emit(DATA_IMPORTED, {"counts": saved.record_counts()})
        return saved

    def cleanup_older_than(self, retention_weeks: int) -> CleanupResult:
        """Drop dated records older than the retention window.

        Running entries and meal breaks are kept regardless of their date, and
        so are the work days and counters of those dates.
        """
        if isinstance(retention_weeks, bool) or not isinstance(retention_weeks, int) or retention_weeks < 1:
            raise ValidationError("Retention must be a positive number of weeks")
        snapshot = self._snapshot
        cutoff = (self._clock.now() - dt.timedelta(days=retention_weeks * 7)).date().isoformat()
        protected = {entry.date for entry in snapshot.time_entries if entry.is_running}
        protected.update(meal.date for meal in snapshot.meal_breaks if meal.is_running)

        def keep(record: Any) -> bool:
            if getattr(record, "is_running", False):
                return True
            return record.date >= cutoff or record.date in protected

        result = CleanupResult(cutoff_date=cutoff)
        updates: Dict[str, Tuple[Any, ...]] = {}
        for attribute, label in CLEANED_COLLECTIONS:
            records = getattr(snapshot, attribute)
            kept = tuple(record for record in records if keep(record))
            result.deleted[label] = len(records) - len(kept)
            result.retained[label] = len(kept)
            updates[attribute] = kept

        if result.total_deleted:
            self.commit(snapshot.model_copy(update=updates))
            logger.info("Cleanup before %s: %s", cutoff, result.message)
        self._bus.emit(DATA_CLEANUP_COMPLETED, result.to_dict())
        return result

    def start_auto_cleanup(self, interval_hours: float = app_settings.cleanup_interval_hours) -> None:
        """Run the retention cleanup now and then once per ``interval_hours``."""
        self.stop_auto_cleanup()
        self._cleanup_interval_hours = interval_hours
        self._auto_cleanup()

    def stop_auto_cleanup(self) -> None:
        if self._cleanup_handle is not None:
            self._cleanup_handle.cancel()
            self._cleanup_handle = None
        self._cleanup_interval_hours = None

    def _auto_cleanup(self) -> None:
        self._cleanup_handle = None
        try:
            result = self.cleanup_older_than(self._snapshot.settings.data_retention_weeks)
        except TrackerError as exc:
            logger.exception("Automatic cleanup failed")
            self._bus.emit(AUTO_CLEANUP_ERROR, {"error": str(exc)})
        else:
            self._bus.emit(AUTO_CLEANUP_COMPLETED, result.to_dict())
        if self._cleanup_interval_hours is not None:
            self._cleanup_handle = self._clock.call_later(
                self._cleanup_interval_hours * 3600, self._auto_cleanup
            )

    def get_storage_stats(self) -> Dict[str, Any]:
        payload = json.dumps(self._snapshot.to_json())
        size = len(payload.encode("utf-8"))
        return {
            "key": self.storage_key,
            "size_bytes": size,
            "quota_bytes": self.max_bytes,
            "usage_percent": round(size / self.max_bytes * 100, 2) if self.max_bytes else 0.0,
            "pending_changes": self.has_pending_changes,
            "auto_save_interval": self._scheduler.interval_ms,
            "records": self._snapshot.record_counts(),
            "last_updated": self._snapshot.last_updated,
        }

    def get_data_age_stats(self, retention_weeks: Optional[int] = None) -> Dict[str, Any]:
        weeks = retention_weeks or self._snapshot.settings.data_retention_weeks
        cutoff = (self._clock.now() - dt.timedelta(days=weeks * 7)).date().isoformat()
        dates = sorted(entry.date for entry in self._snapshot.time_entries)
        return {
            "retention_weeks": weeks,
            "cutoff_date": cutoff,
            "oldest_date": dates[0] if dates else None,
            "newest_date": dates[-1] if dates else None,
            "total_entries": len(dates),
            "entries_past_retention": sum(1 for date in dates if date < cutoff),
        }
