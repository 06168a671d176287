from __future__ import annotations

import dataclasses
import datetime as dt
import logging
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .entities import MealBreak, Snapshot, TimeEntry, WorkDay
from .errors import InvalidDateError, UnsupportedFormatError
from .events import DATA_EXPORTED, REPORT_GENERATED, EventBus
from .exporters import EXPORT_FORMATS
from .persistence import DataService
from .tasks import parse_date_range
from .utils import WEEKDAY_NAMES, efficiency, format_hm, monday_of, parse_iso_date, week_dates

logger = logging.getLogger(__name__)

UNKNOWN_TASK_NAME = "Unknown Task"
UNKNOWN_TASK_COLOR = "neutral"


@dataclasses.dataclass(frozen=True)
class WeeklyExport:
    format: str
    filename: str
    media_type: str
    content: Union[str, bytes]


def _short_date(day: dt.date) -> str:
    return f"{day:%b} {day.day}"


class ReportAggregator:
    """Read-only summaries over the current snapshot.

    Only closed entries count towards totals; running entries appear in
    listings with ``is_running`` set.
    """

    def __init__(self, data: DataService, bus: Optional[EventBus] = None) -> None:
        self._data = data
        self._bus = bus

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self._bus is not None:
            self._bus.emit(event, payload)

    def _task_lookup(self, snapshot: Snapshot, task_id: str) -> Tuple[str, str]:
        task = snapshot.find_task(task_id, include_deleted=True)
        if task is None:
            return UNKNOWN_TASK_NAME, UNKNOWN_TASK_COLOR
        return task.name, task.color

    def _entry_view(self, snapshot: Snapshot, entry: TimeEntry) -> Dict[str, Any]:
        name, color = self._task_lookup(snapshot, entry.task_id)
        view = entry.model_dump()
        view.update(
            task_name=name,
            task_color=color,
            is_running=entry.is_running,
            formatted_duration=format_hm(entry.duration),
        )
        return view

    def _meal_view(self, meal: MealBreak) -> Dict[str, Any]:
        view = meal.model_dump()
        view.update(is_running=meal.is_running, meal_type=meal.meal_type, formatted_duration=format_hm(meal.duration))
        return view

    def _task_breakdown(self, snapshot: Snapshot, entries: Iterable[TimeEntry]) -> List[Dict[str, Any]]:
        totals: Dict[str, List[int]] = defaultdict(list)
        for entry in entries:
            if not entry.is_running:
                totals[entry.task_id].append(entry.duration)
        breakdown = []
        for task_id, durations in totals.items():
            name, color = self._task_lookup(snapshot, task_id)
            total = sum(durations)
            breakdown.append(
                {
                    "task_id": task_id,
                    "task_name": name,
                    "task_color": color,
                    "total_time": total,
                    "session_count": len(durations),
                    "average_session": total // len(durations),
                    "formatted_time": format_hm(total),
                }
            )
        breakdown.sort(key=lambda item: (-item["total_time"], item["task_name"]))
        return breakdown

    def _work_day(self, snapshot: Snapshot, date: str) -> WorkDay:
        return WorkDay.derive(
            date, snapshot.entries_on(date), snapshot.meal_breaks_on(date), snapshot.counters_on(date)
        )

    def get_daily_report(self, date: Union[str, dt.date]) -> Dict[str, Any]:
        day = parse_iso_date(date).isoformat()
        snapshot = self._data.current()
        entries = sorted(snapshot.entries_on(day), key=lambda e: e.start_time)
        meals = sorted(snapshot.meal_breaks_on(day), key=lambda m: m.start_time)
        work_day = self._work_day(snapshot, day)
        required = snapshot.settings.required_daily_presence
        report = {
            "date": day,
            "day_of_week": WEEKDAY_NAMES[dt.date.fromisoformat(day).weekday()],
            "arrival_time": work_day.arrival_time,
            "departure_time": work_day.departure_time,
            "total_presence_time": work_day.total_presence_time,
            "total_task_time": work_day.total_task_time,
            "meal_break_time": work_day.meal_break_time,
            "working_time": work_day.working_time,
            "efficiency": efficiency(work_day.total_task_time, work_day.working_time),
            "required_presence": required,
            "presence_met": work_day.total_presence_time >= required,
            "task_breakdown": self._task_breakdown(snapshot, entries),
            "activity_counters": dict(work_day.activity_counters),
            "time_entries": [self._entry_view(snapshot, entry) for entry in entries],
            "meal_breaks": [self._meal_view(meal) for meal in meals],
            "has_running_entry": any(entry.is_running for entry in entries),
            "formatted": {
                "presence": format_hm(work_day.total_presence_time),
                "task_time": format_hm(work_day.total_task_time),
                "meal_break": format_hm(work_day.meal_break_time),
                "working": format_hm(work_day.working_time),
            },
        }
        self._emit(REPORT_GENERATED, {"kind": "daily", "date": day})
        return report

    def get_weekly_report(self, monday_date: Union[str, dt.date]) -> Dict[str, Any]:
        monday = parse_iso_date(monday_date)
        if monday.weekday() != 0:
            raise InvalidDateError(f"Week start {monday.isoformat()} is not a Monday")
        snapshot = self._data.current()
        dates = [day.isoformat() for day in week_dates(monday)]

        daily_breakdown = []
        week_entries: List[TimeEntry] = []
        activity_totals: Dict[str, int] = defaultdict(int)
        for date in dates:
            entries = snapshot.entries_on(date)
            week_entries.extend(entries)
            work_day = self._work_day(snapshot, date)
            per_task: Dict[str, int] = defaultdict(int)
            for entry in entries:
                if not entry.is_running:
                    per_task[entry.task_id] += entry.duration
            for label, count in work_day.activity_counters.items():
                activity_totals[label] += count
            daily_breakdown.append(
                {
                    "date": date,
                    "day_of_week": WEEKDAY_NAMES[dt.date.fromisoformat(date).weekday()],
                    "arrival_time": work_day.arrival_time,
                    "departure_time": work_day.departure_time,
                    "total_presence_time": work_day.total_presence_time,
                    "total_task_time": work_day.total_task_time,
                    "meal_break_time": work_day.meal_break_time,
                    "working_time": work_day.working_time,
                    "efficiency": efficiency(work_day.total_task_time, work_day.working_time),
                    "session_count": sum(1 for entry in entries if not entry.is_running),
                    "tasks": dict(per_task),
                }
            )

        total_presence = sum(day["total_presence_time"] for day in daily_breakdown)
        total_task = sum(day["total_task_time"] for day in daily_breakdown)
        total_meal = sum(day["meal_break_time"] for day in daily_breakdown)
        total_working = sum(day["working_time"] for day in daily_breakdown)
        days_worked = sum(1 for day in daily_breakdown if day["total_presence_time"] > 0)

        task_summary = self._task_breakdown(snapshot, week_entries)
        for item in task_summary:
            item["daily"] = {day["date"]: day["tasks"].get(item["task_id"], 0) for day in daily_breakdown}

        report = {
            "week_start": dates[0],
            "week_end": dates[-1],
            "week_dates": dates,
            "daily_breakdown": daily_breakdown,
            "total_presence_time": total_presence,
            "total_task_time": total_task,
            "total_meal_break_time": total_meal,
            "total_working_time": total_working,
            "efficiency": efficiency(total_task, total_working),
            "task_summary": task_summary,
            "activity_totals": dict(sorted(activity_totals.items())),
            "days_worked": days_worked,
            "average_per_day": {
                "presence_time": total_presence // days_worked if days_worked else 0,
                "task_time": total_task // days_worked if days_worked else 0,
            },
            "formatted": {
                "presence": format_hm(total_presence),
                "task_time": format_hm(total_task),
                "working": format_hm(total_working),
            },
        }
        self._emit(REPORT_GENERATED, {"kind": "weekly", "date": dates[0]})
        return report

    def get_available_weeks(self) -> List[Dict[str, Any]]:
        """Weeks that contain time entries, most recent first."""
        snapshot = self._data.current()
        mondays = sorted(
            {monday_of(dt.date.fromisoformat(entry.date)) for entry in snapshot.time_entries},
            reverse=True,
        )
        weeks = []
        for monday in mondays:
            friday = monday + dt.timedelta(days=4)
            weeks.append(
                {
                    "week_start": monday.isoformat(),
                    "week_end": friday.isoformat(),
                    "label": f"Week of {_short_date(monday)} - {_short_date(friday)}",
                }
            )
        return weeks

    def get_audit_data(self, date_range: Optional[Tuple[Any, Any]] = None) -> Dict[str, Any]:
        bounds = parse_date_range(date_range)
        snapshot = self._data.current()

        def in_range(date: str) -> bool:
            if bounds is None:
                return True
            return bounds[0].isoformat() <= date <= bounds[1].isoformat()

        entries = sorted(
            (entry for entry in snapshot.time_entries if in_range(entry.date)),
            key=lambda e: e.start_time,
            reverse=True,
        )
        meals = sorted(
            (meal for meal in snapshot.meal_breaks if in_range(meal.date)),
            key=lambda m: m.start_time,
            reverse=True,
        )
        closed = [entry for entry in entries if not entry.is_running]
        dates = sorted({entry.date for entry in entries})
        summary = {
            "total_entries": len(entries),
            "total_time": sum(entry.duration for entry in closed),
            "adjusted_entries": sum(1 for entry in entries if entry.is_manually_adjusted),
            "running_entries": len(entries) - len(closed),
            "unique_tasks": len({entry.task_id for entry in entries}),
            "total_meal_breaks": len(meals),
            "first_date": dates[0] if dates else None,
            "last_date": dates[-1] if dates else None,
        }
        return {
            "date_range": (
                {"start": bounds[0].isoformat(), "end": bounds[1].isoformat()} if bounds else None
            ),
            "entries": [self._entry_view(snapshot, entry) for entry in entries],
            "meal_breaks": [self._meal_view(meal) for meal in meals],
            "summary": summary,
        }

    def calculate_presence_time(self, date: Union[str, dt.date]) -> Dict[str, Any]:
        day = parse_iso_date(date).isoformat()
        work_day = self._work_day(self._data.current(), day)
        idle = max(
            0, work_day.total_presence_time - work_day.meal_break_time - work_day.total_task_time
        )
        return {
            "date": day,
            "has_data": work_day.arrival_time is not None,
            "arrival_time": work_day.arrival_time,
            "departure_time": work_day.departure_time,
            "presence_time": work_day.total_presence_time,
            "work_time": work_day.total_task_time,
            "meal_break_time": work_day.meal_break_time,
            "working_time": work_day.working_time,
            "idle_time": idle,
            "formatted": {
                "presence": format_hm(work_day.total_presence_time),
                "work": format_hm(work_day.total_task_time),
                "meal_break": format_hm(work_day.meal_break_time),
                "idle": format_hm(idle),
            },
        }

    def export_weekly_data(self, monday_date: Union[str, dt.date], export_format: str = "json") -> WeeklyExport:
        monday = parse_iso_date(monday_date)
        key = export_format.lower() if isinstance(export_format, str) else export_format
        exporter = EXPORT_FORMATS.get(key)
        if exporter is None:
            supported = ", ".join(EXPORT_FORMATS)
            raise UnsupportedFormatError(f"Format '{export_format}' is not supported. Use: {supported}")
        report = self.get_weekly_report(monday)
        content = exporter.render(report)
        logger.info("Exported week %s as %s", report["week_start"], key)
        self._emit(DATA_EXPORTED, {"format": key, "size": len(content)})
        return WeeklyExport(
            format=key,
            filename=f"week-{report['week_start']}.{exporter.extension}",
            media_type=exporter.media_type,
            content=content,
        )
