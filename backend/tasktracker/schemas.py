from __future__ import annotations

import datetime as dt
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .entities import TASK_COLORS


class TaskCreateRequest(BaseModel):
    name: str
    color: str = "primary"

    @field_validator("color")
    @classmethod
    def _known_color(cls, value: str) -> str:
        if value not in TASK_COLORS:
            raise ValueError(f"color must be one of: {', '.join(TASK_COLORS)}")
        return value


class TaskUpdateRequest(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None


class TaskResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    name: str
    color: str
    total_time: int
    is_active: bool
    is_deleted: bool
    created_at: dt.datetime
    updated_at: Optional[dt.datetime]
    activated_at: Optional[dt.datetime]


class TimerStartRequest(BaseModel):
    task_id: str


class TimeEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    task_id: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime]
    duration: int
    date: str
    is_running: bool
    is_manually_adjusted: bool
    adjustment_note: str
    adjustment_timestamp: Optional[dt.datetime]


class TimeAdjustRequest(BaseModel):
    duration: int
    note: str


class SwitchResponse(BaseModel):
    stopped: Optional[TimeEntryResponse]
    started: TimeEntryResponse


class TimerStatusResponse(BaseModel):
    running: bool
    entry: Optional[TimeEntryResponse] = None
    task: Optional[TaskResponse] = None
    elapsed: int = 0
    formatted: str = "00:00:00"
    max_duration: int
    remaining: int = 0


class MealBreakResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    date: str
    start_time: dt.datetime
    end_time: Optional[dt.datetime]
    duration: int
    is_running: bool
    meal_type: str


class MealBreakStatusResponse(BaseModel):
    running: bool
    meal_break: Optional[MealBreakResponse] = None
    elapsed: int = 0
    formatted: str = "00:00:00"
    max_duration: int
    remaining: int = 0


class ActivityRequest(BaseModel):
    amount: int = Field(default=1, ge=1)
    date: Optional[str] = None


class ActivityCounterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    date: str
    activity_type: str
    count: int
    last_updated: Optional[dt.datetime]


class ActivitySummaryResponse(BaseModel):
    date: str
    counters: Dict[str, int]
    total: int
    unique_activities: int
    most_active: Optional[str]
    average_per_activity: float
    predefined: List[str]


class SettingsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    required_daily_presence: int
    timer_max_duration: int
    auto_save_interval: int
    data_retention_weeks: int
    theme: str
    time_format_24h: bool
    show_seconds_in_timer: bool
    default_task_color: str
    enable_notifications: bool
    notify_on_auto_stop: bool
    notify_on_long_break: bool
    enable_sounds: bool
    confirm_on_task_delete: bool
    start_day_automatically: bool
    last_updated: Optional[dt.datetime]


class SettingsUpdateRequest(BaseModel):
    required_daily_presence: Optional[int] = None
    timer_max_duration: Optional[int] = None
    auto_save_interval: Optional[int] = None
    data_retention_weeks: Optional[int] = None
    theme: Optional[str] = None
    time_format_24h: Optional[bool] = None
    show_seconds_in_timer: Optional[bool] = None
    default_task_color: Optional[str] = None
    enable_notifications: Optional[bool] = None
    notify_on_auto_stop: Optional[bool] = None
    notify_on_long_break: Optional[bool] = None
    enable_sounds: Optional[bool] = None
    confirm_on_task_delete: Optional[bool] = None
    start_day_automatically: Optional[bool] = None


class CleanupRequest(BaseModel):
    retention_weeks: Optional[int] = Field(default=None, ge=1, le=52)


class CleanupResponse(BaseModel):
    cutoff_date: str
    deleted: Dict[str, int]
    retained: Dict[str, int]
    total_deleted: int
    total_retained: int
    message: str


class ImportResponse(BaseModel):
    version: str
    last_updated: Optional[dt.datetime]
    records: Dict[str, int]


class SaveResponse(BaseModel):
    saved: bool
    last_updated: Optional[dt.datetime]


class WeekResponse(BaseModel):
    week_start: str
    week_end: str
    label: str

