from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .entities import MAX_MEAL_BREAK_MS
from .errors import TrackerError
from .schemas import (
    ActivityCounterResponse,
    ActivityRequest,
    ActivitySummaryResponse,
    CleanupRequest,
    CleanupResponse,
    ImportResponse,
    MealBreakResponse,
    MealBreakStatusResponse,
    SaveResponse,
    SettingsResponse,
    SettingsUpdateRequest,
    SwitchResponse,
    TaskCreateRequest,
    TaskResponse,
    TaskUpdateRequest,
    TimeAdjustRequest,
    TimeEntryResponse,
    TimerStartRequest,
    TimerStatusResponse,
    WeekResponse,
)
from .state import RuntimeState

router = APIRouter()


def _state(request: Request) -> RuntimeState:
    return request.app.state.runtime_state


async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def create_app(state: Optional[RuntimeState] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime_state = state or RuntimeState(settings)
        runtime_state.start()
        app.state.runtime_state = runtime_state
        try:
            yield
        finally:
            runtime_state.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://127.0.0.1:5173", "http://localhost:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(TrackerError, tracker_error_handler)
    app.include_router(router)
    return app


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


# Tasks


@router.get("/tasks", response_model=List[TaskResponse])
async def list_tasks(request: Request, include_deleted: bool = False) -> List[TaskResponse]:
    tasks = _state(request).tasks.list_tasks(include_deleted=include_deleted)
    return [TaskResponse.model_validate(task) for task in tasks]


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(payload: TaskCreateRequest, request: Request) -> TaskResponse:
    task = _state(request).tasks.create_task(payload.name, payload.color)
    return TaskResponse.model_validate(task)


@router.post("/tasks/deactivate", response_model=List[TaskResponse])
async def deactivate_tasks(request: Request) -> List[TaskResponse]:
    tasks = _state(request).tasks.deactivate_all()
    return [TaskResponse.model_validate(task) for task in tasks]


@router.patch("/tasks/{task_id}", response_model=TaskResponse)
async def update_task(task_id: str, payload: TaskUpdateRequest, request: Request) -> TaskResponse:
    updates = payload.model_dump(exclude_unset=True)
    task = _state(request).tasks.update_task(task_id, updates)
    return TaskResponse.model_validate(task)


@router.delete("/tasks/{task_id}", response_model=TaskResponse)
async def delete_task(task_id: str, request: Request) -> TaskResponse:
    task = _state(request).tasks.delete_task(task_id)
    return TaskResponse.model_validate(task)


@router.post("/tasks/{task_id}/activate", response_model=TaskResponse)
async def activate_task(task_id: str, request: Request) -> TaskResponse:
    task = _state(request).tasks.set_active_task(task_id)
    return TaskResponse.model_validate(task)


@router.get("/tasks/{task_id}/stats")
async def task_stats(
    task_id: str, request: Request, start: Optional[str] = None, end: Optional[str] = None
) -> Dict[str, Any]:
    date_range = (start, end) if start or end else None
    return _state(request).tasks.get_stats(task_id, date_range)


# Timer


@router.get("/timer", response_model=TimerStatusResponse)
async def timer_status(request: Request) -> TimerStatusResponse:
    timer = _state(request).timer
    current = timer.get_current_timer()
    if current is None:
        return TimerStatusResponse(running=False, max_duration=timer.max_duration_ms)
    return TimerStatusResponse(
        running=True,
        entry=TimeEntryResponse.model_validate(current["entry"]),
        task=TaskResponse.model_validate(current["task"]) if current["task"] else None,
        elapsed=current["elapsed"],
        formatted=current["formatted"],
        max_duration=current["max_duration"],
        remaining=current["remaining"],
    )


@router.post("/timer/start", response_model=TimeEntryResponse, status_code=status.HTTP_201_CREATED)
async def timer_start(payload: TimerStartRequest, request: Request) -> TimeEntryResponse:
    entry = _state(request).timer.start_timer(payload.task_id)
    return TimeEntryResponse.model_validate(entry)


@router.post("/timer/stop", response_model=TimeEntryResponse)
async def timer_stop(request: Request) -> TimeEntryResponse:
    entry = _state(request).timer.stop_timer()
    return TimeEntryResponse.model_validate(entry)


@router.post("/timer/switch", response_model=SwitchResponse)
async def timer_switch(payload: TimerStartRequest, request: Request) -> SwitchResponse:
    result = _state(request).timer.switch_task(payload.task_id)
    return SwitchResponse(
        stopped=TimeEntryResponse.model_validate(result.stopped) if result.stopped else None,
        started=TimeEntryResponse.model_validate(result.started),
    )


@router.patch("/time-entries/{entry_id}", response_model=TimeEntryResponse)
async def adjust_time_entry(entry_id: str, payload: TimeAdjustRequest, request: Request) -> TimeEntryResponse:
    entry = _state(request).timer.adjust_time(entry_id, payload.duration, payload.note)
    return TimeEntryResponse.model_validate(entry)


# Meal break


@router.get("/meal-break", response_model=MealBreakStatusResponse)
async def meal_break_status(request: Request) -> MealBreakStatusResponse:
    current = _state(request).timer.get_current_meal_break()
    if current is None:
        return MealBreakStatusResponse(running=False, max_duration=MAX_MEAL_BREAK_MS)
    return MealBreakStatusResponse(
        running=True,
        meal_break=MealBreakResponse.model_validate(current["meal_break"]),
        elapsed=current["elapsed"],
        formatted=current["formatted"],
        max_duration=current["max_duration"],
        remaining=current["remaining"],
    )


@router.post("/meal-break/start", response_model=MealBreakResponse, status_code=status.HTTP_201_CREATED)
async def meal_break_start(request: Request) -> MealBreakResponse:
    meal = _state(request).timer.start_meal_break()
    return MealBreakResponse.model_validate(meal)


@router.post("/meal-break/stop", response_model=MealBreakResponse)
async def meal_break_stop(request: Request) -> MealBreakResponse:
    meal = _state(request).timer.stop_meal_break()
    return MealBreakResponse.model_validate(meal)


# Activities


@router.get("/activities", response_model=ActivitySummaryResponse)
async def activities_today(request: Request) -> ActivitySummaryResponse:
    return ActivitySummaryResponse(**_state(request).activities.summary())


@router.get("/activities/{date}", response_model=ActivitySummaryResponse)
async def activities_for_date(date: str, request: Request) -> ActivitySummaryResponse:
    return ActivitySummaryResponse(**_state(request).activities.summary(date))


@router.post("/activities/{activity_type}/increment", response_model=ActivityCounterResponse)
async def activity_increment(
    activity_type: str, request: Request, payload: Optional[ActivityRequest] = None
) -> ActivityCounterResponse:
    payload = payload or ActivityRequest()
    counter = _state(request).activities.increment(activity_type, payload.amount, payload.date)
    return ActivityCounterResponse.model_validate(counter)


@router.post("/activities/{activity_type}/decrement", response_model=ActivityCounterResponse)
async def activity_decrement(
    activity_type: str, request: Request, payload: Optional[ActivityRequest] = None
) -> ActivityCounterResponse:
    payload = payload or ActivityRequest()
    counter = _state(request).activities.decrement(activity_type, payload.amount, payload.date)
    return ActivityCounterResponse.model_validate(counter)


@router.post("/activities/{activity_type}/reset", response_model=ActivityCounterResponse)
async def activity_reset(
    activity_type: str, request: Request, payload: Optional[ActivityRequest] = None
) -> ActivityCounterResponse:
    payload = payload or ActivityRequest()
    counter = _state(request).activities.reset(activity_type, payload.date)
    return ActivityCounterResponse.model_validate(counter)


# Reports


@router.get("/reports/daily/{date}")
async def daily_report(date: str, request: Request) -> Dict[str, Any]:
    return _state(request).reports.get_daily_report(date)


@router.get("/reports/weekly/{monday}")
async def weekly_report(monday: str, request: Request) -> Dict[str, Any]:
    return _state(request).reports.get_weekly_report(monday)


@router.get("/reports/weekly/{monday}/export")
async def weekly_export(monday: str, request: Request, format: str = "json") -> Response:
    export = _state(request).reports.export_weekly_data(monday, format)
    return Response(
        content=export.content,
        media_type=export.media_type,
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@router.get("/reports/weeks", response_model=List[WeekResponse])
async def available_weeks(request: Request) -> List[WeekResponse]:
    return [WeekResponse(**week) for week in _state(request).reports.get_available_weeks()]


@router.get("/reports/audit")
async def audit_report(
    request: Request, start: Optional[str] = None, end: Optional[str] = None
) -> Dict[str, Any]:
    date_range = (start, end) if start or end else None
    return _state(request).reports.get_audit_data(date_range)


@router.get("/reports/presence/{date}")
async def presence_report(date: str, request: Request) -> Dict[str, Any]:
    return _state(request).reports.calculate_presence_time(date)


# Settings


@router.get("/settings", response_model=SettingsResponse)
async def get_settings(request: Request) -> SettingsResponse:
    return SettingsResponse.model_validate(_state(request).preferences.get_settings())


@router.put("/settings", response_model=SettingsResponse)
async def update_settings(payload: SettingsUpdateRequest, request: Request) -> SettingsResponse:
    updates = payload.model_dump(exclude_unset=True, exclude_none=True)
    updated = _state(request).preferences.update_settings(updates)
    return SettingsResponse.model_validate(updated)


@router.post("/settings/reset", response_model=SettingsResponse)
async def reset_settings(request: Request) -> SettingsResponse:
    return SettingsResponse.model_validate(_state(request).preferences.reset_to_defaults())


# Data


@router.get("/data/export")
async def export_data(request: Request) -> Response:
    state = _state(request)
    stamp = state.clock.now().strftime("%Y%m%d-%H%M%S")
    return Response(
        content=state.data.export_data(),
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="task-tracker-{stamp}.json"'},
    )


@router.post("/data/import", response_model=ImportResponse)
async def import_data(request: Request) -> ImportResponse:
    body = await request.body()
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be UTF-8 JSON") from exc
    snapshot = _state(request).data.import_data(text)
    return ImportResponse(
        version=snapshot.version,
        last_updated=snapshot.last_updated,
        records=snapshot.record_counts(),
    )


@router.post("/data/save", response_model=SaveResponse)
async def save_data(request: Request) -> SaveResponse:
    snapshot = _state(request).data.save()
    return SaveResponse(saved=True, last_updated=snapshot.last_updated)


@router.delete("/data", status_code=status.HTTP_204_NO_CONTENT)
async def clear_data(request: Request) -> Response:
    _state(request).data.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/data/cleanup", response_model=CleanupResponse)
async def cleanup_data(request: Request, payload: Optional[CleanupRequest] = None) -> CleanupResponse:
    state = _state(request)
    weeks = payload.retention_weeks if payload and payload.retention_weeks else None
    result = state.data.cleanup_older_than(weeks or state.data.current().settings.data_retention_weeks)
    return CleanupResponse(**result.to_dict())


@router.get("/data/stats")
async def data_stats(request: Request) -> Dict[str, Any]:
    data = _state(request).data
    return {"storage": data.get_storage_stats(), "age": data.get_data_age_stats()}


app = create_app()
