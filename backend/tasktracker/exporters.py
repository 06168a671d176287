from __future__ import annotations

import csv
import io
import json
from typing import Any, Callable, Dict, List, NamedTuple, Tuple, Union

from openpyxl import Workbook
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas

from .utils import ms_to_hours

CSV_HEADER = ["Task", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Total"]


class ExportFormat(NamedTuple):
    render: Callable[[Dict[str, Any]], Union[str, bytes]]
    media_type: str
    extension: str


def _hours(milliseconds: int) -> str:
    return f"{ms_to_hours(milliseconds):.1f}"


def task_day_matrix(report: Dict[str, Any]) -> List[Tuple[str, List[int], int]]:
    """Rows of (task name, ms per weekday, total ms) from a weekly report."""
    rows = []
    for task in report["task_summary"]:
        per_day = [day["tasks"].get(task["task_id"], 0) for day in report["daily_breakdown"]]
        rows.append((task["task_name"], per_day, task["total_time"]))
    return rows


def render_json(report: Dict[str, Any]) -> str:
    payload = {
        "week_start": report["week_start"],
        "week_end": report["week_end"],
        "tasks": [
            {
                "task_id": task["task_id"],
                "task_name": task["task_name"],
                "total_time": task["total_time"],
                "total_hours": round(ms_to_hours(task["total_time"]), 2),
                "session_count": task["session_count"],
                "average_session": task["average_session"],
            }
            for task in report["task_summary"]
        ],
        "daily_totals": [
            {
                "date": day["date"],
                "day_of_week": day["day_of_week"],
                "total_presence_time": day["total_presence_time"],
                "total_task_time": day["total_task_time"],
                "meal_break_time": day["meal_break_time"],
                "working_time": day["working_time"],
                "efficiency": day["efficiency"],
            }
            for day in report["daily_breakdown"]
        ],
        "totals": {
            "total_task_time": report["total_task_time"],
            "total_presence_time": report["total_presence_time"],
            "total_working_time": report["total_working_time"],
            "total_meal_break_time": report["total_meal_break_time"],
        },
        "efficiency": report["efficiency"],
        "average_per_day": report["average_per_day"],
    }
    return json.dumps(payload, indent=2)


def render_csv(report: Dict[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for name, per_day, total in task_day_matrix(report):
        writer.writerow([name, *(_hours(value) for value in per_day), _hours(total)])
    return buffer.getvalue().rstrip("\n")


def render_text(report: Dict[str, Any]) -> str:
    lines = [f"Week of {report['week_start']} to {report['week_end']}", "=" * 50, ""]
    lines.append("Daily Summary:")
    for day in report["daily_breakdown"]:
        lines.append(
            f"{day['date']}: {_hours(day['total_presence_time'])}h presence, "
            f"{_hours(day['total_task_time'])}h tasks, {day['efficiency']}% efficiency"
        )
    lines.extend(["", "Total:"])
    lines.append(f"Total Presence: {_hours(report['total_presence_time'])} hours")
    lines.append(f"Total Task Time: {_hours(report['total_task_time'])} hours")
    lines.append(f"Overall Efficiency: {report['efficiency']}%")
    lines.extend(["", "Task Breakdown:"])
    for task in report["task_summary"]:
        lines.append(f"{task['task_name']}: {_hours(task['total_time'])}h ({task['session_count']} sessions)")
    return "\n".join(lines)


def render_xlsx(report: Dict[str, Any]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Week"
    ws.append(CSV_HEADER)
    for name, per_day, total in task_day_matrix(report):
        ws.append([name, *(round(ms_to_hours(value), 1) for value in per_day), round(ms_to_hours(total), 1)])

    days = wb.create_sheet("Days")
    days.append(["Date", "Day", "Presence (h)", "Tasks (h)", "Meal break (h)", "Efficiency (%)"])
    for day in report["daily_breakdown"]:
        days.append(
            [
                day["date"],
                day["day_of_week"],
                round(ms_to_hours(day["total_presence_time"]), 2),
                round(ms_to_hours(day["total_task_time"]), 2),
                round(ms_to_hours(day["meal_break_time"]), 2),
                day["efficiency"],
            ]
        )
    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def render_pdf(report: Dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    pagesize = landscape(A4)
    pdf = canvas.Canvas(buffer, pagesize=pagesize)
    width, height = pagesize
    title = f"Week of {report['week_start']} to {report['week_end']}"
    pdf.setTitle(title)
    y = height - 2 * cm
    pdf.setFont("Helvetica-Bold", 16)
    pdf.drawString(2 * cm, y, title)
    y -= 1.2 * cm

    name_width = 8 * cm
    column_width = (width - 4 * cm - name_width) / (len(CSV_HEADER) - 1)

    def draw_row(values: List[str], current_y: float) -> None:
        pdf.drawString(2 * cm, current_y, values[0][:45])
        for index, value in enumerate(values[1:], start=1):
            pdf.drawRightString(2 * cm + name_width + index * column_width - 0.2 * cm, current_y, value)

    pdf.setFont("Helvetica-Bold", 11)
    draw_row(CSV_HEADER, y)
    y -= 0.8 * cm
    pdf.setFont("Helvetica", 11)
    for name, per_day, total in task_day_matrix(report):
        draw_row([name, *(_hours(value) for value in per_day), _hours(total)], y)
        y -= 0.7 * cm
        if y < 2 * cm:
            pdf.showPage()
            y = height - 2 * cm
            pdf.setFont("Helvetica", 11)

    y -= 0.5 * cm
    pdf.setFont("Helvetica-Bold", 11)
    pdf.drawString(2 * cm, y, f"Total Presence: {_hours(report['total_presence_time'])} hours")
    pdf.drawString(10 * cm, y, f"Total Task Time: {_hours(report['total_task_time'])} hours")
    pdf.drawString(18 * cm, y, f"Overall Efficiency: {report['efficiency']}%")
    pdf.save()
    return buffer.getvalue()


EXPORT_FORMATS: Dict[str, ExportFormat] = {
    "json": ExportFormat(render_json, "application/json", "json"),
    "csv": ExportFormat(render_csv, "text/csv", "csv"),
    "text": ExportFormat(render_text, "text/plain", "txt"),
    "xlsx": ExportFormat(
        render_xlsx,
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "xlsx",
    ),
    "pdf": ExportFormat(render_pdf, "application/pdf", "pdf"),
}
