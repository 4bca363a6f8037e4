from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Callable
from urllib.parse import quote, urlparse

import requests

from tasksync.exceptions import (
    AuthorizationError,
    StructuralBatchError,
    TransientGatewayError,
    error_for_status,
)
from tasksync.models import SYNC_SIGNATURE, CalendarInfo, GoogleConfig, Task
from tasksync.operations import (
    ChangeSetOperation,
    CompleteOp,
    CreateOp,
    DeleteOp,
    GetOp,
    MoveOp,
    RestoreOp,
    UpdateOp,
)

logger = logging.getLogger(__name__)

CONTENT_ID_PATTERN = re.compile(r"Content-ID:\s*<?response-([^\r\n>]+)>?", re.IGNORECASE)
STATUS_PATTERN = re.compile(r"HTTP/1\.1\s+(\d+)")
BODY_PATTERN = re.compile(r"\r?\n\r?\n(\{.*\})", re.DOTALL)

RESTORE_DROPPED_FIELDS = (
    "id",
    "etag",
    "iCalUID",
    "htmlLink",
    "created",
    "updated",
    "sequence",
    "creator",
    "organizer",
    "attendees",
    "conferenceData",
    "hangoutLink",
)


@dataclass
class BatchItemResult:
    op_id: str
    status: int
    success: bool
    body: dict[str, Any] | None = None
    error: str = ""


@dataclass
class BatchResponse:
    results: list[BatchItemResult] = field(default_factory=list)
    batch_failed: bool = False
    batch_status: int | None = None
    batch_error: str = ""


def _quote(value: str) -> str:
    return quote(str(value), safe="")


def _format_datetime(value: datetime) -> str:
    return value.strftime("%Y-%m-%dT%H:%M:00")


def task_start(task: Task) -> datetime:
    day = date.fromisoformat(task.date)
    if task.is_all_day:
        return datetime.combine(day, time.min)
    return datetime.combine(day, time.fromisoformat(task.time or "00:00"))


def event_description(task: Task) -> str:
    return f"Source: {task.file_path}\nLine: {task.line_number}\n\n{SYNC_SIGNATURE}"


def _reminders_payload(reminder_minutes: tuple[int, ...] | list[int]) -> dict[str, Any]:
    return {
        "useDefault": False,
        "overrides": [{"method": "popup", "minutes": int(minutes)} for minutes in reminder_minutes],
    }


def _time_fields(task: Task, duration_minutes: int, time_zone: str) -> dict[str, Any]:
    start = task_start(task)
    if task.is_all_day:
        return {
            "start": {"date": task.date},
            "end": {"date": (start.date() + timedelta(days=1)).isoformat()},
        }
    end = start + timedelta(minutes=duration_minutes or 30)
    return {
        "start": {"dateTime": _format_datetime(start), "timeZone": time_zone},
        "end": {"dateTime": _format_datetime(end), "timeZone": time_zone},
    }


def build_event_body(
    task: Task,
    duration_minutes: int,
    reminder_minutes: tuple[int, ...] | list[int],
    time_zone: str,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "summary": task.title,
        "description": event_description(task),
        "reminders": _reminders_payload(reminder_minutes),
    }
    body.update(_time_fields(task, duration_minutes, time_zone))
    if task.recurrence_rule:
        body["recurrence"] = [f"RRULE:{task.recurrence_rule}"]
    return body


def build_update_body(
    task: Task,
    existing_event: dict[str, Any] | None,
    duration_minutes: int,
    reminder_minutes: tuple[int, ...] | list[int],
    time_zone: str,
) -> dict[str, Any]:
    """Overlay sync-owned fields on the fetched remote event.

    Anything the user added remotely (location, attendees, color, a rewritten
    description) is carried over untouched.
    """
    existing = dict(existing_event or {})
    existing_description = str(existing.get("description") or "")
    user_edited_description = bool(existing_description) and SYNC_SIGNATURE not in existing_description
    body = dict(existing)
    body["summary"] = task.title
    body["description"] = existing_description if user_edited_description else event_description(task)
    body["reminders"] = _reminders_payload(reminder_minutes)
    body.update(_time_fields(task, duration_minutes, time_zone))
    if task.recurrence_rule:
        body["recurrence"] = [f"RRULE:{task.recurrence_rule}"]
    else:
        body.pop("recurrence", None)
    return body


def build_complete_body(
    existing_event: dict[str, Any] | None, title: str, now: datetime | None = None
) -> dict[str, Any]:
    now = now or datetime.now()
    existing_title = str((existing_event or {}).get("summary") or title or "(Unknown task)")
    return {"summary": f"{existing_title} - Completed {now.strftime('%m-%d-%Y, %H:%M')}"}


def build_restore_body(
    event_snapshot: dict[str, Any] | None,
    task: Task,
    duration_minutes: int,
    reminder_minutes: tuple[int, ...] | list[int],
    time_zone: str,
) -> dict[str, Any]:
    """Body that re-creates a deleted event from its snapshot.

    Attendees and conference links are not restored. Without a snapshot the
    event is rebuilt from the task fields.
    """
    if not event_snapshot:
        return build_event_body(task, duration_minutes, reminder_minutes, time_zone)
    return {key: value for key, value in event_snapshot.items() if key not in RESTORE_DROPPED_FIELDS}


class GoogleCalendarGateway:
    def __init__(
        self,
        config: GoogleConfig,
        token_provider: Callable[[], str | None] | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self._api_path = urlparse(config.api_base_url).path.rstrip("/") or "/calendar/v3"

    def _token(self) -> str:
        token = self.token_provider() if self.token_provider else self.config.access_token
        if not token:
            raise AuthorizationError("Not authenticated", status=401)
        return token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token()}"}

    def _request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any] | None:
        url = f"{self.config.api_base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                headers=self._headers(),
                json=payload,
                params=params,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TransientGatewayError(f"{method} {path} failed: {exc}") from exc
        status = response.status_code
        if status >= 300:
            raise error_for_status(status, f"{method} {path} failed: {status}")
        if status == 204 or not response.content:
            return None
        return response.json()

    def _events_path(self, calendar_id: str, event_id: str = "") -> str:
        path = f"/calendars/{_quote(calendar_id)}/events"
        if event_id:
            path += f"/{_quote(event_id)}"
        return path

    def list_calendars(self) -> list[CalendarInfo]:
        payload = self._request("GET", "/users/me/calendarList") or {}
        calendars = [
            CalendarInfo(
                calendar_id=str(item.get("id", "")),
                display_name=str(item.get("summary", "")),
                is_primary=bool(item.get("primary", False)),
                color=str(item.get("backgroundColor", "") or ""),
            )
            for item in payload.get("items", [])
        ]
        calendars.sort(key=lambda cal: (not cal.is_primary, cal.display_name.casefold()))
        return calendars

    def create_event(
        self,
        task: Task,
        calendar_id: str,
        duration_minutes: int,
        reminder_minutes: tuple[int, ...] | list[int],
        time_zone: str,
    ) -> dict[str, Any]:
        body = build_event_body(task, duration_minutes, reminder_minutes, time_zone)
        return self._request("POST", self._events_path(calendar_id), payload=body) or {}

    def update_event(self, calendar_id: str, event_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        return self._request("PUT", self._events_path(calendar_id, event_id), payload=payload) or {}

    def delete_event(self, calendar_id: str, event_id: str) -> None:
        self._request("DELETE", self._events_path(calendar_id, event_id))

    def move_event(self, from_calendar_id: str, event_id: str, to_calendar_id: str) -> dict[str, Any]:
        return (
            self._request(
                "POST",
                f"{self._events_path(from_calendar_id, event_id)}/move",
                params={"destination": to_calendar_id},
            )
            or {}
        )

    def get_event(self, calendar_id: str, event_id: str) -> dict[str, Any]:
        return self._request("GET", self._events_path(calendar_id, event_id)) or {}

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def execute_batch(self, operations: list[ChangeSetOperation]) -> BatchResponse:
        if not operations:
            return BatchResponse()
        calendars = {op.calendar_id for op in operations}
        if len(calendars) > 1:
            raise StructuralBatchError(
                f"Batch targets {len(calendars)} calendars; a batch must target exactly one.",
                status=400,
            )

        boundary = f"batch_tasksync_{uuid.uuid4().hex}"
        body = self.build_batch_body(operations, boundary)
        try:
            response = self.session.post(
                self.config.batch_url,
                headers={
                    **self._headers(),
                    "Content-Type": f"multipart/mixed; boundary={boundary}",
                },
                data=body.encode("utf-8"),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            return BatchResponse(batch_failed=True, batch_error=f"{type(exc).__name__}: {exc}")

        if response.status_code != 200:
            return BatchResponse(
                batch_failed=True,
                batch_status=response.status_code,
                batch_error=f"Batch request failed: {response.status_code}",
            )
        return BatchResponse(results=parse_batch_response(response.text, operations))

    def build_batch_body(self, operations: list[ChangeSetOperation], boundary: str) -> str:
        parts = []
        for op in operations:
            parts.append(
                f"--{boundary}\r\n"
                "Content-Type: application/http\r\n"
                f"Content-ID: <{op.op_id}>\r\n\r\n"
                f"{self._operation_part(op)}"
            )
        return "\r\n".join(parts) + f"\r\n--{boundary}--"

    def _operation_part(self, op: ChangeSetOperation) -> str:
        base = self._api_path
        match op:
            case CreateOp():
                body = build_event_body(op.task, op.duration_minutes, op.reminder_minutes, op.time_zone)
                return _http_part("POST", f"{base}{self._events_path(op.calendar_id)}", body)
            case UpdateOp():
                body = build_update_body(
                    op.task, op.existing_event, op.duration_minutes, op.reminder_minutes, op.time_zone
                )
                return _http_part("PUT", f"{base}{self._events_path(op.calendar_id, op.event_id)}", body)
            case DeleteOp():
                return _http_part("DELETE", f"{base}{self._events_path(op.calendar_id, op.event_id)}")
            case MoveOp():
                path = (
                    f"{base}{self._events_path(op.calendar_id, op.event_id)}/move"
                    f"?destination={_quote(op.destination_calendar_id)}"
                )
                return _http_part("POST", path)
            case CompleteOp():
                body = build_complete_body(op.existing_event, op.title)
                return _http_part("PATCH", f"{base}{self._events_path(op.calendar_id, op.event_id)}", body)
            case RestoreOp():
                return _http_part("POST", f"{base}{self._events_path(op.calendar_id)}", op.event)
            case GetOp():
                return _http_part("GET", f"{base}{self._events_path(op.calendar_id, op.event_id)}")
        raise TypeError(f"Unknown operation: {op!r}")


def _http_part(method: str, path: str, body: dict[str, Any] | None = None) -> str:
    if body is None:
        return f"{method} {path} HTTP/1.1\r\n\r\n"
    body_json = json.dumps(body, ensure_ascii=False)
    return (
        f"{method} {path} HTTP/1.1\r\n"
        "Content-Type: application/json\r\n"
        f"Content-Length: {len(body_json.encode('utf-8'))}\r\n\r\n"
        f"{body_json}"
    )


def parse_batch_response(response_text: str, operations: list[ChangeSetOperation]) -> list[BatchItemResult]:
    boundary_match = re.search(r"--batch[^\r\n]+", response_text)
    if not boundary_match:
        return [
            BatchItemResult(op_id=op.op_id, status=500, success=False, error="Could not parse batch response")
            for op in operations
        ]
    boundary = boundary_match.group(0).rstrip("-")
    results: dict[str, BatchItemResult] = {}
    for part in response_text.split(boundary):
        if not part.strip() or part.strip() == "--":
            continue
        content_id = CONTENT_ID_PATTERN.search(part)
        if not content_id:
            continue
        status_match = STATUS_PATTERN.search(part)
        status = int(status_match.group(1)) if status_match else 500
        body: dict[str, Any] | None = None
        body_match = BODY_PATTERN.search(part)
        if body_match:
            try:
                body = json.loads(body_match.group(1))
            except json.JSONDecodeError:
                body = None
        success = 200 <= status < 300
        error = ""
        if not success:
            error_payload = (body or {}).get("error")
            if isinstance(error_payload, dict):
                error = str(error_payload.get("message") or json.dumps(error_payload))
            error = error or f"HTTP {status}"
        op_id = content_id.group(1).strip()
        results[op_id] = BatchItemResult(op_id=op_id, status=status, success=success, body=body, error=error)

    ordered: list[BatchItemResult] = []
    for op in operations:
        ordered.append(
            results.get(op.op_id)
            or BatchItemResult(op_id=op.op_id, status=500, success=False, error="No response received for operation")
        )
    return ordered
