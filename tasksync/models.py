from __future__ import annotations

import hashlib
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


COMPLETION_BEHAVIORS = ("delete", "mark_complete")
ROUTING_BEHAVIORS = ("preserve", "keep_both", "fresh_start")
DRIFT_POLICIES = ("recreate", "sever", "ask")
DEFAULT_REMINDER_MINUTES = [30, 10]
SYNC_SIGNATURE = "Synced by tasksync"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _hash_text(value: str) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()  # nosec B324


def normalize_tag(tag: str) -> str:
    return str(tag or "").strip().lstrip("#").casefold()


def _choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


def _int_list(values: Any, default: list[int]) -> list[int]:
    if not isinstance(values, (list, tuple)):
        return list(default)
    cleaned: list[int] = []
    for item in values:
        try:
            number = int(item)
        except (TypeError, ValueError):
            continue
        if number >= 0:
            cleaned.append(number)
    return cleaned or list(default)


# --------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------


@dataclass
class GoogleConfig:
    api_base_url: str = "https://www.googleapis.com/calendar/v3"
    batch_url: str = "https://www.googleapis.com/batch/calendar/v3"
    access_token: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            api_base_url=str(data.get("api_base_url", cls.api_base_url)).strip().rstrip("/")
            or cls.api_base_url,
            batch_url=str(data.get("batch_url", cls.batch_url)).strip() or cls.batch_url,
            access_token=str(data.get("access_token", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 600
    time_zone: str = "UTC"
    default_duration_minutes: int = 30
    default_reminder_minutes: list[int] = field(default_factory=lambda: list(DEFAULT_REMINDER_MINUTES))
    vault_path: str = ""
    excluded_paths: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=max(30, int(data.get("interval_seconds", 600))),
            time_zone=str(data.get("time_zone", "UTC")).strip() or "UTC",
            default_duration_minutes=max(1, int(data.get("default_duration_minutes", 30))),
            default_reminder_minutes=_int_list(
                data.get("default_reminder_minutes"), DEFAULT_REMINDER_MINUTES
            ),
            vault_path=str(data.get("vault_path", "")).strip(),
            excluded_paths=[str(x).strip() for x in data.get("excluded_paths", []) if str(x).strip()],
        )


@dataclass
class PolicyConfig:
    default_calendar_id: str = ""
    tag_calendar_map: dict[str, str] = field(default_factory=dict)
    completion_behavior: str = "delete"
    routing_behavior: str = "preserve"
    safety_net: bool = True
    strict_time_check: bool = False
    drift_policy: str = "ask"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PolicyConfig":
        data = data or {}
        raw_map = data.get("tag_calendar_map", {})
        tag_map: dict[str, str] = {}
        if isinstance(raw_map, dict):
            for key, value in raw_map.items():
                tag = normalize_tag(key)
                calendar_id = str(value or "").strip()
                if tag and calendar_id:
                    tag_map[tag] = calendar_id
        return cls(
            default_calendar_id=str(data.get("default_calendar_id", "")).strip(),
            tag_calendar_map=tag_map,
            completion_behavior=_choice(data.get("completion_behavior"), COMPLETION_BEHAVIORS, "delete"),
            routing_behavior=_choice(data.get("routing_behavior"), ROUTING_BEHAVIORS, "preserve"),
            safety_net=bool(data.get("safety_net", True)),
            strict_time_check=bool(data.get("strict_time_check", False)),
            drift_policy=_choice(data.get("drift_policy"), DRIFT_POLICIES, "ask"),
        )


@dataclass
class RetentionConfig:
    recently_deleted_days: int = 7
    sync_log_limit: int = 500

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetentionConfig":
        data = data or {}
        return cls(
            recently_deleted_days=max(1, int(data.get("recently_deleted_days", 7))),
            sync_log_limit=max(10, int(data.get("sync_log_limit", 500))),
        )


@dataclass(frozen=True)
class SyncPolicy:
    """Immutable snapshot of every knob the diff and change-set steps read."""

    default_calendar_id: str
    tag_calendar_map: tuple[tuple[str, str], ...] = ()
    completion_behavior: str = "delete"
    routing_behavior: str = "preserve"
    safety_net: bool = True
    strict_time_check: bool = False
    drift_policy: str = "ask"
    time_zone: str = "UTC"
    default_duration_minutes: int = 30
    default_reminder_minutes: tuple[int, ...] = tuple(DEFAULT_REMINDER_MINUTES)

    def route(self, task: "Task") -> tuple[str, str | None]:
        mapping = dict(self.tag_calendar_map)
        destinations = sorted({mapping[tag] for tag in task.normalized_tags() if tag in mapping})
        if not destinations:
            return self.default_calendar_id, None
        if len(destinations) == 1:
            return destinations[0], None
        warning = (
            f'Task "{task.title}" ({task.file_path}:{task.line_number}) has tags routed to '
            f"{len(destinations)} calendars ({', '.join(destinations)}); using the default calendar."
        )
        return self.default_calendar_id, warning


@dataclass
class AppConfig:
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            google=GoogleConfig.from_dict(data.get("google")),
            sync=SyncConfig.from_dict(data.get("sync")),
            policy=PolicyConfig.from_dict(data.get("policy")),
            retention=RetentionConfig.from_dict(data.get("retention")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def policy_snapshot(self) -> SyncPolicy:
        return SyncPolicy(
            default_calendar_id=self.policy.default_calendar_id,
            tag_calendar_map=tuple(sorted(self.policy.tag_calendar_map.items())),
            completion_behavior=self.policy.completion_behavior,
            routing_behavior=self.policy.routing_behavior,
            safety_net=self.policy.safety_net,
            strict_time_check=self.policy.strict_time_check,
            drift_policy=self.policy.drift_policy,
            time_zone=self.sync.time_zone,
            default_duration_minutes=self.sync.default_duration_minutes,
            default_reminder_minutes=tuple(self.sync.default_reminder_minutes),
        )


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class CalendarInfo:
    calendar_id: str
    display_name: str
    is_primary: bool = False
    color: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# --------------------------------------------------------------------------
# Tasks and sync records
# --------------------------------------------------------------------------


@dataclass
class Task:
    title: str
    date: str
    time: str | None = None
    file_path: str = ""
    line_number: int = 0
    tags: set[str] = field(default_factory=set)
    completed: bool = False
    recurrence_rule: str | None = None
    reminder_minutes: list[int] | None = None
    duration_minutes: int | None = None
    raw_text: str = ""

    @property
    def is_all_day(self) -> bool:
        return not self.time

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule)

    def normalized_tags(self) -> set[str]:
        return {normalize_tag(tag) for tag in self.tags if normalize_tag(tag)}

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["tags"] = sorted(self.tags)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        reminders = data.get("reminder_minutes")
        duration = data.get("duration_minutes")
        return cls(
            title=str(data.get("title", "")),
            date=str(data.get("date", "")),
            time=data.get("time") or None,
            file_path=str(data.get("file_path", "")),
            line_number=int(data.get("line_number", 0) or 0),
            tags=set(data.get("tags") or []),
            completed=bool(data.get("completed", False)),
            recurrence_rule=data.get("recurrence_rule") or None,
            reminder_minutes=[int(x) for x in reminders] if reminders is not None else None,
            duration_minutes=int(duration) if duration is not None else None,
            raw_text=str(data.get("raw_text", "")),
        )


def task_key(task: Task) -> str:
    return _hash_text(f"{task.file_path}|{task.title}|{task.date}")[:16]


def content_hash(task: Task) -> str:
    reminders = "" if task.reminder_minutes is None else ",".join(str(x) for x in task.reminder_minutes)
    duration = "" if task.duration_minutes is None else str(task.duration_minutes)
    return _hash_text(
        "|".join(
            [
                task.title,
                task.date,
                task.time or "",
                ",".join(sorted(task.normalized_tags())),
                duration,
                reminders,
            ]
        )
    )


def reconstruct_task_line(task_or_record: Any) -> str:
    title = getattr(task_or_record, "title", "")
    date = getattr(task_or_record, "date", "")
    time = getattr(task_or_record, "time", None)
    line = f"- [ ] {title} 📅 {date}"
    if time:
        line += f" ⏰ {time}"
    return line


@dataclass
class SyncRecord:
    task_id: str
    event_id: str
    calendar_id: str
    content_hash: str
    file_path: str = ""
    line_number: int = 0
    title: str = ""
    date: str = ""
    time: str | None = None
    recurrence_rule: str | None = None
    severed: bool = False
    last_synced_at: str = ""

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence_rule)

    @classmethod
    def from_task(cls, task_id: str, task: Task, event_id: str, calendar_id: str) -> "SyncRecord":
        return cls(
            task_id=task_id,
            event_id=event_id,
            calendar_id=calendar_id,
            content_hash=content_hash(task),
            file_path=task.file_path,
            line_number=task.line_number,
            title=task.title,
            date=task.date,
            time=task.time,
            recurrence_rule=task.recurrence_rule,
            last_synced_at=serialize_datetime(utc_now()) or "",
        )

    def relocate(self, task: Task) -> None:
        self.file_path = task.file_path
        self.line_number = task.line_number
        self.title = task.title
        self.date = task.date
        self.time = task.time

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncRecord":
        return cls(
            task_id=str(data.get("task_id", "")),
            event_id=str(data.get("event_id", "")),
            calendar_id=str(data.get("calendar_id", "")),
            content_hash=str(data.get("content_hash", "")),
            file_path=str(data.get("file_path", "")),
            line_number=int(data.get("line_number", 0) or 0),
            title=str(data.get("title", "")),
            date=str(data.get("date", "")),
            time=data.get("time") or None,
            recurrence_rule=data.get("recurrence_rule") or None,
            severed=bool(data.get("severed", False)),
            last_synced_at=str(data.get("last_synced_at", "")),
        )


# --------------------------------------------------------------------------
# Pending decision and retry records
# --------------------------------------------------------------------------


@dataclass
class PendingOperation:
    op_id: str
    kind: str
    task_id: str
    calendar_id: str
    event_id: str = ""
    title: str = ""
    task: dict[str, Any] | None = None
    replaces_task_id: str = ""
    retry_count: int = 0
    last_error: str = ""
    queued_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingOperation":
        return cls(
            op_id=str(data.get("op_id", "")),
            kind=str(data.get("kind", "")),
            task_id=str(data.get("task_id", "")),
            calendar_id=str(data.get("calendar_id", "")),
            event_id=str(data.get("event_id", "") or ""),
            title=str(data.get("title", "") or ""),
            task=data.get("task") if isinstance(data.get("task"), dict) else None,
            replaces_task_id=str(data.get("replaces_task_id", "") or ""),
            retry_count=int(data.get("retry_count", 0) or 0),
            last_error=str(data.get("last_error", "") or ""),
            queued_at=str(data.get("queued_at", "") or ""),
        )


@dataclass
class EventRisk:
    attendee_count: int = 0
    has_attachments: bool = False
    has_conference_link: bool = False
    has_custom_description: bool = False

    @property
    def is_high_risk(self) -> bool:
        return bool(
            self.attendee_count or self.has_attachments or self.has_conference_link or self.has_custom_description
        )

    @classmethod
    def from_event(cls, event: dict[str, Any]) -> "EventRisk":
        description = str(event.get("description") or "")
        return cls(
            attendee_count=len(event.get("attendees") or []),
            has_attachments=bool(event.get("attachments")),
            has_conference_link=bool(event.get("conferenceData") or event.get("hangoutLink")),
            has_custom_description=bool(description.strip()) and SYNC_SIGNATURE not in description,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PendingDeletion:
    deletion_id: str
    task_id: str
    event_id: str
    calendar_id: str
    title: str
    date: str
    reason: str
    time: str | None = None
    file_path: str = ""
    reason_detail: str = ""
    original_task_line: str = ""
    linked_create: dict[str, Any] | None = None
    event_snapshot: dict[str, Any] | None = None
    risk: EventRisk | None = None
    status: str = "queued"
    queued_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["risk"] = self.risk.to_dict() if self.risk else None
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingDeletion":
        risk = data.get("risk")
        return cls(
            deletion_id=str(data.get("deletion_id", "")),
            task_id=str(data.get("task_id", "")),
            event_id=str(data.get("event_id", "")),
            calendar_id=str(data.get("calendar_id", "")),
            title=str(data.get("title", "")),
            date=str(data.get("date", "")),
            reason=str(data.get("reason", "orphaned")),
            time=data.get("time") or None,
            file_path=str(data.get("file_path", "") or ""),
            reason_detail=str(data.get("reason_detail", "") or ""),
            original_task_line=str(data.get("original_task_line", "") or ""),
            linked_create=data.get("linked_create") if isinstance(data.get("linked_create"), dict) else None,
            event_snapshot=data.get("event_snapshot") if isinstance(data.get("event_snapshot"), dict) else None,
            risk=EventRisk(**risk) if isinstance(risk, dict) else None,
            status=str(data.get("status", "queued") or "queued"),
            queued_at=str(data.get("queued_at", "") or ""),
        )


@dataclass
class DeletedSnapshot:
    snapshot_id: str
    task_id: str
    calendar_id: str
    event_id: str
    title: str
    date: str
    time: str | None = None
    event_snapshot: dict[str, Any] | None = None
    deleted_at: str = ""
    status: str = "deleted"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeletedSnapshot":
        return cls(
            snapshot_id=str(data.get("snapshot_id", "")),
            task_id=str(data.get("task_id", "")),
            calendar_id=str(data.get("calendar_id", "")),
            event_id=str(data.get("event_id", "")),
            title=str(data.get("title", "")),
            date=str(data.get("date", "")),
            time=data.get("time") or None,
            event_snapshot=data.get("event_snapshot") if isinstance(data.get("event_snapshot"), dict) else None,
            deleted_at=str(data.get("deleted_at", "") or ""),
            status=str(data.get("status", "deleted") or "deleted"),
        )


@dataclass
class PendingSeverance:
    severance_id: str
    task_id: str
    event_id: str
    calendar_id: str
    title: str
    date: str
    reason: str
    time: str | None = None
    file_path: str = ""
    detected_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingSeverance":
        return cls(
            severance_id=str(data.get("severance_id", "")),
            task_id=str(data.get("task_id", "")),
            event_id=str(data.get("event_id", "")),
            calendar_id=str(data.get("calendar_id", "")),
            title=str(data.get("title", "")),
            date=str(data.get("date", "")),
            reason=str(data.get("reason", "missing")),
            time=data.get("time") or None,
            file_path=str(data.get("file_path", "") or ""),
            detected_at=str(data.get("detected_at", "") or ""),
        )


@dataclass
class PendingRecurrenceChange:
    change_id: str
    task_id: str
    successor: dict[str, Any]
    old_rule: str
    new_rule: str
    detected_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingRecurrenceChange":
        return cls(
            change_id=str(data.get("change_id", "")),
            task_id=str(data.get("task_id", "")),
            successor=dict(data.get("successor") or {}),
            old_rule=str(data.get("old_rule", "") or ""),
            new_rule=str(data.get("new_rule", "") or ""),
            detected_at=str(data.get("detected_at", "") or ""),
        )


@dataclass
class SyncLogEntry:
    entry_id: str
    batch_id: str
    operation: str
    outcome: str
    success: bool
    task_id: str = ""
    title: str = ""
    calendar_id: str = ""
    event_id: str = ""
    status: int | None = None
    error: str = ""
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SyncLogEntry":
        status = data.get("status")
        return cls(
            entry_id=str(data.get("entry_id", "")),
            batch_id=str(data.get("batch_id", "")),
            operation=str(data.get("operation", "")),
            outcome=str(data.get("outcome", "")),
            success=bool(data.get("success", False)),
            task_id=str(data.get("task_id", "") or ""),
            title=str(data.get("title", "") or ""),
            calendar_id=str(data.get("calendar_id", "") or ""),
            event_id=str(data.get("event_id", "") or ""),
            status=int(status) if status is not None else None,
            error=str(data.get("error", "") or ""),
            created_at=str(data.get("created_at", "") or ""),
        )


@dataclass
class SyncState:
    synced_tasks: dict[str, SyncRecord] = field(default_factory=dict)
    pending_operations: list[PendingOperation] = field(default_factory=list)
    pending_deletions: list[PendingDeletion] = field(default_factory=list)
    recently_deleted: list[DeletedSnapshot] = field(default_factory=list)
    pending_severances: list[PendingSeverance] = field(default_factory=list)
    severed_task_ids: set[str] = field(default_factory=set)
    pending_successor_checks: dict[str, int] = field(default_factory=dict)
    pending_recurrence_changes: list[PendingRecurrenceChange] = field(default_factory=list)
    sync_log: list[SyncLogEntry] = field(default_factory=list)
    last_sync_at: str | None = None

    def held_task_ids(self) -> dict[str, str]:
        held: dict[str, str] = {}
        for deletion in self.pending_deletions:
            held[deletion.task_id] = "restoring" if deletion.status == "restoring" else deletion.reason
        for change in self.pending_recurrence_changes:
            held[change.task_id] = "recurrence_change"
        return held

    def to_dict(self, include_log: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "synced_tasks": {key: record.to_dict() for key, record in self.synced_tasks.items()},
            "pending_operations": [item.to_dict() for item in self.pending_operations],
            "pending_deletions": [item.to_dict() for item in self.pending_deletions],
            "recently_deleted": [item.to_dict() for item in self.recently_deleted],
            "pending_severances": [item.to_dict() for item in self.pending_severances],
            "severed_task_ids": sorted(self.severed_task_ids),
            "pending_successor_checks": dict(self.pending_successor_checks),
            "pending_recurrence_changes": [item.to_dict() for item in self.pending_recurrence_changes],
            "last_sync_at": self.last_sync_at,
        }
        if include_log:
            payload["sync_log"] = [entry.to_dict() for entry in self.sync_log]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncState":
        data = data or {}
        raw_tasks = data.get("synced_tasks") or {}
        return cls(
            synced_tasks={
                str(key): SyncRecord.from_dict({**value, "task_id": value.get("task_id") or key})
                for key, value in raw_tasks.items()
                if isinstance(value, dict)
            },
            pending_operations=[PendingOperation.from_dict(x) for x in data.get("pending_operations") or []],
            pending_deletions=[PendingDeletion.from_dict(x) for x in data.get("pending_deletions") or []],
            recently_deleted=[DeletedSnapshot.from_dict(x) for x in data.get("recently_deleted") or []],
            pending_severances=[PendingSeverance.from_dict(x) for x in data.get("pending_severances") or []],
            severed_task_ids={str(x) for x in data.get("severed_task_ids") or []},
            pending_successor_checks={
                str(key): int(value) for key, value in (data.get("pending_successor_checks") or {}).items()
            },
            pending_recurrence_changes=[
                PendingRecurrenceChange.from_dict(x) for x in data.get("pending_recurrence_changes") or []
            ],
            sync_log=[SyncLogEntry.from_dict(x) for x in data.get("sync_log") or []],
            last_sync_at=data.get("last_sync_at") or None,
        )


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    batch_id: str = ""
    counts: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    notifications: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "batch_id": self.batch_id,
            "counts": dict(self.counts),
            "warnings": list(self.warnings),
            "notifications": list(self.notifications),
            "run_at": serialize_datetime(self.run_at),
        }
