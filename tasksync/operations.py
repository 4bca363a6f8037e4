"""Typed remote operations produced by the change-set builder.

Each operation kind is its own frozen dataclass carrying only the fields it
needs. ``calendar_id`` is always the calendar the request is sent to, which is
what the batch executor groups on (for a move that is the source calendar).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Union

from tasksync.models import Task, new_id


@dataclass(frozen=True)
class CreateOp:
    calendar_id: str
    task_id: str
    task: Task
    duration_minutes: int = 30
    reminder_minutes: tuple[int, ...] = ()
    time_zone: str = "UTC"
    replaces_task_id: str = ""
    op_id: str = field(default_factory=lambda: new_id("create"))


@dataclass(frozen=True)
class UpdateOp:
    calendar_id: str
    task_id: str
    event_id: str
    task: Task
    duration_minutes: int = 30
    reminder_minutes: tuple[int, ...] = ()
    time_zone: str = "UTC"
    existing_event: dict[str, Any] | None = None
    op_id: str = field(default_factory=lambda: new_id("update"))


@dataclass(frozen=True)
class DeleteOp:
    calendar_id: str
    task_id: str
    event_id: str
    title: str = ""
    op_id: str = field(default_factory=lambda: new_id("delete"))


@dataclass(frozen=True)
class MoveOp:
    calendar_id: str
    task_id: str
    event_id: str
    destination_calendar_id: str
    op_id: str = field(default_factory=lambda: new_id("move"))


@dataclass(frozen=True)
class CompleteOp:
    calendar_id: str
    task_id: str
    event_id: str
    title: str = ""
    existing_event: dict[str, Any] | None = None
    op_id: str = field(default_factory=lambda: new_id("complete"))


@dataclass(frozen=True)
class RestoreOp:
    calendar_id: str
    task_id: str
    snapshot_id: str
    event: dict[str, Any]
    title: str = ""
    op_id: str = field(default_factory=lambda: new_id("restore"))


@dataclass(frozen=True)
class GetOp:
    calendar_id: str
    task_id: str
    event_id: str
    op_id: str = field(default_factory=lambda: new_id("get"))


ChangeSetOperation = Union[CreateOp, UpdateOp, DeleteOp, MoveOp, CompleteOp, RestoreOp, GetOp]


def operation_kind(op: ChangeSetOperation) -> str:
    match op:
        case CreateOp():
            return "create"
        case UpdateOp():
            return "update"
        case DeleteOp():
            return "delete"
        case MoveOp():
            return "move"
        case CompleteOp():
            return "complete"
        case RestoreOp():
            return "restore"
        case GetOp():
            return "get"
    raise TypeError(f"Unknown operation: {op!r}")


def operation_title(op: ChangeSetOperation) -> str:
    match op:
        case CreateOp(task=task) | UpdateOp(task=task):
            return task.title
        case DeleteOp(title=title) | CompleteOp(title=title) | RestoreOp(title=title):
            return title
        case _:
            return ""


def operation_event_id(op: ChangeSetOperation) -> str:
    match op:
        case CreateOp() | RestoreOp():
            return ""
        case UpdateOp(event_id=event_id) | DeleteOp(event_id=event_id) | MoveOp(event_id=event_id):
            return event_id
        case CompleteOp(event_id=event_id) | GetOp(event_id=event_id):
            return event_id
    raise TypeError(f"Unknown operation: {op!r}")


def with_existing_event(op: UpdateOp | CompleteOp, event: dict[str, Any]) -> UpdateOp | CompleteOp:
    return replace(op, existing_event=event)


def update_to_create(op: UpdateOp) -> CreateOp:
    return CreateOp(
        calendar_id=op.calendar_id,
        task_id=op.task_id,
        task=op.task,
        duration_minutes=op.duration_minutes,
        reminder_minutes=op.reminder_minutes,
        time_zone=op.time_zone,
        replaces_task_id=op.task_id,
    )
