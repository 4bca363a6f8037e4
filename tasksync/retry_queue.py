from __future__ import annotations

import logging
from dataclasses import replace

from tasksync.change_set import create_operation
from tasksync.models import PendingOperation, SyncPolicy, SyncState, Task, serialize_datetime, utc_now
from tasksync.operations import (
    ChangeSetOperation,
    CompleteOp,
    CreateOp,
    DeleteOp,
    operation_event_id,
    operation_kind,
    operation_title,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = 5
RETRYABLE_KINDS = ("create", "delete", "complete")


class RetryQueue:
    """Durable queue of remote mutations that failed for transient reasons.

    Entries live in ``state.pending_operations`` so they survive restarts. Each
    failed retry increments ``retry_count``; an entry is dropped once it reaches
    ``max_retries``.
    """

    def __init__(self, state: SyncState, *, max_retries: int = MAX_RETRIES) -> None:
        self.state = state
        self.max_retries = max_retries

    def _find(self, op_id: str) -> PendingOperation | None:
        for entry in self.state.pending_operations:
            if entry.op_id == op_id:
                return entry
        return None

    def enqueue(self, op: ChangeSetOperation, error: str) -> PendingOperation | None:
        kind = operation_kind(op)
        if kind not in RETRYABLE_KINDS:
            return None
        for entry in self.state.pending_operations:
            if entry.kind == kind and entry.task_id == op.task_id:
                entry.last_error = error
                return entry
        entry = PendingOperation(
            op_id=op.op_id,
            kind=kind,
            task_id=op.task_id,
            calendar_id=op.calendar_id,
            event_id=operation_event_id(op),
            title=operation_title(op),
            task=op.task.to_dict() if isinstance(op, CreateOp) else None,
            replaces_task_id=op.replaces_task_id if isinstance(op, CreateOp) else "",
            last_error=error,
            queued_at=serialize_datetime(utc_now()) or "",
        )
        self.state.pending_operations.append(entry)
        logger.info("Queued %s for task %s for retry: %s", kind, op.task_id, error)
        return entry

    def pending_create_task_ids(self) -> set[str]:
        return {entry.task_id for entry in self.state.pending_operations if entry.kind == "create"}

    def operations(self, policy: SyncPolicy) -> list[ChangeSetOperation]:
        ops: list[ChangeSetOperation] = []
        for entry in self.state.pending_operations:
            if entry.kind == "create" and entry.task:
                op = create_operation(
                    entry.task_id,
                    Task.from_dict(entry.task),
                    entry.calendar_id,
                    policy,
                    replaces_task_id=entry.replaces_task_id,
                )
                ops.append(replace(op, op_id=entry.op_id))
            elif entry.kind == "delete":
                ops.append(
                    DeleteOp(
                        calendar_id=entry.calendar_id,
                        task_id=entry.task_id,
                        event_id=entry.event_id,
                        title=entry.title,
                        op_id=entry.op_id,
                    )
                )
            elif entry.kind == "complete":
                ops.append(
                    CompleteOp(
                        calendar_id=entry.calendar_id,
                        task_id=entry.task_id,
                        event_id=entry.event_id,
                        title=entry.title,
                        op_id=entry.op_id,
                    )
                )
            else:
                logger.warning("Skipping unreadable pending operation %s (%s)", entry.op_id, entry.kind)
        return ops

    def remove(self, op_id: str) -> PendingOperation | None:
        entry = self._find(op_id)
        if entry is not None:
            self.state.pending_operations.remove(entry)
        return entry

    def record_failure(self, op_id: str, error: str) -> PendingOperation | None:
        """Count one failed retry; return the entry if it was dropped."""
        entry = self._find(op_id)
        if entry is None:
            return None
        entry.retry_count += 1
        entry.last_error = error
        if entry.retry_count >= self.max_retries:
            self.state.pending_operations.remove(entry)
            logger.warning(
                "Dropping %s for task %s (%s) after %d retries: %s",
                entry.kind,
                entry.task_id,
                entry.title,
                entry.retry_count,
                error,
            )
            return entry
        return None
