from __future__ import annotations

import logging
from collections import Counter

from tasksync.models import SyncLogEntry, SyncState, new_id, serialize_datetime, utc_now
from tasksync.operations import ChangeSetOperation, operation_event_id, operation_kind, operation_title

logger = logging.getLogger(__name__)


class AuditLog:
    """Per-cycle history of remote operations, kept in ``state.sync_log``."""

    def __init__(self, state: SyncState, batch_id: str | None = None, *, limit: int = 500) -> None:
        self.state = state
        self.batch_id = batch_id or new_id("batch")
        self.limit = limit

    def record(
        self,
        operation: str,
        outcome: str,
        *,
        success: bool,
        task_id: str = "",
        title: str = "",
        calendar_id: str = "",
        event_id: str = "",
        status: int | None = None,
        error: str = "",
    ) -> SyncLogEntry:
        entry = SyncLogEntry(
            entry_id=new_id("log"),
            batch_id=self.batch_id,
            operation=operation,
            outcome=outcome,
            success=success,
            task_id=task_id,
            title=title,
            calendar_id=calendar_id,
            event_id=event_id,
            status=status,
            error=error,
            created_at=serialize_datetime(utc_now()) or "",
        )
        self.state.sync_log.append(entry)
        return entry

    def record_operation(
        self,
        op: ChangeSetOperation,
        outcome: str,
        *,
        success: bool,
        status: int | None = None,
        error: str = "",
        event_id: str = "",
    ) -> SyncLogEntry:
        return self.record(
            operation_kind(op),
            outcome,
            success=success,
            task_id=op.task_id,
            title=operation_title(op),
            calendar_id=op.calendar_id,
            event_id=event_id or operation_event_id(op),
            status=status,
            error=error,
        )

    def entries(self) -> list[SyncLogEntry]:
        return [entry for entry in self.state.sync_log if entry.batch_id == self.batch_id]

    def summarize(self) -> dict[str, int]:
        return dict(Counter(entry.outcome for entry in self.entries()))

    def prune(self) -> int:
        excess = len(self.state.sync_log) - self.limit
        if excess <= 0:
            return 0
        self.state.sync_log = self.state.sync_log[excess:]
        logger.debug("Pruned %d sync log entries", excess)
        return excess
