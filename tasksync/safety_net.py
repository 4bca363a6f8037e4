"""Approval gate for destructive operations.

Deletions produced while the safety net is on are parked here as
``PendingDeletion`` entries instead of being sent. A user decision moves each
entry forward:

* ``confirm`` marks it ``confirmed``; the next cycle sends the delete (and the
  linked create of a routing change) and archives the event snapshot.
* ``keep`` drops the entry and stops tracking the task. The remote event stays.
* ``restore`` marks it ``restoring`` and hands back the reconstructed task line
  so the caller can write it back to the task source. The record stays held
  until the task reappears.

Confirmed deletions are archived in ``recently_deleted`` for a few days. An
archived event can be put back with ``restore_deleted``; the next cycle
re-creates it from its snapshot without tracking it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from tasksync.change_set import create_operation
from tasksync.exceptions import DecisionNotFoundError
from tasksync.gateway import build_restore_body
from tasksync.models import (
    DeletedSnapshot,
    EventRisk,
    PendingDeletion,
    SyncPolicy,
    SyncState,
    Task,
    new_id,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)
from tasksync.operations import ChangeSetOperation, DeleteOp, GetOp, RestoreOp

logger = logging.getLogger(__name__)

DELETION_CHOICES = ("confirm", "keep", "restore")


class SafetyNet:
    def __init__(self, state: SyncState) -> None:
        self.state = state

    def get(self, deletion_id: str) -> PendingDeletion:
        for deletion in self.state.pending_deletions:
            if deletion.deletion_id == deletion_id:
                return deletion
        raise DecisionNotFoundError(f"No pending deletion with id {deletion_id!r}")

    def pending(self) -> list[PendingDeletion]:
        return [d for d in self.state.pending_deletions if d.status != "confirmed"]

    def divert(self, deletions: list[PendingDeletion]) -> list[PendingDeletion]:
        already = {d.task_id for d in self.state.pending_deletions}
        added: list[PendingDeletion] = []
        for deletion in deletions:
            if deletion.task_id in already:
                continue
            self.state.pending_deletions.append(deletion)
            already.add(deletion.task_id)
            added.append(deletion)
            logger.info(
                "Deletion of %r held for approval (%s): %s",
                deletion.title,
                deletion.reason,
                deletion.reason_detail,
            )
        return added

    def resolve(self, deletion_id: str, choice: str) -> dict[str, Any]:
        if choice not in DELETION_CHOICES:
            raise ValueError(f"choice must be one of {', '.join(DELETION_CHOICES)}")
        deletion = self.get(deletion_id)
        result: dict[str, Any] = {"deletion_id": deletion_id, "choice": choice, "task_id": deletion.task_id}
        if choice == "confirm":
            deletion.status = "confirmed"
        elif choice == "keep":
            self.state.pending_deletions.remove(deletion)
            record = self.state.synced_tasks.get(deletion.task_id)
            if record is not None and record.event_id == deletion.event_id:
                del self.state.synced_tasks[deletion.task_id]
        else:
            deletion.status = "restoring"
            result["original_task_line"] = deletion.original_task_line
        logger.info("Pending deletion %s resolved: %s", deletion_id, choice)
        return result

    def resolve_all(self, choice: str) -> list[dict[str, Any]]:
        if choice not in DELETION_CHOICES:
            raise ValueError(f"choice must be one of {', '.join(DELETION_CHOICES)}")
        return [self.resolve(d.deletion_id, choice) for d in list(self.pending())]

    def reclaim(self, task_ids: list[str]) -> None:
        """Drop entries whose task reappeared in the source."""
        if not task_ids:
            return
        wanted = set(task_ids)
        kept = [d for d in self.state.pending_deletions if d.task_id not in wanted or d.status == "confirmed"]
        for deletion in self.state.pending_deletions:
            if deletion not in kept:
                logger.info("Task %r reappeared; pending deletion %s withdrawn", deletion.title, deletion.deletion_id)
        self.state.pending_deletions = kept

    def confirmed_operations(self, policy: SyncPolicy) -> tuple[list[ChangeSetOperation], dict[str, PendingDeletion]]:
        """Operations for every confirmed deletion, keyed back to their entry by op id."""
        operations: list[ChangeSetOperation] = []
        owners: dict[str, PendingDeletion] = {}
        for deletion in self.state.pending_deletions:
            if deletion.status != "confirmed":
                continue
            delete = DeleteOp(
                calendar_id=deletion.calendar_id,
                task_id=deletion.task_id,
                event_id=deletion.event_id,
                title=deletion.title,
            )
            operations.append(delete)
            owners[delete.op_id] = deletion
            linked = deletion.linked_create
            if linked and isinstance(linked.get("task"), dict):
                create = create_operation(
                    str(linked.get("task_id") or deletion.task_id),
                    Task.from_dict(linked["task"]),
                    str(linked.get("calendar_id") or policy.default_calendar_id),
                    policy,
                    replaces_task_id=deletion.task_id,
                )
                operations.append(create)
                owners[create.op_id] = deletion
        return operations, owners

    def complete(self, deletion: PendingDeletion) -> DeletedSnapshot:
        if deletion in self.state.pending_deletions:
            self.state.pending_deletions.remove(deletion)
        return self.archive(
            task_id=deletion.task_id,
            calendar_id=deletion.calendar_id,
            event_id=deletion.event_id,
            title=deletion.title,
            date=deletion.date,
            time=deletion.time,
            event_snapshot=deletion.event_snapshot,
        )

    def archive(
        self,
        *,
        task_id: str,
        calendar_id: str,
        event_id: str,
        title: str,
        date: str,
        time: str | None = None,
        event_snapshot: dict[str, Any] | None = None,
    ) -> DeletedSnapshot:
        snapshot = DeletedSnapshot(
            snapshot_id=new_id("deleted"),
            task_id=task_id,
            calendar_id=calendar_id,
            event_id=event_id,
            title=title,
            date=date,
            time=time,
            event_snapshot=event_snapshot,
            deleted_at=serialize_datetime(utc_now()) or "",
        )
        self.state.recently_deleted.append(snapshot)
        return snapshot

    def find_deleted(self, snapshot_id: str) -> DeletedSnapshot:
        for snapshot in self.state.recently_deleted:
            if snapshot.snapshot_id == snapshot_id:
                return snapshot
        raise DecisionNotFoundError(f"No recently deleted event with id {snapshot_id!r}")

    def restore_deleted(self, snapshot_id: str) -> dict[str, Any]:
        snapshot = self.find_deleted(snapshot_id)
        snapshot.status = "restore_requested"
        logger.info("Restore of deleted event %r requested (%s)", snapshot.title, snapshot_id)
        return {"snapshot_id": snapshot_id, "task_id": snapshot.task_id, "status": snapshot.status}

    def restore_operations(self, policy: SyncPolicy) -> tuple[list[RestoreOp], dict[str, DeletedSnapshot]]:
        operations: list[RestoreOp] = []
        owners: dict[str, DeletedSnapshot] = {}
        for snapshot in self.state.recently_deleted:
            if snapshot.status != "restore_requested":
                continue
            task = Task(title=snapshot.title, date=snapshot.date, time=snapshot.time)
            op = RestoreOp(
                calendar_id=snapshot.calendar_id,
                task_id=snapshot.task_id,
                snapshot_id=snapshot.snapshot_id,
                event=build_restore_body(
                    snapshot.event_snapshot,
                    task,
                    policy.default_duration_minutes,
                    policy.default_reminder_minutes,
                    policy.time_zone,
                ),
                title=snapshot.title,
            )
            operations.append(op)
            owners[op.op_id] = snapshot
        return operations, owners

    def restored(self, snapshot: DeletedSnapshot) -> None:
        if snapshot in self.state.recently_deleted:
            self.state.recently_deleted.remove(snapshot)

    def needing_enrichment(self) -> list[PendingDeletion]:
        return [d for d in self.state.pending_deletions if d.risk is None and d.status == "queued"]

    def enrich(self, executor: Any) -> int:
        """Attach the remote event and its risk flags to new entries.

        Best effort: anything that cannot be fetched is left for the next cycle.
        """
        targets = self.needing_enrichment()
        if not targets:
            return 0
        owners: dict[str, PendingDeletion] = {}
        checks: list[GetOp] = []
        for deletion in targets:
            op = GetOp(calendar_id=deletion.calendar_id, task_id=deletion.task_id, event_id=deletion.event_id)
            owners[op.op_id] = deletion
            checks.append(op)
        report = executor.execute(checks)
        enriched = 0
        for outcome in report.outcomes:
            deletion = owners.get(outcome.op.op_id)
            if deletion is None:
                continue
            if outcome.success and isinstance(outcome.body, dict):
                deletion.event_snapshot = outcome.body
                deletion.risk = EventRisk.from_event(outcome.body)
                enriched += 1
            elif outcome.is_drift:
                deletion.risk = EventRisk()
            else:
                logger.debug("Could not enrich pending deletion %s: %s", deletion.deletion_id, outcome.error)
        if report.aborted:
            logger.debug("Enrichment stopped early: %s", report.abort_error)
        return enriched

    def prune_recently_deleted(self, now: datetime | None = None, days: int = 7) -> int:
        cutoff = (now or utc_now()) - timedelta(days=days)
        kept: list[DeletedSnapshot] = []
        for snapshot in self.state.recently_deleted:
            deleted_at = parse_iso_datetime(snapshot.deleted_at) if snapshot.deleted_at else None
            expired = deleted_at is not None and deleted_at < cutoff
            if expired and snapshot.status != "restore_requested":
                continue
            kept.append(snapshot)
        removed = len(self.state.recently_deleted) - len(kept)
        self.state.recently_deleted = kept
        return removed
