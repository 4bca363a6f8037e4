from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tasksync.diff_engine import CreateCandidate, SyncDiff, TaskMatch
from tasksync.models import (
    PendingDeletion,
    PendingRecurrenceChange,
    SyncPolicy,
    SyncRecord,
    Task,
    new_id,
    reconstruct_task_line,
    serialize_datetime,
    utc_now,
)
from tasksync.operations import (
    ChangeSetOperation,
    CompleteOp,
    CreateOp,
    DeleteOp,
    MoveOp,
    UpdateOp,
)

logger = logging.getLogger(__name__)


@dataclass
class ChangeSet:
    operations: list[ChangeSetOperation] = field(default_factory=list)
    diverted_deletions: list[PendingDeletion] = field(default_factory=list)
    releases: list[SyncRecord] = field(default_factory=list)
    migrations: list[TaskMatch] = field(default_factory=list)
    recurrence_changes: list[PendingRecurrenceChange] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def prefetch_targets(self) -> list[UpdateOp | CompleteOp]:
        return [
            op
            for op in self.operations
            if isinstance(op, (UpdateOp, CompleteOp)) and op.existing_event is None
        ]


def _duration(task: Task, policy: SyncPolicy) -> int:
    return task.duration_minutes or policy.default_duration_minutes


def _reminders(task: Task, policy: SyncPolicy) -> tuple[int, ...]:
    if task.reminder_minutes is not None:
        return tuple(task.reminder_minutes)
    return tuple(policy.default_reminder_minutes)


def create_operation(
    task_id: str,
    task: Task,
    calendar_id: str,
    policy: SyncPolicy,
    *,
    replaces_task_id: str = "",
) -> CreateOp:
    return CreateOp(
        calendar_id=calendar_id,
        task_id=task_id,
        task=task,
        duration_minutes=_duration(task, policy),
        reminder_minutes=_reminders(task, policy),
        time_zone=policy.time_zone,
        replaces_task_id=replaces_task_id,
    )


def update_operation(match: TaskMatch, policy: SyncPolicy) -> UpdateOp:
    return UpdateOp(
        calendar_id=match.record.calendar_id,
        task_id=match.task_id,
        event_id=match.record.event_id,
        task=match.task,
        duration_minutes=_duration(match.task, policy),
        reminder_minutes=_reminders(match.task, policy),
        time_zone=policy.time_zone,
    )


def divert_deletion(
    record: SyncRecord,
    reason: str,
    reason_detail: str,
    *,
    linked_create: dict | None = None,
) -> PendingDeletion:
    return PendingDeletion(
        deletion_id=new_id("deletion"),
        task_id=record.task_id,
        event_id=record.event_id,
        calendar_id=record.calendar_id,
        title=record.title,
        date=record.date,
        time=record.time,
        file_path=record.file_path,
        reason=reason,
        reason_detail=reason_detail,
        original_task_line=reconstruct_task_line(record),
        linked_create=linked_create,
        queued_at=serialize_datetime(utc_now()) or "",
    )


class ChangeSetBuilder:
    """Turns a diff into typed remote operations under a fixed policy."""

    def __init__(self, policy: SyncPolicy) -> None:
        self.policy = policy

    def build(self, diff: SyncDiff) -> ChangeSet:
        change_set = ChangeSet(warnings=list(diff.warnings))

        for candidate in diff.to_create:
            change_set.operations.append(self._create(candidate))

        for match in diff.to_update:
            change_set.operations.append(update_operation(match, self.policy))

        for match in diff.to_reroute:
            self._reroute(change_set, match)

        for match in diff.completed:
            self._complete(change_set, match)

        change_set.releases.extend(diff.released)

        for record in diff.orphaned:
            self._delete(
                change_set,
                record,
                reason="orphaned",
                reason_detail="Task no longer found in any scanned file.",
            )

        change_set.migrations.extend(diff.successors)

        for match in diff.recurrence_changes:
            change_set.recurrence_changes.append(
                PendingRecurrenceChange(
                    change_id=new_id("recurrence"),
                    task_id=match.record.task_id,
                    successor={"task_id": match.task_id, "task": match.task.to_dict()},
                    old_rule=match.record.recurrence_rule or "",
                    new_rule=match.task.recurrence_rule or "",
                    detected_at=serialize_datetime(utc_now()) or "",
                )
            )

        logger.debug(
            "Change set built: %d operations, %d diverted deletions",
            len(change_set.operations),
            len(change_set.diverted_deletions),
        )
        return change_set

    def _create(self, candidate: CreateCandidate) -> CreateOp:
        return create_operation(
            candidate.task_id,
            candidate.task,
            candidate.calendar_id,
            self.policy,
            replaces_task_id=candidate.replaces.task_id if candidate.replaces else "",
        )

    def _reroute(self, change_set: ChangeSet, match: TaskMatch) -> None:
        record = match.record
        behavior = self.policy.routing_behavior
        if behavior == "preserve":
            change_set.operations.append(
                MoveOp(
                    calendar_id=record.calendar_id,
                    task_id=match.task_id,
                    event_id=record.event_id,
                    destination_calendar_id=match.calendar_id,
                )
            )
            return

        create = create_operation(
            match.task_id,
            match.task,
            match.calendar_id,
            self.policy,
            replaces_task_id=match.task_id,
        )
        if behavior == "keep_both":
            change_set.operations.append(create)
            return

        # fresh_start: the old event is deleted and a new one created.
        if self.policy.safety_net:
            change_set.diverted_deletions.append(
                divert_deletion(
                    record,
                    "routing_change",
                    f"Task routing changed from calendar {record.calendar_id} to {match.calendar_id}.",
                    linked_create={
                        "calendar_id": match.calendar_id,
                        "task_id": match.task_id,
                        "task": match.task.to_dict(),
                    },
                )
            )
            return
        change_set.operations.append(
            DeleteOp(
                calendar_id=record.calendar_id,
                task_id=match.task_id,
                event_id=record.event_id,
                title=record.title,
            )
        )
        change_set.operations.append(create)

    def _complete(self, change_set: ChangeSet, match: TaskMatch) -> None:
        record = match.record
        if self.policy.completion_behavior == "mark_complete":
            change_set.operations.append(
                CompleteOp(
                    calendar_id=record.calendar_id,
                    task_id=match.task_id,
                    event_id=record.event_id,
                    title=match.task.title,
                )
            )
            return
        self._delete(change_set, record, reason="completed", reason_detail="Task was marked complete.")

    def _delete(self, change_set: ChangeSet, record: SyncRecord, *, reason: str, reason_detail: str) -> None:
        if self.policy.safety_net:
            change_set.diverted_deletions.append(divert_deletion(record, reason, reason_detail))
            return
        change_set.operations.append(
            DeleteOp(
                calendar_id=record.calendar_id,
                task_id=record.task_id,
                event_id=record.event_id,
                title=record.title,
            )
        )


def build_change_set(diff: SyncDiff, policy: SyncPolicy) -> ChangeSet:
    return ChangeSetBuilder(policy).build(diff)
