from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Union

from tasksync.models import SyncPolicy, SyncRecord, Task, content_hash, task_key

logger = logging.getLogger(__name__)

MAX_SUCCESSOR_CHECKS = 3


@dataclass(frozen=True)
class ExactMatch:
    record: SyncRecord
    task: Task
    index: int


@dataclass(frozen=True)
class RelocatedMatch:
    record: SyncRecord
    task: Task
    index: int


@dataclass(frozen=True)
class SuccessorMatch:
    record: SyncRecord
    task: Task
    index: int
    rule_changed: bool = False


@dataclass(frozen=True)
class NoMatch:
    record: SyncRecord


MatchOutcome = Union[ExactMatch, RelocatedMatch, SuccessorMatch, NoMatch]


@dataclass
class TaskMatch:
    task_id: str
    calendar_id: str
    outcome: ExactMatch | RelocatedMatch | SuccessorMatch

    @property
    def task(self) -> Task:
        return self.outcome.task

    @property
    def record(self) -> SyncRecord:
        return self.outcome.record

    @property
    def content_changed(self) -> bool:
        return self.record.content_hash != content_hash(self.task) or _rule(self.record.recurrence_rule) != _rule(
            self.task.recurrence_rule
        )


@dataclass
class CreateCandidate:
    task_id: str
    task: Task
    calendar_id: str
    replaces: SyncRecord | None = None


@dataclass
class SyncDiff:
    to_create: list[CreateCandidate] = field(default_factory=list)
    to_update: list[TaskMatch] = field(default_factory=list)
    unchanged: list[TaskMatch] = field(default_factory=list)
    to_reroute: list[TaskMatch] = field(default_factory=list)
    orphaned: list[SyncRecord] = field(default_factory=list)
    completed: list[TaskMatch] = field(default_factory=list)
    released: list[SyncRecord] = field(default_factory=list)
    successors: list[TaskMatch] = field(default_factory=list)
    recurrence_changes: list[TaskMatch] = field(default_factory=list)
    deferred: dict[str, int] = field(default_factory=dict)
    held: list[SyncRecord] = field(default_factory=list)
    reclaimed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_remote_changes(self) -> bool:
        return bool(self.to_create or self.to_update or self.to_reroute or self.orphaned or self.completed)

    def summary(self) -> dict[str, int]:
        return {
            "to_create": len(self.to_create),
            "to_update": len(self.to_update),
            "unchanged": len(self.unchanged),
            "to_reroute": len(self.to_reroute),
            "orphaned": len(self.orphaned),
            "completed": len(self.completed),
            "released": len(self.released),
            "successors": len(self.successors),
            "recurrence_changes": len(self.recurrence_changes),
            "deferred": len(self.deferred),
            "held": len(self.held),
        }


def _rule(value: str | None) -> str:
    return (value or "").strip()


def _reclaimable(reason: str, task: Task) -> bool:
    """A held record is taken back when its task is found again.

    Orphan holds end as soon as the task reappears; a restore requested for a
    completed task ends once the task is active again.
    """
    return reason == "orphaned" or (reason == "restoring" and not task.completed)


def derive_task_ids(tasks: Iterable[Task]) -> list[str]:
    """Derive one key per task; duplicates within a snapshot get the line number appended."""
    keys: list[str] = []
    seen: set[str] = set()
    for task in tasks:
        key = task_key(task)
        if key in seen:
            key = f"{key}~{task.line_number}"
            suffix = 1
            while key in seen:
                suffix += 1
                key = f"{task_key(task)}~{task.line_number}.{suffix}"
        seen.add(key)
        keys.append(key)
    return keys


def is_successor(*, title: str, time: str | None, file_path: str, date: str, candidate: Task) -> bool:
    return (
        not candidate.completed
        and candidate.is_recurring
        and candidate.title == title
        and (candidate.time or None) == (time or None)
        and candidate.file_path == file_path
        and candidate.date > date
    )


def match_in_place(record: SyncRecord, remaining: Mapping[int, Task]) -> MatchOutcome:
    for index, task in remaining.items():
        if task.file_path != record.file_path or task.line_number != record.line_number:
            continue
        if record.is_recurring and is_successor(
            title=record.title,
            time=record.time,
            file_path=record.file_path,
            date=record.date,
            candidate=task,
        ):
            return SuccessorMatch(
                record=record,
                task=task,
                index=index,
                rule_changed=_rule(record.recurrence_rule) != _rule(task.recurrence_rule),
            )
        return ExactMatch(record=record, task=task, index=index)
    return NoMatch(record=record)


def match_relocated(record: SyncRecord, remaining: Mapping[int, Task]) -> MatchOutcome:
    candidates = [
        (index, task)
        for index, task in remaining.items()
        if task.title == record.title and task.date == record.date and (task.time or None) == (record.time or None)
    ]
    if not candidates:
        return NoMatch(record=record)
    candidates.sort(
        key=lambda item: (
            item[1].file_path != record.file_path,
            abs(item[1].line_number - record.line_number),
            item[0],
        )
    )
    index, task = candidates[0]
    return RelocatedMatch(record=record, task=task, index=index)


def match_successor(
    record: SyncRecord,
    remaining: Mapping[int, Task],
    *,
    reference: Task | None = None,
) -> MatchOutcome:
    """Find the next instance of a recurring task.

    ``reference`` is the completed instance when the record already matched one;
    otherwise the record's last known fields are used.
    """
    title = reference.title if reference else record.title
    time = reference.time if reference else record.time
    file_path = reference.file_path if reference else record.file_path
    date = reference.date if reference else record.date
    candidates = [
        (index, task)
        for index, task in remaining.items()
        if is_successor(title=title, time=time, file_path=file_path, date=date, candidate=task)
    ]
    if not candidates:
        return NoMatch(record=record)
    candidates.sort(key=lambda item: (item[1].date, item[0]))
    index, task = candidates[0]
    old_rule = _rule(record.recurrence_rule) or _rule(reference.recurrence_rule if reference else None)
    return SuccessorMatch(
        record=record,
        task=task,
        index=index,
        rule_changed=old_rule != _rule(task.recurrence_rule),
    )


def compute_diff(
    tasks: list[Task],
    records: Mapping[str, SyncRecord],
    policy: SyncPolicy,
    *,
    successor_checks: Mapping[str, int] | None = None,
    held: Mapping[str, str] | None = None,
    max_successor_checks: int = MAX_SUCCESSOR_CHECKS,
) -> SyncDiff:
    successor_checks = successor_checks or {}
    held = held or {}
    diff = SyncDiff()
    keys = derive_task_ids(tasks)
    remaining: dict[int, Task] = dict(enumerate(tasks))
    ordered_records = [records[key] for key in sorted(records)]

    matches: dict[str, ExactMatch | RelocatedMatch | SuccessorMatch] = {}
    unresolved: list[SyncRecord] = []

    for record in ordered_records:
        outcome = match_in_place(record, remaining)
        if isinstance(outcome, NoMatch):
            unresolved.append(record)
            continue
        remaining.pop(outcome.index)
        matches[record.task_id] = outcome

    still_unresolved: list[SyncRecord] = []
    for record in unresolved:
        outcome = match_relocated(record, remaining)
        if isinstance(outcome, NoMatch):
            still_unresolved.append(record)
            continue
        remaining.pop(outcome.index)
        matches[record.task_id] = outcome

    # Pass 3 only looks at active tasks; a completed instance is never a successor.
    active_remaining = {index: task for index, task in remaining.items() if not task.completed}
    unmatched: list[SyncRecord] = []
    for record in still_unresolved:
        if record.task_id in held or record.severed or not record.is_recurring:
            unmatched.append(record)
            continue
        outcome = match_successor(record, active_remaining)
        if isinstance(outcome, NoMatch):
            attempts = int(successor_checks.get(record.task_id, 0))
            if attempts < max_successor_checks:
                diff.deferred[record.task_id] = attempts + 1
                logger.debug("No successor yet for %s (attempt %d)", record.task_id, attempts + 1)
            else:
                diff.orphaned.append(record)
            continue
        active_remaining.pop(outcome.index)
        remaining.pop(outcome.index)
        matches[record.task_id] = outcome

    for record_id, outcome in list(matches.items()):
        task = outcome.task
        record = outcome.record
        if not task.completed or not (task.is_recurring or record.is_recurring):
            continue
        if record_id in held or record.severed:
            continue
        successor = match_successor(record, active_remaining, reference=task)
        if isinstance(successor, NoMatch):
            attempts = int(successor_checks.get(record_id, 0))
            if attempts < max_successor_checks:
                diff.deferred[record_id] = attempts + 1
            else:
                diff.released.append(record)
            del matches[record_id]
            continue
        active_remaining.pop(successor.index)
        remaining.pop(successor.index)
        matches[record_id] = successor

    for record_id in sorted(matches):
        outcome = matches[record_id]
        record = outcome.record
        task = outcome.task
        task_id = keys[outcome.index]
        calendar_id, warning = policy.route(task)
        if warning:
            diff.warnings.append(warning)
        match = TaskMatch(task_id=task_id, calendar_id=calendar_id, outcome=outcome)

        reason = held.get(record_id)
        if reason is not None:
            if not _reclaimable(reason, task):
                diff.held.append(record)
                continue
            diff.reclaimed.append(record_id)

        if isinstance(outcome, SuccessorMatch):
            if outcome.rule_changed:
                diff.recurrence_changes.append(match)
            else:
                diff.successors.append(match)
            continue

        if task.completed:
            if record.severed:
                diff.released.append(record)
            else:
                diff.completed.append(match)
            continue

        if record.severed:
            if match.content_changed:
                diff.to_create.append(
                    CreateCandidate(task_id=task_id, task=task, calendar_id=calendar_id, replaces=record)
                )
            else:
                diff.unchanged.append(match)
            continue

        if calendar_id != record.calendar_id:
            diff.to_reroute.append(match)
        elif match.content_changed:
            diff.to_update.append(match)
        else:
            diff.unchanged.append(match)

    for record in unmatched:
        if record.task_id in held:
            diff.held.append(record)
        elif record.severed:
            diff.released.append(record)
        else:
            diff.orphaned.append(record)

    for index in sorted(remaining):
        task = remaining[index]
        if task.completed:
            continue
        calendar_id, warning = policy.route(task)
        if warning:
            diff.warnings.append(warning)
        diff.to_create.append(CreateCandidate(task_id=keys[index], task=task, calendar_id=calendar_id))

    logger.debug("Diff computed: %s", diff.summary())
    return diff
