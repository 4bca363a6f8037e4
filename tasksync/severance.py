from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tasksync.change_set import create_operation, update_operation
from tasksync.diff_engine import TaskMatch
from tasksync.exceptions import DecisionNotFoundError
from tasksync.models import (
    PendingSeverance,
    SyncPolicy,
    SyncRecord,
    SyncState,
    new_id,
    serialize_datetime,
    utc_now,
)
from tasksync.operations import ChangeSetOperation, GetOp, with_existing_event

logger = logging.getLogger(__name__)

SEVERANCE_CHOICES = ("recreate", "sever")


@dataclass
class DriftFinding:
    match: TaskMatch
    reason: str
    event: dict[str, Any] | None = None


@dataclass
class SeveranceResult:
    operations: list[ChangeSetOperation] = field(default_factory=list)
    severed: list[str] = field(default_factory=list)
    queued: list[PendingSeverance] = field(default_factory=list)
    findings: list[DriftFinding] = field(default_factory=list)


def build_existence_checks(unchanged: list[TaskMatch]) -> dict[str, tuple[GetOp, TaskMatch]]:
    checks: dict[str, tuple[GetOp, TaskMatch]] = {}
    for match in unchanged:
        if match.record.severed or not match.record.event_id:
            continue
        op = GetOp(calendar_id=match.record.calendar_id, task_id=match.task_id, event_id=match.record.event_id)
        checks[op.op_id] = (op, match)
    return checks


def _zone(name: str) -> ZoneInfo | None:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r; comparing event times as written", name)
        return None


def start_matches(record: SyncRecord, event: dict[str, Any], time_zone: str) -> bool:
    """Whether the remote event still starts when the record says it should.

    Recurring series keep their original first date remotely while the record
    advances, so only the time of day is compared for them.
    """
    start = event.get("start") or {}
    date_time = start.get("dateTime")
    if not record.time:
        if date_time:
            return False
        if record.is_recurring:
            return True
        return str(start.get("date") or "") == record.date
    if not date_time:
        return False
    remote = datetime.fromisoformat(str(date_time).replace("Z", "+00:00"))
    if remote.tzinfo is not None:
        zone = _zone(time_zone)
        if zone is not None:
            remote = remote.astimezone(zone)
    if remote.strftime("%H:%M") != record.time:
        return False
    return record.is_recurring or remote.date().isoformat() == record.date


def detect_drift(match: TaskMatch, outcome: Any, policy: SyncPolicy) -> DriftFinding | None:
    if outcome.is_drift:
        return DriftFinding(match=match, reason="missing")
    if not outcome.success or not isinstance(outcome.body, dict):
        return None
    if policy.strict_time_check and not start_matches(match.record, outcome.body, policy.time_zone):
        return DriftFinding(match=match, reason="time_shifted", event=outcome.body)
    return None


class SeveranceHandler:
    """Reacts to remote edits of tracked events according to the drift policy."""

    def __init__(self, state: SyncState, policy: SyncPolicy) -> None:
        self.state = state
        self.policy = policy

    def evaluate(self, checks: dict[str, tuple[GetOp, TaskMatch]], outcomes: list[Any]) -> SeveranceResult:
        result = SeveranceResult()
        for outcome in outcomes:
            entry = checks.get(outcome.op.op_id)
            if entry is None:
                continue
            finding = detect_drift(entry[1], outcome, self.policy)
            if finding is None:
                continue
            result.findings.append(finding)
            logger.info(
                "Remote drift on %r (%s); policy %s",
                finding.match.task.title,
                finding.reason,
                self.policy.drift_policy,
            )
            self._apply(finding, result)
        return result

    def _apply(self, finding: DriftFinding, result: SeveranceResult) -> None:
        match = finding.match
        record = match.record
        if self.policy.drift_policy == "recreate":
            if finding.reason == "missing":
                result.operations.append(
                    create_operation(
                        match.task_id,
                        match.task,
                        record.calendar_id,
                        self.policy,
                        replaces_task_id=match.task_id,
                    )
                )
            else:
                result.operations.append(
                    with_existing_event(update_operation(match, self.policy), finding.event or {})
                )
            return
        if self.policy.drift_policy == "sever":
            self._sever(record)
            result.severed.append(record.task_id)
            return
        if any(item.task_id == record.task_id for item in self.state.pending_severances):
            return
        severance = PendingSeverance(
            severance_id=new_id("severance"),
            task_id=record.task_id,
            event_id=record.event_id,
            calendar_id=record.calendar_id,
            title=record.title,
            date=record.date,
            time=record.time,
            file_path=record.file_path,
            reason=finding.reason,
            detected_at=serialize_datetime(utc_now()) or "",
        )
        record.severed = True
        self.state.pending_severances.append(severance)
        result.queued.append(severance)

    def _sever(self, record: SyncRecord) -> None:
        record.severed = True
        self.state.severed_task_ids.add(record.task_id)

    def get(self, severance_id: str) -> PendingSeverance:
        for severance in self.state.pending_severances:
            if severance.severance_id == severance_id:
                return severance
        raise DecisionNotFoundError(f"No pending severance with id {severance_id!r}")

    def resolve(self, severance_id: str, choice: str) -> dict[str, Any]:
        if choice not in SEVERANCE_CHOICES:
            raise ValueError(f"choice must be one of {', '.join(SEVERANCE_CHOICES)}")
        severance = self.get(severance_id)
        self.state.pending_severances.remove(severance)
        record = self.state.synced_tasks.get(severance.task_id)
        if record is not None:
            if choice == "sever":
                self._sever(record)
            else:
                # An emptied hash forces an update next cycle; its prefetch
                # finds the event gone and turns it into a create.
                record.severed = False
                record.content_hash = ""
                self.state.severed_task_ids.discard(record.task_id)
        logger.info("Pending severance %s resolved: %s", severance_id, choice)
        return {"severance_id": severance_id, "choice": choice, "task_id": severance.task_id}

    def resolve_all(self, choice: str) -> list[dict[str, Any]]:
        if choice not in SEVERANCE_CHOICES:
            raise ValueError(f"choice must be one of {', '.join(SEVERANCE_CHOICES)}")
        return [self.resolve(s.severance_id, choice) for s in list(self.state.pending_severances)]
