from __future__ import annotations

import logging
import threading
import time
import traceback
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from tasksync.audit_log import AuditLog
from tasksync.batch_executor import BatchExecutor, ExecutionReport, OperationOutcome
from tasksync.change_set import ChangeSet, build_change_set
from tasksync.config_manager import ConfigManager
from tasksync.diff_engine import SyncDiff, TaskMatch, compute_diff
from tasksync.exceptions import AuthorizationError, DecisionNotFoundError
from tasksync.gateway import GoogleCalendarGateway
from tasksync.models import (
    AppConfig,
    CalendarInfo,
    PendingDeletion,
    SyncPolicy,
    SyncRecord,
    SyncResult,
    SyncState,
    Task,
    content_hash,
    serialize_datetime,
    utc_now,
)
from tasksync.operations import (
    ChangeSetOperation,
    CompleteOp,
    CreateOp,
    DeleteOp,
    GetOp,
    MoveOp,
    RestoreOp,
    UpdateOp,
    operation_kind,
    operation_title,
    update_to_create,
    with_existing_event,
)
from tasksync.retry_queue import RetryQueue
from tasksync.safety_net import SafetyNet
from tasksync.severance import SeveranceHandler, build_existence_checks
from tasksync.state_store import StateStore
from tasksync.task_source import MarkdownTaskSource, TaskSource

logger = logging.getLogger(__name__)

RECURRENCE_CHOICES = ("update_series", "new_series")
AUTH_NOTIFICATION = "Calendar authorization failed. Re-authenticate to resume syncing."
AUTH_ERROR_META_KEY = "last_auth_error"
CHANGE_COUNTS = ("created", "updated", "deleted", "moved", "completed", "restored")


class DecisionResolver(Protocol):
    def resolve_deletion(self, deletion_id: str, choice: str) -> dict[str, Any]:
        ...

    def resolve_all_deletions(self, choice: str) -> list[dict[str, Any]]:
        ...

    def resolve_severance(self, severance_id: str, choice: str) -> dict[str, Any]:
        ...

    def resolve_all_severances(self, choice: str) -> list[dict[str, Any]]:
        ...

    def resolve_recurrence_change(self, change_id: str, choice: str) -> dict[str, Any]:
        ...

    def restore_deleted(self, snapshot_id: str) -> dict[str, Any]:
        ...


def _rename_references(state: SyncState, old_key: str, new_key: str) -> None:
    if old_key == new_key:
        return
    if old_key in state.severed_task_ids:
        state.severed_task_ids.discard(old_key)
        state.severed_task_ids.add(new_key)
    for severance in state.pending_severances:
        if severance.task_id == old_key:
            severance.task_id = new_key
    if old_key in state.pending_successor_checks:
        state.pending_successor_checks[new_key] = state.pending_successor_checks.pop(old_key)


def store_record(state: SyncState, record: SyncRecord, key: str) -> str:
    """Put ``record`` under ``key`` and return the key it actually landed on.

    A key still held by a different record gets a numeric suffix; the next cycle
    re-keys it once the other record has moved on.
    """
    synced = state.synced_tasks
    old_key = record.task_id
    if synced.get(old_key) is record:
        del synced[old_key]
    final = key
    suffix = 1
    while final in synced and synced[final] is not record:
        suffix += 1
        final = f"{key}~{suffix}"
    record.task_id = final
    synced[final] = record
    _rename_references(state, old_key, final)
    return final


def drop_record(state: SyncState, task_id: str, event_id: str | None = None) -> SyncRecord | None:
    record = state.synced_tasks.get(task_id)
    if record is None:
        return None
    if event_id is not None and record.event_id != event_id:
        return None
    del state.synced_tasks[task_id]
    state.severed_task_ids.discard(task_id)
    state.pending_successor_checks.pop(task_id, None)
    stale = [s for s in state.pending_severances if s.task_id == task_id and s.event_id == record.event_id]
    for severance in stale:
        state.pending_severances.remove(severance)
        logger.info("Pending severance %s withdrawn; %s is no longer tracked", severance.severance_id, task_id)
    return record


def find_invariant_violations(state: SyncState) -> list[str]:
    violations: list[str] = []
    owners: dict[tuple[str, str], str] = {}
    for key, record in state.synced_tasks.items():
        if record.task_id != key:
            violations.append(f"Record stored under {key} carries task id {record.task_id}")
        if not record.event_id:
            continue
        pair = (record.calendar_id, record.event_id)
        if pair in owners:
            violations.append(
                f"Event {record.event_id} in calendar {record.calendar_id} is tracked by both "
                f"{owners[pair]} and {key}"
            )
        else:
            owners[pair] = key
    return violations


class SyncCycle:
    """State and collaborators for one reconciliation pass."""

    def __init__(
        self,
        *,
        state: SyncState,
        policy: SyncPolicy,
        config: AppConfig,
        executor: BatchExecutor,
        task_source: TaskSource,
    ) -> None:
        self.state = state
        self.policy = policy
        self.config = config
        self.executor = executor
        self.task_source = task_source
        self.audit = AuditLog(state, limit=config.retention.sync_log_limit)
        self.retry = RetryQueue(state)
        self.safety = SafetyNet(state)
        self.severance = SeveranceHandler(state, policy)
        self.counts: Counter[str] = Counter()
        self.warnings: list[str] = []
        self.notifications: list[str] = []

    @property
    def batch_id(self) -> str:
        return self.audit.batch_id

    def run(self) -> None:
        self.retry_pending()
        self.execute_confirmed_deletions()
        self.restore_deleted_events()

        tasks = self.task_source.scan()
        diff = compute_diff(
            tasks,
            self.state.synced_tasks,
            self.policy,
            successor_checks=self.state.pending_successor_checks,
            held=self.state.held_task_ids(),
        )
        self.state.pending_successor_checks = dict(diff.deferred)
        self.safety.reclaim(diff.reclaimed)
        self.warnings.extend(diff.warnings)
        self.relocate(diff)

        change_set = build_change_set(diff, self.policy)
        operations = self.skip_queued_creates(self.fetch_phase(change_set, diff.unchanged))
        report = self.executor.execute(operations)
        for outcome in report.outcomes:
            self.apply_outcome(outcome)
        self.raise_if_aborted(report)

        self.apply_state_changes(change_set)
        self.counts["unchanged"] = len(diff.unchanged)
        self.safety.enrich(self.executor)

    def finish(self) -> None:
        self.safety.prune_recently_deleted(days=self.config.retention.recently_deleted_days)
        self.audit.prune()
        for violation in find_invariant_violations(self.state):
            logger.error("Reconciliation invariant violated: %s", violation)
            self.warnings.append(violation)
        self.state.last_sync_at = serialize_datetime(utc_now())

    def raise_if_aborted(self, report: ExecutionReport) -> None:
        if report.aborted:
            raise AuthorizationError(report.abort_error or "Authorization failed")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def retry_pending(self) -> None:
        operations = self.retry.operations(self.policy)
        if not operations:
            return
        logger.info("Retrying %d pending operations", len(operations))
        report = self.executor.execute(operations)
        for outcome in report.outcomes:
            op = outcome.op
            self.counts["retried"] += 1
            if outcome.success or outcome.is_drift:
                self.retry.remove(op.op_id)
                self.apply_outcome(outcome, retried=True)
                continue
            if outcome.failure_kind == "permanent":
                dropped = self.retry.remove(op.op_id)
                self._report_dropped(op, outcome, dropped.retry_count if dropped else 0)
                continue
            dropped = self.retry.record_failure(op.op_id, outcome.error)
            if dropped is not None:
                self._report_dropped(op, outcome, dropped.retry_count)
            else:
                self.audit.record_operation(
                    op, "queued_retry", success=False, status=outcome.status, error=outcome.error
                )
        self.raise_if_aborted(report)

    def _report_dropped(self, op: ChangeSetOperation, outcome: OperationOutcome, attempts: int) -> None:
        self.counts["dropped"] += 1
        self.audit.record_operation(op, "dropped", success=False, status=outcome.status, error=outcome.error)
        self.notifications.append(
            f'Gave up on {operation_kind(op)} of "{operation_title(op) or op.task_id}" '
            f"after {attempts} retries: {outcome.error}"
        )

    def skip_queued_creates(self, operations: list[ChangeSetOperation]) -> list[ChangeSetOperation]:
        """Leave out creates for tasks whose create is already in the retry queue."""
        queued = self.retry.pending_create_task_ids()
        if not queued:
            return operations
        kept: list[ChangeSetOperation] = []
        for op in operations:
            if isinstance(op, CreateOp) and op.task_id in queued:
                logger.debug("Create of %s is queued for retry; not sending it again", op.task_id)
                continue
            kept.append(op)
        return kept

    def execute_confirmed_deletions(self) -> None:
        operations, owners = self.safety.confirmed_operations(self.policy)
        if not operations:
            return
        report = self.executor.execute(operations)
        for outcome in report.outcomes:
            deletion = owners[outcome.op.op_id]
            if isinstance(outcome.op, DeleteOp):
                self._apply_confirmed_delete(outcome, deletion)
            else:
                self.apply_outcome(outcome)
        self.raise_if_aborted(report)

    def _apply_confirmed_delete(self, outcome: OperationOutcome, deletion: PendingDeletion) -> None:
        op = outcome.op
        if outcome.success:
            drop_record(self.state, op.task_id, op.event_id)
            self.safety.complete(deletion)
            self.counts["deleted"] += 1
            self.audit.record_operation(op, "deleted", success=True, status=outcome.status)
            return
        if outcome.failure_kind == "authorization":
            return
        if deletion in self.state.pending_deletions:
            self.state.pending_deletions.remove(deletion)
        drop_record(self.state, op.task_id, op.event_id)
        if outcome.is_retryable:
            self.retry.enqueue(op, outcome.error)
            self.audit.record_operation(op, "queued_retry", success=False, status=outcome.status, error=outcome.error)
        else:
            self.counts["failed"] += 1
            self.audit.record_operation(op, "failed", success=False, status=outcome.status, error=outcome.error)

    def restore_deleted_events(self) -> None:
        operations, owners = self.safety.restore_operations(self.policy)
        if not operations:
            return
        report = self.executor.execute(operations)
        for outcome in report.outcomes:
            op = outcome.op
            snapshot = owners[op.op_id]
            if outcome.success:
                self.safety.restored(snapshot)
                self.counts["restored"] += 1
                event_id = str((outcome.body or {}).get("id", ""))
                self.audit.record_operation(op, "restored", success=True, status=outcome.status, event_id=event_id)
            elif outcome.is_retryable:
                # Stays requested; the next cycle tries again.
                self.audit.record_operation(op, "queued_retry", success=False, status=outcome.status, error=outcome.error)
            elif outcome.failure_kind != "authorization":
                snapshot.status = "deleted"
                self.counts["failed"] += 1
                self.audit.record_operation(op, "failed", success=False, status=outcome.status, error=outcome.error)
        self.raise_if_aborted(report)

    def relocate(self, diff: SyncDiff) -> None:
        """Re-key matched records to their task's current key and position."""
        for match in diff.unchanged + diff.to_update + diff.to_reroute + diff.completed:
            record = match.record
            record.relocate(match.task)
            match.task_id = store_record(self.state, record, match.task_id)

    def fetch_phase(self, change_set: ChangeSet, unchanged: list[TaskMatch]) -> list[ChangeSetOperation]:
        checks = build_existence_checks(unchanged)
        prefetch: dict[str, UpdateOp | CompleteOp] = {}
        get_ops: list[GetOp] = [op for op, _ in checks.values()]
        for target in change_set.prefetch_targets():
            get = GetOp(calendar_id=target.calendar_id, task_id=target.task_id, event_id=target.event_id)
            prefetch[get.op_id] = target
            get_ops.append(get)
        if not get_ops:
            return list(change_set.operations)

        report = self.executor.execute(get_ops)
        self.raise_if_aborted(report)
        fetched: dict[str, OperationOutcome] = {}
        for outcome in report.outcomes:
            target = prefetch.get(outcome.op.op_id)
            if target is not None:
                fetched[target.op_id] = outcome

        result = self.severance.evaluate(checks, report.outcomes)
        for finding in result.findings:
            record = finding.match.record
            self.audit.record(
                "get",
                "drift",
                success=False,
                task_id=record.task_id,
                title=record.title,
                calendar_id=record.calendar_id,
                event_id=record.event_id,
                error=finding.reason,
            )
        for task_id in result.severed:
            self.counts["severed"] += 1
            record = self.state.synced_tasks.get(task_id)
            if record is not None:
                self.audit.record(
                    "get",
                    "severed",
                    success=True,
                    task_id=task_id,
                    title=record.title,
                    calendar_id=record.calendar_id,
                    event_id=record.event_id,
                )
        self.counts["pending_severances"] += len(result.queued)

        operations: list[ChangeSetOperation] = []
        for op in change_set.operations:
            outcome = fetched.get(op.op_id)
            if outcome is None:
                operations.append(op)
                continue
            if outcome.success and isinstance(outcome.body, dict):
                operations.append(with_existing_event(op, outcome.body))
            elif outcome.is_drift:
                self.audit.record_operation(op, "drift", success=False, status=outcome.status, error=outcome.error)
                if isinstance(op, UpdateOp):
                    operations.append(update_to_create(op))
                else:
                    drop_record(self.state, op.task_id, op.event_id)
            elif isinstance(op, CompleteOp):
                operations.append(op)
            else:
                logger.warning("Skipping update of %s this cycle: %s", op.task_id, outcome.error)
                self.audit.record_operation(op, "failed", success=False, status=outcome.status, error=outcome.error)
        operations.extend(result.operations)
        return operations

    def apply_outcome(self, outcome: OperationOutcome, *, retried: bool = False) -> None:
        op = outcome.op
        body = outcome.body or {}
        match op:
            case CreateOp():
                if outcome.success:
                    if op.replaces_task_id:
                        drop_record(self.state, op.replaces_task_id)
                    record = SyncRecord.from_task(op.task_id, op.task, str(body.get("id", "")), op.calendar_id)
                    store_record(self.state, record, op.task_id)
                    self.counts["created"] += 1
                    self.audit.record_operation(
                        op, "created", success=True, status=outcome.status, event_id=record.event_id
                    )
                    return
                self._failed(op, outcome, retried=retried)
            case UpdateOp():
                if outcome.success:
                    record = self.state.synced_tasks.get(op.task_id)
                    if record is not None:
                        record.relocate(op.task)
                        record.content_hash = content_hash(op.task)
                        record.recurrence_rule = op.task.recurrence_rule
                        record.last_synced_at = serialize_datetime(utc_now()) or ""
                    self.counts["updated"] += 1
                    self.audit.record_operation(op, "updated", success=True, status=outcome.status)
                    return
                if outcome.is_drift:
                    drop_record(self.state, op.task_id, op.event_id)
                    self.audit.record_operation(op, "drift", success=False, status=outcome.status, error=outcome.error)
                    return
                self._failed(op, outcome, retried=retried)
            case DeleteOp():
                if outcome.success:
                    record = drop_record(self.state, op.task_id, op.event_id)
                    self.safety.archive(
                        task_id=op.task_id,
                        calendar_id=op.calendar_id,
                        event_id=op.event_id,
                        title=op.title,
                        date=record.date if record else "",
                        time=record.time if record else None,
                    )
                    self.counts["deleted"] += 1
                    self.audit.record_operation(op, "deleted", success=True, status=outcome.status)
                    return
                self._failed(op, outcome, retried=retried)
            case MoveOp():
                if outcome.success:
                    record = self.state.synced_tasks.get(op.task_id)
                    if record is not None and record.event_id == op.event_id:
                        record.calendar_id = op.destination_calendar_id
                        record.event_id = str(body.get("id") or op.event_id)
                        record.last_synced_at = serialize_datetime(utc_now()) or ""
                    self.counts["moved"] += 1
                    self.audit.record_operation(op, "moved", success=True, status=outcome.status)
                    return
                if outcome.is_drift:
                    drop_record(self.state, op.task_id, op.event_id)
                    self.audit.record_operation(op, "drift", success=False, status=outcome.status, error=outcome.error)
                    return
                self._failed(op, outcome, retried=retried)
            case CompleteOp():
                if outcome.success or outcome.is_drift:
                    drop_record(self.state, op.task_id, op.event_id)
                    if outcome.success:
                        self.counts["completed"] += 1
                    self.audit.record_operation(
                        op,
                        "completed" if outcome.success else "drift",
                        success=outcome.success,
                        status=outcome.status,
                    )
                    return
                self._failed(op, outcome, retried=retried)
            case GetOp() | RestoreOp():
                return

    def _failed(self, op: ChangeSetOperation, outcome: OperationOutcome, *, retried: bool) -> None:
        if retried:
            return
        if outcome.is_retryable and self.retry.enqueue(op, outcome.error) is not None:
            if isinstance(op, (DeleteOp, CompleteOp)):
                drop_record(self.state, op.task_id, op.event_id)
            self.counts["queued_retry"] += 1
            self.audit.record_operation(op, "queued_retry", success=False, status=outcome.status, error=outcome.error)
            return
        self.counts["failed"] += 1
        self.audit.record_operation(op, "failed", success=False, status=outcome.status, error=outcome.error)

    def apply_state_changes(self, change_set: ChangeSet) -> None:
        for deletion in self.safety.divert(change_set.diverted_deletions):
            self.counts["diverted"] += 1
            self.audit.record(
                "delete",
                "diverted",
                success=True,
                task_id=deletion.task_id,
                title=deletion.title,
                calendar_id=deletion.calendar_id,
                event_id=deletion.event_id,
            )

        for record in change_set.releases:
            if drop_record(self.state, record.task_id, record.event_id) is not None:
                self.counts["released"] += 1
                self.audit.record(
                    "release",
                    "released",
                    success=True,
                    task_id=record.task_id,
                    title=record.title,
                    calendar_id=record.calendar_id,
                    event_id=record.event_id,
                )

        for match in change_set.migrations:
            record = match.record
            old_key = record.task_id
            record.relocate(match.task)
            record.content_hash = content_hash(match.task)
            record.recurrence_rule = match.task.recurrence_rule
            self.state.pending_successor_checks.pop(old_key, None)
            store_record(self.state, record, match.task_id)
            self.counts["migrated"] += 1
            self.audit.record(
                "migrate",
                "migrated",
                success=True,
                task_id=record.task_id,
                title=record.title,
                calendar_id=record.calendar_id,
                event_id=record.event_id,
            )

        waiting = {change.task_id for change in self.state.pending_recurrence_changes}
        for change in change_set.recurrence_changes:
            if change.task_id in waiting:
                continue
            self.state.pending_recurrence_changes.append(change)
            self.counts["recurrence_changes"] += 1
            logger.info("Recurrence of %s changed from %s to %s", change.task_id, change.old_rule, change.new_rule)


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        task_source_factory: Callable[[AppConfig], TaskSource] | None = None,
        gateway_factory: Callable[[AppConfig], Any] | None = None,
        token_provider: Callable[[], str | None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.task_source_factory = task_source_factory or self._default_task_source
        self.gateway_factory = gateway_factory or self._default_gateway
        self.token_provider = token_provider
        self.sleep = sleep
        self.last_result: SyncResult | None = None
        self._cycle_lock = threading.Lock()

    def _default_task_source(self, config: AppConfig) -> TaskSource:
        return MarkdownTaskSource(config.sync.vault_path, config.sync.excluded_paths)

    def _default_gateway(self, config: AppConfig) -> GoogleCalendarGateway:
        return GoogleCalendarGateway(config.google, token_provider=self.token_provider)

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    def list_calendars(self) -> list[CalendarInfo]:
        config = self.config_manager.load()
        return self.gateway_factory(config).list_calendars()

    def run_once(self, trigger: str = "manual") -> SyncResult:
        if not self._cycle_lock.acquire(blocking=False):
            logger.info("Sync cycle already running; %s trigger skipped", trigger)
            return SyncResult(
                status="skipped",
                message="A sync cycle is already running.",
                duration_ms=0,
                trigger=trigger,
            )
        try:
            result = self._run_cycle(trigger)
        finally:
            self._cycle_lock.release()
        self.last_result = result
        return result

    def _run_cycle(self, trigger: str) -> SyncResult:
        started_at = datetime.now(timezone.utc)
        cycle: SyncCycle | None = None
        run_id: int | None = None

        def elapsed_ms() -> int:
            return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)

        try:
            config = self.config_manager.load()
            if not config.policy.default_calendar_id:
                message = "No default calendar configured. Sync skipped."
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="skipped",
                    message=message,
                    duration_ms=elapsed_ms(),
                    changes_applied=0,
                    pending_decisions=0,
                )
                return SyncResult(status="skipped", message=message, duration_ms=elapsed_ms(), trigger=trigger)

            run_id = self.state_store.start_sync_run(trigger=trigger)
            state = self.state_store.load_state(log_limit=config.retention.sync_log_limit)
            executor = BatchExecutor(self.gateway_factory(config), sleep=self.sleep)
            cycle = SyncCycle(
                state=state,
                policy=config.policy_snapshot(),
                config=config,
                executor=executor,
                task_source=self.task_source_factory(config),
            )
            status = "success"
            auth_error = ""
            try:
                cycle.run()
            except AuthorizationError as exc:
                logger.warning("Sync aborted: %s", exc)
                status = "auth_error"
                auth_error = str(exc) or "Authorization failed"
                cycle.notifications.append(AUTH_NOTIFICATION)
                cycle.warnings.append(str(exc))
            cycle.finish()
            self.state_store.save_state(state, log_limit=config.retention.sync_log_limit)
            self.state_store.set_meta(AUTH_ERROR_META_KEY, auth_error)

            counts = {key: int(value) for key, value in cycle.counts.items()}
            changes_applied = sum(counts.get(k, 0) for k in CHANGE_COUNTS)
            pending = len(state.pending_deletions) + len(state.pending_severances) + len(
                state.pending_recurrence_changes
            )
            if status == "auth_error":
                message = "Authorization failed; cycle aborted after recording completed operations."
            else:
                message = (
                    f"Applied {changes_applied} changes, {counts.get('diverted', 0)} deletions held, "
                    f"{pending} decisions pending."
                )
            logger.info("Sync %s (%s): %s", status, trigger, message)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=status,
                message=message,
                duration_ms=elapsed_ms(),
                changes_applied=changes_applied,
                pending_decisions=pending,
            )
            return SyncResult(
                status=status,
                message=message,
                duration_ms=elapsed_ms(),
                trigger=trigger,
                batch_id=cycle.batch_id,
                counts=counts,
                warnings=list(cycle.warnings),
                notifications=list(cycle.notifications),
            )
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            logger.error("Sync cycle failed: %s\n%s", error_message, traceback.format_exc(limit=5))
            if run_id is None:
                self.state_store.record_sync_run(
                    trigger=trigger,
                    status="error",
                    message=error_message,
                    duration_ms=elapsed_ms(),
                    changes_applied=0,
                    pending_decisions=0,
                )
            else:
                self.state_store.finish_sync_run(
                    run_id=run_id,
                    status="error",
                    message=error_message,
                    duration_ms=elapsed_ms(),
                    changes_applied=0,
                    pending_decisions=0,
                )
            return SyncResult(
                status="error",
                message=error_message,
                duration_ms=elapsed_ms(),
                trigger=trigger,
                batch_id=cycle.batch_id if cycle else "",
            )

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def _with_state(self, action: Callable[[SyncState, AppConfig], Any]) -> Any:
        with self._cycle_lock:
            config = self.config_manager.load()
            state = self.state_store.load_state(log_limit=config.retention.sync_log_limit)
            result = action(state, config)
            self.state_store.save_state(state, log_limit=config.retention.sync_log_limit)
            return result

    def load_state(self) -> SyncState:
        config = self.config_manager.load()
        return self.state_store.load_state(log_limit=config.retention.sync_log_limit)

    def resolve_deletion(self, deletion_id: str, choice: str) -> dict[str, Any]:
        return self._with_state(lambda state, _config: SafetyNet(state).resolve(deletion_id, choice))

    def resolve_all_deletions(self, choice: str) -> list[dict[str, Any]]:
        return self._with_state(lambda state, _config: SafetyNet(state).resolve_all(choice))

    def resolve_severance(self, severance_id: str, choice: str) -> dict[str, Any]:
        return self._with_state(
            lambda state, config: SeveranceHandler(state, config.policy_snapshot()).resolve(severance_id, choice)
        )

    def resolve_all_severances(self, choice: str) -> list[dict[str, Any]]:
        return self._with_state(
            lambda state, config: SeveranceHandler(state, config.policy_snapshot()).resolve_all(choice)
        )

    def resolve_recurrence_change(self, change_id: str, choice: str) -> dict[str, Any]:
        if choice not in RECURRENCE_CHOICES:
            raise ValueError(f"choice must be one of {', '.join(RECURRENCE_CHOICES)}")

        def action(state: SyncState, _config: AppConfig) -> dict[str, Any]:
            change = next((c for c in state.pending_recurrence_changes if c.change_id == change_id), None)
            if change is None:
                raise DecisionNotFoundError(f"No pending recurrence change with id {change_id!r}")
            state.pending_recurrence_changes.remove(change)
            record = state.synced_tasks.get(change.task_id)
            result: dict[str, Any] = {"change_id": change_id, "choice": choice, "task_id": change.task_id}
            if record is None:
                return result
            if choice == "update_series":
                successor = Task.from_dict(change.successor.get("task") or {})
                record.relocate(successor)
                record.recurrence_rule = successor.recurrence_rule
                # Forces an update that rewrites the series rule next cycle.
                record.content_hash = ""
                result["task_id"] = store_record(
                    state, record, str(change.successor.get("task_id") or change.task_id)
                )
            else:
                drop_record(state, change.task_id)
            logger.info("Recurrence change %s resolved: %s", change_id, choice)
            return result

        return self._with_state(action)

    def restore_deleted(self, snapshot_id: str) -> dict[str, Any]:
        return self._with_state(lambda state, _config: SafetyNet(state).restore_deleted(snapshot_id))

    def status(self) -> dict[str, Any]:
        state = self.load_state()
        return {
            "running": self.is_running,
            "last_sync_at": state.last_sync_at,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "synced_tasks": len(state.synced_tasks),
            "pending_operations": len(state.pending_operations),
            "pending_deletions": len(state.pending_deletions),
            "pending_severances": len(state.pending_severances),
            "pending_recurrence_changes": len(state.pending_recurrence_changes),
            "severed_tasks": len(state.severed_task_ids),
            "last_auth_error": self.state_store.get_meta(AUTH_ERROR_META_KEY) or None,
            "recent_runs": self.state_store.recent_sync_runs(limit=10),
        }
