import unittest
from dataclasses import replace

from tasksync.batch_executor import OperationOutcome
from tasksync.diff_engine import ExactMatch, TaskMatch
from tasksync.exceptions import DecisionNotFoundError
from tasksync.models import SyncPolicy, SyncRecord, SyncState, Task, task_key
from tasksync.operations import CreateOp, UpdateOp
from tasksync.severance import SeveranceHandler, build_existence_checks, start_matches

POLICY = SyncPolicy(default_calendar_id="primary", time_zone="Europe/Berlin")


def _match(state: SyncState, *, time: str | None = "09:00", **kwargs) -> TaskMatch:
    task = Task(title="Call Mom", date="2024-05-01", time=time, file_path="notes.md", line_number=1, **kwargs)
    key = task_key(task)
    record = SyncRecord.from_task(key, task, "evt-1", "primary")
    state.synced_tasks[key] = record
    return TaskMatch(task_id=key, calendar_id="primary", outcome=ExactMatch(record=record, task=task, index=0))


def _evaluate(handler: SeveranceHandler, match: TaskMatch, **outcome) -> object:
    checks = build_existence_checks([match])
    ((op, _),) = checks.values()
    return handler.evaluate(checks, [OperationOutcome(op=op, **outcome)])


class StartMatchesTests(unittest.TestCase):
    def _record(self, **kwargs) -> SyncRecord:
        values = {"task_id": "k", "event_id": "e", "calendar_id": "c", "content_hash": "h", "date": "2024-05-01"}
        values.update(kwargs)
        return SyncRecord(**values)

    def test_timed_event_compared_in_local_zone(self) -> None:
        record = self._record(time="09:00")
        self.assertTrue(start_matches(record, {"start": {"dateTime": "2024-05-01T07:00:00Z"}}, "Europe/Berlin"))
        self.assertFalse(start_matches(record, {"start": {"dateTime": "2024-05-01T08:00:00Z"}}, "Europe/Berlin"))
        self.assertFalse(start_matches(record, {"start": {"date": "2024-05-01"}}, "Europe/Berlin"))

    def test_all_day_event(self) -> None:
        record = self._record()
        self.assertTrue(start_matches(record, {"start": {"date": "2024-05-01"}}, "UTC"))
        self.assertFalse(start_matches(record, {"start": {"date": "2024-05-02"}}, "UTC"))
        self.assertFalse(start_matches(record, {"start": {"dateTime": "2024-05-01T09:00:00Z"}}, "UTC"))

    def test_recurring_series_compares_time_of_day_only(self) -> None:
        record = self._record(time="09:00", date="2024-05-15", recurrence_rule="FREQ=WEEKLY")
        self.assertTrue(start_matches(record, {"start": {"dateTime": "2024-05-01T09:00:00+02:00"}}, "Europe/Berlin"))


class SeveranceHandlerTests(unittest.TestCase):
    def test_severed_records_are_not_checked(self) -> None:
        state = SyncState()
        match = _match(state)
        match.record.severed = True
        self.assertEqual(build_existence_checks([match]), {})

    def test_recreate_policy_issues_replacement_create(self) -> None:
        state = SyncState()
        match = _match(state)
        handler = SeveranceHandler(state, replace(POLICY, drift_policy="recreate"))
        result = _evaluate(handler, match, success=False, status=404, failure_kind="drift")
        self.assertEqual(len(result.operations), 1)
        create = result.operations[0]
        self.assertIsInstance(create, CreateOp)
        self.assertEqual(create.replaces_task_id, match.task_id)

    def test_recreate_policy_restores_shifted_time(self) -> None:
        state = SyncState()
        match = _match(state)
        policy = replace(POLICY, drift_policy="recreate", strict_time_check=True)
        event = {"id": "evt-1", "start": {"dateTime": "2024-05-01T14:00:00+02:00"}}
        result = _evaluate(SeveranceHandler(state, policy), match, success=True, status=200, body=event)
        self.assertEqual(result.findings[0].reason, "time_shifted")
        update = result.operations[0]
        self.assertIsInstance(update, UpdateOp)
        self.assertEqual(update.existing_event, event)

    def test_time_shift_ignored_without_strict_check(self) -> None:
        state = SyncState()
        match = _match(state)
        event = {"id": "evt-1", "start": {"dateTime": "2024-05-01T14:00:00+02:00"}}
        result = _evaluate(SeveranceHandler(state, POLICY), match, success=True, status=200, body=event)
        self.assertEqual(result.findings, [])

    def test_sever_policy_marks_record_permanently(self) -> None:
        state = SyncState()
        match = _match(state)
        handler = SeveranceHandler(state, replace(POLICY, drift_policy="sever"))
        result = _evaluate(handler, match, success=False, status=410, failure_kind="drift")
        self.assertEqual(result.severed, [match.task_id])
        self.assertTrue(match.record.severed)
        self.assertIn(match.task_id, state.severed_task_ids)
        self.assertEqual(result.operations, [])

    def test_ask_policy_queues_decision_and_resolves(self) -> None:
        state = SyncState()
        match = _match(state)
        handler = SeveranceHandler(state, POLICY)
        result = _evaluate(handler, match, success=False, status=404, failure_kind="drift")
        self.assertEqual(len(result.queued), 1)
        self.assertTrue(match.record.severed)
        self.assertEqual(result.operations, [])

        severance_id = result.queued[0].severance_id
        outcome = handler.resolve(severance_id, "recreate")
        self.assertEqual(outcome["choice"], "recreate")
        self.assertFalse(match.record.severed)
        self.assertEqual(match.record.content_hash, "")
        self.assertEqual(state.pending_severances, [])
        with self.assertRaises(DecisionNotFoundError):
            handler.resolve(severance_id, "sever")

    def test_ask_policy_does_not_duplicate_decisions(self) -> None:
        state = SyncState()
        match = _match(state)
        handler = SeveranceHandler(state, POLICY)
        checks = build_existence_checks([match])
        ((op, _),) = checks.values()
        handler.evaluate(checks, [OperationOutcome(op=op, success=False, status=404, failure_kind="drift")])
        handler.evaluate(checks, [OperationOutcome(op=op, success=False, status=404, failure_kind="drift")])
        self.assertEqual(len(state.pending_severances), 1)

    def test_resolve_all_sever(self) -> None:
        state = SyncState()
        match = _match(state)
        handler = SeveranceHandler(state, POLICY)
        _evaluate(handler, match, success=False, status=404, failure_kind="drift")
        with self.assertRaises(ValueError):
            handler.resolve_all("ignore")
        self.assertEqual(len(handler.resolve_all("sever")), 1)
        self.assertIn(match.task_id, state.severed_task_ids)


if __name__ == "__main__":
    unittest.main()
