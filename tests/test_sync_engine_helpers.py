from unittest import TestCase

from tasksync.models import PendingSeverance, SyncRecord, SyncState
from tasksync.sync_engine import drop_record, find_invariant_violations, store_record


def _record(task_id: str, event_id: str, calendar_id: str = "primary") -> SyncRecord:
    return SyncRecord(task_id=task_id, event_id=event_id, calendar_id=calendar_id, content_hash="h")


class SyncEngineHelperTests(TestCase):
    def test_store_record_rekeys_and_carries_references(self) -> None:
        state = SyncState()
        record = _record("old", "e1")
        state.synced_tasks["old"] = record
        state.severed_task_ids.add("old")
        state.pending_successor_checks["old"] = 2
        state.pending_severances.append(
            PendingSeverance(
                severance_id="s1", task_id="old", event_id="e1", calendar_id="primary", title="t",
                date="2024-05-01", reason="missing",
            )
        )

        final = store_record(state, record, "new")
        self.assertEqual(final, "new")
        self.assertEqual(list(state.synced_tasks), ["new"])
        self.assertEqual(record.task_id, "new")
        self.assertEqual(state.severed_task_ids, {"new"})
        self.assertEqual(state.pending_successor_checks, {"new": 2})
        self.assertEqual(state.pending_severances[0].task_id, "new")

    def test_store_record_suffixes_taken_keys(self) -> None:
        state = SyncState()
        state.synced_tasks["k"] = _record("k", "e1")
        other = _record("x", "e2")
        state.synced_tasks["x"] = other
        self.assertEqual(store_record(state, other, "k"), "k~2")
        self.assertEqual(set(state.synced_tasks), {"k", "k~2"})

    def test_drop_record_checks_event_id(self) -> None:
        state = SyncState()
        state.synced_tasks["k"] = _record("k", "e1")
        state.severed_task_ids.add("k")
        self.assertIsNone(drop_record(state, "k", "other-event"))
        self.assertIn("k", state.synced_tasks)
        self.assertEqual(drop_record(state, "k", "e1").event_id, "e1")
        self.assertEqual(state.synced_tasks, {})
        self.assertEqual(state.severed_task_ids, set())

    def test_drop_record_withdraws_matching_severance(self) -> None:
        state = SyncState()
        state.synced_tasks["k"] = _record("k", "e1")
        for severance_id, event_id in (("s1", "e1"), ("s2", "e-other")):
            state.pending_severances.append(
                PendingSeverance(
                    severance_id=severance_id, task_id="k", event_id=event_id, calendar_id="primary", title="t",
                    date="2024-05-01", reason="missing",
                )
            )
        drop_record(state, "k")
        self.assertEqual([s.severance_id for s in state.pending_severances], ["s2"])

    def test_invariant_violations(self) -> None:
        state = SyncState()
        state.synced_tasks["a"] = _record("a", "e1")
        state.synced_tasks["b"] = _record("b", "e1")
        state.synced_tasks["c"] = _record("z", "e2")
        state.synced_tasks["d"] = _record("d", "e1", calendar_id="work")
        violations = find_invariant_violations(state)
        self.assertEqual(len(violations), 2)
        self.assertIn("tracked by both a and b", violations[0])
        self.assertIn("carries task id z", violations[1])
