import tempfile
import unittest
from pathlib import Path

from tasksync.audit_log import AuditLog
from tasksync.models import PendingDeletion, SyncRecord, SyncState
from tasksync.operations import DeleteOp
from tasksync.state_store import StateStore


class StateStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = tempfile.TemporaryDirectory()
        self.store = StateStore(str(Path(self._temp_dir.name) / "nested" / "state.db"))

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_empty_store_loads_empty_state(self) -> None:
        state = self.store.load_state()
        self.assertEqual(state.synced_tasks, {})
        self.assertEqual(state.sync_log, [])
        self.assertIsNone(state.last_sync_at)

    def test_state_round_trip(self) -> None:
        state = SyncState(last_sync_at="2024-05-01T10:00:00+00:00")
        state.synced_tasks["k1"] = SyncRecord(
            task_id="k1", event_id="e1", calendar_id="primary", content_hash="h", title="Call Mom"
        )
        state.pending_deletions.append(
            PendingDeletion(
                deletion_id="d1",
                task_id="k1",
                event_id="e1",
                calendar_id="primary",
                title="Call Mom",
                date="2024-05-01",
                reason="orphaned",
            )
        )
        state.pending_successor_checks["k2"] = 2
        self.store.save_state(state)

        loaded = self.store.load_state()
        self.assertEqual(loaded.synced_tasks["k1"].title, "Call Mom")
        self.assertEqual(loaded.pending_deletions[0].deletion_id, "d1")
        self.assertEqual(loaded.pending_successor_checks, {"k2": 2})
        self.assertEqual(loaded.last_sync_at, "2024-05-01T10:00:00+00:00")

    def test_sync_log_is_appended_once_and_capped(self) -> None:
        state = SyncState()
        first = AuditLog(state, "batch-1")
        for index in range(3):
            first.record("create", "created", success=True, task_id=f"k{index}")
        self.store.save_state(state, log_limit=4)
        self.store.save_state(state, log_limit=4)
        self.assertEqual(len(self.store.recent_sync_log(limit=50)), 3)

        state = self.store.load_state(log_limit=4)
        second = AuditLog(state, "batch-2")
        second.record("delete", "failed", success=False, status=500, error="HTTP 500")
        second.record("delete", "deleted", success=True)
        self.store.save_state(state, log_limit=4)

        rows = self.store.recent_sync_log(limit=50)
        self.assertEqual(len(rows), 4)
        self.assertEqual(rows[0]["outcome"], "deleted")
        self.assertTrue(rows[0]["success"])
        failed = self.store.recent_sync_log(batch_id="batch-2")
        self.assertEqual([row["outcome"] for row in failed], ["deleted", "failed"])
        self.assertEqual(failed[1]["status"], 500)

    def test_sync_runs(self) -> None:
        run_id = self.store.start_sync_run(trigger="manual")
        self.store.finish_sync_run(
            run_id=run_id,
            status="success",
            message="3 changes",
            duration_ms=12,
            changes_applied=3,
            pending_decisions=1,
        )
        runs = self.store.recent_sync_runs()
        self.assertEqual(runs[0]["status"], "success")
        self.assertEqual(runs[0]["changes_applied"], 3)
        self.assertEqual(runs[0]["pending_decisions"], 1)

    def test_meta(self) -> None:
        self.assertIsNone(self.store.get_meta("last_auth_error"))
        self.store.set_meta("last_auth_error", "expired")
        self.store.set_meta("last_auth_error", "")
        self.assertEqual(self.store.get_meta("last_auth_error"), "")


class AuditLogTests(unittest.TestCase):
    def test_entries_are_scoped_to_batch_and_pruned(self) -> None:
        state = SyncState()
        AuditLog(state, "old").record("create", "created", success=True)
        log = AuditLog(state, "new", limit=2)
        op = DeleteOp(calendar_id="primary", task_id="k1", event_id="e1", title="Call Mom")
        entry = log.record_operation(op, "deleted", success=True, status=204)
        log.record_operation(op, "queued_retry", success=False, error="HTTP 503")

        self.assertEqual(entry.operation, "delete")
        self.assertEqual(entry.title, "Call Mom")
        self.assertEqual(entry.event_id, "e1")
        self.assertEqual(log.summarize(), {"deleted": 1, "queued_retry": 1})
        self.assertEqual(log.prune(), 1)
        self.assertEqual([e.batch_id for e in state.sync_log], ["new", "new"])


if __name__ == "__main__":
    unittest.main()
