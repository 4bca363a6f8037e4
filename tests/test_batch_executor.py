import unittest
from unittest import mock

from tasksync.batch_executor import BatchExecutor
from tasksync.exceptions import StructuralBatchError
from tasksync.gateway import BatchItemResult, BatchResponse
from tasksync.models import Task
from tasksync.operations import CreateOp, DeleteOp, GetOp, UpdateOp


def _create(calendar_id: str, title: str = "Task") -> CreateOp:
    return CreateOp(calendar_id=calendar_id, task_id=title, task=Task(title=title, date="2024-05-01"))


def _ok(ops, status: int = 200) -> BatchResponse:
    return BatchResponse(
        results=[
            BatchItemResult(op_id=op.op_id, status=status, success=True, body={"id": f"id-{op.op_id}"})
            for op in ops
        ]
    )


class BatchExecutorTests(unittest.TestCase):
    def test_groups_by_calendar_and_chunks_to_fifty(self) -> None:
        gateway = mock.Mock()
        gateway.execute_batch.side_effect = _ok
        ops = [_create("primary", f"t{i}") for i in range(120)] + [_create("work", "w1")]
        report = BatchExecutor(gateway).execute(ops)

        sizes = [len(call.args[0]) for call in gateway.execute_batch.call_args_list]
        self.assertEqual(sizes, [50, 50, 20, 1])
        for call in gateway.execute_batch.call_args_list:
            self.assertEqual(len({op.calendar_id for op in call.args[0]}), 1)
        self.assertEqual(report.succeeded, 121)
        self.assertFalse(report.aborted)

    def test_server_error_is_retried_once_after_backoff(self) -> None:
        gateway = mock.Mock()
        ops = [_create("primary")]
        gateway.execute_batch.side_effect = [
            BatchResponse(batch_failed=True, batch_status=503, batch_error="unavailable"),
            _ok(ops),
        ]
        sleep = mock.Mock()
        report = BatchExecutor(gateway, backoff_seconds=2.0, sleep=sleep).execute(ops)
        sleep.assert_called_once_with(2.0)
        self.assertEqual(gateway.execute_batch.call_count, 2)
        self.assertTrue(report.outcomes[0].success)

    def test_repeated_server_error_fails_every_operation_as_transient(self) -> None:
        gateway = mock.Mock()
        gateway.execute_batch.return_value = BatchResponse(batch_failed=True, batch_error="connection reset")
        ops = [_create("primary", "a"), _create("primary", "b")]
        report = BatchExecutor(gateway, sleep=lambda _s: None).execute(ops)
        self.assertEqual(gateway.execute_batch.call_count, 2)
        self.assertEqual([o.failure_kind for o in report.outcomes], ["transient", "transient"])
        self.assertTrue(all(o.is_retryable for o in report.outcomes))

    def test_structural_rejection_fails_whole_batch_without_retry(self) -> None:
        gateway = mock.Mock()
        gateway.execute_batch.return_value = BatchResponse(batch_failed=True, batch_status=400, batch_error="bad")
        report = BatchExecutor(gateway, sleep=lambda _s: None).execute([_create("primary")])
        self.assertEqual(gateway.execute_batch.call_count, 1)
        self.assertEqual(report.outcomes[0].failure_kind, "structural")
        self.assertTrue(report.outcomes[0].is_retryable)

    def test_mixed_calendar_error_is_structural(self) -> None:
        gateway = mock.Mock()
        gateway.execute_batch.side_effect = StructuralBatchError("mixed", status=400)
        report = BatchExecutor(gateway).execute([_create("primary")])
        self.assertEqual(report.outcomes[0].failure_kind, "structural")

    def test_batch_unauthorized_aborts(self) -> None:
        gateway = mock.Mock()
        gateway.execute_batch.return_value = BatchResponse(batch_failed=True, batch_status=401, batch_error="expired")
        report = BatchExecutor(gateway).execute([_create("primary"), _create("work")])
        self.assertTrue(report.aborted)
        self.assertEqual(report.outcomes, [])
        self.assertEqual(gateway.execute_batch.call_count, 1)

    def test_per_operation_classification(self) -> None:
        create = _create("primary")
        update = UpdateOp(calendar_id="primary", task_id="u", event_id="e1", task=Task(title="U", date="2024-05-01"))
        delete = DeleteOp(calendar_id="primary", task_id="d", event_id="gone")
        get = GetOp(calendar_id="primary", task_id="g", event_id="e3")
        gateway = mock.Mock()
        gateway.execute_batch.return_value = BatchResponse(
            results=[
                BatchItemResult(op_id=create.op_id, status=429, success=False, error="rate limited"),
                BatchItemResult(op_id=update.op_id, status=400, success=False, error="bad request"),
                BatchItemResult(op_id=delete.op_id, status=410, success=False, error="gone"),
                BatchItemResult(op_id=get.op_id, status=404, success=False, error="not found"),
            ]
        )
        outcomes = BatchExecutor(gateway).execute([create, update, delete, get]).by_op_id()
        self.assertEqual(outcomes[create.op_id].failure_kind, "transient")
        self.assertEqual(outcomes[update.op_id].failure_kind, "permanent")
        self.assertFalse(outcomes[update.op_id].is_retryable)
        self.assertTrue(outcomes[delete.op_id].success)
        self.assertTrue(outcomes[delete.op_id].is_drift)
        self.assertFalse(outcomes[get.op_id].success)
        self.assertTrue(outcomes[get.op_id].is_drift)

    def test_operation_unauthorized_stops_remaining_chunks(self) -> None:
        first = _create("primary")
        second = _create("work")
        gateway = mock.Mock()
        gateway.execute_batch.return_value = BatchResponse(
            results=[BatchItemResult(op_id=first.op_id, status=403, success=False, error="forbidden")]
        )
        report = BatchExecutor(gateway).execute([first, second])
        self.assertTrue(report.aborted)
        self.assertEqual(report.abort_error, "forbidden")
        self.assertEqual(gateway.execute_batch.call_count, 1)


if __name__ == "__main__":
    unittest.main()
