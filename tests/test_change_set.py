import unittest
from dataclasses import replace

from tasksync.change_set import build_change_set
from tasksync.diff_engine import compute_diff
from tasksync.models import SyncPolicy, SyncRecord, Task, task_key
from tasksync.operations import CompleteOp, CreateOp, DeleteOp, MoveOp, UpdateOp, update_to_create

BASE_POLICY = SyncPolicy(
    default_calendar_id="primary",
    tag_calendar_map=(("work", "work-cal"),),
    default_reminder_minutes=(15,),
    time_zone="Europe/Berlin",
)


def _task(title: str, date: str, *, line: int = 1, **kwargs) -> Task:
    return Task(title=title, date=date, file_path="notes.md", line_number=line, **kwargs)


def _records(*tasks: Task) -> dict[str, SyncRecord]:
    records = {}
    for index, task in enumerate(tasks, start=1):
        record = SyncRecord.from_task(task_key(task), task, f"evt-{index}", "primary")
        records[record.task_id] = record
    return records


class ChangeSetTests(unittest.TestCase):
    def test_creates_and_updates_carry_policy_defaults(self) -> None:
        kept = _task("Call Mom", "2024-05-01", time="09:00")
        records = _records(kept)
        tasks = [
            _task("Call Mom", "2024-05-01", time="11:00"),
            _task("Report", "2024-05-02", line=2, reminder_minutes=[5], duration_minutes=90),
        ]
        change_set = build_change_set(compute_diff(tasks, records, BASE_POLICY), BASE_POLICY)
        creates = [op for op in change_set.operations if isinstance(op, CreateOp)]
        updates = [op for op in change_set.operations if isinstance(op, UpdateOp)]
        self.assertEqual(len(creates), 1)
        self.assertEqual(creates[0].reminder_minutes, (5,))
        self.assertEqual(creates[0].duration_minutes, 90)
        self.assertEqual(creates[0].time_zone, "Europe/Berlin")
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0].event_id, "evt-1")
        self.assertEqual(updates[0].reminder_minutes, (15,))
        self.assertEqual(change_set.prefetch_targets(), updates)

    def test_safety_net_diverts_orphan_deletions(self) -> None:
        records = _records(_task("Call Mom", "2024-05-01", time="09:00"))
        change_set = build_change_set(compute_diff([], records, BASE_POLICY), BASE_POLICY)
        self.assertEqual(change_set.operations, [])
        self.assertEqual(len(change_set.diverted_deletions), 1)
        deletion = change_set.diverted_deletions[0]
        self.assertEqual(deletion.reason, "orphaned")
        self.assertEqual(deletion.original_task_line, "- [ ] Call Mom 📅 2024-05-01 ⏰ 09:00")

    def test_without_safety_net_orphans_are_deleted(self) -> None:
        policy = replace(BASE_POLICY, safety_net=False)
        records = _records(_task("Call Mom", "2024-05-01"))
        change_set = build_change_set(compute_diff([], records, policy), policy)
        self.assertEqual([type(op) for op in change_set.operations], [DeleteOp])
        self.assertEqual(change_set.diverted_deletions, [])

    def test_completion_behaviors(self) -> None:
        original = _task("Call Mom", "2024-05-01")
        done = _task("Call Mom", "2024-05-01", completed=True)

        mark = replace(BASE_POLICY, completion_behavior="mark_complete")
        marked = build_change_set(compute_diff([done], _records(original), mark), mark)
        self.assertEqual([type(op) for op in marked.operations], [CompleteOp])
        self.assertEqual(marked.diverted_deletions, [])

        deleted = build_change_set(compute_diff([done], _records(original), BASE_POLICY), BASE_POLICY)
        self.assertEqual(deleted.operations, [])
        self.assertEqual([d.reason for d in deleted.diverted_deletions], ["completed"])

    def test_routing_behaviors(self) -> None:
        original = _task("Report", "2024-05-02")
        retagged = _task("Report", "2024-05-02", tags={"work"})

        preserve = build_change_set(compute_diff([retagged], _records(original), BASE_POLICY), BASE_POLICY)
        self.assertEqual(len(preserve.operations), 1)
        move = preserve.operations[0]
        self.assertIsInstance(move, MoveOp)
        self.assertEqual(move.calendar_id, "primary")
        self.assertEqual(move.destination_calendar_id, "work-cal")

        keep_both = replace(BASE_POLICY, routing_behavior="keep_both")
        both = build_change_set(compute_diff([retagged], _records(original), keep_both), keep_both)
        self.assertEqual([type(op) for op in both.operations], [CreateOp])
        self.assertEqual(both.operations[0].calendar_id, "work-cal")

        fresh = replace(BASE_POLICY, routing_behavior="fresh_start")
        guarded = build_change_set(compute_diff([retagged], _records(original), fresh), fresh)
        self.assertEqual(guarded.operations, [])
        self.assertEqual(guarded.diverted_deletions[0].reason, "routing_change")
        self.assertEqual(guarded.diverted_deletions[0].linked_create["calendar_id"], "work-cal")

        unguarded_policy = replace(fresh, safety_net=False)
        unguarded = build_change_set(compute_diff([retagged], _records(original), unguarded_policy), unguarded_policy)
        self.assertEqual([type(op) for op in unguarded.operations], [DeleteOp, CreateOp])

    def test_successors_and_rule_changes_produce_no_operations(self) -> None:
        original = _task("Gym", "2024-05-01", recurrence_rule="FREQ=WEEKLY")
        same_rule = _task("Gym", "2024-05-08", recurrence_rule="FREQ=WEEKLY")
        new_rule = _task("Gym", "2024-05-08", recurrence_rule="FREQ=WEEKLY;BYDAY=MO")

        migrated = build_change_set(compute_diff([same_rule], _records(original), BASE_POLICY), BASE_POLICY)
        self.assertEqual(migrated.operations, [])
        self.assertEqual(len(migrated.migrations), 1)

        changed = build_change_set(compute_diff([new_rule], _records(original), BASE_POLICY), BASE_POLICY)
        self.assertEqual(changed.operations, [])
        self.assertEqual(changed.recurrence_changes[0].old_rule, "FREQ=WEEKLY")
        self.assertEqual(changed.recurrence_changes[0].new_rule, "FREQ=WEEKLY;BYDAY=MO")

    def test_update_to_create_replaces_the_record(self) -> None:
        op = UpdateOp(calendar_id="primary", task_id="k1", event_id="e1", task=_task("Call Mom", "2024-05-01"))
        create = update_to_create(op)
        self.assertEqual(create.replaces_task_id, "k1")
        self.assertEqual(create.calendar_id, "primary")
        self.assertNotEqual(create.op_id, op.op_id)


if __name__ == "__main__":
    unittest.main()
