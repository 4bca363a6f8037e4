import json
import unittest
from datetime import datetime
from unittest import mock

import requests

from tasksync.exceptions import AuthorizationError, NotFoundError, StructuralBatchError, TransientGatewayError
from tasksync.gateway import (
    GoogleCalendarGateway,
    build_complete_body,
    build_event_body,
    build_restore_body,
    build_update_body,
    parse_batch_response,
)
from tasksync.models import GoogleConfig, Task
from tasksync.operations import CompleteOp, CreateOp, DeleteOp, GetOp, MoveOp, RestoreOp


def _response_part(op_id: str, status: str, body: dict | None = None) -> str:
    payload = json.dumps(body) if body is not None else ""
    return (
        "--batch_xyz\r\n"
        "Content-Type: application/http\r\n"
        f"Content-ID: <response-{op_id}>\r\n\r\n"
        f"HTTP/1.1 {status}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{payload}\r\n"
    )


class EventBodyTests(unittest.TestCase):
    def test_timed_event_body(self) -> None:
        task = Task(title="Call Mom", date="2024-05-01", time="09:00", file_path="notes.md", line_number=3)
        body = build_event_body(task, 45, (10,), "Europe/Berlin")
        self.assertEqual(body["summary"], "Call Mom")
        self.assertEqual(body["start"], {"dateTime": "2024-05-01T09:00:00", "timeZone": "Europe/Berlin"})
        self.assertEqual(body["end"], {"dateTime": "2024-05-01T09:45:00", "timeZone": "Europe/Berlin"})
        self.assertEqual(body["reminders"], {"useDefault": False, "overrides": [{"method": "popup", "minutes": 10}]})
        self.assertIn("notes.md", body["description"])
        self.assertNotIn("recurrence", body)

    def test_all_day_recurring_event_body(self) -> None:
        task = Task(title="Gym", date="2024-05-31", recurrence_rule="FREQ=WEEKLY;BYDAY=FR")
        body = build_event_body(task, 30, (), "UTC")
        self.assertEqual(body["start"], {"date": "2024-05-31"})
        self.assertEqual(body["end"], {"date": "2024-06-01"})
        self.assertEqual(body["recurrence"], ["RRULE:FREQ=WEEKLY;BYDAY=FR"])

    def test_update_preserves_remote_fields(self) -> None:
        task = Task(title="Call Mom", date="2024-05-02", time="10:00")
        existing = {
            "id": "evt-1",
            "location": "Kitchen",
            "description": "Ask about the garden",
            "recurrence": ["RRULE:FREQ=DAILY"],
        }
        body = build_update_body(task, existing, 30, (5,), "UTC")
        self.assertEqual(body["location"], "Kitchen")
        self.assertEqual(body["description"], "Ask about the garden")
        self.assertEqual(body["start"]["dateTime"], "2024-05-02T10:00:00")
        self.assertNotIn("recurrence", body)

    def test_update_refreshes_generated_description(self) -> None:
        task = Task(title="Call Mom", date="2024-05-02", file_path="b.md", line_number=8)
        existing = {"description": "Source: a.md\nLine: 1\n\nSynced by tasksync"}
        body = build_update_body(task, existing, 30, (), "UTC")
        self.assertIn("b.md", body["description"])

    def test_complete_body(self) -> None:
        body = build_complete_body({"summary": "Call Mom"}, "ignored", now=datetime(2024, 5, 1, 18, 5))
        self.assertEqual(body, {"summary": "Call Mom - Completed 05-01-2024, 18:05"})

    def test_restore_body_drops_identity_and_guests(self) -> None:
        snapshot = {
            "id": "e1",
            "etag": '"3"',
            "summary": "Call Mom",
            "location": "Home",
            "attendees": [{"email": "mom@example.com"}],
            "hangoutLink": "https://meet.example/abc",
            "start": {"dateTime": "2024-05-01T09:00:00", "timeZone": "UTC"},
        }
        task = Task(title="Call Mom", date="2024-05-01", time="09:00")
        body = build_restore_body(snapshot, task, 30, (10,), "UTC")
        self.assertEqual(sorted(body), ["location", "start", "summary"])

        rebuilt = build_restore_body(None, task, 30, (10,), "UTC")
        self.assertEqual(rebuilt, build_event_body(task, 30, (10,), "UTC"))


class BatchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.session = mock.Mock()
        self.gateway = GoogleCalendarGateway(GoogleConfig(access_token="token-1"), session=self.session)

    def test_batch_body_parts(self) -> None:
        ops = [
            CreateOp(calendar_id="primary", task_id="k1", task=Task(title="A", date="2024-05-01")),
            DeleteOp(calendar_id="primary", task_id="k2", event_id="e2"),
            MoveOp(calendar_id="primary", task_id="k3", event_id="e3", destination_calendar_id="work@group"),
            CompleteOp(calendar_id="primary", task_id="k4", event_id="e4", title="D"),
            GetOp(calendar_id="primary", task_id="k5", event_id="e5"),
            RestoreOp(calendar_id="primary", task_id="k6", snapshot_id="s6", event={"summary": "Old call"}),
        ]
        body = self.gateway.build_batch_body(ops, "b1")
        self.assertTrue(body.endswith("--b1--"))
        self.assertEqual(body.count("--b1\r\n"), 6)
        self.assertIn('{"summary": "Old call"}', body)
        for op in ops:
            self.assertIn(f"Content-ID: <{op.op_id}>", body)
        self.assertIn("POST /calendar/v3/calendars/primary/events HTTP/1.1", body)
        self.assertIn("DELETE /calendar/v3/calendars/primary/events/e2 HTTP/1.1", body)
        self.assertIn("/events/e3/move?destination=work%40group HTTP/1.1", body)
        self.assertIn("PATCH /calendar/v3/calendars/primary/events/e4 HTTP/1.1", body)
        self.assertIn("GET /calendar/v3/calendars/primary/events/e5 HTTP/1.1", body)

    def test_parse_batch_response(self) -> None:
        ops = [
            CreateOp(calendar_id="primary", task_id="k1", task=Task(title="A", date="2024-05-01")),
            DeleteOp(calendar_id="primary", task_id="k2", event_id="e2"),
            GetOp(calendar_id="primary", task_id="k3", event_id="e3"),
        ]
        text = (
            _response_part(ops[0].op_id, "200 OK", {"id": "new-1"})
            + _response_part(ops[1].op_id, "404 Not Found", {"error": {"code": 404, "message": "Not Found"}})
            + "--batch_xyz--"
        )
        results = parse_batch_response(text, ops)
        self.assertEqual([r.status for r in results], [200, 404, 500])
        self.assertEqual(results[0].body, {"id": "new-1"})
        self.assertEqual(results[1].error, "Not Found")
        self.assertFalse(results[2].success)
        self.assertEqual(results[2].error, "No response received for operation")

    def test_execute_batch_posts_multipart(self) -> None:
        op = CreateOp(calendar_id="primary", task_id="k1", task=Task(title="A", date="2024-05-01"))
        self.session.post.return_value = mock.Mock(
            status_code=200, text=_response_part(op.op_id, "200 OK", {"id": "new-1"}) + "--batch_xyz--"
        )
        response = self.gateway.execute_batch([op])
        self.assertFalse(response.batch_failed)
        self.assertEqual(response.results[0].body["id"], "new-1")
        _, kwargs = self.session.post.call_args
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer token-1")
        self.assertTrue(kwargs["headers"]["Content-Type"].startswith("multipart/mixed; boundary="))

    def test_execute_batch_rejects_mixed_calendars(self) -> None:
        ops = [
            DeleteOp(calendar_id="primary", task_id="k1", event_id="e1"),
            DeleteOp(calendar_id="work", task_id="k2", event_id="e2"),
        ]
        with self.assertRaises(StructuralBatchError):
            self.gateway.execute_batch(ops)
        self.session.post.assert_not_called()

    def test_execute_batch_reports_whole_batch_failures(self) -> None:
        op = DeleteOp(calendar_id="primary", task_id="k1", event_id="e1")
        self.session.post.return_value = mock.Mock(status_code=503, text="")
        response = self.gateway.execute_batch([op])
        self.assertTrue(response.batch_failed)
        self.assertEqual(response.batch_status, 503)

        self.session.post.side_effect = requests.ConnectionError("reset")
        response = self.gateway.execute_batch([op])
        self.assertTrue(response.batch_failed)
        self.assertIsNone(response.batch_status)
        self.assertIn("reset", response.batch_error)


class SingleRequestTests(unittest.TestCase):
    def test_missing_token_is_unauthorized(self) -> None:
        gateway = GoogleCalendarGateway(GoogleConfig(), session=mock.Mock())
        with self.assertRaises(AuthorizationError):
            gateway.list_calendars()

    def test_list_calendars_puts_primary_first(self) -> None:
        session = mock.Mock()
        session.request.return_value = mock.Mock(
            status_code=200,
            content=b"{}",
            json=mock.Mock(
                return_value={
                    "items": [
                        {"id": "b", "summary": "Work"},
                        {"id": "a", "summary": "Zed", "primary": True},
                    ]
                }
            ),
        )
        gateway = GoogleCalendarGateway(GoogleConfig(), token_provider=lambda: "t", session=session)
        self.assertEqual([c.calendar_id for c in gateway.list_calendars()], ["a", "b"])

    def test_error_statuses_are_mapped(self) -> None:
        session = mock.Mock()
        gateway = GoogleCalendarGateway(GoogleConfig(access_token="t"), session=session)
        session.request.return_value = mock.Mock(status_code=404, content=b"")
        with self.assertRaises(NotFoundError):
            gateway.get_event("primary", "e1")
        session.request.side_effect = requests.Timeout("slow")
        with self.assertRaises(TransientGatewayError):
            gateway.get_event("primary", "e1")


if __name__ == "__main__":
    unittest.main()
