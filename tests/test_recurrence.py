import unittest

from tasksync.recurrence import describe_rrule, parse_recurrence


class RecurrenceTests(unittest.TestCase):
    def test_supported_patterns(self) -> None:
        cases = {
            "every day": "FREQ=DAILY",
            "Every Week": "FREQ=WEEKLY",
            "every month when done": "FREQ=MONTHLY",
            "every 2 weeks": "FREQ=WEEKLY;INTERVAL=2",
            "every 1 year": "FREQ=YEARLY",
            "every mon, wed and fri": "FREQ=WEEKLY;BYDAY=MO,WE,FR",
            "every weekday": "FREQ=WEEKLY;BYDAY=MO,TU,WE,TH,FR",
        }
        for text, rrule in cases.items():
            with self.subTest(text=text):
                result = parse_recurrence(text)
                self.assertTrue(result.success)
                self.assertEqual(result.rrule, rrule)

    def test_unrecognized_patterns_fail(self) -> None:
        for text in ("", "every blue moon", "every 0 days", "sometimes"):
            with self.subTest(text=text):
                result = parse_recurrence(text)
                self.assertFalse(result.success)
                self.assertIsNone(result.rrule)

    def test_describe_rrule(self) -> None:
        self.assertEqual(describe_rrule("FREQ=WEEKLY;BYDAY=MO,FR"), "Weekly on Mon, Fri")
        self.assertEqual(describe_rrule("FREQ=DAILY"), "Every day")
        self.assertEqual(describe_rrule("FREQ=MONTHLY;INTERVAL=3"), "Every 3 months")
        self.assertEqual(describe_rrule(None), "")


if __name__ == "__main__":
    unittest.main()
