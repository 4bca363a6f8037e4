"""Convert task recurrence text ("every 2 weeks", "every mon, wed") to RRULE bodies."""

from __future__ import annotations

import re
from dataclasses import dataclass

DAY_CODES = {
    "sunday": "SU",
    "monday": "MO",
    "tuesday": "TU",
    "wednesday": "WE",
    "thursday": "TH",
    "friday": "FR",
    "saturday": "SA",
    "sun": "SU",
    "mon": "MO",
    "tue": "TU",
    "wed": "WE",
    "thu": "TH",
    "fri": "FR",
    "sat": "SA",
}

FREQUENCIES = {
    "day": "DAILY",
    "days": "DAILY",
    "daily": "DAILY",
    "week": "WEEKLY",
    "weeks": "WEEKLY",
    "weekly": "WEEKLY",
    "month": "MONTHLY",
    "months": "MONTHLY",
    "monthly": "MONTHLY",
    "year": "YEARLY",
    "years": "YEARLY",
    "yearly": "YEARLY",
    "annually": "YEARLY",
}

WEEKDAYS = ("MO", "TU", "WE", "TH", "FR")
DAY_LABELS = {"SU": "Sun", "MO": "Mon", "TU": "Tue", "WE": "Wed", "TH": "Thu", "FR": "Fri", "SA": "Sat"}
FREQUENCY_LABELS = {"DAILY": "day", "WEEKLY": "week", "MONTHLY": "month", "YEARLY": "year"}

WHEN_DONE_PATTERN = re.compile(r"\s*when\s+done\s*$", re.IGNORECASE)
INTERVAL_PATTERN = re.compile(r"^every\s+(\d+)\s+(\w+)$")
SIMPLE_PATTERN = re.compile(r"^every\s+(\w+)$")
DAY_SPLIT_PATTERN = re.compile(r"[,\s]+")


@dataclass(frozen=True)
class RecurrenceResult:
    rrule: str | None
    description: str | None
    success: bool
    error: str = ""


def _failed(error: str = "") -> RecurrenceResult:
    return RecurrenceResult(rrule=None, description=None, success=False, error=error)


def _parse_weekdays(text: str) -> RecurrenceResult:
    if not text.startswith("every "):
        return _failed()
    words = [w for w in DAY_SPLIT_PATTERN.split(text[len("every ") :]) if w and w != "and"]
    if words == ["weekday"] or words == ["weekdays"]:
        return RecurrenceResult(
            rrule=f"FREQ=WEEKLY;BYDAY={','.join(WEEKDAYS)}",
            description="Every weekday",
            success=True,
        )
    codes = [DAY_CODES.get(word) for word in words]
    if not codes or any(code is None for code in codes):
        return _failed()
    return RecurrenceResult(
        rrule=f"FREQ=WEEKLY;BYDAY={','.join(codes)}",
        description=f"Weekly on {', '.join(word.capitalize() for word in words)}",
        success=True,
    )


def _parse_interval(text: str) -> RecurrenceResult:
    match = INTERVAL_PATTERN.match(text)
    if not match:
        return _failed()
    interval = int(match.group(1))
    word = match.group(2)
    freq = FREQUENCIES.get(word)
    if not freq or interval <= 0:
        return _failed()
    if interval == 1:
        return RecurrenceResult(rrule=f"FREQ={freq}", description=f"Every {word}", success=True)
    return RecurrenceResult(
        rrule=f"FREQ={freq};INTERVAL={interval}",
        description=f"Every {interval} {word}",
        success=True,
    )


def _parse_simple(text: str) -> RecurrenceResult:
    match = SIMPLE_PATTERN.match(text)
    if not match:
        return _failed()
    word = match.group(1)
    freq = FREQUENCIES.get(word)
    if not freq:
        return _failed()
    return RecurrenceResult(rrule=f"FREQ={freq}", description=f"Every {word}", success=True)


def parse_recurrence(text: str | None) -> RecurrenceResult:
    if not text or not text.strip():
        return _failed("Empty recurrence")
    # Completion-triggered recurrence has no calendar equivalent; treat it as fixed.
    cleaned = WHEN_DONE_PATTERN.sub("", text.strip().lower()).strip()
    for parser in (_parse_weekdays, _parse_interval, _parse_simple):
        result = parser(cleaned)
        if result.success:
            return result
    return _failed(f'Unrecognized recurrence pattern: "{text}"')


def describe_rrule(rrule: str | None) -> str:
    if not rrule:
        return ""
    parts = dict(part.split("=", 1) for part in rrule.split(";") if "=" in part)
    by_day = parts.get("BYDAY")
    if by_day:
        return "Weekly on " + ", ".join(DAY_LABELS.get(code, code) for code in by_day.split(","))
    freq = parts.get("FREQ", "")
    name = FREQUENCY_LABELS.get(freq, freq.lower())
    interval = int(parts.get("INTERVAL", "1") or 1)
    if interval == 1:
        return f"Every {name}"
    return f"Every {interval} {name}s"
