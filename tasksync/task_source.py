from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Protocol

from tasksync.models import Task
from tasksync.recurrence import parse_recurrence

logger = logging.getLogger(__name__)

CHECKBOX_PATTERN = re.compile(r"^\s*-\s*\[([ xX])\]\s*")
DATE_PATTERN = re.compile(r"📅\s*(\d{4}-\d{2}-\d{2})")
TIME_PATTERN = re.compile(r"⏰\s*(\d{1,2}):(\d{2})")
NO_SYNC_MARKER = "🚫"
TAG_PATTERN = re.compile(r"#([\w-]+)")
REMINDER_PATTERN = re.compile(r"🔔\s*([\d,\s]+)")
DURATION_PATTERN = re.compile(r"⏱️?\s*(?:(\d+)h)?(?:(\d+)m?)?")
_MARKERS = "📅⏰🚫🔔⏱✅⏫🔼🔽⏬➕🛫⏳#"
RECURRENCE_PATTERN = re.compile(rf"🔁\s*([^{_MARKERS}]+)")

STRIP_PATTERNS = [
    re.compile(r"📅\s*\d{4}-\d{2}-\d{2}"),
    re.compile(r"⏰\s*\d{1,2}:\d{2}"),
    re.compile(r"🚫"),
    re.compile(r"✅\s*\d{4}-\d{2}-\d{2}"),
    re.compile(r"⏫|🔼|🔽|⏬"),
    re.compile(rf"🔁\s*[^{_MARKERS}]+"),
    re.compile(r"➕\s*\d{4}-\d{2}-\d{2}"),
    re.compile(r"🛫\s*\d{4}-\d{2}-\d{2}"),
    re.compile(r"⏳\s*\d{4}-\d{2}-\d{2}"),
    re.compile(r"🔔\s*[\d,\s]+"),
    re.compile(r"⏱️?\s*(?:\d+h)?(?:\d+m?)?"),
    re.compile(r"#[\w-]+"),
]


class TaskSource(Protocol):
    def scan(self) -> list[Task]:
        ...


@dataclass
class ParsedLine:
    title: str
    date: str
    time: str | None = None
    completed: bool = False
    tags: set[str] = field(default_factory=set)
    reminder_minutes: list[int] | None = None
    duration_minutes: int | None = None
    recurrence_text: str | None = None


def parse_task_line(line: str) -> ParsedLine | None:
    """Parse one Markdown checkbox line; ``None`` when it is not a syncable task."""
    checkbox = CHECKBOX_PATTERN.match(line)
    if not checkbox or NO_SYNC_MARKER in line:
        return None
    date_match = DATE_PATTERN.search(line)
    if not date_match:
        return None
    try:
        date.fromisoformat(date_match.group(1))
    except ValueError:
        logger.debug("Skipping task with invalid date: %s", line.strip())
        return None

    time_text = None
    time_match = TIME_PATTERN.search(line)
    if time_match:
        hours, minutes = int(time_match.group(1)), int(time_match.group(2))
        if hours > 23 or minutes > 59:
            logger.debug("Skipping task with invalid time: %s", line.strip())
            return None
        time_text = f"{hours:02d}:{minutes:02d}"

    reminders = None
    reminder_match = REMINDER_PATTERN.search(line)
    if reminder_match:
        values = [int(x) for x in reminder_match.group(1).split(",") if x.strip().isdigit() and int(x) > 0]
        reminders = values or None

    duration = None
    if "⏱" in line:
        duration_match = DURATION_PATTERN.search(line, line.index("⏱"))
        if duration_match:
            total = int(duration_match.group(1) or 0) * 60 + int(duration_match.group(2) or 0)
            duration = total or None

    recurrence_match = RECURRENCE_PATTERN.search(line)
    title = CHECKBOX_PATTERN.sub("", line, count=1).strip()
    for pattern in STRIP_PATTERNS:
        title = pattern.sub("", title)

    return ParsedLine(
        title=" ".join(title.split()),
        date=date_match.group(1),
        time=time_text,
        completed=checkbox.group(1).lower() == "x",
        tags={tag.lower() for tag in TAG_PATTERN.findall(line)},
        reminder_minutes=reminders,
        duration_minutes=duration,
        recurrence_text=recurrence_match.group(1).strip() if recurrence_match else None,
    )


def _normalize_path(path: str) -> str:
    return path.strip().replace("\\", "/").strip("/")


class MarkdownTaskSource:
    """Scans a directory of Markdown notes for dated checkbox tasks."""

    def __init__(self, vault_path: str | os.PathLike[str], excluded_paths: list[str] | None = None) -> None:
        self.vault_path = Path(vault_path)
        self.excluded_paths = [_normalize_path(p) for p in excluded_paths or [] if _normalize_path(p)]

    def is_excluded(self, relative_path: str) -> bool:
        normalized = _normalize_path(relative_path)
        for excluded in self.excluded_paths:
            if normalized == excluded or normalized.startswith(excluded + "/"):
                return True
        return False

    def scan(self) -> list[Task]:
        if not self.vault_path.is_dir():
            logger.warning("Vault path %s does not exist; no tasks scanned", self.vault_path)
            return []
        tasks: list[Task] = []
        for path in sorted(self.vault_path.rglob("*.md")):
            relative = path.relative_to(self.vault_path).as_posix()
            if self.is_excluded(relative):
                continue
            tasks.extend(self.scan_file(path, relative))
        logger.debug("Scanned %d tasks from %s", len(tasks), self.vault_path)
        return tasks

    def scan_file(self, path: Path, relative_path: str) -> list[Task]:
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Could not read %s: %s", path, exc)
            return []
        tasks: list[Task] = []
        for line_number, line in enumerate(content.splitlines(), start=1):
            parsed = parse_task_line(line)
            if parsed is None:
                continue
            rule = None
            if parsed.recurrence_text:
                recurrence = parse_recurrence(parsed.recurrence_text)
                if recurrence.success:
                    rule = recurrence.rrule
                else:
                    logger.debug("%s:%d %s", relative_path, line_number, recurrence.error)
            tasks.append(
                Task(
                    title=parsed.title,
                    date=parsed.date,
                    time=parsed.time,
                    file_path=relative_path,
                    line_number=line_number,
                    tags=parsed.tags,
                    completed=parsed.completed,
                    recurrence_rule=rule,
                    reminder_minutes=parsed.reminder_minutes,
                    duration_minutes=parsed.duration_minutes,
                    raw_text=line,
                )
            )
        return tasks
