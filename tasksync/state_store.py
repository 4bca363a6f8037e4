from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tasksync.models import SyncLogEntry, SyncState

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            changes_applied INTEGER NOT NULL,
            pending_decisions INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_log (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            entry_id TEXT NOT NULL UNIQUE,
            batch_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            operation TEXT NOT NULL,
            outcome TEXT NOT NULL,
            success INTEGER NOT NULL,
            task_id TEXT,
            title TEXT,
            calendar_id TEXT,
            event_id TEXT,
            status INTEGER,
            error TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sync_log_batch ON sync_log(batch_id);

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # ------------------------------------------------------------------
    # Sync state
    # ------------------------------------------------------------------

    def load_state(self, *, log_limit: int = 500) -> SyncState:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT payload_json FROM sync_state WHERE id = 1").fetchone()
                log_rows = conn.execute(
                    """
                    SELECT entry_id, batch_id, created_at, operation, outcome, success,
                           task_id, title, calendar_id, event_id, status, error
                    FROM sync_log
                    ORDER BY seq DESC
                    LIMIT ?
                    """,
                    (max(1, log_limit),),
                ).fetchall()
        payload = json.loads(row["payload_json"]) if row else {}
        state = SyncState.from_dict(payload)
        state.sync_log = [SyncLogEntry.from_dict(dict(item)) for item in reversed(log_rows)]
        return state

    def save_state(self, state: SyncState, *, log_limit: int = 500) -> None:
        """Write the state blob and its log rows in one transaction."""
        payload = json.dumps(state.to_dict(include_log=False), ensure_ascii=False, sort_keys=True)
        rows = [
            (
                entry.entry_id,
                entry.batch_id,
                entry.created_at or _utc_now(),
                entry.operation,
                entry.outcome,
                1 if entry.success else 0,
                entry.task_id,
                entry.title,
                entry.calendar_id,
                entry.event_id,
                entry.status,
                entry.error,
            )
            for entry in state.sync_log
        ]
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sync_state(id, payload_json, updated_at)
                    VALUES (1, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        payload_json = excluded.payload_json,
                        updated_at = excluded.updated_at
                    """,
                    (payload, _utc_now()),
                )
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO sync_log(
                        entry_id, batch_id, created_at, operation, outcome, success,
                        task_id, title, calendar_id, event_id, status, error
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                conn.execute(
                    """
                    DELETE FROM sync_log
                    WHERE seq NOT IN (SELECT seq FROM sync_log ORDER BY seq DESC LIMIT ?)
                    """,
                    (max(1, log_limit),),
                )
        logger.debug("Saved sync state with %d records", len(state.synced_tasks))

    def recent_sync_log(self, limit: int = 100, batch_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if batch_id is None:
                    rows = conn.execute(
                        """
                        SELECT entry_id, batch_id, created_at, operation, outcome, success,
                               task_id, title, calendar_id, event_id, status, error
                        FROM sync_log
                        ORDER BY seq DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT entry_id, batch_id, created_at, operation, outcome, success,
                               task_id, title, calendar_id, event_id, status, error
                        FROM sync_log
                        WHERE batch_id = ?
                        ORDER BY seq DESC
                        LIMIT ?
                        """,
                        (str(batch_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["success"] = bool(item["success"])
            output.append(item)
        return output

    # ------------------------------------------------------------------
    # Run history
    # ------------------------------------------------------------------

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        pending_decisions: int,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, changes_applied,
                                          pending_decisions)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, duration_ms, changes_applied, pending_decisions),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        return self.record_sync_run(
            trigger=trigger,
            status="running",
            message=message,
            duration_ms=0,
            changes_applied=0,
            pending_decisions=0,
        )

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        pending_decisions: int,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE sync_runs
                    SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, pending_decisions = ?
                    WHERE id = ?
                    """,
                    (
                        str(status),
                        str(message),
                        int(duration_ms),
                        int(changes_applied),
                        int(pending_decisions),
                        int(run_id),
                    ),
                )
                conn.commit()

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, changes_applied, pending_decisions
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
