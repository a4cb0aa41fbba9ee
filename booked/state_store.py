from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping


logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite persistence for mirror mappings, sync history and the audit trail.

    One connection is opened per call and every call holds the store lock, so a
    single instance can be shared by the worker threads of a reconciliation run.
    """

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
        try:
            self._create_schema()
        except sqlite3.OperationalError:
            raise
        except sqlite3.DatabaseError as exc:
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            aside = self.db_path.with_name(f"{self.db_path.name}.corrupt-{stamp}")
            logger.warning("State database %s is unreadable (%s), moving it to %s", self.db_path, exc, aside)
            self.db_path.replace(aside)
            self._create_schema()

    def _create_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS mirror_mappings (
            mirror_calendar_id TEXT NOT NULL,
            source_key TEXT NOT NULL,
            source_calendar_id TEXT NOT NULL DEFAULT '',
            mirrored_uid TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (mirror_calendar_id, source_key)
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            created INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            kept INTEGER NOT NULL,
            failed INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)
                columns = {row["name"] for row in conn.execute("PRAGMA table_info(mirror_mappings)")}
                if "source_calendar_id" not in columns:
                    conn.execute(
                        "ALTER TABLE mirror_mappings ADD COLUMN source_calendar_id TEXT NOT NULL DEFAULT ''"
                    )
                    conn.commit()

    # Mapping store

    def load_mappings(self, mirror_calendar_id: str) -> dict[str, str]:
        """Return ``{source_key: mirrored_uid}`` for one mirror calendar.

        An unreadable database yields an empty mapping instead of an error; the
        reconciler then rebuilds what it can from the mirror calendar itself.
        """
        try:
            with self._lock:
                with self._connect() as conn:
                    rows = conn.execute(
                        """
                        SELECT source_key, mirrored_uid
                        FROM mirror_mappings
                        WHERE mirror_calendar_id = ?
                        """,
                        (mirror_calendar_id,),
                    ).fetchall()
        except sqlite3.Error as exc:
            logger.warning("Could not load mappings for %s, treating as empty: %s", mirror_calendar_id, exc)
            return {}
        return {str(row["source_key"]): str(row["mirrored_uid"]) for row in rows}

    def load_mapping_calendars(self, mirror_calendar_id: str) -> dict[str, str]:
        """Return ``{source_key: source_calendar_id}`` for rows that recorded one."""
        try:
            with self._lock:
                with self._connect() as conn:
                    rows = conn.execute(
                        """
                        SELECT source_key, source_calendar_id
                        FROM mirror_mappings
                        WHERE mirror_calendar_id = ? AND source_calendar_id != ''
                        """,
                        (mirror_calendar_id,),
                    ).fetchall()
        except sqlite3.Error as exc:
            logger.warning("Could not load mapping calendars for %s: %s", mirror_calendar_id, exc)
            return {}
        return {str(row["source_key"]): str(row["source_calendar_id"]) for row in rows}

    def save_mappings(
        self,
        mirror_calendar_id: str,
        mappings: Mapping[str, str],
        source_calendars: Mapping[str, str] | None = None,
    ) -> None:
        source_calendars = source_calendars or {}
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM mirror_mappings WHERE mirror_calendar_id = ?",
                    (mirror_calendar_id,),
                )
                conn.executemany(
                    """
                    INSERT INTO mirror_mappings(
                        mirror_calendar_id, source_key, source_calendar_id, mirrored_uid, created_at
                    )
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (mirror_calendar_id, key, source_calendars.get(key, ""), uid, now)
                        for key, uid in mappings.items()
                    ],
                )
                conn.commit()

    def add_mapping(
        self, mirror_calendar_id: str, source_key: str, mirrored_uid: str, source_calendar_id: str = ""
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO mirror_mappings(
                        mirror_calendar_id, source_key, source_calendar_id, mirrored_uid, created_at
                    )
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(mirror_calendar_id, source_key) DO UPDATE SET
                        source_calendar_id = excluded.source_calendar_id,
                        mirrored_uid = excluded.mirrored_uid,
                        created_at = excluded.created_at
                    """,
                    (mirror_calendar_id, source_key, source_calendar_id, mirrored_uid, _utc_now()),
                )
                conn.commit()

    def remove_mapping(self, mirror_calendar_id: str, source_key: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "DELETE FROM mirror_mappings WHERE mirror_calendar_id = ? AND source_key = ?",
                    (mirror_calendar_id, source_key),
                )
                conn.commit()

    def clear_mappings(self, mirror_calendar_id: str) -> None:
        self.save_mappings(mirror_calendar_id, {})

    # Sync history

    def record_sync_run(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        duration_ms: int,
        created: int = 0,
        deleted: int = 0,
        kept: int = 0,
        failed: int = 0,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, created, deleted, kept, failed)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), trigger, status, message, duration_ms, created, deleted, kept, failed),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms, created, deleted, kept, failed
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        return [dict(row) for row in rows]

    # Audit trail

    def record_audit_event(
        self,
        *,
        calendar_id: str,
        uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(run_id, created_at, calendar_id, uid, action, details_json)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (run_id, _utc_now(), calendar_id, uid, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, uid, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, run_id, created_at, calendar_id, uid, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
