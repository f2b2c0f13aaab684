from __future__ import annotations

import json
import sqlite3
import threading
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable

from calsync.memo_meta import parse_memo
from calsync.models import (
    SOURCE_MANUAL,
    SOURCE_REMOTE,
    CalendarMetadata,
    Event,
    normalize_calendar_ref,
    parse_iso_date,
)

EVENT_COLUMNS = (
    "id",
    "date",
    "end_date",
    "title",
    "memo",
    "start_time",
    "end_time",
    "color",
    "external_uid",
    "calendar_ref",
    "etag",
    "source",
    "extensions_json",
)

EVENT_PLACEHOLDERS = ", ".join("?" for _ in EVENT_COLUMNS)
RUN_COLUMNS = "id, run_at, trigger, status, message, duration_ms, synced, deleted, calendars_failed"
UPDATABLE_FIELDS = {
    "date",
    "end_date",
    "title",
    "memo",
    "start_time",
    "end_time",
    "color",
    "external_uid",
    "calendar_ref",
    "etag",
    "source",
    "extensions",
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _audit_entry(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["details"] = json.loads(item.pop("details_json") or "{}")
    return item


def _column_value(field: str, value: Any) -> tuple[str, Any]:
    if field == "extensions":
        return "extensions_json", json.dumps(list(value or []), ensure_ascii=False)
    if field in {"date", "end_date"}:
        return field, value.isoformat() if isinstance(value, date) else (value or None)
    if field == "external_uid":
        return field, value or None
    return field, value


def _event_row(event: Event) -> tuple[Any, ...]:
    return (
        event.id,
        event.date.isoformat(),
        event.end_date.isoformat() if event.end_date else None,
        event.title,
        event.memo,
        event.start_time,
        event.end_time,
        event.color,
        event.external_uid or None,
        normalize_calendar_ref(event.calendar_ref),
        event.etag,
        event.source,
        json.dumps(event.extensions, ensure_ascii=False),
    )


def _row_to_event(row: sqlite3.Row) -> Event:
    memo, meta = parse_memo(row["memo"])
    end_date = parse_iso_date(row["end_date"])
    event_date = parse_iso_date(row["date"])
    if end_date is None and meta.get("endDate"):
        end_date = parse_iso_date(meta["endDate"])
    if end_date is not None and event_date is not None and end_date <= event_date:
        end_date = None
    return Event(
        id=row["id"],
        date=event_date,
        end_date=end_date,
        title=row["title"] or "",
        memo=memo,
        start_time=row["start_time"] or "",
        end_time=row["end_time"] or "",
        color=row["color"],
        external_uid=row["external_uid"] or "",
        calendar_ref=row["calendar_ref"] or "",
        etag=row["etag"] or "",
        source=row["source"],
        extensions=json.loads(row["extensions_json"] or "[]"),
    )


class StateStore:
    """sqlite-backed record store, run history, audit log and small key/value data."""

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
            synced INTEGER NOT NULL,
            deleted INTEGER NOT NULL,
            calendars_failed INTEGER NOT NULL DEFAULT 0
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_id INTEGER,
            created_at TEXT NOT NULL,
            calendar_ref TEXT NOT NULL,
            uid TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS events (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            end_date TEXT,
            title TEXT NOT NULL DEFAULT '',
            memo TEXT NOT NULL DEFAULT '',
            start_time TEXT NOT NULL DEFAULT '',
            end_time TEXT NOT NULL DEFAULT '',
            color TEXT NOT NULL,
            external_uid TEXT,
            calendar_ref TEXT NOT NULL DEFAULT '',
            etag TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL,
            extensions_json TEXT NOT NULL DEFAULT '[]',
            updated_at TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS events_uid_calendar
            ON events(external_uid, calendar_ref) WHERE external_uid IS NOT NULL;
        CREATE INDEX IF NOT EXISTS events_date ON events(date);

        CREATE TABLE IF NOT EXISTS calendars (
            url TEXT PRIMARY KEY,
            position INTEGER NOT NULL,
            payload_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS cache_entries (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def _write(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(sql, tuple(params))
                conn.commit()
                return cursor

    def _fetch(self, sql: str, params: Iterable[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            with self._connect() as conn:
                return conn.execute(sql, tuple(params)).fetchall()

    # Sync runs and audit log

    def start_sync_run(self, *, trigger: str) -> int:
        """Open a ``running`` row for a pass; returns its id for audit entries."""
        cursor = self._write(
            "INSERT INTO sync_runs(run_at, trigger, status, message, duration_ms, synced, deleted)"
            " VALUES (?, ?, 'running', '', 0, 0, 0)",
            (_utc_now(), trigger),
        )
        return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        synced: int,
        deleted: int,
        calendars_failed: int = 0,
    ) -> None:
        self._write(
            "UPDATE sync_runs SET status = ?, message = ?, duration_ms = ?, synced = ?, deleted = ?,"
            " calendars_failed = ? WHERE id = ?",
            (status, message, int(duration_ms), int(synced), int(deleted), int(calendars_failed), int(run_id)),
        )

    def get_sync_run(self, run_id: int) -> dict[str, Any] | None:
        rows = self._fetch(f"SELECT {RUN_COLUMNS} FROM sync_runs WHERE id = ?", (int(run_id),))
        return dict(rows[0]) if rows else None

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._fetch(f"SELECT {RUN_COLUMNS} FROM sync_runs ORDER BY id DESC LIMIT ?", (max(1, limit),))
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        calendar_ref: str,
        uid: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        self._write(
            "INSERT INTO audit_events(run_id, created_at, calendar_ref, uid, action, details_json)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (run_id, _utc_now(), calendar_ref, uid, action, json.dumps(details, ensure_ascii=False, default=str)),
        )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        where, params = ("", ()) if run_id is None else ("WHERE run_id = ?", (int(run_id),))
        rows = self._fetch(
            "SELECT id, run_id, created_at, calendar_ref, uid, action, details_json"
            f" FROM audit_events {where} ORDER BY id DESC LIMIT ?",
            (*params, max(1, limit)),
        )
        return [_audit_entry(row) for row in rows]

    # Event record store

    def _first_event(self, sql: str, params: Iterable[Any]) -> Event | None:
        rows = self._fetch(sql, params)
        return _row_to_event(rows[0]) if rows else None

    def get_event(self, event_id: str) -> Event | None:
        return self._first_event("SELECT * FROM events WHERE id = ?", (event_id,))

    def find_by_uid(self, external_uid: str, calendar_ref: str) -> Event | None:
        """Look up a remote record under either spelling of its calendar ref, exact spelling first."""
        ref = normalize_calendar_ref(calendar_ref)
        return self._first_event(
            "SELECT * FROM events WHERE external_uid = ? AND calendar_ref IN (?, ?)"
            " ORDER BY calendar_ref = ? DESC LIMIT 1",
            (external_uid, ref, ref + "/", ref),
        )

    def find_legacy_match(
        self,
        *,
        title: str,
        event_date: date,
        start_time: str,
        end_time: str,
        calendar_ref: str,
    ) -> Event | None:
        ref = normalize_calendar_ref(calendar_ref)
        return self._first_event(
            "SELECT * FROM events WHERE external_uid IS NULL AND source = ?"
            " AND title = ? AND date = ? AND start_time = ? AND end_time = ?"
            " AND calendar_ref IN (?, ?) ORDER BY id LIMIT 1",
            (SOURCE_REMOTE, title, event_date.isoformat(), start_time, end_time, ref, ref + "/"),
        )

    def exists_by_fields(self, event: Event) -> bool:
        ref = normalize_calendar_ref(event.calendar_ref)
        rows = self._fetch(
            "SELECT 1 FROM events WHERE title = ? AND date = ? AND start_time = ? AND end_time = ?"
            " AND calendar_ref IN (?, ?) LIMIT 1",
            (event.title, event.date.isoformat(), event.start_time, event.end_time, ref, ref + "/"),
        )
        return bool(rows)

    def insert_event(self, event: Event) -> Event:
        self._write(
            f"INSERT INTO events({', '.join(EVENT_COLUMNS)}, updated_at) VALUES ({EVENT_PLACEHOLDERS}, ?)",
            (*_event_row(event), _utc_now()),
        )
        return event

    def upsert_event(self, event: Event) -> Event:
        assignments = ", ".join(f"{column} = excluded.{column}" for column in EVENT_COLUMNS[1:])
        self._write(
            f"INSERT INTO events({', '.join(EVENT_COLUMNS)}, updated_at) VALUES ({EVENT_PLACEHOLDERS}, ?)"
            f" ON CONFLICT(id) DO UPDATE SET {assignments}, updated_at = excluded.updated_at",
            (*_event_row(event), _utc_now()),
        )
        return event

    def update_event_fields(self, event_id: str, changes: dict[str, Any]) -> None:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown event fields: {sorted(unknown)}")
        if not changes:
            return
        pairs = [_column_value(field, value) for field, value in changes.items()]
        assignments = ", ".join(f"{column} = ?" for column, _ in pairs)
        self._write(
            f"UPDATE events SET {assignments}, updated_at = ? WHERE id = ?",
            (*(value for _, value in pairs), _utc_now(), event_id),
        )

    def delete_events(self, event_ids: Iterable[str]) -> int:
        ids = [str(x) for x in event_ids]
        if not ids:
            return 0
        cursor = self._write(f"DELETE FROM events WHERE id IN ({', '.join('?' for _ in ids)})", ids)
        return int(cursor.rowcount)

    def list_events_in_range(self, start: date, end: date) -> list[Event]:
        rows = self._fetch(
            "SELECT * FROM events WHERE date <= ? AND COALESCE(end_date, date) >= ?"
            " ORDER BY date, start_time, id",
            (end.isoformat(), start.isoformat()),
        )
        return [_row_to_event(row) for row in rows]

    def list_sync_origin_in_range(self, calendar_ref: str, start: date, end: date) -> list[Event]:
        """Remote-origin rows of one calendar whose start date falls inside the window."""
        ref = normalize_calendar_ref(calendar_ref)
        rows = self._fetch(
            "SELECT * FROM events WHERE source = ? AND calendar_ref IN (?, ?)"
            " AND date >= ? AND date <= ? ORDER BY date, id",
            (SOURCE_REMOTE, ref, ref + "/", start.isoformat(), end.isoformat()),
        )
        return [_row_to_event(row) for row in rows]

    def migrate_legacy_memos(self) -> int:
        """Move legacy memo metadata blocks into real columns. Returns rows rewritten."""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT * FROM events WHERE memo LIKE '%======%'").fetchall()
                migrated = 0
                for row in rows:
                    event = _row_to_event(row)
                    if event.memo == row["memo"] and event.end_date == parse_iso_date(row["end_date"]):
                        continue
                    conn.execute(
                        "UPDATE events SET memo = ?, end_date = ?, updated_at = ? WHERE id = ?",
                        (
                            event.memo,
                            event.end_date.isoformat() if event.end_date else None,
                            _utc_now(),
                            event.id,
                        ),
                    )
                    migrated += 1
                conn.commit()
        return migrated

    # Calendar metadata

    def list_calendar_metadata(self) -> list[CalendarMetadata]:
        rows = self._fetch("SELECT payload_json FROM calendars ORDER BY position, url")
        return [CalendarMetadata.from_dict(json.loads(row["payload_json"])) for row in rows]

    def replace_calendar_metadata(self, calendars: list[CalendarMetadata]) -> None:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM calendars")
                conn.executemany(
                    "INSERT INTO calendars(url, position, payload_json, updated_at) VALUES (?, ?, ?, ?)",
                    [
                        (item.url, position, json.dumps(item.to_dict(), ensure_ascii=False), now)
                        for position, item in enumerate(calendars)
                    ],
                )
                conn.commit()

    # Key/value data

    def set_cache_entry(self, key: str, value: str) -> None:
        self._set_value("cache_entries", key, value)

    def get_cache_entry(self, key: str) -> str | None:
        return self._get_value("cache_entries", key)

    def delete_cache_entry(self, key: str) -> None:
        self._write("DELETE FROM cache_entries WHERE key = ?", (str(key),))

    def set_meta(self, key: str, value: str) -> None:
        self._set_value("app_meta", key, value)

    def get_meta(self, key: str) -> str | None:
        return self._get_value("app_meta", key)

    def _set_value(self, table: str, key: str, value: str) -> None:
        self._write(
            f"INSERT INTO {table}(key, value, updated_at) VALUES (?, ?, ?)"
            " ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (str(key), str(value), _utc_now()),
        )

    def _get_value(self, table: str, key: str) -> str | None:
        rows = self._fetch(f"SELECT value FROM {table} WHERE key = ?", (str(key),))
        return str(rows[0]["value"]) if rows else None

    def reassign_calendar(self, old_ref: str, new_ref: str) -> int:
        """Move events to another calendar ref and detach them from the remote origin."""
        old = normalize_calendar_ref(old_ref)
        cursor = self._write(
            "UPDATE events SET calendar_ref = ?, source = ?, external_uid = NULL, etag = '', updated_at = ?"
            " WHERE calendar_ref IN (?, ?)",
            (normalize_calendar_ref(new_ref), SOURCE_MANUAL, _utc_now(), old, old + "/"),
        )
        return int(cursor.rowcount)
