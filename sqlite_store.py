"""Read-only message store over a decrypted SQLite export.

Expected schema (extra columns are ignored)::

    contacts(username TEXT PRIMARY KEY, display_name TEXT, avatar_url TEXT)
    messages(session_id TEXT, create_time INTEGER, is_send INTEGER,
             local_type INTEGER, message_content, compress_content,
             sender_username TEXT)

The export holds a single account, so ``enumerate_sessions`` ignores its
argument.  There is no native aggregation layer: ``get_bulk_extras`` always
raises ``FastPathUnavailable`` and the engine scans instead.
"""

from __future__ import annotations

import itertools
import logging
import sqlite3
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from message_store import Batch, BulkCounts, SessionCounts, clean_account_id, normalize_row
from report_errors import FastPathUnavailable, StoreConnectionError, StoreError

logger = logging.getLogger(__name__)

_REQUIRED_TABLES = ("messages", "contacts")
_IN_CHUNK = 500

_ROW_COLUMNS = (
    "create_time, is_send, local_type, message_content, compress_content, sender_username"
)


def _chunks(items: list[str], size: int = _IN_CHUNK) -> Iterator[list[str]]:
    it = iter(items)
    while chunk := list(itertools.islice(it, size)):
        yield chunk


_LOCAL_DAY = "strftime('%Y-%m-%d', create_time, 'unixepoch', 'localtime')"


def _window_clause(begin_ts: int, end_ts: int) -> tuple[str, list[int]]:
    # Rows outside SQLite's date range have no local day and are skipped
    clause = f" AND create_time > 0 AND {_LOCAL_DAY} IS NOT NULL"
    params: list[int] = []
    if begin_ts > 0:
        clause += " AND create_time >= ?"
        params.append(begin_ts)
    if end_ts > 0:
        clause += " AND create_time <= ?"
        params.append(end_ts)
    return clause, params


class SqliteMessageStore:
    """Message store backed by a SQLite file, opened read-only."""

    def __init__(self, db_path: Path | str, self_ids: tuple[str, ...] = ()):
        self.db_path = Path(db_path)
        self.self_ids = self_ids
        self._conn = self._connect()
        self._cursors: dict[int, tuple[sqlite3.Cursor, int]] = {}
        self._next_handle = itertools.count(1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        if not self.db_path.exists():
            raise StoreConnectionError(f"Chat history database not found at {self.db_path}.")
        try:
            conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
            conn.row_factory = sqlite3.Row
            tables = {
                r["name"]
                for r in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
        except sqlite3.DatabaseError as e:
            raise StoreConnectionError(f"Failed to open {self.db_path}: {e}") from e

        missing = [t for t in _REQUIRED_TABLES if t not in tables]
        if missing:
            conn.close()
            raise StoreConnectionError(
                f"{self.db_path} is not a decrypted chat export (missing tables: {', '.join(missing)})."
            )
        return conn

    def close(self) -> None:
        for cursor, _ in self._cursors.values():
            cursor.close()
        self._cursors.clear()
        self._conn.close()

    def __enter__(self) -> "SqliteMessageStore":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _query(self, sql: str, params: list | tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Query failed: {e}") from e

    # ------------------------------------------------------------------
    # Sessions and contacts
    # ------------------------------------------------------------------

    def enumerate_sessions(self, account_id: str) -> list[str]:
        rows = self._query(
            """
            SELECT session_id, MAX(create_time) AS latest
            FROM messages
            WHERE session_id IS NOT NULL AND session_id != ''
            GROUP BY session_id
            ORDER BY latest DESC
            """
        )
        return [r["session_id"] for r in rows]

    def resolve_display_name(self, session_id: str) -> str:
        rows = self._query(
            "SELECT display_name FROM contacts WHERE username = ?", (session_id,)
        )
        if rows and rows[0]["display_name"]:
            return rows[0]["display_name"]
        return session_id

    def resolve_avatar(self, session_id: str) -> str | None:
        rows = self._query("SELECT avatar_url FROM contacts WHERE username = ?", (session_id,))
        if not rows:
            return None
        return rows[0]["avatar_url"] or None

    def count_messages(self, session_id: str) -> int:
        rows = self._query("SELECT COUNT(*) AS n FROM messages WHERE session_id = ?", (session_id,))
        return int(rows[0]["n"])

    # ------------------------------------------------------------------
    # Cursors
    # ------------------------------------------------------------------

    def open_cursor(
        self,
        session_id: str,
        batch_size: int,
        ascending: bool,
        begin_ts: int,
        end_ts: int,
    ) -> int:
        clause, params = _window_clause(begin_ts, end_ts)
        order = "ASC" if ascending else "DESC"
        sql = (
            f"SELECT {_ROW_COLUMNS} FROM messages WHERE session_id = ?{clause} "
            f"ORDER BY create_time {order}, rowid {order}"
        )
        try:
            cursor = self._conn.execute(sql, [session_id, *params])
        except sqlite3.Error as e:
            raise StoreError(f"Cannot open cursor for {session_id}: {e}") from e
        handle = next(self._next_handle)
        self._cursors[handle] = (cursor, max(1, batch_size))
        return handle

    def fetch_batch(self, handle: int) -> Batch:
        try:
            cursor, batch_size = self._cursors[handle]
        except KeyError:
            raise StoreError(f"Unknown or closed cursor {handle}.") from None
        try:
            raw_rows = cursor.fetchmany(batch_size)
        except sqlite3.Error as e:
            raise StoreError(f"Fetch failed on cursor {handle}: {e}") from e
        rows = [normalize_row(dict(r), self.self_ids) for r in raw_rows]
        return Batch(rows=rows, has_more=len(raw_rows) == batch_size)

    def close_cursor(self, handle: int) -> None:
        entry = self._cursors.pop(handle, None)
        if entry is not None:
            entry[0].close()

    # ------------------------------------------------------------------
    # Bulk queries
    # ------------------------------------------------------------------

    def get_bulk_daily_counts(
        self, session_ids: list[str], begin_ts: int, end_ts: int
    ) -> BulkCounts:
        clause, window = _window_clause(begin_ts, end_ts)
        sent_expr, sent_params = self._sent_expression()
        counts = BulkCounts()
        for chunk in _chunks(session_ids):
            marks = ",".join("?" * len(chunk))
            for r in self._query(
                f"""
                SELECT {_LOCAL_DAY} AS day,
                       COUNT(*) AS n
                FROM messages
                WHERE session_id IN ({marks}){clause}
                GROUP BY day
                """,
                [*chunk, *window],
            ):
                counts.daily[r["day"]] = counts.daily.get(r["day"], 0) + r["n"]

            for r in self._query(
                f"""
                SELECT session_id,
                       {sent_expr} AS sent,
                       CAST(strftime('%m', create_time, 'unixepoch', 'localtime') AS INTEGER) AS month,
                       COUNT(*) AS n
                FROM messages
                WHERE session_id IN ({marks}){clause}
                GROUP BY session_id, sent, month
                """,
                [*sent_params, *chunk, *window],
            ):
                session = counts.sessions.setdefault(r["session_id"], SessionCounts())
                if r["sent"] == 1:
                    session.sent += r["n"]
                else:
                    session.received += r["n"]
                session.monthly[r["month"]] = session.monthly.get(r["month"], 0) + r["n"]

        counts.daily = dict(sorted(counts.daily.items()))
        counts.total = sum(counts.daily.values())
        return counts

    def _sent_expression(self) -> tuple[str, list[str]]:
        """SQL for "sent by the account", matching normalize_row's fallback."""
        lowered = [s.lower() for s in self.self_ids if s]
        marks = ",".join("?" * len(lowered))
        return f"COALESCE(is_send, lower(sender_username) IN ({marks}), 0)", lowered

    def get_bulk_extras(
        self,
        session_ids: list[str],
        begin_ts: int,
        end_ts: int,
        peak_day_begin_ts: int,
        peak_day_end_ts: int,
    ) -> None:
        raise FastPathUnavailable("SQLite exports have no pre-aggregated statistics")

    def get_available_years(self, session_ids: list[str]) -> list[int]:
        years: set[int] = set()
        clause, _ = _window_clause(0, 0)
        for chunk in _chunks(session_ids):
            marks = ",".join("?" * len(chunk))
            for r in self._query(
                f"""
                SELECT DISTINCT CAST(strftime('%Y', create_time, 'unixepoch', 'localtime') AS INTEGER) AS year
                FROM messages
                WHERE session_id IN ({marks}){clause}
                """,
                chunk,
            ):
                years.add(r["year"])
        return sorted(years, reverse=True)


def open_store(db_path: Path | str, account_id: str) -> SqliteMessageStore:
    """Open the export at *db_path* for *account_id*."""
    self_ids = tuple(dict.fromkeys([account_id, clean_account_id(account_id)]))
    logger.debug("Opening chat export %s for %s", db_path, account_id)
    return SqliteMessageStore(db_path, self_ids=self_ids)
