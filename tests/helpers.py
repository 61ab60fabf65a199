"""Shared test helpers for chat report tests.

Regular functions (not fixtures) that can be imported by any test module.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from accumulators import day_key
from message_store import Batch, BulkCounts, LocalType, MessageRow, SessionCounts, timestamp_in_range
from report_errors import StoreError


def ts(year: int, month: int, day: int, hour: int = 12, minute: int = 0, second: int = 0) -> int:
    """Epoch seconds of a local wall-clock time."""
    return int(datetime(year, month, day, hour, minute, second).timestamp())


def make_row(
    create_time: int,
    is_self: bool = False,
    text: str | bytes | None = "",
    local_type: int = LocalType.TEXT,
    compressed: str | bytes | None = None,
    sender: str | None = None,
) -> MessageRow:
    """Build a normalized message row."""
    return MessageRow(
        create_time=create_time,
        is_self=is_self,
        local_type=int(local_type),
        content=text,
        compressed_content=compressed,
        sender=sender,
    )


class FakeMessageStore:
    """In-memory MessageStore with switchable failures.

    Args:
        messages: Session id -> rows (any order).
        names: Session id -> display name.
        avatars: Session id -> avatar url.
        extras: Returned by ``get_bulk_extras`` (an ExtrasPayload, raw dict or None).
        extras_error: Raised by ``get_bulk_extras`` instead.
        cursor_errors: Sessions whose ``open_cursor`` raises StoreError.
        fetch_errors: Sessions whose second ``fetch_batch`` raises.
        daily_error: Raised by ``get_bulk_daily_counts``.
        extra_sessions: Additional ids returned by ``enumerate_sessions``.
    """

    def __init__(
        self,
        messages: dict[str, list[MessageRow]] | None = None,
        names: dict[str, str] | None = None,
        avatars: dict[str, str] | None = None,
        extras=None,
        extras_error: Exception | None = None,
        cursor_errors: set[str] | None = None,
        fetch_errors: set[str] | None = None,
        daily_error: Exception | None = None,
        extra_sessions: list[str] | None = None,
    ):
        self.messages = messages or {}
        self.names = names or {}
        self.avatars = avatars or {}
        self.extras = extras
        self.extras_error = extras_error
        self.cursor_errors = cursor_errors or set()
        self.fetch_errors = fetch_errors or set()
        self.daily_error = daily_error
        self.extra_sessions = extra_sessions or []
        self.open_handles: dict[int, dict] = {}
        self.opened: list[str] = []
        self.extras_calls: list[tuple] = []
        self.closed = False
        self._next = 0

    def enumerate_sessions(self, account_id: str) -> list[str]:
        return list(self.messages) + list(self.extra_sessions)

    def _window(self, session_id: str, begin_ts: int, end_ts: int) -> list[MessageRow]:
        return [
            r for r in self.messages.get(session_id, [])
            if (begin_ts <= 0 or r.create_time >= begin_ts)
            and (end_ts <= 0 or r.create_time <= end_ts)
        ]

    def open_cursor(self, session_id, batch_size, ascending, begin_ts, end_ts):
        if session_id in self.cursor_errors:
            raise StoreError(f"cursor failed for {session_id}")
        rows = sorted(self._window(session_id, begin_ts, end_ts),
                      key=lambda r: r.create_time, reverse=not ascending)
        self._next += 1
        self.open_handles[self._next] = {
            "session_id": session_id, "rows": rows, "pos": 0, "size": batch_size, "fetches": 0,
        }
        self.opened.append(session_id)
        return self._next

    def fetch_batch(self, handle) -> Batch:
        cursor = self.open_handles[handle]
        cursor["fetches"] += 1
        if cursor["session_id"] in self.fetch_errors and cursor["fetches"] > 1:
            raise StoreError(f"fetch failed for {cursor['session_id']}")
        start = cursor["pos"]
        chunk = cursor["rows"][start:start + cursor["size"]]
        cursor["pos"] = start + len(chunk)
        return Batch(rows=chunk, has_more=cursor["pos"] < len(cursor["rows"]))

    def close_cursor(self, handle) -> None:
        self.open_handles.pop(handle, None)

    def get_bulk_daily_counts(self, session_ids, begin_ts, end_ts) -> BulkCounts:
        if self.daily_error is not None:
            raise self.daily_error
        counts = BulkCounts()
        for session_id in session_ids:
            for row in self._window(session_id, begin_ts, end_ts):
                if not timestamp_in_range(row.create_time):
                    continue
                key = day_key(row.create_time)
                counts.daily[key] = counts.daily.get(key, 0) + 1
                session = counts.sessions.setdefault(session_id, SessionCounts())
                if row.is_self:
                    session.sent += 1
                else:
                    session.received += 1
                month = datetime.fromtimestamp(row.create_time).month
                session.monthly[month] = session.monthly.get(month, 0) + 1
        counts.daily = dict(sorted(counts.daily.items()))
        counts.total = sum(counts.daily.values())
        return counts

    def get_bulk_extras(self, session_ids, begin_ts, end_ts, peak_day_begin_ts, peak_day_end_ts):
        self.extras_calls.append((tuple(session_ids), begin_ts, end_ts, peak_day_begin_ts, peak_day_end_ts))
        if self.extras_error is not None:
            raise self.extras_error
        return self.extras

    def resolve_display_name(self, session_id: str) -> str:
        return self.names.get(session_id, session_id)

    def resolve_avatar(self, session_id: str):
        return self.avatars.get(session_id)

    def count_messages(self, session_id: str) -> int:
        return len(self.messages.get(session_id, []))

    def close(self) -> None:
        self.closed = True


def create_export_db(path: Path, contacts: list[tuple], messages: list[tuple]) -> Path:
    """Write a decrypted-export SQLite file.

    Args:
        contacts: (username, display_name, avatar_url) tuples.
        messages: (session_id, create_time, is_send, local_type,
            message_content, compress_content, sender_username) tuples.
    """
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE contacts (username TEXT PRIMARY KEY, display_name TEXT, avatar_url TEXT);
        CREATE TABLE messages (
            session_id TEXT, create_time INTEGER, is_send INTEGER, local_type INTEGER,
            message_content, compress_content, sender_username TEXT
        );
        """
    )
    conn.executemany("INSERT INTO contacts VALUES (?, ?, ?)", contacts)
    conn.executemany("INSERT INTO messages VALUES (?, ?, ?, ?, ?, ?, ?)", messages)
    conn.commit()
    conn.close()
    return path


ACCOUNT_ID = "wxid_me_ab12"


def sample_messages() -> dict[str, list[MessageRow]]:
    """Two private contacts with a 3-day streak, a midnight chat and a repeated phrase.

    2024 totals: alice 6 (3 sent / 3 received), bob 2 (1 / 1).  Bob also has
    one message on 2023-12-31.
    """
    return {
        "alice": [
            make_row(ts(2024, 1, 1, 9, 0), text="good morning"),
            make_row(ts(2024, 1, 1, 9, 5), is_self=True, text="hello world"),
            make_row(ts(2024, 1, 2, 23, 30), text="are you up"),
            make_row(ts(2024, 1, 2, 23, 40), is_self=True, text="hello world"),
            make_row(ts(2024, 1, 3, 2, 0), is_self=True, text="still awake"),
            make_row(ts(2024, 1, 10, 12, 0), text="", local_type=LocalType.IMAGE),
        ],
        "bob": [
            make_row(ts(2023, 12, 31, 22, 0), text="see you next year"),
            make_row(ts(2024, 3, 5, 10, 0), is_self=True, text="hi bob"),
            make_row(ts(2024, 3, 5, 10, 1), text="hi there"),
        ],
    }


def sample_store(**kwargs) -> FakeMessageStore:
    """FakeMessageStore over sample_messages() plus non-private sessions."""
    kwargs.setdefault("messages", sample_messages())
    kwargs.setdefault("names", {"alice": "Alice", "bob": "Bob", "wxid_me": "Me"})
    kwargs.setdefault("avatars", {"alice": "https://img.example/alice.png", "wxid_me": "https://img.example/me.png"})
    kwargs.setdefault("extra_sessions", ["family@chatroom", "filehelper", "gh_news"])
    return FakeMessageStore(**kwargs)


def sample_export_db(path: Path) -> Path:
    """sample_messages() written as a decrypted export, plus one group chat."""
    contacts = [
        ("alice", "Alice", "https://img.example/alice.png"),
        ("bob", "Bob", None),
        ("wxid_me", "Me", "https://img.example/me.png"),
    ]
    rows = []
    for session_id, messages in sample_messages().items():
        for m in messages:
            sender = "wxid_me" if m.is_self else session_id
            rows.append((session_id, m.create_time, int(m.is_self), m.local_type, m.content, None, sender))
    rows.append(("family@chatroom", ts(2024, 2, 1), 0, 1, "group hello", None, "carol"))
    return create_export_db(path, contacts, rows)
