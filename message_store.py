"""Contract between the report engine and the chat-history store.

The store itself (decryption, native cursors, contact lookups) lives outside
this package.  Everything it hands back is normalized here into one fixed
schema, so the accumulators never need to know which column aliases a given
store version uses.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from report_engine import ExtrasPayload

logger = logging.getLogger(__name__)

GROUP_SUFFIX = "@chatroom"

# System and service accounts that never count as a private contact
_EXCLUDED_PREFIXES = (
    "weixin", "qqmail", "fmessage", "medianote", "floatbottle",
    "newsapp", "brandsessionholder", "brandservicesessionholder",
    "notifymessage", "opencustomerservicemsg", "notification_messages",
    "userexperience_alarm", "helper_folders", "placeholder_foldgroup",
    "@helper_folders", "@placeholder_foldgroup",
)


class LocalType(IntEnum):
    """Message kinds the reports distinguish."""

    TEXT = 1
    IMAGE = 3
    VOICE = 34
    EMOJI = 47
    QUOTE_TEXT = 244813135921


TEXT_TYPES = frozenset({LocalType.TEXT, LocalType.QUOTE_TEXT})


@dataclass(frozen=True)
class MessageRow:
    """One message as delivered by a cursor, after alias normalization."""

    create_time: int
    is_self: bool
    local_type: int
    content: str | bytes | None = None
    compressed_content: str | bytes | None = None
    sender: str | None = None

    @property
    def is_text(self) -> bool:
        return self.local_type in TEXT_TYPES


@dataclass
class Batch:
    """One fetch from an open cursor."""

    rows: list[MessageRow]
    has_more: bool


@dataclass
class SessionCounts:
    """Sent/received totals and per-month counts for one session."""

    sent: int = 0
    received: int = 0
    monthly: dict[int, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.sent + self.received


@dataclass
class BulkCounts:
    """Result of the bulk daily-count query that always runs."""

    total: int = 0
    daily: dict[str, int] = field(default_factory=dict)
    sessions: dict[str, SessionCounts] = field(default_factory=dict)

    def peak_day(self) -> tuple[str, int] | None:
        """Return the (YYYY-MM-DD, count) with the most messages; first wins ties."""
        best: tuple[str, int] | None = None
        for day, count in self.daily.items():
            if count > 0 and (best is None or count > best[1]):
                best = (day, count)
        return best


class MessageStore(Protocol):
    """Operations the engine consumes.  Failures raise ``StoreError``.

    Timestamps of 0 for ``begin_ts``/``end_ts`` mean "unbounded".
    """

    def enumerate_sessions(self, account_id: str) -> list[str]: ...

    def open_cursor(
        self,
        session_id: str,
        batch_size: int,
        ascending: bool,
        begin_ts: int,
        end_ts: int,
    ) -> Any: ...

    def fetch_batch(self, handle: Any) -> Batch: ...

    def close_cursor(self, handle: Any) -> None: ...

    def get_bulk_daily_counts(
        self, session_ids: list[str], begin_ts: int, end_ts: int
    ) -> BulkCounts: ...

    def get_bulk_extras(
        self,
        session_ids: list[str],
        begin_ts: int,
        end_ts: int,
        peak_day_begin_ts: int,
        peak_day_end_ts: int,
    ) -> ExtrasPayload | Mapping[str, Any] | None:
        """Pre-aggregated statistics, or None when the store has none.

        A plain dict (camelCase or snake_case keys) is accepted and
        normalized by ``report_engine.parse_extras``.
        """
        ...

    def resolve_display_name(self, session_id: str) -> str: ...

    def resolve_avatar(self, session_id: str) -> str | None: ...

    def count_messages(self, session_id: str) -> int: ...


# ---------------------------------------------------------------------------
# Boundary normalization
# ---------------------------------------------------------------------------

def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


def timestamp_in_range(timestamp: int) -> bool:
    """True when *timestamp* is positive and maps to a local datetime."""
    if timestamp <= 0:
        return False
    try:
        datetime.fromtimestamp(timestamp)
    except (ValueError, OverflowError, OSError):
        return False
    return True


def _to_timestamp(value: Any) -> int:
    timestamp = _to_int(value)
    if timestamp > 0 and not timestamp_in_range(timestamp):
        logger.debug("Dropping out-of-range timestamp %r", value)
        return 0
    return max(timestamp, 0)


def normalize_row(raw: Mapping[str, Any], self_ids: tuple[str, ...] = ()) -> MessageRow:
    """Map a raw store row onto MessageRow.

    Args:
        raw: Row dict as returned by the store, using any of the accepted
            column aliases.
        self_ids: The account's own ids (raw and cleaned).  Used to infer
            ``is_self`` from the sender column when the row carries no
            explicit send flag.

    Returns:
        A MessageRow.  Unparseable timestamps become 0, which every
        consumer treats as "no timestamp".
    """
    send_flag = _first_present(raw, "computed_is_send", "is_send", "isSend")
    sender = _first_present(raw, "sender_username", "sender", "talker")
    if send_flag is not None:
        is_self = _to_int(send_flag) == 1
    else:
        lowered = str(sender or "").lower()
        is_self = bool(lowered) and lowered in {s.lower() for s in self_ids if s}

    return MessageRow(
        create_time=_to_timestamp(_first_present(raw, "create_time", "createTime")),
        is_self=is_self,
        local_type=_to_int(_first_present(raw, "local_type", "type", "localType"), LocalType.TEXT),
        content=_first_present(raw, "message_content", "content", "str_content"),
        compressed_content=_first_present(raw, "compress_content", "compressed_content"),
        sender=str(sender) if sender is not None else None,
    )


def normalize_session_id(raw: Mapping[str, Any] | str) -> str:
    """Extract a session id from a session-list row or plain string."""
    if isinstance(raw, str):
        return raw
    return str(_first_present(raw, "username", "user_name", "userName") or "")


def clean_account_id(account_dir: str) -> str:
    """Strip the directory suffix a data folder adds to an account id.

    ``wxid_abc_1a2b`` -> ``wxid_abc``; ``alice_9f3c`` -> ``alice``.
    """
    trimmed = account_dir.strip()
    if not trimmed:
        return trimmed
    if trimmed.lower().startswith("wxid_"):
        match = re.match(r"^(wxid_[^_]+)", trimmed, re.IGNORECASE)
        return match.group(1) if match else trimmed
    match = re.match(r"^(.+)_([a-zA-Z0-9]{4})$", trimmed)
    if match:
        return match.group(1)
    return trimmed


def is_group_session(session_id: str) -> bool:
    return GROUP_SUFFIX in session_id


def is_private_session(session_id: str, account_id: str) -> bool:
    """True for a one-to-one chat with a real contact."""
    if not session_id or is_group_session(session_id):
        return False
    if session_id == "filehelper" or session_id.startswith("gh_"):
        return False
    if session_id.lower() == account_id.lower():
        return False
    if any(session_id.startswith(prefix) for prefix in _EXCLUDED_PREFIXES):
        return False
    if "@kefu.openim" in session_id or "@openim" in session_id:
        return False
    return "service_" not in session_id


def private_sessions(store: MessageStore, account_id: str) -> list[str]:
    """Enumerate the account's sessions, keeping private contacts only."""
    cleaned = clean_account_id(account_id)
    raw_sessions = store.enumerate_sessions(cleaned)
    ids = (normalize_session_id(s) for s in raw_sessions)
    return [sid for sid in ids if is_private_session(sid, cleaned)]


def year_window(year: int) -> tuple[int, int]:
    """Return the local-time (begin_ts, end_ts) for *year*.

    A year of 0 or less means all time and yields (0, 0).
    """
    if year <= 0:
        return 0, 0
    begin = int(datetime(year, 1, 1).timestamp())
    end = int(datetime(year, 12, 31, 23, 59, 59).timestamp())
    return begin, end


# ---------------------------------------------------------------------------
# Cursor helpers
# ---------------------------------------------------------------------------

@contextmanager
def message_cursor(
    store: MessageStore,
    session_id: str,
    batch_size: int,
    ascending: bool = True,
    begin_ts: int = 0,
    end_ts: int = 0,
) -> Iterator[Any]:
    """Open a cursor and always close it, even when the caller bails out."""
    handle = store.open_cursor(session_id, batch_size, ascending, begin_ts, end_ts)
    try:
        yield handle
    finally:
        store.close_cursor(handle)


def iter_batches(store: MessageStore, handle: Any) -> Iterator[Batch]:
    """Yield batches from an open cursor until the store reports no more."""
    while True:
        batch = store.fetch_batch(handle)
        yield batch
        if not batch.has_more:
            return


def first_messages(
    store: MessageStore,
    session_id: str,
    limit: int,
    begin_ts: int = 0,
    end_ts: int = 0,
) -> list[MessageRow]:
    """Return up to *limit* earliest messages of a session inside the window."""
    rows: list[MessageRow] = []
    with message_cursor(store, session_id, max(1, limit), True, begin_ts, end_ts) as handle:
        for batch in iter_batches(store, handle):
            rows.extend(batch.rows[: limit - len(rows)])
            if len(rows) >= limit:
                break
    return rows
