"""Dual report: one contact, one year (or all time)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import unquote

from accumulators import DUAL_PHRASE_LIMIT, DUAL_PHRASE_MAX_LENGTH, PhraseAccumulator
from config import DEFAULT_BATCH_SIZE
from content_decoder import decode_message_content
from message_store import (
    LocalType,
    MessageRow,
    MessageStore,
    clean_account_id,
    first_messages,
    iter_batches,
    message_cursor,
    timestamp_in_range,
    year_window,
)
from report_engine import ProgressReporter, ProgressSink, YieldHook
from report_errors import ConfigError, StoreError

logger = logging.getLogger(__name__)

FIRST_MESSAGE_COUNT = 3
SCAN_PROGRESS_START = 30
SCAN_PROGRESS_END = 80

_CDN_URL_ATTR_RE = re.compile(r"""cdnurl\s*=\s*['"]([^'"]+)['"]""", re.IGNORECASE)
_CDN_URL_TAG_RE = re.compile(r"cdnurl[^>]*>([^<]+)", re.IGNORECASE)
_MD5_ATTR_RE = re.compile(r'md5="([^"]+)"', re.IGNORECASE)
_MD5_TAG_RE = re.compile(r"<md5>([^<]+)</md5>", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def extract_emoji_url(content: str) -> str | None:
    """Best-effort CDN url of a sticker from its XML payload."""
    if not content:
        return None
    match = _CDN_URL_ATTR_RE.search(content)
    if match:
        url = match.group(1).replace("&amp;", "&")
        if "%" in url:
            url = unquote(url)
        return url
    match = _CDN_URL_TAG_RE.search(content)
    return match.group(1) if match else None


def extract_emoji_md5(content: str) -> str | None:
    if not content:
        return None
    match = _MD5_ATTR_RE.search(content) or _MD5_TAG_RE.search(content)
    return match.group(1) if match else None


def format_message_time(timestamp: int) -> str:
    """``MM/DD HH:MM`` in local time, "" for an unusable timestamp."""
    if not timestamp_in_range(timestamp):
        return ""
    return datetime.fromtimestamp(timestamp).strftime("%m/%d %H:%M")


def _message_dict(row: MessageRow) -> dict[str, Any]:
    return {
        "content": decode_message_content(row.content, row.compressed_content),
        "is_sent_by_me": row.is_self,
        "create_time": row.create_time,
        "create_time_str": format_message_time(row.create_time),
    }


@dataclass
class _SideEmoji:
    counts: dict[str, int] = field(default_factory=dict)
    urls: dict[str, str] = field(default_factory=dict)

    def observe(self, md5: str, url: str | None) -> None:
        self.counts[md5] = self.counts.get(md5, 0) + 1
        if url and md5 not in self.urls:
            self.urls[md5] = url

    def top(self) -> tuple[str | None, str | None]:
        top_md5 = None
        top_count = -1
        for md5, count in self.counts.items():
            if count > top_count:
                top_md5, top_count = md5, count
        return top_md5, self.urls.get(top_md5) if top_md5 else None


class DualStatsAccumulator:
    """Message, word, media and sticker counts for a two-person chat."""

    def __init__(self) -> None:
        self.total_messages = 0
        self.total_words = 0
        self.image_count = 0
        self.voice_count = 0
        self.emoji_count = 0
        self.mine = _SideEmoji()
        self.theirs = _SideEmoji()
        self.phrases = PhraseAccumulator(max_length=DUAL_PHRASE_MAX_LENGTH, collapse_whitespace=True)

    def observe(self, row: MessageRow) -> None:
        self.total_messages += 1
        if row.local_type == LocalType.IMAGE:
            self.image_count += 1
        elif row.local_type == LocalType.VOICE:
            self.voice_count += 1
        elif row.local_type == LocalType.EMOJI:
            self.emoji_count += 1
            content = decode_message_content(row.content, row.compressed_content)
            md5 = extract_emoji_md5(content)
            if md5:
                side = self.mine if row.is_self else self.theirs
                side.observe(md5, extract_emoji_url(content))
        elif row.is_text:
            text = decode_message_content(row.content, row.compressed_content).strip()
            if text:
                self.total_words += len(_WHITESPACE_RE.sub("", text))
                self.phrases.observe(text)

    def stats(self) -> dict[str, Any]:
        my_md5, my_url = self.mine.top()
        friend_md5, friend_url = self.theirs.top()
        return {
            "total_messages": self.total_messages,
            "total_words": self.total_words,
            "image_count": self.image_count,
            "voice_count": self.voice_count,
            "emoji_count": self.emoji_count,
            "my_top_emoji_md5": my_md5,
            "friend_top_emoji_md5": friend_md5,
            "my_top_emoji_url": my_url,
            "friend_top_emoji_url": friend_url,
        }


def _display_name(store: MessageStore, session_id: str, fallback: str) -> str:
    try:
        return store.resolve_display_name(session_id) or fallback
    except StoreError as e:
        logger.debug("Display name lookup failed for %s: %s", session_id, e)
        return fallback


def _safe_first_messages(
    store: MessageStore, session_id: str, begin_ts: int, end_ts: int,
) -> list[MessageRow]:
    try:
        return first_messages(store, session_id, FIRST_MESSAGE_COUNT, begin_ts, end_ts)
    except StoreError as e:
        logger.warning("Could not read first messages of %s: %s", session_id, e)
        return []


def _scan(
    store: MessageStore,
    session_id: str,
    begin_ts: int,
    end_ts: int,
    accumulator: DualStatsAccumulator,
    progress: ProgressReporter,
    yield_hook: YieldHook | None,
    batch_size: int,
) -> None:
    try:
        total = store.count_messages(session_id)
    except StoreError as e:
        logger.debug("Message count unavailable for %s: %s", session_id, e)
        total = 0

    span = SCAN_PROGRESS_END - SCAN_PROGRESS_START
    try:
        with message_cursor(store, session_id, batch_size, True, begin_ts, end_ts) as handle:
            for batch in iter_batches(store, handle):
                for row in batch.rows:
                    accumulator.observe(row)
                if total > 0:
                    ratio = min(1.0, accumulator.total_messages / total)
                    progress.throttled("Counting chat statistics...", SCAN_PROGRESS_START + int(ratio * span))
                if yield_hook is not None:
                    yield_hook()
    except StoreError as e:
        logger.warning("Scan of session %s aborted after %d messages: %s",
                       session_id, accumulator.total_messages, e)


def generate_dual_report(
    store: MessageStore,
    account_id: str,
    session_id: str,
    year: int,
    on_progress: ProgressSink | None = None,
    yield_hook: YieldHook | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    progress: ProgressReporter | None = None,
) -> dict[str, Any]:
    """Build the dual report between the account and *session_id*.

    Args:
        store: An open message store.
        account_id: The account's own id.
        session_id: The contact's session id.
        year: Calendar year, or 0 (or less) for all time.
        on_progress: Receives (status, percent) updates.
        yield_hook: Called between scanned batches.
        batch_size: Cursor batch size.
        progress: A preconfigured reporter; overrides *on_progress*.

    Returns:
        The report dict; ``has_data`` is False when the window is empty.

    Raises:
        ConfigError: If the account or session id is empty.
    """
    if not account_id or not account_id.strip():
        raise ConfigError("No account id configured.")
    if not session_id:
        raise ConfigError("No contact selected for the dual report.")
    progress = progress or ProgressReporter(on_progress)
    report_year = year if year > 0 else 0
    begin_ts, end_ts = year_window(report_year)

    progress.emit("Loading contact information...", 10)
    friend_name = _display_name(store, session_id, session_id)
    self_name = _display_name(store, account_id, account_id)
    cleaned = clean_account_id(account_id)
    if self_name == account_id and cleaned != account_id:
        self_name = _display_name(store, cleaned, account_id)

    progress.emit("Reading the first messages...", 15)
    first_rows = _safe_first_messages(store, session_id, 0, 0)
    first_chat = None
    if first_rows:
        first_chat = _message_dict(first_rows[0])
        first_chat["sender_username"] = first_rows[0].sender

    year_first_chat = None
    if report_year:
        progress.emit("Reading the first messages of the year...", 20)
        year_rows = _safe_first_messages(store, session_id, begin_ts, end_ts)
        if year_rows:
            year_first_chat = {
                **_message_dict(year_rows[0]),
                "friend_name": friend_name,
                "first_three_messages": [_message_dict(r) for r in year_rows],
            }

    progress.emit("Counting chat statistics...", SCAN_PROGRESS_START)
    accumulator = DualStatsAccumulator()
    _scan(store, session_id, begin_ts, end_ts, accumulator, progress, yield_hook, batch_size)

    progress.emit("Building the phrase cloud...", 85)
    report = {
        "year": report_year,
        "has_data": accumulator.total_messages > 0,
        "self_name": self_name,
        "friend_username": session_id,
        "friend_name": friend_name,
        "first_chat": first_chat,
        "first_chat_messages": [_message_dict(r) for r in first_rows],
        "year_first_chat": year_first_chat,
        "stats": accumulator.stats(),
        "top_phrases": accumulator.phrases.top(DUAL_PHRASE_LIMIT),
    }
    progress.emit("Dual report complete", 100)
    return report
