"""Activity statistics for the annual report: fast path or full scan.

The store may be able to pre-aggregate everything ("extras") in one bulk
call.  When it can, its numbers are used as-is.  When it cannot, or leaves
some fields out, every private session is scanned message by message
through the cursor contract and the missing fields are computed from the
scan.  Either way the caller gets the same ``ActivityStats`` shape.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any

from accumulators import (
    ANNUAL_PHRASE_LIMIT,
    ANNUAL_PHRASE_MAX_LENGTH,
    BestStreak,
    ConversationAccumulator,
    ConversationStats,
    HeatmapAccumulator,
    PhraseAccumulator,
    ResponseSummary,
    StreakAccumulator,
    day_key,
    empty_heatmap,
)
from config import DEFAULT_BATCH_SIZE, DEFAULT_PROGRESS_INTERVAL
from content_decoder import decode_message_content
from message_store import MessageRow, MessageStore, iter_batches, message_cursor, timestamp_in_range
from report_errors import StoreError

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str, int], None]
YieldHook = Callable[[], None]

SCAN_PROGRESS_START = 30
SCAN_PROGRESS_END = 80


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------

class ProgressReporter:
    """Forwards (status, percent) updates to a sink, never going backwards.

    ``emit`` always forwards (stage milestones); ``throttled`` forwards at
    most once per *interval* seconds and only when the percent grew.
    """

    def __init__(
        self,
        sink: ProgressSink | None = None,
        interval: float = DEFAULT_PROGRESS_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.interval = interval
        self.clock = clock
        self.percent = 0
        self._last_at: float | None = None

    def emit(self, status: str, percent: int) -> None:
        self.percent = max(self.percent, min(100, int(percent)))
        self._last_at = self.clock()
        if self.sink is not None:
            self.sink(status, self.percent)

    def throttled(self, status: str, percent: int) -> bool:
        now = self.clock()
        if self._last_at is not None and now - self._last_at < self.interval:
            return False
        if int(percent) <= self.percent:
            return False
        self.emit(status, percent)
        return True


def _noop() -> None:
    return None


# ---------------------------------------------------------------------------
# Fast-path payload
# ---------------------------------------------------------------------------

@dataclass
class ExtrasPayload:
    """Pre-aggregated statistics from the store.  Every field may be missing."""

    heatmap: list[list[int]] | None = None
    midnight: dict[str, int] | None = None
    conversation: dict[str, ConversationStats] | None = None
    response: dict[str, ResponseSummary] | None = None
    peak_day: dict[str, int] | None = None
    top_phrases: list[dict] | None = None
    streak: BestStreak | None = None

    def missing(self) -> set[str]:
        return {f.name for f in fields(self) if getattr(self, f.name) is None}


def _parse_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except (TypeError, ValueError):
        return None


def _parse_heatmap(raw: Any) -> list[list[int]] | None:
    if not isinstance(raw, list) or len(raw) != 7:
        return None
    grid = empty_heatmap()
    for weekday, row in enumerate(raw):
        if isinstance(row, list):
            for hour in range(min(24, len(row))):
                grid[weekday][hour] = int(row[hour] or 0)
    return grid


def parse_extras(raw: Mapping[str, Any] | None) -> ExtrasPayload | None:
    """Normalize a store's extras dict into an ExtrasPayload.

    Malformed fields are dropped (left as None) rather than rejected, so the
    engine can still fill them from a scan.
    """
    if not raw:
        return None
    payload = ExtrasPayload(heatmap=_parse_heatmap(raw.get("heatmap")))

    midnight = raw.get("midnight")
    if isinstance(midnight, Mapping):
        payload.midnight = {sid: int(c or 0) for sid, c in midnight.items()}

    conversation = raw.get("conversation")
    if isinstance(conversation, Mapping):
        payload.conversation = {
            sid: ConversationStats(
                initiated_by_self=int(s.get("initiated", 0) or 0),
                initiated_by_peer=int(s.get("received", 0) or 0),
            )
            for sid, s in conversation.items()
        }

    response = raw.get("response")
    if isinstance(response, Mapping):
        payload.response = {
            sid: ResponseSummary(avg=float(s.get("avg", 0) or 0), count=int(s.get("count", 0) or 0))
            for sid, s in response.items()
        }

    peak_day = raw.get("peakDay", raw.get("peak_day"))
    if isinstance(peak_day, Mapping):
        payload.peak_day = {sid: int(c or 0) for sid, c in peak_day.items()}

    phrases = raw.get("topPhrases", raw.get("top_phrases"))
    if isinstance(phrases, list):
        payload.top_phrases = [
            {"phrase": str(p["phrase"]), "count": int(p["count"])}
            for p in phrases
            if isinstance(p, Mapping) and "phrase" in p and "count" in p
        ]

    streak = raw.get("streak")
    if isinstance(streak, Mapping):
        session_id = streak.get("sessionId") or streak.get("session_id")
        days = int(streak.get("days") or 0)
        start = _parse_date(streak.get("startDate", streak.get("start")))
        end = _parse_date(streak.get("endDate", streak.get("end")))
        if session_id and days > 0 and start and end:
            payload.streak = BestStreak(session_id=session_id, days=days, start=start, end=end)

    return payload


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass
class ActivityStats:
    """Merged activity statistics, identical in shape for both paths."""

    heatmap: list[list[int]] = field(default_factory=empty_heatmap)
    midnight: dict[str, int] = field(default_factory=dict)
    conversation: dict[str, ConversationStats] = field(default_factory=dict)
    response: dict[str, ResponseSummary] = field(default_factory=dict)
    peak_day: dict[str, int] = field(default_factory=dict)
    top_phrases: list[dict] = field(default_factory=list)
    streak: BestStreak | None = None
    source: str = "full"


# ---------------------------------------------------------------------------
# Full scan
# ---------------------------------------------------------------------------

@dataclass
class ScanState:
    """All mutable state of one full scan.  Never outlives the report run."""

    streak: StreakAccumulator = field(default_factory=StreakAccumulator)
    heatmap: HeatmapAccumulator = field(default_factory=HeatmapAccumulator)
    conversation: ConversationAccumulator = field(default_factory=ConversationAccumulator)
    phrases: PhraseAccumulator = field(
        default_factory=lambda: PhraseAccumulator(max_length=ANNUAL_PHRASE_MAX_LENGTH)
    )
    peak_day: dict[str, int] = field(default_factory=dict)
    processed: int = 0
    aborted_sessions: list[str] = field(default_factory=list)

    def to_stats(self) -> ActivityStats:
        return ActivityStats(
            heatmap=self.heatmap.grid,
            midnight=dict(self.heatmap.midnight),
            conversation=dict(self.conversation.conversations),
            response=self.conversation.summaries(),
            peak_day=dict(self.peak_day),
            top_phrases=self.phrases.top(ANNUAL_PHRASE_LIMIT),
            streak=self.streak.best,
            source="full",
        )


class FullScan:
    """Feeds every message of every session through the accumulators.

    Sessions are scanned one after another with a single open cursor.  After
    each batch the scan reports throttled progress inside
    [progress_start, progress_end] and calls *yield_hook*, which is where a
    worker checks for cancellation.
    """

    def __init__(
        self,
        store: MessageStore,
        session_ids: list[str],
        begin_ts: int,
        end_ts: int,
        peak_day: str | None = None,
        total_messages: int = 0,
        progress: ProgressReporter | None = None,
        yield_hook: YieldHook | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        progress_start: int = SCAN_PROGRESS_START,
        progress_end: int = SCAN_PROGRESS_END,
    ) -> None:
        self.store = store
        self.session_ids = session_ids
        self.begin_ts = begin_ts
        self.end_ts = end_ts
        self.peak_day = peak_day
        self.total_messages = total_messages
        self.progress = progress or ProgressReporter()
        self.yield_hook = yield_hook or _noop
        self.batch_size = batch_size
        self.progress_start = progress_start
        self.progress_end = progress_end
        self.state = ScanState()

    def run(self) -> ActivityStats:
        for index, session_id in enumerate(self.session_ids):
            self._scan_session(index, session_id)
        if self.state.aborted_sessions:
            logger.warning(
                "Full scan finished with %d of %d sessions incomplete: %s",
                len(self.state.aborted_sessions),
                len(self.session_ids),
                ", ".join(self.state.aborted_sessions[:10]),
            )
        return self.state.to_stats()

    def _scan_session(self, index: int, session_id: str) -> None:
        try:
            with message_cursor(
                self.store, session_id, self.batch_size, True, self.begin_ts, self.end_ts,
            ) as handle:
                for batch in iter_batches(self.store, handle):
                    for row in batch.rows:
                        self.observe(session_id, row)
                    self._report(index)
                    self.yield_hook()
        except StoreError as e:
            # Keep what this session contributed so far and move on
            logger.warning("Scan of session %s aborted: %s", session_id, e)
            self.state.aborted_sessions.append(session_id)

    def observe(self, session_id: str, row: MessageRow) -> None:
        """Feed one row to every accumulator."""
        ts = row.create_time
        if not timestamp_in_range(ts):
            return
        state = self.state

        state.conversation.observe(session_id, ts, row.is_self)
        if row.is_text and row.is_self:
            text = decode_message_content(row.content, row.compressed_content)
            if text:
                state.phrases.observe(text)
        state.heatmap.observe(ts)
        state.streak.observe(session_id, ts)
        state.heatmap.observe_midnight(session_id, ts)
        if self.peak_day and day_key(ts) == self.peak_day:
            state.peak_day[session_id] = state.peak_day.get(session_id, 0) + 1
        state.processed += 1

    def _report(self, index: int) -> None:
        span = self.progress_end - self.progress_start
        total_sessions = len(self.session_ids)
        if self.total_messages > 0:
            ratio = min(1.0, self.state.processed / self.total_messages)
            done = min(self.state.processed, self.total_messages)
            label = f"{done}/{self.total_messages}"
        else:
            ratio = min(1.0, (index + 1) / total_sessions) if total_sessions else 1.0
            label = f"{index + 1}/{total_sessions}"
        percent = self.progress_start + int(ratio * span)
        self.progress.throttled(f"Analyzing chat history... ({label})", percent)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

def peak_day_window(peak_day: str | None) -> tuple[int, int]:
    """Local (begin_ts, end_ts) of a ``YYYY-MM-DD`` day, or (0, 0)."""
    parsed = _parse_date(peak_day) if peak_day else None
    if parsed is None:
        return 0, 0
    begin = int(datetime(parsed.year, parsed.month, parsed.day).timestamp())
    return begin, begin + 24 * 3600 - 1


def _adopt(stats: ActivityStats, extras: ExtrasPayload) -> None:
    for name in ("heatmap", "midnight", "conversation", "response", "peak_day", "top_phrases", "streak"):
        value = getattr(extras, name)
        if value is not None:
            setattr(stats, name, value)


def collect_activity_stats(
    store: MessageStore,
    session_ids: list[str],
    begin_ts: int,
    end_ts: int,
    peak_day: str | None = None,
    total_messages: int = 0,
    progress: ProgressReporter | None = None,
    yield_hook: YieldHook | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> ActivityStats:
    """Compute heatmap, midnight, conversation, response, peak-day, phrase
    and streak statistics for *session_ids* in the window.

    Tries ``store.get_bulk_extras`` first; a raw dict answer goes through
    ``parse_extras``.  A ``StoreError`` or an empty answer falls through to a
    full scan.  A successful answer is adopted field by field; only fields
    it leaves out are computed by a scan.

    Args:
        store: The message store.
        session_ids: Private sessions to analyze.
        begin_ts: Window start (0 = unbounded).
        end_ts: Window end (0 = unbounded).
        peak_day: ``YYYY-MM-DD`` of the busiest day from the bulk daily
            counts, used for the per-contact peak-day breakdown.
        total_messages: Total from the bulk counts; drives scan progress.
        progress: Progress reporter; a silent one is used when omitted.
        yield_hook: Called after every scanned batch.
        batch_size: Cursor batch size for the scan.

    Returns:
        ActivityStats with ``source`` set to "fast", "full" or "merged".
    """
    progress = progress or ProgressReporter()
    peak_begin, peak_end = peak_day_window(peak_day)

    progress.emit("Loading extended statistics...", 30)
    extras: ExtrasPayload | None = None
    try:
        raw_extras = store.get_bulk_extras(session_ids, begin_ts, end_ts, peak_begin, peak_end)
        extras = parse_extras(raw_extras) if isinstance(raw_extras, Mapping) else raw_extras
    except StoreError as e:
        logger.warning("Extended statistics unavailable, falling back to full scan: %s", e)
        progress.emit(f"Extended statistics failed, running full analysis ({e})", 30)
    else:
        if extras is None:
            logger.debug("Store returned no extended statistics; running full scan")

    stats = ActivityStats()
    missing = {"heatmap", "midnight", "conversation", "response", "peak_day", "top_phrases", "streak"}
    if extras is not None:
        _adopt(stats, extras)
        missing = extras.missing()
        if not missing:
            stats.source = "fast"
            progress.emit("Extended statistics loaded", 40)
            return stats
        logger.info("Extended statistics lack %s; scanning to fill them", ", ".join(sorted(missing)))

    scanned = FullScan(
        store,
        session_ids,
        begin_ts,
        end_ts,
        peak_day=peak_day,
        total_messages=total_messages,
        progress=progress,
        yield_hook=yield_hook,
        batch_size=batch_size,
    ).run()

    for name in missing:
        setattr(stats, name, getattr(scanned, name))
    stats.source = "merged" if extras is not None else "full"
    return stats
