"""Per-message reducers for the report engine.

Each accumulator is fed one decoded message at a time and keeps only the
state it needs.  All state is owned by the instance: a report run creates
fresh accumulators and drops them once the report is assembled.

Calendar days and hours are local time, matching how people read their own
chat history.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime

CONVERSATION_GAP_SECONDS = 3600
RESPONSE_CEILING_SECONDS = 86400
MIN_RESPONSE_SAMPLES = 10
MIDNIGHT_END_HOUR = 6

ANNUAL_PHRASE_MAX_LENGTH = 20
ANNUAL_PHRASE_LIMIT = 32
DUAL_PHRASE_MAX_LENGTH = 50
DUAL_PHRASE_LIMIT = 50
PHRASE_MIN_LENGTH = 2
PHRASE_MIN_COUNT = 2

_WHITESPACE_RE = re.compile(r"\s+")


def local_day(timestamp: int) -> date:
    """Local calendar date of an epoch-seconds timestamp."""
    return datetime.fromtimestamp(timestamp).date()


def day_key(timestamp: int) -> str:
    """``YYYY-MM-DD`` key of the local day, as used by bulk daily counts."""
    return local_day(timestamp).isoformat()


# ---------------------------------------------------------------------------
# Streak
# ---------------------------------------------------------------------------

@dataclass
class StreakState:
    """Running streak bookkeeping for one session (day indexes are ordinals)."""

    last_day_index: int | None = None
    current_run_length: int = 0
    current_run_start_day: int | None = None
    best_run_length: int = 0
    best_run_start_day: int | None = None
    best_run_end_day: int | None = None


@dataclass
class BestStreak:
    """The longest run of consecutive chat days with one contact."""

    session_id: str
    days: int
    start: date
    end: date


class StreakAccumulator:
    """Tracks consecutive-day runs per session and the global best.

    Rows for one session must arrive in ascending time order; the cursor
    contract guarantees it and it is not re-checked here.
    """

    def __init__(self) -> None:
        self.states: dict[str, StreakState] = {}
        self.best: BestStreak | None = None

    def observe(self, session_id: str, timestamp: int) -> None:
        day_index = local_day(timestamp).toordinal()
        state = self.states.get(session_id)
        if state is None:
            state = self.states[session_id] = StreakState()

        if state.last_day_index == day_index:
            return
        if state.last_day_index is not None and day_index - state.last_day_index == 1:
            state.current_run_length += 1
        else:
            state.current_run_length = 1
            state.current_run_start_day = day_index
        state.last_day_index = day_index

        if state.current_run_length > state.best_run_length:
            state.best_run_length = state.current_run_length
            state.best_run_start_day = state.current_run_start_day
            state.best_run_end_day = day_index

        # Strictly greater: the first session to reach a length keeps it
        if self.best is None or state.current_run_length > self.best.days:
            self.best = BestStreak(
                session_id=session_id,
                days=state.current_run_length,
                start=date.fromordinal(state.current_run_start_day),
                end=date.fromordinal(day_index),
            )


# ---------------------------------------------------------------------------
# Heatmap / midnight
# ---------------------------------------------------------------------------

def empty_heatmap() -> list[list[int]]:
    return [[0] * 24 for _ in range(7)]  # [weekday][hour]


class HeatmapAccumulator:
    """Weekday x hour activity grid plus per-session midnight counters."""

    def __init__(self) -> None:
        self.grid = empty_heatmap()
        self.midnight: dict[str, int] = {}

    def observe(self, timestamp: int) -> None:
        dt = datetime.fromtimestamp(timestamp)
        self.grid[dt.weekday()][dt.hour] += 1

    def observe_midnight(self, session_id: str, timestamp: int) -> None:
        if datetime.fromtimestamp(timestamp).hour < MIDNIGHT_END_HOUR:
            self.midnight[session_id] = self.midnight.get(session_id, 0) + 1

    def total(self) -> int:
        return sum(sum(row) for row in self.grid)


def midnight_champion(midnight: dict[str, int]) -> tuple[str, int, float] | None:
    """Return (session_id, count, percentage of all midnight messages).

    Returns None when nobody chatted after midnight.
    """
    total = sum(midnight.values())
    if total <= 0:
        return None
    best_session = ""
    best_count = 0
    for session_id, count in midnight.items():
        if count > best_count:
            best_session, best_count = session_id, count
    return best_session, best_count, round(best_count / total * 100, 1)


# ---------------------------------------------------------------------------
# Conversation / response
# ---------------------------------------------------------------------------

@dataclass
class ConversationStats:
    initiated_by_self: int = 0
    initiated_by_peer: int = 0


@dataclass
class ResponseSummary:
    """Average peer-to-self reply latency for one session."""

    avg: float
    count: int


@dataclass
class _LastSeen:
    time: int
    is_self: bool


class ConversationAccumulator:
    """Counts who opens conversations and how fast the account replies.

    A message opens a new conversation when it is the first one seen in the
    session or arrives ``CONVERSATION_GAP_SECONDS`` or more after the
    previous one.  Inside a conversation, a self message that directly
    follows a peer message is a reply; its latency is kept when it lies
    strictly between 0 and 24 hours.
    """

    def __init__(self) -> None:
        self.conversations: dict[str, ConversationStats] = {}
        self.samples: dict[str, list[int]] = {}
        self._last: dict[str, _LastSeen] = {}

    def observe(self, session_id: str, timestamp: int, is_self: bool) -> None:
        stats = self.conversations.get(session_id)
        if stats is None:
            stats = self.conversations[session_id] = ConversationStats()

        last = self._last.get(session_id)
        if last is None or timestamp - last.time >= CONVERSATION_GAP_SECONDS:
            if is_self:
                stats.initiated_by_self += 1
            else:
                stats.initiated_by_peer += 1
        elif is_self and not last.is_self:
            gap = timestamp - last.time
            if 0 < gap < RESPONSE_CEILING_SECONDS:
                self.samples.setdefault(session_id, []).append(gap)

        self._last[session_id] = _LastSeen(timestamp, is_self)

    def summaries(self) -> dict[str, ResponseSummary]:
        return {
            session_id: ResponseSummary(avg=sum(times) / len(times), count=len(times))
            for session_id, times in self.samples.items()
            if times
        }


def summarize_response_speed(
    summaries: dict[str, ResponseSummary],
    min_samples: int = MIN_RESPONSE_SAMPLES,
) -> tuple[float, str, float] | None:
    """Combine per-session reply latencies.

    Sessions with fewer than *min_samples* replies are ignored as noise.

    Returns:
        (sample-weighted average, fastest session id, fastest average), or
        None when no session qualifies.
    """
    total_sum = 0.0
    total_count = 0
    fastest_session = ""
    fastest_avg = float("inf")
    for session_id, summary in summaries.items():
        if summary.count < min_samples or summary.avg <= 0:
            continue
        total_sum += summary.avg * summary.count
        total_count += summary.count
        if summary.avg < fastest_avg:
            fastest_session, fastest_avg = session_id, summary.avg
    if total_count == 0:
        return None
    return total_sum / total_count, fastest_session, fastest_avg


# ---------------------------------------------------------------------------
# Phrases
# ---------------------------------------------------------------------------

def is_eligible_phrase(text: str, max_length: int) -> bool:
    """Short, markup-free text worth counting as a phrase."""
    if not PHRASE_MIN_LENGTH <= len(text) <= max_length:
        return False
    if "http" in text or "<" in text:
        return False
    return not (text.startswith("[") or text.startswith("<?xml"))


@dataclass
class PhraseAccumulator:
    """Exact-match phrase counter.

    The annual report counts stripped self-sent text up to 20 characters;
    the dual report collapses whitespace and allows up to 50.
    """

    max_length: int = ANNUAL_PHRASE_MAX_LENGTH
    collapse_whitespace: bool = False
    counts: dict[str, int] = field(default_factory=dict)

    def normalize(self, text: str) -> str:
        text = text.strip()
        if self.collapse_whitespace:
            text = _WHITESPACE_RE.sub(" ", text).strip()
        return text

    def observe(self, text: str) -> bool:
        """Count *text* if eligible.  Returns whether it was counted."""
        phrase = self.normalize(text)
        if not is_eligible_phrase(phrase, self.max_length):
            return False
        self.counts[phrase] = self.counts.get(phrase, 0) + 1
        return True

    def top(self, limit: int, min_count: int = PHRASE_MIN_COUNT) -> list[dict]:
        return rank_phrases(self.counts, limit, min_count)


def rank_phrases(counts: dict[str, int], limit: int, min_count: int = PHRASE_MIN_COUNT) -> list[dict]:
    """Phrases seen at least *min_count* times, most frequent first."""
    ranked = sorted(
        ((phrase, count) for phrase, count in counts.items() if count >= min_count),
        key=lambda item: item[1],
        reverse=True,
    )
    return [{"phrase": phrase, "count": count} for phrase, count in ranked[:limit]]
