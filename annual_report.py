"""Annual report: a year (or all time) of chats across every private contact.

Ties together the bulk daily counts, the activity engine and contact
metadata, and applies the report's ranking policies (core friends,
monthly champions, mutual friend, ...).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from accumulators import ConversationStats, midnight_champion, summarize_response_speed
from config import DEFAULT_BATCH_SIZE
from message_store import (
    BulkCounts,
    MessageStore,
    SessionCounts,
    clean_account_id,
    message_cursor,
    private_sessions,
    timestamp_in_range,
    year_window,
)
from report_engine import (
    ActivityStats,
    ProgressReporter,
    ProgressSink,
    YieldHook,
    collect_activity_stats,
)
from report_errors import BulkStatsError, ConfigError, StoreError

logger = logging.getLogger(__name__)

CORE_FRIEND_COUNT = 3
MUTUAL_MIN_MESSAGES = 50
EARLIEST_YEAR = 2010


def _contact_info(store: MessageStore, session_ids: list[str]) -> dict[str, dict[str, Any]]:
    """Resolve display names and avatars; lookups failing fall back to the id."""
    info: dict[str, dict[str, Any]] = {}
    for session_id in session_ids:
        try:
            name = store.resolve_display_name(session_id) or session_id
        except StoreError as e:
            logger.debug("Display name lookup failed for %s: %s", session_id, e)
            name = session_id
        try:
            avatar = store.resolve_avatar(session_id)
        except StoreError as e:
            logger.debug("Avatar lookup failed for %s: %s", session_id, e)
            avatar = None
        info[session_id] = {"display_name": name, "avatar_url": avatar}
    return info


def _name(info: dict[str, dict[str, Any]], session_id: str) -> str:
    return info.get(session_id, {}).get("display_name") or session_id


def _self_avatar(store: MessageStore, account_id: str) -> str | None:
    for candidate in dict.fromkeys([account_id, clean_account_id(account_id)]):
        try:
            avatar = store.resolve_avatar(candidate)
        except StoreError:
            continue
        if avatar:
            return avatar
    return None


# ---------------------------------------------------------------------------
# Section builders
# ---------------------------------------------------------------------------

def compute_core_friends(
    sessions: dict[str, SessionCounts],
    info: dict[str, dict[str, Any]],
    limit: int = CORE_FRIEND_COUNT,
) -> list[dict]:
    """Top contacts by total message count."""
    ranked = sorted(sessions.items(), key=lambda item: item[1].total, reverse=True)
    return [
        {
            "username": session_id,
            "display_name": _name(info, session_id),
            "avatar_url": info.get(session_id, {}).get("avatar_url"),
            "message_count": counts.total,
            "sent_count": counts.sent,
            "received_count": counts.received,
        }
        for session_id, counts in ranked[:limit]
    ]


def compute_monthly_top_friends(
    sessions: dict[str, SessionCounts],
    info: dict[str, dict[str, Any]],
) -> list[dict]:
    """One champion per calendar month; months without messages have none."""
    months = []
    for month in range(1, 13):
        top_session = ""
        top_count = 0
        for session_id, counts in sessions.items():
            count = counts.monthly.get(month, 0)
            if count > top_count:
                top_session, top_count = session_id, count
        months.append({
            "month": month,
            "display_name": _name(info, top_session) if top_session else None,
            "avatar_url": info.get(top_session, {}).get("avatar_url"),
            "message_count": top_count,
        })
    return months


def compute_peak_day(
    counts: BulkCounts,
    peak_day_contacts: dict[str, int],
    info: dict[str, dict[str, Any]],
) -> dict | None:
    peak = counts.peak_day()
    if peak is None:
        return None
    day, count = peak
    top_friend = None
    top_count = 0
    for session_id, c in peak_day_contacts.items():
        if c > top_count:
            top_friend, top_count = _name(info, session_id), c
    return {
        "date": day,
        "message_count": count,
        "top_friend": top_friend,
        "top_friend_count": top_count,
    }


def compute_mutual_friend(
    sessions: dict[str, SessionCounts],
    info: dict[str, dict[str, Any]],
    min_messages: int = MUTUAL_MIN_MESSAGES,
) -> dict | None:
    """The contact whose sent/received ratio is closest to 1.0."""
    best: dict | None = None
    best_diff = float("inf")
    for session_id, counts in sessions.items():
        if counts.sent < min_messages or counts.received < min_messages:
            continue
        ratio = counts.sent / counts.received
        diff = abs(ratio - 1)
        if diff < best_diff:
            best_diff = diff
            best = {
                "display_name": _name(info, session_id),
                "avatar_url": info.get(session_id, {}).get("avatar_url"),
                "sent_count": counts.sent,
                "received_count": counts.received,
                "ratio": round(ratio, 2),
            }
    return best


def compute_social_initiative(conversation: dict[str, ConversationStats]) -> dict | None:
    initiated = sum(s.initiated_by_self for s in conversation.values())
    received = sum(s.initiated_by_peer for s in conversation.values())
    total = initiated + received
    if total == 0:
        return None
    return {
        "initiated_chats": initiated,
        "received_chats": received,
        "initiative_rate": round(initiated / total * 100, 1),
    }


def _build_report(
    year: int,
    counts: BulkCounts,
    activity: ActivityStats,
    info: dict[str, dict[str, Any]],
    self_avatar_url: str | None,
) -> dict[str, Any]:
    longest_streak = None
    if activity.streak is not None and activity.streak.days > 0:
        longest_streak = {
            "friend_name": _name(info, activity.streak.session_id),
            "days": activity.streak.days,
            "start_date": activity.streak.start.isoformat(),
            "end_date": activity.streak.end.isoformat(),
        }

    midnight_king = None
    champion = midnight_champion(activity.midnight)
    if champion is not None:
        session_id, count, percentage = champion
        midnight_king = {
            "display_name": _name(info, session_id),
            "count": count,
            "percentage": percentage,
        }

    response_speed = None
    speed = summarize_response_speed(activity.response)
    if speed is not None:
        avg, fastest_session, fastest_avg = speed
        response_speed = {
            "avg_response_time": round(avg),
            "fastest_friend": _name(info, fastest_session),
            "fastest_time": round(fastest_avg),
        }

    return {
        "year": year,
        "has_data": counts.total > 0,
        "total_messages": counts.total,
        "total_friends": len(counts.sessions),
        "core_friends": compute_core_friends(counts.sessions, info),
        "monthly_top_friends": compute_monthly_top_friends(counts.sessions, info),
        "peak_day": compute_peak_day(counts, activity.peak_day, info),
        "longest_streak": longest_streak,
        "activity_heatmap": activity.heatmap,
        "midnight_king": midnight_king,
        "self_avatar_url": self_avatar_url,
        "mutual_friend": compute_mutual_friend(counts.sessions, info),
        "social_initiative": compute_social_initiative(activity.conversation),
        "response_speed": response_speed,
        "top_phrases": activity.top_phrases,
        "stats_source": activity.source,
    }


def empty_annual_report(year: int) -> dict[str, Any]:
    """The report shape for an account without any messages in the window."""
    return _build_report(max(0, year), BulkCounts(), ActivityStats(source="none"), {}, None)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def generate_annual_report(
    store: MessageStore,
    account_id: str,
    year: int,
    on_progress: ProgressSink | None = None,
    yield_hook: YieldHook | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    progress: ProgressReporter | None = None,
) -> dict[str, Any]:
    """Build the annual report for *account_id*.

    Args:
        store: An open message store.
        account_id: The account's own id (a data-folder suffix is ignored).
        year: Calendar year, or 0 (or less) for all time.
        on_progress: Receives (status, percent) updates.
        yield_hook: Called between scanned batches; may raise
            ``ReportCancelled``.
        batch_size: Cursor batch size for a full scan.
        progress: A preconfigured reporter; overrides *on_progress*.

    Returns:
        The report dict.  ``has_data`` is False when the account has no
        private sessions or no messages in the window.

    Raises:
        ConfigError: If *account_id* is empty.
        BulkStatsError: If the bulk daily-count query fails.
    """
    if not account_id or not account_id.strip():
        raise ConfigError("No account id configured.")
    progress = progress or ProgressReporter(on_progress)
    report_year = year if year > 0 else 0

    progress.emit("Connecting to the message store...", 5)
    session_ids = private_sessions(store, account_id)
    if not session_ids:
        logger.info("No private sessions found for %s", account_id)
        progress.emit("No chat sessions found", 100)
        return empty_annual_report(report_year)

    progress.emit("Loading session list...", 15)
    begin_ts, end_ts = year_window(report_year)

    progress.emit("Counting session messages...", 20)
    try:
        counts = store.get_bulk_daily_counts(session_ids, begin_ts, end_ts)
    except StoreError as e:
        raise BulkStatsError(f"Bulk statistics failed: {e}") from e
    progress.emit("Summarizing base statistics...", 25)

    if counts.total <= 0:
        logger.info("No messages for %s in %s", account_id, report_year or "all time")
        progress.emit("No messages in the selected period", 100)
        return empty_annual_report(report_year)

    peak = counts.peak_day()
    activity = collect_activity_stats(
        store,
        session_ids,
        begin_ts,
        end_ts,
        peak_day=peak[0] if peak else None,
        total_messages=counts.total,
        progress=progress,
        yield_hook=yield_hook,
        batch_size=batch_size,
    )
    logger.info(
        "Activity statistics for %s computed via %s path", account_id, activity.source,
    )

    progress.emit("Resolving contact information...", 85)
    info = _contact_info(store, list(counts.sessions))
    self_avatar_url = _self_avatar(store, account_id)

    progress.emit("Generating report...", 95)
    report = _build_report(report_year, counts, activity, info, self_avatar_url)
    progress.emit("Annual report complete", 100)
    return report


def _edge_message_time(store: MessageStore, session_id: str, ascending: bool) -> int | None:
    with message_cursor(store, session_id, 1, ascending) as handle:
        batch = store.fetch_batch(handle)
    if not batch.rows:
        return None
    ts = batch.rows[0].create_time
    return ts if timestamp_in_range(ts) else None


def get_available_years(store: MessageStore, account_id: str) -> list[int]:
    """Years with messages, newest first.

    Uses the store's own ``get_available_years`` when it has one, else the
    first and last message of every private session.
    """
    session_ids = private_sessions(store, account_id)
    if not session_ids:
        return []

    fast = getattr(store, "get_available_years", None)
    if fast is not None:
        try:
            return sorted(fast(session_ids), reverse=True)
        except StoreError as e:
            logger.warning("Fast year lookup failed, reading message edges: %s", e)

    current_year = datetime.now().year
    years: set[int] = set()
    for session_id in session_ids:
        try:
            first = _edge_message_time(store, session_id, ascending=True)
            last = _edge_message_time(store, session_id, ascending=False)
        except StoreError as e:
            logger.warning("Skipping session %s while listing years: %s", session_id, e)
            continue
        if not first and not last:
            continue
        min_year = datetime.fromtimestamp(first or last).year
        max_year = datetime.fromtimestamp(last or first).year
        years.update(y for y in range(min_year, max_year + 1) if EARLIEST_YEAR <= y <= current_year)
    return sorted(years, reverse=True)
