"""Tests for dual_report.py."""

from __future__ import annotations

import pytest
import zstandard

from dual_report import (
    DualStatsAccumulator,
    extract_emoji_md5,
    extract_emoji_url,
    format_message_time,
    generate_dual_report,
)
from helpers import ACCOUNT_ID, make_row, sample_store, ts
from message_store import LocalType
from report_errors import ConfigError, ReportCancelled

STICKER_ATTR = (
    '<msg><emoji fromusername="alice" md5="abc123" '
    'cdnurl="http://emoji.example/a?x=1&amp;y=2" /></msg>'
)
STICKER_ENCODED = '<msg><emoji md5="enc999" cdnurl="http%3A%2F%2Femoji.example%2Fb" /></msg>'
STICKER_TAG = "<msg><emoji><md5>tag456</md5><cdnurl>http://emoji.example/c</cdnurl></emoji></msg>"


# ── Sticker payload parsing ──────────────────────────


class TestEmojiExtraction:
    def test_attribute_url_unescaped(self):
        assert extract_emoji_url(STICKER_ATTR) == "http://emoji.example/a?x=1&y=2"

    def test_percent_encoded_url(self):
        assert extract_emoji_url(STICKER_ENCODED) == "http://emoji.example/b"

    def test_tag_url(self):
        assert extract_emoji_url(STICKER_TAG) == "http://emoji.example/c"

    def test_md5_attribute_and_tag(self):
        assert extract_emoji_md5(STICKER_ATTR) == "abc123"
        assert extract_emoji_md5(STICKER_TAG) == "tag456"

    def test_empty_and_unmatched(self):
        assert extract_emoji_url("") is None
        assert extract_emoji_md5("<msg/>") is None


class TestFormatMessageTime:
    def test_local_format(self):
        assert format_message_time(ts(2024, 3, 5, 7, 9)) == "03/05 07:09"


# ── DualStatsAccumulator ──────────────────────────


class TestDualStatsAccumulator:
    def test_counts_by_kind(self):
        acc = DualStatsAccumulator()
        acc.observe(make_row(1, text="hello world"))
        acc.observe(make_row(2, is_self=True, text=" hello  world "))
        acc.observe(make_row(3, text="", local_type=LocalType.IMAGE))
        acc.observe(make_row(4, text="", local_type=LocalType.VOICE))
        acc.observe(make_row(5, is_self=True, text=STICKER_ATTR, local_type=LocalType.EMOJI))
        acc.observe(make_row(6, is_self=True, text=STICKER_ATTR, local_type=LocalType.EMOJI))
        acc.observe(make_row(7, text=STICKER_TAG, local_type=LocalType.EMOJI))
        stats = acc.stats()
        assert stats["total_messages"] == 7
        assert stats["total_words"] == 20
        assert stats["image_count"] == 1
        assert stats["voice_count"] == 1
        assert stats["emoji_count"] == 3
        assert stats["my_top_emoji_md5"] == "abc123"
        assert stats["my_top_emoji_url"] == "http://emoji.example/a?x=1&y=2"
        assert stats["friend_top_emoji_md5"] == "tag456"
        assert acc.phrases.top(50) == [{"phrase": "hello world", "count": 2}]

    def test_compressed_text_is_decoded(self):
        frame = zstandard.ZstdCompressor().compress("晚安".encode("utf-8"))
        acc = DualStatsAccumulator()
        acc.observe(make_row(1, text=None, compressed=frame))
        assert acc.total_words == 2

    def test_no_stickers(self):
        stats = DualStatsAccumulator().stats()
        assert stats["my_top_emoji_md5"] is None
        assert stats["friend_top_emoji_url"] is None


# ── generate_dual_report ──────────────────────────


class TestGenerateDualReport:
    def test_year_report(self, store):
        report = generate_dual_report(store, ACCOUNT_ID, "alice", 2024)
        assert report["year"] == 2024
        assert report["has_data"] is True
        assert report["self_name"] == "Me"
        assert report["friend_name"] == "Alice"
        assert report["friend_username"] == "alice"
        assert report["first_chat"]["content"] == "good morning"
        assert report["first_chat"]["is_sent_by_me"] is False
        assert report["first_chat"]["sender_username"] is None
        assert len(report["first_chat_messages"]) == 3
        year_first = report["year_first_chat"]
        assert year_first["friend_name"] == "Alice"
        assert [m["content"] for m in year_first["first_three_messages"]] == [
            "good morning", "hello world", "are you up",
        ]
        stats = report["stats"]
        assert stats["total_messages"] == 6
        assert stats["image_count"] == 1
        assert stats["total_words"] == 49
        assert report["top_phrases"] == [{"phrase": "hello world", "count": 2}]

    def test_first_chat_ignores_year(self, store):
        report = generate_dual_report(store, ACCOUNT_ID, "bob", 2024)
        assert report["first_chat"]["content"] == "see you next year"
        assert report["year_first_chat"]["content"] == "hi bob"
        assert report["stats"]["total_messages"] == 2

    def test_all_time_has_no_year_first_chat(self, store):
        report = generate_dual_report(store, ACCOUNT_ID, "bob", 0)
        assert report["year"] == 0
        assert report["year_first_chat"] is None
        assert report["stats"]["total_messages"] == 3

    def test_empty_year(self, store):
        report = generate_dual_report(store, ACCOUNT_ID, "alice", 2019)
        assert report["has_data"] is False
        assert report["year_first_chat"] is None
        assert report["first_chat"] is not None

    def test_cursor_failure_degrades_to_empty_stats(self):
        store = sample_store(cursor_errors={"alice"})
        report = generate_dual_report(store, ACCOUNT_ID, "alice", 2024)
        assert report["has_data"] is False
        assert report["first_chat"] is None
        assert report["stats"]["total_messages"] == 0

    def test_missing_session_rejected(self, store):
        with pytest.raises(ConfigError):
            generate_dual_report(store, ACCOUNT_ID, "", 2024)

    def test_missing_account_rejected(self, store):
        with pytest.raises(ConfigError):
            generate_dual_report(store, "", "alice", 2024)

    def test_progress_milestones(self, store):
        seen = []
        generate_dual_report(store, ACCOUNT_ID, "alice", 2024, on_progress=lambda s, p: seen.append(p))
        assert seen[:4] == [10, 15, 20, 30]
        assert seen[-2:] == [85, 100]
        assert seen == sorted(seen)

    def test_cancellation(self, store):
        def cancel():
            raise ReportCancelled("stop")

        with pytest.raises(ReportCancelled):
            generate_dual_report(store, ACCOUNT_ID, "alice", 2024, yield_hook=cancel)
