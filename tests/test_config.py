"""Tests for config.py and the report_errors hierarchy."""

from __future__ import annotations

from pathlib import Path

import pytest

from config import DEFAULT_BATCH_SIZE, DEFAULT_DB_PATH, ReportConfig, load_config
from report_errors import (
    BulkStatsError,
    ConfigError,
    FastPathUnavailable,
    ReportCancelled,
    ReportError,
    StoreConnectionError,
    StoreError,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("CHAT_REPORT_DB_PATH", "CHAT_REPORT_ACCOUNT",
                 "CHAT_REPORT_BATCH_SIZE", "CHAT_REPORT_PROGRESS_INTERVAL"):
        monkeypatch.delenv(name, raising=False)


# ── load_config ──────────────────────────


class TestLoadConfig:
    def test_defaults(self):
        config = load_config(account_id="wxid_me")
        assert config.db_path == DEFAULT_DB_PATH
        assert config.batch_size == DEFAULT_BATCH_SIZE
        assert config.progress_interval == 0.2
        assert config.cache_ttl_seconds == 3600

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("CHAT_REPORT_DB_PATH", "/data/export.db")
        monkeypatch.setenv("CHAT_REPORT_ACCOUNT", " wxid_env ")
        monkeypatch.setenv("CHAT_REPORT_BATCH_SIZE", "250")
        monkeypatch.setenv("CHAT_REPORT_PROGRESS_INTERVAL", "0.5")
        config = load_config()
        assert config.db_path == Path("/data/export.db")
        assert config.account_id == "wxid_env"
        assert config.batch_size == 250
        assert config.progress_interval == 0.5

    def test_arguments_win_over_environment(self, monkeypatch):
        monkeypatch.setenv("CHAT_REPORT_DB_PATH", "/data/export.db")
        monkeypatch.setenv("CHAT_REPORT_ACCOUNT", "wxid_env")
        config = load_config(db_path="other.db", account_id="wxid_arg")
        assert config.db_path == Path("other.db")
        assert config.account_id == "wxid_arg"

    def test_missing_account(self):
        with pytest.raises(ConfigError, match="CHAT_REPORT_ACCOUNT"):
            load_config()

    def test_non_numeric_batch_size(self, monkeypatch):
        monkeypatch.setenv("CHAT_REPORT_BATCH_SIZE", "lots")
        with pytest.raises(ConfigError, match="CHAT_REPORT_BATCH_SIZE"):
            load_config(account_id="wxid_me")

    def test_non_positive_batch_size(self, monkeypatch):
        monkeypatch.setenv("CHAT_REPORT_BATCH_SIZE", "0")
        with pytest.raises(ConfigError):
            load_config(account_id="wxid_me")

    def test_negative_interval(self):
        with pytest.raises(ConfigError):
            ReportConfig(db_path=Path("x.db"), account_id="me", progress_interval=-1).validate()


# ── Error hierarchy ──────────────────────────


class TestErrorHierarchy:
    @pytest.mark.parametrize("exc", [
        ConfigError, StoreError, StoreConnectionError, BulkStatsError,
        FastPathUnavailable, ReportCancelled,
    ])
    def test_all_are_report_errors(self, exc):
        assert issubclass(exc, ReportError)

    @pytest.mark.parametrize("exc", [StoreConnectionError, BulkStatsError, FastPathUnavailable])
    def test_store_failures(self, exc):
        assert issubclass(exc, StoreError)

    def test_cancellation_is_not_a_store_error(self):
        assert not issubclass(ReportCancelled, StoreError)
