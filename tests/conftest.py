"""Shared fixtures for chat report tests."""

from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from helpers import ACCOUNT_ID, sample_export_db, sample_store


@pytest.fixture()
def store():
    """FakeMessageStore over the two-contact sample history."""
    return sample_store()


@pytest.fixture()
def export_db(tmp_path):
    """Path to a SQLite export holding the sample history."""
    return sample_export_db(tmp_path / "chat_history.db")


@pytest.fixture()
def report_env(monkeypatch, export_db):
    """Point the configuration environment at the sample export."""
    monkeypatch.setenv("CHAT_REPORT_DB_PATH", str(export_db))
    monkeypatch.setenv("CHAT_REPORT_ACCOUNT", ACCOUNT_ID)
    monkeypatch.delenv("CHAT_REPORT_BATCH_SIZE", raising=False)
    monkeypatch.delenv("CHAT_REPORT_PROGRESS_INTERVAL", raising=False)
    return export_db


@pytest.fixture()
def client(report_env):
    """TestClient for app.py with in-thread workers over the sample export.

    Replaces the job registry so no worker processes are spawned and resets
    the module-level report cache between tests.
    """
    import app as app_module
    from report_worker import JobRegistry

    with patch.object(app_module, "_cache", {}):
        with patch.object(app_module, "_registry", JobRegistry(use_process=False)):
            with TestClient(app_module.app) as tc:
                yield tc
