"""Tests for the FastAPI app (app.py) routes and caching behaviour."""

from __future__ import annotations

import time
from unittest.mock import patch

import app as app_module


def _wait_for(client, job_id: str, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/api/reports/{job_id}").json()
        if body["state"] != "running" or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


# ── Health ──────────────────────────


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_health_alias(self, client):
        assert client.get("/health").status_code == 200


# ── Years ──────────────────────────


class TestYears:
    def test_years_from_export(self, client):
        response = client.get("/api/years")
        assert response.status_code == 200
        assert response.json() == {"years": [2024, 2023]}

    def test_missing_account_is_503(self, client, monkeypatch):
        monkeypatch.delenv("CHAT_REPORT_ACCOUNT")
        response = client.get("/api/years")
        assert response.status_code == 503
        assert "CHAT_REPORT_ACCOUNT" in response.json()["detail"]

    def test_missing_database_is_503(self, client, monkeypatch, tmp_path):
        monkeypatch.setenv("CHAT_REPORT_DB_PATH", str(tmp_path / "gone.db"))
        response = client.get("/api/years")
        assert response.status_code == 503


# ── Reports ──────────────────────────


class TestAnnualReport:
    def test_job_runs_to_completion(self, client):
        response = client.post("/api/reports/annual", json={"year": 2024})
        assert response.status_code == 202
        body = response.json()
        assert body["state"] == "running"
        job = _wait_for(client, body["job_id"])
        assert job["state"] == "done"
        assert job["percent"] == 100
        assert job["result"]["total_messages"] == 8
        assert job["result"]["longest_streak"]["days"] == 3

    def test_finished_report_is_cached(self, client):
        first = client.post("/api/reports/annual", json={"year": 2024}).json()
        _wait_for(client, first["job_id"])
        second = client.post("/api/reports/annual", json={"year": 2024}).json()
        assert second["cached"] is True
        assert second["job_id"] is None
        assert second["result"]["total_messages"] == 8

    def test_refresh_bypasses_cache(self, client):
        first = client.post("/api/reports/annual", json={"year": 2024}).json()
        _wait_for(client, first["job_id"])
        again = client.post("/api/reports/annual?refresh=true", json={"year": 2024}).json()
        assert again["cached"] is False
        assert again["job_id"] != first["job_id"]

    def test_cache_expires(self, client):
        first = client.post("/api/reports/annual", json={"year": 2024}).json()
        _wait_for(client, first["job_id"])
        with patch.object(app_module, "CACHE_TTL_SECONDS", 0):
            again = client.post("/api/reports/annual", json={"year": 2024}).json()
        assert again["cached"] is False

    def test_cache_is_per_year(self, client):
        first = client.post("/api/reports/annual", json={"year": 2024}).json()
        _wait_for(client, first["job_id"])
        other = client.post("/api/reports/annual", json={"year": 0}).json()
        assert other["cached"] is False
        assert _wait_for(client, other["job_id"])["result"]["total_messages"] == 9

    def test_defaults_to_all_time(self, client):
        body = client.post("/api/reports/annual", json={}).json()
        assert _wait_for(client, body["job_id"])["result"]["year"] == 0

    def test_missing_account_is_503(self, client, monkeypatch):
        monkeypatch.delenv("CHAT_REPORT_ACCOUNT")
        assert client.post("/api/reports/annual", json={"year": 2024}).status_code == 503


class TestDualReport:
    def test_dual_job(self, client):
        body = client.post("/api/reports/dual", json={"session_id": "alice", "year": 2024}).json()
        job = _wait_for(client, body["job_id"])
        assert job["state"] == "done"
        assert job["result"]["friend_name"] == "Alice"
        assert job["result"]["stats"]["total_messages"] == 6

    def test_cache_is_per_session(self, client):
        first = client.post("/api/reports/dual", json={"session_id": "alice", "year": 2024}).json()
        _wait_for(client, first["job_id"])
        other = client.post("/api/reports/dual", json={"session_id": "bob", "year": 2024}).json()
        assert other["cached"] is False

    def test_blank_session_rejected(self, client):
        response = client.post("/api/reports/dual", json={"session_id": " ", "year": 2024})
        assert response.status_code == 422

    def test_session_required(self, client):
        assert client.post("/api/reports/dual", json={"year": 2024}).status_code == 422


class TestJobs:
    def test_unknown_job_404(self, client):
        assert client.get("/api/reports/does-not-exist").status_code == 404

    def test_cancel_unknown_job_404(self, client):
        assert client.delete("/api/reports/does-not-exist").status_code == 404

    def test_cancel_known_job(self, client):
        body = client.post("/api/reports/annual", json={"year": 2024}).json()
        response = client.delete(f"/api/reports/{body['job_id']}")
        assert response.status_code == 200
        assert response.json() == {"job_id": body["job_id"], "cancel_requested": True}
        assert _wait_for(client, body["job_id"])["state"] in {"done", "cancelled"}
