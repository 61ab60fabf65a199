"""FastAPI service for chat history reports.

Reports are computed by background workers and polled by job id.  Finished
reports are cached per (kind, year, session) with a 1-hour TTL since the
underlying export only changes when it is re-decrypted.

Deployment: uvicorn app:app --host 127.0.0.1 --port 8204
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from annual_report import get_available_years
from config import CACHE_TTL_SECONDS, ReportConfig, load_config
from report_errors import ConfigError, ReportError, StoreConnectionError
from report_worker import JobRegistry
from sqlite_store import open_store

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Chat Report Service",
    root_path="/chat_report",
)

_registry = JobRegistry()

# ---------------------------------------------------------------------------
# Thread-safe report cache
# ---------------------------------------------------------------------------
_cache_lock = threading.Lock()
_cache: dict[tuple, dict[str, Any]] = {}


class AnnualRequest(BaseModel):
    year: int = 0


class DualRequest(BaseModel):
    session_id: str
    year: int = 0


def _cache_key(kind: str, year: int, session_id: str = "") -> tuple:
    return (kind, max(0, year), session_id)


def _get_cached_report(key: tuple) -> dict[str, Any] | None:
    """Return a cached report, or None when missing or stale."""
    now = time.monotonic()
    with _cache_lock:
        entry = _cache.get(key)
        if entry is not None and (now - entry["built_at"]) < CACHE_TTL_SECONDS:
            return entry["data"]
    return None


def _store_report(key: tuple, data: dict[str, Any]) -> None:
    with _cache_lock:
        _cache[key] = {"data": data, "built_at": time.monotonic()}


def _settings() -> ReportConfig:
    try:
        return load_config()
    except ConfigError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


def _start_report(kind: str, year: int, session_id: str, refresh: bool) -> dict[str, Any]:
    key = _cache_key(kind, year, session_id)
    if not refresh:
        cached = _get_cached_report(key)
        if cached is not None:
            return {"job_id": None, "state": "done", "cached": True, "result": cached}

    settings = _settings()
    request = {
        "kind": kind,
        "year": year,
        "session_id": session_id,
        "db_path": str(settings.db_path),
        "account_id": settings.account_id,
        "batch_size": settings.batch_size,
        "progress_interval": settings.progress_interval,
    }
    job_id = _registry.submit(request, on_result=lambda data: _store_report(key, data))
    logger.info("Started %s report job %s (year=%s)", kind, job_id, year)
    return {"job_id": job_id, "state": "running", "cached": False, "result": None}


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health")
@app.get("/healthz")
def healthz():
    return {"status": "ok"}


@app.get("/api/years")
def api_years():
    """Years with messages for the configured account, newest first."""
    settings = _settings()
    try:
        with open_store(settings.db_path, settings.account_id) as store:
            years = get_available_years(store, settings.account_id)
    except StoreConnectionError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except ReportError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return {"years": years}


@app.post("/api/reports/annual", status_code=202)
def api_annual_report(body: AnnualRequest, refresh: bool = False):
    """Start (or serve from cache) the annual report for *year*."""
    return _start_report("annual", body.year, "", refresh)


@app.post("/api/reports/dual", status_code=202)
def api_dual_report(body: DualRequest, refresh: bool = False):
    """Start (or serve from cache) the dual report with one contact."""
    if not body.session_id.strip():
        raise HTTPException(status_code=422, detail="session_id must not be empty")
    return _start_report("dual", body.year, body.session_id, refresh)


@app.get("/api/reports/{job_id}")
def api_report_status(job_id: str):
    """Poll a job: state, status text, percent and the result once done."""
    job = _registry.get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return job


@app.delete("/api/reports/{job_id}")
def api_cancel_report(job_id: str):
    """Ask a running job to stop at its next batch."""
    if not _registry.cancel(job_id):
        raise HTTPException(status_code=404, detail=f"Unknown job {job_id}")
    return {"job_id": job_id, "cancel_requested": True}
