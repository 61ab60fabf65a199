"""Runs one report per worker and streams its progress as messages.

A worker receives a request dict, sends ``progress`` messages while the
report is computed and finishes with exactly one terminal message:
``result``, ``error`` or ``cancelled``.  By default the worker is a separate
process connected by a pipe, so a long scan never blocks the web service;
``use_process=False`` runs the same code in a thread.
"""

from __future__ import annotations

import logging
import multiprocessing
import queue
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from typing import Any

from annual_report import generate_annual_report
from config import CACHE_TTL_SECONDS, DEFAULT_BATCH_SIZE, DEFAULT_PROGRESS_INTERVAL
from dual_report import generate_dual_report
from message_store import MessageStore
from report_engine import ProgressReporter
from report_errors import ReportCancelled, ReportError
from sqlite_store import open_store

logger = logging.getLogger(__name__)

TERMINAL_TYPES = frozenset({"result", "error", "cancelled"})
REPORT_KINDS = ("annual", "dual")

StoreFactory = Callable[[dict], MessageStore]


def default_store_factory(request: dict) -> MessageStore:
    return open_store(request["db_path"], request["account_id"])


def run_report(
    request: dict,
    send: Callable[[dict], None],
    should_cancel: Callable[[], bool] = lambda: False,
    store_factory: StoreFactory | None = None,
) -> None:
    """Compute one report and report every step through *send*.

    Args:
        request: ``kind`` ("annual" or "dual"), ``year``, ``account_id``,
            ``db_path`` and, for dual reports, ``session_id``.  Optional
            ``batch_size`` and ``progress_interval``.
        send: Receives message dicts.
        should_cancel: Polled after every scanned batch.
        store_factory: Opens the store for the request; defaults to the
            SQLite export at ``request["db_path"]``.
    """
    def on_progress(status: str, percent: int) -> None:
        send({"type": "progress", "status": status, "percent": percent})

    def checkpoint() -> None:
        if should_cancel():
            raise ReportCancelled("Report cancelled by the caller")

    progress = ProgressReporter(
        on_progress, interval=request.get("progress_interval", DEFAULT_PROGRESS_INTERVAL),
    )
    kind = request.get("kind")
    store = None
    try:
        if kind not in REPORT_KINDS:
            raise ReportError(f"Unknown report kind: {kind!r}")
        store = (store_factory or default_store_factory)(request)
        common = {
            "store": store,
            "account_id": request.get("account_id", ""),
            "year": int(request.get("year", 0)),
            "yield_hook": checkpoint,
            "batch_size": int(request.get("batch_size", DEFAULT_BATCH_SIZE)),
            "progress": progress,
        }
        if kind == "annual":
            data = generate_annual_report(**common)
        else:
            data = generate_dual_report(session_id=request.get("session_id", ""), **common)
    except ReportCancelled:
        logger.info("Report %s cancelled", kind)
        send({"type": "cancelled"})
    except ReportError as e:
        logger.error("Report %s failed: %s", kind, e)
        send({"type": "error", "error": str(e)})
    except Exception as e:  # terminal message must always be sent
        logger.exception("Report %s crashed", kind)
        send({"type": "error", "error": f"Unexpected error: {e}"})
    else:
        send({"type": "result", "data": data})
    finally:
        close = getattr(store, "close", None)
        if close is not None:
            close()


def _process_main(request: dict, conn: Any) -> None:
    """Child-process entry point; the pipe carries messages both ways."""

    def should_cancel() -> bool:
        try:
            if conn.poll():
                return conn.recv() == "cancel"
        except (EOFError, OSError):
            # Parent end closed: nobody is waiting for the report
            return True
        return False

    def send(message: dict) -> None:
        try:
            conn.send(message)
        except (BrokenPipeError, OSError):
            raise ReportCancelled("Parent went away") from None

    try:
        run_report(request, send, should_cancel)
    except ReportCancelled:
        pass
    finally:
        conn.close()


class ReportJob:
    """One report request executed by its own worker."""

    def __init__(
        self,
        request: dict,
        use_process: bool = True,
        store_factory: StoreFactory | None = None,
    ) -> None:
        self.request = request
        self.use_process = use_process
        self.store_factory = store_factory
        self._process: multiprocessing.Process | None = None
        self._conn: Any = None
        self._thread: threading.Thread | None = None
        self._queue: queue.Queue = queue.Queue()
        self._cancel = threading.Event()
        self._done = False

    def start(self) -> "ReportJob":
        if self.use_process:
            parent_conn, child_conn = multiprocessing.Pipe()
            self._process = multiprocessing.Process(
                target=_process_main, args=(self.request, child_conn), daemon=True,
            )
            self._process.start()
            child_conn.close()
            self._conn = parent_conn
        else:
            self._thread = threading.Thread(
                target=run_report,
                args=(self.request, self._queue.put, self._cancel.is_set, self.store_factory),
                daemon=True,
            )
            self._thread.start()
        return self

    def _receive(self) -> dict:
        if self._conn is not None:
            try:
                return self._conn.recv()
            except EOFError:
                return {"type": "error", "error": "Report worker exited unexpectedly"}
        return self._queue.get()

    def messages(self) -> Iterator[dict]:
        """Yield worker messages up to and including the terminal one."""
        while not self._done:
            message = self._receive()
            if message.get("type") in TERMINAL_TYPES:
                self._done = True
                self._cleanup()
            yield message

    def cancel(self) -> None:
        self._cancel.set()
        conn = self._conn
        if conn is not None and not self._done:
            try:
                conn.send("cancel")
            except (BrokenPipeError, OSError):
                pass

    def _cleanup(self) -> None:
        if self._process is not None:
            self._process.join(timeout=5)
        if self._conn is not None:
            self._conn.close()
            self._conn = None


def run_report_sync(
    request: dict,
    on_progress: Callable[[str, int], None] | None = None,
    use_process: bool = False,
    store_factory: StoreFactory | None = None,
) -> dict:
    """Run a report to completion and return its terminal message."""
    job = ReportJob(request, use_process=use_process, store_factory=store_factory).start()
    for message in job.messages():
        if message["type"] == "progress":
            if on_progress is not None:
                on_progress(message["status"], message["percent"])
        else:
            return message
    return {"type": "error", "error": "Report worker ended without a result"}


# ---------------------------------------------------------------------------
# Job registry (web service)
# ---------------------------------------------------------------------------

class JobRegistry:
    """Tracks background report jobs for polling clients.

    Finished jobs stay visible for ``retention_seconds`` after they end and
    are dropped on the next ``submit``.
    """

    def __init__(
        self,
        use_process: bool = True,
        store_factory: StoreFactory | None = None,
        retention_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.use_process = use_process
        self.store_factory = store_factory
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: dict[str, dict[str, Any]] = {}
        self._handles: dict[str, tuple[ReportJob, threading.Thread]] = {}

    def submit(self, request: dict, on_result: Callable[[dict], None] | None = None) -> str:
        job_id = uuid.uuid4().hex
        job = ReportJob(request, use_process=self.use_process, store_factory=self.store_factory)
        pump = threading.Thread(target=self._pump, args=(job_id, job, on_result), daemon=True)
        with self._lock:
            self._prune()
            self._jobs[job_id] = {
                "job_id": job_id,
                "kind": request.get("kind"),
                "state": "running",
                "status": "Queued",
                "percent": 0,
                "result": None,
                "error": None,
                "started_at": self._clock(),
                "finished_at": None,
            }
            self._handles[job_id] = (job, pump)
        job.start()
        pump.start()
        return job_id

    def _prune(self) -> None:
        """Drop finished jobs past retention.  Caller holds the lock."""
        cutoff = self._clock() - self.retention_seconds
        expired = [
            job_id for job_id, entry in self._jobs.items()
            if entry["finished_at"] is not None and entry["finished_at"] <= cutoff
        ]
        for job_id in expired:
            del self._jobs[job_id]
        if expired:
            logger.debug("Pruned %d finished report jobs", len(expired))

    def _pump(self, job_id: str, job: ReportJob, on_result: Callable[[dict], None] | None) -> None:
        try:
            for message in job.messages():
                kind = message["type"]
                # Before "done" is visible, so a poller never races the cache
                if kind == "result" and on_result is not None:
                    on_result(message["data"])
                with self._lock:
                    entry = self._jobs[job_id]
                    if kind == "progress":
                        entry["status"] = message["status"]
                        entry["percent"] = max(entry["percent"], message["percent"])
                    elif kind == "result":
                        entry.update(state="done", status="Complete", percent=100, result=message["data"])
                    elif kind == "cancelled":
                        entry.update(state="cancelled", status="Cancelled")
                    else:
                        entry.update(state="failed", status="Failed", error=message.get("error"))
        finally:
            with self._lock:
                self._handles.pop(job_id, None)
                entry = self._jobs[job_id]
                if entry["state"] == "running":
                    entry.update(state="failed", status="Failed", error="Report worker ended without a result")
                entry["finished_at"] = self._clock()

    def get(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._jobs.get(job_id)
            return dict(entry) if entry is not None else None

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; False only for an unknown job."""
        with self._lock:
            if job_id not in self._jobs:
                return False
            handle = self._handles.get(job_id)
        if handle is not None:
            handle[0].cancel()
        return True

    def wait(self, job_id: str, timeout: float | None = None) -> dict[str, Any] | None:
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is not None:
            handle[1].join(timeout)
        return self.get(job_id)
