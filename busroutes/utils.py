"""Cross-cutting helpers: constants, state persistence, run lock, scheduling."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional, Protocol

from .models import PipelineState

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BUS_STOPS_FOLDER_NAME = "Bus Stops"
UNASSIGNED_BUS = "000"
GOOGLE_DOC_MIME = "application/vnd.google-apps.document"
GOOGLE_FOLDER_MIME = "application/vnd.google-apps.folder"
PDF_MIME = "application/pdf"
JSON_MIME = "application/json"


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _write_json_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, ensure_ascii=False, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    finally:
        if os.path.exists(tmp_name):
            os.remove(tmp_name)


# ---------------------------------------------------------------------------
# State persistence
# ---------------------------------------------------------------------------


class StateRepository(Protocol):
    def load(self) -> PipelineState: ...

    def save(self, state: PipelineState) -> None: ...


class JsonStateRepository:
    """Persist :class:`PipelineState` as a single JSON document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> PipelineState:
        if not self.path.exists():
            return PipelineState()
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (json.JSONDecodeError, OSError, ValueError) as exc:
            log.warning("State file %s unreadable (%s); starting fresh", self.path, exc)
            return PipelineState()
        return PipelineState.from_dict(data)

    def save(self, state: PipelineState) -> None:
        _write_json_atomic(self.path, state.to_dict())
        log.debug(
            "State saved: queue=%s cursor=%s processed=%s cache=%s",
            len(state.queue),
            state.cursor,
            len(state.processed),
            len(state.geocode_cache),
        )


# ---------------------------------------------------------------------------
# Run lock
# ---------------------------------------------------------------------------


class RunLock:
    """Named cross-process lock backed by ``fcntl.flock``.

    ``acquire()`` polls a non-blocking lock until ``timeout_s`` elapses and
    yields whether it was obtained. The lock is always released on exit.
    """

    def __init__(self, path: Path, timeout_s: float = 5.0, poll_s: float = 0.1) -> None:
        self.path = Path(path)
        self.timeout_s = timeout_s
        self.poll_s = poll_s

    def _try_lock(self, fp: Any) -> bool:
        import fcntl

        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return False
        return True

    @contextlib.contextmanager
    def acquire(self) -> Iterator[bool]:
        import fcntl

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fp = self.path.open("a+", encoding="utf-8")
        deadline = time.monotonic() + max(0.0, self.timeout_s)
        acquired = self._try_lock(fp)
        while not acquired and time.monotonic() < deadline:
            time.sleep(self.poll_s)
            acquired = self._try_lock(fp)

        try:
            if acquired:
                fp.seek(0)
                fp.truncate()
                fp.write(str(os.getpid()))
                fp.flush()
            yield acquired
        finally:
            if acquired:
                fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()


# ---------------------------------------------------------------------------
# Continuation scheduling
# ---------------------------------------------------------------------------


class ContinuationScheduler:
    """Record whether the coordinator should be invoked again.

    With a ``marker_path`` the pending continuation also survives the process
    (an external trigger can check ``pending`` before invoking a run).
    """

    def __init__(self, marker_path: Optional[Path] = None) -> None:
        self.marker_path = Path(marker_path) if marker_path else None
        self._due_at: Optional[float] = None
        if self.marker_path is not None and self.marker_path.exists():
            try:
                data = json.loads(self.marker_path.read_text(encoding="utf-8"))
                self._due_at = float(data["dueAt"])
            except (json.JSONDecodeError, OSError, KeyError, TypeError, ValueError):
                self._due_at = None

    @property
    def pending(self) -> bool:
        return self._due_at is not None

    @property
    def due_at(self) -> Optional[float]:
        return self._due_at

    def seconds_until_due(self) -> float:
        if self._due_at is None:
            return 0.0
        return max(0.0, self._due_at - time.time())

    def schedule(self, delay_s: float) -> None:
        self._due_at = time.time() + max(0.0, delay_s)
        if self.marker_path is not None:
            _write_json_atomic(self.marker_path, {"dueAt": self._due_at})
        log.info("Continuation scheduled in %.0fs", delay_s)

    def cancel(self) -> None:
        if self._due_at is not None:
            log.info("Pending continuation cancelled")
        self._due_at = None
        if self.marker_path is not None:
            self.marker_path.unlink(missing_ok=True)
