"""
plany/core/logger.py — JSONL structured event logger for Plany.

PlanyLogger writes one JSON object per line to <log_dir>/plany_{date}.jsonl,
rotating automatically each day. WARN/ERROR/CRITICAL are also mirrored
to Python stdlib logging (stderr). Thread-safe via threading.Lock.

Usage::

    from plany.core.logger import get_logger
    log = get_logger()
    log.info("orchestrator", "job_enqueued", {"entry_id": "…"})
    log.perf("enrichment", "estimate_done", latency_ms=1240.5, data={"attempt": 0})
"""

from __future__ import annotations

import json
import logging
import os
import platform
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

# ── stdlib mirror logger (stderr for WARN+) ──────────────────
_stdlib = logging.getLogger("plany")
if not _stdlib.handlers:
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(logging.Formatter("[%(levelname)s] %(name)s — %(message)s"))
    _stdlib.addHandler(_handler)
_stdlib.setLevel(logging.INFO)
_stdlib.propagate = False

# ── Default log directory (relative to working directory) ────
_DEFAULT_LOG_DIR = Path(os.environ.get("PLANY_LOG_DIR", "logs"))

# ── Singleton storage ─────────────────────────────────────────
_instance: Optional["PlanyLogger"] = None
_instance_lock = threading.Lock()


class PlanyLogger:
    """
    Singleton JSONL structured logger for Plany.

    Each call to a log method appends a single JSON line to
    ``<log_dir>/plany_{YYYY-MM-DD}.jsonl``. A new file is opened
    automatically when the calendar date changes.

    Fields written per entry:

    .. code-block:: json

        {
          "timestamp_iso": "2026-02-25T01:20:49.123456+00:00",
          "level": "INFO",
          "phase": "orchestrator",
          "event": "job_succeeded",
          "data": {"entry_id": "…", "attempt": 0},
          "latency_ms": 1240.5
        }

    ``latency_ms`` is omitted when ``None``.

    Do not instantiate directly — use :func:`get_logger`.

    Args:
        log_dir: Directory the JSONL files are written to.
    """

    def __init__(self, log_dir: Path = _DEFAULT_LOG_DIR) -> None:
        """Open the log file for today and write the startup entry."""
        self._lock = threading.Lock()
        self._log_dir = Path(log_dir)
        self._file: Optional[Any] = None
        self._current_date: str = ""
        self._open_file()
        self._write_startup()

    # ──────────────────────────────────────────
    # Public logging methods
    # ──────────────────────────────────────────

    def debug(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a DEBUG-level structured log entry (file only)."""
        self._write("DEBUG", phase, event, data)

    def info(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """
        Write an INFO-level structured log entry.

        Args:
            phase: Subsystem (e.g. ``'orchestrator'``, ``'pipeline'``).
            event: Short event identifier (e.g. ``'job_enqueued'``).
            data: Optional dict of additional key-value context.
        """
        self._write("INFO", phase, event, data)

    def warn(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a WARN-level entry and mirror to stderr via stdlib logging."""
        self._write("WARN", phase, event, data)
        _stdlib.warning("[%s] %s | %s", phase, event, data or {})

    def error(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write an ERROR-level entry and mirror to stderr via stdlib logging."""
        self._write("ERROR", phase, event, data)
        _stdlib.error("[%s] %s | %s", phase, event, data or {})

    def critical(self, phase: str, event: str, data: Optional[dict] = None) -> None:
        """Write a CRITICAL-level entry and mirror to stderr via stdlib logging."""
        self._write("CRITICAL", phase, event, data)
        _stdlib.critical("[%s] %s | %s", phase, event, data or {})

    def perf(
        self,
        phase: str,
        event: str,
        latency_ms: float,
        data: Optional[dict] = None,
    ) -> None:
        """
        Write a PERF-level entry for latency tracking.

        Args:
            phase: Subsystem the measurement belongs to (e.g. ``'enrichment'``).
            event: What was measured (e.g. ``'estimate_done'``).
            latency_ms: Measured latency in milliseconds.
            data: Optional additional context dict.
        """
        self._write("PERF", phase, event, data, latency_ms=latency_ms)

    def flush(self) -> None:
        """Flush the underlying file buffer immediately."""
        with self._lock:
            if self._file and not self._file.closed:
                self._file.flush()

    def relocate(self, log_dir: Path | str) -> None:
        """
        Switch to a different log directory, closing the current file.

        Called once at startup after configuration is loaded.
        """
        with self._lock:
            if self._file and not self._file.closed:
                self._file.close()
            self._log_dir = Path(log_dir)
            self._current_date = ""
            self._rotate_if_needed(datetime.now(tz=timezone.utc))

    @property
    def current_path(self) -> Path:
        """Path of the file currently being written."""
        return self._log_dir / f"plany_{self._current_date}.jsonl"

    # ──────────────────────────────────────────
    # Internal helpers
    # ──────────────────────────────────────────

    def _write(
        self,
        level: str,
        phase: str,
        event: str,
        data: Optional[dict],
        latency_ms: Optional[float] = None,
    ) -> None:
        """
        Serialise and append one JSON line to the log file.

        Performs the daily rotation check on every write. Values that are not
        JSON-native are written via ``str()``.
        """
        now = datetime.now(tz=timezone.utc)
        record: dict[str, Any] = {
            "timestamp_iso": now.isoformat(),
            "level": level,
            "phase": phase,
            "event": event,
            "data": data or {},
        }
        if latency_ms is not None:
            record["latency_ms"] = round(latency_ms, 3)

        line = json.dumps(record, ensure_ascii=False, separators=(",", ":"), default=str)

        with self._lock:
            self._rotate_if_needed(now)
            if self._file and not self._file.closed:
                self._file.write(line + "\n")

    def _rotate_if_needed(self, now: datetime) -> None:
        """
        Open a new log file if the calendar date has changed.

        Called inside ``self._lock`` — do not call from outside.
        """
        today = now.strftime("%Y-%m-%d")
        if today != self._current_date:
            if self._file and not self._file.closed:
                self._file.close()
            self._current_date = today
            self._log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self._log_dir / f"plany_{today}.jsonl"
            self._file = open(log_path, "a", encoding="utf-8", buffering=1)  # noqa: WPS515

    def _open_file(self) -> None:
        """Open the log file for today's date (called once on init)."""
        now = datetime.now(tz=timezone.utc)
        with self._lock:
            self._rotate_if_needed(now)

    def _write_startup(self) -> None:
        """Write a startup entry with Python version and platform."""
        self.info(
            phase="system",
            event="startup",
            data={
                "python_version": sys.version,
                "platform": platform.platform(),
                "hostname": platform.node(),
            },
        )


# ──────────────────────────────────────────────────────────────
# Singleton accessor
# ──────────────────────────────────────────────────────────────

def get_logger() -> PlanyLogger:
    """
    Return the singleton :class:`PlanyLogger` instance.

    Thread-safe: the first call creates the instance; subsequent calls
    return the same object without acquiring the creation lock.
    """
    global _instance
    if _instance is None:
        with _instance_lock:
            if _instance is None:
                _instance = PlanyLogger()
    return _instance


def set_stderr_level(level: str) -> None:
    """Set the minimum level mirrored to stderr (``'DEBUG'``, ``'INFO'``, ``'WARN'``…)."""
    name = level.upper()
    if name == "WARN":
        name = "WARNING"
    _stdlib.setLevel(getattr(logging, name, logging.INFO))
