"""Run-scoped logging with in-memory event capture.

This module handles all logging-related functionality:
- RunLogger: per-run logger with context-aware buffering
- Log event classification and formatting
- Explicit cleanup of stale run buffers

RunLogger uses contextvars to track the active run id and the run's console
level, so concurrent runs on one event loop keep their logs apart.
"""

from __future__ import annotations

import datetime
import logging
import sys
import threading
import time
import traceback
from collections import deque
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

from .timing_logger import timed

LOGGER = logging.getLogger(__name__)


class RunLogger:
    """Per-run logger that writes console output and keeps a structured event buffer.

    Cleanup is explicit: the engine calls ``clear`` when a caller no longer needs
    a run's events, and ``cleanup`` prunes buffers that were not touched recently.

    Attributes:
        run_id:    ContextVar storing the active run identifier.
        log_level: ContextVar storing the minimum console level for this run.
        logs:      Map of run_id -> fixed-size deque of structured log events.
    """

    run_id: ContextVar[Optional[str]] = ContextVar("run_id", default=None)
    log_level: ContextVar[int] = ContextVar("log_level", default=logging.INFO)
    max_lines: int = 2000
    logs: Dict[str, deque[dict[str, Any]]] = {}
    _last_seen: Dict[str, float] = {}
    _state_lock = threading.Lock()
    _console_formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | run=%(run_id)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    @staticmethod
    def _classify_event_type(message: str) -> str:
        msg = (message or "").lstrip()
        if msg.startswith("Model request payload:"):
            return "model.request"
        if msg.startswith("Model response:") or msg.startswith("Model stream"):
            return "model.response"
        if msg.startswith("Tool ") or msg.startswith("Skipping "):
            return "tools"
        if msg.startswith("Iteration "):
            return "loop"
        return "engine"

    @classmethod
    def _build_event(cls, record: logging.LogRecord) -> dict[str, Any]:
        """Return a structured run log event extracted from a LogRecord."""
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(getattr(record, "msg", "") or "")

        event: dict[str, Any] = {
            "created": float(getattr(record, "created", time.time())),
            "level": record.levelname or "INFO",
            "logger": record.name or "",
            "run_id": getattr(record, "run_id", None),
            "event_type": cls._classify_event_type(message),
            "module": record.module or "",
            "func": record.funcName or "",
            "lineno": int(record.lineno or 0),
        }
        if record.exc_text:
            event["exception"] = {"text": str(record.exc_text)}
        elif record.exc_info:
            event["exception"] = {"text": "".join(traceback.format_exception(*record.exc_info))}
        event["message"] = message
        return event

    @classmethod
    def format_event_as_text(cls, event: dict[str, Any]) -> str:
        """Render a buffered event as a single log line."""
        created = event.get("created")
        if not isinstance(created, (int, float)):
            created = time.time()
        asctime = datetime.datetime.fromtimestamp(created).strftime("%Y-%m-%d %H:%M:%S")
        msecs = int((created - int(created)) * 1000)
        level = str(event.get("level") or "INFO")
        rid = str(event.get("run_id") or "-")
        return f"{asctime},{msecs:03d} [{level}] [run={rid}] {event.get('message') or ''}"

    @classmethod
    @timed
    def get_logger(cls, name=__name__):
        """Create a logger wired to the current RunLogger context.

        Args:
            name: Logger name; defaults to the current module name.

        Returns:
            logging.Logger: A configured logger that writes both to stdout and
            the in-memory ``RunLogger.logs`` buffer keyed by the current
            ``RunLogger.run_id``.
        """
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.filters.clear()
        logger.setLevel(logging.DEBUG)
        root_logger = logging.getLogger()
        if not any(isinstance(handler, logging.NullHandler) for handler in root_logger.handlers):
            root_logger.addHandler(logging.NullHandler())
        logger.propagate = True

        def filter(record):
            """Attach the run id and capture the per-run console level."""
            rid = cls.run_id.get()
            record.run_id = rid or "-"
            record.run_log_level = cls.log_level.get()
            if rid:
                with cls._state_lock:
                    cls._last_seen[rid] = time.time()
            return True

        logger.addFilter(filter)

        handler = logging.Handler()
        handler.emit = cls.process_record  # type: ignore[assignment]
        logger.addHandler(handler)
        return logger

    @classmethod
    def set_max_lines(cls, value: int) -> None:
        """Set the maximum buffered events retained per run."""
        cls.max_lines = max(100, min(200000, int(value)))

    @classmethod
    def process_record(cls, record: logging.LogRecord) -> None:
        run_log_level = getattr(record, "run_log_level", logging.INFO)
        if record.levelno >= int(run_log_level):
            try:
                sys.stdout.write(cls._console_formatter.format(record) + "\n")
                sys.stdout.flush()
            except (OSError, ValueError):
                pass
        run_id = getattr(record, "run_id", None)
        if not run_id or run_id == "-":
            return
        event = cls._build_event(record)
        with cls._state_lock:
            buffer = cls.logs.get(run_id)
            if buffer is None or buffer.maxlen != cls.max_lines:
                buffer = deque(buffer or (), maxlen=cls.max_lines)
                cls.logs[run_id] = buffer
            buffer.append(event)
            cls._last_seen[run_id] = time.time()

    @classmethod
    def get_events(cls, run_id: str) -> List[dict[str, Any]]:
        """Return a copy of the buffered events for ``run_id``."""
        with cls._state_lock:
            buffer = cls.logs.get(run_id)
            return list(buffer) if buffer else []

    @classmethod
    def clear(cls, run_id: str) -> None:
        with cls._state_lock:
            cls.logs.pop(run_id, None)
            cls._last_seen.pop(run_id, None)

    @classmethod
    @timed
    def cleanup(cls, max_age_seconds: float = 3600, max_runs: Optional[int] = None) -> None:
        """Remove stale run logs to avoid unbounded growth.

        Runs idle for longer than ``max_age_seconds`` are dropped. When
        ``max_runs`` is given, the least recently active runs beyond that count
        are dropped as well.
        """
        cutoff = time.time() - max_age_seconds
        with cls._state_lock:
            stale = [rid for rid, ts in cls._last_seen.items() if ts < cutoff]
            if max_runs is not None:
                ordered = sorted(
                    (rid for rid in cls._last_seen if rid not in stale),
                    key=cls._last_seen.__getitem__,
                )
                excess = len(ordered) - max(0, int(max_runs))
                if excess > 0:
                    stale.extend(ordered[:excess])
            for rid in stale:
                cls.logs.pop(rid, None)
                cls._last_seen.pop(rid, None)
