"""Process-wide timing instrumentation with JSONL file output.

Provides:
- @timed decorator for function entrance/exit events
- timing_scope() context manager for code block timing
- timing_mark() for point-in-time events
- Direct JSONL output to the file configured via the TIMING_LOG_FILE valve

Usage:
    from .core.timing_logger import timed, timing_scope, timing_mark

    @timed
    async def call_model():
        with timing_scope("http_post"):
            await session.post(...)
        timing_mark("first_chunk")

Events are only recorded while a run has enabled timing through
``set_timing_context(run_id, enabled=True)``. This log is independent from the
per-run ``ExecutionTrace`` returned to callers; it exists for offline profiling.
"""

from __future__ import annotations

import inspect
import datetime
import functools
import json
import threading
import time
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, TextIO, Tuple, TypeVar

_PACKAGE_PREFIX = "tool_orchestrator."

_timing_file_lock = threading.Lock()
_timing_file_path: Optional[Path] = None
_timing_file_handle: Optional[TextIO] = None

# Per-run event buffer, readable after the run for diagnostics
_timing_events: Dict[str, Deque[Dict[str, Any]]] = {}
_timing_lock = threading.Lock()

_timing_enabled: ContextVar[bool] = ContextVar("timing_enabled", default=False)
_timing_run_id: ContextVar[Optional[str]] = ContextVar("timing_run_id", default=None)

MAX_TIMING_EVENTS = 10000
MAX_TIMING_RUNS = 500


@dataclass(slots=True)
class TimingEvent:
    """Single enter/exit/mark event."""

    ts: float  # time.perf_counter()
    wall_ts: float  # time.time()
    event: str
    label: str
    elapsed_ms: Optional[float] = None


def _format_iso_utc(wall_ts: float) -> str:
    try:
        dt = datetime.datetime.fromtimestamp(wall_ts, tz=datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        dt = datetime.datetime.now(datetime.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _record_event(event: TimingEvent) -> None:
    """Append ``event`` to the JSONL file and the per-run buffer."""
    if not _timing_enabled.get():
        return
    run_id = _timing_run_id.get()
    if not run_id:
        return

    record: Dict[str, Any] = {
        "ts": _format_iso_utc(event.wall_ts),
        "perf_ts": round(event.ts, 6),
        "event": event.event,
        "label": event.label,
        "run_id": run_id,
    }
    if event.elapsed_ms is not None:
        record["elapsed_ms"] = round(event.elapsed_ms, 3)

    with _timing_file_lock:
        if _timing_file_handle is not None:
            try:
                _timing_file_handle.write(
                    json.dumps(record, ensure_ascii=False, separators=(",", ":")) + "\n"
                )
                _timing_file_handle.flush()
            except (OSError, ValueError):
                # Profiling output must never break a run.
                pass

    with _timing_lock:
        buffer = _timing_events.get(run_id)
        if buffer is None:
            while len(_timing_events) >= MAX_TIMING_RUNS:
                # Oldest run first (insertion order).
                _timing_events.pop(next(iter(_timing_events)))
            buffer = deque(maxlen=MAX_TIMING_EVENTS)
            _timing_events[run_id] = buffer
        buffer.append(record)


# -----------------------------------------------------------------------------
# File configuration
# -----------------------------------------------------------------------------


def configure_timing_file(file_path: str) -> bool:
    """Open ``file_path`` in append mode as the timing sink.

    Parent directories are created as needed. Returns False when the file
    cannot be opened, in which case events are only buffered in memory.
    """
    global _timing_file_path, _timing_file_handle

    with _timing_file_lock:
        if _timing_file_handle is not None:
            try:
                _timing_file_handle.close()
            except OSError:
                pass
            _timing_file_handle = None
        try:
            path = Path(file_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            _timing_file_handle = open(path, "a", encoding="utf-8")
            _timing_file_path = path
            return True
        except OSError:
            _timing_file_path = None
            _timing_file_handle = None
            return False


def close_timing_file() -> None:
    """Close the timing sink. Safe to call multiple times."""
    global _timing_file_handle, _timing_file_path

    with _timing_file_lock:
        if _timing_file_handle is not None:
            try:
                _timing_file_handle.close()
            except OSError:
                pass
        _timing_file_handle = None
        _timing_file_path = None


def ensure_timing_file_configured(file_path: str) -> bool:
    """Open the timing sink lazily, reopening it when the path changed."""
    with _timing_file_lock:
        if _timing_file_handle is not None and _timing_file_path is not None:
            if _timing_file_path == Path(file_path):
                return True
    return configure_timing_file(file_path)


# -----------------------------------------------------------------------------
# Context management
# -----------------------------------------------------------------------------


def set_timing_context(run_id: str, enabled: bool) -> List[Tuple[ContextVar[Any], Token[Any]]]:
    """Bind timing state to the current run.

    Returns the contextvar tokens so callers that bind the run more than once
    (the engine, then the streamed call) can restore the previous state.
    """
    return [
        (_timing_run_id, _timing_run_id.set(run_id)),
        (_timing_enabled, _timing_enabled.set(enabled)),
    ]


def reset_timing_context(tokens: List[Tuple[ContextVar[Any], Token[Any]]]) -> None:
    """Restore the timing state captured by ``set_timing_context``."""
    for var, token in reversed(tokens):
        try:
            var.reset(token)
        except ValueError:
            # Token created in a different context; fall back to clearing.
            var.set(None if var is _timing_run_id else False)


def clear_timing_context() -> None:
    _timing_run_id.set(None)
    _timing_enabled.set(False)


def get_timing_events(run_id: str) -> List[Dict[str, Any]]:
    """Return buffered timing events for ``run_id``."""
    with _timing_lock:
        buffer = _timing_events.get(run_id)
        return list(buffer) if buffer else []


def clear_timing_events(run_id: str) -> None:
    with _timing_lock:
        _timing_events.pop(run_id, None)


def timing_mark(label: str) -> None:
    """Record a single point-in-time event such as ``first_chunk``."""
    if not _timing_enabled.get():
        return
    _record_event(TimingEvent(ts=time.perf_counter(), wall_ts=time.time(), event="mark", label=label))


@contextmanager
def timing_scope(label: str):
    """Record enter/exit events with elapsed time around a code block."""
    if not _timing_enabled.get():
        yield
        return
    start_perf = time.perf_counter()
    _record_event(TimingEvent(ts=start_perf, wall_ts=time.time(), event="enter", label=label))
    try:
        yield
    finally:
        end_perf = time.perf_counter()
        _record_event(
            TimingEvent(
                ts=end_perf,
                wall_ts=time.time(),
                event="exit",
                label=label,
                elapsed_ms=(end_perf - start_perf) * 1000,
            )
        )


F = TypeVar("F", bound=Callable[..., Any])


def timed(func: F) -> F:
    """Decorator recording enter/exit events for sync and async callables.

    The label is the module-relative qualified name, e.g.
    ``orchestration.loop.OrchestrationLoop.run``.
    """
    module = getattr(func, "__module__", "") or ""
    qualname = getattr(func, "__qualname__", "") or getattr(func, "__name__", "unknown")
    if module.startswith(_PACKAGE_PREFIX):
        module = module[len(_PACKAGE_PREFIX) :]
    label = f"{module}.{qualname}" if module else qualname

    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            if not _timing_enabled.get():
                return await func(*args, **kwargs)
            with timing_scope(label):
                return await func(*args, **kwargs)

        return async_wrapper  # type: ignore[return-value]

    @functools.wraps(func)
    def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
        if not _timing_enabled.get():
            return func(*args, **kwargs)
        with timing_scope(label):
            return func(*args, **kwargs)

    return sync_wrapper  # type: ignore[return-value]
