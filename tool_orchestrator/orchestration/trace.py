"""Per-run timing: time segments and the aggregated execution trace."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any, Iterator, List, Literal, Optional

from ..core.timing_logger import timing_mark, timing_scope

SegmentType = Literal["model", "tool"]


@dataclass(slots=True, frozen=True)
class TimeSegment:
    """One timed span attributed to a model call or a tool execution."""

    type: SegmentType
    name: str
    start_time: float  # epoch seconds
    end_time: float
    duration_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "name": self.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass(slots=True)
class ExecutionTrace:
    time_segments: List[TimeSegment] = field(default_factory=list)
    model_time_ms: float = 0.0
    tools_time_ms: float = 0.0
    first_response_time_ms: Optional[float] = None
    iteration_count: int = 0

    def copy(self) -> "ExecutionTrace":
        return replace(self, time_segments=list(self.time_segments))

    def to_dict(self) -> dict[str, Any]:
        return {
            "time_segments": [segment.to_dict() for segment in self.time_segments],
            "model_time_ms": round(self.model_time_ms, 3),
            "tools_time_ms": round(self.tools_time_ms, 3),
            "first_response_time_ms": (
                round(self.first_response_time_ms, 3) if self.first_response_time_ms is not None else None
            ),
            "iteration_count": self.iteration_count,
        }


class TimingRecorder:
    """Observe model and tool calls of one run and aggregate them into an ``ExecutionTrace``.

    Segments are appended when a span ends, so the order of ``time_segments``
    follows call completion. Aggregates are updated with the exact durations
    stored on the segments.
    """

    def __init__(self) -> None:
        self.trace = ExecutionTrace()
        self._run_started_perf = time.perf_counter()

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._run_started_perf) * 1000

    def mark_first_response(self) -> None:
        """Record the time to the first model output, once per run."""
        if self.trace.first_response_time_ms is None:
            self.trace.first_response_time_ms = self.elapsed_ms()
            timing_mark("first_response")

    def record(self, segment_type: SegmentType, name: str, start_time: float, start_perf: float) -> TimeSegment:
        duration_ms = max(0.0, (time.perf_counter() - start_perf) * 1000)
        return self.add(
            TimeSegment(
                type=segment_type,
                name=name,
                start_time=start_time,
                end_time=start_time + duration_ms / 1000,
                duration_ms=duration_ms,
            )
        )

    def add(self, segment: TimeSegment) -> TimeSegment:
        self.trace.time_segments.append(segment)
        if segment.type == "model":
            self.trace.model_time_ms += segment.duration_ms
        else:
            self.trace.tools_time_ms += segment.duration_ms
        return segment

    @contextmanager
    def segment(self, segment_type: SegmentType, name: str) -> Iterator[None]:
        """Time the enclosed block as one segment, including when it raises."""
        start_time = time.time()
        start_perf = time.perf_counter()
        with timing_scope(f"{segment_type}:{name}"):
            try:
                yield
            finally:
                self.record(segment_type, name, start_time, start_perf)

    def begin(self, segment_type: SegmentType, name: str) -> "_OpenSegment":
        """Open a segment that is closed explicitly, for spans that outlive one block."""
        return _OpenSegment(self, segment_type, name)

    def increment_iteration(self) -> int:
        self.trace.iteration_count += 1
        return self.trace.iteration_count

    def snapshot(self) -> ExecutionTrace:
        return self.trace.copy()


class _OpenSegment:
    __slots__ = ("_recorder", "_type", "_name", "_start_time", "_start_perf", "_closed")

    def __init__(self, recorder: TimingRecorder, segment_type: SegmentType, name: str) -> None:
        self._recorder = recorder
        self._type = segment_type
        self._name = name
        self._start_time = time.time()
        self._start_perf = time.perf_counter()
        self._closed = False

    def close(self) -> Optional[TimeSegment]:
        if self._closed:
            return None
        self._closed = True
        return self._recorder.record(self._type, self._name, self._start_time, self._start_perf)
