from __future__ import annotations

import time

import pytest

from tool_orchestrator.orchestration.trace import ExecutionTrace, TimeSegment, TimingRecorder


def test_segments_accumulate_per_type() -> None:
    recorder = TimingRecorder()
    with recorder.segment("model", "iteration_1"):
        time.sleep(0.001)
    with recorder.segment("tool", "search"):
        time.sleep(0.001)
    with recorder.segment("model", "iteration_2"):
        pass

    trace = recorder.trace
    assert [(s.type, s.name) for s in trace.time_segments] == [
        ("model", "iteration_1"),
        ("tool", "search"),
        ("model", "iteration_2"),
    ]
    model_sum = sum(s.duration_ms for s in trace.time_segments if s.type == "model")
    tool_sum = sum(s.duration_ms for s in trace.time_segments if s.type == "tool")
    assert trace.model_time_ms == pytest.approx(model_sum)
    assert trace.tools_time_ms == pytest.approx(tool_sum)
    assert trace.time_segments[0].end_time >= trace.time_segments[0].start_time


def test_segment_is_recorded_when_block_raises() -> None:
    recorder = TimingRecorder()
    with pytest.raises(RuntimeError):
        with recorder.segment("model", "iteration_1"):
            raise RuntimeError("boom")
    assert len(recorder.trace.time_segments) == 1


def test_open_segment_closes_once() -> None:
    recorder = TimingRecorder()
    segment = recorder.begin("model", "stream")
    assert segment.close() is not None
    assert segment.close() is None
    assert len(recorder.trace.time_segments) == 1


def test_first_response_is_recorded_once() -> None:
    recorder = TimingRecorder()
    recorder.mark_first_response()
    first = recorder.trace.first_response_time_ms
    time.sleep(0.001)
    recorder.mark_first_response()
    assert first is not None
    assert recorder.trace.first_response_time_ms == first


def test_snapshot_is_detached_from_live_trace() -> None:
    recorder = TimingRecorder()
    recorder.increment_iteration()
    snapshot = recorder.snapshot()
    recorder.increment_iteration()
    with recorder.segment("tool", "x"):
        pass
    assert snapshot.iteration_count == 1
    assert snapshot.time_segments == []


def test_to_dict_shape() -> None:
    trace = ExecutionTrace(
        time_segments=[TimeSegment("model", "iteration_1", 10.0, 10.5, 500.0)],
        model_time_ms=500.0,
        iteration_count=1,
    )
    assert trace.to_dict() == {
        "time_segments": [
            {"type": "model", "name": "iteration_1", "start_time": 10.0, "end_time": 10.5, "duration_ms": 500.0}
        ],
        "model_time_ms": 500.0,
        "tools_time_ms": 0.0,
        "first_response_time_ms": None,
        "iteration_count": 1,
    }


def test_time_segment_is_immutable() -> None:
    segment = TimeSegment("tool", "x", 0.0, 1.0, 1000.0)
    with pytest.raises(AttributeError):
        segment.name = "y"  # type: ignore[misc]
