from __future__ import annotations

import json

import pytest

from conftest import ScriptedModelClient, text_response, tool_response
from tool_orchestrator import EngineValves, ModelCallError, StreamError, StreamingResult, ToolOrchestrationEngine
from tool_orchestrator.core.logging_system import RunLogger
from tool_orchestrator.core.timing_logger import close_timing_file, get_timing_events
from tool_orchestrator.core.types import Result, StreamChunk, TokenUsage
from tool_orchestrator.orchestration.trace import TimingRecorder
from tool_orchestrator.streaming.reconciler import StreamingReconciler, TextStream


def _usage(prompt: int, completion: int) -> dict:
    return {"prompt_tokens": prompt, "completion_tokens": completion, "total_tokens": prompt + completion}


def _calculator_request(**overrides) -> dict:
    request = {
        "messages": [{"role": "user", "content": "What is 2+2?"}],
        "tools": [{"id": "calculator", "parameters": {"type": "object", "properties": {}}}],
        "stream": True,
    }
    request.update(overrides)
    return request


# -----------------------------------------------------------------------------
# Engine modes
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_direct_mode_streams_first_call() -> None:
    client = ScriptedModelClient(
        streams=[[StreamChunk(delta_text="Hel"), StreamChunk(delta_text="lo"), StreamChunk(usage=_usage(3, 2))]]
    )
    engine = ToolOrchestrationEngine(client)

    streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})

    assert isinstance(streaming, StreamingResult)
    assert streaming.finalized is False
    chunks = [chunk async for chunk in streaming.text_stream]
    assert chunks == ["Hel", "lo"]

    result = streaming.result
    assert streaming.finalized is True
    assert result.content == "Hello"
    assert result.tokens.to_dict() == {"prompt": 3, "completion": 2, "total": 5}
    assert result.trace.iteration_count == 1
    assert [(s.type, s.name) for s in result.trace.time_segments] == [("model", "iteration_1")]
    assert result.trace.first_response_time_ms is not None
    assert client.payloads == []
    assert client.stream_payloads[0].tools is None


@pytest.mark.asyncio
async def test_deferred_mode_streams_after_tools(calculator_registry) -> None:
    client = ScriptedModelClient(
        [
            tool_response(("calculator", '{"expression": "2+2"}'), prompt=10, completion=2),
            text_response("4", prompt=12, completion=1),
        ],
        streams=[[StreamChunk(delta_text="The answer "), StreamChunk(delta_text="is 4."), StreamChunk(usage=_usage(14, 4))]],
    )
    engine = ToolOrchestrationEngine(client, calculator_registry)

    streaming = await engine.run(_calculator_request())
    text = await streaming.text_stream.collect()

    result = streaming.result
    assert text == "The answer is 4."
    assert result.content == "The answer is 4."
    assert result.trace.iteration_count == 2
    assert result.tokens.total == 12 + 13 + 18
    assert [s.name for s in result.trace.time_segments] == ["iteration_1", "calculator", "iteration_2", "stream"]
    stream_payload = client.stream_payloads[0]
    assert stream_payload.tool_choice == "auto"
    assert stream_payload.tools[0]["function"]["name"] == "calculator"
    assert stream_payload.messages[-1]["role"] == "tool"
    assert len(result.tool_results) == 1


@pytest.mark.asyncio
async def test_replay_when_tools_were_never_called(calculator_registry) -> None:
    client = ScriptedModelClient([text_response("No tools needed.")])
    engine = ToolOrchestrationEngine(client, calculator_registry)

    streaming = await engine.run(_calculator_request())

    assert await streaming.text_stream.collect() == "No tools needed."
    assert streaming.finalized is True
    assert client.stream_payloads == []
    assert streaming.result.trace.iteration_count == 1


@pytest.mark.asyncio
async def test_capped_run_replays_instead_of_streaming_again(calculator_registry) -> None:
    client = ScriptedModelClient(
        fallback=lambda n: tool_response(("calculator", '{"expression": "1+1"}'), content=f"step {n}")
    )
    engine = ToolOrchestrationEngine(client, calculator_registry)

    streaming = await engine.run(_calculator_request())

    assert await streaming.text_stream.collect() == "step 10"
    assert streaming.finalized is True
    assert client.stream_payloads == []
    assert len(client.payloads) == 10
    assert streaming.result.trace.iteration_count == 10


@pytest.mark.asyncio
async def test_stream_without_text_keeps_loop_content(calculator_registry) -> None:
    client = ScriptedModelClient(
        [tool_response(("calculator", '{"expression": "1+1"}')), text_response("2")],
        streams=[[StreamChunk(usage=_usage(1, 0))]],
    )
    engine = ToolOrchestrationEngine(client, calculator_registry)

    streaming = await engine.run(_calculator_request())

    assert await streaming.text_stream.collect() == ""
    assert streaming.result.content == "2"


# -----------------------------------------------------------------------------
# TextStream contract
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_text_stream_can_only_be_consumed_once() -> None:
    client = ScriptedModelClient(streams=[[StreamChunk(delta_text="once")]])
    engine = ToolOrchestrationEngine(client)
    streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})

    assert await streaming.text_stream.collect() == "once"
    with pytest.raises(StreamError, match="only be consumed once"):
        await streaming.text_stream.collect()


@pytest.mark.asyncio
async def test_aclose_releases_the_provider_stream() -> None:
    client = ScriptedModelClient(
        streams=[[StreamChunk(delta_text="a"), StreamChunk(delta_text="b"), StreamChunk(delta_text="c")]]
    )
    engine = ToolOrchestrationEngine(client)
    streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})

    iterator = streaming.text_stream.__aiter__()
    assert await iterator.__anext__() == "a"
    await streaming.text_stream.aclose()

    assert streaming.text_stream.closed is True
    assert client.streams_closed == 1
    assert streaming.finalized is False
    assert streaming.result.content == "a"
    assert [s.name for s in streaming.result.trace.time_segments] == ["iteration_1"]


@pytest.mark.asyncio
async def test_aclose_before_iteration_never_opens_the_stream() -> None:
    stream = TextStream(lambda: _never())
    await stream.aclose()
    assert stream.closed is True
    with pytest.raises(StreamError):
        stream.__aiter__()


async def _never():
    raise AssertionError("factory must not run")
    yield  # pragma: no cover


# -----------------------------------------------------------------------------
# Failures
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_failure_becomes_stream_error_with_trace() -> None:
    client = ScriptedModelClient(streams=[[StreamChunk(delta_text="par"), ConnectionError("socket gone")]])
    engine = ToolOrchestrationEngine(client)
    streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})

    received = []
    with pytest.raises(StreamError, match="socket gone") as excinfo:
        async for chunk in streaming.text_stream:
            received.append(chunk)

    assert received == ["par"]
    assert excinfo.value.trace is not None
    assert excinfo.value.trace.time_segments[0].name == "iteration_1"
    assert streaming.text_stream.closed is True
    assert streaming.finalized is False
    assert client.streams_closed == 1


@pytest.mark.asyncio
async def test_model_call_error_from_stream_passes_through() -> None:
    client = ScriptedModelClient(streams=[[ModelCallError("rate limited", status=429)]])
    engine = ToolOrchestrationEngine(client)
    streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})

    with pytest.raises(ModelCallError) as excinfo:
        await streaming.text_stream.collect()

    assert excinfo.value.status == 429
    assert excinfo.value.trace is not None


@pytest.mark.asyncio
async def test_done_callback_receives_the_final_result() -> None:
    client = ScriptedModelClient(streams=[[StreamChunk(delta_text="x")]])
    seen: list[Result] = []
    reconciler = StreamingReconciler(client, TimingRecorder())
    result = Result(content="", tokens=TokenUsage(), trace=TimingRecorder().trace)

    streaming = reconciler.stream(object(), result, on_done=seen.append)  # type: ignore[arg-type]
    await streaming.text_stream.collect()

    assert seen == [result]
    assert result.content == "x"


@pytest.mark.asyncio
async def test_stream_consumption_is_timed_under_the_run(tmp_path) -> None:
    target = tmp_path / "timing.jsonl"
    client = ScriptedModelClient(streams=[[StreamChunk(delta_text="Hel"), StreamChunk(delta_text="lo")]])
    engine = ToolOrchestrationEngine(
        client, valves=EngineValves(ENABLE_TIMING_LOG=True, TIMING_LOG_FILE=str(target))
    )
    try:
        streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})
        assert await streaming.text_stream.collect() == "Hello"
    finally:
        close_timing_file()

    records = [json.loads(line) for line in target.read_text(encoding="utf-8").splitlines()]
    marks = [r for r in records if r["event"] == "mark" and r["label"] == "first_response"]
    assert [r["run_id"] for r in marks] == [streaming.result.run_id]
    assert get_timing_events(streaming.result.run_id) == []


@pytest.mark.asyncio
async def test_stream_consumption_logs_under_the_run() -> None:
    client = ScriptedModelClient(streams=[[StreamChunk(delta_text="ok")]])
    engine = ToolOrchestrationEngine(client)

    streaming = await engine.run({"messages": [{"role": "user", "content": "Hi"}], "stream": True})
    await streaming.text_stream.collect()

    events = RunLogger.get_events(streaming.result.run_id)
    assert any(event["message"].startswith("Run finished") for event in events)
