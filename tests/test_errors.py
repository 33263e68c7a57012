from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from tool_orchestrator.core.errors import (
    ConfigurationError,
    ModelCallError,
    StreamError,
    ToolExecutionError,
    ToolNotFoundError,
    ToolOrchestratorError,
    _extract_provider_error_details,
    _is_retryable_model_error,
    _RetryWait,
    build_model_call_error,
)
from tool_orchestrator.core.types import ToolCallResult
from tool_orchestrator.orchestration.trace import ExecutionTrace


def _retry_state(exc: BaseException | None):
    outcome = None
    if exc is not None:
        outcome = SimpleNamespace(failed=True, exception=lambda: exc)
    return SimpleNamespace(outcome=outcome)


# -----------------------------------------------------------------------------
# Hierarchy
# -----------------------------------------------------------------------------

def test_run_errors_share_a_base_class() -> None:
    for cls in (ConfigurationError, ModelCallError, StreamError):
        assert issubclass(cls, ToolOrchestratorError)


def test_attach_trace_keeps_the_first_trace() -> None:
    first = ExecutionTrace(iteration_count=1)
    error = StreamError("boom", trace=first)
    assert error.attach_trace(ExecutionTrace(iteration_count=5)) is error
    assert error.trace is first


def test_to_dict_includes_trace() -> None:
    error = ConfigurationError("missing key", trace=ExecutionTrace())
    payload = error.to_dict()
    assert payload["type"] == "ConfigurationError"
    assert payload["message"] == "missing key"
    assert payload["trace"]["iteration_count"] == 0
    assert ConfigurationError("x").to_dict()["trace"] is None


def test_tool_errors_render_model_visible_payloads() -> None:
    not_found = ToolNotFoundError("ghost")
    assert str(not_found) == "Tool 'ghost' is not registered"
    failure = ToolExecutionError("search", "index offline")
    assert failure.to_payload() == {"error": True, "message": "index offline", "tool": "search"}


def test_failed_tool_result_content_matches_execution_error_payload() -> None:
    failed = ToolCallResult(call_id="c1", tool_name="search", arguments={}, success=False, error_message="index offline")
    assert failed.content() == ToolExecutionError("search", "index offline").to_payload()
    unnamed = ToolCallResult(call_id="c2", tool_name="search", arguments={}, success=False)
    assert unnamed.content()["message"] == "Tool failed"


# -----------------------------------------------------------------------------
# Provider error parsing
# -----------------------------------------------------------------------------

def test_provider_error_body_is_parsed() -> None:
    body = json.dumps(
        {"error": {"message": "Rate limit exceeded", "code": 429, "metadata": {"request_id": "req-1"}}}
    )
    error = build_model_call_error(429, "Too Many Requests", body, headers={"Retry-After": "3"}, requested_model="m")
    assert error.status == 429
    assert error.message == "Rate limit exceeded"
    assert error.provider_code == 429
    assert error.request_id == "req-1"
    assert error.retry_after == 3.0
    assert error.retryable is True
    assert error.to_dict()["status"] == 429


def test_unparseable_body_falls_back_to_status_summary() -> None:
    error = build_model_call_error(400, "Bad Request", "<html>nope</html>", requested_model="gpt-x")
    assert error.message == "Model request failed for model gpt-x (400 Bad Request)"
    assert error.raw_body == "<html>nope</html>"
    assert error.retryable is False


def test_string_error_section() -> None:
    details = _extract_provider_error_details('{"error": "invalid key"}')
    assert details["message"] == "invalid key"


# -----------------------------------------------------------------------------
# Retry support
# -----------------------------------------------------------------------------

def test_retry_wait_honors_retry_after() -> None:
    wait = _RetryWait(lambda state: 0.5)
    slow = ModelCallError("slow down", status=429, retry_after=4.0)
    assert wait(_retry_state(slow)) == 4.0
    assert wait(_retry_state(ModelCallError("x", status=503))) == 0.5
    assert wait(_retry_state(None)) == 0.5


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ModelCallError("x", status=503), True),
        (ModelCallError("x", status=400), False),
        (ModelCallError("x"), False),
        (RuntimeError("x"), False),
    ],
)
def test_retryable_classification(exc: BaseException, expected: bool) -> None:
    assert _is_retryable_model_error(exc) is expected
