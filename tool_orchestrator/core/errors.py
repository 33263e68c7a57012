"""Error taxonomy for orchestration runs.

This module handles all error-related functionality:
- ToolOrchestratorError hierarchy (configuration, model call, stream, cancellation)
- Tool-level errors that are converted into model-visible tool results
- Provider error body parsing for HTTP failures
- Retry classification and the Tenacity wait strategy honoring Retry-After

Every error surfaced to a caller carries the partial ``ExecutionTrace`` recorded
before the failure, so timing stays observable for failed runs.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional

from .utils import _normalize_optional_str, _pretty_json, _retry_after_seconds, _safe_json_loads

if TYPE_CHECKING:
    from ..orchestration.trace import ExecutionTrace

LOGGER = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


# -----------------------------------------------------------------------------
# Error hierarchy
# -----------------------------------------------------------------------------

class ToolOrchestratorError(RuntimeError):
    """Base class for errors surfaced to callers of the engine."""

    def __init__(self, message: str, *, trace: "ExecutionTrace | None" = None) -> None:
        self.message = message
        self.trace = trace
        super().__init__(message)

    def attach_trace(self, trace: "ExecutionTrace") -> "ToolOrchestratorError":
        if self.trace is None:
            self.trace = trace
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "trace": self.trace.to_dict() if self.trace is not None else None,
        }


class ConfigurationError(ToolOrchestratorError):
    """Missing client, credential, endpoint or tool registry. Raised before any call."""


class ModelCallError(ToolOrchestratorError):
    """Transport or API failure while calling the model. Aborts the run."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        provider_message: Optional[str] = None,
        provider_code: Optional[Any] = None,
        request_id: Optional[str] = None,
        retry_after: Optional[float] = None,
        raw_body: Optional[str] = None,
        trace: "ExecutionTrace | None" = None,
    ) -> None:
        self.status = status
        self.reason = _normalize_optional_str(reason)
        self.provider_message = _normalize_optional_str(provider_message)
        self.provider_code = provider_code
        self.request_id = _normalize_optional_str(request_id)
        self.retry_after = retry_after
        self.raw_body = raw_body or ""
        super().__init__(message, trace=trace)

    @property
    def retryable(self) -> bool:
        return self.status is not None and self.status in RETRYABLE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "status": self.status,
                "reason": self.reason,
                "provider_message": self.provider_message,
                "request_id": self.request_id,
            }
        )
        return payload


class StreamError(ToolOrchestratorError):
    """Failure while consuming a provider stream. The text stream is closed."""


class RunCancelledError(ToolOrchestratorError):
    """The caller's cancellation signal fired before the run completed."""


class ToolNotFoundError(LookupError):
    """The model called a tool that is not in the registry."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' is not registered")


class ToolExecutionError(RuntimeError):
    """A tool failed. Converted into an error-shaped tool result, never raised out of a run."""

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        self.message = message
        super().__init__(f"Tool '{tool_name}' failed: {message}")

    def to_payload(self) -> dict[str, Any]:
        return {"error": True, "message": self.message, "tool": self.tool_name}


# -----------------------------------------------------------------------------
# Provider error parsing
# -----------------------------------------------------------------------------

def _extract_provider_error_details(body_text: Optional[str]) -> dict[str, Any]:
    """Normalize OpenAI-style error payloads (``{"error": {...}}``) into metadata."""
    parsed = _safe_json_loads(body_text) if body_text else None
    error_section = parsed.get("error") if isinstance(parsed, dict) else None
    if isinstance(error_section, str):
        error_section = {"message": error_section}
    if not isinstance(error_section, dict):
        error_section = {}
    metadata = error_section.get("metadata")
    metadata_dict = metadata if isinstance(metadata, dict) else {}
    request_id = (
        metadata_dict.get("request_id")
        or error_section.get("request_id")
        or (parsed.get("request_id") if isinstance(parsed, dict) else None)
    )
    return {
        "message": error_section.get("message"),
        "code": error_section.get("code"),
        "type": error_section.get("type"),
        "request_id": request_id,
        "raw_body": _pretty_json(parsed) if parsed is not None else (body_text or ""),
    }


def build_model_call_error(
    status: int,
    reason: Optional[str],
    body_text: Optional[str],
    *,
    headers: Optional[Any] = None,
    requested_model: Optional[str] = None,
) -> ModelCallError:
    """Create a structured ``ModelCallError`` for a non-2xx HTTP response."""
    details = _extract_provider_error_details(body_text)
    retry_after = None
    if headers is not None:
        retry_after = _retry_after_seconds(headers.get("Retry-After") or headers.get("retry-after"))
    provider_message = details.get("message")
    label = f" for model {requested_model}" if requested_model else ""
    summary = provider_message or f"Model request failed{label} ({status} {reason or 'HTTP error'})"
    return ModelCallError(
        summary,
        status=status,
        reason=reason,
        provider_message=provider_message,
        provider_code=details.get("code"),
        request_id=details.get("request_id"),
        retry_after=retry_after,
        raw_body=details.get("raw_body"),
    )


# -----------------------------------------------------------------------------
# Retry support
# -----------------------------------------------------------------------------

class _RetryWait:
    """Tenacity wait strategy honoring Retry-After hints on retryable model errors."""

    def __init__(self, base_wait):
        self._base_wait = base_wait

    def __call__(self, retry_state):
        """Return the greater of the base delay and the server's Retry-After guidance."""
        base_delay = self._base_wait(retry_state) if self._base_wait else 0
        exc = None
        if retry_state.outcome is not None and retry_state.outcome.failed:
            exc = retry_state.outcome.exception()
        if isinstance(exc, ModelCallError):
            retry_after = exc.retry_after
            if isinstance(retry_after, (int, float)) and retry_after > 0:
                return max(base_delay, retry_after)
        return base_delay


def _is_retryable_model_error(exc: BaseException) -> bool:
    return isinstance(exc, ModelCallError) and exc.retryable
