"""Configuration management for the tool orchestrator.

This module contains the configuration schemas and constants:
- EngineValves: orchestration limits, timeouts, tool execution policy, logging
- ClientValves: connection settings for the bundled Chat Completions client
- EncryptedStr: secret value encryption wrapper
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from typing import Any, Literal, Optional, cast

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ConfigDict, Field, GetCoreSchemaHandler
from pydantic_core import core_schema

LOGGER = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------

DEFAULT_MAX_ITERATIONS = 10
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_TIMING_LOG_FILE = "logs/timing.jsonl"

_ENV_PREFIX = "TOOL_ORCHESTRATOR_"
_ALLOWED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env(name: str) -> str:
    return (os.getenv(f"{_ENV_PREFIX}{name}") or "").strip()


# -----------------------------------------------------------------------------
# EncryptedStr
# -----------------------------------------------------------------------------

class EncryptedStr(str):
    """String wrapper that encrypts secrets at rest and decrypts on demand."""

    _ENCRYPTION_PREFIX = "encrypted:"

    @classmethod
    def _get_encryption_key(cls) -> Optional[bytes]:
        """Return the Fernet key derived from ``TOOL_ORCHESTRATOR_SECRET_KEY``."""
        secret = _env("SECRET_KEY")
        if not secret:
            return None
        hashed_key = hashlib.sha256(secret.encode()).digest()
        return base64.urlsafe_b64encode(hashed_key)

    @classmethod
    def encrypt(cls, value: str) -> str:
        """Encrypt ``value`` when a secret key is configured, else return it unchanged."""
        if not value or value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value
        encrypted = Fernet(key).encrypt(value.encode())
        return f"{cls._ENCRYPTION_PREFIX}{encrypted.decode()}"

    @classmethod
    def decrypt(cls, value: str) -> str:
        """Decrypt values produced by :meth:`encrypt`."""
        if not value or not value.startswith(cls._ENCRYPTION_PREFIX):
            return value
        key = cls._get_encryption_key()
        if not key:
            return value[len(cls._ENCRYPTION_PREFIX) :]
        try:
            encrypted_part = value[len(cls._ENCRYPTION_PREFIX) :]
            return Fernet(key).decrypt(encrypted_part.encode()).decode()
        except InvalidToken:
            LOGGER.warning("Failed to decrypt value: invalid token or key mismatch")
            return value
        except (ValueError, UnicodeDecodeError) as e:
            LOGGER.warning("Failed to decrypt value: %s: %s", type(e).__name__, e)
            return value

    @classmethod
    def __get_pydantic_core_schema__(
        cls, _source_type: Any, _handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        """Expose a union schema so plain strings auto-wrap as EncryptedStr."""
        return core_schema.union_schema(
            [
                core_schema.is_instance_schema(cls),
                core_schema.chain_schema(
                    [
                        core_schema.str_schema(),
                        core_schema.no_info_plain_validator_function(
                            lambda value: cls(cls.encrypt(value) if value else value)
                        ),
                    ]
                ),
            ],
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda instance: str(instance)
            ),
        )


def _default_api_key() -> EncryptedStr:
    return EncryptedStr(EncryptedStr.encrypt(_env("API_KEY")))


def _resolve_log_level_default() -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
    """Normalize env-provided log level to the allowed literal set."""
    value = (_env("LOG_LEVEL") or "INFO").upper()
    if value not in _ALLOWED_LOG_LEVELS:
        value = "INFO"
    return cast(Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], value)


# -----------------------------------------------------------------------------
# Valves
# -----------------------------------------------------------------------------

class EngineValves(BaseModel):
    """Orchestration settings shared by every run of an engine instance."""

    model_config = ConfigDict(validate_assignment=True)

    MAX_ITERATIONS: int = Field(
        default=DEFAULT_MAX_ITERATIONS,
        ge=1,
        description=(
            "Maximum number of model calls per run. Each iteration sends the conversation, "
            "executes any requested tools and feeds the results back. The run stops when the "
            "model stops requesting tools or when this limit is reached; reaching the limit is "
            "not an error."
        ),
    )
    MODEL_CALL_TIMEOUT_SECONDS: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per model call timeout. Null disables the engine-side timeout.",
    )
    TOOL_TIMEOUT_SECONDS: Optional[float] = Field(
        default=60.0,
        gt=0,
        description="Per tool execution timeout. A timed out tool is reported to the model as a failed tool result.",
    )
    TOOL_EXECUTION_MODE: Literal["sequential", "parallel"] = Field(
        default="sequential",
        description=(
            "`sequential` runs the tool calls of one model turn one after another. "
            "`parallel` runs them concurrently; results are still appended in request order."
        ),
    )
    UNKNOWN_TOOL_POLICY: Literal["skip", "error"] = Field(
        default="skip",
        description=(
            "What to do when the model calls a tool that is not registered. `skip` drops the call "
            "without a tool result message. `error` answers it with an error-shaped tool result."
        ),
    )
    ENABLE_STRICT_TOOL_SCHEMAS: bool = Field(
        default=False,
        description=(
            "When True, tool parameter schemas are rewritten for strict function calling: every "
            "property required, optional ones nullable, additionalProperties disabled."
        ),
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default_factory=_resolve_log_level_default,
        description="Console log level for orchestration runs.",
    )
    RUN_LOG_MAX_LINES: int = Field(
        default=2000,
        ge=100,
        le=200000,
        description="Maximum structured log events retained in memory per run.",
    )
    RUN_LOG_RETENTION_SECONDS: float = Field(
        default=3600,
        gt=0,
        description="Buffered run logs idle for longer than this are dropped when a run finishes.",
    )
    RUN_LOG_MAX_RUNS: int = Field(
        default=200,
        ge=1,
        description="Maximum number of runs whose logs are kept in memory; the oldest are dropped first.",
    )
    ENABLE_TIMING_LOG: bool = Field(
        default=False,
        description="When True, write function-level timing events to TIMING_LOG_FILE as JSONL.",
    )
    TIMING_LOG_FILE: str = Field(
        default=DEFAULT_TIMING_LOG_FILE,
        description="Path of the JSONL timing log written when ENABLE_TIMING_LOG is True.",
    )
    RETAIN_TIMING_EVENTS: bool = Field(
        default=False,
        description="Keep each run's in-memory timing events after it finishes (readable via get_timing_events).",
    )


class ClientValves(BaseModel):
    """Connection settings for the bundled OpenAI-compatible Chat Completions client."""

    BASE_URL: str = Field(
        default_factory=lambda: _env("BASE_URL") or DEFAULT_BASE_URL,
        description="Base URL of an OpenAI-compatible API. `/chat/completions` is appended.",
    )
    API_KEY: EncryptedStr = Field(
        default_factory=_default_api_key,
        description="API key. Defaults to the TOOL_ORCHESTRATOR_API_KEY environment variable.",
    )
    MODEL: str = Field(
        default_factory=lambda: _env("MODEL") or "gpt-4o-mini",
        description="Model identifier sent with every request.",
    )
    HTTP_CONNECT_TIMEOUT_SECONDS: int = Field(
        default=10,
        ge=1,
        description="Seconds to wait for the TCP/TLS connection before failing.",
    )
    HTTP_TOTAL_TIMEOUT_SECONDS: Optional[int] = Field(
        default=None,
        ge=1,
        description="Overall HTTP timeout per request. Null leaves streaming responses unbounded.",
    )
    HTTP_SOCK_READ_SECONDS: int = Field(
        default=300,
        ge=1,
        description="Idle read timeout between bytes of a response.",
    )
    MAX_RETRIES: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per request for connection errors and retryable HTTP statuses.",
    )
