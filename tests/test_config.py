from __future__ import annotations

import pytest
from pydantic import ValidationError

from tool_orchestrator.core.config import ClientValves, EncryptedStr, EngineValves


def test_engine_defaults() -> None:
    valves = EngineValves()
    assert valves.MAX_ITERATIONS == 10
    assert valves.MODEL_CALL_TIMEOUT_SECONDS is None
    assert valves.TOOL_EXECUTION_MODE == "sequential"
    assert valves.UNKNOWN_TOOL_POLICY == "skip"
    assert valves.ENABLE_STRICT_TOOL_SCHEMAS is False
    assert valves.RUN_LOG_MAX_RUNS == 200
    assert valves.RUN_LOG_RETENTION_SECONDS == 3600
    assert valves.RETAIN_TIMING_EVENTS is False


def test_engine_valves_validate_on_assignment() -> None:
    valves = EngineValves()
    with pytest.raises(ValidationError):
        valves.MAX_ITERATIONS = 0
    with pytest.raises(ValidationError):
        EngineValves(TOOL_EXECUTION_MODE="threaded")


def test_log_level_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("TOOL_ORCHESTRATOR_LOG_LEVEL", "debug")
    assert EngineValves().LOG_LEVEL == "DEBUG"
    monkeypatch.setenv("TOOL_ORCHESTRATOR_LOG_LEVEL", "chatty")
    assert EngineValves().LOG_LEVEL == "INFO"


def test_client_valves_read_environment(monkeypatch) -> None:
    monkeypatch.delenv("TOOL_ORCHESTRATOR_SECRET_KEY", raising=False)
    monkeypatch.setenv("TOOL_ORCHESTRATOR_API_KEY", "sk-env")
    monkeypatch.setenv("TOOL_ORCHESTRATOR_BASE_URL", "http://localhost:8080/v1")
    valves = ClientValves()
    assert EncryptedStr.decrypt(valves.API_KEY) == "sk-env"
    assert valves.BASE_URL == "http://localhost:8080/v1"


class TestEncryptedStr:
    def test_plain_without_secret_key(self, monkeypatch) -> None:
        monkeypatch.delenv("TOOL_ORCHESTRATOR_SECRET_KEY", raising=False)
        assert EncryptedStr.encrypt("sk-test") == "sk-test"
        assert ClientValves(API_KEY="sk-test").API_KEY == "sk-test"

    def test_round_trip_with_secret_key(self, monkeypatch) -> None:
        monkeypatch.setenv("TOOL_ORCHESTRATOR_SECRET_KEY", "s3cret")
        valves = ClientValves(API_KEY="sk-test")
        assert valves.API_KEY.startswith("encrypted:")
        assert EncryptedStr.decrypt(valves.API_KEY) == "sk-test"
        # Already-encrypted values are not wrapped twice.
        assert EncryptedStr.encrypt(valves.API_KEY) == valves.API_KEY

    def test_wrong_key_leaves_value_untouched(self, monkeypatch) -> None:
        monkeypatch.setenv("TOOL_ORCHESTRATOR_SECRET_KEY", "one")
        encrypted = EncryptedStr.encrypt("sk-test")
        monkeypatch.setenv("TOOL_ORCHESTRATOR_SECRET_KEY", "two")
        assert EncryptedStr.decrypt(encrypted) == encrypted
