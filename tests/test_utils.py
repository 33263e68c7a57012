from __future__ import annotations

import datetime
import email.utils

from tool_orchestrator.core.utils import (
    CROCKFORD_ALPHABET,
    _json_dumps_compact,
    _normalize_optional_str,
    _pretty_json,
    _retry_after_seconds,
    _safe_json_loads,
    generate_item_id,
)


def test_generate_item_id_shape() -> None:
    ids = {generate_item_id() for _ in range(50)}
    assert len(ids) == 50
    for item_id in ids:
        assert len(item_id) == 20
        assert set(item_id) <= set(CROCKFORD_ALPHABET)


def test_json_helpers() -> None:
    assert _safe_json_loads('{"a": 1}') == {"a": 1}
    assert _safe_json_loads("{nope") is None
    assert _safe_json_loads(None) is None
    assert _pretty_json(None) == ""
    assert _pretty_json(b"  raw  ") == "raw"
    assert _pretty_json({"a": 1}) == '{\n  "a": 1\n}'
    assert _json_dumps_compact({"when": datetime.date(2024, 1, 2)}) == '{"when": "2024-01-02"}'


def test_normalize_optional_str() -> None:
    assert _normalize_optional_str("  x ") == "x"
    assert _normalize_optional_str("   ") is None
    assert _normalize_optional_str(42) == "42"
    assert _normalize_optional_str(None) is None


def test_retry_after_seconds() -> None:
    assert _retry_after_seconds("5") == 5.0
    assert _retry_after_seconds("-3") == 0.0
    assert _retry_after_seconds("") is None
    assert _retry_after_seconds("soon") is None
    future = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(seconds=120)
    parsed = _retry_after_seconds(email.utils.format_datetime(future))
    assert parsed is not None and 100 < parsed <= 120
