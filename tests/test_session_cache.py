from __future__ import annotations

import pytest

from tool_orchestrator.api.gateway.session_cache import ClientSessionCache
from tool_orchestrator.core.config import ClientValves


@pytest.mark.asyncio
async def test_session_is_reused_within_a_loop() -> None:
    cache = ClientSessionCache(ClientValves(API_KEY="k"))
    first = cache.get()
    assert cache.get() is first
    assert len(cache) == 1
    await cache.clear()
    assert first.closed
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_closed_session_is_replaced() -> None:
    cache = ClientSessionCache(ClientValves(API_KEY="k"))
    first = cache.get()
    await first.close()
    second = cache.get()
    assert second is not first
    await cache.clear()


@pytest.mark.asyncio
async def test_timeouts_follow_valves() -> None:
    cache = ClientSessionCache(ClientValves(API_KEY="k", HTTP_CONNECT_TIMEOUT_SECONDS=3, HTTP_SOCK_READ_SECONDS=30))
    session = cache.get()
    assert session.timeout.connect == 3.0
    assert session.timeout.sock_read == 30.0
    assert session.timeout.total is None
    await cache.clear()

    bounded = ClientSessionCache(ClientValves(API_KEY="k", HTTP_TOTAL_TIMEOUT_SECONDS=60))
    session = bounded.get()
    assert session.timeout.total == 60.0
    assert session.timeout.sock_read is None
    await bounded.clear()
