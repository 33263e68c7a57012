"""Shared aiohttp session cache for model clients.

One ``aiohttp.ClientSession`` per event loop, created on first use and reused
for connection pooling. There are no background timers: owners call
``clear()`` on shutdown to close every cached session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import TYPE_CHECKING, Dict, Optional

import aiohttp

from ...core.timing_logger import timed

if TYPE_CHECKING:
    from ...core.config import ClientValves

LOGGER = logging.getLogger(__name__)


class ClientSessionCache:
    """Explicitly owned cache of HTTP sessions keyed by event loop."""

    def __init__(self, valves: "ClientValves", *, logger: Optional[logging.Logger] = None) -> None:
        self.valves = valves
        self.logger = logger or LOGGER
        self._sessions: Dict[int, aiohttp.ClientSession] = {}
        self._lock = threading.Lock()

    def _create_http_session(self) -> aiohttp.ClientSession:
        valves = self.valves
        connector = aiohttp.TCPConnector(
            limit=50,
            limit_per_host=10,
            keepalive_timeout=75,
            ttl_dns_cache=300,
        )
        connect_timeout = float(valves.HTTP_CONNECT_TIMEOUT_SECONDS)
        total_timeout = float(valves.HTTP_TOTAL_TIMEOUT_SECONDS) if valves.HTTP_TOTAL_TIMEOUT_SECONDS else None
        sock_read = float(valves.HTTP_SOCK_READ_SECONDS) if total_timeout is None else None
        timeout = aiohttp.ClientTimeout(total=total_timeout, connect=connect_timeout, sock_read=sock_read)
        self.logger.debug(
            "HTTP timeouts: connect=%ss total=%s sock_read=%s",
            connect_timeout,
            total_timeout if total_timeout is not None else "disabled",
            sock_read if sock_read is not None else "disabled",
        )
        return aiohttp.ClientSession(connector=connector, timeout=timeout, json_serialize=json.dumps)

    @timed
    def get(self) -> aiohttp.ClientSession:
        """Return the open session bound to the running event loop."""
        loop_key = id(asyncio.get_running_loop())
        with self._lock:
            session = self._sessions.get(loop_key)
            if session is None or session.closed:
                session = self._create_http_session()
                self._sessions[loop_key] = session
            return session

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for session in self._sessions.values() if not session.closed)

    @timed
    async def clear(self) -> None:
        """Close and forget every cached session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            if not session.closed:
                await session.close()
