"""Server-Sent Events (SSE) decoding for streamed model responses.

Handles:
- Line splitting across arbitrary network chunk boundaries
- Multi-line ``data:`` accumulation up to the blank-line event boundary
- Comment lines (``:keep-alive``) and the ``[DONE]`` terminator
- JSON decoding of each event payload
"""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, AsyncIterable, List, Optional

LOGGER = logging.getLogger(__name__)

DONE_SENTINEL = b"[DONE]"


def _decode_event(parts: List[bytes], logger: logging.Logger) -> Optional[dict[str, Any]]:
    data_blob = b"\n".join(parts).strip()
    if not data_blob:
        return None
    try:
        event = json.loads(data_blob.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Dropping malformed SSE payload: %r", data_blob[:200])
        return None
    if not isinstance(event, dict):
        logger.debug("Dropping non-object SSE payload: %r", data_blob[:200])
        return None
    return event


async def iter_sse_data(
    chunks: AsyncIterable[bytes],
    *,
    logger: Optional[logging.Logger] = None,
) -> AsyncGenerator[dict[str, Any], None]:
    """Yield decoded JSON objects from an SSE byte stream until ``[DONE]``.

    ``chunks`` is any async iterable of raw bytes, typically
    ``response.content.iter_chunked(4096)``.
    """
    log = logger or LOGGER
    buf = bytearray()
    event_data_parts: List[bytes] = []

    async for chunk in chunks:
        buf.extend(chunk)
        start_idx = 0
        while True:
            newline_idx = buf.find(b"\n", start_idx)
            if newline_idx == -1:
                break
            line = bytes(buf[start_idx:newline_idx])
            start_idx = newline_idx + 1
            stripped = line.strip()

            # Blank line closes the current event
            if not stripped:
                if not event_data_parts:
                    continue
                if b"\n".join(event_data_parts).strip() == DONE_SENTINEL:
                    return
                event = _decode_event(event_data_parts, log)
                event_data_parts.clear()
                if event is not None:
                    yield event
                continue

            if stripped.startswith(b":"):
                continue
            if stripped.startswith(b"data:"):
                event_data_parts.append(stripped[5:].lstrip())
        if start_idx > 0:
            del buf[:start_idx]

    # Stream ended without a trailing blank line
    if buf.strip():
        tail = bytes(buf).strip()
        if tail.startswith(b"data:"):
            event_data_parts.append(tail[5:].lstrip())
    if event_data_parts and b"\n".join(event_data_parts).strip() != DONE_SENTINEL:
        event = _decode_event(event_data_parts, log)
        if event is not None:
            yield event
