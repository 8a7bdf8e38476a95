from __future__ import annotations

import json
from collections.abc import AsyncIterable, AsyncIterator

from loguru import logger

DONE_SENTINEL = "[DONE]"


def _decode(data_lines: list[str]) -> dict | None:
    payload = "\n".join(data_lines)
    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.warning(f"Dropping undecodable stream payload: {payload[:120]!r}")
        return None
    if not isinstance(event, dict) or not isinstance(event.get("type"), str):
        logger.warning(f"Dropping untyped stream payload: {payload[:120]!r}")
        return None
    return event


async def iter_sse_events(lines: AsyncIterable[str]) -> AsyncIterator[dict]:
    """Decode server-sent events carrying one JSON object per ``data:`` block.

    Comment lines and non-data fields are ignored; ``[DONE]`` ends the stream.
    """
    data_lines: list[str] = []
    async for raw in lines:
        line = raw.rstrip("\r\n")
        if line == "":
            if data_lines:
                if data_lines == [DONE_SENTINEL]:
                    return
                event = _decode(data_lines)
                data_lines = []
                if event is not None:
                    yield event
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field != "data":
            continue
        data_lines.append(value[1:] if value.startswith(" ") else value)

    if data_lines and data_lines != [DONE_SENTINEL]:
        event = _decode(data_lines)
        if event is not None:
            yield event
