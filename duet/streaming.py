"""SSE rendering — one ``chunk`` event per Chunk, then exactly one terminal event.

Event names:
    chunk  — a Chunk, serialized as JSON
    done   — the generation finished cleanly
    error  — the generation ended abnormally; carries the failure message and kind
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from typing import TYPE_CHECKING, Any

from duet.errors import RunFailure

if TYPE_CHECKING:
    from duet.pipeline import Generation

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def format_event(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


async def sse_stream(generation: Generation) -> AsyncGenerator[str, None]:
    conversation_id = generation.conversation_id
    try:
        async with aclosing(generation.stream()) as chunks:
            async for chunk in chunks:
                yield format_event("chunk", chunk.model_dump())
    except RunFailure as e:
        logger.error(f"Generation {conversation_id} failed: {e}")
        yield format_event(
            "error",
            {"conversationId": conversation_id, "message": e.message, "kind": e.kind},
        )
    except Exception as e:
        logger.error(f"Generation {conversation_id} crashed: {e}", exc_info=True)
        yield format_event(
            "error",
            {"conversationId": conversation_id, "message": str(e), "kind": "internal"},
        )
    else:
        yield format_event("done", {"conversationId": conversation_id})
