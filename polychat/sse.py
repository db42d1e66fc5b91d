"""Server-sent-event framing: parse upstream delta streams, encode outbound events."""

import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator

from polychat.models import DiscussionEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


def _extract_delta(payload: str) -> str | None:
    """Return ``choices[0].delta.content`` from one JSON frame, or None."""
    try:
        parsed = json.loads(payload)
    except ValueError:
        # Partial or keep-alive frame
        logger.debug("Skipping unparsable SSE payload: %r", payload[:80])
        return None
    if not isinstance(parsed, dict):
        return None
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    if not isinstance(content, str) or not content:
        return None
    return content


async def parse_sse_stream(chunks: AsyncIterable[bytes | str]) -> AsyncIterator[str]:
    """Decode an OpenAI-compatible event stream into text deltas.

    Lines may span chunk boundaries; the trailing partial line is carried
    over to the next chunk. Only ``data: `` lines are considered, and the
    ``[DONE]`` sentinel ends the sequence even if more bytes follow it.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk in chunks:
        buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        lines = buffer.split("\n")
        buffer = lines.pop()

        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_SENTINEL:
                return
            content = _extract_delta(data)
            if content:
                yield content


def encode_event(event: DiscussionEvent) -> str:
    """Serialize one event as a ``data: <json>\\n\\n`` frame."""
    return f"{DATA_PREFIX}{json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"
