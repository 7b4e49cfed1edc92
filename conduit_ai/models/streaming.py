"""Streaming helpers shared by the provider adapters.

Vendors frame their streams either as Server-Sent Events (``data: {...}``
lines, optionally ending with ``data: [DONE]``) or as newline-delimited JSON.
Adapters only implement ``decode_stream_line``; everything here is transport
independent so it can be exercised with canned byte streams.
"""

from __future__ import annotations

import asyncio
import codecs
import inspect
import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .base import TokenUsage

ChunkCallback = Callable[[str], Any]

SSE_DONE = "[DONE]"

_WORD_RE = re.compile(r"\S+\s*")


@dataclass
class StreamDelta:
    """One decoded stream record."""

    text: str = ""
    usage: TokenUsage | None = None
    finish_reason: str | None = None
    model: str | None = None
    done: bool = False


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Split a byte stream into text lines.

    Lines may straddle network chunk boundaries and so may multi-byte UTF-8
    sequences; both are buffered until complete. Trailing ``\\r`` is dropped.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        *lines, buffer = buffer.split("\n")
        for line in lines:
            yield line.rstrip("\r")
    buffer += decoder.decode(b"", final=True)
    if buffer.strip():
        yield buffer.rstrip("\r")


def sse_payload(line: str) -> dict[str, Any] | None:
    """Return the JSON object carried by an SSE ``data:`` line.

    Blank lines, comments, non-data fields and the ``[DONE]`` sentinel yield
    None. Malformed JSON raises ValueError.
    """
    if not line.startswith("data:"):
        return None
    data = line[5:].strip()
    if not data or data == SSE_DONE:
        return None
    payload = json.loads(data)
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected SSE payload type: {type(payload).__name__}")
    return payload


def ndjson_payload(line: str) -> dict[str, Any] | None:
    """Return the JSON object on a newline-delimited JSON line."""
    if not line.strip():
        return None
    payload = json.loads(line)
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected NDJSON payload type: {type(payload).__name__}")
    return payload


def split_words(content: str) -> list[str]:
    """Split content into word chunks whose concatenation is exactly content.

    Each chunk is a word plus the whitespace after it; leading whitespace is
    attached to the first chunk. Content without words is a single chunk.
    """
    words = _WORD_RE.findall(content)
    if not words:
        return [content]
    leading = content[: len(content) - len(content.lstrip())]
    words[0] = leading + words[0]
    return words


async def emit_chunk(callback: Callable[..., Any], payload: Any) -> None:
    """Deliver a chunk (or final result), awaiting the callback if needed."""
    result = callback(payload)
    if inspect.isawaitable(result):
        await result


async def synthesize_stream(
    content: str,
    on_chunk: ChunkCallback,
    delay: float,
) -> int:
    """Emit content word by word with a fixed delay between chunks.

    Returns:
        Number of chunks emitted (always at least one)
    """
    chunks = split_words(content)
    for index, chunk in enumerate(chunks):
        await emit_chunk(on_chunk, chunk)
        if delay > 0 and index < len(chunks) - 1:
            await asyncio.sleep(delay)
    return len(chunks)
