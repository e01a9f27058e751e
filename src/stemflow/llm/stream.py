"""
Incremental Server-Sent-Events decoding for the three provider stream grammars.

Each decoder consumes an async iterable of raw byte chunks (arbitrary boundaries) and
yields StreamChunk items. The terminal ``StreamChunk(text="", done=True)`` is always the
last item and is emitted exactly once, however the loop ended.
"""

from __future__ import annotations

import codecs
import contextlib
import json
import logging
from typing import AsyncIterable, AsyncIterator, Callable, Optional

from stemflow.core.models import StreamChunk

logger = logging.getLogger(__name__)

StreamDecoder = Callable[[AsyncIterable[bytes]], AsyncIterator[StreamChunk]]

_DONE = StreamChunk(text="", done=True)


def _should_ignore(line: str) -> bool:
    if not line.strip():
        return True
    return line.lstrip().startswith(":")


def _field_value(line: str, field: str) -> Optional[str]:
    normalized = line.lstrip()
    prefix = f"{field}:"
    if not normalized.startswith(prefix):
        return None
    return normalized[len(prefix) :].lstrip()


def _clean(line: str) -> str:
    return line[:-1] if line.endswith("\r") else line


async def read_sse_lines(source: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield non-comment, non-blank lines; the trailing partial line is held until more bytes arrive."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for raw in source:
        if not raw:
            continue
        buffer += decoder.decode(raw)
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            cleaned = _clean(line)
            if _should_ignore(cleaned):
                continue
            yield cleaned

    buffer += decoder.decode(b"", final=True)
    for line in buffer.split("\n"):
        cleaned = _clean(line)
        if _should_ignore(cleaned):
            continue
        yield cleaned


def _loads(data: str) -> object:
    try:
        return json.loads(data)
    except ValueError:
        logger.debug("Skipping malformed stream payload. data=%s", data[:200])
        return None


def _first_dict(value: object) -> dict:
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return value[0]
    return {}


async def decode_openai_stream(source: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    async for line in read_sse_lines(source):
        data = _field_value(line, "data")
        if not data:
            continue
        if data == "[DONE]":
            break

        parsed = _loads(data)
        if not isinstance(parsed, dict):
            continue
        delta = _first_dict(parsed.get("choices")).get("delta")
        text = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(text, str) and text:
            yield StreamChunk(text=text, done=False)

    yield _DONE


async def decode_anthropic_stream(source: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    current_event: Optional[str] = None

    async for line in read_sse_lines(source):
        event = _field_value(line, "event")
        if event is not None:
            current_event = event
            if current_event == "message_stop":
                break
            continue

        data = _field_value(line, "data")
        if not data:
            continue

        parsed = _loads(data)
        if not isinstance(parsed, dict) or current_event != "content_block_delta":
            continue
        delta = parsed.get("delta")
        text = delta.get("text") if isinstance(delta, dict) else None
        if isinstance(text, str) and text:
            yield StreamChunk(text=text, done=False)

    yield _DONE


async def decode_gemini_stream(source: AsyncIterable[bytes]) -> AsyncIterator[StreamChunk]:
    async for line in read_sse_lines(source):
        data = _field_value(line, "data")
        if not data:
            continue

        parsed = _loads(data)
        if not isinstance(parsed, dict):
            continue
        content = _first_dict(parsed.get("candidates")).get("content")
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            continue
        text = "".join(part["text"] for part in parts if isinstance(part, dict) and isinstance(part.get("text"), str))
        if text:
            yield StreamChunk(text=text, done=False)

    yield _DONE


_DECODERS: dict[str, StreamDecoder] = {
    "openai": decode_openai_stream,
    "openai-compatible": decode_openai_stream,
    "anthropic": decode_anthropic_stream,
    "gemini": decode_gemini_stream,
}


def get_stream_decoder(provider: str) -> StreamDecoder:
    decoder = _DECODERS.get(provider)
    if decoder is None:
        raise ValueError(f"Unsupported provider: {provider}")
    return decoder


async def collect_stream_text(
    chunks: AsyncIterator[StreamChunk],
    on_text: Optional[Callable[[str], None]] = None,
) -> str:
    """
    Join chunk text until the terminal chunk; a source that ends without one is an error.

    The source is always closed before returning so a paused HTTP stream releases its connection.
    """
    parts: list[str] = []
    async with contextlib.aclosing(chunks):
        async for chunk in chunks:
            if chunk.done:
                return "".join(parts)
            parts.append(chunk.text)
            if on_text is not None and chunk.text:
                on_text(chunk.text)
    raise RuntimeError("Stream ended without a terminal chunk.")
