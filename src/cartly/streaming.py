"""Server-sent event decoding for streamed chat completions."""

from __future__ import annotations

import json
import logging
from contextlib import aclosing
from typing import TYPE_CHECKING, Final

from cartly.coercion import as_object, object_list
from cartly.errors import HTTPStatusError, ServiceError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from contextlib import AbstractAsyncContextManager

    import httpx

    from cartly.coercion import JSONValue

logger = logging.getLogger(__name__)

DONE_TOKEN = "[DONE]"
DATA_PREFIX = "data:"
EVENT_PREFIX = "event:"


class _Terminator:
    def __repr__(self) -> str:
        return "TERMINATOR"


TERMINATOR: Final = _Terminator()


def parse_stream_line(raw_line: str) -> str | _Terminator | None:
    """Classify one line of an event stream.

    Returns the JSON payload text, TERMINATOR for the done marker, or None
    for lines that carry nothing (blank lines, ``event:`` lines).
    """
    line = raw_line.strip()
    if not line or line.startswith(EVENT_PREFIX):
        return None
    if line.startswith(DATA_PREFIX):
        line = line[len(DATA_PREFIX) :].strip()
    if line == DONE_TOKEN:
        return TERMINATOR
    return line or None


def _joined_text(parts: list[dict]) -> str:
    return "".join(part["text"] for part in parts if isinstance(part.get("text"), str))


def extract_stream_chunk(document: JSONValue) -> str | None:
    """Text carried by one stream event, trying the known shapes in order."""
    root = as_object(document)
    if root is None:
        return None

    choices = object_list(root.get("choices"))
    if choices:
        first = choices[0]
        delta = as_object(first.get("delta"))
        if delta is not None:
            content = delta.get("content")
            if isinstance(content, str) and content:
                return content
            parts = object_list(content)
            if parts:
                text = _joined_text(parts)
                if text:
                    return text

        message = as_object(first.get("message"))
        if message is not None:
            content = message.get("content")
            if isinstance(content, str) and content:
                return content

        text = first.get("text")
        if isinstance(text, str) and text:
            return text

    output_text = root.get("output_text")
    if isinstance(output_text, str) and output_text:
        return output_text

    output = object_list(root.get("output"))
    if output:
        parts = object_list(output[0].get("content"))
        if parts:
            text = _joined_text(parts)
            if text:
                return text

    return None


async def decode_event_stream(lines: AsyncIterator[str]) -> AsyncIterator[str]:
    """Yield text fragments from event-stream lines until done or exhausted."""
    chunk_count = 0
    async for raw_line in lines:
        payload = parse_stream_line(raw_line)
        if payload is None:
            continue
        if payload is TERMINATOR:
            break
        try:
            document = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON stream line. line=%s", payload[:200])
            continue
        chunk = extract_stream_chunk(document)
        if chunk is None:
            continue
        chunk_count += 1
        yield chunk
    logger.info("Stream ended. chunks=%d", chunk_count)


def should_fallback_from_streaming(error: ServiceError) -> bool:
    """True when the error means the server cannot stream this request."""
    if not isinstance(error, HTTPStatusError):
        return False
    if error.status in (404, 405):
        return True
    if error.status == 400:
        body = error.body.lower()
        return "stream" in body or "sse" in body
    return False


async def stream_with_fallback(
    open_stream: Callable[[], AbstractAsyncContextManager[httpx.Response]],
    fallback: Callable[[], Awaitable[str]],
) -> AsyncIterator[str]:
    """Stream text fragments, degrading to one non-streaming answer.

    If the server rejects the streaming request in a way that signals
    streaming is unsupported, ``fallback`` is awaited and its answer is
    yielded as a single fragment. Closing this generator closes the
    underlying response.
    """
    streaming = False
    try:
        async with open_stream() as response:
            streaming = True
            async with aclosing(decode_event_stream(response.aiter_lines())) as chunks:
                async for chunk in chunks:
                    yield chunk
        return
    except ServiceError as exc:
        if streaming or not should_fallback_from_streaming(exc):
            raise
        logger.info("Streaming unsupported, falling back to a single response. error=%s", exc)

    answer = await fallback()
    if answer:
        yield answer
