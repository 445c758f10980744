"""Fakes for relay and client tests: chunked bodies and frame builders."""

from __future__ import annotations

import asyncio
import json
from typing import Iterable

import httpx


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered in the given pieces.

    ``error`` is raised after the last piece; ``hang`` blocks forever after
    it instead (until the read is cancelled).
    """

    def __init__(
        self,
        chunks: Iterable[str | bytes],
        error: Exception | None = None,
        hang: bool = False,
    ) -> None:
        self.chunks = [c.encode() if isinstance(c, str) else c for c in chunks]
        self.error = error
        self.hang = hang
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def upstream_chunk(content: str) -> str:
    """One OpenAI-style streaming line."""
    payload = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n\n"


def upstream_body(*deltas: str, done: bool = True) -> str:
    body = "".join(upstream_chunk(d) for d in deltas)
    if done:
        body += "data: [DONE]\n\n"
    return body


def relay_body(*deltas: str, done: bool = True) -> str:
    body = "".join(f"data: {json.dumps({'content': d})}\n\n" for d in deltas)
    if done:
        body += "data: [DONE]\n\n"
    return body


def split_every(text: str, size: int) -> list[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


def event_stream(stream: httpx.AsyncByteStream, status_code: int = 200) -> httpx.Response:
    return httpx.Response(
        status_code,
        headers={"Content-Type": "text/event-stream"},
        stream=stream,
    )


