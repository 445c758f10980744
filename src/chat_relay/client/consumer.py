"""Client for the relay's event stream.

``RelayClient.iter_deltas()`` turns the relay response into a lazy, finite
sequence of ``Delta(chunk, full)`` values.  Unlike the relay, the client
treats a malformed frame as fatal: whatever it returns may be committed to
the conversation, so a partial or corrupt reply must never get that far.

Cancellation is cooperative.  Every network read is raced against the
stream's ``CancellationToken``; when the token fires, the pending read is
abandoned, the connection is closed (the relay sees a disconnect) and
``CancellationSignal`` is raised in place of the next delta.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Sequence

import httpx

from chat_relay.config import ClientSpec
from chat_relay.errors import (
    CancellationSignal,
    RelayError,
    StreamTransportError,
    UpstreamFaultError,
    error_for_status,
)
from chat_relay.wire import EventSplitter, FrameKind, parse_relay_event

_logger = logging.getLogger(__name__)

_CHAT_PATH = "/api/chat"

# Called with (chunk, full_text) after every delta; may be sync or async
OnChunk = Callable[[str, str], Any]


@dataclass(frozen=True)
class Delta:
    """One increment of the reply plus everything received so far."""

    chunk: str
    full: str


class CancellationToken:
    """One-shot cancellation flag shared by a stream and its owner."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationSignal()


async def _next_chunk(chunks: AsyncIterator[str]) -> str | None:
    """Next decoded chunk, or None at end of body."""
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def _race(read: Awaitable[str | None], cancel: CancellationToken | None) -> str | None:
    """Await *read* unless *cancel* fires first."""
    if cancel is None:
        return await read
    if cancel.cancelled:
        if inspect.iscoroutine(read):
            read.close()
        raise CancellationSignal()

    read_task = asyncio.ensure_future(read)
    cancel_task = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {read_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        read_task.cancel()
        cancel_task.cancel()
        raise

    if read_task in done:
        cancel_task.cancel()
        return read_task.result()

    read_task.cancel()
    await asyncio.gather(read_task, return_exceptions=True)
    raise CancellationSignal()


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def _relay_error(response: httpx.Response) -> RelayError:
    """Typed error for a non-2xx relay response (body already read)."""
    message = None
    try:
        body = response.json()
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            message = body["error"]
    except ValueError:
        pass
    return error_for_status(response.status_code, message, _retry_after(response))


class RelayClient:
    """Async client for the relay's ``/api/chat`` endpoint."""

    def __init__(
        self,
        spec: ClientSpec | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec or ClientSpec()
        self._client = httpx.AsyncClient(
            base_url=self.spec.base_url,
            timeout=httpx.Timeout(self.spec.timeout, connect=30),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def iter_deltas(
        self,
        prompt: str,
        conversation_id: str | None = None,
        messages: Sequence[dict[str, str]] = (),
        cancel: CancellationToken | None = None,
    ) -> AsyncGenerator[Delta, None]:
        """Yield reply deltas in order until the relay's ``[DONE]`` frame.

        Raises
        ------
        RelayError subclass
            The relay answered with an error status.
        FrameParseError
            A frame payload was not valid JSON.
        StreamTransportError
            The connection failed, the relay sent ``[ERROR]``, or the stream
            ended without ``[DONE]``.
        CancellationSignal
            *cancel* fired.
        """
        if cancel is not None:
            cancel.raise_if_cancelled()

        payload = {
            "prompt": prompt,
            "conversationId": conversation_id,
            "messages": list(messages),
        }
        splitter = EventSplitter()
        full = ""

        try:
            async with self._client.stream("POST", _CHAT_PATH, json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    raise _relay_error(response)

                chunks = response.aiter_text()
                while True:
                    text = await _race(_next_chunk(chunks), cancel)
                    events = splitter.feed(text) if text is not None else splitter.flush()

                    for event in events:
                        frame = parse_relay_event(event)
                        if frame is None:
                            continue
                        if frame.kind is FrameKind.DONE:
                            return
                        if frame.kind is FrameKind.ERROR:
                            raise StreamTransportError("The relay reported a failure mid-stream.")
                        if not frame.content:
                            continue
                        if cancel is not None:
                            cancel.raise_if_cancelled()
                        full += frame.content
                        yield Delta(frame.content, full)

                    if text is None:
                        break
        except (httpx.TransportError, httpx.StreamError) as e:
            raise StreamTransportError(f"Relay stream interrupted: {e}") from e

        raise StreamTransportError("The relay closed the stream before it completed.")

    async def stream_chat(
        self,
        prompt: str,
        conversation_id: str | None = None,
        messages: Sequence[dict[str, str]] = (),
        on_chunk: OnChunk | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Consume the whole stream, reporting each delta to *on_chunk*.

        Returns the full reply text.
        """
        full = ""
        async with aclosing(
            self.iter_deltas(prompt, conversation_id, messages, cancel),
        ) as deltas:
            async for delta in deltas:
                full = delta.full
                if on_chunk is not None:
                    result = on_chunk(delta.chunk, delta.full)
                    if inspect.isawaitable(result):
                        await result
        return full

    # ------------------------------------------------------------------
    # Non-streaming
    # ------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        return self.spec.backoff_base * (2 ** attempt)

    async def complete(
        self,
        prompt: str,
        conversation_id: str | None = None,
        messages: Sequence[dict[str, str]] = (),
    ) -> str:
        """Request a complete reply in one response, retrying rate limits
        and connection failures with exponential backoff."""
        payload = {
            "prompt": prompt,
            "conversationId": conversation_id,
            "messages": list(messages),
            "stream": False,
        }
        retries = max(1, self.spec.max_retries)

        for attempt in range(retries):
            last_attempt = attempt == retries - 1
            try:
                resp = await self._client.post(_CHAT_PATH, json=payload)
            except httpx.TransportError as e:
                if last_attempt:
                    raise StreamTransportError(f"Relay unreachable: {e}") from e
                _logger.warning(
                    "Relay request failed (attempt %d/%d): %s", attempt + 1, retries, e,
                )
                await asyncio.sleep(self._backoff(attempt))
                continue

            if resp.status_code == 429 and not last_attempt:
                wait = _retry_after(resp) or self._backoff(attempt)
                _logger.warning(
                    "Rate limited, retrying in %.1fs (attempt %d/%d)",
                    wait, attempt + 1, retries,
                )
                await asyncio.sleep(wait)
                continue

            if not resp.is_success:
                raise _relay_error(resp)

            try:
                result = resp.json()["result"]
            except (ValueError, KeyError, TypeError) as e:
                raise UpstreamFaultError("The relay returned a malformed response.") from e
            if not isinstance(result, str):
                raise UpstreamFaultError("The relay returned a malformed response.")
            return result

        raise StreamTransportError("Relay request exhausted its retries.")

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
