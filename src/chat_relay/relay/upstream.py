"""Async client for the OpenAI-compatible completion service.

``UpstreamClient.open_stream()`` sends one streaming request and checks the
status *before* handing back an ``UpstreamStream``, so the caller can still
answer with a plain JSON error.  ``UpstreamStream.deltas()`` then yields the
text deltas one at a time until ``[DONE]`` or the end of the body.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Sequence

import httpx

from chat_relay.config import UpstreamSpec
from chat_relay.errors import (
    FrameParseError,
    StreamTransportError,
    UpstreamError,
    UpstreamFaultError,
    upstream_error_for_status,
)
from chat_relay.wire import DONE_MARKER, LineSplitter, data_field, extract_upstream_delta

_logger = logging.getLogger(__name__)

_COMPLETIONS_PATH = "/chat/completions"

# Statuses answered with the relay's own wording instead of the upstream body
_FIXED_MESSAGE_STATUSES = (401, 429, 500)


def _error_message(response: httpx.Response) -> str | None:
    """Pull ``error.message`` (or a bare ``error`` string) out of an error body."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    err = body.get("error")
    if isinstance(err, dict):
        return err.get("message") or None
    if isinstance(err, str):
        return err or None
    return None


def _retry_after(response: httpx.Response) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _status_error(response: httpx.Response) -> UpstreamError:
    status = response.status_code
    message = None if status in _FIXED_MESSAGE_STATUSES else _error_message(response)
    _logger.warning(
        "Completion service returned %d: %s",
        status, _error_message(response) or "<no error message>",
    )
    return upstream_error_for_status(status, message, _retry_after(response))


class UpstreamStream:
    """An open streaming response from the completion service.

    Owned by exactly one relay request; ``aclose()`` releases the connection.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self.finished = False
        self.skipped_frames = 0

    async def _lines(self) -> AsyncGenerator[str, None]:
        splitter = LineSplitter()
        try:
            async for text in self._response.aiter_text():
                for line in splitter.feed(text):
                    yield line
        except (httpx.TransportError, httpx.StreamError) as e:
            raise StreamTransportError(f"Upstream stream interrupted: {e}") from e
        for line in splitter.flush():
            yield line

    async def deltas(self) -> AsyncGenerator[str, None]:
        """Yield non-empty text deltas in arrival order.

        Lines without the ``data:`` marker are ignored.  A payload that does
        not parse is logged and skipped; the stream carries on.
        """
        async with aclosing(self._lines()) as lines:
            async for line in lines:
                data = data_field(line)
                if data is None:
                    continue
                if data == DONE_MARKER:
                    self.finished = True
                    return
                try:
                    delta = extract_upstream_delta(data)
                except FrameParseError as e:
                    self.skipped_frames += 1
                    _logger.warning("Skipping malformed upstream frame: %s", e)
                    continue
                if delta:
                    yield delta
        self.finished = True

    async def aclose(self) -> None:
        await self._response.aclose()


class UpstreamClient:
    """Async client for OpenAI-compatible chat-completion APIs."""

    def __init__(
        self,
        spec: UpstreamSpec,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.spec = spec
        self._client = httpx.AsyncClient(
            base_url=spec.url,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(
                spec.timeout, connect=spec.connect_timeout, read=spec.read_timeout,
            ),
            transport=transport,
        )

    def build_payload(
        self,
        messages: Sequence[dict[str, str]],
        stream: bool = True,
    ) -> dict[str, Any]:
        return {
            "model": self.spec.resolve_model(),
            "messages": list(messages),
            "temperature": self.spec.temperature,
            "max_tokens": self.spec.max_tokens,
            "stream": stream,
        }

    @staticmethod
    def _auth(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    async def open_stream(
        self,
        messages: Sequence[dict[str, str]],
        api_key: str,
    ) -> UpstreamStream:
        """Send the streaming request; raise a typed error on non-2xx."""
        request = self._client.build_request(
            "POST",
            _COMPLETIONS_PATH,
            json=self.build_payload(messages, stream=True),
            headers=self._auth(api_key),
        )
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as e:
            raise StreamTransportError(f"Could not reach completion service: {e}") from e

        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise _status_error(response)

        return UpstreamStream(response)

    async def complete(
        self,
        messages: Sequence[dict[str, str]],
        api_key: str,
    ) -> str:
        """Non-streaming completion; returns the full reply text."""
        try:
            response = await self._client.post(
                _COMPLETIONS_PATH,
                json=self.build_payload(messages, stream=False),
                headers=self._auth(api_key),
            )
        except httpx.TransportError as e:
            raise StreamTransportError(f"Could not reach completion service: {e}") from e

        if not response.is_success:
            raise _status_error(response)

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamFaultError(
                "The completion service returned an unexpected response."
            ) from e

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
