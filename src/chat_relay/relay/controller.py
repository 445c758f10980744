"""Relay controller: validate, open upstream, re-frame, tear down.

    request → validate → credential → upstream status check → relay frames

Everything that can fail with a JSON error response happens in ``open()``,
strictly before the first outbound byte.  Once ``relay()`` starts yielding,
failures are reported in-band as an ``[ERROR]`` frame; the status code that
has already been sent is never changed.
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from typing import Any, AsyncGenerator, Awaitable, Callable, Mapping, Sequence

from chat_relay.config import UpstreamSpec
from chat_relay.errors import ConfigurationError, StreamTransportError, ValidationError
from chat_relay.relay.upstream import UpstreamClient, UpstreamStream
from chat_relay.types import Role
from chat_relay.wire import encode_delta, encode_done, encode_error

_logger = logging.getLogger(__name__)

# Async predicate polled between frames (Starlette's ``Request.is_disconnected``)
IsDisconnected = Callable[[], Awaitable[bool]]


def validate_prompt(prompt: Any) -> str:
    """Return the trimmed prompt or raise ``ValidationError``."""
    if not isinstance(prompt, str) or not prompt.strip():
        raise ValidationError()
    return prompt.strip()


def build_messages(
    prior: Sequence[Mapping[str, Any]] | None,
    prompt: str,
) -> list[dict[str, str]]:
    """Prior history followed by the new user turn."""
    messages: list[dict[str, str]] = []
    for m in prior or []:
        try:
            messages.append({"role": str(m["role"]), "content": str(m["content"])})
        except (KeyError, TypeError) as e:
            raise ValidationError("Each message needs a role and content.") from e
    messages.append({"role": Role.USER.value, "content": prompt})
    return messages


class RelayController:
    """Owns one upstream connection per relay request.

    Parameters
    ----------
    spec:
        Upstream settings (endpoint, credential source, sampling).
    upstream:
        Pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        spec: UpstreamSpec,
        upstream: UpstreamClient | None = None,
    ) -> None:
        self._spec = spec
        self._upstream = upstream or UpstreamClient(spec)

    def _credential(self) -> str:
        api_key = self._spec.resolve_api_key()
        if not api_key:
            _logger.error("%s is not configured", self._spec.api_key_env)
            raise ConfigurationError()
        return api_key

    async def open(
        self,
        prompt: Any,
        conversation_id: str | None,
        messages: Sequence[Mapping[str, Any]] | None,
    ) -> UpstreamStream:
        """Validate the request and open the upstream stream.

        Raises ``ValidationError``, ``ConfigurationError``, an
        ``UpstreamError`` subclass, or ``StreamTransportError``; in every case
        nothing has been written to the client yet.
        """
        text = validate_prompt(prompt)
        api_key = self._credential()
        upstream_messages = build_messages(messages, text)
        _logger.info(
            "Relaying conversation %s (%d prior messages)",
            conversation_id or "<new>", len(upstream_messages) - 1,
        )
        return await self._upstream.open_stream(upstream_messages, api_key)

    async def relay(
        self,
        stream: UpstreamStream,
        is_disconnected: IsDisconnected | None = None,
    ) -> AsyncGenerator[str, None]:
        """Yield outbound frames for *stream*, always closing it at the end.

        One frame per delta, each handed to the transport on its own so it
        is flushed immediately.  A client disconnect stops the loop with no
        further frames.
        """
        relayed = 0
        try:
            async with aclosing(stream.deltas()) as deltas:
                async for delta in deltas:
                    if is_disconnected is not None and await is_disconnected():
                        _logger.info(
                            "Client disconnected after %d deltas, closing upstream",
                            relayed,
                        )
                        return
                    relayed += 1
                    _logger.debug("Relaying delta %d: %r", relayed, delta[:30])
                    yield encode_delta(delta)
            yield encode_done()
        except StreamTransportError as e:
            _logger.error("Stream read failed after %d deltas: %s", relayed, e)
            yield encode_error()
        except Exception:
            _logger.exception("Relay failed after %d deltas", relayed)
            yield encode_error()
        finally:
            await stream.aclose()
            if stream.skipped_frames:
                _logger.warning("Skipped %d malformed upstream frames", stream.skipped_frames)

    async def complete(
        self,
        prompt: Any,
        conversation_id: str | None,
        messages: Sequence[Mapping[str, Any]] | None,
    ) -> str:
        """Non-streaming variant: same validation and error mapping."""
        text = validate_prompt(prompt)
        api_key = self._credential()
        upstream_messages = build_messages(messages, text)
        _logger.info("Completing conversation %s without streaming", conversation_id or "<new>")
        return await self._upstream.complete(upstream_messages, api_key)

    async def aclose(self) -> None:
        await self._upstream.close()
