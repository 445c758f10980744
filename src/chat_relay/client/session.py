"""Chat session: one conversation UI's worth of state.

    send → StreamSession → RelayClient.stream_chat → coalescer → commit

A ``StreamSession`` exists only while a reply is streaming.  Its text lives
in the session's accumulator until the relay's ``[DONE]`` frame; only then
are the user prompt and the reply committed to the ``ConversationStore``,
together, exactly once.  Cancellation and errors commit nothing.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

from chat_relay.client.coalescer import RenderCoalescer, Transform, format_markup
from chat_relay.client.consumer import CancellationToken, RelayClient
from chat_relay.errors import (
    CancellationSignal,
    ConfigurationError,
    RelayError,
    SessionBusyError,
    UpstreamAuthError,
    UpstreamFaultError,
    UpstreamRateLimitError,
    ValidationError,
)
from chat_relay.events.bus import EventBus
from chat_relay.store import ConversationStore
from chat_relay.types import (
    Committed,
    Conversation,
    EventType,
    InFlight,
    Message,
    RelayEvent,
    Role,
    StreamState,
    TranscriptEntry,
)

_logger = logging.getLogger(__name__)

GENERIC_ERROR = "Something went wrong while generating a reply. Retry to resend your message."

# Errors whose own message is specific enough to show as is
_SPECIFIC_ERRORS = (
    ValidationError,
    ConfigurationError,
    UpstreamRateLimitError,
    UpstreamAuthError,
    UpstreamFaultError,
)


def describe_error(exc: BaseException) -> tuple[str, bool]:
    """User-facing message for *exc* and whether a retry is offered."""
    if isinstance(exc, _SPECIFIC_ERRORS):
        return exc.message, isinstance(exc, (UpstreamRateLimitError, UpstreamFaultError))
    return GENERIC_ERROR, True


@dataclass
class StreamSession:
    """State of the one in-flight exchange."""

    conversation_id: str
    prompt: str
    coalescer: RenderCoalescer
    token: CancellationToken = field(default_factory=CancellationToken)
    accumulated: str = ""
    chunk_count: int = 0
    state: StreamState = StreamState.STREAMING


class ChatSession:
    """Conversation management plus the send/stop lifecycle.

    Parameters
    ----------
    store:
        Owner of committed conversations.
    client:
        Relay client used for every send.
    render:
        Optional callback receiving each coalesced render of the partial reply.
    event_bus:
        Receives lifecycle events (optional).
    frame_interval:
        Render cadence in seconds.
    transform:
        Applied to the partial reply before rendering.
    """

    def __init__(
        self,
        store: ConversationStore,
        client: RelayClient,
        render: Callable[[str], Any] | None = None,
        event_bus: EventBus | None = None,
        frame_interval: float = 1 / 60,
        transform: Transform | None = format_markup,
    ) -> None:
        self._store = store
        self._client = client
        self._render = render
        self._event_bus = event_bus or EventBus()
        self._frame_interval = frame_interval
        self._transform = transform
        self._active: StreamSession | None = None

        # Observable UI state
        self.streaming_text = ""
        self.error: str | None = None
        self.can_retry = False
        self.last_prompt = ""

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def current_id(self) -> str | None:
        return self._store.current_id

    @property
    def busy(self) -> bool:
        return self._active is not None

    @property
    def active(self) -> StreamSession | None:
        return self._active

    def current_messages(self) -> list[Message]:
        conv = self._store.get(self.current_id) if self.current_id else None
        return list(conv.messages) if conv else []

    def conversation_list(self) -> list[Conversation]:
        return self._store.list_recent()

    def transcript(self) -> list[TranscriptEntry]:
        """Committed messages of the current conversation, then the in-flight
        exchange if it belongs to it."""
        entries: list[TranscriptEntry] = [Committed(m) for m in self.current_messages()]
        stream = self._active
        if stream is not None and stream.conversation_id == self.current_id:
            entries.append(InFlight(prompt=stream.prompt, partial=stream.accumulated))
        return entries

    # ------------------------------------------------------------------
    # Conversation management
    # ------------------------------------------------------------------

    async def new_chat(self) -> Conversation:
        conv = self._store.create()
        self._store.current_id = conv.id
        self._reset_view()
        await self._emit(EventType.CONVERSATION_CREATED, {"conversation_id": conv.id})
        return conv

    async def switch_conversation(self, conversation_id: str) -> bool:
        if conversation_id not in self._store:
            return False
        self._store.current_id = conversation_id
        self._reset_view()
        user_turns = [m for m in self.current_messages() if m.role is Role.USER]
        if user_turns:
            self.last_prompt = user_turns[-1].content
        await self._emit(EventType.CONVERSATION_SWITCHED, {
            "conversation_id": conversation_id,
            "title": self._store.get(conversation_id).title,
        })
        return True

    async def delete_conversation(self, conversation_id: str) -> bool:
        if self._active is not None and self._active.conversation_id == conversation_id:
            self.stop()
        was_current = conversation_id == self.current_id
        if not self._store.delete(conversation_id):
            return False
        await self._emit(EventType.CONVERSATION_DELETED, {"conversation_id": conversation_id})

        if was_current:
            remaining = self._store.list_recent()
            if remaining:
                await self.switch_conversation(remaining[0].id)
            else:
                await self.new_chat()
        return True

    def _reset_view(self) -> None:
        self.streaming_text = ""
        self.error = None
        self.can_retry = False
        self.last_prompt = ""

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, prompt: str) -> str | None:
        """Stream a reply to *prompt* and commit the exchange.

        Returns the reply, or None if the exchange was cancelled or failed
        (``error`` then holds the user-facing message).

        Raises ``SessionBusyError`` while another reply is streaming.
        """
        if self._active is not None:
            raise SessionBusyError()

        text = prompt.strip() if isinstance(prompt, str) else ""
        if not text:
            self.error, self.can_retry = describe_error(ValidationError())
            return None

        conv = self._store.get(self.current_id) if self.current_id else None
        if conv is None:
            conv = await self.new_chat()

        stream = StreamSession(
            conversation_id=conv.id,
            prompt=text,
            coalescer=RenderCoalescer(
                self._apply_render, self._frame_interval, self._transform,
            ),
        )
        self._active = stream
        self.streaming_text = ""
        self.error = None
        self.can_retry = False
        self.last_prompt = text

        try:
            await self._emit(EventType.STREAM_STARTED, {
                "conversation_id": conv.id,
                "history_length": len(conv.messages),
            })
            full = await self._client.stream_chat(
                text,
                conv.id,
                conv.history(),
                on_chunk=partial(self._on_chunk, stream),
                cancel=stream.token,
            )
            stream.token.raise_if_cancelled()
        except CancellationSignal:
            self._discard(stream, StreamState.CANCELLED)
            _logger.info("Stream cancelled after %d chunks", stream.chunk_count)
            await self._emit(EventType.STREAM_CANCELLED, {
                "conversation_id": conv.id,
                "chunks": stream.chunk_count,
            })
            return None
        except asyncio.CancelledError:
            self._discard(stream, StreamState.CANCELLED)
            raise
        except Exception as e:
            self._discard(stream, StreamState.FAILED)
            self.error, self.can_retry = describe_error(e)
            if isinstance(e, RelayError):
                _logger.warning("Stream failed: %s", e.message)
            else:
                _logger.exception("Unexpected stream failure")
            await self._emit(EventType.STREAM_ERROR, {
                "conversation_id": conv.id,
                "error": self.error,
                "can_retry": self.can_retry,
                "status_code": getattr(e, "status_code", None),
            })
            return None
        else:
            stream.coalescer.flush()
            stream.state = StreamState.COMPLETED
            self._store.commit(
                conv.id,
                Message(Role.USER, text),
                Message(Role.ASSISTANT, full),
            )
            self.streaming_text = ""
            _logger.debug(
                "Stream completed: %d chunks, %d characters", stream.chunk_count, len(full),
            )
            await self._emit(EventType.STREAM_COMMITTED, {
                "conversation_id": conv.id,
                "chunks": stream.chunk_count,
                "length": len(full),
            })
            return full
        finally:
            self._active = None

    async def resend(self) -> str | None:
        """Send the last prompt again (the retry affordance)."""
        if not self.last_prompt:
            return None
        return await self.send(self.last_prompt)

    def stop(self) -> bool:
        """Cancel the streaming reply, if any."""
        if self._active is None:
            return False
        self._active.token.cancel()
        self.streaming_text = ""
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _on_chunk(self, stream: StreamSession, chunk: str, full: str) -> None:
        if stream.token.cancelled:
            return
        stream.accumulated = full
        stream.chunk_count += 1
        if stream.chunk_count <= 5 or stream.chunk_count % 10 == 0:
            _logger.debug("Chunk %d: %r", stream.chunk_count, chunk[:30])
        stream.coalescer.push(full)
        await self._emit(EventType.STREAM_DELTA, {
            "conversation_id": stream.conversation_id,
            "chunk": chunk,
            "length": len(full),
        })

    def _apply_render(self, text: str) -> None:
        if self._active is None or self._active.token.cancelled:
            return
        # The reply may belong to a conversation that is no longer on screen
        if self._active.conversation_id == self.current_id:
            self.streaming_text = text
        if self._render is not None:
            self._render(text)

    def _discard(self, stream: StreamSession, state: StreamState) -> None:
        stream.coalescer.cancel()
        stream.state = state
        self.streaming_text = ""

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.emit(RelayEvent(type=event_type, data=data))
