"""Client side of the relay: stream consumer, render coalescer, chat session."""

from chat_relay.client.coalescer import RenderCoalescer, format_markup
from chat_relay.client.consumer import CancellationToken, Delta, RelayClient
from chat_relay.client.session import ChatSession, StreamSession

__all__ = [
    "CancellationToken",
    "ChatSession",
    "Delta",
    "RelayClient",
    "RenderCoalescer",
    "StreamSession",
    "format_markup",
]
