"""Event bus for Chat Relay."""

from chat_relay.events.bus import EventBus

__all__ = ["EventBus"]
