"""Chat Relay - streaming chat-completion relay and incremental client."""

__version__ = "0.3.0"
