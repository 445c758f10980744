"""Server side of the relay: upstream reader and controller."""

from chat_relay.relay.controller import RelayController
from chat_relay.relay.upstream import UpstreamClient, UpstreamStream

__all__ = [
    "RelayController",
    "UpstreamClient",
    "UpstreamStream",
]
