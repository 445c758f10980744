"""Session lifecycle events, delivered to whatever UI is listening.

The chat session emits stream and conversation events here; the terminal
client subscribes to the ones it reports as status lines.  Handlers run in
subscription order, type-specific handlers before ``"*"`` handlers, so the
lines a UI prints follow the order the events happened in.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict, deque
from typing import Any, Callable

from chat_relay.types import EventType, RelayEvent

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

Handler = Callable[[RelayEvent], Any]


class EventBus:
    """Pub/sub for ``RelayEvent``; handlers may be plain functions or coroutines.

    A handler that raises is logged and skipped; the emitter never sees it.
    The last *max_history* events are kept for inspection.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._handlers: defaultdict[str, list[Handler]] = defaultdict(list)
        self._history: deque[RelayEvent] = deque(maxlen=max_history)

    def subscribe(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """Register *handler*; returns a callable that undoes the registration."""
        key = _key(event_type)
        self._handlers[key].append(handler)
        return lambda: self.unsubscribe(key, handler)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        key = _key(event_type)
        if handler in self._handlers.get(key, ()):
            self._handlers[key].remove(handler)
            if not self._handlers[key]:
                del self._handlers[key]

    async def emit(self, event: RelayEvent) -> None:
        self._history.append(event)
        for key in (_key(event.type), ALL_EVENTS):
            for handler in list(self._handlers.get(key, ())):
                await self._deliver(handler, event)

    @property
    def history(self) -> list[RelayEvent]:
        return list(self._history)

    def clear(self) -> None:
        self._handlers.clear()
        self._history.clear()

    @staticmethod
    async def _deliver(handler: Handler, event: RelayEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            _logger.exception(
                "Handler %s failed on %s", getattr(handler, "__qualname__", handler), event.type.value,
            )


def _key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)
