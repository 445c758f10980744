"""Render coalescing for streamed text.

Deltas can arrive far faster than a display can usefully repaint.  The
coalescer keeps one pending slot and at most one scheduled render: every
``push()`` overwrites the slot, and only the first push after a render
schedules the next one.  Intermediate values may never be shown; the last
pushed value always is, once the timer fires or ``flush()`` is called.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Callable

_logger = logging.getLogger(__name__)

_BOLD = re.compile(r"\*\*(.*?)\*\*")

Render = Callable[[str], Any]
Transform = Callable[[str], str]


def format_markup(text: str) -> str:
    """Lightweight markdown: ``**bold**`` and line breaks."""
    return _BOLD.sub(r"<b>\1</b>", text).replace("\n", "<br>")


class RenderCoalescer:
    """Throttle *render* to one call per *interval* seconds.

    Parameters
    ----------
    render:
        Receives the transformed text.  Exceptions are logged, not raised.
    interval:
        Seconds between renders; defaults to one display refresh at 60 Hz.
    transform:
        Applied to the pending text right before rendering.
    """

    def __init__(
        self,
        render: Render,
        interval: float = 1 / 60,
        transform: Transform | None = format_markup,
    ) -> None:
        self._render = render
        self._interval = interval
        self._transform = transform
        self._pending: str | None = None
        self._handle: asyncio.TimerHandle | None = None
        self.render_count = 0
        self.last_value: str | None = None

    @property
    def scheduled(self) -> bool:
        return self._handle is not None

    @property
    def pending(self) -> str | None:
        return self._pending

    def push(self, full_text: str) -> None:
        """Record the latest accumulated text; schedule a render if none is."""
        self._pending = full_text
        if self._handle is None:
            loop = asyncio.get_running_loop()
            self._handle = loop.call_later(self._interval, self._fire)

    def flush(self) -> None:
        """Render the pending value now instead of waiting for the timer."""
        if self._handle is not None:
            self._handle.cancel()
        self._fire()

    def cancel(self) -> None:
        """Drop the pending value and any scheduled render."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending = None

    def _fire(self) -> None:
        self._handle = None
        if self._pending is None:
            return
        value, self._pending = self._pending, None
        text = self._transform(value) if self._transform else value
        self.render_count += 1
        self.last_value = value
        try:
            self._render(text)
        except Exception:
            _logger.exception("Render callback failed")
