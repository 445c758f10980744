"""Event-stream framing shared by the relay and its clients.

Two layers of the same framing are handled here:

* the completion service's stream, consumed line by line
  (``LineSplitter`` + ``extract_upstream_delta``);
* the relay's own outbound stream, one JSON payload per blank-line
  delimited event (``encode_*`` + ``EventSplitter`` + ``parse_relay_event``).

Both splitters keep the unterminated tail of the buffer between feeds, so
frames may be cut anywhere by the network, including inside the ``data:``
marker or inside a JSON payload.
"""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass

from chat_relay.errors import FrameParseError

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
ERROR_MARKER = "[ERROR]"

_LINE_SEP = "\n"
_EVENT_SEP = "\n\n"


# ---------------------------------------------------------------------------
# Buffering splitters
# ---------------------------------------------------------------------------

class _Splitter:
    """Accumulate text and release complete separator-terminated units."""

    separator = _LINE_SEP

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[str]:
        """Append *text* and return every unit completed by it."""
        self._buffer += text
        parts = self._buffer.split(self.separator)
        self._buffer = parts.pop()
        return [self._clean(p) for p in parts]

    def flush(self) -> list[str]:
        """Return the unterminated remainder (if any) and reset."""
        rest, self._buffer = self._buffer, ""
        rest = self._clean(rest)
        return [rest] if rest.strip() else []

    @property
    def pending(self) -> str:
        return self._buffer

    @staticmethod
    def _clean(unit: str) -> str:
        return unit


class LineSplitter(_Splitter):
    """Split the upstream stream into lines (``\\r\\n`` tolerated)."""

    separator = _LINE_SEP

    @staticmethod
    def _clean(unit: str) -> str:
        return unit.rstrip("\r")


class EventSplitter(_Splitter):
    """Split the relay stream into blank-line delimited events."""

    separator = _EVENT_SEP


# ---------------------------------------------------------------------------
# Upstream payloads
# ---------------------------------------------------------------------------

def data_field(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    if not line.startswith(DATA_PREFIX):
        return None
    return line[len(DATA_PREFIX):].strip()


def extract_upstream_delta(data: str) -> str:
    """Extract the incremental text from one upstream chunk payload.

    Streaming chunks carry the text in ``choices[0].delta.content``; the
    ``message`` field of non-streaming responses is absent.  Chunks with an
    empty ``choices`` list (usage trailers) yield ``""``.

    Raises ``FrameParseError`` when the payload is not a chunk object.
    """
    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise FrameParseError(f"Malformed upstream payload: {data[:100]!r}") from exc

    try:
        choices = payload["choices"]
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content") or ""
    except (TypeError, KeyError, AttributeError, IndexError) as exc:
        raise FrameParseError(f"Unexpected upstream chunk: {data[:100]!r}") from exc

    if not isinstance(content, str):
        raise FrameParseError(f"Non-text delta content: {content!r}")
    return content


# ---------------------------------------------------------------------------
# Relay frames
# ---------------------------------------------------------------------------

class FrameKind(enum.Enum):
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class Frame:
    """One decoded relay event."""

    kind: FrameKind
    content: str = ""


def encode_delta(delta: str) -> str:
    return f"{DATA_PREFIX} {json.dumps({'content': delta}, ensure_ascii=False)}{_EVENT_SEP}"


def encode_done() -> str:
    return f"{DATA_PREFIX} {DONE_MARKER}{_EVENT_SEP}"


def encode_error() -> str:
    return f"{DATA_PREFIX} {ERROR_MARKER}{_EVENT_SEP}"


def parse_relay_event(event: str) -> Frame | None:
    """Decode one relay event.

    Returns None for events without a ``data:`` line (comments, keep-alives).
    Raises ``FrameParseError`` for a payload that is not valid JSON or not
    a ``{"content": str}`` object.
    """
    fields = [f for f in (data_field(line) for line in event.split(_LINE_SEP)) if f is not None]
    if not fields:
        return None
    data = _LINE_SEP.join(fields)

    if data == DONE_MARKER:
        return Frame(FrameKind.DONE)
    if data == ERROR_MARKER:
        return Frame(FrameKind.ERROR)

    try:
        payload = json.loads(data)
    except json.JSONDecodeError as exc:
        raise FrameParseError(f"Malformed relay frame: {data[:100]!r}") from exc
    if not isinstance(payload, dict):
        raise FrameParseError(f"Relay frame is not an object: {data[:100]!r}")

    content = payload.get("content") or ""
    if not isinstance(content, str):
        raise FrameParseError(f"Non-text frame content: {content!r}")
    return Frame(FrameKind.DELTA, content)
