"""Shared data types for Chat Relay."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any, Union

DEFAULT_TITLE = "New chat"


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

class Role(str, enum.Enum):
    """Author of a committed message."""

    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A single committed turn.  Immutable once appended."""

    role: Role
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Message:
        return cls(role=Role(raw["role"]), content=str(raw["content"]))


@dataclass
class Conversation:
    """An ordered, append-only sequence of messages with a display title."""

    id: str
    title: str = DEFAULT_TITLE
    created_at: float = field(default_factory=time.time)
    messages: list[Message] = field(default_factory=list)

    @property
    def has_default_title(self) -> bool:
        return self.title == DEFAULT_TITLE

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def history(self) -> list[dict[str, str]]:
        """Messages in the wire shape sent to the relay."""
        return [m.to_dict() for m in self.messages]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "messages": self.history(),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Conversation:
        return cls(
            id=str(raw["id"]),
            title=raw.get("title") or DEFAULT_TITLE,
            created_at=float(raw.get("created_at", time.time())),
            messages=[Message.from_dict(m) for m in raw.get("messages", [])],
        )


# ---------------------------------------------------------------------------
# Transcript entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Committed:
    """A message that is part of the conversation."""

    message: Message


@dataclass(frozen=True)
class InFlight:
    """The exchange currently streaming: the sent prompt and the partial reply."""

    prompt: str
    partial: str = ""


TranscriptEntry = Union[Committed, InFlight]


# ---------------------------------------------------------------------------
# Stream state
# ---------------------------------------------------------------------------

class StreamState(enum.Enum):
    """Lifecycle of a single StreamSession."""

    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by the chat session."""

    # Stream lifecycle
    STREAM_STARTED = "stream.started"
    STREAM_DELTA = "stream.delta"
    STREAM_COMMITTED = "stream.committed"
    STREAM_CANCELLED = "stream.cancelled"
    STREAM_ERROR = "stream.error"

    # Conversation management
    CONVERSATION_CREATED = "conversation.created"
    CONVERSATION_SWITCHED = "conversation.switched"
    CONVERSATION_DELETED = "conversation.deleted"


@dataclass
class RelayEvent:
    """Event emitted by the chat session via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
