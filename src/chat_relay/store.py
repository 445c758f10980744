"""Conversation store.

``ConversationStore`` is the single owner of committed messages.  It keeps
the whole collection in memory and writes a full snapshot to its backend
after every mutation.  Saving is best effort: a backend failure is logged
and the in-memory state stays as it is.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from pathlib import Path
from typing import Protocol, Sequence

from chat_relay.types import DEFAULT_TITLE, Conversation, Message

_logger = logging.getLogger(__name__)

_CURRENT_KEY = "current_conversation"


def new_conversation_id() -> str:
    return f"conv_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def make_title(prompt: str, limit: int = 20) -> str:
    """First *limit* characters of the prompt, with an ellipsis if cut."""
    text = prompt.strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text or DEFAULT_TITLE


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class ConversationBackend(Protocol):
    """Persistence medium for a snapshot of all conversations."""

    def load(self) -> list[Conversation]: ...

    def save(self, conversations: Sequence[Conversation]) -> None: ...

    def load_current_id(self) -> str | None: ...

    def save_current_id(self, conversation_id: str | None) -> None: ...


class MemoryBackend:
    """Process-local backend; keeps serialized copies like a real medium."""

    def __init__(self) -> None:
        self._data: list[dict] = []
        self._current: str | None = None
        self.save_count = 0

    def load(self) -> list[Conversation]:
        return [Conversation.from_dict(d) for d in self._data]

    def save(self, conversations: Sequence[Conversation]) -> None:
        self._data = [c.to_dict() for c in conversations]
        self.save_count += 1

    def load_current_id(self) -> str | None:
        return self._current

    def save_current_id(self, conversation_id: str | None) -> None:
        self._current = conversation_id


class SQLiteBackend:
    """SQLite-backed conversation snapshot."""

    def __init__(self, db_path: str = "~/.chat_relay/conversations.db") -> None:
        if db_path == ":memory:":
            self.db_path = None
            self._conn = sqlite3.connect(":memory:")
        else:
            self.db_path = Path(db_path).expanduser()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at REAL NOT NULL,
                messages TEXT NOT NULL DEFAULT '[]'
            );
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_conv_created ON conversations(created_at);
        """)
        self._conn.commit()

    def load(self) -> list[Conversation]:
        rows = self._conn.execute(
            "SELECT id, title, created_at, messages FROM conversations "
            "ORDER BY created_at",
        ).fetchall()
        try:
            return [
                Conversation.from_dict({
                    "id": cid,
                    "title": title,
                    "created_at": created_at,
                    "messages": json.loads(messages),
                })
                for cid, title, created_at, messages in rows
            ]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            _logger.exception("Stored conversations are corrupt, clearing them")
            with self._conn:
                self._conn.execute("DELETE FROM conversations")
            return []

    def save(self, conversations: Sequence[Conversation]) -> None:
        with self._conn:
            self._conn.execute("DELETE FROM conversations")
            self._conn.executemany(
                "INSERT INTO conversations (id, title, created_at, messages) "
                "VALUES (?, ?, ?, ?)",
                [
                    (c.id, c.title, c.created_at,
                     json.dumps(c.history(), ensure_ascii=False))
                    for c in conversations
                ],
            )

    def load_current_id(self) -> str | None:
        row = self._conn.execute(
            "SELECT value FROM settings WHERE key = ?", (_CURRENT_KEY,),
        ).fetchone()
        return row[0] if row else None

    def save_current_id(self, conversation_id: str | None) -> None:
        with self._conn:
            if conversation_id:
                self._conn.execute(
                    "INSERT INTO settings (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
                    (_CURRENT_KEY, conversation_id),
                )
            else:
                self._conn.execute("DELETE FROM settings WHERE key = ?", (_CURRENT_KEY,))

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConversationStore:
    """In-memory conversation map with a load/save boundary."""

    def __init__(
        self,
        backend: ConversationBackend | None = None,
        title_length: int = 20,
    ) -> None:
        self._backend = backend or MemoryBackend()
        self._title_length = title_length
        self._conversations: dict[str, Conversation] = {}
        self._current_id: str | None = None
        self.load()

    # ------------------------------------------------------------------
    # Load / save
    # ------------------------------------------------------------------

    def load(self) -> list[Conversation]:
        """Replace the in-memory state with the backend's snapshot."""
        try:
            loaded = self._backend.load()
            current = self._backend.load_current_id()
        except Exception:
            _logger.exception("Failed to load conversations")
            loaded, current = [], None
        self._conversations = {c.id: c for c in loaded}
        self._current_id = current if current in self._conversations else None
        return list(self._conversations.values())

    def save(self) -> bool:
        """Write a snapshot; returns False (and keeps memory) on failure."""
        try:
            self._backend.save(list(self._conversations.values()))
        except Exception:
            _logger.exception("Failed to save conversations")
            return False
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def list_recent(self) -> list[Conversation]:
        """All conversations, newest first."""
        return sorted(
            self._conversations.values(), key=lambda c: c.created_at, reverse=True,
        )

    @property
    def current_id(self) -> str | None:
        return self._current_id

    @current_id.setter
    def current_id(self, conversation_id: str | None) -> None:
        self._current_id = conversation_id
        try:
            self._backend.save_current_id(conversation_id)
        except Exception:
            _logger.exception("Failed to save current conversation id")

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, conversation_id: str | None = None) -> Conversation:
        conv = Conversation(id=conversation_id or new_conversation_id())
        self._conversations[conv.id] = conv
        self.save()
        return conv

    def commit(
        self,
        conversation_id: str,
        user: Message,
        assistant: Message,
    ) -> Conversation:
        """Append a completed exchange; name the conversation after its first prompt."""
        conv = self._conversations.get(conversation_id)
        if conv is None:
            conv = Conversation(id=conversation_id)
            self._conversations[conv.id] = conv

        first_exchange = not conv.messages
        conv.append(user)
        conv.append(assistant)
        if first_exchange and conv.has_default_title:
            conv.title = make_title(user.content, self._title_length)

        self.save()
        return conv

    def delete(self, conversation_id: str) -> bool:
        if self._conversations.pop(conversation_id, None) is None:
            return False
        if self._current_id == conversation_id:
            self.current_id = None
        self.save()
        return True

    def prune(self, keep: int = 50) -> int:
        """Keep only the *keep* most recent conversations; return how many went."""
        doomed = self.list_recent()[keep:]
        for conv in doomed:
            del self._conversations[conv.id]
        if doomed:
            if self._current_id not in self._conversations:
                self.current_id = None
            self.save()
        return len(doomed)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_json(self) -> str:
        return json.dumps(
            [c.to_dict() for c in self.list_recent()], indent=2, ensure_ascii=False,
        )

    def import_json(self, text: str) -> int:
        """Replace all conversations with an exported snapshot.

        Raises ``ValueError`` if *text* is not a valid export.
        """
        data = json.loads(text)
        if not isinstance(data, list):
            raise ValueError("Export must be a JSON list of conversations")
        try:
            imported = [Conversation.from_dict(d) for d in data]
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid conversation in export: {e}") from e

        self._conversations = {c.id: c for c in imported}
        if self._current_id not in self._conversations:
            self.current_id = None
        self.save()
        return len(imported)
