"""Tests for the conversation store and its backends."""

from __future__ import annotations

import json
import re
import sqlite3

import pytest

from chat_relay.store import (
    ConversationStore,
    MemoryBackend,
    SQLiteBackend,
    make_title,
    new_conversation_id,
)
from chat_relay.types import DEFAULT_TITLE, Conversation, Message, Role


def _exchange(prompt: str, reply: str) -> tuple[Message, Message]:
    return Message(Role.USER, prompt), Message(Role.ASSISTANT, reply)


class FailingBackend(MemoryBackend):
    def save(self, conversations):
        raise OSError("disk full")


class TestHelpers:
    def test_id_format(self):
        assert re.fullmatch(r"conv_\d+_[0-9a-f]{9}", new_conversation_id())
        assert new_conversation_id() != new_conversation_id()

    def test_short_title(self):
        assert make_title("Hello") == "Hello"

    def test_exactly_limit(self):
        assert make_title("x" * 20) == "x" * 20

    def test_long_title(self):
        assert make_title("What is the capital of France?") == "What is the capital ..."

    def test_blank_title(self):
        assert make_title("   ") == DEFAULT_TITLE


class TestCommit:
    def test_commit_appends_both_messages(self):
        store = ConversationStore()
        conv = store.create()
        store.commit(conv.id, *_exchange("Hello", "Hi there"))

        assert [m.to_dict() for m in store.get(conv.id).messages] == [
            {"role": "user", "content": "Hello"},
            {"role": "assistant", "content": "Hi there"},
        ]

    def test_title_from_first_prompt_only(self):
        store = ConversationStore()
        conv = store.create()
        store.commit(conv.id, *_exchange("Tell me about the weather today", "Sunny"))
        store.commit(conv.id, *_exchange("Something else", "Ok"))
        assert store.get(conv.id).title == "Tell me about the we..."

    def test_custom_title_length(self):
        store = ConversationStore(title_length=5)
        conv = store.create()
        store.commit(conv.id, *_exchange("Hello world", "x"))
        assert store.get(conv.id).title == "Hello..."

    def test_commit_unknown_id_creates(self):
        store = ConversationStore()
        store.commit("conv_x", *_exchange("a", "b"))
        assert "conv_x" in store
        assert len(store.get("conv_x").messages) == 2

    def test_every_mutation_saves(self):
        backend = MemoryBackend()
        store = ConversationStore(backend)
        conv = store.create()
        store.commit(conv.id, *_exchange("a", "b"))
        store.delete(conv.id)
        assert backend.save_count == 3

    def test_save_failure_keeps_memory(self, caplog):
        store = ConversationStore(FailingBackend())
        conv = store.create()
        store.commit(conv.id, *_exchange("a", "b"))

        assert len(store.get(conv.id).messages) == 2
        assert store.save() is False
        assert "Failed to save conversations" in caplog.text


class TestQueries:
    def test_list_recent_newest_first(self):
        store = ConversationStore()
        old, new = store.create("old"), store.create("new")
        old.created_at, new.created_at = 1.0, 2.0
        assert [c.id for c in store.list_recent()] == ["new", "old"]

    def test_delete(self):
        store = ConversationStore()
        conv = store.create()
        store.current_id = conv.id
        assert store.delete(conv.id)
        assert conv.id not in store
        assert store.current_id is None
        assert not store.delete(conv.id)

    def test_prune(self):
        store = ConversationStore()
        for i in range(5):
            store.create(f"c{i}").created_at = float(i)
        store.current_id = "c0"

        assert store.prune(keep=2) == 3
        assert [c.id for c in store.list_recent()] == ["c4", "c3"]
        assert store.current_id is None

    def test_prune_nothing(self):
        backend = MemoryBackend()
        store = ConversationStore(backend)
        store.create()
        saves = backend.save_count
        assert store.prune(keep=5) == 0
        assert backend.save_count == saves


class TestSQLiteBackend:
    def test_roundtrip(self, tmp_path):
        db = tmp_path / "conv.db"
        backend = SQLiteBackend(str(db))
        store = ConversationStore(backend)
        conv = store.create()
        store.commit(conv.id, *_exchange("Héllo", "Wörld"))
        store.current_id = conv.id
        backend.close()

        reopened = ConversationStore(SQLiteBackend(str(db)))
        loaded = reopened.get(conv.id)
        assert loaded is not None
        assert loaded.title == "Héllo"
        assert [m.content for m in loaded.messages] == ["Héllo", "Wörld"]
        assert reopened.current_id == conv.id

    def test_in_memory(self):
        backend = SQLiteBackend(":memory:")
        assert backend.db_path is None
        backend.save([Conversation(id="a")])
        assert [c.id for c in backend.load()] == ["a"]

    def test_current_id_cleared(self):
        backend = SQLiteBackend(":memory:")
        backend.save_current_id("a")
        backend.save_current_id(None)
        assert backend.load_current_id() is None

    def test_stale_current_id_ignored(self):
        backend = SQLiteBackend(":memory:")
        backend.save_current_id("gone")
        assert ConversationStore(backend).current_id is None

    def test_corrupt_data_loads_empty(self, tmp_path):
        db = tmp_path / "conv.db"
        SQLiteBackend(str(db)).close()
        conn = sqlite3.connect(str(db))
        conn.execute(
            "INSERT INTO conversations (id, title, created_at, messages) VALUES (?, ?, ?, ?)",
            ("bad", "t", 0.0, "{not json"),
        )
        conn.commit()
        conn.close()

        store = ConversationStore(SQLiteBackend(str(db)))
        assert len(store) == 0


class TestExportImport:
    def test_export(self):
        store = ConversationStore()
        conv = store.create("c1")
        store.commit(conv.id, *_exchange("Hi", "Hello"))
        data = json.loads(store.export_json())
        assert data[0]["id"] == "c1"
        assert data[0]["title"] == "Hi"
        assert data[0]["messages"][1] == {"role": "assistant", "content": "Hello"}

    def test_import_replaces(self):
        source = ConversationStore()
        source.commit("c1", *_exchange("Hi", "Hello"))
        exported = source.export_json()

        target = ConversationStore()
        target.create("other")
        assert target.import_json(exported) == 1
        assert "other" not in target
        assert target.get("c1").messages[0].content == "Hi"

    @pytest.mark.parametrize("text", [
        "not json",
        '{"id": "c1"}',
        '[{"title": "no id"}]',
        '[{"id": "c1", "messages": [{"role": "system", "content": "x"}]}]',
    ])
    def test_import_rejects(self, text):
        store = ConversationStore()
        store.create("keep")
        with pytest.raises(ValueError):
            store.import_json(text)
        assert "keep" in store
