"""Tests for the in-memory conversation store."""

from __future__ import annotations

from streamchat.chat.store import ConversationStore
from streamchat.models import Message, Role


class TestConversationStore:

    def test_unknown_session_is_empty(self):
        store = ConversationStore("sys")
        assert store.get("missing") == ()
        assert "missing" not in store

    def test_get_or_create_seeds_system(self):
        store = ConversationStore("be helpful")
        history = store.get_or_create("s1")
        assert history == (Message(Role.SYSTEM, "be helpful", 0),)
        assert store.get_or_create("s1") is history

    def test_append_assigns_increasing_sequence(self):
        store = ConversationStore("sys")
        user = store.append("s1", Role.USER, "hello")
        assistant = store.append("s1", Role.ASSISTANT, "Hi there.")
        assert (user.sequence, assistant.sequence) == (1, 2)
        assert [m.role for m in store.get("s1")] == [Role.SYSTEM, Role.USER, Role.ASSISTANT]

    def test_snapshot_is_not_affected_by_later_appends(self):
        store = ConversationStore("sys")
        store.append("s1", Role.USER, "one")
        snapshot = store.get("s1")
        store.append("s1", Role.ASSISTANT, "two")
        assert len(snapshot) == 2
        assert len(store.get("s1")) == 3

    def test_sequence_continues_after_replace(self):
        store = ConversationStore("sys")
        for i in range(4):
            store.append("s1", Role.USER, f"q{i}")
        history = store.get("s1")
        store.replace("s1", (history[0],) + history[3:])
        message = store.append("s1", Role.ASSISTANT, "a")
        assert message.sequence == 5

    def test_sessions_are_independent(self):
        store = ConversationStore("sys")
        store.append("a", Role.USER, "x")
        store.append("b", Role.USER, "y")
        assert store.get("a")[-1].content == "x"
        assert store.get("b")[-1].content == "y"
        assert sorted(store.sessions()) == ["a", "b"]
        assert len(store) == 2

    def test_remove(self):
        store = ConversationStore("sys")
        store.append("s1", Role.USER, "x")
        assert store.remove("s1") is True
        assert store.remove("s1") is False
        assert store.get("s1") == ()
