"""
Tests for the conversation reducer and ConversationStore.
"""

import pytest

from conversation import (
    AppendMessage, ConversationStore, DropPlaceholders, FailTurn, ReopenTurn,
    ReplaceMessage, ResolveTurn, SetDocument, reduce,
)
from models import PLACEHOLDER_TEXT, Conversation, Message, Purpose, Sender


def user(text):
    return Message(sender=Sender.USER, text=text, purpose=Purpose.USER_INPUT)


class TestReduce:
    """Pure state transitions."""

    def test_first_user_message_sets_title(self):
        convo = reduce(Conversation(), AppendMessage(user("Short question")))
        assert convo.title == "Short question"

    def test_long_title_is_truncated(self):
        text = "Explain the trade-offs between optimistic and pessimistic locking"
        convo = reduce(Conversation(), AppendMessage(user(text)))
        assert convo.title == text[:30] + "..."

    def test_later_messages_keep_title(self):
        convo = reduce(Conversation(), AppendMessage(user("First")))
        convo = reduce(convo, AppendMessage(user("Second")))
        assert convo.title == "First"
        assert [m.text for m in convo.messages] == ["First", "Second"]

    def test_append_records_activity_time(self):
        convo = Conversation(created_at="2026-01-01T00:00:00+00:00")
        assert convo.activity_at == convo.created_at

        msg = Message(sender=Sender.USER, text="q", purpose=Purpose.USER_INPUT,
                      timestamp="2026-01-02T09:30:00+00:00")
        convo = reduce(convo, AppendMessage(msg))
        assert convo.updated_at == "2026-01-02T09:30:00+00:00"
        assert convo.activity_at == "2026-01-02T09:30:00+00:00"
        assert convo.created_at == "2026-01-01T00:00:00+00:00"

    def test_reduce_does_not_mutate_input(self):
        original = Conversation()
        reduce(original, AppendMessage(user("x")))
        assert original.messages == []
        assert original.title == "New Chat"

    def test_resolve_turn_replaces_placeholder_and_document(self):
        placeholder = Message.placeholder(Sender.AGENT_A)
        convo = reduce(Conversation(document="old"), AppendMessage(placeholder))
        convo = reduce(convo, ResolveTurn(placeholder.id, "Answer", 42, "new"))

        msg = convo.find(placeholder.id)
        assert msg.text == "Answer"
        assert msg.duration_ms == 42
        assert msg.pending is False
        assert msg.sender == Sender.AGENT_A
        assert convo.document == "new"

    def test_fail_turn_rewrites_in_place(self):
        placeholder = Message.placeholder(Sender.AGENT_B)
        convo = reduce(Conversation(), AppendMessage(placeholder))
        convo = reduce(convo, FailTurn(placeholder.id, "quota exceeded"))

        msg = convo.find(placeholder.id)
        assert msg.text == "Error: quota exceeded"
        assert msg.purpose == Purpose.ERROR
        assert msg.pending is False
        assert len(convo.messages) == 1

    def test_reopen_turn_restores_placeholder(self):
        placeholder = Message.placeholder(Sender.AGENT_B)
        convo = reduce(Conversation(), AppendMessage(placeholder))
        convo = reduce(convo, FailTurn(placeholder.id, "boom"))
        convo = reduce(convo, ReopenTurn(placeholder.id))

        msg = convo.find(placeholder.id)
        assert msg.text == PLACEHOLDER_TEXT
        assert msg.purpose == Purpose.AGENT_TO_AGENT
        assert msg.pending is True

    def test_replace_message_by_id(self):
        original = user("a")
        convo = reduce(Conversation(), AppendMessage(original))
        convo = reduce(convo, ReplaceMessage(Message(
            sender=Sender.USER, text="b", purpose=Purpose.USER_INPUT, id=original.id,
        )))
        assert [m.text for m in convo.messages] == ["b"]

    def test_drop_placeholders(self):
        convo = reduce(Conversation(), AppendMessage(user("q")))
        convo = reduce(convo, AppendMessage(Message.placeholder(Sender.AGENT_A)))
        convo = reduce(convo, DropPlaceholders())
        assert [m.sender for m in convo.messages] == [Sender.USER]

    def test_unknown_action(self):
        with pytest.raises(TypeError):
            reduce(Conversation(), object())


class TestConversationStore:
    """Dispatch, subscriptions and deferred notepad edits."""

    def test_subscribers_see_every_mutation(self):
        store = ConversationStore()
        seen = []
        store.subscribe(lambda c: seen.append(len(c.messages)))

        store.dispatch(AppendMessage(user("one")))
        store.dispatch(AppendMessage(user("two")))
        assert seen == [1, 2]

    def test_unsubscribe(self):
        store = ConversationStore()
        seen = []
        unsubscribe = store.subscribe(seen.append)
        unsubscribe()
        unsubscribe()
        store.dispatch(SetDocument("x"))
        assert seen == []

    def test_edit_applies_immediately_when_idle(self):
        store = ConversationStore()
        store.edit_document("draft")
        assert store.document == "draft"

    def test_edit_during_turn_lands_after_turn_patch(self):
        placeholder = Message.placeholder(Sender.AGENT_A)
        store = ConversationStore(Conversation(document="start"))
        store.dispatch(AppendMessage(placeholder))

        store.begin_turn()
        store.edit_document("user edit")
        assert store.document == "start"

        store.dispatch(ResolveTurn(placeholder.id, "done", 5, "agent patch"))
        assert store.document == "agent patch"

        store.end_turn()
        assert store.document == "user edit"
        assert not store.turn_in_flight

    def test_latest_deferred_edit_wins(self):
        store = ConversationStore()
        store.begin_turn()
        store.edit_document("first")
        store.edit_document("second")
        store.end_turn()
        assert store.document == "second"

    def test_load_replaces_conversation_and_discards_pending_edit(self):
        store = ConversationStore(Conversation(document="old"))
        store.begin_turn()
        store.edit_document("stale")

        fresh = Conversation(document="fresh")
        store.load(fresh)
        store.end_turn()
        assert store.conversation is fresh
        assert store.document == "fresh"

    def test_messages_is_a_copy(self):
        store = ConversationStore()
        store.dispatch(AppendMessage(user("q")))
        store.messages.clear()
        assert len(store.messages) == 1
