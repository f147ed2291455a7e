"""
Tests for the run directory transcript.
"""

import json

from conversation import AppendMessage, ConversationStore, FailTurn, ResolveTurn, SetDocument
from models import Conversation, FailedStep, Message, Purpose, RunState, Sender
from transcript import (
    TranscriptWriter, load_conversation, load_notepad, save_conversation,
    write_resolution,
)


def read_thread(run_dir):
    path = run_dir / "thread.jsonl"
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestConversationFile:

    def test_round_trip(self, tmp_path):
        user = Message(sender=Sender.USER, text="Question", purpose=Purpose.USER_INPUT, image="data:image/png;base64,AA==")
        answer = Message(sender=Sender.AGENT_A, text="Answer", purpose=Purpose.AGENT_TO_AGENT, duration_ms=1200)
        convo = Conversation(title="Question", messages=[user, answer], document="# Notes",
                             updated_at=answer.timestamp)
        step = FailedStep(answer.id, "the prompt", Sender.AGENT_A)

        save_conversation(tmp_path, convo, step)
        loaded, loaded_step = load_conversation(tmp_path)

        assert loaded.id == convo.id
        assert loaded.title == "Question"
        assert loaded.document == "# Notes"
        assert loaded.created_at == convo.created_at
        assert loaded.updated_at == answer.timestamp
        assert loaded.messages == [user, answer]
        assert loaded_step == step

    def test_pending_messages_are_not_saved(self, tmp_path):
        convo = Conversation(messages=[Message.placeholder(Sender.AGENT_B)])
        save_conversation(tmp_path, convo, None)
        loaded, step = load_conversation(tmp_path)
        assert loaded.messages == []
        assert step is None

    def test_fresh_directory(self, tmp_path):
        assert load_conversation(tmp_path) == (None, None)

    def test_unreadable_file(self, tmp_path):
        (tmp_path / "conversation.json").write_text(json.dumps({
            "conversation": {"messages": [{"sender": "narrator", "text": "?"}]},
        }))
        assert load_conversation(tmp_path) == (None, None)


def test_load_notepad(tmp_path):
    path = tmp_path / "seed.md"
    path.write_text("- item")
    assert load_notepad(path) == "- item"
    assert load_notepad(None) == ""


def test_write_resolution(tmp_path):
    write_resolution(tmp_path, RunState.SETTLED_CANCELLED, "3 messages")
    data = json.loads((tmp_path / "resolution.json").read_text())
    assert data["outcome"] == "settled-cancelled"
    assert data["summary"] == "3 messages"


class TestTranscriptWriter:

    def test_only_settled_messages_are_logged(self, tmp_path):
        store = ConversationStore()
        store.subscribe(TranscriptWriter(tmp_path, store.conversation))

        store.dispatch(AppendMessage(Message(sender=Sender.USER, text="Go", purpose=Purpose.USER_INPUT)))
        placeholder = Message.placeholder(Sender.AGENT_A)
        store.dispatch(AppendMessage(placeholder))
        assert [e["text"] for e in read_thread(tmp_path)] == ["Go"]

        store.dispatch(ResolveTurn(placeholder.id, "Reply", 10, ""))
        entries = read_thread(tmp_path)
        assert [e["text"] for e in entries] == ["Go", "Reply"]
        assert all(e["revision"] is False for e in entries)

    def test_rewritten_message_is_logged_as_revision(self, tmp_path):
        store = ConversationStore()
        store.subscribe(TranscriptWriter(tmp_path, store.conversation))
        placeholder = Message.placeholder(Sender.AGENT_B)
        store.dispatch(AppendMessage(placeholder))
        store.dispatch(FailTurn(placeholder.id, "down"))
        store.dispatch(ResolveTurn(placeholder.id, "Recovered", 10, ""))

        entries = read_thread(tmp_path)
        assert [(e["text"], e["revision"]) for e in entries] == [
            ("Error: down", False),
            ("Recovered", True),
        ]

    def test_existing_messages_are_not_rewritten(self, tmp_path):
        old = Message(sender=Sender.USER, text="Earlier", purpose=Purpose.USER_INPUT)
        store = ConversationStore(Conversation(messages=[old]))
        store.subscribe(TranscriptWriter(tmp_path, store.conversation))
        store.dispatch(SetDocument("x"))
        assert read_thread(tmp_path) == []

    def test_notepad_follows_document(self, tmp_path):
        store = ConversationStore(Conversation(document="start"))
        store.subscribe(TranscriptWriter(tmp_path, store.conversation))
        assert not (tmp_path / "notepad.md").exists()

        store.dispatch(SetDocument("edited"))
        assert (tmp_path / "notepad.md").read_text() == "edited"
