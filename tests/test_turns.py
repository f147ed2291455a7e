"""
Tests for TurnExecutor.run_turn.
"""

import pytest

from conftest import ScriptedProvider
from conversation import AppendMessage, ConversationStore
from models import (
    CancellationToken, Conversation, Message, ProviderError, RunCancelled,
    Sender, default_agent_a,
)
from turns import TurnExecutor, completion_text


def setup_turn(replies, document=""):
    provider = ScriptedProvider(replies)
    store = ConversationStore(Conversation(document=document))
    placeholder = Message.placeholder(Sender.AGENT_A)
    store.dispatch(AppendMessage(placeholder))
    return TurnExecutor(provider, store), provider, store, placeholder.id


class TestRunTurn:

    @pytest.mark.asyncio
    async def test_resolves_placeholder_and_patches_document(self):
        executor, provider, store, msg_id = setup_turn(
            ["Added a point. <np-append>- point</np-append>"], document="# Notes"
        )
        result = await executor.run_turn("PROMPT", store.document, CancellationToken(), default_agent_a(), msg_id)

        assert provider.prompts == ["PROMPT"]
        assert result.text == "Added a point."
        assert result.document == "# Notes\n- point"
        assert result.saw_completion is False
        assert result.duration_ms >= 0

        msg = store.conversation.find(msg_id)
        assert msg.text == "Added a point."
        assert msg.pending is False
        assert msg.duration_ms == result.duration_ms
        assert store.document == "# Notes\n- point"
        assert not store.turn_in_flight

    @pytest.mark.asyncio
    async def test_no_operations_keeps_prior_document(self):
        executor, _, store, msg_id = setup_turn(["Just words."], document="keep me")
        result = await executor.run_turn("P", "keep me", CancellationToken(), default_agent_a(), msg_id)
        assert result.document == "keep me"
        assert store.document == "keep me"

    @pytest.mark.asyncio
    async def test_completion_marker_is_detected_and_removed(self):
        executor, _, store, msg_id = setup_turn(["We agree. <DISCUSSION_COMPLETE>"])
        result = await executor.run_turn("P", "", CancellationToken(), default_agent_a(), msg_id)
        assert result.saw_completion is True
        assert result.text == "We agree."

    @pytest.mark.asyncio
    async def test_marker_only_reply_gets_stand_in_text(self):
        executor, _, store, msg_id = setup_turn(["<DISCUSSION_COMPLETE>"])
        persona = default_agent_a()
        result = await executor.run_turn("P", "", CancellationToken(), persona, msg_id)
        assert result.text == completion_text(persona)
        assert store.conversation.find(msg_id).text == "[Cognito agrees the discussion is complete.]"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reply", ["", "   \n\t"])
    async def test_empty_reply_is_a_provider_error(self, reply):
        executor, _, store, msg_id = setup_turn([reply], document="doc")
        with pytest.raises(ProviderError, match="Empty response"):
            await executor.run_turn("P", "doc", CancellationToken(), default_agent_a(), msg_id)
        assert store.document == "doc"
        assert store.conversation.find(msg_id).pending is True
        assert not store.turn_in_flight

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        executor, _, store, msg_id = setup_turn([ProviderError("Gemini API Error: quota")])
        with pytest.raises(ProviderError, match="quota"):
            await executor.run_turn("P", "", CancellationToken(), default_agent_a(), msg_id)
        assert not store.turn_in_flight

    @pytest.mark.asyncio
    async def test_cancelled_token_skips_the_call(self):
        executor, provider, _, msg_id = setup_turn(["never sent"])
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RunCancelled):
            await executor.run_turn("P", "", token, default_agent_a(), msg_id)
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_reply_after_cancellation_is_discarded(self):
        token = CancellationToken()

        async def late_reply(prompt):
            token.cancel()
            return "<np-replace-all>clobbered</np-replace-all>"

        executor, _, store, msg_id = setup_turn([late_reply], document="original")
        with pytest.raises(RunCancelled):
            await executor.run_turn("P", "original", token, default_agent_a(), msg_id)
        assert store.document == "original"
        assert store.conversation.find(msg_id).pending is True
