"""
Shared fixtures: a scripted model provider and ready-made settings.
"""

import asyncio
from typing import Any, List

import pytest

from conversation import ConversationStore
from models import Conversation, DiscussionMode, DiscussionSettings, ProviderSettings
from orchestrator import DiscussionOrchestrator
from providers import ModelProvider


class ScriptedProvider(ModelProvider):
    """Replies from a list: strings are returned, exceptions raised,
    coroutine functions awaited with the prompt. Falls back to `default`
    once the script runs out."""

    name = "scripted"

    def __init__(self, replies: List[Any] = None, default: str = "Let's keep going."):
        self.replies = list(replies or [])
        self.default = default
        self.prompts: List[str] = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.replies:
            return self.default
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            return await reply(prompt)
        return reply

    async def list_models(self) -> List[str]:
        return ["scripted"]

    @classmethod
    def is_configured(cls, settings: ProviderSettings) -> bool:
        return True

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "ScriptedProvider":
        return cls()


def hanging_reply(started: asyncio.Event):
    """Reply that signals `started` and then never returns."""

    async def reply(prompt: str) -> str:
        started.set()
        await asyncio.Event().wait()
        return ""

    return reply


def gated_reply(started: asyncio.Event, release: asyncio.Event, text: str):
    """Reply that signals `started` and returns `text` once `release` is set."""

    async def reply(prompt: str) -> str:
        started.set()
        await release.wait()
        return text

    return reply


@pytest.fixture
def fixed_settings():
    return DiscussionSettings(mode=DiscussionMode.FIXED, max_turns=1)


@pytest.fixture
def driven_settings():
    return DiscussionSettings(mode=DiscussionMode.AGENT_DRIVEN)


@pytest.fixture
def make_orchestrator():
    """Factory: make_orchestrator(settings, replies, document="", default=...)."""

    def make(settings, replies=None, document="", **kwargs):
        provider = ScriptedProvider(replies, **kwargs)
        store = ConversationStore(Conversation(document=document))
        return DiscussionOrchestrator(settings, store, provider=provider), provider

    return make


@pytest.fixture
def clean_env(monkeypatch):
    """No provider credentials leak in from the environment."""
    for var in ("GEMINI_API_KEY", "API_KEY", "OPENAI_API_KEY", "OLLAMA_HOST"):
        monkeypatch.delenv(var, raising=False)
