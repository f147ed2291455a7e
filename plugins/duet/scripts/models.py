#!/usr/bin/env python3
"""
Duet Arena Data Models

Data classes for the debate: messages, conversations, failed steps,
discussion and provider settings, the cancellation token and the
orchestrator lock. Also the error taxonomy shared by every module.
"""
from __future__ import annotations

import asyncio
import dataclasses
import fcntl
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, IO

from prompts import (
    COGNITO_SYSTEM_PROMPT, COGNITO_TURN_CUE,
    MUSE_SYSTEM_PROMPT, MUSE_TURN_CUE,
)
from utils import new_id, utc_now_iso

logger = logging.getLogger("duet")

PLACEHOLDER_TEXT = "..."
DEFAULT_MAX_TURNS = 2


# =============================================================================
# Errors
# =============================================================================

class ConfigurationError(ValueError):
    """Provider or settings unusable; raised before any turn starts."""


class ProviderError(RuntimeError):
    """Transport or model failure during a turn."""


class RunCancelled(Exception):
    """Control-flow exit: the run's cancellation token was signalled."""


# =============================================================================
# Enumerations
# =============================================================================

class Sender(str, Enum):
    USER = "user"
    AGENT_A = "agent_a"
    AGENT_B = "agent_b"
    SYSTEM = "system"


class Purpose(str, Enum):
    USER_INPUT = "user-input"
    AGENT_TO_AGENT = "agent-to-agent"
    FINAL_ANSWER = "final-answer"
    ERROR = "error"
    SYSTEM_NOTICE = "system-notice"


class DiscussionMode(str, Enum):
    FIXED = "fixed"
    AGENT_DRIVEN = "agent-driven"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SETTLED_COMPLETE = "settled-complete"
    SETTLED_CANCELLED = "settled-cancelled"
    SETTLED_FAILED = "settled-failed"


# =============================================================================
# Conversation records
# =============================================================================

@dataclasses.dataclass(frozen=True)
class Message:
    """One entry of the discussion log.

    A message is replaced, never mutated; `pending` marks the placeholder
    shown while its turn is outstanding.
    """
    sender: Sender
    text: str
    purpose: Purpose
    id: str = dataclasses.field(default_factory=new_id)
    timestamp: str = dataclasses.field(default_factory=utc_now_iso)
    duration_ms: Optional[int] = None
    image: Optional[str] = None  # data URL
    pending: bool = False

    @classmethod
    def placeholder(cls, sender: Sender) -> "Message":
        return cls(
            sender=sender,
            text=PLACEHOLDER_TEXT,
            purpose=Purpose.AGENT_TO_AGENT,
            pending=True,
        )

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "sender": self.sender.value,
            "text": self.text,
            "purpose": self.purpose.value,
            "timestamp": self.timestamp,
        }
        if self.duration_ms is not None:
            d["duration_ms"] = self.duration_ms
        if self.image:
            d["image"] = self.image
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Message":
        return cls(
            id=d.get("id") or new_id(),
            sender=Sender(d.get("sender", Sender.SYSTEM.value)),
            text=d.get("text", ""),
            purpose=Purpose(d.get("purpose", Purpose.SYSTEM_NOTICE.value)),
            timestamp=d.get("timestamp") or utc_now_iso(),
            duration_ms=d.get("duration_ms"),
            image=d.get("image"),
        )


@dataclasses.dataclass
class Conversation:
    """The active record the orchestrator works on: message log plus document."""
    id: str = dataclasses.field(default_factory=new_id)
    title: str = "New Chat"
    created_at: str = dataclasses.field(default_factory=utc_now_iso)
    updated_at: str = ""  # last message appended; created_at until then
    messages: List[Message] = dataclasses.field(default_factory=list)
    document: str = ""

    @property
    def activity_at(self) -> str:
        return self.updated_at or self.created_at

    def find(self, message_id: str) -> Optional[Message]:
        for msg in self.messages:
            if msg.id == message_id:
                return msg
        return None

    def to_dict(self) -> Dict[str, Any]:
        # Placeholders never leave the process
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.activity_at,
            "messages": [m.to_dict() for m in self.messages if not m.pending],
            "document": self.document,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Conversation":
        return cls(
            id=d.get("id") or new_id(),
            title=d.get("title", "New Chat"),
            created_at=d.get("created_at") or utc_now_iso(),
            updated_at=d.get("updated_at", ""),
            messages=[Message.from_dict(m) for m in d.get("messages", [])],
            document=d.get("document", ""),
        )


@dataclasses.dataclass(frozen=True)
class FailedStep:
    """Retryable record of the most recent turn failure."""
    message_id: str
    prompt: str
    sender: Sender

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "prompt": self.prompt,
            "sender": self.sender.value,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FailedStep":
        return cls(
            message_id=d["message_id"],
            prompt=d["prompt"],
            sender=Sender(d["sender"]),
        )


@dataclasses.dataclass(frozen=True)
class TurnResult:
    """Outcome of one successful persona turn."""
    text: str
    document: str
    duration_ms: int
    saw_completion: bool


# =============================================================================
# Settings
# =============================================================================

@dataclasses.dataclass
class Persona:
    """One debating role: display name, system prompt and turn cue."""
    sender: Sender
    name: str
    system_prompt: str
    turn_cue: str = ""


def default_agent_a() -> Persona:
    return Persona(Sender.AGENT_A, "Cognito", COGNITO_SYSTEM_PROMPT, COGNITO_TURN_CUE)


def default_agent_b() -> Persona:
    return Persona(Sender.AGENT_B, "Muse", MUSE_SYSTEM_PROMPT, MUSE_TURN_CUE)


@dataclasses.dataclass
class GeminiConfig:
    api_key: str = ""
    base_url: str = ""
    model: str = "gemini-2.5-flash"
    thinking_mode: str = "default"  # default, disabled, custom
    thinking_budget: Optional[int] = None


@dataclasses.dataclass
class OpenAIConfig:
    api_key: str = ""
    base_url: str = ""
    model: str = "gpt-4o"


@dataclasses.dataclass
class OllamaConfig:
    base_url: str = ""  # e.g. http://localhost:11434
    model: str = "llama3"


@dataclasses.dataclass
class CommandConfig:
    """Agent CLI that reads the prompt on stdin and answers on stdout."""
    cmd: List[str] = dataclasses.field(default_factory=list)
    timeout: Optional[int] = None


@dataclasses.dataclass
class ProviderSettings:
    provider: str = "gemini"  # gemini, openai, ollama, command
    gemini: GeminiConfig = dataclasses.field(default_factory=GeminiConfig)
    openai: OpenAIConfig = dataclasses.field(default_factory=OpenAIConfig)
    ollama: OllamaConfig = dataclasses.field(default_factory=OllamaConfig)
    command: CommandConfig = dataclasses.field(default_factory=CommandConfig)


@dataclasses.dataclass
class DiscussionSettings:
    mode: DiscussionMode = DiscussionMode.AGENT_DRIVEN
    max_turns: int = DEFAULT_MAX_TURNS  # per agent, Fixed mode only
    agent_a: Persona = dataclasses.field(default_factory=default_agent_a)
    agent_b: Persona = dataclasses.field(default_factory=default_agent_b)
    providers: ProviderSettings = dataclasses.field(default_factory=ProviderSettings)

    def persona(self, sender: Sender) -> Persona:
        if sender == Sender.AGENT_A:
            return self.agent_a
        if sender == Sender.AGENT_B:
            return self.agent_b
        raise ValueError(f"{sender.value} is not a debating persona")


# =============================================================================
# Cancellation and locking
# =============================================================================

class CancellationToken:
    """Cooperative cancellation shared by every turn of one run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled()

    async def wait(self) -> None:
        await self._event.wait()


class OrchestratorLock:
    """File-based lock to prevent concurrent orchestrator runs."""

    def __init__(self, state_dir: Path):
        self.lock_path = state_dir / "orchestrator.lock"
        self.lock_file: Optional[IO[str]] = None

    def acquire(self) -> bool:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file = open(self.lock_path, "w")
        try:
            fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            self.lock_file.write(f"{os.getpid()}\n{utc_now_iso()}\n")
            self.lock_file.flush()
            return True
        except (IOError, OSError):
            self.lock_file.close()
            self.lock_file = None
            return False

    def release(self) -> None:
        if self.lock_file:
            fcntl.flock(self.lock_file.fileno(), fcntl.LOCK_UN)
            self.lock_file.close()
            self.lock_file = None
            if self.lock_path.exists():
                self.lock_path.unlink()
