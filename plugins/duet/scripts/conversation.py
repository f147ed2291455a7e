#!/usr/bin/env python3
"""
Duet Arena Conversation Store

Owns the active Conversation. Every change goes through `dispatch` with one
of the action records below; `reduce` is the only code that builds a new
Conversation from an old one. Subscribers receive the Conversation after
each mutation.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Callable, List, Optional, Union

from models import Conversation, Message, Purpose, Sender, PLACEHOLDER_TEXT
from utils import make_title

logger = logging.getLogger("duet")

Listener = Callable[[Conversation], None]


# =============================================================================
# Actions
# =============================================================================

@dataclasses.dataclass(frozen=True)
class AppendMessage:
    message: Message


@dataclasses.dataclass(frozen=True)
class ResolveTurn:
    """Placeholder -> final text, together with the patched document."""
    message_id: str
    text: str
    duration_ms: int
    document: str


@dataclasses.dataclass(frozen=True)
class FailTurn:
    message_id: str
    error: str


@dataclasses.dataclass(frozen=True)
class ReopenTurn:
    """Put a failed message back into the placeholder state for a retry."""
    message_id: str


@dataclasses.dataclass(frozen=True)
class ReplaceMessage:
    message: Message


@dataclasses.dataclass(frozen=True)
class DropPlaceholders:
    pass


@dataclasses.dataclass(frozen=True)
class SetDocument:
    content: str


Action = Union[
    AppendMessage, ResolveTurn, FailTurn, ReopenTurn, ReplaceMessage,
    DropPlaceholders, SetDocument,
]


def _replace_message(convo: Conversation, message_id: str, **changes) -> Conversation:
    messages = [
        dataclasses.replace(m, **changes) if m.id == message_id else m
        for m in convo.messages
    ]
    return dataclasses.replace(convo, messages=messages)


def reduce(convo: Conversation, action: Action) -> Conversation:
    """Return the Conversation that results from applying action."""
    if isinstance(action, AppendMessage):
        msg = action.message
        title = convo.title
        if not convo.messages and msg.sender == Sender.USER:
            title = make_title(msg.text)
        return dataclasses.replace(
            convo, messages=convo.messages + [msg], title=title, updated_at=msg.timestamp
        )

    if isinstance(action, ResolveTurn):
        convo = _replace_message(
            convo, action.message_id,
            text=action.text, duration_ms=action.duration_ms, pending=False,
        )
        return dataclasses.replace(convo, document=action.document)

    if isinstance(action, FailTurn):
        return _replace_message(
            convo, action.message_id,
            text=f"Error: {action.error}", purpose=Purpose.ERROR, pending=False,
        )

    if isinstance(action, ReopenTurn):
        return _replace_message(
            convo, action.message_id,
            text=PLACEHOLDER_TEXT, purpose=Purpose.AGENT_TO_AGENT, pending=True,
        )

    if isinstance(action, ReplaceMessage):
        messages = [
            action.message if m.id == action.message.id else m
            for m in convo.messages
        ]
        return dataclasses.replace(convo, messages=messages)

    if isinstance(action, DropPlaceholders):
        return dataclasses.replace(
            convo, messages=[m for m in convo.messages if not m.pending]
        )

    if isinstance(action, SetDocument):
        return dataclasses.replace(convo, document=action.content)

    raise TypeError(f"Unknown conversation action: {action!r}")


# =============================================================================
# Store
# =============================================================================

class ConversationStore:
    """Holds the active Conversation and serialises writes to it."""

    def __init__(self, conversation: Optional[Conversation] = None):
        self._conversation = conversation or Conversation()
        self._listeners: List[Listener] = []
        self._turn_in_flight = False
        self._pending_edit: Optional[str] = None

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def messages(self) -> List[Message]:
        return list(self._conversation.messages)

    @property
    def document(self) -> str:
        return self._conversation.document

    @property
    def turn_in_flight(self) -> bool:
        return self._turn_in_flight

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def dispatch(self, action: Action) -> Conversation:
        self._conversation = reduce(self._conversation, action)
        self._notify()
        return self._conversation

    def load(self, conversation: Conversation) -> None:
        """Attach a different Conversation (new chat or switch)."""
        self._conversation = conversation
        self._turn_in_flight = False
        self._pending_edit = None
        self._notify()

    # Turn bracketing: user edits that arrive mid-turn land after the turn's patch

    def begin_turn(self) -> None:
        self._turn_in_flight = True

    def end_turn(self) -> None:
        self._turn_in_flight = False
        if self._pending_edit is not None:
            content, self._pending_edit = self._pending_edit, None
            self.dispatch(SetDocument(content))

    def edit_document(self, content: str) -> None:
        if self._turn_in_flight:
            logger.debug("Deferring notepad edit until the current turn finishes")
            self._pending_edit = content
            return
        self.dispatch(SetDocument(content))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self._conversation)
