#!/usr/bin/env python3
"""
Duet Arena Discussion Orchestrator

Drives the debate between the two personas over the active conversation:

    Idle -> Running -> {SettledComplete, SettledCancelled, SettledFailed} -> Idle

Each iteration runs AgentA's turn and then AgentB's turn, strictly one after
the other. Fixed mode runs `max_turns` iterations; agent-driven mode stops
as soon as both personas emit the completion marker in the same iteration,
and never runs more than AGENT_DRIVEN_MAX_ITERATIONS.

A failed turn stops the run and leaves a FailedStep behind; `retry` replays
its captured prompt. `cancel` signals the run's token, which is checked
before every turn and threaded into the provider call.
"""
from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from conversation import (
    AppendMessage, ConversationStore, DropPlaceholders, FailTurn,
    ReopenTurn, ReplaceMessage,
)
from models import (
    CancellationToken, ConfigurationError, Conversation, DiscussionMode,
    DiscussionSettings, FailedStep, Message, Persona, ProviderError, Purpose,
    RunCancelled, RunState, Sender, TurnResult,
)
from prompts import build_turn_prompt
from providers import ModelProvider, select_provider
from turns import TurnExecutor
from utils import write_live

logger = logging.getLogger("duet")

# Hard ceiling for agent-driven runs, independent of max_turns
AGENT_DRIVEN_MAX_ITERATIONS = 10

CONSENSUS_NOTICE = "Both agents have signaled to end the discussion."
CANCELLED_NOTICE = "Generation stopped by user."
RETRY_SUCCESS_NOTICE = (
    "Retry successful. The debate can continue from here, or you can guide it with a new message."
)
UNKNOWN_ERROR = "An unknown API error occurred."


def system_notice(text: str) -> Message:
    return Message(sender=Sender.SYSTEM, text=text, purpose=Purpose.SYSTEM_NOTICE)


class DiscussionOrchestrator:
    """Turn-taking state machine for one active conversation."""

    def __init__(
        self,
        settings: DiscussionSettings,
        store: Optional[ConversationStore] = None,
        provider: Optional[ModelProvider] = None,
    ):
        self.settings = settings
        self.store = store or ConversationStore()
        self._provider = provider
        self._state = RunState.IDLE
        self._last_outcome: Optional[RunState] = None
        self._failed_step: Optional[FailedStep] = None
        self._token: Optional[CancellationToken] = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Read access for the presentation layer
    # ------------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def last_outcome(self) -> Optional[RunState]:
        return self._last_outcome

    @property
    def running(self) -> bool:
        return self._state == RunState.RUNNING

    @property
    def failed_step(self) -> Optional[FailedStep]:
        return self._failed_step

    @property
    def conversation(self) -> Conversation:
        return self.store.conversation

    @property
    def messages(self) -> List[Message]:
        return self.store.messages

    @property
    def document(self) -> str:
        return self.store.document

    def restore_failed_step(self, step: Optional[FailedStep]) -> None:
        """Reinstate a FailedStep saved with a transcript (resume in a new process)."""
        if step is not None and self.store.conversation.find(step.message_id) is None:
            logger.warning(f"Failed message {step.message_id} is not in the conversation, ignoring")
            step = None
        self._failed_step = step

    def max_iterations(self) -> int:
        if self.settings.mode == DiscussionMode.FIXED:
            return self.settings.max_turns
        return AGENT_DRIVEN_MAX_ITERATIONS

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def submit(self, text: str, image: Optional[str] = None) -> RunState:
        """Start a debate on a new user request and run it to a settled state.

        Raises:
            ConfigurationError: no usable provider or invalid settings; nothing
                is appended to the conversation in that case
        """
        if self.running:
            logger.warning("A discussion is already running, ignoring new request")
            return self._state

        executor = TurnExecutor(self._select_provider(), self.store)
        user_msg = Message(sender=Sender.USER, text=text, purpose=Purpose.USER_INPUT, image=image)
        self.store.dispatch(AppendMessage(user_msg))
        self._failed_step = None

        token = self._start()
        outcome = RunState.SETTLED_FAILED
        try:
            outcome = await self._debate(user_msg, executor, token)
        except RunCancelled:
            outcome = RunState.SETTLED_CANCELLED
        except asyncio.CancelledError:
            outcome = RunState.SETTLED_CANCELLED
            raise
        finally:
            self._finish(outcome)
        return outcome

    def cancel(self) -> bool:
        """Signal the in-flight run. Returns False when there is nothing to cancel."""
        if self._token is None or self._token.cancelled:
            return False
        logger.info("Cancellation requested")
        self._token.cancel()
        return True

    async def retry(self) -> bool:
        """Replay the failed turn's captured prompt against the same message.

        The prompt is sent unchanged, even if the notepad or history moved on
        since it was built. The rest of the debate is not resumed.
        """
        step = self._failed_step
        if step is None:
            logger.info("No failed step to retry")
            return False
        if self.running:
            logger.warning("A discussion is already running, retry ignored")
            return False

        previous = self.store.conversation.find(step.message_id)
        if previous is None:
            logger.warning(f"Failed message {step.message_id} is gone, dropping failed step")
            self._failed_step = None
            return False

        persona = self.settings.persona(step.sender)
        executor = TurnExecutor(self._select_provider(), self.store)
        token = self._start()
        self.store.dispatch(ReopenTurn(step.message_id))
        write_live(f"RETRY: {persona.name}")

        outcome = RunState.SETTLED_FAILED
        try:
            await executor.run_turn(step.prompt, self.store.document, token, persona, step.message_id)
            self._failed_step = None
            self.store.dispatch(AppendMessage(system_notice(RETRY_SUCCESS_NOTICE)))
            outcome = RunState.SETTLED_COMPLETE
        except RunCancelled:
            self.store.dispatch(ReplaceMessage(previous))
            outcome = RunState.SETTLED_CANCELLED
        except asyncio.CancelledError:
            self.store.dispatch(ReplaceMessage(previous))
            outcome = RunState.SETTLED_CANCELLED
            raise
        except Exception as e:
            self._report_failure(persona, step.message_id, e)
        finally:
            self._finish(outcome)
        return outcome == RunState.SETTLED_COMPLETE

    async def switch_conversation(self, conversation: Conversation) -> None:
        """Detach from the current conversation, cancelling any run tied to it."""
        self.cancel()
        await self._idle.wait()
        self.store.load(conversation)
        self._failed_step = None

    async def start_new_conversation(self, document: str = "") -> Conversation:
        conversation = Conversation(document=document)
        await self.switch_conversation(conversation)
        return conversation

    def edit_document(self, content: str) -> None:
        """User edit of the notepad; lands after the in-flight turn, if any."""
        self.store.edit_document(content)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _select_provider(self) -> ModelProvider:
        if self.settings.mode == DiscussionMode.FIXED and self.settings.max_turns < 1:
            raise ConfigurationError(
                f"max_turns must be at least 1 in fixed mode (got {self.settings.max_turns})"
            )
        if self._provider is not None:
            return self._provider
        return select_provider(self.settings.providers)

    def _start(self) -> CancellationToken:
        self._token = CancellationToken()
        self._state = RunState.RUNNING
        self._idle.clear()
        return self._token

    def _finish(self, outcome: RunState) -> None:
        self.store.dispatch(DropPlaceholders())
        if outcome == RunState.SETTLED_CANCELLED:
            self.store.dispatch(AppendMessage(system_notice(CANCELLED_NOTICE)))
        logger.info(f"Discussion settled: {outcome.value}")
        write_live(f"SETTLED: {outcome.value}")
        self._last_outcome = outcome
        self._token = None
        self._state = RunState.IDLE
        self._idle.set()

    async def _debate(
        self, user_msg: Message, executor: TurnExecutor, token: CancellationToken
    ) -> RunState:
        agent_driven = self.settings.mode == DiscussionMode.AGENT_DRIVEN
        max_iterations = self.max_iterations()

        for iteration in range(1, max_iterations + 1):
            logger.info(f"Iteration {iteration}/{max_iterations}")
            write_live("-" * 40)
            write_live(f"ITERATION {iteration}/{max_iterations}")
            write_live("-" * 40)

            # Completion votes only count within the same iteration
            completed = []
            for persona in (self.settings.agent_a, self.settings.agent_b):
                result = await self._take_turn(executor, persona, user_msg.text, token)
                if result is None:
                    return RunState.SETTLED_FAILED
                completed.append(result.saw_completion)

            if agent_driven and all(completed):
                logger.info("Both agents signalled completion. Stopping.")
                self.store.dispatch(AppendMessage(system_notice(CONSENSUS_NOTICE)))
                return RunState.SETTLED_COMPLETE

        logger.info(f"Reached iteration limit ({max_iterations}).")
        return RunState.SETTLED_COMPLETE

    async def _take_turn(
        self,
        executor: TurnExecutor,
        persona: Persona,
        user_query: str,
        token: CancellationToken,
    ) -> Optional[TurnResult]:
        """Run one persona turn. None means the turn failed and was recorded."""
        token.raise_if_cancelled()

        history = self._history()
        placeholder = Message.placeholder(persona.sender)
        self.store.dispatch(AppendMessage(placeholder))

        document = self.store.document
        prompt = build_turn_prompt(
            system_prompt=persona.system_prompt,
            persona_name=persona.name,
            turn_cue=persona.turn_cue,
            history=history,
            user_query=user_query,
            document=document,
            agent_driven=self.settings.mode == DiscussionMode.AGENT_DRIVEN,
        )

        try:
            return await executor.run_turn(prompt, document, token, persona, placeholder.id)
        except RunCancelled:
            raise
        except Exception as e:
            self._report_failure(persona, placeholder.id, e)
            self._failed_step = FailedStep(placeholder.id, prompt, persona.sender)
            return None

    def _report_failure(self, persona: Persona, message_id: str, error: Exception) -> None:
        if isinstance(error, ProviderError):
            logger.error(f"Error during {persona.name}'s turn: {error}")
        else:
            logger.exception(f"Unexpected error during {persona.name}'s turn")
        write_live(f"ERROR ({persona.name}): {error}")
        self.store.dispatch(FailTurn(message_id, str(error) or UNKNOWN_ERROR))

    def _history(self) -> List[str]:
        return [
            f"{self._display_name(m.sender)}: {m.text}"
            for m in self.store.messages
            if not m.pending
        ]

    def _display_name(self, sender: Sender) -> str:
        if sender == Sender.USER:
            return "User"
        if sender == Sender.SYSTEM:
            return "System"
        return self.settings.persona(sender).name
