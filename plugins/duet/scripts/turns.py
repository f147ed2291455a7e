#!/usr/bin/env python3
"""
Duet Arena Turn Executor

Runs one persona turn: send the prompt, parse the reply, patch the notepad
and commit the result to the conversation store. Failures propagate to the
caller, which decides how to record them.
"""
from __future__ import annotations

import logging
import time

from conversation import ConversationStore, ResolveTurn
from models import CancellationToken, Persona, ProviderError, TurnResult
from patches import apply_patches, parse_response
from prompts import COMPLETION_MARKER
from providers import ModelProvider
from utils import write_live

logger = logging.getLogger("duet")


def completion_text(persona: Persona) -> str:
    """Stand-in text for a reply that carried nothing but the completion marker."""
    return f"[{persona.name} agrees the discussion is complete.]"


class TurnExecutor:
    """Performs single persona turns against one provider and store."""

    def __init__(self, provider: ModelProvider, store: ConversationStore):
        self.provider = provider
        self.store = store

    async def run_turn(
        self,
        prompt: str,
        prior_document: str,
        token: CancellationToken,
        persona: Persona,
        message_id: str,
    ) -> TurnResult:
        """Run one turn for persona and resolve its placeholder message.

        Raises:
            RunCancelled: token signalled before or during the call
            ProviderError: transport failure or empty reply
        """
        token.raise_if_cancelled()
        write_live(f"{persona.name} is thinking...")
        logger.debug(f"Turn for {persona.name} via {self.provider.name}, prompt {len(prompt)} chars")

        started = time.monotonic()
        self.store.begin_turn()
        try:
            raw = await self.provider.send(prompt, token)
            # A reply that lands after cancellation is discarded
            token.raise_if_cancelled()
            if not raw or not raw.strip():
                raise ProviderError("Empty response from API.")

            parsed = parse_response(raw)
            saw_completion = COMPLETION_MARKER in raw
            text = parsed.spoken.replace(COMPLETION_MARKER, "").strip()
            if saw_completion and not text:
                text = completion_text(persona)

            document = prior_document
            if parsed.operations:
                document = apply_patches(prior_document, parsed.operations)
                logger.info(f"{persona.name} applied {len(parsed.operations)} notepad operation(s)")

            duration_ms = int((time.monotonic() - started) * 1000)
            self.store.dispatch(ResolveTurn(message_id, text, duration_ms, document))
        finally:
            self.store.end_turn()

        write_live(f">>> {persona.name} finished in {duration_ms} ms"
                   f"{' (signalled completion)' if saw_completion else ''}")
        return TurnResult(
            text=text,
            document=document,
            duration_ms=duration_ms,
            saw_completion=saw_completion,
        )
