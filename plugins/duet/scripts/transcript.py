#!/usr/bin/env python3
"""
Duet Arena Run Transcript

Durable record of a run directory:

    <run_dir>/conversation.json   full conversation + pending failed step
    <run_dir>/thread.jsonl        one line per settled message, append-only
    <run_dir>/notepad.md          latest notepad content
    <run_dir>/resolution.json     how the last run settled
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Set, Tuple

from models import Conversation, FailedStep, RunState
from utils import (
    append_jsonl_durable, load_json, read_text, save_json_atomic,
    utc_now_iso, write_text_atomic,
)

logger = logging.getLogger("duet")


def save_conversation(
    run_dir: Path, conversation: Conversation, failed_step: Optional[FailedStep]
) -> None:
    save_json_atomic(
        run_dir / "conversation.json",
        {
            "timestamp": utc_now_iso(),
            "conversation": conversation.to_dict(),
            "failed_step": failed_step.to_dict() if failed_step else None,
        },
    )


def load_conversation(run_dir: Path) -> Tuple[Optional[Conversation], Optional[FailedStep]]:
    """Read conversation.json. Returns (None, None) for a fresh run directory."""
    data = load_json(run_dir / "conversation.json", None)
    if not data:
        return None, None
    try:
        conversation = Conversation.from_dict(data.get("conversation", {}))
        step_data = data.get("failed_step")
        failed_step = FailedStep.from_dict(step_data) if step_data else None
    except (KeyError, ValueError) as e:
        logger.warning(f"Unreadable transcript in {run_dir}: {e}")
        return None, None
    return conversation, failed_step


def load_notepad(path: Optional[Path]) -> str:
    return read_text(path) if path else ""


def write_resolution(run_dir: Path, outcome: RunState, summary: str) -> None:
    """Write final resolution artifact."""
    save_json_atomic(
        run_dir / "resolution.json",
        {
            "timestamp": utc_now_iso(),
            "outcome": outcome.value,
            "summary": summary,
        },
    )


class TranscriptWriter:
    """Store listener that mirrors settled messages and the notepad to disk."""

    def __init__(self, run_dir: Path, conversation: Conversation):
        self.run_dir = run_dir
        self.thread_path = run_dir / "thread.jsonl"
        self.notepad_path = run_dir / "notepad.md"
        self._written: Set[str] = {m.id for m in conversation.messages if not m.pending}
        self._document = conversation.document
        # Error messages can be rewritten by a retry; track what was logged
        self._texts = {m.id: m.text for m in conversation.messages}

    def __call__(self, conversation: Conversation) -> None:
        for msg in conversation.messages:
            if msg.pending:
                continue
            if msg.id in self._written and self._texts.get(msg.id) == msg.text:
                continue
            entry = msg.to_dict()
            entry["revision"] = msg.id in self._written
            append_jsonl_durable(self.thread_path, entry)
            self._written.add(msg.id)
            self._texts[msg.id] = msg.text

        if conversation.document != self._document:
            self._document = conversation.document
            write_text_atomic(self.notepad_path, conversation.document)
