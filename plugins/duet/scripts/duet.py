#!/usr/bin/env python3
"""
Duet Arena

Two model personas, Cognito (analytical) and Muse (skeptical), debate a user
request turn by turn while editing a shared notepad.

Usage:
    duet.py run "Design a rate limiter" --name rl --mode fixed --turns 3
    duet.py retry --name rl
    duet.py models --provider ollama

Each run lives in <state_dir>/runs/<name>/ (see transcript.py); re-using a
name continues the same conversation. Ctrl-C cancels the current turn.
"""
from __future__ import annotations

import argparse
import asyncio
import base64
import datetime as dt
import logging
import mimetypes
import signal
from pathlib import Path
from typing import Any, Dict, Optional, Set, Tuple

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("duet")

from config import DEFAULT_CONFIG_NAME, build_settings, load_config
from conversation import ConversationStore
from models import (
    ConfigurationError, Conversation, DiscussionSettings, Message,
    OrchestratorLock, ProviderError, RunState, Sender,
)
from orchestrator import DiscussionOrchestrator
from providers import select_provider
from transcript import (
    TranscriptWriter, load_conversation, load_notepad,
    save_conversation, write_resolution,
)
from utils import ensure_secure_dir, set_live_log, validate_name, write_live

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130

OUTCOME_EXIT_CODES = {
    RunState.SETTLED_COMPLETE: EXIT_OK,
    RunState.SETTLED_FAILED: EXIT_ERROR,
    RunState.SETTLED_CANCELLED: EXIT_CANCELLED,
}


class ConsolePrinter:
    """Store listener that prints each message once it has settled."""

    def __init__(self, settings: DiscussionSettings, conversation: Conversation):
        self.settings = settings
        self._seen: Set[Tuple[str, str]] = {(m.id, m.text) for m in conversation.messages}

    def label(self, msg: Message) -> str:
        if msg.sender in (Sender.AGENT_A, Sender.AGENT_B):
            return self.settings.persona(msg.sender).name
        return msg.sender.value.capitalize()

    def __call__(self, conversation: Conversation) -> None:
        for msg in conversation.messages:
            key = (msg.id, msg.text)
            if msg.pending or key in self._seen:
                continue
            self._seen.add(key)
            timing = f" ({msg.duration_ms} ms)" if msg.duration_ms is not None else ""
            print(f"\n[{self.label(msg)}]{timing}\n{msg.text}", flush=True)
            write_live(msg.text, prefix=f"{self.label(msg)}: ")


def image_data_url(path: Path) -> str:
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def apply_cli_overrides(cfg: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    cfg = cfg.copy()
    if getattr(args, "mode", None):
        cfg["mode"] = args.mode
    if getattr(args, "turns", None) is not None:
        cfg["max_turns"] = args.turns
    if getattr(args, "provider", None):
        cfg["provider"] = args.provider
    return cfg


def load_settings(args: argparse.Namespace) -> Tuple[DiscussionSettings, Path]:
    cfg, state_dir, global_dir = load_config(Path(args.config), getattr(args, "profile", None))
    cfg = apply_cli_overrides(cfg, args)
    return build_settings(cfg, state_dir, global_dir), state_dir


async def run_debate(args: argparse.Namespace) -> int:
    """Entry point for `run` and `retry`."""
    settings, state_dir = load_settings(args)

    lock = OrchestratorLock(state_dir)
    if not lock.acquire():
        logger.error("Another orchestrator is running. Exiting.")
        return EXIT_ERROR

    try:
        return await _run_debate_locked(args, settings, state_dir)
    finally:
        lock.release()


async def _run_debate_locked(
    args: argparse.Namespace, settings: DiscussionSettings, state_dir: Path
) -> int:
    ensure_secure_dir(state_dir)

    run_name = args.name or dt.datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
    try:
        validate_name(run_name, "run")
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    run_dir = state_dir / "runs" / run_name
    ensure_secure_dir(run_dir)

    conversation, failed_step = load_conversation(run_dir)
    if conversation is None:
        if args.command == "retry":
            logger.error(f"No conversation found in {run_dir}")
            return EXIT_ERROR
        conversation = Conversation(document=load_notepad(getattr(args, "notepad", None)))

    store = ConversationStore(conversation)
    orchestrator = DiscussionOrchestrator(settings, store)
    orchestrator.restore_failed_step(failed_step)
    store.subscribe(TranscriptWriter(run_dir, conversation))
    store.subscribe(ConsolePrinter(settings, conversation))

    with open(run_dir / "live.log", "a", encoding="utf-8") as live_log_file:
        set_live_log(live_log_file)
        try:
            await _drive(args, orchestrator, run_dir, run_name)
        finally:
            set_live_log(None)

    outcome = orchestrator.last_outcome
    if outcome is None:
        return EXIT_ERROR
    summary = f"{len(orchestrator.messages)} messages, notepad {len(orchestrator.document)} chars"
    write_resolution(run_dir, outcome, summary)

    if orchestrator.document:
        print("\n" + "=" * 60)
        print("NOTEPAD")
        print("=" * 60)
        print(orchestrator.document)
    if orchestrator.failed_step:
        print(f"\nTurn failed. Retry with: duet.py retry --name {run_name}")
    return OUTCOME_EXIT_CODES[outcome]


async def _drive(
    args: argparse.Namespace, orchestrator: DiscussionOrchestrator, run_dir: Path, run_name: str
) -> None:
    write_live("=" * 60)
    write_live(f"DUET ARENA - {run_name}")
    write_live(f"Watch: tail -f {run_dir}/live.log")
    write_live("=" * 60)

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
    except NotImplementedError:
        logger.debug("Signal handlers not supported on this platform")

    try:
        if args.command == "retry":
            if orchestrator.failed_step is None:
                logger.error("Nothing to retry: the last run did not fail")
                return
            await orchestrator.retry()
        else:
            image = image_data_url(Path(args.image)) if args.image else None
            await orchestrator.submit(args.request, image=image)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        save_conversation(run_dir, orchestrator.conversation, orchestrator.failed_step)
        write_live("=" * 60)
        write_live("ORCHESTRATOR FINISHED")
        write_live("=" * 60)


async def list_models(args: argparse.Namespace) -> int:
    settings, _ = load_settings(args)
    provider = select_provider(settings.providers)
    try:
        models = await provider.list_models()
    except ProviderError as e:
        logger.error(str(e))
        return EXIT_ERROR
    for name in models:
        print(name)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Duet Arena: two-persona debate with a shared notepad")
    ap.add_argument("--config", default=DEFAULT_CONFIG_NAME, help="Config file path")
    ap.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = ap.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a debate on a request")
    run.add_argument("request", help="The user request to debate")
    run.add_argument(
        "--name", "-n",
        help="Run name (creates <state_dir>/runs/<name>/). If not set, uses timestamp."
    )
    run.add_argument("--profile", "-p", help="Load profile from <state_dir>/profiles/")
    run.add_argument("--mode", choices=["fixed", "agent-driven"], help="Override discussion mode")
    run.add_argument("--turns", type=int, default=None, help="Turns per agent (fixed mode)")
    run.add_argument("--provider", choices=["gemini", "openai", "ollama", "command"])
    run.add_argument("--notepad", type=Path, help="Seed the notepad of a new run from a file")
    run.add_argument("--image", help="Attach an image to the request")

    retry = sub.add_parser("retry", help="Retry the failed turn of a run")
    retry.add_argument("--name", "-n", required=True, help="Run name")
    retry.add_argument("--profile", "-p", help="Load profile from <state_dir>/profiles/")
    retry.add_argument("--provider", choices=["gemini", "openai", "ollama", "command"])

    models = sub.add_parser("models", help="List models offered by the provider")
    models.add_argument("--profile", "-p", help="Load profile from <state_dir>/profiles/")
    models.add_argument("--provider", choices=["gemini", "openai", "ollama", "command"])
    return ap


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        if args.command == "models":
            return asyncio.run(list_models(args))
        return asyncio.run(run_debate(args))
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
