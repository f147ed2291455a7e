#!/usr/bin/env python3
"""
Duet Arena Configuration Loading

Functions for loading the JSON config, profiles and persona documents, and
turning them into DiscussionSettings.

Config file (duet.config.json):

    {
      "state_dir": ".duet",
      "provider": "gemini",
      "gemini": {"api_key": "", "model": "gemini-2.5-flash", "thinking_mode": "default"},
      "openai": {"api_key": "", "base_url": "https://api.openai.com", "model": "gpt-4o"},
      "ollama": {"base_url": "http://localhost:11434", "model": "llama3"},
      "command": {"cmd": ["claude", "-p"], "timeout": 600},
      "mode": "agent-driven",
      "max_turns": 2,
      "personas": {"agent_a": "cognito", "agent_b": "muse"}
    }

Persona documents live in <state_dir>/personas/<name>.md (falling back to
<global_dir>/personas/): YAML front matter with `name` and `turn_cue`, body
is the system prompt.
"""
from __future__ import annotations

import dataclasses
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from models import (
    CommandConfig, ConfigurationError, DiscussionMode, DiscussionSettings,
    GeminiConfig, OllamaConfig, OpenAIConfig, Persona, ProviderSettings,
    default_agent_a, default_agent_b, DEFAULT_MAX_TURNS,
)
from utils import read_text, load_json, validate_name

logger = logging.getLogger("duet")

DEFAULT_CONFIG_NAME = "duet.config.json"


def load_frontmatter_doc(path: Path) -> Tuple[Dict[str, Any], str]:
    """Load document with YAML frontmatter. Returns (metadata, body)."""
    if not path.exists():
        return {}, ""

    content = read_text(path)
    if not content.startswith("---"):
        return {}, content

    parts = content.split("---", 2)
    if len(parts) < 3:
        return {}, content

    try:
        frontmatter = yaml.safe_load(parts[1]) or {}
        body = parts[2].strip()
        return frontmatter, body
    except yaml.YAMLError as e:
        logger.warning(f"YAML parse error in {path}: {e}")
        return {}, content


def _checked_name(name: str, kind: str) -> None:
    try:
        validate_name(name, kind)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def load_persona_doc(
    state_dir: Path, persona_name: str, global_dir: Optional[Path] = None
) -> Tuple[Dict[str, Any], str]:
    """Load persona document (YAML frontmatter + body). Checks state_dir first, then global_dir."""
    _checked_name(persona_name, "persona")
    persona_path = state_dir / "personas" / f"{persona_name}.md"
    if persona_path.exists():
        return load_frontmatter_doc(persona_path)
    if global_dir:
        global_path = global_dir / "personas" / f"{persona_name}.md"
        if global_path.exists():
            return load_frontmatter_doc(global_path)
    return {}, ""


def load_profile(
    state_dir: Path, profile_name: str, global_dir: Optional[Path] = None
) -> Dict[str, Any]:
    """Load profile JSON. Checks state_dir first, then global_dir."""
    _checked_name(profile_name, "profile")
    profile_path = state_dir / "profiles" / f"{profile_name}.json"
    if profile_path.exists():
        return load_json(profile_path, {})
    if global_dir:
        global_path = global_dir / "profiles" / f"{profile_name}.json"
        if global_path.exists():
            return load_json(global_path, {})
    logger.warning(f"Profile '{profile_name}' not found")
    return {}


def merge_profile(cfg: Dict[str, Any], profile: Dict[str, Any]) -> Dict[str, Any]:
    """Merge profile settings into config. Profile values override config."""
    merged = cfg.copy()

    for key in ("provider", "mode", "max_turns"):
        if key in profile:
            merged[key] = profile[key]

    # Provider sections and persona choices merge key by key
    for key in ("gemini", "openai", "ollama", "command", "personas"):
        if key in profile:
            section = dict(merged.get(key, {}))
            section.update(profile[key])
            merged[key] = section

    return merged


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    section = cfg.get(key) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Config section '{key}' must be an object")
    return section


def _known_fields(cls: type, data: Dict[str, Any], section: str) -> Dict[str, Any]:
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = set(data) - names
    if unknown:
        logger.warning(f"Ignoring unknown keys in '{section}': {', '.join(sorted(unknown))}")
    return {k: v for k, v in data.items() if k in names}


def build_provider_settings(cfg: Dict[str, Any]) -> ProviderSettings:
    ollama = _known_fields(OllamaConfig, _section(cfg, "ollama"), "ollama")
    if not ollama.get("base_url") and os.environ.get("OLLAMA_HOST"):
        ollama["base_url"] = os.environ["OLLAMA_HOST"]

    command = _known_fields(CommandConfig, _section(cfg, "command"), "command")
    if isinstance(command.get("cmd"), str):
        command["cmd"] = command["cmd"].split()

    return ProviderSettings(
        provider=cfg.get("provider", "gemini"),
        gemini=GeminiConfig(**_known_fields(GeminiConfig, _section(cfg, "gemini"), "gemini")),
        openai=OpenAIConfig(**_known_fields(OpenAIConfig, _section(cfg, "openai"), "openai")),
        ollama=OllamaConfig(**ollama),
        command=CommandConfig(**command),
    )


def _resolve_persona(
    default: Persona, doc_name: Optional[str], state_dir: Path, global_dir: Optional[Path]
) -> Persona:
    if not doc_name:
        return default
    meta, body = load_persona_doc(state_dir, doc_name, global_dir)
    if not meta and not body:
        logger.warning(f"Persona '{doc_name}' not found, using built-in {default.name}")
        return default
    return dataclasses.replace(
        default,
        name=meta.get("name", default.name),
        system_prompt=body or default.system_prompt,
        turn_cue=meta.get("turn_cue", default.turn_cue),
    )


def build_settings(
    cfg: Dict[str, Any], state_dir: Path, global_dir: Optional[Path] = None
) -> DiscussionSettings:
    """Turn a (profile-merged) config dict into DiscussionSettings."""
    try:
        mode = DiscussionMode(cfg.get("mode", DiscussionMode.AGENT_DRIVEN.value))
    except ValueError as e:
        choices = ", ".join(m.value for m in DiscussionMode)
        raise ConfigurationError(f"Invalid mode '{cfg.get('mode')}': expected one of {choices}") from e

    try:
        max_turns = int(cfg.get("max_turns", DEFAULT_MAX_TURNS))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid max_turns: {cfg.get('max_turns')!r}") from e
    if mode == DiscussionMode.FIXED and max_turns < 1:
        raise ConfigurationError(f"max_turns must be at least 1 in fixed mode (got {max_turns})")

    personas = _section(cfg, "personas")
    return DiscussionSettings(
        mode=mode,
        max_turns=max_turns,
        agent_a=_resolve_persona(default_agent_a(), personas.get("agent_a"), state_dir, global_dir),
        agent_b=_resolve_persona(default_agent_b(), personas.get("agent_b"), state_dir, global_dir),
        providers=build_provider_settings(cfg),
    )


def load_config(config_path: Path, profile_name: Optional[str] = None) -> Tuple[Dict[str, Any], Path, Optional[Path]]:
    """Read the config file and apply a profile. Returns (cfg, state_dir, global_dir)."""
    cfg = load_json(config_path, {})
    if not isinstance(cfg, dict):
        raise ConfigurationError(f"Config {config_path} must contain a JSON object")
    state_dir = Path(cfg.get("state_dir", ".duet"))
    global_dir = Path(cfg["global_dir"]).expanduser() if cfg.get("global_dir") else None

    if profile_name:
        profile = load_profile(state_dir, profile_name, global_dir)
        if profile:
            logger.info(f"Loaded profile: {profile_name}")
            if profile.get("description"):
                logger.info(f"  {profile['description']}")
            cfg = merge_profile(cfg, profile)

    return cfg, state_dir, global_dir
