#!/usr/bin/env python3
"""
Duet Arena Model Providers

One ModelProvider subclass per backend. The orchestrator selects a provider
once per run (`select_provider`) and only ever calls `send(prompt, token)`,
which races the request against the run's cancellation token.

Backends:
- gemini:  Gemini REST generateContent (official endpoint or a proxy)
- openai:  any OpenAI-compatible /v1/chat/completions endpoint
- ollama:  local Ollama /api/generate
- command: an agent CLI that reads the prompt on stdin (claude -p, codex, ...)
"""
from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
from typing import Any, Awaitable, Dict, List, Optional, Tuple, Type

import aiohttp

from models import (
    CancellationToken, CommandConfig, ConfigurationError, GeminiConfig,
    OllamaConfig, OpenAIConfig, ProviderError, ProviderSettings, RunCancelled,
)
from utils import write_live

logger = logging.getLogger("duet")

GEMINI_DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_HTTP_TIMEOUT_SECONDS = 300
FALLBACK_ORDER = ["gemini", "openai", "ollama", "command"]


async def run_cancellable(request: Awaitable[str], token: CancellationToken) -> str:
    """Await request unless the token fires first; then abort it and raise RunCancelled."""
    task = asyncio.ensure_future(request)
    if token.cancelled:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunCancelled()

    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    if task in done:
        return task.result()
    raise RunCancelled()


def _error_detail(body: str, fallback: str) -> str:
    """Pull a human-readable message out of a JSON error body."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return body[:500] or fallback
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    return fallback


async def _request_json(
    method: str,
    url: str,
    label: str,
    payload: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    timeout = aiohttp.ClientTimeout(total=DEFAULT_HTTP_TIMEOUT_SECONDS)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.request(
                method, url, json=payload, headers=headers, params=params
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    detail = _error_detail(body, f"HTTP {resp.status}")
                    raise ProviderError(f"{label} API Error: {detail}")
                return await resp.json()
    except aiohttp.ClientError as e:
        raise ProviderError(f"{label} API Error: {e}") from e
    except asyncio.TimeoutError as e:
        raise ProviderError(f"{label} API Error: request timed out") from e


class ModelProvider(abc.ABC):
    """A backend that turns a prompt into raw response text."""

    name = ""

    async def send(self, prompt: str, token: CancellationToken) -> str:
        return await run_cancellable(self.generate(prompt), token)

    @abc.abstractmethod
    async def generate(self, prompt: str) -> str:
        ...

    @abc.abstractmethod
    async def list_models(self) -> List[str]:
        ...

    @classmethod
    @abc.abstractmethod
    def is_configured(cls, settings: ProviderSettings) -> bool:
        ...

    @classmethod
    @abc.abstractmethod
    def from_settings(cls, settings: ProviderSettings) -> "ModelProvider":
        ...


# =============================================================================
# Gemini
# =============================================================================

def _gemini_api_key(config: GeminiConfig) -> str:
    return config.api_key or os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY", "")


class GeminiProvider(ModelProvider):
    name = "gemini"

    def __init__(self, config: GeminiConfig):
        self.config = config
        self.api_key = _gemini_api_key(config)
        self.base_url = (config.base_url or GEMINI_DEFAULT_BASE_URL).rstrip("/")
        self.model = config.model or "gemini-2.5-flash"

    @classmethod
    def is_configured(cls, settings: ProviderSettings) -> bool:
        # A key-less proxy is fine as long as a base URL is set
        return bool(_gemini_api_key(settings.gemini) or settings.gemini.base_url)

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "GeminiProvider":
        return cls(settings.gemini)

    def _params(self) -> Optional[Dict[str, str]]:
        return {"key": self.api_key} if self.api_key else None

    def thinking_budget(self) -> Optional[int]:
        if self.config.thinking_mode == "disabled":
            return 0
        if self.config.thinking_mode == "custom" and self.config.thinking_budget is not None:
            return self.config.thinking_budget
        return None

    async def generate(self, prompt: str) -> str:
        body: Dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
        budget = self.thinking_budget()
        if budget is not None:
            body["generationConfig"] = {"thinkingConfig": {"thinkingBudget": budget}}

        data = await _request_json(
            "POST",
            f"{self.base_url}/v1beta/models/{self.model}:generateContent",
            "Gemini",
            payload=body,
            params=self._params(),
        )
        candidates = data.get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        if not text:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise ProviderError(f"Response blocked due to: {block_reason}")
            if candidates[0].get("finishReason") == "SAFETY":
                raise ProviderError("Response blocked due to safety settings.")
        return text

    async def list_models(self) -> List[str]:
        data = await _request_json(
            "GET", f"{self.base_url}/v1beta/models", "Gemini", params=self._params()
        )
        return sorted(
            m["name"].replace("models/", "")
            for m in data.get("models", [])
            if "gemini" in m.get("name", "")
            and "generateContent" in m.get("supportedGenerationMethods", [])
        )


# =============================================================================
# OpenAI-compatible
# =============================================================================

def _openai_api_key(config: OpenAIConfig) -> str:
    return config.api_key or os.environ.get("OPENAI_API_KEY", "")


class OpenAIProvider(ModelProvider):
    name = "openai"

    def __init__(self, config: OpenAIConfig):
        self.config = config
        self.api_key = _openai_api_key(config)
        self.base_url = config.base_url.rstrip("/")
        self.model = config.model

    @classmethod
    def is_configured(cls, settings: ProviderSettings) -> bool:
        cfg = settings.openai
        return bool(_openai_api_key(cfg) and cfg.base_url and cfg.model)

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "OpenAIProvider":
        return cls(settings.openai)

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    async def generate(self, prompt: str) -> str:
        data = await _request_json(
            "POST",
            f"{self.base_url}/v1/chat/completions",
            "OpenAI",
            payload={
                "model": self.model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": False,
            },
            headers=self._headers(),
        )
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or ""

    async def list_models(self) -> List[str]:
        data = await _request_json(
            "GET", f"{self.base_url}/v1/models", "OpenAI", headers=self._headers()
        )
        return sorted(m["id"] for m in data.get("data", []) if "id" in m)


# =============================================================================
# Ollama
# =============================================================================

class OllamaProvider(ModelProvider):
    name = "ollama"

    def __init__(self, config: OllamaConfig):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.model = config.model

    @classmethod
    def is_configured(cls, settings: ProviderSettings) -> bool:
        return bool(settings.ollama.base_url and settings.ollama.model)

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "OllamaProvider":
        return cls(settings.ollama)

    async def generate(self, prompt: str) -> str:
        data = await _request_json(
            "POST",
            f"{self.base_url}/api/generate",
            "Ollama",
            payload={"model": self.model, "prompt": prompt, "stream": False},
        )
        return data.get("response") or ""

    async def list_models(self) -> List[str]:
        data = await _request_json("GET", f"{self.base_url}/api/tags", "Ollama")
        return sorted(m["name"] for m in data.get("models", []) if "name" in m)


# =============================================================================
# Agent CLI over stdin/stdout
# =============================================================================

async def run_process(
    cmd: List[str],
    stdin_text: str,
    timeout: Optional[int],
    stream_prefix: Optional[str] = None,
) -> Tuple[int, str, str]:
    """Run subprocess with optional timeout, mirroring stdout to the live log.

    Returns:
        (returncode, stdout, stderr); returncode is -1 on timeout
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    stdout_lines: List[str] = []
    stderr_lines: List[str] = []

    async def read_stream(stream: asyncio.StreamReader, lines: List[str], live: bool) -> None:
        while True:
            line_bytes = await stream.readline()
            if not line_bytes:
                break
            line = line_bytes.decode("utf-8", errors="replace").rstrip("\n\r")
            lines.append(line)
            if live and stream_prefix:
                write_live(line, prefix=f"{stream_prefix}: ")

    async def communicate() -> int:
        if proc.stdin:
            proc.stdin.write(stdin_text.encode("utf-8"))
            await proc.stdin.drain()
            proc.stdin.close()
            await proc.stdin.wait_closed()
        await asyncio.gather(
            read_stream(proc.stdout, stdout_lines, live=True),
            read_stream(proc.stderr, stderr_lines, live=False),
        )
        await proc.wait()
        return proc.returncode or 0

    async def stop() -> None:
        # Graceful shutdown: try terminate first, then kill
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=5)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
        except ProcessLookupError:
            pass

    try:
        if timeout:
            rc = await asyncio.wait_for(communicate(), timeout=timeout)
        else:
            rc = await communicate()
        return rc, "\n".join(stdout_lines), "\n".join(stderr_lines)
    except asyncio.TimeoutError:
        await stop()
        return -1, "\n".join(stdout_lines), f"Process timed out after {timeout}s"
    except asyncio.CancelledError:
        await stop()
        raise


class CommandProvider(ModelProvider):
    name = "command"

    def __init__(self, config: CommandConfig):
        self.config = config

    @classmethod
    def is_configured(cls, settings: ProviderSettings) -> bool:
        return bool(settings.command.cmd)

    @classmethod
    def from_settings(cls, settings: ProviderSettings) -> "CommandProvider":
        return cls(settings.command)

    async def generate(self, prompt: str) -> str:
        try:
            rc, stdout, stderr = await run_process(
                self.config.cmd, prompt, self.config.timeout, stream_prefix=self.config.cmd[0]
            )
        except OSError as e:
            raise ProviderError(f"Could not start {self.config.cmd[0]}: {e}") from e

        if rc == -1:
            raise ProviderError(f"Timeout after {self.config.timeout}s")
        if rc != 0 and not stdout.strip():
            raise ProviderError(f"Exit code {rc}: {stderr[:500]}")
        if rc != 0:
            logger.warning(f"Agent command {self.config.cmd[0]} exited with code {rc} but produced output")
        return stdout

    async def list_models(self) -> List[str]:
        return [" ".join(self.config.cmd)]


# =============================================================================
# Selection
# =============================================================================

PROVIDERS: Dict[str, Type[ModelProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
    "command": CommandProvider,
}


def select_provider(settings: ProviderSettings) -> ModelProvider:
    """Pick the configured provider, falling back to the first usable one."""
    if settings.provider not in PROVIDERS:
        raise ConfigurationError(f"Unsupported API provider: {settings.provider}")

    candidates = [settings.provider] + [p for p in FALLBACK_ORDER if p != settings.provider]
    for name in candidates:
        cls = PROVIDERS[name]
        if cls.is_configured(settings):
            if name != settings.provider:
                logger.warning(f"Provider '{settings.provider}' is not configured, falling back to '{name}'")
            return cls.from_settings(settings)

    raise ConfigurationError("No API provider is configured. Please check the settings.")
