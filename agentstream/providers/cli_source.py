"""JSON-lines message sources for agent CLIs (Codex, Gemini).

The CLI runs as a subprocess (argument array, no shell); each stdout line
is decoded as JSON and yielded as a dict. Lines that are not JSON are
yielded as plain strings.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from typing import Any, AsyncIterator

from agentstream.augments.errors import UpstreamError
from agentstream.augments.models import ProviderFamily

from .base import MessageSource

logger = logging.getLogger(__name__)

# Tail of stderr kept for error reports
_STDERR_TAIL_CHARS = 2000
# Tool results can put whole files on one stdout line
_LINE_LIMIT = 16 * 1024 * 1024


def decode_line(line: str) -> Any:
    """Decode one JSONL line; non-JSON text comes back unchanged."""
    stripped = line.strip()
    if not stripped:
        return None
    try:
        return json.loads(stripped)
    except (json.JSONDecodeError, ValueError):
        return line.rstrip("\r\n")


class CliJsonSource(MessageSource):
    """Base for CLIs that stream JSONL on stdout."""

    default_command = ""

    def __init__(self, command: str | None = None, api_key_env: str | None = None) -> None:
        self._command = self.resolve_command(command or self.default_command, self.default_command)
        self._api_key_env = api_key_env

    def build_command(
        self, prompt: str, *, cwd: str | None, model_id: str | None,
    ) -> tuple[list[str], bytes | None]:
        """Return (argv, stdin payload or None)."""
        raise NotImplementedError

    def _build_env(self) -> dict[str, str] | None:
        return None

    async def messages(
        self,
        prompt: str,
        *,
        cwd: str | None = None,
        model_id: str | None = None,
    ) -> AsyncIterator[Any]:
        cmd, stdin_payload = self.build_command(prompt, cwd=cwd, model_id=model_id)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if stdin_payload is not None else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=cwd,
                limit=_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise UpstreamError("", f"{self.name}: '{self._command}' CLI not found") from exc

        logger.info("%s started: pid=%s cwd=%s", self.name, proc.pid, cwd or ".")
        try:
            if stdin_payload is not None and proc.stdin is not None:
                proc.stdin.write(stdin_payload)
                await proc.stdin.drain()
                proc.stdin.close()

            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                decoded = decode_line(line.decode("utf-8", errors="replace"))
                if decoded is not None:
                    yield decoded

            await proc.wait()
            if proc.returncode != 0:
                stderr = (await proc.stderr.read()).decode("utf-8", errors="replace")
                raise UpstreamError(
                    "",
                    f"{self.name} exit code {proc.returncode}: {stderr[-_STDERR_TAIL_CHARS:].strip()}",
                )
        finally:
            if proc.returncode is None:
                logger.info("%s: terminating pid=%s", self.name, proc.pid)
                proc.kill()
                await proc.wait()

    def is_available(self) -> bool:
        return shutil.which(self._command) is not None


class CodexSource(CliJsonSource):
    """``codex exec --json`` with the prompt on stdin."""

    family = ProviderFamily.CODEX
    default_command = "codex"

    @property
    def name(self) -> str:
        return "codex"

    def _build_env(self) -> dict[str, str] | None:
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env["OPENAI_API_KEY"] = key
                return env
        return None

    def build_command(self, prompt, *, cwd, model_id):
        cmd = [self._command]
        if model_id:
            cmd.extend(["-c", f'model="{model_id}"'])
        cmd.extend(["exec", "--json"])
        if cwd:
            cmd.extend(["-C", cwd])
        cmd.append("-")
        return cmd, prompt.encode("utf-8")


class GeminiSource(CliJsonSource):
    """``gemini --output-format=stream-json``."""

    family = ProviderFamily.GEMINI
    default_command = "gemini"

    @property
    def name(self) -> str:
        return "gemini"

    def _build_env(self) -> dict[str, str] | None:
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env["GEMINI_API_KEY"] = key
                return env
        return None

    def build_command(self, prompt, *, cwd, model_id):
        cmd = [self._command]
        if model_id:
            cmd.extend(["--model", model_id])
        # --flag=value keeps the prompt from being read as a positional.
        cmd.append(f"--prompt={prompt}")
        cmd.append("--output-format=stream-json")
        return cmd, None
