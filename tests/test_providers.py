"""Tests for provider message sources."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from agentstream.augments.errors import UpstreamError
from agentstream.augments.models import ProviderFamily
from agentstream.providers import (
    ClaudeSource,
    CodexSource,
    GeminiSource,
    ReplaySource,
    build_source,
)
from agentstream.providers.cli_source import decode_line


class _FakeStream:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = list(lines)

    async def readline(self) -> bytes:
        return self._lines.pop(0) if self._lines else b""

    async def read(self) -> bytes:
        data = b"".join(self._lines)
        self._lines = []
        return data


class _FakeStdin:
    def __init__(self) -> None:
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class _FakeProc:
    def __init__(self, lines: list[bytes], returncode: int = 0, stderr: bytes = b"") -> None:
        self.pid = 4242
        self.returncode = None
        self._exit = returncode
        self.stdin = _FakeStdin()
        self.stdout = _FakeStream(lines)
        self.stderr = _FakeStream([stderr])
        self.killed = False

    async def wait(self) -> int:
        self.returncode = self._exit
        return self._exit

    def kill(self) -> None:
        self.killed = True
        self._exit = -9


async def _collect(source, prompt="do it", **kwargs) -> list:
    return [message async for message in source.messages(prompt, **kwargs)]


def test_decode_line():
    assert decode_line('{"type": "init"}\n') == {"type": "init"}
    assert decode_line("Loaded cached credentials.\n") == "Loaded cached credentials."
    assert decode_line("   \n") is None


def test_build_source():
    assert isinstance(build_source("codex"), CodexSource)
    assert isinstance(build_source("gemini"), GeminiSource)
    assert isinstance(build_source("claude"), ClaudeSource)
    with pytest.raises(ValueError, match="Unknown provider"):
        build_source("nope")


def test_source_families():
    assert CodexSource.family is ProviderFamily.CODEX
    assert GeminiSource.family is ProviderFamily.GEMINI
    assert ClaudeSource.family is ProviderFamily.CLAUDE_SDK


def test_codex_command():
    cmd, stdin = CodexSource(command="codex").build_command("fix it", cwd="/work", model_id="gpt-5")
    assert cmd == ["codex", "-c", 'model="gpt-5"', "exec", "--json", "-C", "/work", "-"]
    assert stdin == b"fix it"


def test_gemini_command():
    cmd, stdin = GeminiSource(command="gemini").build_command("-x looks like a flag", cwd=None, model_id="g-2")
    assert cmd == [
        "gemini", "--model", "g-2", "--prompt=-x looks like a flag", "--output-format=stream-json",
    ]
    assert stdin is None


@pytest.mark.asyncio
async def test_cli_source_streams_decoded_lines():
    proc = _FakeProc([
        json.dumps({"type": "thread.started"}).encode() + b"\n",
        b"warning: not json\n",
        b"\n",
        json.dumps({"type": "turn.completed"}).encode() + b"\n",
    ])
    spawn = AsyncMock(return_value=proc)
    with patch("asyncio.create_subprocess_exec", spawn):
        messages = await _collect(CodexSource(command="codex"), cwd="/work")

    assert messages == [{"type": "thread.started"}, "warning: not json", {"type": "turn.completed"}]
    assert spawn.call_args.args[0] == "codex"
    assert spawn.call_args.kwargs["cwd"] == "/work"
    assert proc.stdin.data == b"do it"
    assert proc.stdin.closed is True
    assert proc.killed is False


@pytest.mark.asyncio
async def test_cli_source_nonzero_exit_raises_upstream_error():
    proc = _FakeProc([], returncode=2, stderr=b"authentication failed\n")
    with patch("asyncio.create_subprocess_exec", AsyncMock(return_value=proc)):
        with pytest.raises(UpstreamError, match="exit code 2: authentication failed"):
            await _collect(GeminiSource(command="gemini"))


@pytest.mark.asyncio
async def test_cli_source_missing_binary():
    with patch("asyncio.create_subprocess_exec", AsyncMock(side_effect=FileNotFoundError)):
        with pytest.raises(UpstreamError, match="CLI not found"):
            await _collect(CodexSource(command="codex-missing"))


@pytest.mark.asyncio
async def test_replay_source(tmp_path):
    path = tmp_path / "session.jsonl"
    path.write_text(
        json.dumps({"type": "assistant", "message": {"content": "hi"}}) + "\n"
        "\n"
        "stray text\n",
        encoding="utf-8",
    )
    source = ReplaySource(path, family=ProviderFamily.CLAUDE)
    assert source.is_available() is True
    assert source.name == "replay"
    messages = await _collect(source)
    assert messages == [{"type": "assistant", "message": {"content": "hi"}}, "stray text"]
