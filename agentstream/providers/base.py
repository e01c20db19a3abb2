"""Abstract base for provider message sources.

Each source wraps a different agent runtime (Claude Agent SDK, Codex CLI,
Gemini CLI, a recorded transcript) and yields that runtime's raw
messages. The augmentation pipeline normalizes them; sources never
interpret content.
"""
from __future__ import annotations

import abc
import logging
import shutil
from typing import Any, AsyncIterator

from agentstream.augments.models import ProviderFamily

logger = logging.getLogger(__name__)


class MessageSource(abc.ABC):
    """Abstract message source interface."""

    # Message shape this source produces; None lets the normalizer detect it.
    family: ProviderFamily | None = None

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short source name (e.g. 'claude', 'codex', 'replay')."""

    @abc.abstractmethod
    def messages(
        self,
        prompt: str,
        *,
        cwd: str | None = None,
        model_id: str | None = None,
    ) -> AsyncIterator[Any]:
        """Run one turn and yield the runtime's raw messages."""

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this source's runtime is installed."""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a binary by preferring ``command``, then ``fallback``.

        A command that is not on PATH is kept as-is so errors can name it.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s for source %s",
                command, fallback, self.name,
            )
            return fallback
        return command or fallback or ""
