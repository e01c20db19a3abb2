"""Claude Agent SDK message source.

Wraps claude_agent_sdk.query() with partial messages enabled so text
arrives as stream events.
"""
from __future__ import annotations

import logging
import shutil
from typing import Any, AsyncIterator

from agentstream.augments.models import ProviderFamily

from .base import MessageSource

logger = logging.getLogger(__name__)


class ClaudeSource(MessageSource):
    """Source backed by the Claude Agent SDK.

    Auth: works with the CLI's OAuth login by default; the SDK picks up
    ANTHROPIC_API_KEY from the environment when set.
    """

    family = ProviderFamily.CLAUDE_SDK

    def __init__(
        self,
        default_model: str | None = None,
        permission_mode: str = "default",
        command: str = "claude",
    ) -> None:
        self._command = self.resolve_command(command, "claude")
        self._default_model = default_model
        self._permission_mode = permission_mode

    @property
    def name(self) -> str:
        return "claude"

    async def messages(
        self,
        prompt: str,
        *,
        cwd: str | None = None,
        model_id: str | None = None,
    ) -> AsyncIterator[Any]:
        from claude_agent_sdk import ClaudeAgentOptions, query

        options = ClaudeAgentOptions(
            permission_mode=self._permission_mode,
            cwd=cwd or ".",
            model=model_id or self._default_model,
            include_partial_messages=True,
        )
        logger.info(
            "Claude query started: model=%s cwd=%s",
            model_id or self._default_model or "<default>", cwd or ".",
        )
        async for message in query(prompt=prompt, options=options):
            yield message

    def is_available(self) -> bool:
        """Check if claude CLI is installed."""
        return shutil.which(self._command or "claude") is not None
