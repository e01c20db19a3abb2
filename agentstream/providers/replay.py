"""Replay a recorded JSONL transcript as a message source."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator

from agentstream.augments.models import ProviderFamily

from .base import MessageSource
from .cli_source import decode_line

logger = logging.getLogger(__name__)


class ReplaySource(MessageSource):
    """Yields one decoded message per transcript line.

    ``delay`` seconds are slept between lines to mimic live streaming.
    The prompt passed to :meth:`messages` is ignored.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        delay: float = 0.0,
        family: ProviderFamily | None = None,
    ) -> None:
        self.path = Path(path)
        self.delay = delay
        self.family = family

    @property
    def name(self) -> str:
        return "replay"

    async def messages(
        self,
        prompt: str = "",
        *,
        cwd: str | None = None,
        model_id: str | None = None,
    ) -> AsyncIterator[Any]:
        count = 0
        with self.path.open(encoding="utf-8") as fh:
            for line in fh:
                decoded = decode_line(line)
                if decoded is None:
                    continue
                if count and self.delay > 0:
                    await asyncio.sleep(self.delay)
                count += 1
                yield decoded
        logger.debug("Replayed %d message(s) from %s", count, self.path)

    def is_available(self) -> bool:
        return self.path.is_file()
