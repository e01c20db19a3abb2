"""Provider message sources for the augmentation pipeline."""
from __future__ import annotations

from .base import MessageSource
from .claude_source import ClaudeSource
from .cli_source import CliJsonSource, CodexSource, GeminiSource
from .replay import ReplaySource

__all__ = [
    "MessageSource",
    "ClaudeSource",
    "CliJsonSource",
    "CodexSource",
    "GeminiSource",
    "ReplaySource",
    "build_source",
]

_SOURCES: dict[str, type[MessageSource]] = {
    "claude": ClaudeSource,
    "codex": CodexSource,
    "gemini": GeminiSource,
}


def build_source(name: str, **kwargs) -> MessageSource:
    """Instantiate the live source registered under ``name``."""
    try:
        source_cls = _SOURCES[name]
    except KeyError:
        raise ValueError(
            f"Unknown provider '{name}' (expected one of {', '.join(sorted(_SOURCES))})"
        ) from None
    return source_cls(**kwargs)
