"""Exception hierarchy for the augmentation pipeline.

Each failure mode gets its own exception carrying its context. None of
them is fatal: generators turn GeneratorError into a degraded augment,
the detector logs UnknownToolResultError and emits the block degraded,
and the augmenter surfaces UpstreamError as a control event.
"""
from __future__ import annotations


class AugmentationError(Exception):
    """Base exception for all augmentation errors."""


class GeneratorError(AugmentationError):
    """An augment generator could not compute its augment."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Cannot augment {tool_name or 'block'}: {reason}")


class UnknownToolResultError(AugmentationError):
    """A tool result arrived for a tool-use id the detector never saw."""
    def __init__(self, tool_use_id: str):
        self.tool_use_id = tool_use_id
        super().__init__(f"Tool result for unknown tool use {tool_use_id}")


class UpstreamError(AugmentationError):
    """The provider stream failed or reported an error."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        where = f" in session {session_id}" if session_id else ""
        super().__init__(f"Upstream failure{where}: {reason}")


class ConfigError(AugmentationError):
    """A configuration value is invalid."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid config '{key}': {reason}")
