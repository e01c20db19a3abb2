"""Data model for the augmentation pipeline.

Canonical messages come out of the normalizer, completed blocks out of
the block detector, augments out of the generators, and stream events
out of the augmenter. Every record below the message level is immutable
once built.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union


class Role(Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    RESULT = "result"
    ERROR = "error"


class ProviderFamily(Enum):
    """Closed set of provider message shapes the normalizer understands."""
    CLAUDE = "claude"          # SDK JSON messages (also Codex/Gemini converted to that shape)
    CLAUDE_SDK = "claude_sdk"  # claude_agent_sdk Python message objects
    CODEX = "codex"            # codex exec --json JSONL events
    GEMINI = "gemini"          # gemini --output-format stream-json events


# ── Content parts ──


@dataclass(frozen=True)
class TextPart:
    delta: str
    # Opaque pass-through of a message shape the normalizer did not recognize.
    raw: bool = False
    # Full text of a content block the provider already streamed as deltas.
    snapshot: bool = False


@dataclass(frozen=True)
class ToolUsePart:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultPart:
    tool_use_id: str
    content: Any = ""
    is_error: bool = False
    # Provider's structured tool result (original file, read payload, plan).
    structured: dict[str, Any] | None = None


ContentPart = Union[TextPart, ToolUsePart, ToolResultPart]


@dataclass(frozen=True)
class CanonicalMessage:
    id: str
    session_id: str
    role: Role
    content_parts: tuple[ContentPart, ...] = ()
    # End of turn: no further content follows until the next prompt.
    is_final: bool = False
    subagent: bool = False
    parent_tool_use_id: str | None = None
    # End of one assistant API message (Claude message_stop).
    ends_message: bool = False
    provider: ProviderFamily = ProviderFamily.CLAUDE
    error: str | None = None

    @property
    def text(self) -> str:
        return "".join(p.delta for p in self.content_parts if isinstance(p, TextPart))


# ── Blocks ──


class BlockKind(Enum):
    PROSE = "prose"
    FENCED_CODE = "fenced_code"
    TOOL_INVOCATION = "tool_invocation"


@dataclass(frozen=True)
class ToolResult:
    content: Any = ""
    is_error: bool = False
    structured: dict[str, Any] | None = None


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    result: ToolResult | None = None


@dataclass(frozen=True)
class CompletedBlock:
    block_id: str
    kind: BlockKind
    raw_content: str = ""
    tool_call: ToolCall | None = None
    lang: str | None = None
    # paragraph | heading | code | list | blockquote | hr
    markdown_type: str | None = None
    # Forced to completion without its explicit boundary (possibly truncated).
    degraded: bool = False
    message_id: str | None = None
    subagent: bool = False


# ── Augments ──


@dataclass(frozen=True)
class Augment:
    """Base rendering enrichment attached to one completed block."""
    kind: str = ""
    tool_use_id: str | None = None
    degraded: bool = False


@dataclass(frozen=True)
class EditAugment(Augment):
    kind: str = "edit"
    unified_diff: str = ""
    language: str = "text"
    file_path: str = ""
    hunks: tuple[dict[str, Any], ...] = ()
    diff_html: str = ""


@dataclass(frozen=True)
class WriteAugment(Augment):
    kind: str = "write"
    highlighted_html: str = ""
    language: str = "text"
    truncated: bool = False
    file_path: str = ""


@dataclass(frozen=True)
class ReadAugment(Augment):
    kind: str = "read"
    highlighted_html: str = ""
    language: str = "text"
    truncated: bool = False
    file_path: str = ""
    rendered_markdown_html: str | None = None


@dataclass(frozen=True)
class PlanAugment(Augment):
    kind: str = "plan"
    summary: str = ""
    rendered_html: str = ""


@dataclass(frozen=True)
class MarkdownAugment(Augment):
    kind: str = "markdown"
    html: str = ""
    markdown_type: str = "paragraph"


# ── Stream events ──


class ControlKind(Enum):
    CONNECTED = "connected"
    HEARTBEAT = "heartbeat"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """Base wire-ready event."""

    @property
    def event_name(self) -> str:
        return "event"


@dataclass(frozen=True)
class PendingEvent(StreamEvent):
    block_id: str = ""
    delta_text: str = ""
    message_id: str | None = None

    @property
    def event_name(self) -> str:
        return "pending"


@dataclass(frozen=True)
class AugmentedEvent(StreamEvent):
    block_id: str = ""
    block: CompletedBlock | None = None
    augment: Augment | None = None

    @property
    def event_name(self) -> str:
        return "augmented"


@dataclass(frozen=True)
class ControlEvent(StreamEvent):
    kind: ControlKind = ControlKind.HEARTBEAT
    detail: str | None = None

    @property
    def event_name(self) -> str:
        return self.kind.value


def _plain(value: Any) -> Any:
    """Convert dataclasses/enums/tuples into JSON-ready values."""
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "__dataclass_fields__"):
        d: dict[str, Any] = {}
        for name in value.__dataclass_fields__:
            val = getattr(value, name)
            if val is not None:
                d[name] = _plain(val)
        return d
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """Convert a stream event to ``{"event": name, "data": payload}``."""
    return {"event": event.event_name, "data": _plain(event)}


def augment_to_dict(augment: Augment | None) -> dict[str, Any] | None:
    if augment is None:
        return None
    return _plain(augment)


def block_to_dict(block: CompletedBlock) -> dict[str, Any]:
    return _plain(block)
