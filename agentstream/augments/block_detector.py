"""Per-session detection of completed blocks in a canonical message stream.

Prose is split into markdown blocks as it streams; tool invocations are
tracked by tool-use id until their result arrives. Each block id is
emitted at most once.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Union

from .errors import UnknownToolResultError
from .markdown import MarkdownBlock, MarkdownBlockSplitter
from .models import (
    BlockKind,
    CanonicalMessage,
    CompletedBlock,
    Role,
    TextPart,
    ToolCall,
    ToolResult,
    ToolResultPart,
    ToolUsePart,
)


class BlockState(Enum):
    EMPTY = "empty"
    ACCUMULATING = "accumulating"
    STABLE = "stable"
    FINALIZED = "finalized"


@dataclass
class OpenBlock:
    block_id: str
    kind: BlockKind
    message_id: str | None = None
    subagent: bool = False
    state: BlockState = BlockState.EMPTY
    tool_call: ToolCall | None = None


@dataclass(frozen=True)
class PendingDelta:
    """Text that landed in a block which is not complete yet."""
    block_id: str
    text: str
    message_id: str | None = None


DetectorOutput = Union[PendingDelta, CompletedBlock]


class BlockDetector:
    """Turns canonical messages into pending deltas and completed blocks."""

    def __init__(self, session_id: str = "", *, logger: logging.Logger | None = None):
        self.session_id = session_id
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._splitter = MarkdownBlockSplitter()
        self._prose: OpenBlock | None = None
        self._tools: dict[str, OpenBlock] = {}
        self._finalized: set[str] = set()
        self._message_id: str | None = None
        self._streamed_ids: set[str] = set()
        self._block_counts: dict[str, int] = {}
        self._anonymous_messages = 0
        self._anonymous_tools = 0

    @property
    def open_block_ids(self) -> list[str]:
        ids = [self._prose.block_id] if self._prose is not None else []
        return ids + list(self._tools)

    @property
    def finalized_ids(self) -> frozenset[str]:
        return frozenset(self._finalized)

    def feed(self, message: CanonicalMessage) -> list[DetectorOutput]:
        out: list[DetectorOutput] = []
        if message.role is Role.ASSISTANT and message.id and message.id != self._message_id:
            # A new assistant message closes prose left open by the previous one.
            if self._message_id is not None:
                out.extend(self._flush_prose())
            self._message_id = message.id

        for part in message.content_parts:
            if isinstance(part, TextPart):
                out.extend(self._feed_text_part(part, message.subagent))
            elif isinstance(part, ToolUsePart):
                out.extend(self._flush_prose())
                self._open_tool(part, message.subagent)
            elif isinstance(part, ToolResultPart):
                out.extend(self._close_tool(part, message.subagent))

        if message.ends_message:
            out.extend(self._flush_prose())
            self._message_id = None
        if message.is_final:
            out.extend(self.finalize("end of turn"))
        return out

    def finalize(self, reason: str = "end of stream") -> list[CompletedBlock]:
        """Force every open block stable and emit it.

        Unclosed fenced code and tool calls without a result come out
        degraded; a trailing paragraph is complete as-is.
        """
        blocks = self._flush_prose()
        for tool_id in list(self._tools):
            open_block = self._tools.pop(tool_id)
            blocks.append(self._complete(open_block, CompletedBlock(
                block_id=open_block.block_id,
                kind=BlockKind.TOOL_INVOCATION,
                tool_call=open_block.tool_call,
                degraded=True,
                message_id=open_block.message_id,
                subagent=open_block.subagent,
            )))
        if blocks:
            self._log.info(
                "session=%s finalized %d open block(s) (%s), %d degraded",
                self.session_id, len(blocks), reason,
                sum(1 for b in blocks if b.degraded),
            )
        self._message_id = None
        return blocks

    # ── prose ──

    def _current_message_id(self) -> str:
        if self._message_id is None:
            self._anonymous_messages += 1
            prefix = f"{self.session_id}-" if self.session_id else ""
            self._message_id = f"{prefix}msg-{self._anonymous_messages}"
        return self._message_id

    def _next_prose_id(self, message_id: str) -> str:
        n = self._block_counts.get(message_id, 0)
        self._block_counts[message_id] = n + 1
        return f"{message_id}:{n}"

    def _ensure_prose(self, subagent: bool) -> OpenBlock:
        if self._prose is None:
            message_id = self._current_message_id()
            self._prose = OpenBlock(
                block_id=self._next_prose_id(message_id),
                kind=BlockKind.PROSE,
                message_id=message_id,
                subagent=subagent,
            )
        return self._prose

    def _prose_block(self, markdown: MarkdownBlock, subagent: bool) -> CompletedBlock:
        open_block = self._ensure_prose(subagent)
        self._prose = None
        return self._complete(open_block, CompletedBlock(
            block_id=open_block.block_id,
            kind=BlockKind.FENCED_CODE if markdown.type == "code" else BlockKind.PROSE,
            raw_content=markdown.content,
            lang=markdown.lang,
            markdown_type=markdown.type,
            degraded=not markdown.closed,
            message_id=open_block.message_id,
            subagent=open_block.subagent,
        ))

    def _feed_text_part(self, part: TextPart, subagent: bool) -> list[DetectorOutput]:
        if part.raw:
            # Unrecognized provider output stands alone as one block.
            out: list[DetectorOutput] = list(self._flush_prose())
            out.extend(self._feed_text(part.delta, subagent))
            out.extend(self._flush_prose())
            return out
        message_id = self._current_message_id()
        if part.snapshot:
            if message_id in self._streamed_ids:
                self._log.debug(
                    "session=%s ignoring snapshot text for streamed message %s",
                    self.session_id, message_id,
                )
                return []
            # A snapshot is one whole content block.
            out = list(self._feed_text(part.delta, subagent))
            out.extend(self._flush_prose())
            return out
        self._streamed_ids.add(message_id)
        return self._feed_text(part.delta, subagent)

    def _feed_text(self, text: str, subagent: bool) -> list[DetectorOutput]:
        if not text:
            return []
        out: list[DetectorOutput] = [
            self._prose_block(markdown, subagent) for markdown in self._splitter.feed(text)
        ]
        pending = self._splitter.pending
        # After a block completes, everything still buffered belongs to the new block.
        tail = pending if out else text[max(0, len(text) - len(pending)):]
        # Whitespace inside an open block is content; between blocks it is not.
        if tail and (self._prose is not None or pending.strip()):
            open_block = self._ensure_prose(subagent)
            open_block.state = BlockState.ACCUMULATING
            out.append(PendingDelta(open_block.block_id, tail, open_block.message_id))
        return out

    def _flush_prose(self) -> list[CompletedBlock]:
        blocks = self._splitter.flush()
        subagent = self._prose.subagent if self._prose is not None else False
        completed = [self._prose_block(markdown, subagent) for markdown in blocks]
        self._prose = None
        return completed

    # ── tools ──

    def _open_tool(self, part: ToolUsePart, subagent: bool) -> None:
        tool_id = part.id
        if not tool_id:
            self._anonymous_tools += 1
            tool_id = f"tool-{self._anonymous_tools}"
        if tool_id in self._tools or tool_id in self._finalized:
            self._log.debug("session=%s ignoring duplicate tool use %s", self.session_id, tool_id)
            return
        self._tools[tool_id] = OpenBlock(
            block_id=tool_id,
            kind=BlockKind.TOOL_INVOCATION,
            message_id=self._message_id,
            subagent=subagent,
            state=BlockState.ACCUMULATING,
            tool_call=ToolCall(id=tool_id, name=part.name, input=dict(part.input)),
        )

    def _close_tool(self, part: ToolResultPart, subagent: bool) -> list[CompletedBlock]:
        result = ToolResult(
            content=part.content, is_error=part.is_error, structured=part.structured,
        )
        open_block = self._tools.pop(part.tool_use_id, None)
        if open_block is not None:
            tool_call = replace(open_block.tool_call, result=result)
            return [self._complete(open_block, CompletedBlock(
                block_id=open_block.block_id,
                kind=BlockKind.TOOL_INVOCATION,
                tool_call=tool_call,
                message_id=open_block.message_id,
                subagent=open_block.subagent,
            ))]

        if part.tool_use_id in self._finalized:
            self._log.debug(
                "session=%s ignoring late result for finalized tool use %s",
                self.session_id, part.tool_use_id,
            )
            return []

        self._log.warning("session=%s %s", self.session_id, UnknownToolResultError(part.tool_use_id))
        block_id = part.tool_use_id
        if not block_id:
            self._anonymous_tools += 1
            block_id = f"tool-{self._anonymous_tools}"
        orphan = OpenBlock(block_id=block_id, kind=BlockKind.TOOL_INVOCATION, subagent=subagent)
        return [self._complete(orphan, CompletedBlock(
            block_id=block_id,
            kind=BlockKind.TOOL_INVOCATION,
            tool_call=ToolCall(id=block_id, name="", input={}, result=result),
            degraded=True,
            subagent=subagent,
        ))]

    def _complete(self, open_block: OpenBlock, block: CompletedBlock) -> CompletedBlock:
        open_block.state = BlockState.STABLE
        self._finalized.add(block.block_id)
        open_block.state = BlockState.FINALIZED
        self._log.debug(
            "session=%s block %s complete kind=%s degraded=%s",
            self.session_id, block.block_id, block.kind.value, block.degraded,
        )
        return block
