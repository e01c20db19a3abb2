"""Streaming markdown block splitting and server-side rendering.

``MarkdownBlockSplitter`` is fed text chunks as they stream in and hands
back each markdown block (paragraph, heading, fenced code, list,
blockquote, horizontal rule) as soon as it can no longer change. The
rendering helpers turn completed blocks into HTML with markdown-it-py,
highlighting fenced code through Pygments.
"""
from __future__ import annotations

import functools
import re
from dataclasses import dataclass

from markdown_it import MarkdownIt

from .highlighting import escape_html, highlight_code

_FENCE_OPEN_RE = re.compile(r"^(`{3,}|~{3,})(\w*)$")
_FENCE_PREFIX_RE = re.compile(r"^(`{3,}|~{3,})(\w*)")
_HEADING_RE = re.compile(r"^#{1,6}\s")
_HR_RE = re.compile(r"^(---+|\*\*\*+|___+)$")
_BULLET_RE = re.compile(r"^[-*]\s")
_NUMBERED_RE = re.compile(r"^\d+\.\s")
_INDENTED_RE = re.compile(r"^\s+\S")

# Partial lines that may still grow into a block marker.
_PARTIAL_MARKER_RES = (
    re.compile(r"^#{1,6}$"),
    re.compile(r"^[`~]+$"),
    re.compile(r"^(`{3,}|~{3,})\w*$"),
    re.compile(r"^\d+\.?$"),
    re.compile(r"^[-*_]+$"),
)


@dataclass(frozen=True)
class MarkdownBlock:
    """One completed markdown block with absolute offsets into the stream."""
    type: str  # paragraph | heading | code | list | blockquote | hr
    content: str
    start_offset: int
    end_offset: int
    lang: str | None = None
    # False for a fenced block flushed without its closing fence.
    closed: bool = True


@dataclass(frozen=True)
class StreamingCodeBlock:
    content: str
    start_offset: int
    lang: str | None = None


@dataclass(frozen=True)
class StreamingList:
    content: str
    list_type: str  # bullet | numbered
    start_offset: int


def is_horizontal_rule(line: str) -> bool:
    return bool(_HR_RE.match(line.strip()))


def is_block_start(line: str) -> bool:
    """True when ``line`` opens a block other than a paragraph."""
    if not line:
        return False
    return bool(
        _FENCE_OPEN_RE.match(line)
        or _HEADING_RE.match(line)
        or is_horizontal_rule(line)
        or line.startswith("> ")
        or line == ">"
        or _BULLET_RE.match(line)
        or _NUMBERED_RE.match(line)
    )


def could_be_block_start(line: str) -> bool:
    """True when a partial line might become a block marker with more input."""
    if line in ("-", "*", ">"):
        return True
    return any(pattern.match(line) for pattern in _PARTIAL_MARKER_RES)


def is_closing_fence(line: str, opening_fence: str) -> bool:
    """A closing fence uses the opening character and is at least as long."""
    trimmed = line.strip()
    fence_char = opening_fence[:1]
    if fence_char not in ("`", "~") or len(trimmed) < len(opening_fence):
        return False
    return trimmed == fence_char * len(trimmed)


def block_type_for_line(line: str) -> str:
    if _HEADING_RE.match(line):
        return "heading"
    if _FENCE_PREFIX_RE.match(line):
        return "code"
    if _BULLET_RE.match(line) or _NUMBERED_RE.match(line):
        return "list"
    if line.startswith("> ") or line == ">":
        return "blockquote"
    if is_horizontal_rule(line):
        return "hr"
    return "paragraph"


class MarkdownBlockSplitter:
    """Incremental markdown parser that detects complete blocks.

    Feed chunks with :meth:`feed`; each call returns the blocks the chunk
    completed. :meth:`flush` ends the stream and returns whatever is left
    as a final block. Offsets are absolute positions in the concatenated
    input.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._offset = 0
        self._state: str | None = None
        self._start = 0
        self._lang = ""
        self._fence = ""
        self._list_type = "bullet"

    @property
    def pending(self) -> str:
        """Text received but not yet part of a completed block."""
        return self._buffer

    @property
    def offset(self) -> int:
        """Absolute position of the first unconsumed character."""
        return self._offset

    @property
    def state(self) -> str | None:
        return self._state

    def feed(self, chunk: str) -> list[MarkdownBlock]:
        self._buffer += chunk
        blocks: list[MarkdownBlock] = []
        while True:
            block = self._try_extract()
            if block is None:
                break
            blocks.append(block)
        return blocks

    def flush(self) -> list[MarkdownBlock]:
        """End of stream: emit the remaining buffer as one block."""
        content = self._buffer.strip()
        if not content:
            self._reset_buffer()
            return []

        end = self._offset + len(self._buffer)
        if self._state == "code":
            block = MarkdownBlock(
                type="code",
                content=self._buffer.rstrip(),
                start_offset=self._start,
                end_offset=end,
                lang=self._lang or None,
                closed=False,
            )
        elif self._state is not None:
            block = MarkdownBlock(
                type=self._state, content=content,
                start_offset=self._start, end_offset=end,
            )
        else:
            first_line = self._buffer.lstrip().split("\n", 1)[0]
            block_type = block_type_for_line(first_line)
            lang = None
            if block_type == "code":
                match = _FENCE_PREFIX_RE.match(first_line)
                lang = (match.group(2) if match else "") or None
            block = MarkdownBlock(
                type=block_type,
                content=content,
                start_offset=self._offset,
                end_offset=end,
                lang=lang,
                closed=block_type != "code",
            )
        self._reset_buffer()
        return [block]

    def streaming_code_block(self) -> StreamingCodeBlock | None:
        """The fenced block still waiting for its closing fence, if any."""
        if self._state != "code":
            return None
        return StreamingCodeBlock(
            content=self._buffer, start_offset=self._start, lang=self._lang or None,
        )

    def streaming_list(self) -> StreamingList | None:
        if self._state != "list":
            return None
        return StreamingList(
            content=self._buffer, list_type=self._list_type, start_offset=self._start,
        )

    # ── internals ──

    def _reset_buffer(self) -> None:
        self._offset += len(self._buffer)
        self._buffer = ""
        self._state = None

    def _consume(self, count: int) -> None:
        self._buffer = self._buffer[count:]
        self._offset += count

    def _enter(self, state: str) -> None:
        self._state = state
        self._start = self._offset

    def _line_start(self, line_number: int) -> int:
        """Index in the buffer where line ``line_number`` starts."""
        idx = 0
        for _ in range(line_number):
            nl = self._buffer.find("\n", idx)
            if nl == -1:
                return len(self._buffer)
            idx = nl + 1
        return idx

    def _complete_lines(self) -> list[tuple[int, str]]:
        """Lines after the first, paired with their index, that are complete."""
        lines = self._buffer.split("\n")
        ends_with_newline = self._buffer.endswith("\n")
        last = len(lines) - 1
        return [
            (i, line) for i, line in enumerate(lines)
            if i >= 1 and (i < last or ends_with_newline)
        ]

    def _emit(self, block_type: str, content: str, end_offset: int, consume: int) -> MarkdownBlock:
        block = MarkdownBlock(
            type=block_type, content=content,
            start_offset=self._start, end_offset=end_offset,
        )
        self._consume(consume)
        self._state = None
        return block

    def _try_extract(self) -> MarkdownBlock | None:
        if self._state is None:
            # Drop leading blank lines, including whitespace-only ones.
            while True:
                nl = self._buffer.find("\n")
                if nl == -1 or self._buffer[:nl].strip():
                    break
                self._consume(nl + 1)
            if not self._buffer:
                return None
            return self._try_start()
        if self._state == "code":
            return self._try_complete_code()
        if self._state == "paragraph":
            return self._try_complete_paragraph()
        if self._state == "heading":
            return self._try_complete_heading()
        if self._state == "list":
            return self._try_complete_list()
        if self._state == "blockquote":
            return self._try_complete_blockquote()
        return None

    def _try_start(self) -> MarkdownBlock | None:
        nl = self._buffer.find("\n")
        has_line = nl != -1
        first_line = self._buffer[:nl] if has_line else self._buffer

        if is_horizontal_rule(first_line):
            if not has_line:
                return None
            self._start = self._offset
            return self._emit("hr", first_line, self._offset + nl, nl + 1)

        if has_line:
            match = _FENCE_OPEN_RE.match(first_line)
            if match:
                self._enter("code")
                self._fence = match.group(1)
                self._lang = match.group(2)
                return self._try_complete_code()

        if _HEADING_RE.match(first_line):
            self._enter("heading")
            return self._try_complete_heading()

        if first_line.startswith("> ") or first_line == ">":
            self._enter("blockquote")
            return self._try_complete_blockquote()

        if _BULLET_RE.match(first_line):
            self._enter("list")
            self._list_type = "bullet"
            return self._try_complete_list()

        if _NUMBERED_RE.match(first_line):
            self._enter("list")
            self._list_type = "numbered"
            return self._try_complete_list()

        if first_line.strip() and (has_line or not could_be_block_start(first_line)):
            self._enter("paragraph")
            return self._try_complete_paragraph()
        return None

    def _try_complete_heading(self) -> MarkdownBlock | None:
        nl = self._buffer.find("\n")
        if nl == -1:
            return None
        return self._emit("heading", self._buffer[:nl], self._offset + nl, nl + 1)

    def _try_complete_paragraph(self) -> MarkdownBlock | None:
        # A different block starting before the first blank line ends the paragraph.
        for i, line in self._complete_lines():
            if line == "":
                break
            if is_block_start(line):
                end = self._line_start(i)
                content = self._buffer[:end].strip()
                if content:
                    return self._emit("paragraph", content, self._offset + end - 1, end)

        blank = self._buffer.find("\n\n")
        if blank == -1:
            return None
        content = self._buffer[:blank].strip()
        if content:
            return self._emit("paragraph", content, self._offset + blank, blank + 2)
        self._consume(blank + 2)
        self._state = None
        return None

    def _try_complete_list(self) -> MarkdownBlock | None:
        blank = self._buffer.find("\n\n")
        if blank != -1:
            content = self._buffer[:blank].strip()
            if content:
                return self._emit("list", content, self._offset + blank, blank + 2)
            self._consume(blank + 2)
            self._state = None
            return None

        marker = _BULLET_RE if self._list_type == "bullet" else _NUMBERED_RE
        for i, line in self._complete_lines():
            continues = line == "" or marker.match(line) or _INDENTED_RE.match(line)
            if not continues and is_block_start(line):
                end = self._line_start(i)
                content = self._buffer[:end].strip()
                if content:
                    return self._emit("list", content, self._offset + end - 1, end)
        return None

    def _try_complete_blockquote(self) -> MarkdownBlock | None:
        for i, line in self._complete_lines():
            if line.startswith(">") or line == "":
                continue
            end = self._line_start(i)
            raw = self._buffer[:end]
            if raw.strip():
                return self._emit(
                    "blockquote", raw.strip(),
                    self._offset + len(raw.rstrip()) - 1, end,
                )

        blank = self._buffer.find("\n\n")
        if blank == -1:
            return None
        raw = self._buffer[:blank]
        if raw.strip():
            return self._emit(
                "blockquote", raw.strip(),
                self._offset + len(raw.rstrip()) - 1, blank + 2,
            )
        self._consume(blank + 2)
        self._state = None
        return None

    def _try_complete_code(self) -> MarkdownBlock | None:
        for i, line in self._complete_lines():
            if not is_closing_fence(line, self._fence):
                continue
            end = self._line_start(i) + len(line)
            newline_after = 1 if self._buffer[end:end + 1] == "\n" else 0
            block = MarkdownBlock(
                type="code",
                content=self._buffer[:end],
                start_offset=self._start,
                end_offset=self._offset + end,
                lang=self._lang or None,
            )
            self._consume(end + newline_after)
            self._state = None
            return block
        return None


# ── Rendering ──

_INLINE_RULES = (
    (re.compile(r"`([^`\n]+)`"), r"<code>\1</code>"),
    (re.compile(r"\*\*([^*\n]+)\*\*"), r"<strong>\1</strong>"),
    (re.compile(r"__([^_\n]+)__"), r"<strong>\1</strong>"),
    (re.compile(r"(?<![*\w])\*([^*\n]+)\*(?![*\w])"), r"<em>\1</em>"),
    (re.compile(r"(?<![_\w])_([^_\n]+)_(?![_\w])"), r"<em>\1</em>"),
    (re.compile(r"\[([^\]\n]+)\]\((https?://[^)\s]+)\)"), r'<a href="\2">\1</a>'),
)

@functools.lru_cache(maxsize=1)
def _markdown_it() -> MarkdownIt:
    return MarkdownIt(
        "commonmark", {"html": False, "highlight": _highlight_fence}
    ).enable("table")


def _highlight_fence(code: str, lang: str, _attrs: str) -> str:
    # markdown-it keeps its own <pre><code> wrapper unless the result starts with <pre
    return highlight_code(code, lang or None).html


def fence_body(content: str) -> str:
    """Strip the opening and (if present) closing fence lines of a code block."""
    lines = content.split("\n")
    if not lines:
        return ""
    match = _FENCE_PREFIX_RE.match(lines[0])
    if match is None:
        return content
    body = lines[1:]
    if body and is_closing_fence(body[-1], match.group(1)):
        body = body[:-1]
    return "\n".join(body)


def render_markdown_block(block: MarkdownBlock) -> str:
    """Render one completed block to HTML."""
    if block.type == "code":
        return highlight_code(fence_body(block.content), block.lang).html
    return _markdown_it().render(block.content).strip()


def render_markdown_to_html(text: str) -> str:
    """Render a whole markdown document block by block."""
    splitter = MarkdownBlockSplitter()
    blocks = splitter.feed(text)
    blocks.extend(splitter.flush())
    return "\n".join(render_markdown_block(block) for block in blocks)


def render_inline(text: str) -> str:
    """Lightweight inline formatting for text that is still streaming.

    Escapes HTML first, then applies inline code, bold, italic and links.
    Unbalanced markers are left as typed.
    """
    html = escape_html(text)
    for pattern, replacement in _INLINE_RULES:
        html = pattern.sub(replacement, html)
    return html
