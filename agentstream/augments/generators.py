"""Augment generators for completed tool invocations and markdown blocks.

Every generator is a pure function ``(tool_call, tool_result, *, limits)``
returning an Augment. Generators never raise: any failure produces a
degraded augment holding plain escaped text, and a warning is logged.
"""
from __future__ import annotations

import difflib
import functools
import json
import logging
import re
from typing import Any, Callable

from .config import AugmentConfig, AugmentLimits
from .errors import GeneratorError
from .highlighting import (
    escape_html,
    highlight_file,
    highlight_lines,
    language_for_path,
    plain_code_html,
    resolve_language,
)
from .markdown import MarkdownBlock, render_markdown_block, render_markdown_to_html
from .models import (
    Augment,
    CompletedBlock,
    EditAugment,
    MarkdownAugment,
    PlanAugment,
    ReadAugment,
    ToolCall,
    ToolResult,
    WriteAugment,
)

logger = logging.getLogger(__name__)

Generator = Callable[[ToolCall, "ToolResult | None"], Augment]

CONTEXT_LINES = 3
PLAN_SUMMARY_MAX_CHARS = 200
MARKDOWN_EXTENSIONS = (".md", ".markdown", ".mdx")

_HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_LINE_NUMBER_RE = re.compile(r"^\s*\d+(?:\t|→)")
_NO_NEWLINE = "\\ No newline at end of file"


def _as_text(value: Any, field_name: str, tool_name: str) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise GeneratorError(tool_name, f"{field_name} is not valid UTF-8") from exc
    raise GeneratorError(tool_name, f"{field_name} must be a string, got {type(value).__name__}")


def _fallback_text(tool_call: ToolCall) -> str:
    try:
        return json.dumps(tool_call.input, ensure_ascii=False, indent=2, default=repr)
    except (TypeError, ValueError):
        return repr(tool_call.input)


def _guarded(kind: str) -> Callable[[Callable[..., Augment]], Callable[..., Augment]]:
    """Turn generator failures into a degraded augment of ``kind``."""

    def decorator(func: Callable[..., Augment]) -> Callable[..., Augment]:
        @functools.wraps(func)
        def wrapper(tool_call: ToolCall, tool_result: ToolResult | None = None, **kwargs: Any) -> Augment:
            try:
                return func(tool_call, tool_result, **kwargs)
            except (GeneratorError, TypeError, ValueError, KeyError, AttributeError) as exc:
                logger.warning(
                    "Degraded %s augment for %s (%s): %s",
                    kind, tool_call.name, tool_call.id, exc,
                )
                return degraded_augment(kind, tool_call)

        return wrapper

    return decorator


def degraded_augment(kind: str, tool_call: ToolCall) -> Augment:
    """Plain escaped rendering of the tool input."""
    html = plain_code_html(_fallback_text(tool_call))
    file_path = str(tool_call.input.get("file_path") or "") if isinstance(tool_call.input, dict) else ""
    if kind == "edit":
        return EditAugment(tool_use_id=tool_call.id, degraded=True, file_path=file_path, diff_html=html)
    if kind == "write":
        return WriteAugment(tool_use_id=tool_call.id, degraded=True, file_path=file_path, highlighted_html=html)
    if kind == "read":
        return ReadAugment(tool_use_id=tool_call.id, degraded=True, file_path=file_path, highlighted_html=html)
    return PlanAugment(tool_use_id=tool_call.id, degraded=True, rendered_html=html)


# ── Edit ──


def unified_diff_lines(before: str, after: str, file_path: str = "") -> list[str]:
    """Unified diff lines (no trailing newlines) with ``a/`` ``b/`` headers."""
    name = file_path.lstrip("/") or "file"
    diff: list[str] = []
    for line in difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"a/{name}",
        tofile=f"b/{name}",
        n=CONTEXT_LINES,
    ):
        if line.endswith("\n"):
            diff.append(line[:-1])
        else:
            diff.append(line)
            diff.append(_NO_NEWLINE)
    return diff


def parse_hunks(diff_lines: list[str]) -> list[dict[str, Any]]:
    """Structured hunks from unified diff lines."""
    hunks: list[dict[str, Any]] = []
    current: dict[str, Any] | None = None
    for line in diff_lines:
        match = _HUNK_HEADER_RE.match(line)
        if match:
            old_start, old_lines, new_start, new_lines = match.groups()
            current = {
                "old_start": int(old_start),
                "old_lines": int(old_lines) if old_lines is not None else 1,
                "new_start": int(new_start),
                "new_lines": int(new_lines) if new_lines is not None else 1,
                "lines": [],
            }
            hunks.append(current)
        elif current is not None and line != _NO_NEWLINE and line[:1] in (" ", "-", "+"):
            current["lines"].append(line)
    return hunks


def _hunk_header(hunk: dict[str, Any]) -> str:
    return (
        f"@@ -{hunk['old_start']},{hunk['old_lines']} "
        f"+{hunk['new_start']},{hunk['new_lines']} @@"
    )


def _diff_line_html(css: str, prefix: str, content: str) -> str:
    return (
        f'<span class="line {css}"><span class="diff-prefix">{escape_html(prefix)}</span>'
        f"{content}</span>"
    )


def render_diff_html(
    before: str,
    after: str,
    hunks: list[dict[str, Any]],
    language: str | None,
) -> str:
    """Diff HTML, highlighting each side with the file language when known."""
    old_lines = highlight_lines(before, language) if language and before else None
    new_lines = highlight_lines(after, language) if language and after else None
    if language and ((before and old_lines is None) or (after and new_lines is None)):
        language = None
    if not language:
        old_lines = [escape_html(line) for line in before.split("\n")]
        new_lines = [escape_html(line) for line in after.split("\n")]
    old_lines = old_lines or []
    new_lines = new_lines or []

    rows: list[str] = []
    for hunk in hunks:
        rows.append(f'<span class="line line-hunk">{_hunk_header(hunk)}</span>')
        # Zero-length sides start one line early in unified diff notation.
        old_idx = max(hunk["old_start"] - 1, 0)
        new_idx = max(hunk["new_start"] - 1, 0)
        for line in hunk["lines"]:
            prefix = line[:1]
            if prefix == " ":
                content = old_lines[old_idx] if old_idx < len(old_lines) else escape_html(line[1:])
                rows.append(_diff_line_html("line-context", prefix, content))
                old_idx += 1
                new_idx += 1
            elif prefix == "-":
                content = old_lines[old_idx] if old_idx < len(old_lines) else escape_html(line[1:])
                rows.append(_diff_line_html("line-deleted", prefix, content))
                old_idx += 1
            elif prefix == "+":
                content = new_lines[new_idx] if new_idx < len(new_lines) else escape_html(line[1:])
                rows.append(_diff_line_html("line-inserted", prefix, content))
                new_idx += 1

    lang_class = f' class="language-{language}"' if language else ""
    return f'<pre class="highlight diff"><code{lang_class}>' + "\n".join(rows) + "</code></pre>"


def edit_augment_from_contents(
    before: str,
    after: str,
    file_path: str = "",
    *,
    tool_use_id: str | None = None,
    highlight: bool = True,
) -> EditAugment:
    """Diff ``before`` against ``after`` and render it."""
    diff_lines = unified_diff_lines(before, after, file_path)
    hunks = parse_hunks(diff_lines)
    language = resolve_language(language_for_path(file_path)) if highlight else None
    return EditAugment(
        tool_use_id=tool_use_id,
        unified_diff="\n".join(diff_lines) + ("\n" if diff_lines else ""),
        language=language or "text",
        file_path=file_path,
        hunks=tuple(hunks),
        diff_html=render_diff_html(before, after, hunks, language),
    )


def _apply_edit(content: str, old: str, new: str, replace_all: bool) -> str | None:
    if not old or old not in content:
        return None
    return content.replace(old, new) if replace_all else content.replace(old, new, 1)


def _edit_contents(tool_call: ToolCall, tool_result: ToolResult | None) -> tuple[str, str]:
    params = tool_call.input
    name = tool_call.name or "Edit"
    structured = tool_result.structured if tool_result is not None else None
    original = structured.get("originalFile") if isinstance(structured, dict) else None
    if original is not None and not isinstance(original, str):
        original = None

    if "edits" in params:
        edits = params.get("edits")
        if not isinstance(edits, list) or not edits:
            raise GeneratorError(name, "edits must be a non-empty list")
        pairs = []
        for i, edit in enumerate(edits):
            if not isinstance(edit, dict):
                raise GeneratorError(name, f"edits[{i}] must be a mapping")
            pairs.append((
                _as_text(edit.get("old_string"), f"edits[{i}].old_string", name),
                _as_text(edit.get("new_string"), f"edits[{i}].new_string", name),
                bool(edit.get("replace_all")),
            ))
        if original is not None:
            after = original
            for old, new, replace_all in pairs:
                applied = _apply_edit(after, old, new, replace_all)
                if applied is None:
                    break
                after = applied
            else:
                return original, after
        return "\n".join(p[0] for p in pairs), "\n".join(p[1] for p in pairs)

    old = _as_text(params.get("old_string"), "old_string", name)
    new = _as_text(params.get("new_string"), "new_string", name)
    if original is not None:
        applied = _apply_edit(original, old, new, bool(params.get("replace_all")))
        if applied is not None:
            return original, applied
    return old, new


@_guarded("edit")
def compute_edit_augment(
    tool_call: ToolCall,
    tool_result: ToolResult | None = None,
    *,
    limits: AugmentLimits = AugmentLimits(),
) -> Augment:
    """Unified diff and diff HTML for Edit and MultiEdit calls."""
    before, after = _edit_contents(tool_call, tool_result)
    file_path = str(tool_call.input.get("file_path") or "")
    size = len(before.encode("utf-8")) + len(after.encode("utf-8"))
    highlight = size <= limits.edit_max_bytes
    if not highlight:
        logger.debug("Edit of %s is %d bytes; rendering diff without highlighting", file_path, size)
    return edit_augment_from_contents(
        before, after, file_path, tool_use_id=tool_call.id, highlight=highlight,
    )


# ── Write ──


def write_augment_from_content(
    content: str,
    file_path: str,
    max_bytes: int,
    *,
    tool_use_id: str | None = None,
) -> WriteAugment:
    result = highlight_file(content, file_path, max_bytes)
    return WriteAugment(
        tool_use_id=tool_use_id,
        highlighted_html=result.html,
        language=result.language,
        truncated=result.truncated,
        file_path=file_path,
    )


@_guarded("write")
def compute_write_augment(
    tool_call: ToolCall,
    tool_result: ToolResult | None = None,
    *,
    limits: AugmentLimits = AugmentLimits(),
) -> Augment:
    """Highlighted content of a Write call."""
    content = _as_text(tool_call.input.get("content"), "content", tool_call.name or "Write")
    file_path = str(tool_call.input.get("file_path") or "")
    return write_augment_from_content(
        content, file_path, limits.write_max_bytes, tool_use_id=tool_call.id,
    )


# ── Read ──


def strip_line_numbers(text: str) -> str:
    """Drop ``cat -n`` style prefixes ("   12\\t" or "   12→") from read output."""
    lines = text.split("\n")
    if not lines or not _LINE_NUMBER_RE.match(lines[0]):
        return text
    return "\n".join(_LINE_NUMBER_RE.sub("", line, count=1) for line in lines)


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict) and isinstance(block.get("text"), str):
                parts.append(block["text"])
            elif isinstance(block, str):
                parts.append(block)
        return "".join(parts)
    if content is None:
        return ""
    raise GeneratorError("Read", f"unsupported result content {type(content).__name__}")


def _read_content(tool_call: ToolCall, tool_result: ToolResult | None) -> tuple[str, str]:
    if tool_result is None:
        raise GeneratorError(tool_call.name or "Read", "no tool result")
    if tool_result.is_error:
        raise GeneratorError(tool_call.name or "Read", "tool reported an error")
    file_path = str(tool_call.input.get("file_path") or "")
    structured = tool_result.structured
    file_info = structured.get("file") if isinstance(structured, dict) else None
    if isinstance(file_info, dict) and "content" in file_info:
        content = _as_text(file_info.get("content"), "file.content", tool_call.name or "Read")
        return content, str(file_info.get("filePath") or file_path)
    return strip_line_numbers(_result_text(tool_result.content)), file_path


@_guarded("read")
def compute_read_augment(
    tool_call: ToolCall,
    tool_result: ToolResult | None = None,
    *,
    limits: AugmentLimits = AugmentLimits(),
) -> Augment:
    """Highlighted file content of a Read result; markdown files also render."""
    content, file_path = _read_content(tool_call, tool_result)
    result = highlight_file(content, file_path, limits.read_max_bytes)
    rendered = None
    if file_path.lower().endswith(MARKDOWN_EXTENSIONS):
        retained = content.encode("utf-8")[:limits.read_max_bytes].decode("utf-8", errors="ignore")
        rendered = render_markdown_to_html(retained)
    return ReadAugment(
        tool_use_id=tool_call.id,
        highlighted_html=result.html,
        language=result.language,
        truncated=result.truncated,
        file_path=file_path,
        rendered_markdown_html=rendered,
    )


# ── Plan ──


def summarize_plan(plan: str) -> str:
    """First heading, else first non-empty line, capped in length."""
    lines = [line.strip() for line in plan.splitlines() if line.strip()]
    if not lines:
        return ""
    summary = next((line for line in lines if line.startswith("#")), lines[0])
    summary = summary.lstrip("#").strip()
    return summary[:PLAN_SUMMARY_MAX_CHARS]


@_guarded("plan")
def compute_plan_augment(
    tool_call: ToolCall,
    tool_result: ToolResult | None = None,
    *,
    limits: AugmentLimits = AugmentLimits(),
) -> Augment:
    plan = tool_call.input.get("plan")
    if plan is None and tool_result is not None and isinstance(tool_result.structured, dict):
        plan = tool_result.structured.get("plan")
    plan = _as_text(plan, "plan", tool_call.name or "ExitPlanMode")
    return PlanAugment(
        tool_use_id=tool_call.id,
        summary=summarize_plan(plan),
        rendered_html=render_markdown_to_html(plan),
    )


# ── Markdown blocks ──


def compute_markdown_augment(block: CompletedBlock) -> MarkdownAugment:
    """Render a completed prose or fenced-code block."""
    markdown_type = block.markdown_type or "paragraph"
    html = render_markdown_block(MarkdownBlock(
        type=markdown_type,
        content=block.raw_content,
        start_offset=0,
        end_offset=len(block.raw_content),
        lang=block.lang,
        closed=not block.degraded,
    ))
    return MarkdownAugment(html=html, markdown_type=markdown_type, degraded=block.degraded)


GENERATORS_BY_KIND: dict[str, Callable[..., Augment]] = {
    "edit": compute_edit_augment,
    "write": compute_write_augment,
    "read": compute_read_augment,
    "plan": compute_plan_augment,
}


def build_generator_table(config: AugmentConfig | None = None) -> dict[str, Generator]:
    """Tool name -> generator bound to the configured limits."""
    config = config or AugmentConfig()
    limits = config.limits
    return {
        tool_name: functools.partial(GENERATORS_BY_KIND[kind], limits=limits)
        for tool_name, kind in config.tool_generators.items()
    }
