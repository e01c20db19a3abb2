"""Convert provider-specific messages into CanonicalMessage.

Four message shapes are understood:

  claude      SDK JSON messages (stream_event / assistant / user / result /
              system), also used by providers converted to that shape
  claude_sdk  claude_agent_sdk Python message objects, read by attribute
  codex       ``codex exec --json`` events (thread.*, turn.*, item.*, error)
  gemini      ``gemini --output-format stream-json`` events
              (init, message, tool_use, tool_result, result)

Anything not recognized passes through as a raw TextPart; nothing is
dropped silently. Known but uninteresting events (keep-alives, init
metadata, user prompts) normalize to None.
"""
from __future__ import annotations

import json
import logging
from dataclasses import replace
from typing import Any, Callable

from .models import (
    CanonicalMessage,
    ContentPart,
    ProviderFamily,
    Role,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)

logger = logging.getLogger(__name__)

_TOOL_NAME_ALIASES: dict[str, str] = {
    "read": "Read",
    "read_file": "Read",
    "file_read": "Read",
    "write": "Write",
    "write_file": "Write",
    "file_write": "Write",
    "edit": "Edit",
    "edit_file": "Edit",
    "file_edit": "Edit",
    "replace": "Edit",
    "multiedit": "MultiEdit",
    "multi_edit": "MultiEdit",
    "bash": "Bash",
    "run_bash": "Bash",
    "run_shell_command": "Bash",
    "glob": "Glob",
    "list_directory": "Glob",
    "grep": "Grep",
    "search_files": "Grep",
    "search_file_content": "Grep",
    "web_search": "WebSearch",
    "google_web_search": "WebSearch",
    "exitplanmode": "ExitPlanMode",
    "exit_plan_mode": "ExitPlanMode",
}

_CODEX_ITEM_TOOLS: dict[str, str] = {
    "command_execution": "Bash",
    "file_edit": "Edit",
    "file_write": "Write",
    "file_read": "Read",
    "web_search": "WebSearch",
}

_CODEX_EVENT_TYPES = frozenset({
    "thread.started", "turn.started", "turn.completed", "turn.failed",
    "item.started", "item.updated", "item.completed",
})

_GEMINI_EVENT_TYPES = frozenset({"init", "message", "tool_use", "tool_result"})
_GEMINI_KEYS = ("role", "tool_id", "tool_name", "session_id", "stats")

_IGNORED_CLAUDE_TYPES = frozenset({"keep_alive", "heartbeat", "ping"})


# ── Helpers ──


def coerce_text(value: Any) -> str:
    """Render arbitrary values into stable text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(value)


def normalize_tool_name(tool_name: str) -> str:
    """Normalize provider-specific tool aliases to canonical names."""
    if not tool_name:
        return ""
    bare_name = tool_name
    if bare_name.startswith("mcp__") and bare_name.count("__") >= 2:
        bare_name = bare_name.split("__", 2)[2]
    return _TOOL_NAME_ALIASES.get(bare_name.lower(), bare_name)


def extract_text_delta(message: dict[str, Any]) -> str | None:
    """Text of a ``content_block_delta``/``text_delta`` stream event, else None."""
    if message.get("type") != "stream_event":
        return None
    event = message.get("event") or {}
    if event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta") or {}
    if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
        return delta["text"]
    return None


def extract_message_id_from_start(message: dict[str, Any]) -> str | None:
    """API message id of a ``message_start`` stream event, else None."""
    if message.get("type") != "stream_event":
        return None
    event = message.get("event") or {}
    if event.get("type") != "message_start":
        return None
    inner = event.get("message") or {}
    msg_id = inner.get("id")
    return msg_id if isinstance(msg_id, str) else None


def is_streaming_complete(message: dict[str, Any]) -> bool:
    """True for Claude ``message_stop`` and for ``result`` messages."""
    if message.get("type") == "result":
        return True
    if message.get("type") != "stream_event":
        return False
    return (message.get("event") or {}).get("type") == "message_stop"


def detect_family(raw: Any) -> ProviderFamily:
    """Guess which provider produced ``raw`` from its shape."""
    if not isinstance(raw, (dict, str)):
        return ProviderFamily.CLAUDE_SDK
    if isinstance(raw, str):
        return ProviderFamily.CLAUDE
    etype = str(raw.get("type") or "")
    if etype in _CODEX_EVENT_TYPES:
        return ProviderFamily.CODEX
    if etype in _GEMINI_EVENT_TYPES and any(k in raw for k in _GEMINI_KEYS):
        return ProviderFamily.GEMINI
    if etype == "result" and "stats" in raw and "subtype" not in raw:
        return ProviderFamily.GEMINI
    return ProviderFamily.CLAUDE


def _raw_passthrough(raw: Any, session_id: str, provider: ProviderFamily) -> CanonicalMessage:
    return CanonicalMessage(
        id="",
        session_id=session_id,
        role=Role.SYSTEM,
        content_parts=(TextPart(delta=coerce_text(raw), raw=True),),
        provider=provider,
    )


def _tool_input(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str) and value:
        try:
            parsed = json.loads(value)
        except (json.JSONDecodeError, ValueError):
            return {"arguments": value}
        return parsed if isinstance(parsed, dict) else {"arguments": parsed}
    return {}


# ── Claude (SDK JSON shape) ──


def _claude_tool_results(content: Any, structured: Any) -> list[ContentPart]:
    results = [
        block for block in content
        if isinstance(block, dict) and block.get("type") == "tool_result"
    ]
    if not isinstance(structured, dict) or len(results) != 1:
        structured = None
    return [
        ToolResultPart(
            tool_use_id=str(block.get("tool_use_id") or ""),
            content=block.get("content", ""),
            is_error=bool(block.get("is_error")),
            structured=structured,
        )
        for block in results
    ]


def _normalize_claude(raw: Any, session_id: str) -> CanonicalMessage | None:
    family = ProviderFamily.CLAUDE
    if isinstance(raw, str):
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ASSISTANT,
            content_parts=(TextPart(delta=raw, raw=True),), provider=family,
        )
    if not isinstance(raw, dict):
        return _raw_passthrough(raw, session_id, family)

    etype = raw.get("type")
    parent = raw.get("parent_tool_use_id") or None
    common = dict(
        session_id=session_id, subagent=parent is not None,
        parent_tool_use_id=parent, provider=family,
    )

    if etype == "stream_event":
        event = raw.get("event") or {}
        event_type = event.get("type")
        if event_type == "message_start":
            return CanonicalMessage(
                id=extract_message_id_from_start(raw) or "", role=Role.ASSISTANT, **common,
            )
        if event_type == "message_stop":
            return CanonicalMessage(id="", role=Role.ASSISTANT, ends_message=True, **common)
        text = extract_text_delta(raw)
        if text is not None:
            return CanonicalMessage(
                id="", role=Role.ASSISTANT, content_parts=(TextPart(delta=text),), **common,
            )
        # content_block_start/stop, message_delta, input_json_delta, thinking
        return None

    if etype == "assistant":
        inner = raw.get("message") or {}
        content = inner.get("content", raw.get("content"))
        msg_id = str(inner.get("id") or raw.get("uuid") or "")
        if isinstance(content, str):
            # Non-delta providers converted to SDK shape send whole strings.
            parts: list[ContentPart] = [TextPart(delta=content)] if content else []
        elif isinstance(content, list):
            parts = []
            for block in content:
                if not isinstance(block, dict):
                    continue
                btype = block.get("type")
                if btype == "text" and isinstance(block.get("text"), str):
                    parts.append(TextPart(delta=block["text"], snapshot=True))
                elif btype == "tool_use":
                    parts.append(ToolUsePart(
                        id=str(block.get("id") or ""),
                        name=normalize_tool_name(str(block.get("name") or "")),
                        input=_tool_input(block.get("input")),
                    ))
        else:
            return _raw_passthrough(raw, session_id, family)
        return CanonicalMessage(
            id=msg_id, role=Role.ASSISTANT, content_parts=tuple(parts), **common,
        )

    if etype == "user":
        inner = raw.get("message") or {}
        content = inner.get("content", raw.get("content"))
        if not isinstance(content, list):
            return None
        structured = raw.get("tool_use_result", raw.get("toolUseResult"))
        parts = _claude_tool_results(content, structured)
        if not parts:
            return None
        return CanonicalMessage(
            id=str(raw.get("uuid") or ""), role=Role.USER,
            content_parts=tuple(parts), **common,
        )

    if etype == "result":
        is_error = bool(raw.get("is_error"))
        return CanonicalMessage(
            id=str(raw.get("uuid") or ""),
            role=Role.ERROR if is_error else Role.RESULT,
            is_final=True,
            error=coerce_text(raw.get("result") or raw.get("subtype")) if is_error else None,
            **common,
        )

    if etype == "error":
        error = raw.get("error")
        if isinstance(error, dict):
            error = error.get("message", error)
        return CanonicalMessage(
            id="", role=Role.ERROR, is_final=True,
            error=coerce_text(error or raw.get("message") or "unknown error"), **common,
        )

    if etype == "system":
        if raw.get("subtype") == "turn_complete":
            return CanonicalMessage(id="", role=Role.SYSTEM, is_final=True, **common)
        return None

    if etype in _IGNORED_CLAUDE_TYPES:
        return None
    return _raw_passthrough(raw, session_id, family)


# ── claude_agent_sdk objects ──


def _normalize_claude_sdk(raw: Any, session_id: str) -> CanonicalMessage | None:
    family = ProviderFamily.CLAUDE_SDK
    parent = getattr(raw, "parent_tool_use_id", None) or None
    common = dict(
        session_id=session_id, subagent=parent is not None,
        parent_tool_use_id=parent, provider=family,
    )

    event = getattr(raw, "event", None)
    if isinstance(event, dict):
        message = _normalize_claude(
            {"type": "stream_event", "event": event, "parent_tool_use_id": parent},
            session_id,
        )
        return None if message is None else _with_provider(message, family)

    # ResultMessage
    if hasattr(raw, "is_error") and hasattr(raw, "subtype") and hasattr(raw, "result"):
        is_error = bool(raw.is_error)
        return CanonicalMessage(
            id="", role=Role.ERROR if is_error else Role.RESULT, is_final=True,
            error=coerce_text(raw.result or raw.subtype) if is_error else None, **common,
        )

    # SystemMessage
    if hasattr(raw, "subtype") and hasattr(raw, "data"):
        if raw.subtype == "turn_complete":
            return CanonicalMessage(id="", role=Role.SYSTEM, is_final=True, **common)
        return None

    content = getattr(raw, "content", None)
    if content is None:
        return _raw_passthrough(raw, session_id, family)

    # AssistantMessage carries the model name; UserMessage does not.
    if hasattr(raw, "model"):
        if isinstance(content, str):
            parts: list[ContentPart] = [TextPart(delta=content)] if content else []
        else:
            parts = []
            for block in content:
                if hasattr(block, "text"):
                    parts.append(TextPart(delta=str(block.text), snapshot=True))
                elif hasattr(block, "name") and hasattr(block, "input"):
                    parts.append(ToolUsePart(
                        id=str(getattr(block, "id", "") or ""),
                        name=normalize_tool_name(str(block.name)),
                        input=_tool_input(block.input),
                    ))
        return CanonicalMessage(
            id=str(getattr(raw, "message_id", None) or getattr(raw, "uuid", None) or ""),
            role=Role.ASSISTANT, content_parts=tuple(parts), **common,
        )

    if isinstance(content, str):
        return None
    structured = getattr(raw, "tool_use_result", None)
    results = [block for block in content if hasattr(block, "tool_use_id")]
    if not isinstance(structured, dict) or len(results) != 1:
        structured = None
    if not results:
        return None
    return CanonicalMessage(
        id=str(getattr(raw, "uuid", None) or ""),
        role=Role.USER,
        content_parts=tuple(
            ToolResultPart(
                tool_use_id=str(block.tool_use_id),
                content=getattr(block, "content", "") or "",
                is_error=bool(getattr(block, "is_error", False)),
                structured=structured,
            )
            for block in results
        ),
        **common,
    )


def _with_provider(message: CanonicalMessage, family: ProviderFamily) -> CanonicalMessage:
    return replace(message, provider=family)


# ── Codex ──


def _codex_tool_name(item: dict[str, Any]) -> str:
    item_type = item.get("type", "")
    if item_type == "mcp_tool_call":
        return normalize_tool_name(str(item.get("tool_name") or item.get("name") or item.get("tool") or ""))
    return _CODEX_ITEM_TOOLS.get(item_type, "")


def _codex_tool_input(item: dict[str, Any]) -> dict[str, Any]:
    if item.get("type") == "mcp_tool_call":
        return _tool_input(item.get("arguments", item.get("input")))
    data = {k: v for k, v in item.items() if k not in ("id", "type", "status")}
    if "file_path" not in data and "path" in data:
        data["file_path"] = data["path"]
    return data


def _codex_tool_output(item: dict[str, Any]) -> Any:
    item_type = item.get("type", "")
    if item_type == "command_execution":
        return item.get("aggregated_output", item.get("output", ""))
    if item_type == "web_search":
        return item.get("results", "")
    return item.get("result", "")


def _normalize_codex(raw: Any, session_id: str) -> CanonicalMessage | None:
    family = ProviderFamily.CODEX
    if isinstance(raw, str):
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ASSISTANT,
            content_parts=(TextPart(delta=raw, raw=True),), provider=family,
        )
    if not isinstance(raw, dict):
        return _raw_passthrough(raw, session_id, family)

    etype = raw.get("type", "")
    item = raw.get("item") or {}
    item_id = str(item.get("id") or "")
    item_type = item.get("type", "")

    if etype in ("thread.started", "turn.started", "item.updated"):
        return None

    if etype == "item.started":
        name = _codex_tool_name(item)
        if not name:
            return None
        return CanonicalMessage(
            id=item_id, session_id=session_id, role=Role.ASSISTANT,
            content_parts=(ToolUsePart(id=item_id, name=name, input=_codex_tool_input(item)),),
            provider=family,
        )

    if etype == "item.completed":
        if item_type == "agent_message":
            text = item.get("text", "")
            if not text:
                return None
            return CanonicalMessage(
                id=item_id, session_id=session_id, role=Role.ASSISTANT,
                content_parts=(TextPart(delta=text if text.endswith("\n") else text + "\n"),),
                ends_message=True, provider=family,
            )
        name = _codex_tool_name(item)
        if not name:
            return None
        # item.completed repeats the item, so it also opens the tool call when
        # item.started was never emitted; a duplicate open is ignored downstream.
        return CanonicalMessage(
            id=item_id, session_id=session_id, role=Role.USER,
            content_parts=(
                ToolUsePart(id=item_id, name=name, input=_codex_tool_input(item)),
                ToolResultPart(
                    tool_use_id=item_id,
                    content=_codex_tool_output(item),
                    is_error=item.get("status") == "failed",
                ),
            ),
            provider=family,
        )

    if etype == "turn.completed":
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.RESULT, is_final=True, provider=family,
        )

    if etype in ("turn.failed", "error"):
        error = raw.get("error")
        if isinstance(error, dict):
            error = error.get("message", error)
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ERROR, is_final=True,
            error=coerce_text(error or raw.get("message") or "unknown error"),
            provider=family,
        )

    return _raw_passthrough(raw, session_id, family)


# ── Gemini ──


def _gemini_tool_input(params: Any) -> dict[str, Any]:
    data = _tool_input(params)
    if "file_path" not in data:
        for key in ("absolute_path", "path"):
            if key in data:
                data["file_path"] = data[key]
                break
    return data


# Startup notices the gemini CLI prints to stdout before its JSON stream.
_GEMINI_CHATTER = frozenset({"Loaded cached credentials."})


def _normalize_gemini(raw: Any, session_id: str) -> CanonicalMessage | None:
    family = ProviderFamily.GEMINI
    if isinstance(raw, str):
        if raw.strip() in _GEMINI_CHATTER:
            return None
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ASSISTANT,
            content_parts=(TextPart(delta=raw, raw=True),), provider=family,
        )
    if not isinstance(raw, dict):
        return _raw_passthrough(raw, session_id, family)

    etype = raw.get("type", "")

    if etype == "init":
        return None

    if etype == "message":
        if raw.get("role") != "assistant":
            return None
        text = raw.get("content", "")
        if not isinstance(text, str) or not text:
            return None
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ASSISTANT,
            content_parts=(TextPart(delta=text),), provider=family,
        )

    if etype == "tool_use":
        tool_id = str(raw.get("tool_id") or "")
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ASSISTANT,
            content_parts=(ToolUsePart(
                id=tool_id,
                name=normalize_tool_name(str(raw.get("tool_name") or "")),
                input=_gemini_tool_input(raw.get("parameters")),
            ),),
            provider=family,
        )

    if etype == "tool_result":
        output = raw.get("output", "")
        error = raw.get("error")
        if not output and isinstance(error, dict):
            output = error.get("message", "")
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.USER,
            content_parts=(ToolResultPart(
                tool_use_id=str(raw.get("tool_id") or ""),
                content=output,
                is_error=raw.get("status", "") != "success",
            ),),
            provider=family,
        )

    if etype == "result":
        failed = raw.get("status") == "error"
        error = raw.get("error")
        if isinstance(error, dict):
            error = error.get("message", error)
        return CanonicalMessage(
            id="", session_id=session_id,
            role=Role.ERROR if failed else Role.RESULT, is_final=True,
            error=coerce_text(error or "gemini reported an error") if failed else None,
            provider=family,
        )

    if etype == "error":
        return CanonicalMessage(
            id="", session_id=session_id, role=Role.ERROR, is_final=True,
            error=coerce_text(raw.get("message") or raw.get("error") or "unknown error"),
            provider=family,
        )

    return _raw_passthrough(raw, session_id, family)


_NORMALIZERS: dict[ProviderFamily, Callable[[Any, str], CanonicalMessage | None]] = {
    ProviderFamily.CLAUDE: _normalize_claude,
    ProviderFamily.CLAUDE_SDK: _normalize_claude_sdk,
    ProviderFamily.CODEX: _normalize_codex,
    ProviderFamily.GEMINI: _normalize_gemini,
}


def normalize(
    raw: Any,
    *,
    session_id: str = "",
    family: ProviderFamily | None = None,
) -> CanonicalMessage | None:
    """Normalize one provider message.

    Returns None for messages that carry nothing to render. Never raises:
    a message that cannot be read becomes a raw pass-through.
    """
    family = family or detect_family(raw)
    try:
        return _NORMALIZERS[family](raw, session_id)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        logger.debug(
            "session=%s normalize failed for %s message: %s",
            session_id, family.value, exc,
        )
        return _raw_passthrough(raw, session_id, family)
