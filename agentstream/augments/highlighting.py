"""Syntax highlighting helpers backed by Pygments.

Highlighting output is an HTML fragment with CSS classes (no inline
styles) so the browser theme decides colors:

    <pre class="highlight"><code class="language-python">...</code></pre>

Every line is wrapped in ``<span class="line">`` so diff rendering can
address lines individually.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath

from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

logger = logging.getLogger(__name__)

_EXTENSION_LANGUAGES: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "jsx",
    ".ts": "typescript",
    ".mts": "typescript",
    ".tsx": "tsx",
    ".json": "json",
    ".jsonl": "json",
    ".css": "css",
    ".scss": "scss",
    ".html": "html",
    ".htm": "html",
    ".vue": "html",
    ".xml": "xml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".toml": "toml",
    ".ini": "ini",
    ".cfg": "ini",
    ".md": "markdown",
    ".markdown": "markdown",
    ".mdx": "markdown",
    ".sh": "bash",
    ".bash": "bash",
    ".zsh": "bash",
    ".sql": "sql",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".java": "java",
    ".kt": "kotlin",
    ".swift": "swift",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".php": "php",
    ".lua": "lua",
    ".diff": "diff",
    ".patch": "diff",
    ".dockerfile": "docker",
}

_FILENAME_LANGUAGES: dict[str, str] = {
    "dockerfile": "docker",
    "makefile": "make",
    "cmakelists.txt": "cmake",
    ".bashrc": "bash",
    ".zshrc": "bash",
}

# Fence info-string aliases that Pygments does not know by that name.
_LANGUAGE_ALIASES: dict[str, str] = {
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "sh": "bash",
    "shell": "bash",
    "zsh": "bash",
    "yml": "yaml",
    "md": "markdown",
    "rs": "rust",
}

PLAIN_LANGUAGE = "text"


@dataclass(frozen=True)
class HighlightResult:
    html: str
    language: str
    truncated: bool = False


def escape_html(text: str) -> str:
    """Escape HTML special characters."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#039;")
    )


def language_for_path(file_path: str) -> str | None:
    """Best-guess highlighting language from a file path, or None."""
    if not file_path:
        return None
    path = PurePosixPath(file_path.replace("\\", "/"))
    name = path.name.lower()
    if name in _FILENAME_LANGUAGES:
        return _FILENAME_LANGUAGES[name]
    return _EXTENSION_LANGUAGES.get(path.suffix.lower())


def resolve_language(language: str | None) -> str | None:
    """Map a language name or alias to a Pygments lexer alias, or None."""
    if not language:
        return None
    name = _LANGUAGE_ALIASES.get(language.lower(), language.lower())
    try:
        get_lexer_by_name(name)
    except ClassNotFound:
        return None
    return name


def truncate_utf8(text: str, max_bytes: int) -> tuple[str, bool]:
    """Cut ``text`` to at most ``max_bytes`` UTF-8 bytes.

    Never splits a character: a partial trailing sequence is dropped.
    Returns the retained prefix and whether anything was cut.
    """
    encoded = text.encode("utf-8")
    if len(encoded) <= max_bytes:
        return text, False
    return encoded[:max_bytes].decode("utf-8", errors="ignore"), True


def _wrap_lines(inner_html: str) -> str:
    lines = inner_html.split("\n")
    # Pygments always terminates the output with a newline.
    if lines and lines[-1] == "":
        lines.pop()
    return "\n".join(f'<span class="line">{line}</span>' for line in lines)


def plain_code_html(code: str, language: str | None = None) -> str:
    """Render code without highlighting."""
    lang_class = f' class="language-{escape_html(language)}"' if language else ""
    body = _wrap_lines(escape_html(code) + "\n") if code else ""
    return f'<pre class="highlight plain"><code{lang_class}>{body}</code></pre>'


def highlight_lines(code: str, language: str) -> list[str] | None:
    """Highlight ``code`` and return the inner HTML of each line.

    Returns None when the language is unknown.
    """
    lexer_name = resolve_language(language)
    if lexer_name is None:
        return None
    lexer = get_lexer_by_name(lexer_name, stripnl=False, ensurenl=True)
    formatter = HtmlFormatter(nowrap=True)
    inner = highlight(code, lexer, formatter)
    lines = inner.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def highlight_code(code: str, language: str | None) -> HighlightResult:
    """Highlight a code string; unknown languages fall back to plain HTML."""
    lexer_name = resolve_language(language)
    if lexer_name is None:
        return HighlightResult(html=plain_code_html(code, language), language=PLAIN_LANGUAGE)
    lines = highlight_lines(code, lexer_name) or []
    body = "\n".join(f'<span class="line">{line}</span>' for line in lines)
    html = f'<pre class="highlight"><code class="language-{lexer_name}">{body}</code></pre>'
    return HighlightResult(html=html, language=lexer_name)


def highlight_file(content: str, file_path: str, max_bytes: int) -> HighlightResult:
    """Highlight file content by extension, truncating past ``max_bytes``."""
    retained, truncated = truncate_utf8(content, max_bytes)
    result = highlight_code(retained, language_for_path(file_path))
    if truncated:
        logger.debug(
            "Truncated %s for highlighting: %d -> %d bytes",
            file_path, len(content.encode("utf-8")), max_bytes,
        )
    return HighlightResult(html=result.html, language=result.language, truncated=truncated)
