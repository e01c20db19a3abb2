"""Tests for the streaming markdown splitter and block rendering."""
from __future__ import annotations

from agentstream.augments import markdown
from agentstream.augments.markdown import (
    MarkdownBlock,
    MarkdownBlockSplitter,
    could_be_block_start,
    fence_body,
    is_closing_fence,
    render_inline,
    render_markdown_block,
    render_markdown_to_html,
)


def _split(*chunks: str) -> tuple[list[MarkdownBlock], MarkdownBlockSplitter]:
    splitter = MarkdownBlockSplitter()
    blocks: list[MarkdownBlock] = []
    for chunk in chunks:
        blocks.extend(splitter.feed(chunk))
    return blocks, splitter


def test_heading_then_paragraph():
    blocks, splitter = _split("# Title\n\nSome text here.\n\n")
    assert [(b.type, b.content) for b in blocks] == [
        ("heading", "# Title"),
        ("paragraph", "Some text here."),
    ]
    assert splitter.pending == ""


def test_paragraph_waits_for_blank_line():
    blocks, splitter = _split("Hello wor", "ld.\n")
    assert blocks == []
    assert splitter.pending == "Hello world.\n"
    assert splitter.state == "paragraph"

    blocks = splitter.feed("\n")
    assert [b.content for b in blocks] == ["Hello world."]


def test_paragraph_ends_at_next_block_start():
    blocks, _ = _split("para line\n# Head\n")
    assert [(b.type, b.content) for b in blocks] == [
        ("paragraph", "para line"),
        ("heading", "# Head"),
    ]


def test_fenced_code_split_across_chunks():
    blocks, splitter = _split("```py", "thon\nx = 1\n", "```\n")
    assert len(blocks) == 1
    block = blocks[0]
    assert block.type == "code"
    assert block.lang == "python"
    assert block.content == "```python\nx = 1\n```"
    assert block.closed is True
    assert splitter.pending == ""


def test_fence_needs_matching_character_and_length():
    blocks, splitter = _split("````md\n```\ninner\n```\n")
    assert blocks == []
    assert splitter.streaming_code_block() is not None

    blocks = splitter.feed("````\n")
    assert len(blocks) == 1
    assert blocks[0].content.endswith("```\n````")


def test_unclosed_fence_flushes_as_open_block():
    splitter = MarkdownBlockSplitter()
    assert splitter.feed("```js\nlet a;\n") == []
    blocks = splitter.flush()
    assert len(blocks) == 1
    assert blocks[0].type == "code"
    assert blocks[0].lang == "js"
    assert blocks[0].closed is False
    assert blocks[0].content == "```js\nlet a;"


def test_list_ends_at_blank_line():
    blocks, splitter = _split("- a\n- b\n\nNext")
    assert [(b.type, b.content) for b in blocks] == [("list", "- a\n- b")]
    assert splitter.pending == "Next"


def test_numbered_list_streaming_state():
    _, splitter = _split("1. one\n2. two\n")
    streaming = splitter.streaming_list()
    assert streaming is not None
    assert streaming.list_type == "numbered"


def test_blockquote_and_horizontal_rule():
    blocks, _ = _split("> quoted\n> more\n\n---\n")
    assert [(b.type, b.content) for b in blocks] == [
        ("blockquote", "> quoted\n> more"),
        ("hr", "---"),
    ]


def test_whitespace_only_lines_are_skipped():
    blocks, _ = _split("   \n\t\nText\n\n")
    assert [b.content for b in blocks] == ["Text"]


def test_partial_markers_hold_back_a_paragraph():
    _, splitter = _split("#")
    assert splitter.state is None
    assert could_be_block_start("```py")
    assert could_be_block_start("-")
    assert not could_be_block_start("Hello")


def test_offsets_are_absolute():
    blocks, _ = _split("# A\n\nbody text\n\n")
    assert blocks[0].start_offset == 0
    assert blocks[1].start_offset == len("# A\n\n")


def test_flush_returns_trailing_paragraph():
    splitter = MarkdownBlockSplitter()
    splitter.feed("trailing words")
    blocks = splitter.flush()
    assert [(b.type, b.content) for b in blocks] == [("paragraph", "trailing words")]
    assert splitter.flush() == []


def test_is_closing_fence():
    assert is_closing_fence("```", "```")
    assert is_closing_fence("`````", "```")
    assert not is_closing_fence("~~~", "```")
    assert not is_closing_fence("``", "```")


def test_fence_body_strips_fences():
    assert fence_body("```py\na\nb\n```") == "a\nb"
    assert fence_body("```py\na\nb") == "a\nb"


def test_render_code_block_is_highlighted():
    html = render_markdown_block(MarkdownBlock(
        type="code", content="```python\nx = 1\n```", start_offset=0, end_offset=20, lang="python",
    ))
    assert html.startswith('<pre class="highlight"><code class="language-python">')
    assert '<span class="line">' in html


def test_render_paragraph_escapes_html():
    html = render_markdown_block(MarkdownBlock(
        type="paragraph", content="**bold** <script>", start_offset=0, end_offset=17,
    ))
    assert "<strong>bold</strong>" in html
    assert "<script>" not in html


def test_render_document():
    html = render_markdown_to_html("# Plan\n\n1. one\n2. two\n")
    assert "<h1>Plan</h1>" in html
    assert "<ol>" in html


def test_render_inline():
    html = render_inline("use `x < y` and **bold** [docs](https://example.com)")
    assert "<code>x &lt; y</code>" in html
    assert "<strong>bold</strong>" in html
    assert '<a href="https://example.com">docs</a>' in html
    assert render_inline("**unbalanced") == "**unbalanced"


def test_markdown_parser_is_shared_without_module_state():
    assert markdown._markdown_it() is markdown._markdown_it()
    assert markdown._markdown_it.cache_info().currsize == 1
    assert not hasattr(markdown, "_md")
