"""Tests for per-session block detection."""
from __future__ import annotations

import random

import pytest

from agentstream.augments.block_detector import BlockDetector, PendingDelta
from agentstream.augments.markdown import MarkdownBlockSplitter
from agentstream.augments.models import (
    BlockKind,
    CanonicalMessage,
    CompletedBlock,
    Role,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)

DOCUMENT = (
    "# Heading\n\n"
    "Intro paragraph with **bold** text.\n\n"
    "```python\ndef f():\n    return 1\n```\n\n"
    "- one\n- two\n\n"
    "> quoted\n\n"
    "Closing paragraph without a trailing newline"
)


def _assistant(*parts, msg_id: str = "m1", **kwargs) -> CanonicalMessage:
    return CanonicalMessage(
        id=msg_id, session_id="s", role=Role.ASSISTANT, content_parts=tuple(parts), **kwargs,
    )


def _user(*parts) -> CanonicalMessage:
    return CanonicalMessage(id="", session_id="s", role=Role.USER, content_parts=tuple(parts))


def _final() -> CanonicalMessage:
    return CanonicalMessage(id="", session_id="s", role=Role.RESULT, is_final=True)


def _completed(outputs) -> list[CompletedBlock]:
    return [o for o in outputs if isinstance(o, CompletedBlock)]


def _random_chunks(text: str, rng: random.Random) -> list[str]:
    chunks = []
    i = 0
    while i < len(text):
        size = rng.randint(1, 12)
        chunks.append(text[i:i + size])
        i += size
    return chunks


def _expected_blocks(text: str) -> list[str]:
    splitter = MarkdownBlockSplitter()
    blocks = splitter.feed(text)
    blocks.extend(splitter.flush())
    return [b.content for b in blocks]


@pytest.mark.parametrize("seed", range(25))
def test_each_block_emitted_once_under_random_chunking(seed):
    rng = random.Random(seed)
    detector = BlockDetector("s")
    outputs = []
    for chunk in _random_chunks(DOCUMENT, rng):
        outputs.extend(detector.feed(_assistant(TextPart(delta=chunk))))
    outputs.extend(detector.feed(_final()))

    blocks = _completed(outputs)
    ids = [b.block_id for b in blocks]
    assert len(ids) == len(set(ids))
    assert [b.raw_content for b in blocks] == _expected_blocks(DOCUMENT)
    assert detector.open_block_ids == []
    assert all(not b.degraded for b in blocks)


def test_pending_deltas_share_the_completed_block_id():
    detector = BlockDetector("s")
    first = detector.feed(_assistant(TextPart(delta="Hello ")))
    assert first == [PendingDelta("m1:0", "Hello ", "m1")]

    second = detector.feed(_assistant(TextPart(delta="world.\n\nNext")))
    blocks = _completed(second)
    assert [b.block_id for b in blocks] == ["m1:0"]
    assert blocks[0].raw_content == "Hello world."
    pending = [o for o in second if isinstance(o, PendingDelta)]
    assert pending == [PendingDelta("m1:1", "Next", "m1")]


def test_whitespace_deltas_stay_in_the_open_block():
    detector = BlockDetector("s")
    outputs = []
    for delta in ["Hello", " ", "world", "\n", "again"]:
        outputs.extend(detector.feed(_assistant(TextPart(delta=delta))))
    pending = [o for o in outputs if isinstance(o, PendingDelta)]
    assert {p.block_id for p in pending} == {"m1:0"}
    assert "".join(p.text for p in pending) == "Hello world\nagain"


def test_whitespace_between_blocks_is_not_pending():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="Done.\n\n")))
    assert detector.feed(_assistant(TextPart(delta="  \n"))) == []
    assert detector.open_block_ids == []


def test_code_block_kind_and_language():
    detector = BlockDetector("s")
    outputs = detector.feed(_assistant(TextPart(delta="```rust\nfn main() {}\n```\n")))
    (block,) = _completed(outputs)
    assert block.kind is BlockKind.FENCED_CODE
    assert block.lang == "rust"
    assert block.markdown_type == "code"


def test_end_of_turn_forces_trailing_paragraph():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="no blank line yet")))
    blocks = _completed(detector.feed(_final()))
    assert [b.raw_content for b in blocks] == ["no blank line yet"]
    assert blocks[0].degraded is False


def test_unclosed_fence_is_degraded_on_finalize():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="```py\nx = 1\n")))
    (block,) = detector.finalize("stream ended")
    assert block.kind is BlockKind.FENCED_CODE
    assert block.degraded is True


def test_message_stop_closes_prose():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="first message")))
    stop = CanonicalMessage(id="", session_id="s", role=Role.ASSISTANT, ends_message=True)
    blocks = _completed(detector.feed(stop))
    assert [b.block_id for b in blocks] == ["m1:0"]


def test_new_message_id_closes_previous_prose():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="from m1"), msg_id="m1"))
    blocks = _completed(detector.feed(_assistant(TextPart(delta="from m2"), msg_id="m2")))
    assert [b.block_id for b in blocks] == ["m1:0"]
    assert detector.open_block_ids == ["m2:0"]


def test_snapshot_ignored_after_streamed_deltas():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="Hi there.\n\n")))
    assert detector.feed(_assistant(TextPart(delta="Hi there.", snapshot=True))) == []


def test_snapshot_without_deltas_is_one_block():
    detector = BlockDetector("s")
    outputs = detector.feed(_assistant(TextPart(delta="Whole text", snapshot=True), msg_id="m9"))
    assert [b.raw_content for b in _completed(outputs)] == ["Whole text"]


def test_raw_text_stands_alone():
    detector = BlockDetector("s")
    raw = CanonicalMessage(
        id="", session_id="s", role=Role.SYSTEM,
        content_parts=(TextPart(delta='{"type": "mystery"}', raw=True),),
    )
    blocks = _completed(detector.feed(raw))
    assert len(blocks) == 1
    assert blocks[0].raw_content == '{"type": "mystery"}'


def test_tool_call_completes_on_result():
    detector = BlockDetector("s")
    assert detector.feed(_assistant(ToolUsePart("t1", "Read", {"file_path": "a.py"}))) == []
    assert detector.open_block_ids == ["t1"]

    (block,) = detector.feed(_user(ToolResultPart("t1", "contents")))
    assert block.kind is BlockKind.TOOL_INVOCATION
    assert block.tool_call.name == "Read"
    assert block.tool_call.result.content == "contents"
    assert block.degraded is False


def test_tool_use_closes_open_prose_first():
    detector = BlockDetector("s")
    detector.feed(_assistant(TextPart(delta="Let me look")))
    outputs = detector.feed(_assistant(ToolUsePart("t1", "Read", {})))
    assert [b.raw_content for b in _completed(outputs)] == ["Let me look"]


def test_parallel_tools_complete_in_result_order():
    detector = BlockDetector("s")
    detector.feed(_assistant(ToolUsePart("t1", "Read", {}), ToolUsePart("t2", "Read", {})))
    outputs = detector.feed(_user(ToolResultPart("t2", "b"), ToolResultPart("t1", "a")))
    assert [b.block_id for b in outputs] == ["t2", "t1"]


def test_tool_without_result_is_degraded_at_end_of_turn():
    detector = BlockDetector("s")
    detector.feed(_assistant(ToolUsePart("t1", "Write", {"file_path": "a.py", "content": "x"})))
    (block,) = _completed(detector.feed(_final()))
    assert block.block_id == "t1"
    assert block.degraded is True
    assert block.tool_call.result is None


def test_unknown_tool_result_is_emitted_degraded(caplog):
    detector = BlockDetector("s")
    with caplog.at_level("WARNING"):
        (block,) = detector.feed(_user(ToolResultPart("ghost", "out")))
    assert block.degraded is True
    assert block.tool_call.name == ""
    assert "ghost" in caplog.text


def test_finalized_ids_are_never_emitted_again():
    detector = BlockDetector("s")
    detector.feed(_assistant(ToolUsePart("t1", "Read", {})))
    detector.feed(_user(ToolResultPart("t1", "a")))
    assert detector.feed(_user(ToolResultPart("t1", "again"))) == []
    assert detector.feed(_assistant(ToolUsePart("t1", "Read", {}))) == []
    assert detector.finalize() == []
    assert "t1" in detector.finalized_ids


def test_anonymous_messages_get_session_scoped_ids():
    detector = BlockDetector("sess")
    anonymous = CanonicalMessage(
        id="", session_id="sess", role=Role.ASSISTANT, content_parts=(TextPart(delta="text"),),
    )
    (pending,) = detector.feed(anonymous)
    assert pending.block_id == "sess-msg-1:0"
