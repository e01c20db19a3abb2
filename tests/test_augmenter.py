"""End-to-end tests for StreamAugmenter over fake provider sources."""
from __future__ import annotations

import asyncio

import pytest

from agentstream.augments.augmenter import StreamAugmenter
from agentstream.augments.config import AugmentConfig
from agentstream.augments.models import (
    AugmentedEvent,
    ControlEvent,
    ControlKind,
    MarkdownAugment,
    PendingEvent,
    WriteAugment,
)


def _delta(text: str) -> dict:
    return {
        "type": "stream_event",
        "event": {"type": "content_block_delta", "delta": {"type": "text_delta", "text": text}},
    }


def _start(msg_id: str) -> dict:
    return {"type": "stream_event", "event": {"type": "message_start", "message": {"id": msg_id}}}


_RESULT = {"type": "result", "subtype": "success", "is_error": False, "result": "ok"}


class _FakeSource:
    """Async iterable over scripted messages; ``pause`` entries sleep."""

    def __init__(self, *items, pause: float = 0.0, fail: Exception | None = None) -> None:
        self.items = items
        self.pause = pause
        self.fail = fail
        self.closed = False

    def __aiter__(self):
        return self._run()

    async def _run(self):
        try:
            for item in self.items:
                if item == "<pause>":
                    await asyncio.sleep(self.pause)
                    continue
                yield item
            if self.fail is not None:
                raise self.fail
        finally:
            self.closed = True


async def _collect(augmenter: StreamAugmenter, source, timeout: float = 5.0) -> list:
    async def run():
        return [event async for event in augmenter.stream(source)]

    return await asyncio.wait_for(run(), timeout=timeout)


def _controls(events) -> list[ControlKind]:
    return [e.kind for e in events if isinstance(e, ControlEvent)]


@pytest.mark.asyncio
async def test_pending_deltas_coalesce_within_window():
    source = _FakeSource(
        _start("msg_1"),
        _delta("Hel"), _delta("lo "), _delta("wor"), _delta("ld"), _delta("!"),
        "<pause>",
        _RESULT,
        pause=0.3,
    )
    augmenter = StreamAugmenter("s", config=AugmentConfig(coalesce_window_seconds=0.05))
    events = await _collect(augmenter, source)

    assert events[0] == ControlEvent(kind=ControlKind.CONNECTED)
    pending = [e for e in events if isinstance(e, PendingEvent)]
    assert pending == [PendingEvent(block_id="msg_1:0", delta_text="Hello world!", message_id="msg_1")]
    augmented = [e for e in events if isinstance(e, AugmentedEvent)]
    assert [e.block_id for e in augmented] == ["msg_1:0"]
    assert augmented[0].block.raw_content == "Hello world!"
    assert isinstance(augmented[0].augment, MarkdownAugment)
    assert _controls(events) == [ControlKind.CONNECTED, ControlKind.DONE]
    assert events[-1] == ControlEvent(kind=ControlKind.DONE)


@pytest.mark.asyncio
async def test_coalesced_pending_keeps_whitespace_deltas():
    source = _FakeSource(
        _start("msg_1"),
        _delta("Hello"), _delta(" "), _delta("world"), _delta("\n"), _delta("again"),
        "<pause>",
        _RESULT,
        pause=0.3,
    )
    augmenter = StreamAugmenter("s", config=AugmentConfig(coalesce_window_seconds=0.05))
    events = await _collect(augmenter, source)

    pending = [e for e in events if isinstance(e, PendingEvent)]
    assert "".join(e.delta_text for e in pending) == "Hello world\nagain"
    assert {e.block_id for e in pending} == {"msg_1:0"}


@pytest.mark.asyncio
async def test_zero_window_disables_coalescing():
    source = _FakeSource(_start("msg_1"), _delta("a"), _delta("b"), _delta("c"), _RESULT)
    augmenter = StreamAugmenter(
        "s", config=AugmentConfig(coalesce_window_seconds=0, render_markdown=False),
    )
    events = await _collect(augmenter, source)
    assert [e.delta_text for e in events if isinstance(e, PendingEvent)] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_no_pending_after_block_is_augmented():
    source = _FakeSource(_start("msg_1"), _delta("Done.\n\n"), _delta("Next"), _RESULT)
    augmenter = StreamAugmenter(
        "s", config=AugmentConfig(coalesce_window_seconds=0, render_markdown=False),
    )
    events = await _collect(augmenter, source)
    seen_augmented: set[str] = set()
    for event in events:
        if isinstance(event, AugmentedEvent):
            seen_augmented.add(event.block_id)
        elif isinstance(event, PendingEvent):
            assert event.block_id not in seen_augmented
    assert seen_augmented == {"msg_1:0", "msg_1:1"}


@pytest.mark.asyncio
async def test_tool_call_end_to_end():
    source = _FakeSource(
        {
            "type": "assistant",
            "message": {
                "id": "msg_1",
                "content": [
                    {"type": "text", "text": "Writing the file."},
                    {"type": "tool_use", "id": "tu_1", "name": "Write",
                     "input": {"file_path": "hello.py", "content": "print('hi')\n"}},
                ],
            },
        },
        {
            "type": "user",
            "message": {"content": [{"type": "tool_result", "tool_use_id": "tu_1", "content": "ok"}]},
        },
        _RESULT,
    )
    augmenter = StreamAugmenter("s")
    events = await _collect(augmenter, source)

    augmented = [e for e in events if isinstance(e, AugmentedEvent)]
    assert [e.block_id for e in augmented] == ["msg_1:0", "tu_1"]
    write = augmented[1].augment
    assert isinstance(write, WriteAugment)
    assert write.language == "python"
    assert write.degraded is False
    assert source.closed is True


@pytest.mark.asyncio
async def test_heartbeat_during_quiet_stream():
    source = _FakeSource(_start("msg_1"), "<pause>", _RESULT, pause=0.3)
    augmenter = StreamAugmenter("s", config=AugmentConfig(heartbeat_interval_seconds=0.05))
    events = await _collect(augmenter, source)
    assert ControlKind.HEARTBEAT in _controls(events)
    assert _controls(events)[-1] is ControlKind.DONE


@pytest.mark.asyncio
async def test_upstream_failure_emits_error_control():
    source = _FakeSource(
        _start("msg_1"), _delta("partial text"), fail=RuntimeError("connection dropped"),
    )
    augmenter = StreamAugmenter("s", config=AugmentConfig(coalesce_window_seconds=0))
    events = await _collect(augmenter, source)

    augmented = [e for e in events if isinstance(e, AugmentedEvent)]
    assert [e.block.raw_content for e in augmented] == ["partial text"]
    assert events[-1] == ControlEvent(kind=ControlKind.ERROR, detail="connection dropped")
    assert ControlKind.DONE not in _controls(events)


@pytest.mark.asyncio
async def test_error_result_emits_error_control():
    source = _FakeSource({"type": "result", "subtype": "error_during_execution", "is_error": True,
                          "result": "tool crashed"})
    augmenter = StreamAugmenter("s")
    events = await _collect(augmenter, source)
    assert events[-1] == ControlEvent(kind=ControlKind.ERROR, detail="tool crashed")


@pytest.mark.asyncio
async def test_exhausted_source_finalizes_open_blocks():
    source = _FakeSource(_start("msg_1"), _delta("```py\nx = 1\n"))
    augmenter = StreamAugmenter("s", config=AugmentConfig(coalesce_window_seconds=0))
    events = await _collect(augmenter, source)

    (block_event,) = [e for e in events if isinstance(e, AugmentedEvent)]
    assert block_event.block.degraded is True
    assert block_event.augment.degraded is True
    assert events[-1] == ControlEvent(kind=ControlKind.DONE)


@pytest.mark.asyncio
async def test_end_of_turn_forces_open_fence_degraded():
    source = _FakeSource(_start("msg_1"), _delta("```py\nx = 1\n"), _delta("y = 2\n"), _RESULT)
    augmenter = StreamAugmenter("s", config=AugmentConfig(coalesce_window_seconds=0))
    events = await _collect(augmenter, source)

    augmented_at = [i for i, e in enumerate(events) if isinstance(e, AugmentedEvent)]
    assert len(augmented_at) == 1
    block = events[augmented_at[0]].block
    assert block.degraded is True
    assert block.raw_content == "```py\nx = 1\ny = 2"
    assert not any(isinstance(e, PendingEvent) for e in events[augmented_at[0]:])


@pytest.mark.asyncio
async def test_cancel_token_stops_the_stream():
    source = _FakeSource(_start("msg_1"), _delta("streaming"), "<pause>", _RESULT, pause=30.0)
    augmenter = StreamAugmenter("s", config=AugmentConfig(coalesce_window_seconds=0))
    events = []

    async def run():
        async for event in augmenter.stream(source):
            events.append(event)
            if isinstance(event, PendingEvent):
                augmenter.cancel()

    await asyncio.wait_for(run(), timeout=2.0)
    assert isinstance(events[-1], PendingEvent)
    assert ControlKind.DONE not in _controls(events)
    assert augmenter.coordinator.cancelled is True
    assert source.closed is True


def test_process_catch_up():
    augmenter = StreamAugmenter("s", config=AugmentConfig(render_markdown=False))
    events = augmenter.process_catch_up("# Title\n\nhalf a sent", "msg_1")
    assert [type(e) for e in events] == [AugmentedEvent, PendingEvent]
    assert events[0].block_id == "msg_1:0"
    assert events[0].block.raw_content == "# Title"
    assert events[1] == PendingEvent(block_id="msg_1:1", delta_text="half a sent", message_id="msg_1")


def test_process_catch_up_continues_block_numbering():
    augmenter = StreamAugmenter("s")
    events = augmenter.process_catch_up("tail text", "msg_1", start_index=4)
    assert events == [PendingEvent(block_id="msg_1:4", delta_text="tail text", message_id="msg_1")]
