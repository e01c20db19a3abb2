"""Tests for ordered delivery and concurrency limits in StreamCoordinator."""
from __future__ import annotations

import asyncio

import pytest

from agentstream.augments.config import AugmentConfig
from agentstream.augments.coordinator import StreamCoordinator
from agentstream.augments.models import (
    AugmentedEvent,
    CanonicalMessage,
    ControlEvent,
    ControlKind,
    MarkdownAugment,
    PendingEvent,
    PlanAugment,
    Role,
    TextPart,
    ToolResultPart,
    ToolUsePart,
)


def _assistant(*parts, msg_id: str = "m1") -> CanonicalMessage:
    return CanonicalMessage(id=msg_id, session_id="s", role=Role.ASSISTANT, content_parts=tuple(parts))


def _user(*parts) -> CanonicalMessage:
    return CanonicalMessage(id="", session_id="s", role=Role.USER, content_parts=tuple(parts))


async def _collect(coordinator: StreamCoordinator) -> list:
    return [event async for event in coordinator.outputs()]


class _RecordingRecorder:
    def __init__(self) -> None:
        self.entries = []

    def record(self, session_id, block, augment) -> None:
        self.entries.append((session_id, block.block_id, augment))


@pytest.mark.asyncio
async def test_slow_augment_is_not_overtaken():
    fast_done = asyncio.Event()
    finished: list[str] = []

    async def slow(tool_call, tool_result):
        await fast_done.wait()
        finished.append(tool_call.id)
        return PlanAugment(tool_use_id=tool_call.id, summary="slow")

    async def fast(tool_call, tool_result):
        finished.append(tool_call.id)
        fast_done.set()
        return PlanAugment(tool_use_id=tool_call.id, summary="fast")

    coordinator = StreamCoordinator(
        "s",
        config=AugmentConfig(render_markdown=False),
        generators={"Slow": slow, "Fast": fast},
    )
    await coordinator.submit(_assistant(ToolUsePart("a", "Slow", {}), ToolUsePart("b", "Fast", {})))
    await coordinator.submit(_user(ToolResultPart("a", "x"), ToolResultPart("b", "y")))
    coordinator.close()

    events = await asyncio.wait_for(_collect(coordinator), timeout=2.0)
    assert finished == ["b", "a"]
    assert [e.block_id for e in events] == ["a", "b"]
    assert [e.augment.summary for e in events] == ["slow", "fast"]


@pytest.mark.asyncio
async def test_pending_and_control_events_keep_arrival_order():
    coordinator = StreamCoordinator("s", config=AugmentConfig(render_markdown=False), generators={})
    await coordinator.submit(_assistant(TextPart(delta="Hello ")))
    await coordinator.submit(_assistant(TextPart(delta="world.\n\n")))
    await coordinator.submit_control(ControlKind.DONE)
    coordinator.close()

    events = await asyncio.wait_for(_collect(coordinator), timeout=2.0)
    assert isinstance(events[0], PendingEvent)
    assert isinstance(events[1], AugmentedEvent)
    assert events[1].augment is None
    assert events[2] == ControlEvent(kind=ControlKind.DONE)


@pytest.mark.asyncio
async def test_prose_blocks_get_markdown_augments():
    recorder = _RecordingRecorder()
    coordinator = StreamCoordinator("s", generators={}, recorder=recorder)
    await coordinator.submit(_assistant(TextPart(delta="# Title\n")))
    coordinator.close()

    (event,) = await asyncio.wait_for(_collect(coordinator), timeout=5.0)
    assert isinstance(event.augment, MarkdownAugment)
    assert "<h1>Title</h1>" in event.augment.html
    assert recorder.entries == [("s", "m1:0", event.augment)]


@pytest.mark.asyncio
async def test_in_flight_limit_applies_backpressure():
    gate = asyncio.Event()

    async def gated(tool_call, tool_result):
        await gate.wait()
        return PlanAugment(tool_use_id=tool_call.id)

    coordinator = StreamCoordinator(
        "s",
        config=AugmentConfig(max_in_flight=1, render_markdown=False),
        generators={"Gate": gated},
    )
    await coordinator.submit(_assistant(ToolUsePart("t1", "Gate", {}), ToolUsePart("t2", "Gate", {})))
    submit = asyncio.create_task(
        coordinator.submit(_user(ToolResultPart("t1", ""), ToolResultPart("t2", "")))
    )
    await asyncio.sleep(0.05)
    assert not submit.done()
    assert coordinator.in_flight == 1

    gate.set()
    consumer = asyncio.create_task(_collect(coordinator))
    await asyncio.wait_for(submit, timeout=2.0)
    coordinator.close()
    events = await asyncio.wait_for(consumer, timeout=2.0)
    assert [e.block_id for e in events] == ["t1", "t2"]


@pytest.mark.asyncio
async def test_generator_failure_yields_block_without_augment(caplog):
    def broken(tool_call, tool_result):
        raise RuntimeError("boom")

    coordinator = StreamCoordinator(
        "s", config=AugmentConfig(render_markdown=False), generators={"Broken": broken},
    )
    await coordinator.submit(_assistant(ToolUsePart("t1", "Broken", {})))
    await coordinator.submit(_user(ToolResultPart("t1", "")))
    coordinator.close()

    with caplog.at_level("WARNING"):
        (event,) = await asyncio.wait_for(_collect(coordinator), timeout=2.0)
    assert event.block_id == "t1"
    assert event.augment is None
    assert "augment generator failed" in caplog.text


@pytest.mark.asyncio
async def test_degraded_block_marks_augment_degraded():
    def plan(tool_call, tool_result):
        return PlanAugment(tool_use_id=tool_call.id, summary="ok")

    coordinator = StreamCoordinator(
        "s", config=AugmentConfig(render_markdown=False), generators={"Plan": plan},
    )
    await coordinator.submit(_assistant(ToolUsePart("t1", "Plan", {})))
    await coordinator.finish("stream ended")
    coordinator.close()

    (event,) = await asyncio.wait_for(_collect(coordinator), timeout=2.0)
    assert event.block.degraded is True
    assert event.augment.degraded is True
    assert event.augment.summary == "ok"


@pytest.mark.asyncio
async def test_cancel_stops_in_flight_augments():
    started = asyncio.Event()

    async def never(tool_call, tool_result):
        started.set()
        await asyncio.Event().wait()

    coordinator = StreamCoordinator(
        "s", config=AugmentConfig(render_markdown=False), generators={"Never": never},
    )
    await coordinator.submit(_assistant(ToolUsePart("t1", "Never", {})))
    await coordinator.submit(_user(ToolResultPart("t1", "")))
    consumer = asyncio.create_task(_collect(coordinator))
    await asyncio.wait_for(started.wait(), timeout=2.0)

    coordinator.cancel()
    events = await asyncio.wait_for(consumer, timeout=2.0)
    assert events == []
    assert coordinator.cancelled is True
    assert coordinator.in_flight == 0

    # Input after cancellation is ignored.
    await coordinator.submit(_assistant(TextPart(delta="late")))
    await coordinator.submit_control(ControlKind.DONE)
