"""Ordered delivery of detector output with concurrent augment computation.

Every detector output enters one FIFO in arrival order. Completed blocks
that need an augment start their computation right away as a task; the
consumer of :meth:`StreamCoordinator.outputs` waits for each entry in
turn, so a slow augment holds back everything behind it and a fast one
never overtakes it.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, replace
from typing import Any, Callable

from .block_detector import BlockDetector, DetectorOutput, PendingDelta
from .config import AugmentConfig
from .generators import build_generator_table, compute_markdown_augment
from .models import (
    Augment,
    AugmentedEvent,
    BlockKind,
    CanonicalMessage,
    CompletedBlock,
    ControlEvent,
    ControlKind,
    PendingEvent,
    StreamEvent,
)


@dataclass
class _Entry:
    event: StreamEvent | None = None
    block: CompletedBlock | None = None
    task: asyncio.Task | None = None


def _is_async(func: Callable[..., Any]) -> bool:
    return inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
        getattr(func, "__call__", None)
    )


class StreamCoordinator:
    """Per-session FIFO between the block detector and the augmenter."""

    def __init__(
        self,
        session_id: str,
        *,
        config: AugmentConfig | None = None,
        generators: dict[str, Callable[..., Any]] | None = None,
        logger: logging.Logger | None = None,
        recorder: Any = None,
    ) -> None:
        self.session_id = session_id
        self.config = config or AugmentConfig()
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._generators = (
            generators if generators is not None else build_generator_table(self.config)
        )
        self._recorder = recorder
        self._detector = BlockDetector(session_id, logger=self._log)
        self._queue: asyncio.Queue[_Entry | None] = asyncio.Queue()
        self._slots = asyncio.Semaphore(self.config.max_in_flight)
        self._tasks: set[asyncio.Task] = set()
        self._closed = False
        self._cancelled = False

    @property
    def detector(self) -> BlockDetector:
        return self._detector

    @property
    def in_flight(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def submit(self, message: CanonicalMessage) -> None:
        """Feed one message through the detector and enqueue its outputs."""
        if self._closed or self._cancelled:
            return
        for output in self._detector.feed(message):
            await self._enqueue(output)

    async def submit_control(self, kind: ControlKind, detail: str | None = None) -> None:
        if self._closed or self._cancelled:
            return
        await self._queue.put(_Entry(event=ControlEvent(kind=kind, detail=detail)))

    async def finish(self, reason: str = "end of stream") -> None:
        """Force open blocks to completion and enqueue them."""
        if self._closed or self._cancelled:
            return
        for block in self._detector.finalize(reason):
            await self._enqueue(block)

    def close(self) -> None:
        """No more input; :meth:`outputs` ends after draining the FIFO."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def cancel(self) -> None:
        """Cancel in-flight augments and stop delivering anything."""
        if self._cancelled:
            return
        self._cancelled = True
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            self._log.info(
                "session=%s cancelled %d in-flight augment(s)", self.session_id, len(pending),
            )
        self._closed = True
        self._queue.put_nowait(None)

    async def outputs(self) -> AsyncIterator[StreamEvent]:
        """Yield events strictly in arrival order."""
        while not self._cancelled:
            entry = await self._queue.get()
            if entry is None or self._cancelled:
                break
            if entry.task is None:
                if entry.block is not None:
                    self._record(entry.block, None)
                yield entry.event
                continue

            try:
                augment = await entry.task
            except asyncio.CancelledError:
                if self._cancelled:
                    break
                raise
            finally:
                self._tasks.discard(entry.task)
                self._slots.release()
            if self._cancelled:
                break
            self._record(entry.block, augment)
            yield AugmentedEvent(
                block_id=entry.block.block_id, block=entry.block, augment=augment,
            )

    # ── internals ──

    async def _enqueue(self, output: DetectorOutput) -> None:
        if isinstance(output, PendingDelta):
            await self._queue.put(_Entry(event=PendingEvent(
                block_id=output.block_id,
                delta_text=output.text,
                message_id=output.message_id,
            )))
            return

        block = output
        generator = self._generator_for(block)
        if generator is None:
            await self._queue.put(_Entry(
                event=AugmentedEvent(block_id=block.block_id, block=block, augment=None),
                block=block,
            ))
            return

        # Backpressure: wait for a free slot before starting another augment.
        await self._slots.acquire()
        if self._cancelled:
            self._slots.release()
            return
        task = asyncio.create_task(
            self._compute(generator, block),
            name=f"augment-{self.session_id}-{block.block_id}",
        )
        self._tasks.add(task)
        await self._queue.put(_Entry(block=block, task=task))

    def _generator_for(self, block: CompletedBlock) -> Callable[..., Any] | None:
        if block.kind is BlockKind.TOOL_INVOCATION:
            if block.tool_call is None:
                return None
            return self._generators.get(block.tool_call.name)
        if self.config.render_markdown:
            return compute_markdown_augment
        return None

    async def _compute(self, generator: Callable[..., Any], block: CompletedBlock) -> Augment | None:
        if block.kind is BlockKind.TOOL_INVOCATION:
            args: tuple[Any, ...] = (block.tool_call, block.tool_call.result)
        else:
            args = (block,)
        try:
            if _is_async(generator):
                augment = await generator(*args)
            elif self.config.offload_highlighting:
                augment = await asyncio.to_thread(generator, *args)
            else:
                augment = generator(*args)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.warning(
                "session=%s augment generator failed for block %s",
                self.session_id, block.block_id, exc_info=True,
            )
            return None
        if augment is not None and block.degraded and not augment.degraded:
            augment = replace(augment, degraded=True)
        return augment

    def _record(self, block: CompletedBlock | None, augment: Augment | None) -> None:
        if self._recorder is None or block is None:
            return
        try:
            self._recorder.record(self.session_id, block, augment)
        except Exception:
            self._log.warning(
                "session=%s recorder failed for block %s",
                self.session_id, block.block_id, exc_info=True,
            )
