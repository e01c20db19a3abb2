"""Per-session streaming pipeline: provider messages in, stream events out.

``StreamAugmenter.stream(source)`` is an async generator. Iterating it
starts a pump task (source -> normalizer -> coordinator) and a drain task
(coordinator -> output queue); the generator itself coalesces pending
deltas, interleaves heartbeats and stops on the cancel token.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator
from typing import Any, Callable

from .config import AugmentConfig
from .coordinator import StreamCoordinator
from .errors import UpstreamError
from .generators import compute_markdown_augment
from .markdown import MarkdownBlockSplitter
from .models import (
    AugmentedEvent,
    BlockKind,
    CompletedBlock,
    ControlEvent,
    ControlKind,
    PendingEvent,
    ProviderFamily,
    Role,
    StreamEvent,
)
from .normalizer import normalize

_END = object()
_CANCELLED = object()
_TERMINAL = (ControlKind.DONE, ControlKind.ERROR)


class StreamAugmenter:
    """Turns one session's provider stream into ordered stream events."""

    def __init__(
        self,
        session_id: str,
        *,
        config: AugmentConfig | None = None,
        generators: dict[str, Callable[..., Any]] | None = None,
        logger: logging.Logger | None = None,
        recorder: Any = None,
        cancel: asyncio.Event | None = None,
        family: ProviderFamily | None = None,
    ) -> None:
        self.session_id = session_id
        self.config = config or AugmentConfig()
        self.family = family
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._cancel = cancel if cancel is not None else asyncio.Event()
        self.coordinator = StreamCoordinator(
            session_id,
            config=self.config,
            generators=generators,
            logger=self._log,
            recorder=recorder,
        )
        self._augmented: set[str] = set()

    @property
    def cancel_token(self) -> asyncio.Event:
        return self._cancel

    def cancel(self) -> None:
        self._cancel.set()

    async def stream(self, source: AsyncIterable[Any]) -> AsyncIterator[StreamEvent]:
        """Yield stream events for ``source`` until done, error or cancel."""
        loop = asyncio.get_running_loop()
        window = self.config.coalesce_window_seconds
        interval = self.config.heartbeat_interval_seconds
        out_queue: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=max(16, self.config.max_in_flight * 4)
        )
        pump = asyncio.create_task(self._pump(source), name=f"pump-{self.session_id}")
        drain = asyncio.create_task(self._drain(out_queue), name=f"drain-{self.session_id}")
        watcher = asyncio.create_task(self._watch_cancel(out_queue))

        buffered: PendingEvent | None = None
        flush_at = 0.0
        next_heartbeat = loop.time() + interval
        self._log.info("session=%s stream started", self.session_id)
        try:
            yield ControlEvent(kind=ControlKind.CONNECTED)
            while not self._cancel.is_set():
                deadline = next_heartbeat if buffered is None else min(next_heartbeat, flush_at)
                try:
                    item = await asyncio.wait_for(
                        out_queue.get(), timeout=max(0.0, deadline - loop.time()),
                    )
                except asyncio.TimeoutError:
                    item = None
                if item is _CANCELLED or self._cancel.is_set():
                    break

                now = loop.time()
                if item is _END:
                    if buffered is not None:
                        yield buffered
                    break

                if item is not None:
                    event: StreamEvent = item
                    if isinstance(event, PendingEvent):
                        if event.block_id in self._augmented:
                            continue
                        if window <= 0:
                            yield event
                        elif buffered is not None and buffered.block_id == event.block_id:
                            buffered = PendingEvent(
                                block_id=buffered.block_id,
                                delta_text=buffered.delta_text + event.delta_text,
                                message_id=buffered.message_id,
                            )
                        else:
                            if buffered is not None:
                                yield buffered
                            buffered = event
                            flush_at = now + window
                    else:
                        if buffered is not None:
                            # The block's completed form supersedes its pending text.
                            superseded = (
                                isinstance(event, AugmentedEvent)
                                and event.block_id == buffered.block_id
                            )
                            if not superseded:
                                yield buffered
                            buffered = None
                        if isinstance(event, AugmentedEvent):
                            self._augmented.add(event.block_id)
                        yield event
                        if isinstance(event, ControlEvent) and event.kind in _TERMINAL:
                            break

                if buffered is not None and now >= flush_at:
                    yield buffered
                    buffered = None
                if now >= next_heartbeat:
                    yield ControlEvent(kind=ControlKind.HEARTBEAT)
                    next_heartbeat = now + interval
        finally:
            for task in (pump, drain, watcher):
                task.cancel()
            self.coordinator.cancel()
            await asyncio.gather(pump, drain, watcher, return_exceptions=True)
            self._log.info(
                "session=%s stream closed%s",
                self.session_id, " (cancelled)" if self._cancel.is_set() else "",
            )

    def process_catch_up(
        self, text: str, message_id: str, *, start_index: int = 0,
    ) -> list[StreamEvent]:
        """Events that bring a late-joining client up to date with ``text``.

        Block ids continue from ``start_index`` within ``message_id``. Uses a
        throwaway splitter; the live pipeline is untouched.
        """
        splitter = MarkdownBlockSplitter()
        events: list[StreamEvent] = []
        for n, markdown in enumerate(splitter.feed(text), start=start_index):
            block = CompletedBlock(
                block_id=f"{message_id}:{n}",
                kind=BlockKind.FENCED_CODE if markdown.type == "code" else BlockKind.PROSE,
                raw_content=markdown.content,
                lang=markdown.lang,
                markdown_type=markdown.type,
                message_id=message_id,
            )
            augment = compute_markdown_augment(block) if self.config.render_markdown else None
            events.append(AugmentedEvent(block_id=block.block_id, block=block, augment=augment))
        if splitter.pending.strip():
            events.append(PendingEvent(
                block_id=f"{message_id}:{start_index + len(events)}",
                delta_text=splitter.pending,
                message_id=message_id,
            ))
        return events

    # ── tasks ──

    async def _pump(self, source: AsyncIterable[Any]) -> None:
        coordinator = self.coordinator
        messages = source.__aiter__()
        final = False
        try:
            async for raw in messages:
                if self._cancel.is_set():
                    break
                message = normalize(raw, session_id=self.session_id, family=self.family)
                if message is None:
                    continue
                await coordinator.submit(message)
                if message.is_final:
                    final = True
                    if message.role is Role.ERROR:
                        self._log.warning(
                            "session=%s turn ended with error: %s", self.session_id, message.error,
                        )
                        await coordinator.submit_control(ControlKind.ERROR, message.error)
                    else:
                        await coordinator.submit_control(ControlKind.DONE)
                    break
            if not final and not self._cancel.is_set():
                await coordinator.finish("source exhausted")
                await coordinator.submit_control(ControlKind.DONE)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = exc.reason if isinstance(exc, UpstreamError) else str(exc) or type(exc).__name__
            error = UpstreamError(self.session_id, reason)
            self._log.warning("%s", error, exc_info=True)
            await coordinator.finish("upstream error")
            await coordinator.submit_control(ControlKind.ERROR, error.reason)
        finally:
            coordinator.close()
            aclose = getattr(messages, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    self._log.debug("session=%s source close failed", self.session_id, exc_info=True)

    async def _drain(self, out_queue: asyncio.Queue[Any]) -> None:
        try:
            async for event in self.coordinator.outputs():
                await out_queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            self._log.warning("session=%s output drain failed", self.session_id, exc_info=True)
        await out_queue.put(_END)

    async def _watch_cancel(self, out_queue: asyncio.Queue[Any]) -> None:
        await self._cancel.wait()
        try:
            out_queue.put_nowait(_CANCELLED)
        except asyncio.QueueFull:
            # The consumer is not blocked on an empty queue and checks the token itself.
            pass
