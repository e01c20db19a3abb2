"""HTTP + SSE/WebSocket sink for augmented session streams.

Thin adapter: each session runs one StreamAugmenter over a provider
source and fans its events out to every connected client. Late joiners
get the session history first, with pending text compacted. Finished
sessions are unloaded once nobody is connected and the retention window
(AUGMENT_SESSION_RETENTION_MINUTES, default 15) has passed.

Routes:
    GET  /health
    POST /sessions                {"prompt", "provider"?, "model"?, "cwd"?}
    GET  /sessions/{id}/stream    Server-Sent Events, ``id:`` = event seq
    GET  /sessions/{id}/ws        WebSocket, one JSON message per event
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from aiohttp import WSMsgType, web

from agentstream.augments import AugmentConfig, StreamAugmenter
from agentstream.augments.models import (
    AugmentedEvent,
    ControlEvent,
    ControlKind,
    PendingEvent,
    StreamEvent,
    event_to_dict,
)
from agentstream.providers import MessageSource, build_source
from agentstream.recorder import JsonlBlockRecorder

logger = logging.getLogger(__name__)

# Per-client queue bound; a client this far behind is disconnected.
_CLIENT_QUEUE_SIZE = 5000
_SWEEP_INTERVAL_SECONDS = 30.0


def encode_sse_frame(event: StreamEvent, seq: int) -> bytes:
    """One SSE frame: ``id``, ``event`` and a single-line JSON ``data``."""
    payload = event_to_dict(event)
    data = json.dumps(payload["data"], ensure_ascii=False)
    return f"id: {seq}\nevent: {payload['event']}\ndata: {data}\n\n".encode("utf-8")


def encode_ws_message(event: StreamEvent, seq: int) -> str:
    """One WebSocket text message carrying ``seq``, ``event`` and ``data``."""
    payload = event_to_dict(event)
    return json.dumps({"seq": seq, **payload}, ensure_ascii=False)


@dataclass
class SessionState:
    session_id: str
    provider: str
    prompt: str
    cwd: str
    model: str | None = None
    augmenter: StreamAugmenter | None = None
    # Everything but pending deltas, in seq order.
    history: list[tuple[int, StreamEvent]] = field(default_factory=list)
    # Pending deltas of blocks not augmented yet, keyed by block id.
    pending: dict[str, list[tuple[int, PendingEvent]]] = field(default_factory=dict)
    subscribers: list[asyncio.Queue] = field(default_factory=list)
    task: asyncio.Task | None = None
    finished: bool = False
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None


class AugmentServer:
    """Multi-session HTTP server streaming augmented provider output."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 0,
        cwd: str | None = None,
        config: AugmentConfig | None = None,
        record_dir: str | None = None,
        source_factory: Callable[[str], MessageSource] | None = None,
        session_retention_seconds: float | None = None,
    ) -> None:
        self._host = host
        self._port = port
        self._cwd = cwd or str(Path.cwd())
        self._config = config or AugmentConfig()
        self._recorder = JsonlBlockRecorder(record_dir) if record_dir else None
        self._source_factory = source_factory or build_source
        self._sessions: dict[str, SessionState] = {}
        self._started_at = time.time()
        self._runner: web.AppRunner | None = None
        self._sweep_task: asyncio.Task | None = None
        if session_retention_seconds is None:
            retention_minutes_raw = os.getenv("AUGMENT_SESSION_RETENTION_MINUTES", "15")
            try:
                session_retention_seconds = float(retention_minutes_raw) * 60.0
            except ValueError:
                session_retention_seconds = 15 * 60.0
        # <= 0 keeps finished sessions until shutdown.
        self._session_retention_seconds = max(0.0, session_retention_seconds)
        self._app = web.Application(middlewares=[self._request_logging_middleware])
        self._setup_routes()
        logger.info(
            "AugmentServer init host=%s port=%s cwd=%s record_dir=%s pid=%s",
            self._host, self._port, self._cwd, record_dir or "<none>", os.getpid(),
        )
        logger.info(
            "Finished session retention: %.1f minutes",
            self._session_retention_seconds / 60.0,
        )

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def sessions(self) -> dict[str, SessionState]:
        return self._sessions

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = request.headers.get("x-request-id", str(uuid.uuid4())[:8])
        request["req_id"] = req_id
        start = time.monotonic()
        logger.info("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception(
                "HTTP %s %s req=%s failed duration_ms=%.1f",
                request.method, request.path_qs, req_id, elapsed_ms,
            )
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        logger.info(
            "HTTP %s %s req=%s status=%s duration_ms=%.1f",
            request.method, request.path_qs, req_id,
            getattr(response, "status", "?"), elapsed_ms,
        )
        return response

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/sessions", self._handle_create_session)
        r.add_get("/sessions/{id}/stream", self._handle_sse)
        r.add_get("/sessions/{id}/ws", self._handle_ws)
        self._app.on_shutdown.append(self._on_shutdown)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Start listening; returns the bound port."""
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        addresses = self._runner.addresses
        if addresses:
            self._port = addresses[0][1]
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="session-sweep")
        logger.info("agentstream server listening on %s:%d", self._host, self._port)
        return self._port

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    async def _on_shutdown(self, app: web.Application) -> None:
        for state in self._sessions.values():
            if state.augmenter is not None:
                state.augmenter.cancel()
            if state.task is not None and not state.task.done():
                state.task.cancel()
        tasks = [s.task for s in self._sessions.values() if s.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Sessions ──

    def create_session(
        self,
        prompt: str,
        *,
        provider: str = "claude",
        model: str | None = None,
        cwd: str | None = None,
        session_id: str | None = None,
    ) -> SessionState:
        source = self._source_factory(provider)
        state = SessionState(
            session_id=session_id or str(uuid.uuid4()),
            provider=provider,
            prompt=prompt,
            cwd=cwd or self._cwd,
            model=model,
        )
        state.augmenter = StreamAugmenter(
            state.session_id,
            config=self._config,
            recorder=self._recorder,
            family=source.family,
        )
        self._sessions[state.session_id] = state
        state.task = asyncio.create_task(
            self._run_session(state, source), name=f"session-{state.session_id}",
        )
        logger.info(
            "session=%s created provider=%s model=%s cwd=%s",
            state.session_id, provider, model or "<default>", state.cwd,
        )
        return state

    async def _run_session(self, state: SessionState, source: MessageSource) -> None:
        seq = 0
        messages = source.messages(state.prompt, cwd=state.cwd, model_id=state.model)
        try:
            async for event in state.augmenter.stream(messages):
                if isinstance(event, ControlEvent) and event.kind is ControlKind.HEARTBEAT:
                    self._broadcast(state, 0, event)
                    continue
                seq += 1
                self._record(state, seq, event)
                self._broadcast(state, seq, event)
        except Exception:
            logger.exception("session=%s pipeline failed", state.session_id)
            seq += 1
            error = ControlEvent(kind=ControlKind.ERROR, detail="internal error")
            self._record(state, seq, error)
            self._broadcast(state, seq, error)
        finally:
            state.finished = True
            state.finished_at = time.time()
            for queue in list(state.subscribers):
                try:
                    queue.put_nowait(None)
                except asyncio.QueueFull:
                    state.subscribers.remove(queue)
            logger.info("session=%s finished after %d event(s)", state.session_id, seq)

    @staticmethod
    def _record(state: SessionState, seq: int, event: StreamEvent) -> None:
        if isinstance(event, PendingEvent):
            state.pending.setdefault(event.block_id, []).append((seq, event))
            return
        if isinstance(event, AugmentedEvent):
            # The augmented block supersedes its pending text.
            state.pending.pop(event.block_id, None)
        state.history.append((seq, event))

    def _broadcast(self, state: SessionState, seq: int, event: StreamEvent) -> None:
        for queue in list(state.subscribers):
            try:
                queue.put_nowait((seq, event))
            except asyncio.QueueFull:
                logger.warning(
                    "session=%s client queue full, disconnecting slow client", state.session_id,
                )
                state.subscribers.remove(queue)

    def replay_events(self, state: SessionState, after_seq: int | None = None) -> list[tuple[int, StreamEvent]]:
        """History for a joining client.

        With ``after_seq`` (a resuming client) the kept events after it are
        returned as they were sent. Otherwise the pending text of each block
        still open is collapsed into catch-up events. Pending text of an
        augmented block is never kept.
        """
        if after_seq is not None:
            replay = [(seq, event) for seq, event in state.history if seq > after_seq]
            for deltas in state.pending.values():
                replay.extend((seq, event) for seq, event in deltas if seq > after_seq)
            replay.sort(key=lambda item: item[0])
            return replay

        replay = list(state.history)
        for block_id, deltas in state.pending.items():
            seq, last = deltas[-1]
            text = "".join(event.delta_text for _, event in deltas)
            prefix, _, index = block_id.rpartition(":")
            if prefix and index.isdigit():
                catch_up = state.augmenter.process_catch_up(text, prefix, start_index=int(index))
            else:
                catch_up = [PendingEvent(block_id=block_id, delta_text=text, message_id=last.message_id)]
            replay.extend((seq, event) for event in catch_up)
        replay.sort(key=lambda item: item[0])
        return replay

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(_SWEEP_INTERVAL_SECONDS)
            self._unload_finished_sessions()

    def _unload_finished_sessions(self) -> None:
        """Drop finished sessions nobody is watching once retention expires."""
        if self._session_retention_seconds <= 0:
            return
        now = time.time()
        for session_id, state in list(self._sessions.items()):
            if not state.finished or state.subscribers or state.finished_at is None:
                continue
            idle_for = now - state.finished_at
            if idle_for < self._session_retention_seconds:
                continue
            self._sessions.pop(session_id, None)
            logger.info(
                "session=%s unloaded %.1f minutes after finishing", session_id, idle_for / 60.0,
            )

    # ── Handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "cwd": self._cwd,
            "sessions": len(self._sessions),
            "active_sessions": sum(1 for s in self._sessions.values() if not s.finished),
        })

    async def _handle_create_session(self, request: web.Request) -> web.Response:
        try:
            body = await request.json() if request.can_read_body else {}
        except json.JSONDecodeError:
            return web.json_response({"error": "Body must be JSON"}, status=400)
        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return web.json_response({"error": "prompt is required"}, status=400)
        provider = body.get("provider", "claude")
        try:
            state = self.create_session(
                prompt,
                provider=provider,
                model=body.get("model"),
                cwd=body.get("cwd"),
            )
        except ValueError as exc:
            return web.json_response({"error": str(exc)}, status=400)
        return web.json_response(
            {"session_id": state.session_id, "provider": state.provider},
            status=201,
        )

    def _subscribe(self, state: SessionState) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=_CLIENT_QUEUE_SIZE)
        if not state.finished:
            state.subscribers.append(queue)
        return queue

    def _unsubscribe(self, state: SessionState, queue: asyncio.Queue) -> None:
        if queue in state.subscribers:
            state.subscribers.remove(queue)

    @staticmethod
    def _last_event_id(request: web.Request) -> int | None:
        raw = request.headers.get("Last-Event-ID") or request.query.get("after")
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            return None

    async def _handle_sse(self, request: web.Request) -> web.StreamResponse:
        session_id = request.match_info["id"]
        state = self._sessions.get(session_id)
        if state is None:
            return web.json_response({"error": f"Session {session_id} not found"}, status=404)

        response = web.StreamResponse(
            status=200,
            headers={
                "Content-Type": "text/event-stream",
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "Access-Control-Allow-Origin": "*",
            },
        )
        await response.prepare(request)
        queue = self._subscribe(state)
        logger.info(
            "session=%s SSE client connected req=%s clients=%d",
            session_id, request.get("req_id", "unknown"), len(state.subscribers),
        )
        try:
            last_seq = 0
            for seq, event in self.replay_events(state, self._last_event_id(request)):
                await response.write(encode_sse_frame(event, seq))
                last_seq = seq
            while not (state.finished and queue.empty()):
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=30.0)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                if item is None:
                    break
                seq, event = item
                if seq and seq <= last_seq:
                    continue
                await response.write(encode_sse_frame(event, seq or last_seq))
        except ConnectionResetError:
            pass
        finally:
            self._unsubscribe(state, queue)
            logger.info(
                "session=%s SSE client disconnected req=%s clients=%d",
                session_id, request.get("req_id", "unknown"), len(state.subscribers),
            )
        return response

    async def _handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        session_id = request.match_info["id"]
        state = self._sessions.get(session_id)
        if state is None:
            raise web.HTTPNotFound(text=f"Session {session_id} not found")

        ws = web.WebSocketResponse(heartbeat=self._config.heartbeat_interval_seconds)
        await ws.prepare(request)
        queue = self._subscribe(state)
        logger.info("session=%s WS client connected clients=%d", session_id, len(state.subscribers))

        async def _reader() -> None:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and msg.data == "cancel":
                    logger.info("session=%s cancel requested over WS", session_id)
                    state.augmenter.cancel()
                elif msg.type == WSMsgType.ERROR:
                    break

        reader = asyncio.create_task(_reader())
        try:
            last_seq = 0
            for seq, event in self.replay_events(state, self._last_event_id(request)):
                await ws.send_str(encode_ws_message(event, seq))
                last_seq = seq
            while not ws.closed and not (state.finished and queue.empty()):
                get = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({get, reader}, return_when=asyncio.FIRST_COMPLETED)
                if get not in done:
                    get.cancel()
                    break
                item = get.result()
                if item is None:
                    break
                seq, event = item
                if seq and seq <= last_seq:
                    continue
                await ws.send_str(encode_ws_message(event, seq or last_seq))
        except ConnectionResetError:
            pass
        finally:
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            self._unsubscribe(state, queue)
            await ws.close()
            logger.info("session=%s WS client disconnected clients=%d", session_id, len(state.subscribers))
        return ws
