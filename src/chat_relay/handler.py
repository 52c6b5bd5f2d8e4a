"""Per-socket connection handler: user_message in, typing/agent_response/done out.

One :class:`ConnectionHandler` runs per accepted WebSocket. Turns for the same
session are serialized through a process-wide :class:`TurnGate`, so frames from
two engine invocations never interleave on one conversation.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import defaultdict
from typing import AsyncIterator, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from starlette.concurrency import run_in_threadpool

from .engine import AgentEngine, EngineError
from .schema import Frame, FrameError, FrameType, Role, parse_frame
from .store import SessionStore, StoreError

logger = logging.getLogger(__name__)


class ConnectionGone(Exception):
    """The peer disappeared while a frame was being sent."""


class TurnGate:
    """Per-session FIFO serialization of agent turns.

    At most one turn per session runs; up to ``max_pending`` more wait behind
    it in arrival order. :meth:`admit` is synchronous so the admission
    decision is made in receive order, and every admitted turn must be
    balanced by exactly one :meth:`release`.
    """

    def __init__(self, max_pending: int = 1) -> None:
        self.max_pending = max(0, int(max_pending))
        self._locks: Dict[str, asyncio.Lock] = {}
        self._depth: Dict[str, int] = defaultdict(int)

    def admit(self, session_id: str) -> bool:
        if self._depth[session_id] > self.max_pending:
            return False
        self._depth[session_id] += 1
        self._locks.setdefault(session_id, asyncio.Lock())
        return True

    def lock(self, session_id: str) -> asyncio.Lock:
        return self._locks[session_id]

    def release(self, session_id: str) -> None:
        self._depth[session_id] -= 1
        if self._depth[session_id] <= 0:
            self._depth.pop(session_id, None)
            self._locks.pop(session_id, None)

    def depth(self, session_id: str) -> int:
        return self._depth.get(session_id, 0)


class ConnectionHandler:
    def __init__(
        self,
        ws: WebSocket,
        store: SessionStore,
        engine: AgentEngine,
        gate: TurnGate,
        *,
        turn_timeout: Optional[float] = 60.0,
    ) -> None:
        self._ws = ws
        self._store = store
        self._engine = engine
        self._gate = gate
        self._turn_timeout = turn_timeout if turn_timeout and turn_timeout > 0 else None
        self._turns: Set[asyncio.Task] = set()
        self._closed = False

    async def run(self) -> None:
        """Accept, handshake, then read frames until the peer goes away."""
        await self._ws.accept()
        peer = getattr(self._ws.client, "host", None)
        logger.info("WebSocket connection established from %s", peer)
        try:
            await self._send(Frame.connected())
            while True:
                message = await self._ws.receive()
                if message["type"] == "websocket.disconnect":
                    logger.info("WebSocket connection closed: %s", message.get("code"))
                    break
                text = message.get("text")
                if text is None:
                    await self._send(Frame.error("", "Binary frames are not supported"))
                    continue
                await self._on_text(text)
        except (ConnectionGone, WebSocketDisconnect):
            logger.info("WebSocket peer %s went away", peer)
        finally:
            self._closed = True
            await self._abort_turns()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------
    async def _on_text(self, text: str) -> None:
        try:
            frame = parse_frame(text)
        except FrameError as e:
            logger.warning("Rejected frame: %s", e)
            await self._send(Frame.error(e.session_id, str(e)))
            return

        sid = frame.session_id
        if frame.type is not FrameType.USER_MESSAGE:
            await self._send(Frame.error(sid, f"Unexpected frame type from client: {frame.type.value}"))
            return

        content = (frame.content or "").strip()
        if not content:
            await self._send(Frame.error(sid, "Message cannot be empty."))
            return

        if not self._gate.admit(sid):
            logger.warning("Session %s already has %d turns queued, rejecting", sid, self._gate.depth(sid))
            await self._send(Frame.error(sid, "A reply is already in progress for this session. Try again when it completes."))
            return

        task = asyncio.create_task(self._run_turn(sid, content, frame.user_id), name=f"turn-{sid}")
        self._turns.add(task)
        task.add_done_callback(self._turns.discard)
        # runs even if the task is cancelled before it starts
        task.add_done_callback(lambda _t: self._gate.release(sid))

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------
    async def _run_turn(self, sid: str, content: str, user_id: Optional[str]) -> None:
        async with self._gate.lock(sid):
            try:
                await self._stream_turn(sid, content, user_id)
            except ConnectionGone:
                logger.info("Abandoned turn for session %s: client disconnected", sid)

    async def _stream_turn(self, sid: str, content: str, user_id: Optional[str]) -> None:
        # The user turn must be durable before the engine reads history.
        # Store calls may fsync, so they run off the event loop.
        try:
            await run_in_threadpool(self._store.get_or_create, sid, user_id=user_id)
            await run_in_threadpool(self._store.append, sid, Role.USER.value, content, user_id=user_id)
        except StoreError as e:
            await self._send(Frame.error(sid, f"Failed to save message: {e}"))
            return

        await self._send(Frame.typing(sid))

        history = await run_in_threadpool(self._store.history, sid)
        parts = []
        try:
            async with contextlib.aclosing(self._fragments(history)) as fragments:
                async for fragment in fragments:
                    parts.append(fragment)
                    await self._send(Frame.agent_response(sid, fragment))
        except ConnectionGone:
            raise
        except asyncio.TimeoutError:
            logger.warning("Agent engine timed out for session %s", sid)
            await self._send(Frame.error(sid, "Failed to generate response: the agent timed out"))
            return
        except Exception as e:
            logger.exception("Error generating agent response for session %s", sid)
            await self._send(Frame.error(sid, f"Failed to generate response: {e}"))
            return

        reply = "".join(parts)
        try:
            await run_in_threadpool(self._store.append, sid, Role.ASSISTANT.value, reply)
        except StoreError as e:
            await self._send(Frame.error(sid, f"Failed to save response: {e}"))
            return

        await self._send(Frame.done(sid))
        logger.info("Completed turn for session %s (%d fragments)", sid, len(parts))

    async def _fragments(self, history) -> AsyncIterator[str]:
        """Engine fragments with an idle timeout between consecutive ones."""
        it = self._engine.invoke(history)
        try:
            while True:
                try:
                    fragment = await asyncio.wait_for(anext(it), self._turn_timeout)
                except StopAsyncIteration:
                    return
                if not isinstance(fragment, str):
                    raise EngineError(f"Engine produced {type(fragment).__name__}, expected str")
                if fragment:
                    yield fragment
        finally:
            aclose = getattr(it, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _abort_turns(self) -> None:
        pending = [t for t in self._turns if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d in-flight turns", len(pending))

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------
    async def _send(self, frame: Frame) -> None:
        if self._closed:
            raise ConnectionGone()
        try:
            await self._ws.send_text(frame.to_json())
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise ConnectionGone() from e
