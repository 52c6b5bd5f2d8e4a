"""Client connection manager: one socket, bounded automatic reconnects.

Lifecycle::

    disconnected -> connecting -> connected -> (closed) -> connecting ...

Any closure other than code 1000 schedules a reconnect on a cancellable
timer until the attempt budget is spent; then the manager settles in
``disconnected`` with a terminal error. Only :meth:`ConnectionManager.connect`
resets the budget. Frames are never buffered while not connected.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..schema import Frame, FrameError, parse_frame
from .observable import Observable

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000

Connector = Callable[[str], Awaitable[Any]]


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class ReconnectPolicy:
    """Deterministic, capped reconnect schedule."""
    max_attempts: int = 5
    delay: float = 3.0
    backoff: str = "fixed"          # "fixed" | "linear"
    max_delay: float = 30.0
    open_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.backoff not in ("fixed", "linear"):
            raise ValueError(f"backoff must be 'fixed' or 'linear', got {self.backoff!r}")
        self.max_attempts = max(0, int(self.max_attempts))
        self.delay = max(0.0, float(self.delay))
        self.max_delay = max(0.0, float(self.max_delay))

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based)."""
        raw = self.delay * attempt if self.backoff == "linear" else self.delay
        return min(raw, self.max_delay)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "ReconnectPolicy":
        rc = ((cfg or {}).get("client", {}) or {}).get("reconnect", {}) or {}
        return cls(
            max_attempts=int(rc.get("max_attempts", 5)),
            delay=float(rc.get("delay", 3.0)),
            backoff=str(rc.get("backoff", "fixed")),
            max_delay=float(rc.get("max_delay", 30.0)),
            open_timeout=float(rc.get("open_timeout", 10.0)),
        )


async def _default_connector(url: str) -> Any:
    return await websockets.connect(url)


class ConnectionManager:
    """Owns one WebSocket and its reconnect policy.

    Observables for the presentation layer:
      - ``status``: :class:`ConnectionStatus`
      - ``error``:  last user-visible error string, or None
      - ``frames``: every valid inbound :class:`Frame`

    Use as an async context manager (connect on enter, normal closure on
    exit) or call :meth:`connect` / :meth:`disconnect` explicitly. All work
    happens on the running event loop; nothing blocks.
    """

    def __init__(
        self,
        url: str,
        policy: Optional[ReconnectPolicy] = None,
        *,
        connector: Optional[Connector] = None,
    ) -> None:
        self.url = url
        self.policy = policy or ReconnectPolicy()
        self._connector = connector or _default_connector

        self.status: Observable[ConnectionStatus] = Observable(ConnectionStatus.DISCONNECTED)
        self.error: Observable[Optional[str]] = Observable(None)
        self.frames: Observable[Optional[Frame]] = Observable(None)

        self._ws: Any = None
        self._task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._attempts = 0
        self._closing = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def reconnect_pending(self) -> bool:
        return self._timer is not None

    async def wait_for(self, status: ConnectionStatus, timeout: Optional[float] = None) -> bool:
        """Wait until ``status`` is reached; False on timeout."""
        if self.status.value is status:
            return True
        reached = asyncio.Event()
        unsubscribe = self.status.subscribe(lambda s: reached.set() if s is status else None)
        try:
            await asyncio.wait_for(reached.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            unsubscribe()

    async def __aenter__(self) -> "ConnectionManager":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        """Explicit (re)connect: resets the attempt budget."""
        self._cancel_timer()
        self._attempts = 0
        self._closing = False
        self.error.set(None)
        if self._task is not None and not self._task.done():
            return
        self._start()

    async def disconnect(self) -> None:
        """Close with code 1000 and cancel any scheduled reconnect."""
        self._closing = True
        self._cancel_timer()
        ws = self._ws
        if ws is not None:
            try:
                await ws.close(code=NORMAL_CLOSURE)
            except (ConnectionClosed, OSError) as e:
                logger.debug("Close on an already broken socket: %s", e)
        task = self._task
        if task is not None and not task.done():
            if ws is None:
                # still opening
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._ws = None
        self._attempts = 0
        self.error.set(None)
        self.status.set(ConnectionStatus.DISCONNECTED)

    async def send(self, frame: Frame) -> bool:
        """Send one frame if connected; otherwise surface an error and drop it."""
        ws = self._ws
        if ws is None or self.status.value is not ConnectionStatus.CONNECTED:
            self.error.set("WebSocket is not connected")
            return False
        try:
            await ws.send(frame.to_json())
        except ConnectionClosed as e:
            logger.warning("Send failed, socket closed: %s", e)
            self.error.set("WebSocket is not connected")
            return False
        return True

    # ------------------------------------------------------------------
    # Socket loop
    # ------------------------------------------------------------------
    def _start(self) -> None:
        self.status.set(ConnectionStatus.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(self._run(), name="chat-socket")

    async def _run(self) -> None:
        try:
            ws = await asyncio.wait_for(self._connector(self.url), self.policy.open_timeout or None)
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            logger.warning("WebSocket connection to %s failed: %s", self.url, e)
            self._on_closed(None)
            return
        except Exception:
            logger.exception("Unexpected error connecting to %s", self.url)
            self._on_closed(None)
            return

        self._ws = ws
        self._attempts = 0
        self.error.set(None)
        self.status.set(ConnectionStatus.CONNECTED)
        logger.info("WebSocket connected to %s", self.url)

        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.debug("Socket loop ended: %s", e)
        finally:
            self._ws = None

        self._on_closed(getattr(ws, "close_code", None))

    def _dispatch(self, raw: Any) -> None:
        try:
            frame = parse_frame(raw)
        except FrameError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return
        self.frames.emit(frame)

    def _on_closed(self, code: Optional[int]) -> None:
        logger.info("WebSocket closed: %s", code)
        if self._closing:
            self.status.set(ConnectionStatus.DISCONNECTED)
            return
        if code == NORMAL_CLOSURE:
            self.status.set(ConnectionStatus.DISCONNECTED)
            return
        if self._attempts >= self.policy.max_attempts:
            logger.error("Giving up on %s after %d reconnect attempts", self.url, self._attempts)
            self.status.set(ConnectionStatus.DISCONNECTED)
            self.error.set("Maximum reconnection attempts reached")
            return

        self._attempts += 1
        delay = self.policy.delay_for(self._attempts)
        logger.info("Reconnecting (%d/%d) in %.1fs", self._attempts, self.policy.max_attempts, delay)
        self.status.set(ConnectionStatus.CONNECTING)
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire_reconnect)

    def _fire_reconnect(self) -> None:
        self._timer = None
        if self._closing:
            return
        self._start()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
