"""ChatClient: connection manager, session correlator and assembler wired together."""
from __future__ import annotations

from typing import Any, Dict, Optional

from .assembler import StreamAssembler
from .connection import ConnectionManager, Connector, ReconnectPolicy
from .correlator import SessionCorrelator


class ChatClient:
    """One conversation surface (think: one browser tab).

    Inbound frames flow from the connection into the assembler; outbound
    messages are stamped with the correlator's sessionId, which survives
    reconnects. Subscribe to ``client.events`` for assistant lifecycle
    events and to ``client.status`` / ``client.error`` for connectivity.
    """

    def __init__(
        self,
        url: str,
        *,
        policy: Optional[ReconnectPolicy] = None,
        namespace: str = "session",
        user_id: Optional[str] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self.connection = ConnectionManager(url, policy, connector=connector)
        self.correlator = SessionCorrelator(namespace, user_id=user_id)
        self.assembler = StreamAssembler(self.correlator.session_id)
        self._unsubscribe = self.connection.frames.subscribe(self._on_frame)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any], **kwargs: Any) -> "ChatClient":
        client_cfg = (cfg or {}).get("client", {}) or {}
        return cls(
            kwargs.pop("url", None) or client_cfg.get("url", "ws://127.0.0.1:8000/ws"),
            policy=ReconnectPolicy.from_config(cfg),
            namespace=str(client_cfg.get("namespace", "session")),
            **kwargs,
        )

    @property
    def session_id(self) -> str:
        return self.correlator.session_id

    @property
    def status(self):
        return self.connection.status

    @property
    def error(self):
        return self.connection.error

    @property
    def events(self):
        return self.assembler.events

    async def __aenter__(self) -> "ChatClient":
        await self.connection.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def send_message(self, content: str) -> bool:
        return await self.connection.send(self.correlator.user_message(content))

    def new_conversation(self) -> str:
        """Switch to a fresh sessionId; the socket is left as is."""
        sid = self.correlator.reset()
        self.assembler.bind(sid)
        return sid

    async def close(self) -> None:
        await self.connection.disconnect()

    def _on_frame(self, frame) -> None:
        if frame is not None:
            self.assembler.feed(frame)
