"""FastAPI application exposing the chat WebSocket and read-only session views."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from .config import load_config
from .engine import AgentEngine, create_engine
from .handler import ConnectionHandler, TurnGate
from .store import SessionStore


# -----------------------------
# Pydantic response models
# -----------------------------
class SessionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    created_at: str = Field(..., alias="createdAt")


class MessageOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    session_id: str = Field(..., alias="sessionId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    role: str
    content: str
    timestamp: str


# -----------------------------
# Utilities
# -----------------------------
def _make_store(cfg: Dict[str, Any]) -> SessionStore:
    store_cfg = cfg.get("store", {}) or {}
    return SessionStore(store_cfg.get("data_dir"))


def _make_engine(cfg: Dict[str, Any]) -> AgentEngine:
    return create_engine(cfg)


def _make_gate(cfg: Dict[str, Any]) -> TurnGate:
    turns_cfg = cfg.get("turns", {}) or {}
    return TurnGate(max_pending=int(turns_cfg.get("max_pending", 1)))


def _turn_timeout(cfg: Dict[str, Any]) -> Optional[float]:
    value = (cfg.get("engine", {}) or {}).get("turn_timeout", 60.0)
    return float(value) if value else None


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    engine: Optional[AgentEngine] = None,
    store: Optional[SessionStore] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    server_cfg = cfg.get("server", {}) or {}
    cors_origins = server_cfg.get("cors_origins", ["*"])
    ws_path = server_cfg.get("ws_path", "/ws")

    # Services
    engine = engine or _make_engine(cfg)
    store = store or _make_store(cfg)
    gate = _make_gate(cfg)
    turn_timeout = _turn_timeout(cfg)

    app = FastAPI(title="Chat Relay", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.store = store
    app.state.engine = engine
    app.state.gate = gate

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "engine": type(engine).__name__,
            "data_dir": str(store.root) if store.root else None,
            "ws_path": ws_path,
        }

    @app.get("/sessions", response_model=List[SessionOut], response_model_by_alias=True)
    def list_sessions() -> List[SessionOut]:
        return [
            SessionOut(session_id=s.session_id, user_id=s.user_id, created_at=s.created_at)
            for s in store.list_sessions()
        ]

    @app.get(
        "/sessions/{session_id}/messages",
        response_model=List[MessageOut],
        response_model_by_alias=True,
    )
    def list_messages(session_id: str) -> List[MessageOut]:
        if store.get(session_id) is None:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return [
            MessageOut(
                id=m.id,
                session_id=m.session_id,
                user_id=m.user_id,
                role=m.role,
                content=m.content,
                timestamp=m.timestamp,
            )
            for m in store.list(session_id)
        ]

    @app.websocket(ws_path)
    async def chat_socket(ws: WebSocket) -> None:
        handler = ConnectionHandler(ws, store, engine, gate, turn_timeout=turn_timeout)
        await handler.run()

    return app
