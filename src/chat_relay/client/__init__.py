"""Client side of the relay: connection lifecycle, session ids, stream assembly."""

from .assembler import AssemblerEvent, EventKind, StreamAssembler
from .chat import ChatClient
from .connection import ConnectionManager, ConnectionStatus, ReconnectPolicy
from .correlator import SessionCorrelator, new_session_id
from .observable import Observable

__all__ = [
    "AssemblerEvent",
    "ChatClient",
    "ConnectionManager",
    "ConnectionStatus",
    "EventKind",
    "Observable",
    "ReconnectPolicy",
    "SessionCorrelator",
    "StreamAssembler",
    "new_session_id",
]
