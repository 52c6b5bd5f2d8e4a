"""Real-time chat relay: a streaming agent transport over one WebSocket.

Server side, :func:`create_app` returns a FastAPI application that accepts
``user_message`` frames and streams the agent reply back as ``typing`` /
``agent_response`` / ``done`` frames. Client side, :mod:`chat_relay.client`
provides a reconnecting connection manager and a stream assembler.

Typical usage
-------------
from chat_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 8000
"""

from __future__ import annotations

from .schema import Frame, FrameError, FrameType, Role, parse_frame
from .server import create_app

__all__ = [
    "create_app",
    "Frame",
    "FrameError",
    "FrameType",
    "Role",
    "parse_frame",
    "__version__",
    "get_version",
]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
