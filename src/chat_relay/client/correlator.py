"""Session correlation: one stable sessionId per conversation surface."""
from __future__ import annotations

import itertools
import secrets
import threading
import time
from typing import Optional

from ..schema import Frame

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def new_session_id(namespace: str = "session") -> str:
    """``<namespace>_<ns timestamp>_<process counter>_<random>``, unique per process."""
    with _counter_lock:
        seq = next(_counter)
    return f"{namespace}_{time.time_ns()}_{seq}_{secrets.token_hex(4)}"


class SessionCorrelator:
    """Generates the sessionId lazily and stamps it on outbound frames.

    The id survives reconnects of the connection manager; only
    :meth:`reset` (a new conversation) replaces it. No server calls are made.
    """

    def __init__(self, namespace: str = "session", user_id: Optional[str] = None) -> None:
        self.namespace = namespace
        self.user_id = user_id
        self._session_id: Optional[str] = None

    @property
    def session_id(self) -> str:
        if self._session_id is None:
            self._session_id = new_session_id(self.namespace)
        return self._session_id

    def user_message(self, content: str) -> Frame:
        return Frame.user_message(self.session_id, content, user_id=self.user_id)

    def reset(self) -> str:
        """Start a new conversation and return its id."""
        self._session_id = None
        return self.session_id
