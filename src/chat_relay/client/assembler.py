"""Fold the inbound frame sequence into assistant-message lifecycle events."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from ..schema import Frame, FrameType
from .observable import Observable

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    COMPOSING = "composing"
    UPDATE = "update"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class AssemblerEvent:
    kind: EventKind
    text: str = ""


class StreamAssembler:
    """Accumulates ``agent_response`` fragments for one conversation.

    Events (on :attr:`events`):
      - composing        once per turn, on the first ``typing`` or fragment
      - update(partial)  after every fragment, with the text so far
      - complete(final)  on ``done``, then the buffer is reset
      - failed(cause)    on ``error``, the buffer is discarded

    At most one buffer exists. A ``typing`` that arrives while fragments of
    the previous turn are still unterminated completes that turn first.
    Frames for another sessionId are ignored; ``error`` frames with an empty
    sessionId are connection-level and always apply.
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.events: Observable[Optional[AssemblerEvent]] = Observable(None)
        self._buffer: Optional[List[str]] = None

    @property
    def in_progress(self) -> bool:
        return self._buffer is not None

    @property
    def partial(self) -> str:
        return "".join(self._buffer or ())

    def bind(self, session_id: str) -> None:
        """Follow another conversation; any unfinished buffer is dropped."""
        self.session_id = session_id
        self._buffer = None

    def reset(self) -> None:
        self._buffer = None

    def feed(self, frame: Frame) -> None:
        kind = frame.type
        if kind in (FrameType.CONNECTED, FrameType.USER_MESSAGE):
            return

        if frame.session_id != self.session_id:
            if kind is not FrameType.ERROR or frame.session_id:
                logger.debug("Ignoring %s frame for session %s", kind.value, frame.session_id)
                return

        if kind is FrameType.TYPING:
            if self._buffer:
                logger.warning("typing before done on session %s; closing previous turn", self.session_id)
                self._complete()
            self._start()
        elif kind is FrameType.AGENT_RESPONSE:
            self._start()
            self._buffer.append(frame.content or "")
            self._emit(EventKind.UPDATE, self.partial)
        elif kind is FrameType.DONE:
            if self._buffer is None:
                logger.debug("done without an open turn on session %s", self.session_id)
                return
            self._complete()
        elif kind is FrameType.ERROR:
            self._buffer = None
            self._emit(EventKind.FAILED, frame.content or "An error occurred")

    # --------- internals ----------
    def _start(self) -> None:
        if self._buffer is None:
            self._buffer = []
            self._emit(EventKind.COMPOSING)

    def _complete(self) -> None:
        final = self.partial
        self._buffer = None
        self._emit(EventKind.COMPLETE, final)

    def _emit(self, kind: EventKind, text: str = "") -> None:
        self.events.emit(AssemblerEvent(kind, text))
