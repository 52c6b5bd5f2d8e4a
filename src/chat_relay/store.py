"""Session store keyed by sessionId (thread-safe, optional JSONL persistence)."""
from __future__ import annotations

import hashlib
import itertools
import json
import logging
import os
import re
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


class StoreError(RuntimeError):
    """Persistence failed; the caller must not treat the append as done."""


@dataclass
class ChatSession:
    session_id: str
    created_at: str
    user_id: Optional[str] = None


@dataclass
class Message:
    id: int
    session_id: str
    role: str
    content: str
    timestamp: str
    user_id: Optional[str] = None


# -----------------------------
# Helpers
# -----------------------------
def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_name(session_id: str) -> str:
    # Readable prefix plus a digest of the raw id, so distinct ids never share a file.
    s = re.sub(r"[^\w.\-@]+", "_", session_id.strip() or "default")[:96]
    digest = hashlib.sha256(session_id.encode("utf-8")).hexdigest()[:16]
    return f"{s}-{digest}"


def _append_line(path: Path, item: Dict[str, Any]) -> None:
    line = json.dumps(item, ensure_ascii=False)
    with path.open("a", encoding="utf-8") as f:
        f.write(line + "\n")
        f.flush()
        os.fsync(f.fileno())


def _read_lines(path: Path) -> Iterator[Dict[str, Any]]:
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                # A torn trailing write is the only expected corruption.
                logger.warning("Skipping corrupt line %d in %s: %s", line_no, path, e)


# -----------------------------
# SessionStore
# -----------------------------
class SessionStore:
    """Append-only conversation store.

    Sessions are created lazily by :meth:`get_or_create`; messages are kept
    in append order per session. Message ids come from one counter shared by
    the whole store, so they are monotonic overall and contiguous within an
    append call.

    With ``data_dir`` set, every session lives in ``<data_dir>/<id>.jsonl``:
    the first line is the session record, then one line per message. Files
    are loaded eagerly so the id counter resumes past the highest stored id.

    All operations take one re-entrant lock, which makes concurrent appends
    to different sessions and concurrent read/append on the same session
    safe from any thread or task.
    """

    def __init__(self, data_dir: Optional[str] = None) -> None:
        self.root: Optional[Path] = Path(data_dir) if data_dir else None
        self._sessions: Dict[str, ChatSession] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = threading.RLock()
        next_id = 1
        if self.root is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            next_id = self._load_all() + 1
        self._ids = itertools.count(next_id)

    # --------- core API ----------
    def get_or_create(self, session_id: str, user_id: Optional[str] = None) -> ChatSession:
        """Return the session for ``session_id``, creating it if unseen.

        A ``user_id`` is attached the first time one is supplied; sessions
        are otherwise never mutated.
        """
        if not session_id:
            raise StoreError("session_id must be a non-empty string")
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = ChatSession(session_id=session_id, created_at=_now_iso(), user_id=user_id)
                self._persist(session_id, {"kind": "session", **asdict(session)})
                self._sessions[session_id] = session
                self._messages[session_id] = []
                logger.info("Created chat session %s", session_id)
            elif user_id and not session.user_id:
                session.user_id = user_id
                self._persist(session_id, {"kind": "session_user", "session_id": session_id, "user_id": user_id})
            return session

    def get(self, session_id: str) -> Optional[ChatSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def append(
        self,
        session_id: str,
        role: str,
        content: str,
        user_id: Optional[str] = None,
    ) -> Message:
        """Append one message, creating the session if it does not exist yet."""
        if role not in ROLES:
            raise StoreError(f"role must be one of {ROLES}, got {role!r}")
        with self._lock:
            self.get_or_create(session_id)
            msg = Message(
                id=next(self._ids),
                session_id=session_id,
                role=role,
                content=content,
                timestamp=_now_iso(),
                user_id=user_id,
            )
            self._persist(session_id, {"kind": "message", **asdict(msg)})
            self._messages[session_id].append(msg)
            return msg

    def list(self, session_id: str) -> List[Message]:
        """Messages of a session in append order (empty for unknown ids)."""
        with self._lock:
            return list(self._messages.get(session_id, ()))

    # --------- convenience ----------
    def history(self, session_id: str) -> List[Dict[str, str]]:
        """Ordered ``{role, content}`` pairs, the shape agent engines consume."""
        return [{"role": m.role, "content": m.content} for m in self.list(session_id)]

    def list_sessions(self) -> List[ChatSession]:
        """All sessions, oldest first."""
        with self._lock:
            return sorted(self._sessions.values(), key=lambda s: s.created_at)

    # --------- internals ----------
    def _path(self, session_id: str) -> Path:
        assert self.root is not None
        return self.root / f"{_safe_name(session_id)}.jsonl"

    def _persist(self, session_id: str, record: Dict[str, Any]) -> None:
        if self.root is None:
            return
        try:
            _append_line(self._path(session_id), record)
        except (OSError, TypeError, ValueError) as e:
            logger.error("Failed to persist %s record for session %s: %s", record.get("kind"), session_id, e)
            raise StoreError(f"Failed to persist session {session_id}: {e}") from e

    def _load_all(self) -> int:
        """Load every session file; return the highest message id seen.

        Records are attributed by their own ``session_id``, never by the file
        they sit in, so a message always lands in the session that wrote it.
        """
        assert self.root is not None
        highest = 0
        messages: Dict[str, List[Message]] = {}
        for path in sorted(self.root.glob("*.jsonl")):
            for rec in _read_lines(path):
                kind = rec.pop("kind", None)
                try:
                    if kind == "session":
                        session = ChatSession(**rec)
                        self._sessions.setdefault(session.session_id, session)
                    elif kind == "session_user":
                        session = self._sessions.get(rec.get("session_id"))
                        if session is not None and not session.user_id:
                            session.user_id = rec.get("user_id")
                    elif kind == "message":
                        msg = Message(**rec)
                        messages.setdefault(msg.session_id, []).append(msg)
                        highest = max(highest, msg.id)
                except TypeError as e:
                    logger.warning("Skipping malformed %s record in %s: %s", kind, path, e)

        for session_id, msgs in messages.items():
            if session_id not in self._sessions:
                logger.warning("Ignoring %d messages for session %s: no session record", len(msgs), session_id)
                continue
            msgs.sort(key=lambda m: m.id)
        for session_id in self._sessions:
            self._messages[session_id] = messages.get(session_id, [])
        if self._sessions:
            logger.info("Loaded %d chat sessions from %s", len(self._sessions), self.root)
        return highest
