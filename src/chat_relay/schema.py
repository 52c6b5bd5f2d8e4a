"""Wire frames exchanged on the chat socket (one JSON object per text frame)."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class FrameType(str, Enum):
    """The six frame kinds understood by both ends."""
    CONNECTED = "connected"
    USER_MESSAGE = "user_message"
    TYPING = "typing"
    AGENT_RESPONSE = "agent_response"
    DONE = "done"
    ERROR = "error"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


# Frames that may legitimately travel without a sessionId.
_SESSIONLESS = {FrameType.CONNECTED, FrameType.ERROR}
# Frames that always carry a content string (possibly empty).
_WITH_CONTENT = {FrameType.USER_MESSAGE, FrameType.AGENT_RESPONSE, FrameType.ERROR}


class FrameError(ValueError):
    """Raised when a payload is not a valid frame.

    ``session_id`` holds whatever sessionId could be recovered from the raw
    payload so that an ``error`` answer can still be correlated.
    """

    def __init__(self, message: str, session_id: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, use_enum_values=False)

    type: FrameType
    session_id: str = Field(default="", alias="sessionId")
    content: Optional[str] = None
    role: Optional[Role] = None
    timestamp: Optional[str] = None
    user_id: Optional[str] = Field(default=None, alias="userId")

    @field_validator("user_id", mode="before")
    @classmethod
    def _coerce_user_id(cls, v: Any) -> Any:
        # numeric ids are common on the wire
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @model_validator(mode="after")
    def _check_required(self) -> "Frame":
        if self.type not in _SESSIONLESS and not self.session_id:
            raise ValueError(f"sessionId is required on '{self.type.value}' frames")
        if self.type in _WITH_CONTENT and self.content is None:
            raise ValueError(f"content is required on '{self.type.value}' frames")
        return self

    # ------------------------------------------------------------------
    # Constructors for the frames the server emits
    # ------------------------------------------------------------------
    @classmethod
    def connected(cls) -> "Frame":
        return cls(type=FrameType.CONNECTED, session_id="", timestamp=_now_iso())

    @classmethod
    def typing(cls, session_id: str) -> "Frame":
        return cls(type=FrameType.TYPING, session_id=session_id, timestamp=_now_iso())

    @classmethod
    def agent_response(cls, session_id: str, fragment: str) -> "Frame":
        return cls(
            type=FrameType.AGENT_RESPONSE,
            session_id=session_id,
            content=fragment,
            role=Role.ASSISTANT,
            timestamp=_now_iso(),
        )

    @classmethod
    def done(cls, session_id: str) -> "Frame":
        return cls(type=FrameType.DONE, session_id=session_id, timestamp=_now_iso())

    @classmethod
    def error(cls, session_id: str, cause: str) -> "Frame":
        return cls(type=FrameType.ERROR, session_id=session_id, content=cause, timestamp=_now_iso())

    @classmethod
    def user_message(cls, session_id: str, content: str, user_id: Optional[str] = None) -> "Frame":
        return cls(
            type=FrameType.USER_MESSAGE,
            session_id=session_id,
            content=content,
            role=Role.USER,
            timestamp=_now_iso(),
            user_id=user_id,
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        # connected never echoes a session or any content
        if self.type is FrameType.CONNECTED:
            data.pop("sessionId", None)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    err = errors[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
    msg = str(err.get("msg", "invalid value"))
    if msg.startswith("Value error, "):
        msg = msg[len("Value error, "):]
    return f"{loc}: {msg}" if loc else msg


def parse_frame(raw: Union[str, bytes, Dict[str, Any]]) -> Frame:
    """Parse and validate one inbound payload.

    Raises
    ------
    FrameError
        If the payload is not JSON, not an object, has an unknown ``type``,
        lacks a required ``sessionId`` or carries fields of the wrong type.
    """
    if isinstance(raw, dict):
        data: Any = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise FrameError(f"Malformed frame: {e}") from e

    if not isinstance(data, dict):
        raise FrameError("Malformed frame: expected a JSON object")

    sid = data.get("sessionId")
    sid = sid if isinstance(sid, str) else ""

    kind = data.get("type")
    if not isinstance(kind, str) or kind not in {t.value for t in FrameType}:
        raise FrameError(f"Unknown frame type: {kind!r}", session_id=sid)

    try:
        return Frame.model_validate(data)
    except ValidationError as e:
        raise FrameError(f"Invalid '{kind}' frame: {_first_error(e)}", session_id=sid) from e
