from __future__ import annotations

import json

import pytest

from chat_relay.schema import Frame, FrameError, FrameType, Role, parse_frame


def test_parse_user_message():
    frame = parse_frame(json.dumps({
        "type": "user_message",
        "sessionId": "s1",
        "content": "Book dentist tomorrow",
        "timestamp": "2024-05-01T10:00:00Z",
    }))
    assert frame.type is FrameType.USER_MESSAGE
    assert frame.session_id == "s1"
    assert frame.content == "Book dentist tomorrow"


@pytest.mark.parametrize("raw", [
    "not json",
    "[1, 2]",
    json.dumps({"type": "shout", "sessionId": "s1"}),
    json.dumps({"type": ["typing"], "sessionId": "s1"}),
    json.dumps({"type": "typing"}),
    json.dumps({"type": "agent_response", "sessionId": "s1", "content": 5}),
    json.dumps({"type": "user_message", "sessionId": "s1", "role": "system"}),
    json.dumps({"type": "agent_response", "sessionId": "s1"}),
    json.dumps({"type": "user_message", "sessionId": "s1"}),
    json.dumps({"type": "error", "sessionId": "s1"}),
    json.dumps({"type": "error", "content": None}),
])
def test_invalid_payloads_raise_frame_error(raw):
    with pytest.raises(FrameError):
        parse_frame(raw)


def test_frame_error_keeps_session_id_when_recoverable():
    with pytest.raises(FrameError) as exc:
        parse_frame(json.dumps({"type": "nope", "sessionId": "s9"}))
    assert exc.value.session_id == "s9"


def test_connected_and_error_frames_may_omit_session():
    assert parse_frame('{"type": "connected"}').session_id == ""
    assert parse_frame('{"type": "error", "content": "bad"}').content == "bad"


def test_outbound_frames_serialize_with_wire_names():
    data = json.loads(Frame.agent_response("s1", "Hel").to_json())
    assert data["type"] == "agent_response"
    assert data["sessionId"] == "s1"
    assert data["content"] == "Hel"
    assert data["role"] == Role.ASSISTANT.value
    assert "userId" not in data

    hello = Frame.connected().to_dict()
    assert hello["type"] == "connected"
    assert "sessionId" not in hello and "content" not in hello


def test_numeric_user_id_is_coerced():
    frame = parse_frame({"type": "user_message", "sessionId": "s1", "content": "x", "userId": 7})
    assert frame.user_id == "7"
