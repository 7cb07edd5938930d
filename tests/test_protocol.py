from __future__ import annotations

import json

import pytest

from common.outcome import ErrorKind, Outcome
from common.protocol import (
    Action,
    MsgType,
    ProtocolError,
    build_message,
    encode_message,
    normalize_action,
    parse_message,
)


def test_build_and_parse_message() -> None:
    msg = build_message(MsgType.REGISTER, name="pc1", workDir="/work", platform="linux")
    assert msg == {"type": "register", "name": "pc1", "workDir": "/work", "platform": "linux"}
    assert parse_message(encode_message(msg)) == msg


def test_encode_keeps_non_ascii_text() -> None:
    text = encode_message({"type": "response", "content": "你好"})
    assert "你好" in text
    assert json.loads(text)["content"] == "你好"


def test_parse_accepts_bytes() -> None:
    assert parse_message(b'{"type":"heartbeat"}') == {"type": "heartbeat"}


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        "[1, 2, 3]",
        '{"name": "pc1"}',
        '{"type": "bogus"}',
    ],
)
def test_parse_rejects_malformed_frames(raw: str) -> None:
    with pytest.raises(ProtocolError):
        parse_message(raw)


def test_build_rejects_unknown_type() -> None:
    with pytest.raises(ProtocolError):
        build_message("bogus")


def test_normalize_action_accepts_legacy_names() -> None:
    assert normalize_action("read") is Action.READ
    assert normalize_action("readFile") is Action.READ
    assert normalize_action("writeFile") is Action.WRITE
    assert normalize_action("listDir") is Action.LIST
    assert normalize_action("runCommand") is Action.RUN
    assert normalize_action("delete") is None
    assert normalize_action(None) is None


def test_outcome_wire_forms() -> None:
    ok = Outcome.ok(content="hi", size=2)
    assert ok.to_wire() == {"success": True, "content": "hi", "size": 2}

    failed = Outcome.fail(ErrorKind.EXECUTION_FAILURE, "command exited with code 1", output="x", stderr="y")
    assert failed.to_wire() == {
        "success": False,
        "kind": "ExecutionFailure",
        "error": "command exited with code 1",
        "output": "x",
        "stderr": "y",
    }


def test_outcome_from_response_strips_envelope() -> None:
    outcome = Outcome.from_wire(
        {"type": "response", "requestId": "req-1", "success": False, "kind": "NotFound", "error": "gone"}
    )
    assert not outcome.success
    assert outcome.kind == "NotFound"
    assert outcome.error == "gone"
    assert outcome.to_wire() == {"success": False, "kind": "NotFound", "error": "gone"}


def test_outcome_from_legacy_response_without_kind() -> None:
    outcome = Outcome.from_wire({"type": "response", "requestId": "req-2", "success": False, "error": "boom"})
    assert outcome.kind is None
    assert outcome.error == "boom"
