from __future__ import annotations

import json
from enum import Enum
from typing import Any, Mapping

MAX_FRAME_SIZE = 16 * 1024 * 1024


class MsgType(str, Enum):
    # Agent -> relay
    REGISTER = "register"
    HEARTBEAT = "heartbeat"
    RESPONSE = "response"

    # Relay -> agent
    REGISTERED = "registered"
    REQUEST = "request"


class Action(str, Enum):
    READ = "read"
    WRITE = "write"
    LIST = "list"
    RUN = "run"


# Action names used by older relays.
ACTION_ALIASES = {
    "readFile": Action.READ,
    "writeFile": Action.WRITE,
    "listDir": Action.LIST,
    "runCommand": Action.RUN,
}

# Envelope keys that payload fields must never override.
RESERVED_FIELDS = frozenset({"type", "requestId", "action"})


class ProtocolError(ValueError):
    pass


class FrameTooLarge(ValueError):
    pass


def ensure_message_type(value: Any) -> MsgType:
    if isinstance(value, MsgType):
        return value
    try:
        return MsgType(str(value))
    except ValueError as exc:
        raise ProtocolError(f"unknown message type: {value!r}") from exc


def normalize_action(value: Any) -> Action | None:
    if isinstance(value, Action):
        return value
    name = str(value or "")
    if name in ACTION_ALIASES:
        return ACTION_ALIASES[name]
    try:
        return Action(name)
    except ValueError:
        return None


def build_message(msg_type: MsgType | str, **fields: Any) -> dict[str, Any]:
    mt = ensure_message_type(msg_type)
    return {"type": mt.value, **fields}


def parse_message(data: str | bytes) -> dict[str, Any]:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    try:
        obj = json.loads(data)
    except ValueError as exc:
        raise ProtocolError("invalid JSON payload") from exc
    if not isinstance(obj, dict):
        raise ProtocolError("message payload must be a JSON object")
    if "type" not in obj:
        raise ProtocolError("message missing required field: type")
    ensure_message_type(obj["type"])
    return obj


def encode_message(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)
