from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from common.protocol import RESERVED_FIELDS


class ErrorKind(str, Enum):
    PATH_ESCAPE = "PathEscape"
    NOT_FOUND = "NotFound"
    TOO_LARGE = "TooLarge"
    EXECUTION_FAILURE = "ExecutionFailure"
    INVALID_REQUEST = "InvalidRequest"
    UNKNOWN_ACTION = "UnknownAction"
    IO_ERROR = "IOError"


@dataclass(slots=True, frozen=True)
class Outcome:
    """Result of one agent action.

    A success carries action data (``content``, ``entries``, ``output`` ...).
    A failure carries an error kind, a readable cause and, for ``run``,
    whatever output was captured before the process ended.
    """

    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    kind: str | None = None
    error: str = ""

    @classmethod
    def ok(cls, **data: Any) -> Outcome:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, kind: ErrorKind | str, error: str, **partial: Any) -> Outcome:
        kind_value = kind.value if isinstance(kind, ErrorKind) else str(kind)
        return cls(success=False, data=partial, kind=kind_value, error=error)

    def to_wire(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, **self.data}
        return {"success": False, "kind": self.kind, "error": self.error, **self.data}

    @classmethod
    def from_wire(cls, message: Mapping[str, Any]) -> Outcome:
        fields = {k: v for k, v in message.items() if k not in RESERVED_FIELDS}
        success = bool(fields.pop("success", False))
        kind = fields.pop("kind", None)
        error = fields.pop("error", "")
        if success:
            return cls(success=True, data=fields)
        return cls(
            success=False,
            data=fields,
            kind=str(kind) if kind is not None else None,
            error=str(error or ""),
        )
