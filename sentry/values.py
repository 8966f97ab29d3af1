"""Channel value kinds, per-entry results and taxonomy errors."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

OP_FETCH = "fetch"
OP_SEND = "send"


class TaxonomyError(Exception):
    """Base class for errors reported per channel to a request dispatcher."""

    kind = "TaxonomyError"

    def to_json(self) -> dict[str, str]:
        return {"kind": self.kind, "message": str(self)}


class OperationNotSupported(TaxonomyError):
    kind = "OperationNotSupported"

    def __init__(self, operation: str, channel_id: str) -> None:
        super().__init__(f"{operation} is not supported by channel {channel_id}")
        self.operation = operation
        self.channel_id = channel_id


class ValueTypeMismatch(TaxonomyError):
    kind = "ValueTypeMismatch"

    def __init__(self, expected: str, got: Any) -> None:
        super().__init__(f"expected {expected}, got {got!r}")
        self.expected = expected
        self.got = got


class StreamDescriptor:
    """Where to consume a live stream. Read-only, server generated.

    Two descriptors never compare equal, even with identical ports: each one
    names a distinct live session.
    """

    __slots__ = ("_port",)

    def __init__(self, port: int) -> None:
        port = int(port)
        if not 0 <= port <= 0xFFFF:
            raise ValueError(f"port out of range: {port}")
        self._port = port

    @property
    def port(self) -> int:
        return self._port

    def __eq__(self, other: object) -> bool:
        return False

    def __ne__(self, other: object) -> bool:
        return True

    __hash__ = object.__hash__

    def __repr__(self) -> str:
        return f"StreamDescriptor(port={self._port})"

    def to_json(self) -> dict[str, int]:
        return {"port": self._port}

    @classmethod
    def parse(cls, raw: Any) -> "StreamDescriptor":
        raise ValueTypeMismatch("nothing (stream descriptors are read-only)", raw)


class OnOff(Enum):
    ON = "On"
    OFF = "Off"

    def to_json(self) -> str:
        return self.value

    @classmethod
    def parse(cls, raw: Any) -> "OnOff":
        if isinstance(raw, OnOff):
            return raw
        if isinstance(raw, bool):
            return cls.ON if raw else cls.OFF
        if isinstance(raw, str):
            lowered = raw.strip().lower()
            if lowered == "on":
                return cls.ON
            if lowered == "off":
                return cls.OFF
        raise ValueTypeMismatch("On/Off", raw)


def value_to_json(value: Any) -> Any:
    if value is None:
        return None
    to_json = getattr(value, "to_json", None)
    if callable(to_json):
        return to_json()
    return value


@dataclass
class OpResult:
    """Outcome of one channel entry in a batched fetch or send."""

    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_json(self) -> dict[str, Any]:
        if self.error is None:
            return {"ok": True, "value": value_to_json(self.value)}
        to_json = getattr(self.error, "to_json", None)
        if callable(to_json):
            error = to_json()
        else:
            error = {"kind": type(self.error).__name__, "message": str(self.error)}
        return {"ok": False, "error": error}
