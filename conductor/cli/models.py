"""Typed models for the conductor HTTP API and session stream."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Literal, TypeAlias

from pydantic import ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.dataclasses import dataclass as pydantic_dataclass

JsonValue: TypeAlias = str | int | float | bool | None | list["JsonValue"] | dict[str, "JsonValue"]
JsonObject: TypeAlias = dict[str, JsonValue]

_WIRE_CONFIG = ConfigDict(populate_by_name=True, extra="ignore")


@pydantic_dataclass(frozen=True, config=_WIRE_CONFIG)
class SessionInfo:
    id: str
    name: str = ""
    created_at: str | None = Field(default=None, alias="createdAt")
    endpoint_id: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@pydantic_dataclass(frozen=True, config=_WIRE_CONFIG)
class CreateSessionResult:
    id: str
    name: str = ""


@pydantic_dataclass(frozen=True, config=_WIRE_CONFIG)
class LoginResult:
    token: str
    success: bool = True


@pydantic_dataclass(frozen=True, config=_WIRE_CONFIG)
class HealthInfo:
    status: str


# --- Session stream frames ---


@dataclass(frozen=True)
class InputFrame:
    data: str
    type: Literal["input"] = "input"


@dataclass(frozen=True)
class OutputFrame:
    data: str = ""
    type: Literal["output"] = "output"


@dataclass(frozen=True)
class ResizeFrame:
    rows: int
    cols: int
    type: Literal["resize"] = "resize"


StreamFrame = InputFrame | OutputFrame | ResizeFrame


@dataclass(frozen=True)
class UnknownFrame:
    """Frame that could not be decoded; always dropped by consumers."""

    raw: str | bytes = field(repr=False)
    reason: str = ""


_FRAME_ADAPTERS: dict[str, TypeAdapter[InputFrame] | TypeAdapter[OutputFrame] | TypeAdapter[ResizeFrame]] = {
    "input": TypeAdapter(InputFrame),
    "output": TypeAdapter(OutputFrame),
    "resize": TypeAdapter(ResizeFrame),
}

SESSION_LIST_ADAPTER = TypeAdapter(list[SessionInfo])


def encode_frame(frame: StreamFrame) -> str:
    """Serialize a text frame for the wire."""
    if isinstance(frame, ResizeFrame):
        return json.dumps({"type": frame.type, "rows": frame.rows, "cols": frame.cols})
    return json.dumps({"type": frame.type, "data": frame.data})


def decode_frame(message: str | bytes) -> StreamFrame | UnknownFrame:
    """Decode one inbound message into a tagged frame.

    Never raises: anything that is not a well-formed text frame of a known
    type comes back as `UnknownFrame`.
    """
    if isinstance(message, bytes):
        return UnknownFrame(raw=message, reason="binary")
    try:
        payload = json.loads(message)
    except json.JSONDecodeError:
        return UnknownFrame(raw=message, reason="invalid json")
    if not isinstance(payload, dict):
        return UnknownFrame(raw=message, reason="not an object")
    adapter = _FRAME_ADAPTERS.get(str(payload.get("type")))
    if adapter is None:
        return UnknownFrame(raw=message, reason=f"unknown type {payload.get('type')!r}")
    try:
        return adapter.validate_python(payload)
    except ValidationError as e:
        return UnknownFrame(raw=message, reason=f"invalid {payload.get('type')} frame: {e.error_count()} errors")


def encode_binary(data: str) -> bytes:
    """Pack each character's low 8 bits into a raw binary frame."""
    return bytes(ord(ch) & 0xFF for ch in data)
