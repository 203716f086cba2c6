"""Control-message envelope spoken over the terminal websocket.

Every frame is a JSON object discriminated by its ``type`` field. Inbound
frames come from the client; outbound frames are produced by the gateway.
Unknown discriminators and malformed fields raise ``ProtocolDecodeError``.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from .errors import ProtocolDecodeError

# TIOCSWINSZ carries rows/cols as unsigned shorts.
MAX_DIMENSION = 0xFFFF


@dataclass(frozen=True)
class Create:
    id: Optional[str] = None
    type = "create"


@dataclass(frozen=True)
class Input:
    session_id: str
    data: str
    type = "input"


@dataclass(frozen=True)
class Resize:
    session_id: str
    cols: int
    rows: int
    type = "resize"


@dataclass(frozen=True)
class Close:
    session_id: str
    type = "close"


@dataclass(frozen=True)
class Created:
    session_id: str
    type = "created"


@dataclass(frozen=True)
class Output:
    session_id: str
    data: str
    type = "output"


@dataclass(frozen=True)
class Closed:
    session_id: str
    type = "closed"


@dataclass(frozen=True)
class Error:
    message: str
    type = "error"


Inbound = Union[Create, Input, Resize, Close]
Outbound = Union[Created, Output, Closed, Error]


def _check_encodable(value: str, key: str) -> str:
    # JSON escapes can smuggle in lone surrogates, which have no UTF-8 form.
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise ProtocolDecodeError(f"'{key}' is not valid UTF-8 text: {exc.reason}") from exc
    return value


def _require_str(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ProtocolDecodeError(f"'{key}' must be a string")
    return _check_encodable(value, key)


def _require_dimension(payload: Dict[str, Any], key: str) -> int:
    value = payload.get(key)
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolDecodeError(f"'{key}' must be an integer")
    if value < 1 or value > MAX_DIMENSION:
        raise ProtocolDecodeError(f"'{key}' out of range: {value}")
    return value


def _decode_create(payload: Dict[str, Any]) -> Create:
    session_id = payload.get("id")
    if session_id is not None and (not isinstance(session_id, str) or not session_id):
        raise ProtocolDecodeError("'id' must be a non-empty string")
    if session_id is not None:
        _check_encodable(session_id, "id")
    return Create(id=session_id)


def _decode_input(payload: Dict[str, Any]) -> Input:
    return Input(session_id=_require_str(payload, "session_id"), data=_require_str(payload, "data"))


def _decode_resize(payload: Dict[str, Any]) -> Resize:
    return Resize(
        session_id=_require_str(payload, "session_id"),
        cols=_require_dimension(payload, "cols"),
        rows=_require_dimension(payload, "rows"),
    )


def _decode_close(payload: Dict[str, Any]) -> Close:
    return Close(session_id=_require_str(payload, "session_id"))


_DECODERS = {
    Create.type: _decode_create,
    Input.type: _decode_input,
    Resize.type: _decode_resize,
    Close.type: _decode_close,
}


def decode_frame(text: Union[str, bytes]) -> Inbound:
    """Decode one inbound text frame into its message variant."""
    try:
        payload = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise ProtocolDecodeError(f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ProtocolDecodeError("Frame must be a JSON object")
    kind = payload.get("type")
    decoder = _DECODERS.get(kind) if isinstance(kind, str) else None
    if decoder is None:
        raise ProtocolDecodeError(f"Unknown message type: {kind!r}")
    return decoder(payload)


def to_dict(message: Outbound) -> Dict[str, Any]:
    return {"type": message.type, **asdict(message)}


def encode_frame(message: Outbound) -> str:
    return json.dumps(to_dict(message), separators=(",", ":"), ensure_ascii=False)
