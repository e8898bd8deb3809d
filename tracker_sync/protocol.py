"""Sync messages, their payload codecs and the JSON line framing.

Each frame on the socket is one line holding an encrypted envelope
(:class:`tracker_crypto.Encrypted`) whose plaintext is a request or response
message serialized as compact JSON.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Union

from tracker_crypto import Encrypted, PayloadCodec
from tracker_database import parse_timestamp

from .constants import MAX_MESSAGE_BYTES


class ProtocolError(Exception):
    """Raised on framing or message (de)serialization failures."""


# ---------- requests ----------
@dataclass(frozen=True)
class GetModifiedDate:
    kind = "get_modified_date"


@dataclass(frozen=True)
class DownloadDatabase:
    kind = "download_database"


@dataclass(frozen=True)
class UpdateDatabase:
    kind = "update_database"

    database_binary: bytes
    last_modified: datetime


@dataclass(frozen=True)
class WatchModified:
    """Subscribe to :class:`DatabaseModified` notifications on this connection."""

    kind = "watch_modified"


Request = Union[GetModifiedDate, DownloadDatabase, UpdateDatabase, WatchModified]


# ---------- responses ----------
@dataclass(frozen=True)
class ModifiedDate:
    kind = "modified_date"

    last_modified: datetime


@dataclass(frozen=True)
class DatabaseData:
    kind = "database"

    database_binary: bytes
    last_modified: datetime


@dataclass(frozen=True)
class DatabaseUpdated:
    kind = "database_updated"


@dataclass(frozen=True)
class InvalidPassword:
    kind = "invalid_password"


@dataclass(frozen=True)
class InvalidDatabaseBinary:
    kind = "invalid_database_binary"


@dataclass(frozen=True)
class DatabaseModified:
    kind = "database_modified"

    last_modified: datetime


Response = Union[
    ModifiedDate,
    DatabaseData,
    DatabaseUpdated,
    InvalidPassword,
    InvalidDatabaseBinary,
    DatabaseModified,
]

_REQUEST_TYPES = {cls.kind: cls for cls in (GetModifiedDate, DownloadDatabase, UpdateDatabase, WatchModified)}
_RESPONSE_TYPES = {
    cls.kind: cls
    for cls in (
        ModifiedDate,
        DatabaseData,
        DatabaseUpdated,
        InvalidPassword,
        InvalidDatabaseBinary,
        DatabaseModified,
    )
}


def message_to_dict(message: Union[Request, Response]) -> Dict[str, Any]:
    data: Dict[str, Any] = {"kind": message.kind}
    database_binary = getattr(message, "database_binary", None)
    if database_binary is not None:
        data["database_b64"] = base64.b64encode(database_binary).decode("ascii")
    last_modified = getattr(message, "last_modified", None)
    if last_modified is not None:
        data["last_modified"] = last_modified.isoformat()
    return data


def _message_from_dict(data: Any, types: Dict[str, type]) -> Any:
    if not isinstance(data, dict):
        raise ValueError("message must be a JSON object")
    kind = data.get("kind")
    cls = types.get(kind)
    if cls is None:
        raise ValueError(f"unknown message kind: {kind!r}")
    kwargs: Dict[str, Any] = {}
    if cls in (UpdateDatabase, DatabaseData):
        try:
            kwargs["database_binary"] = base64.b64decode(data["database_b64"], validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid database_b64: {exc}") from exc
    if cls in (UpdateDatabase, DatabaseData, ModifiedDate, DatabaseModified):
        kwargs["last_modified"] = parse_timestamp(data["last_modified"])
    return cls(**kwargs)


def request_from_dict(data: Any) -> Request:
    return _message_from_dict(data, _REQUEST_TYPES)


def response_from_dict(data: Any) -> Response:
    return _message_from_dict(data, _RESPONSE_TYPES)


def _encode_json(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


REQUEST_CODEC: PayloadCodec[Request] = PayloadCodec(
    name="project_tracker.request",
    encode=lambda message: _encode_json(message_to_dict(message)),
    decode=lambda data: request_from_dict(json.loads(data.decode("utf-8"))),
)

RESPONSE_CODEC: PayloadCodec[Response] = PayloadCodec(
    name="project_tracker.response",
    encode=lambda message: _encode_json(message_to_dict(message)),
    decode=lambda data: response_from_dict(json.loads(data.decode("utf-8"))),
)


# ---------- framing ----------
class JsonLineFramer:
    """Splits a TCP byte stream into JSON objects, one per line."""

    def __init__(self, *, max_message_bytes: int = MAX_MESSAGE_BYTES) -> None:
        self._buffer = bytearray()
        self._max_message_bytes = max_message_bytes

    def feed(self, chunk: bytes) -> List[Dict[str, Any]]:
        """Add a chunk and return every message it completed."""
        if not chunk:
            return []
        self._buffer.extend(chunk)

        messages: List[Dict[str, Any]] = []
        while True:
            newline_index = self._buffer.find(b"\n")
            if newline_index == -1:
                break
            line = bytes(self._buffer[:newline_index]).strip()
            del self._buffer[: newline_index + 1]
            if line:
                messages.append(parse_json_line(line))
        if len(self._buffer) > self._max_message_bytes:
            raise ProtocolError("message exceeds max size")
        return messages


def parse_json_line(line: bytes) -> Dict[str, Any]:
    try:
        obj = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"bad json: {exc}") from exc
    if not isinstance(obj, dict):
        raise ProtocolError("frame must be a JSON object")
    return obj


def encode_message(obj: Dict[str, Any]) -> bytes:
    try:
        payload = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"cannot encode message: {exc}") from exc
    return (payload + "\n").encode("utf-8")


def seal(message: Any, password: str, codec: PayloadCodec[Any]) -> bytes:
    """Encrypt ``message`` and frame it as one line."""
    return encode_message(Encrypted.encrypt_typed(message, password, codec).to_dict())


def unseal(frame: Dict[str, Any], password: str, codec: PayloadCodec[Any]) -> Any:
    """Decrypt one frame; raises the :mod:`tracker_crypto` errors unchanged."""
    envelope = Encrypted.from_dict(frame)
    return envelope.decrypt_typed(password, codec)


__all__ = [
    "DatabaseData",
    "DatabaseModified",
    "DatabaseUpdated",
    "DownloadDatabase",
    "GetModifiedDate",
    "InvalidDatabaseBinary",
    "InvalidPassword",
    "JsonLineFramer",
    "ModifiedDate",
    "ProtocolError",
    "REQUEST_CODEC",
    "RESPONSE_CODEC",
    "Request",
    "Response",
    "UpdateDatabase",
    "WatchModified",
    "encode_message",
    "message_to_dict",
    "parse_json_line",
    "request_from_dict",
    "response_from_dict",
    "seal",
    "unseal",
]
