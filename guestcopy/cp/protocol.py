"""
Copy Protocol Definitions

This module defines the messages exchanged over the copy channel between the
client and the guest endpoint.

Protocol Flow (to guest):
1. Client opens a channel for ONE filesystem entry
2. Client sends a TransferRequest (direction="to") as a text frame
3. For a file, client sends the content as binary frames
4. Client sends an end marker
5. Server replies with exactly one result or error frame

Protocol Flow (from guest):
1. Client opens a channel and sends a TransferRequest (direction="from")
2. Server streams, per entry: header, binary frames (files only), end
3. Server finishes with an end marker whose "final" flag is set

Message Format:
Control messages are JSON objects sent as text frames. File content travels
as raw binary frames with no envelope; an entry's content ends at its end
marker, not at a declared byte count.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Union

from ..errors import ProtocolError


class Direction(str, Enum):
    """Transfer direction, as seen from the client."""

    TO = "to"  # Local -> guest
    FROM = "from"  # Guest -> local


class MessageType(str, Enum):
    """Discriminant of control messages."""

    HEADER = "header"  # Entry metadata (guest -> client)
    END = "end"  # End of entry, or of the whole transfer if final
    RESULT = "result"  # Outcome of a "to" transfer
    ERROR = "error"  # Terminal failure


class EntryKind(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class TransferRequest:
    """First (and only) message the client sends on a channel.

    Zero and false fields are left off the wire, matching the service.
    """

    direction: str
    guest_path: str
    is_dir: bool = False
    mode: int = 0
    follow_links: bool = False
    uid: int = 0
    gid: int = 0
    mtime: int = 0  # Only set in archive mode

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "direction": self.direction,
            "guest_path": self.guest_path,
        }
        for key in ("is_dir", "mode", "follow_links", "uid", "gid", "mtime"):
            value = getattr(self, key)
            if value:
                result[key] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferRequest":
        direction = _field(data, "direction", str)
        if direction not in (Direction.TO.value, Direction.FROM.value):
            raise ProtocolError(f"invalid transfer direction: {direction!r}")
        return cls(
            direction=direction,
            guest_path=_field(data, "guest_path", str),
            is_dir=_field(data, "is_dir", bool, False),
            mode=_field(data, "mode", int, 0),
            follow_links=_field(data, "follow_links", bool, False),
            uid=_field(data, "uid", int, 0),
            gid=_field(data, "gid", int, 0),
            mtime=_field(data, "mtime", int, 0),
        )


@dataclass(frozen=True)
class EntryHeader:
    """Metadata for one entry streamed from the guest."""

    path: str  # Relative to the destination root
    mode: int = 0
    is_dir: bool = False
    is_symlink: bool = False
    link_target: str = ""
    size: int = 0
    mtime: int = 0  # Unix seconds; 0 means unknown
    uid: int = 0
    gid: int = 0

    @property
    def kind(self) -> EntryKind:
        if self.is_dir:
            return EntryKind.DIRECTORY
        if self.is_symlink:
            return EntryKind.SYMLINK
        return EntryKind.FILE

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": MessageType.HEADER.value,
            "path": self.path,
            "mode": self.mode,
            "is_dir": self.is_dir,
            "is_symlink": self.is_symlink,
            "link_target": self.link_target,
            "size": self.size,
            "mtime": self.mtime,
        }
        if self.uid:
            result["uid"] = self.uid
        if self.gid:
            result["gid"] = self.gid
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntryHeader":
        return cls(
            path=_field(data, "path", str, ""),
            mode=_field(data, "mode", int, 0),
            is_dir=_field(data, "is_dir", bool, False),
            is_symlink=_field(data, "is_symlink", bool, False),
            link_target=_field(data, "link_target", str, "") or "",
            size=_field(data, "size", int, 0),
            mtime=_field(data, "mtime", int, 0),
            uid=_field(data, "uid", int, 0),
            gid=_field(data, "gid", int, 0),
        )


@dataclass(frozen=True)
class EndMarker:
    """Ends the current entry; final=True ends the whole transfer."""

    final: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": MessageType.END.value}
        if self.final:
            result["final"] = True
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EndMarker":
        return cls(final=_field(data, "final", bool, False))


@dataclass(frozen=True)
class ResultMessage:
    """Outcome of a transfer to the guest."""

    success: bool
    error: str = ""
    bytes_written: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "type": MessageType.RESULT.value,
            "success": self.success,
        }
        if self.error:
            result["error"] = self.error
        if self.bytes_written:
            result["bytes_written"] = self.bytes_written
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResultMessage":
        return cls(
            success=_field(data, "success", bool, False),
            error=_field(data, "error", str, "") or "",
            bytes_written=_field(data, "bytes_written", int, 0),
        )


@dataclass(frozen=True)
class ErrorMessage:
    """Terminal failure reported by the guest."""

    message: str
    path: str = ""

    def to_dict(self) -> Dict[str, Any]:
        result = {"type": MessageType.ERROR.value, "message": self.message}
        if self.path:
            result["path"] = self.path
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorMessage":
        return cls(
            message=_field(data, "message", str, "") or "",
            path=_field(data, "path", str, "") or "",
        )


Message = Union[EntryHeader, EndMarker, ResultMessage, ErrorMessage]
Frame = Union[str, bytes]

_MESSAGE_TYPES = {
    MessageType.HEADER.value: EntryHeader,
    MessageType.END.value: EndMarker,
    MessageType.RESULT.value: ResultMessage,
    MessageType.ERROR.value: ErrorMessage,
}

# Constants
CHUNK_SIZE = 32 * 1024  # Payload bytes per binary frame


def _field(data: Dict[str, Any], key: str, kind: type, default: Any = ...) -> Any:
    """Fetch a field and check its JSON type.

    bool is a subclass of int in Python, so it is rejected where a number is
    expected. null is accepted for optional fields.
    """
    if key not in data:
        if default is ...:
            raise ProtocolError(f"missing field {key!r}")
        return default
    value = data[key]
    if value is None and default is not ...:
        return default
    if kind is int and isinstance(value, bool):
        raise ProtocolError(f"field {key!r} must be a number")
    if not isinstance(value, kind):
        raise ProtocolError(f"field {key!r} has invalid type {type(value).__name__}")
    return value


def _load(text: Union[str, bytes]) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"parse message: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("control message is not a JSON object")
    return data


def encode_message(msg: Any) -> str:
    """Encode a message (dataclass or dict) as the text of a control frame."""
    if hasattr(msg, "to_dict"):
        msg = msg.to_dict()
    return json.dumps(msg)


def decode_message(text: Union[str, bytes]) -> Message:
    """Decode a control frame into its message object.

    The "type" discriminant is read first to pick the message class.
    """
    data = _load(text)
    msg_type = data.get("type")
    cls = _MESSAGE_TYPES.get(msg_type) if isinstance(msg_type, str) else None
    if cls is None:
        raise ProtocolError(f"unknown message type: {msg_type!r}")
    return cls.from_dict(data)


def decode_request(text: Union[str, bytes]) -> TransferRequest:
    """Decode the request frame that opens a channel (server side)."""
    return TransferRequest.from_dict(_load(text))


def is_control_frame(frame: Frame) -> bool:
    """Control frames are text; payload frames are bytes."""
    return isinstance(frame, str)
