"""
guestcopy Copy Module

Moves files and directory trees between the local filesystem and a guest
over the service's WebSocket copy endpoint.

Architecture:
- Copies to the guest open one connection per filesystem entry
- Copies from the guest use one connection for the whole tree
- Paths sent by the guest are validated before touching the local filesystem

Usage:
    from guestcopy.config import CopyConfig
    from guestcopy.cp import CopyToOptions, copy_to_instance

    cfg = CopyConfig("https://api.example.com", api_key="...")
    copy_to_instance(cfg, CopyToOptions(
        instance_id="inst_123",
        src_path="./build",
        dst_path="/app/build",
    ))
"""

from .protocol import (
    CHUNK_SIZE,
    Direction,
    MessageType,
    EntryKind,
    TransferRequest,
    EntryHeader,
    EndMarker,
    ResultMessage,
    ErrorMessage,
    encode_message,
    decode_message,
    decode_request,
)

from .paths import resolve, validate_symlink_target

from .progress import CopyCallbacks, ConsoleProgress

from .transport import (
    ChannelClosed,
    WebSocketDialer,
    ScriptedDialer,
    ScriptedChannel,
)

from .walker import VisitedSet, WalkEntry, walk

from .sender import (
    CopyToOptions,
    SendSession,
    copy_to_instance,
    copy_to_instance_from_url,
)

from .receiver import (
    CopyFromOptions,
    ReceiveSession,
    copy_from_instance,
    copy_from_instance_from_url,
)

__all__ = [
    # Protocol constants
    "CHUNK_SIZE",
    # Protocol types
    "Direction",
    "MessageType",
    "EntryKind",
    "TransferRequest",
    "EntryHeader",
    "EndMarker",
    "ResultMessage",
    "ErrorMessage",
    # Protocol functions
    "encode_message",
    "decode_message",
    "decode_request",
    # Path guard
    "resolve",
    "validate_symlink_target",
    # Progress
    "CopyCallbacks",
    "ConsoleProgress",
    # Transport
    "ChannelClosed",
    "WebSocketDialer",
    "ScriptedDialer",
    "ScriptedChannel",
    # Walker
    "VisitedSet",
    "WalkEntry",
    "walk",
    # Sessions
    "CopyToOptions",
    "SendSession",
    "copy_to_instance",
    "copy_to_instance_from_url",
    "CopyFromOptions",
    "ReceiveSession",
    "copy_from_instance",
    "copy_from_instance_from_url",
]
