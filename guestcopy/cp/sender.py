"""
Copying local files and directories into a guest.

Every filesystem entry gets its own connection: request, payload (files
only), end marker, then exactly one result or error frame from the guest.
Directories are sent first and their contents follow, one connection per
descendant, in the order the walker yields them.

Copies are not atomic. Entries already accepted by the guest stay there when
a later entry fails, and nothing is retried.
"""

import logging
import os
import posixpath
import stat
import threading
from dataclasses import dataclass
from typing import BinaryIO, Optional

from ..config import CopyConfig
from ..errors import (
    IncompleteTransferError,
    LocalIOError,
    ProtocolError,
    RemoteFailureError,
    TransferCancelled,
)
from .progress import CopyCallbacks, file_finished, file_progress, file_started
from .protocol import (
    CHUNK_SIZE,
    Direction,
    EndMarker,
    ErrorMessage,
    ResultMessage,
    TransferRequest,
    decode_message,
    encode_message,
    is_control_frame,
)
from .transport import Channel, ChannelClosed, Dialer, WebSocketDialer, connected, recv_frame
from .walker import VisitedSet, walk

logger = logging.getLogger(__name__)


@dataclass
class CopyToOptions:
    """Configures a copy into an instance."""

    instance_id: str  # Instance to copy to
    src_path: str  # Local source path
    dst_path: str  # Destination path in the guest
    mode: int = 0  # Override permission bits of the top-level entry (0 = auto-detect)
    archive: bool = False  # Preserve UID/GID (and mtime)
    follow_links: bool = False  # Descend into symlinked directories
    callbacks: Optional[CopyCallbacks] = None
    timeout: Optional[float] = None  # Seconds for connect and for each reply
    cancel: Optional[threading.Event] = None  # Also interrupts a pending read


class SendSession:
    """Sends a file or directory tree to a guest.

    Example:

        session = SendSession(CopyConfig("https://api.example.com", api_key))
        session.run(CopyToOptions("inst_123", "./local-file.txt", "/app/file.txt"))
    """

    def __init__(
        self,
        config: CopyConfig,
        dialer: Optional[Dialer] = None,
        chunk_size: int = CHUNK_SIZE,
    ):
        self.config = config
        self.dialer = dialer or WebSocketDialer()
        self.chunk_size = chunk_size

    def _connect(self, options: CopyToOptions):
        return connected(self.dialer, self.config, options.instance_id, options.timeout)

    def run(self, options: CopyToOptions):
        src_info = _stat(options.src_path)
        logger.info(
            f"Copying {options.src_path} to {options.instance_id}:{options.dst_path}"
        )

        self._send_entry(options, options.src_path, options.dst_path, options.mode, src_info)
        if not stat.S_ISDIR(src_info.st_mode):
            return

        visited = VisitedSet()
        count = 1
        for entry in walk(options.src_path, options.follow_links, visited):
            _check_cancel(options)
            # Guest paths are POSIX regardless of the local convention
            target = posixpath.join(options.dst_path, entry.rel_path)
            self._send_entry(options, entry.path, target, entry.mode)
            count += 1

        logger.info(f"Copied {count} entries to {options.instance_id}:{options.dst_path}")

    def _send_entry(
        self,
        options: CopyToOptions,
        src_path: str,
        dst_path: str,
        mode: int,
        info: Optional[os.stat_result] = None,
    ):
        """Send one entry over a fresh connection."""
        _check_cancel(options)
        if info is None:
            info = _stat(src_path)

        is_dir = stat.S_ISDIR(info.st_mode)
        uid = gid = mtime = 0
        if options.archive:
            uid, gid = info.st_uid, info.st_gid
            mtime = int(info.st_mtime)

        request = TransferRequest(
            direction=Direction.TO.value,
            guest_path=dst_path,
            is_dir=is_dir,
            mode=mode or (info.st_mode & 0o777),
            follow_links=options.follow_links,
            uid=uid,
            gid=gid,
            mtime=mtime,
        )
        logger.debug(f"Sending {src_path} -> {dst_path} (dir={is_dir}, mode={oct(request.mode)})")

        if is_dir:
            # The guest creates the directory from the request alone
            with self._connect(options) as channel:
                channel.send_text(encode_message(request))
                channel.send_text(encode_message(EndMarker()))
                self._await_result(channel, options)
            return

        try:
            source = open(src_path, "rb")
        except OSError as e:
            raise LocalIOError(f"open source {src_path}: {e}", src_path) from e

        with source, self._connect(options) as channel:
            channel.send_text(encode_message(request))
            self._stream_file(channel, source, src_path, info.st_size, options)

    def _stream_file(
        self,
        channel: Channel,
        source: BinaryIO,
        src_path: str,
        size: int,
        options: CopyToOptions,
    ):
        file_started(options.callbacks, src_path, size)

        bytes_sent = 0
        while True:
            _check_cancel(options)
            try:
                chunk = source.read(self.chunk_size)
            except OSError as e:
                raise LocalIOError(f"read source {src_path}: {e}", src_path) from e
            if not chunk:
                break
            channel.send_bytes(chunk)
            bytes_sent += len(chunk)
            file_progress(options.callbacks, bytes_sent)

        channel.send_text(encode_message(EndMarker()))
        result = self._await_result(channel, options)
        logger.debug(f"Sent {src_path}: {bytes_sent} bytes, guest wrote {result.bytes_written}")

        file_finished(options.callbacks, src_path)

    def _await_result(self, channel: Channel, options: CopyToOptions) -> ResultMessage:
        """Read the single reply to an entry: a result or an error."""
        try:
            frame = recv_frame(channel, options.timeout, options.cancel)
        except ChannelClosed as e:
            raise IncompleteTransferError(f"channel closed before result: {e}") from e

        if not is_control_frame(frame):
            raise ProtocolError("expected result message, got binary frame")

        msg = decode_message(frame)
        if isinstance(msg, ErrorMessage):
            raise RemoteFailureError(msg.message, msg.path)
        if not isinstance(msg, ResultMessage):
            raise ProtocolError(f"expected result message, got {type(msg).__name__}")
        if not msg.success:
            raise RemoteFailureError(msg.error)
        return msg


def _stat(path: str) -> os.stat_result:
    try:
        return os.stat(path)
    except OSError as e:
        raise LocalIOError(f"stat source {path}: {e}", path) from e


def _check_cancel(options):
    if options.cancel is not None and options.cancel.is_set():
        raise TransferCancelled("copy cancelled")


def copy_to_instance(
    config: CopyConfig, options: CopyToOptions, dialer: Optional[Dialer] = None
):
    """Copy a local file or directory to a running instance.

    Example:

        cfg = CopyConfig.from_env()
        copy_to_instance(cfg, CopyToOptions(
            instance_id="inst_123",
            src_path="./local-file.txt",
            dst_path="/app/file.txt",
        ))
    """
    SendSession(config, dialer).run(options)


def copy_to_instance_from_url(
    base_url: str, api_key: str, options: CopyToOptions, dialer: Optional[Dialer] = None
):
    """Like copy_to_instance, with the base URL and API key given directly."""
    copy_to_instance(CopyConfig(base_url=base_url, api_key=api_key), options, dialer)
