"""
Copying files and directories out of a guest.

One connection carries the whole transfer. The client sends a single
request, then the guest streams entries:

    header -> [binary frames] -> end      (one per entry)
    end(final=true)                       (transfer complete)

Every path in a header is treated as untrusted and resolved against the
local destination root before anything is created. At most one local file is
open at a time and it is closed before the next header is handled and on
every exit path.
"""

import logging
import os
import threading
from dataclasses import dataclass
from typing import BinaryIO, Optional

from ..config import CopyConfig
from ..errors import (
    IncompleteTransferError,
    LocalIOError,
    ProtocolError,
    RemoteFailureError,
)
from .paths import resolve, validate_symlink_target
from .progress import CopyCallbacks, file_finished, file_progress, file_started
from .protocol import (
    Direction,
    EndMarker,
    EntryHeader,
    EntryKind,
    ErrorMessage,
    ResultMessage,
    TransferRequest,
    decode_message,
    encode_message,
    is_control_frame,
)
from .transport import Channel, ChannelClosed, Dialer, WebSocketDialer, connected, recv_frame

logger = logging.getLogger(__name__)

DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644


@dataclass
class CopyFromOptions:
    """Configures a copy out of an instance."""

    instance_id: str  # Instance to copy from
    src_path: str  # Source path in the guest
    dst_path: str  # Local destination root
    follow_links: bool = False  # Ask the guest to follow symlinks
    archive: bool = False  # Apply UID/GID from the guest
    callbacks: Optional[CopyCallbacks] = None
    timeout: Optional[float] = None  # Seconds for connect and for each frame
    cancel: Optional[threading.Event] = None  # Also interrupts a pending read


class _EntryState:
    """The file currently being written, if any."""

    def __init__(self):
        self.file: Optional[BinaryIO] = None
        self.header: Optional[EntryHeader] = None
        self.target = ""
        self.bytes_received = 0

    def close_file(self):
        if self.file is None:
            return
        f, self.file = self.file, None
        try:
            f.close()
        except OSError as e:
            raise LocalIOError(f"close {self.target}: {e}", self.target) from e

    def reset(self):
        self.header = None
        self.target = ""
        self.bytes_received = 0


class ReceiveSession:
    """Receives a file or directory tree from a guest.

    Example:

        session = ReceiveSession(CopyConfig("https://api.example.com", api_key))
        session.run(CopyFromOptions("inst_123", "/app/output.txt", "./out"))
    """

    def __init__(self, config: CopyConfig, dialer: Optional[Dialer] = None):
        self.config = config
        self.dialer = dialer or WebSocketDialer()

    def run(self, options: CopyFromOptions):
        request = TransferRequest(
            direction=Direction.FROM.value,
            guest_path=options.src_path,
            follow_links=options.follow_links,
        )
        logger.info(
            f"Copying {options.instance_id}:{options.src_path} to {options.dst_path}"
        )

        with connected(self.dialer, self.config, options.instance_id, options.timeout) as channel:
            channel.send_text(encode_message(request))

            state = _EntryState()
            try:
                self._receive(channel, state, options)
            except BaseException:
                # Close without masking the original error
                if state.file is not None:
                    try:
                        state.close_file()
                    except LocalIOError as e:
                        logger.debug(f"Ignoring close failure during cleanup: {e}")
                raise
            state.close_file()

        logger.info(f"Copied {options.instance_id}:{options.src_path} to {options.dst_path}")

    def _receive(self, channel: Channel, state: _EntryState, options: CopyFromOptions):
        while True:
            try:
                frame = recv_frame(channel, options.timeout, options.cancel)
            except ChannelClosed as e:
                raise IncompleteTransferError(
                    f"copy stream ended without completion marker ({e})"
                ) from e

            if not is_control_frame(frame):
                self._handle_data(state, frame, options)
                continue

            msg = decode_message(frame)
            if isinstance(msg, EntryHeader):
                self._handle_header(state, msg, options)
            elif isinstance(msg, EndMarker):
                self._handle_end(state, options)
                if msg.final:
                    return
            elif isinstance(msg, ErrorMessage):
                raise RemoteFailureError(msg.message, msg.path)
            elif isinstance(msg, ResultMessage):
                if not msg.success:
                    raise RemoteFailureError(msg.error)

    def _handle_header(self, state: _EntryState, header: EntryHeader, options: CopyFromOptions):
        # A header without an end for the previous file still closes it
        state.close_file()
        state.reset()

        target = resolve(options.dst_path, header.path)
        logger.debug(f"Receiving {header.kind.value} {header.path} -> {target}")

        if header.kind is EntryKind.DIRECTORY:
            _makedirs(target, (header.mode & 0o7777) or DEFAULT_DIR_MODE)
            if options.archive:
                _apply_ownership(target, header)
            return

        if header.kind is EntryKind.SYMLINK:
            validate_symlink_target(header.link_target)
            _makedirs(os.path.dirname(target), DEFAULT_DIR_MODE)
            _remove_existing(target)
            try:
                os.symlink(header.link_target, target)
            except OSError as e:
                raise LocalIOError(f"create symlink {target}: {e}", target) from e
            if options.archive:
                _apply_ownership(target, header, follow_symlinks=False)
            return

        _makedirs(os.path.dirname(target), DEFAULT_DIR_MODE)
        mode = (header.mode & 0o7777) or DEFAULT_FILE_MODE
        try:
            fd = os.open(target, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
            state.file = os.fdopen(fd, "wb")
        except OSError as e:
            raise LocalIOError(f"create file {target}: {e}", target) from e

        state.header = header
        state.target = target
        file_started(options.callbacks, header.path, header.size)

    def _handle_data(self, state: _EntryState, data: bytes, options: CopyFromOptions):
        if state.file is None:
            raise ProtocolError("binary frame received with no open file")
        try:
            state.file.write(data)
        except OSError as e:
            raise LocalIOError(f"write {state.target}: {e}", state.target) from e
        state.bytes_received += len(data)
        file_progress(options.callbacks, state.bytes_received)

    def _handle_end(self, state: _EntryState, options: CopyFromOptions):
        if state.file is None:
            return

        state.close_file()
        header, target = state.header, state.target
        # The header was validated when the file was created
        if header.mtime > 0:
            try:
                os.utime(target, (header.mtime, header.mtime))
            except (OSError, OverflowError, ValueError) as e:
                logger.warning(f"Could not set mtime of {target}: {e}")
        if options.archive:
            _apply_ownership(target, header)

        logger.debug(f"Received {header.path} ({state.bytes_received} bytes)")
        file_finished(options.callbacks, header.path)
        state.reset()


def _makedirs(path: str, mode: int):
    if not path:
        return
    try:
        os.makedirs(path, mode=mode, exist_ok=True)
    except OSError as e:
        raise LocalIOError(f"create directory {path}: {e}", path) from e


def _remove_existing(path: str):
    """Remove whatever is at path so a symlink can take its place."""
    if not os.path.lexists(path):
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            os.rmdir(path)
        else:
            os.unlink(path)
    except OSError as e:
        raise LocalIOError(f"replace {path}: {e}", path) from e


def _apply_ownership(path: str, header: EntryHeader, follow_symlinks: bool = True):
    """Best effort, failures are logged.

    Unprivileged users usually cannot chown, and ids sent by the guest may not
    fit this platform.
    """
    if not hasattr(os, "chown"):
        return
    try:
        if follow_symlinks:
            os.chown(path, header.uid, header.gid)
        else:
            os.lchown(path, header.uid, header.gid)
    except (OSError, OverflowError, ValueError) as e:
        logger.warning(f"Could not set ownership of {path}: {e}")


def copy_from_instance(
    config: CopyConfig, options: CopyFromOptions, dialer: Optional[Dialer] = None
):
    """Copy a file or directory out of a running instance.

    Example:

        cfg = CopyConfig.from_env()
        copy_from_instance(cfg, CopyFromOptions(
            instance_id="inst_123",
            src_path="/app/output.txt",
            dst_path="./out",
        ))
    """
    ReceiveSession(config, dialer).run(options)


def copy_from_instance_from_url(
    base_url: str, api_key: str, options: CopyFromOptions, dialer: Optional[Dialer] = None
):
    """Like copy_from_instance, with the base URL and API key given directly."""
    copy_from_instance(CopyConfig(base_url=base_url, api_key=api_key), options, dialer)
