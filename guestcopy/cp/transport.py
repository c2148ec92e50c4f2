"""
Framed duplex channels for the copy protocol.

A Dialer opens one Channel per copy connection. Two implementations exist:

- WebSocketDialer talks to the live service with websockets' sync client.
- ScriptedDialer replays fixed frame sequences from memory and records what
  the client wrote, for deterministic tests.

Text frames (str) carry control messages, binary frames (bytes) carry file
content.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Protocol, Union

from websockets.exceptions import (
    ConnectionClosed,
    InvalidStatus,
    WebSocketException,
)
from websockets.sync.client import connect

from ..config import CopyConfig, build_ws_url
from ..errors import CopyConnectionError, TransferCancelled

logger = logging.getLogger(__name__)

Frame = Union[str, bytes]

DEFAULT_OPEN_TIMEOUT = 30  # Seconds to wait for the upgrade
CANCEL_POLL_INTERVAL = 0.5  # Seconds between cancellation checks while reading


class ChannelClosed(Exception):
    """The peer closed the channel (no more frames will arrive)."""

    def __init__(self, code: Optional[int] = None, reason: str = ""):
        self.code = code
        self.reason = reason
        super().__init__(f"channel closed (code={code}, reason={reason!r})")


class ChannelTimeout(CopyConnectionError):
    """No frame arrived within the read timeout."""

    pass


class Channel(Protocol):
    def send_text(self, text: str) -> None: ...

    def send_bytes(self, data: bytes) -> None: ...

    def recv(self, timeout: Optional[float] = None) -> Frame: ...

    def close(self) -> None: ...


class Dialer(Protocol):
    def dial(
        self, url: str, headers: Dict[str, str], timeout: Optional[float] = None
    ) -> Channel: ...


class WebSocketChannel:
    """Channel backed by a websockets sync ClientConnection."""

    def __init__(self, ws):
        self.ws = ws

    def send_text(self, text: str):
        self._send(text)

    def send_bytes(self, data: bytes):
        self._send(data)

    def _send(self, frame: Frame):
        try:
            self.ws.send(frame)
        except ConnectionClosed as e:
            raise CopyConnectionError(f"send frame: {e}") from e

    def recv(self, timeout: Optional[float] = None) -> Frame:
        try:
            return self.ws.recv(timeout=timeout)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else None
            reason = e.rcvd.reason if e.rcvd is not None else ""
            raise ChannelClosed(code, reason) from e
        except TimeoutError as e:
            raise ChannelTimeout(f"timed out after {timeout}s waiting for a frame") from e

    def close(self):
        self.ws.close()


class WebSocketDialer:
    """Opens real WebSocket connections."""

    def __init__(self, open_timeout: float = DEFAULT_OPEN_TIMEOUT):
        self.open_timeout = open_timeout

    def dial(
        self, url: str, headers: Dict[str, str], timeout: Optional[float] = None
    ) -> WebSocketChannel:
        try:
            ws = connect(
                url,
                additional_headers=headers,
                open_timeout=timeout or self.open_timeout,
                max_size=None,
            )
        except InvalidStatus as e:
            response = e.response
            body = response.body.decode("utf-8", errors="replace") if response.body else ""
            raise CopyConnectionError(
                "websocket connect failed", response.status_code, body
            ) from e
        except (WebSocketException, OSError) as e:
            raise CopyConnectionError(f"websocket connect failed: {e}") from e

        logger.debug(f"Connected to {url}")
        return WebSocketChannel(ws)


class ScriptedChannel:
    """In-memory channel that replays a fixed list of frames.

    Exceptions in the frame list are raised from recv() in turn. Once the list
    is exhausted the channel behaves as if the peer closed it normally.
    """

    def __init__(self, frames: Optional[Iterable] = None):
        self.frames = list(frames or [])
        self.written: List[Frame] = []
        self.closed = False

    def send_text(self, text: str):
        self._write(text)

    def send_bytes(self, data: bytes):
        self._write(bytes(data))

    def _write(self, frame: Frame):
        if self.closed:
            raise CopyConnectionError("send frame: channel is closed")
        self.written.append(frame)

    def recv(self, timeout: Optional[float] = None) -> Frame:
        if self.closed or not self.frames:
            raise ChannelClosed(1000)
        frame = self.frames.pop(0)
        if isinstance(frame, BaseException):
            raise frame
        return frame

    def close(self):
        self.closed = True

    @property
    def text_frames(self) -> List[str]:
        return [f for f in self.written if isinstance(f, str)]

    @property
    def binary_frames(self) -> List[bytes]:
        return [f for f in self.written if isinstance(f, bytes)]


class ScriptedDialer:
    """Hands out ScriptedChannels, one script per dial.

    Args:
        scripts: Frame lists for successive connections
        default: Frames for any connection beyond the scripted ones
        error: Raised from every dial() instead of connecting
    """

    def __init__(
        self,
        scripts: Optional[Iterable[Iterable]] = None,
        default: Optional[Iterable] = None,
        error: Optional[Exception] = None,
    ):
        self.scripts = [list(s) for s in scripts or []]
        self.default = list(default or [])
        self.error = error
        self.dials: List[tuple] = []  # (url, headers)
        self.channels: List[ScriptedChannel] = []

    def dial(
        self, url: str, headers: Dict[str, str], timeout: Optional[float] = None
    ) -> ScriptedChannel:
        self.dials.append((url, dict(headers)))
        if self.error is not None:
            raise self.error
        frames = self.scripts.pop(0) if self.scripts else list(self.default)
        channel = ScriptedChannel(frames)
        self.channels.append(channel)
        return channel


def open_channel(
    dialer: Dialer,
    config: CopyConfig,
    instance_id: str,
    timeout: Optional[float] = None,
) -> Channel:
    """Open a copy channel to an instance with the bearer credential attached."""
    try:
        url = build_ws_url(config.base_url, instance_id)
    except ValueError as e:
        raise CopyConnectionError(f"build ws url: {e}") from e
    headers = {"Authorization": f"Bearer {config.api_key}"}
    return dialer.dial(url, headers, timeout)


@contextmanager
def connected(
    dialer: Dialer,
    config: CopyConfig,
    instance_id: str,
    timeout: Optional[float] = None,
) -> Iterator[Channel]:
    """Open a copy channel and close it on every exit path."""
    channel = open_channel(dialer, config, instance_id, timeout)
    try:
        yield channel
    finally:
        channel.close()


def recv_frame(
    channel: Channel,
    timeout: Optional[float] = None,
    cancel: Optional[threading.Event] = None,
) -> Frame:
    """Read one frame, giving up early once cancel is set.

    Without a cancel event this is a plain recv(). With one, the wait is split
    into short reads so a silent peer cannot hold off a cancellation; timeout
    still bounds the whole wait.

    Raises:
        TransferCancelled: If cancel is set before a frame arrives
        ChannelTimeout: If no frame arrives within timeout
        ChannelClosed: If the peer closed the channel
    """
    if cancel is None:
        return channel.recv(timeout)

    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if cancel.is_set():
            raise TransferCancelled("copy cancelled")
        wait = CANCEL_POLL_INTERVAL
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ChannelTimeout(f"timed out after {timeout}s waiting for a frame")
            wait = min(wait, remaining)
        try:
            return channel.recv(wait)
        except ChannelTimeout:
            continue
