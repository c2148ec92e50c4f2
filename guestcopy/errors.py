"""Exceptions raised by guestcopy copy operations."""

from typing import Optional


class CopyError(Exception):
    """Base exception for copy failures."""

    pass


class CopyConnectionError(CopyError):
    """Opening the copy channel failed.

    If the server rejected the upgrade, status_code and body carry its response.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (HTTP {status_code}): {body}"
        super().__init__(message)


class ProtocolError(CopyError):
    """Malformed or unexpected frame on the copy channel."""

    pass


class PathTraversalError(CopyError):
    """A server or symlink supplied path escapes the destination."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)


class IncompleteTransferError(CopyError):
    """The channel closed before the final end marker arrived."""

    pass


class RemoteFailureError(CopyError):
    """The server sent an error frame or a failed result."""

    def __init__(self, message: str, path: str = ""):
        self.remote_message = message
        self.path = path
        if path:
            super().__init__(f"copy error at {path}: {message}")
        else:
            super().__init__(f"copy failed: {message}")


class LocalIOError(CopyError):
    """A local filesystem operation failed."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(message)


class TransferCancelled(CopyError):
    """The caller cancelled the transfer."""

    pass


class ApiError(CopyError):
    """A REST call to the service failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (HTTP {status_code}): {body}"
        super().__init__(message)
