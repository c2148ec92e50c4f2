"""
guestcopy - copy files and directories to and from guest instances.

The copy engine lives in guestcopy.cp; guestcopy.client wraps the REST
endpoints it relies on and guestcopy.cli exposes both on the command line.
"""

from .config import CopyConfig, build_ws_url
from .errors import (
    ApiError,
    CopyConnectionError,
    CopyError,
    IncompleteTransferError,
    LocalIOError,
    PathTraversalError,
    ProtocolError,
    RemoteFailureError,
    TransferCancelled,
)

__version__ = "0.1.0"

__all__ = [
    "CopyConfig",
    "build_ws_url",
    "CopyError",
    "ApiError",
    "CopyConnectionError",
    "IncompleteTransferError",
    "LocalIOError",
    "PathTraversalError",
    "ProtocolError",
    "RemoteFailureError",
    "TransferCancelled",
]
