import os
import logging
from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

BASE_URL_ENV = "GUESTCOPY_BASE_URL"
API_KEY_ENV = "GUESTCOPY_API_KEY"

# http(s) base URLs map onto the matching WebSocket scheme
WS_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


def validate_instance_id(instance_id: str) -> str:
    """Validate an instance identifier before it is embedded in a URL."""
    if not instance_id:
        raise ValueError("instance ID cannot be empty")
    if "/" in instance_id or "\\" in instance_id or ".." in instance_id:
        raise ValueError(
            "invalid instance ID: contains path separator or traversal sequence"
        )
    return instance_id


@dataclass(frozen=True)
class CopyConfig:
    """Connection settings shared by every copy session.

    base_url is the REST base URL of the service (e.g. https://api.example.com
    or http://localhost:8080/api); api_key is sent as a bearer token.
    """

    base_url: str
    api_key: str = ""

    def __post_init__(self):
        if not self.base_url:
            raise ValueError("base URL not configured")

    @classmethod
    def from_env(cls, base_url: str = None, api_key: str = None) -> "CopyConfig":
        """Build a config, falling back to the environment for unset values."""
        base_url = base_url or os.environ.get(BASE_URL_ENV, "")
        if api_key is None:
            api_key = os.environ.get(API_KEY_ENV, "")
        if not api_key:
            logger.warning("No API key configured; connecting without credentials")
        return cls(base_url=base_url, api_key=api_key)

    def rest_url(self, *parts: str) -> str:
        """Join path parts onto the base URL, keeping any path prefix."""
        return self.base_url.rstrip("/") + "/" + "/".join(p.strip("/") for p in parts)


def build_ws_url(base_url: str, instance_id: str) -> str:
    """Build the WebSocket URL of an instance's copy endpoint.

    The instance ID is validated before it is embedded, the scheme is switched
    to its WebSocket equivalent and instances/<id>/cp is appended to any
    existing path prefix.
    """
    validate_instance_id(instance_id)

    parts = urlsplit(base_url)
    scheme = WS_SCHEMES.get(parts.scheme)
    if scheme is None or not parts.netloc:
        raise ValueError(f"invalid base URL: {base_url}")

    segments = [s for s in parts.path.split("/") if s]
    path = "/" + "/".join(segments + ["instances", instance_id, "cp"])
    return urlunsplit((scheme, parts.netloc, path, parts.query, ""))
