import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from .config import CopyConfig, validate_instance_id
from .errors import ApiError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


@dataclass
class PathInfo:
    """Information about a path in the guest filesystem."""

    exists: bool
    error: str = ""  # Set when the stat failed for a reason other than absence
    is_dir: bool = False
    is_file: bool = False
    is_symlink: bool = False  # Only reported when links are not followed
    link_target: str = ""
    mode: int = 0
    size: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathInfo":
        return cls(
            exists=bool(data.get("exists", False)),
            error=data.get("error") or "",
            is_dir=bool(data.get("is_dir", False)),
            is_file=bool(data.get("is_file", False)),
            is_symlink=bool(data.get("is_symlink", False)),
            link_target=data.get("link_target") or "",
            mode=int(data.get("mode") or 0),
            size=int(data.get("size") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "error": self.error or None,
            "is_dir": self.is_dir,
            "is_file": self.is_file,
            "is_symlink": self.is_symlink,
            "link_target": self.link_target or None,
            "mode": self.mode,
            "size": self.size,
        }


class InstanceClient:
    """Minimal REST client for the instance endpoints the copy tools need."""

    def __init__(
        self,
        config: CopyConfig,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def stat_path(
        self, instance_id: str, path: str, follow_links: Optional[bool] = None
    ) -> PathInfo:
        """Returns information about a path in the guest filesystem.

        Useful for checking whether a path exists, its type and permissions
        before copying.
        """
        validate_instance_id(instance_id)
        params = {"path": path}
        if follow_links is not None:
            params["follow_links"] = "true" if follow_links else "false"

        url = self.config.rest_url("instances", instance_id, "stat")
        logger.debug(f"GET {url} path={path}")
        try:
            resp = self.session.get(
                url, params=params, headers=self._headers(), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ApiError(f"stat request failed: {e}") from e

        if resp.status_code != 200:
            raise ApiError("stat request failed", resp.status_code, resp.text)

        try:
            return PathInfo.from_dict(resp.json())
        except (ValueError, TypeError) as e:
            raise ApiError(f"invalid stat response: {e}") from e
