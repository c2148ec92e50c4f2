"""
Local directory traversal for copies to the guest.

walk() yields every descendant of a directory depth-first and pre-order, so a
directory is always sent before its contents. Symlinked directories are
followed only when asked to. Every directory entered is recorded in a
VisitedSet of canonical paths, so a link that points back up the tree, at the
root or at any ancestor below it, is skipped instead of walked again.
"""

import logging
import os
import posixpath
import stat
from dataclasses import dataclass
from typing import Iterator, Optional, Set

from ..errors import LocalIOError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WalkEntry:
    """One entry found under the walk root."""

    path: str  # Local path, may be a symlink
    rel_path: str  # Relative to the walk root, always '/'-separated
    is_dir: bool  # Directory, or a followed link to one
    is_symlink: bool
    mode: int  # Permission bits to send; 0 = auto-detect from the target


class VisitedSet:
    """Canonical directory paths already entered during one top-level copy."""

    def __init__(self):
        self._paths: Set[str] = set()

    @staticmethod
    def canonical(path: str) -> str:
        return os.path.realpath(os.path.abspath(path))

    def add(self, path: str):
        self._paths.add(self.canonical(path))

    def __contains__(self, path: str) -> bool:
        return self.canonical(path) in self._paths

    def __len__(self) -> int:
        return len(self._paths)


def walk(
    root: str, follow_links: bool = False, visited: Optional[VisitedSet] = None
) -> Iterator[WalkEntry]:
    """Walk a local directory tree.

    Args:
        root: Directory to walk (not yielded itself)
        follow_links: Descend into symlinked directories
        visited: Cycle tracking set; a fresh one is created when omitted

    Yields:
        WalkEntry for each descendant, parents before children, siblings in
        name order.

    Raises:
        LocalIOError: If a directory cannot be listed
    """
    if visited is None:
        visited = VisitedSet()
    visited.add(root)
    yield from _walk_dir(root, "", follow_links, visited)


def _walk_dir(
    dir_path: str, rel_dir: str, follow_links: bool, visited: VisitedSet
) -> Iterator[WalkEntry]:
    try:
        with os.scandir(dir_path) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        raise LocalIOError(f"list directory {dir_path}: {e}", dir_path) from e

    for entry in entries:
        rel_path = posixpath.join(rel_dir, entry.name) if rel_dir else entry.name

        try:
            is_link = entry.is_symlink()
            info = entry.stat(follow_symlinks=False)
        except OSError as e:
            raise LocalIOError(f"stat {entry.path}: {e}", entry.path) from e

        if not is_link:
            is_dir = stat.S_ISDIR(info.st_mode)
            yield WalkEntry(entry.path, rel_path, is_dir, False, stat.S_IMODE(info.st_mode) & 0o777)
            if is_dir:
                visited.add(entry.path)
                yield from _walk_dir(entry.path, rel_path, follow_links, visited)
            continue

        if not follow_links:
            # Opaque leaf; the link's own 0777 bits are not the target's mode
            yield WalkEntry(entry.path, rel_path, False, True, 0)
            continue

        try:
            target_info = os.stat(os.path.realpath(entry.path))
        except OSError:
            logger.debug(f"Skipping broken symlink: {entry.path}")
            continue

        if not stat.S_ISDIR(target_info.st_mode):
            yield WalkEntry(entry.path, rel_path, False, True, 0)
            continue

        if entry.path in visited:
            logger.debug(f"Skipping symlink cycle: {entry.path}")
            continue
        visited.add(entry.path)

        yield WalkEntry(entry.path, rel_path, True, True, 0)
        yield from _walk_dir(entry.path, rel_path, follow_links, visited)
