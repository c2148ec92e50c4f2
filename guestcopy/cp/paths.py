"""
Path validation for server supplied paths.

Every path that arrives from the guest (entry headers, symlink targets) goes
through this module before it touches the local filesystem.

These are pure functions over path strings: nothing here stats or opens files.
"""

import os

from ..errors import PathTraversalError


def _starts_with_parent(cleaned: str) -> bool:
    """True if the normalised path begins with a '..' segment."""
    first = cleaned.replace(os.sep, "/")
    if os.altsep:
        first = first.replace(os.altsep, "/")
    return first.split("/", 1)[0] == ".."


def resolve(base: str, candidate: str) -> str:
    """Resolve a server supplied relative path against a trusted base directory.

    Args:
        base: Local destination directory (trusted)
        candidate: Relative path received from the server (untrusted)

    Returns:
        The joined, normalised path. resolve("/dest", "") returns "/dest".

    Raises:
        PathTraversalError: If candidate is absolute, escapes base or holds a
            NUL byte
    """
    if "\x00" in candidate:
        raise PathTraversalError("invalid path: contains NUL byte", repr(candidate))

    cleaned = os.path.normpath(candidate) if candidate else "."

    if os.path.isabs(cleaned):
        raise PathTraversalError("invalid path: absolute paths not allowed", candidate)

    if _starts_with_parent(cleaned):
        raise PathTraversalError("invalid path: path escapes destination", candidate)

    result = os.path.normpath(os.path.join(base, cleaned))

    # Re-check after joining; the result must stay at or under base.
    abs_base = os.path.abspath(base)
    abs_result = os.path.abspath(result)
    is_root = abs_base == os.path.abspath(os.sep)
    if (
        not is_root
        and abs_result != abs_base
        and not abs_result.startswith(abs_base + os.sep)
    ):
        raise PathTraversalError("invalid path: path escapes destination", candidate)

    return result


def validate_symlink_target(target: str) -> str:
    """Check that a symlink target stays inside the destination tree.

    This rule is stricter than resolve() and independent of where the link
    itself lives: absolute targets and targets whose normalised form starts
    with '..' are rejected outright.
    """
    if not target or "\x00" in target or os.path.isabs(target):
        raise PathTraversalError("invalid symlink target", target)
    if _starts_with_parent(os.path.normpath(target)):
        raise PathTraversalError("invalid symlink target", target)
    return target

