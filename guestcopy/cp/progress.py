"""Progress callbacks for copy operations."""

import logging
import sys
from dataclasses import dataclass
from typing import Callable, Optional, TextIO

logger = logging.getLogger(__name__)


@dataclass
class CopyCallbacks:
    """Optional observers for a copy.

    on_file_start(path, size) fires once per file before any data moves,
    on_progress(bytes_copied) with the running total for that file, and
    on_file_end(path) once the file is complete. Directories and symlinks
    do not trigger callbacks.
    """

    on_file_start: Optional[Callable[[str, int], None]] = None
    on_progress: Optional[Callable[[int], None]] = None
    on_file_end: Optional[Callable[[str], None]] = None


def _notify(callback, *args):
    if callback is None:
        return
    try:
        callback(*args)
    except Exception as e:
        # Progress is a side channel; it never decides the outcome of a copy
        logger.warning(f"Progress callback failed: {e}", exc_info=True)


def file_started(callbacks: Optional[CopyCallbacks], path: str, size: int):
    if callbacks:
        _notify(callbacks.on_file_start, path, size)


def file_progress(callbacks: Optional[CopyCallbacks], bytes_copied: int):
    if callbacks:
        _notify(callbacks.on_progress, bytes_copied)


def file_finished(callbacks: Optional[CopyCallbacks], path: str):
    if callbacks:
        _notify(callbacks.on_file_end, path)


class ConsoleProgress:
    """Prints per-file progress, used by the command line."""

    def __init__(self, stream: TextIO = None):
        self.stream = stream or sys.stderr
        self.path = ""
        self.size = 0
        self.files = 0

    def on_file_start(self, path: str, size: int):
        self.path = path
        self.size = size
        self.files += 1

    def on_progress(self, bytes_copied: int):
        if self.size > 0:
            percent = int(bytes_copied / self.size * 100)
            print(f"{self.path}: {percent}%", end="\r", file=self.stream)

    def on_file_end(self, path: str):
        print(f"{path}: done", file=self.stream)

    def callbacks(self) -> CopyCallbacks:
        return CopyCallbacks(
            on_file_start=self.on_file_start,
            on_progress=self.on_progress,
            on_file_end=self.on_file_end,
        )
