"""
Change Detector
===============

Polls modification times of a fixed set of entry files and reports which
ones changed since the previous poll.

Key Features:
- Pure timestamp polling (no OS file-event APIs)
- Stored timestamps only move forward
- Files that vanish between listing and stat are skipped, not reported
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Set, Union
import logging
import os

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchedFile:
    """
    Last-known state of a watched file.

    Attributes:
        path: File path as passed to poll()
        last_seen: Last recorded st_mtime_ns (0 if never seen)
    """
    path: str
    last_seen: int


class ChangeDetector:
    """Tracks per-file modification times across polls."""

    def __init__(self):
        self._timestamps: Dict[str, int] = {}

    def poll(self, paths: Sequence[str]) -> Set[str]:
        """
        Check current modification times against the stored ones.

        Args:
            paths: Files to check, in any order

        Returns:
            Set of paths whose mtime is newer than the stored value
        """
        changed: Set[str] = set()
        for path in paths:
            try:
                current = os.stat(path).st_mtime_ns
            except OSError as e:
                # Leave the stored value alone so a later reappearance still counts
                logger.debug(f"Skipping unreadable file {path}: {e}")
                continue
            if current > self._timestamps.get(path, 0):
                self._timestamps[path] = current
                changed.add(path)
        if changed:
            logger.debug(f"Changed since last poll: {sorted(changed)}")
        return changed

    def last_seen(self, path: str) -> int:
        return self._timestamps.get(path, 0)

    def watched(self) -> List[WatchedFile]:
        return [WatchedFile(path=p, last_seen=ts) for p, ts in sorted(self._timestamps.items())]


def discover_entry_points(source_dir: Union[str, Path], suffix: str = ".jsx") -> List[str]:
    """
    List entry files directly inside source_dir.

    The listing is taken once; files added later are not picked up.

    Args:
        source_dir: Directory holding the entry files
        suffix: File name suffix to keep

    Returns:
        Sorted absolute paths of matching regular files
    """
    directory = Path(source_dir)
    if not directory.is_dir():
        logger.warning(f"Source directory does not exist: {directory}")
        return []
    return sorted(
        str(entry.resolve())
        for entry in directory.iterdir()
        if entry.name.endswith(suffix) and entry.is_file()
    )
