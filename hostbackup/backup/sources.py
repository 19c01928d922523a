"""
Source tree traversal for archiving.

walk_tree() is a lazy generator: entries that cannot be read are yielded
with an error instead of ending the walk, so a file that vanishes or loses
permissions mid-walk only costs that one entry.
"""

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator, List, Optional


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TreeEntry:
    """A regular file found under the source root, or a per-entry error."""
    path: Path
    relative: str
    size: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ExclusionMatcher:
    """
    Regex exclusion patterns.

    Each pattern is searched case-insensitively in both the absolute path
    and the path relative to the source root.
    """

    def __init__(self, patterns: Iterable[str] = ()):
        """
        Initialize exclusion matcher.

        Args:
            patterns: Regular expressions (e.g. r'/cache/', r'\\.log$')

        Raises:
            ValueError: If a pattern is not a valid regular expression
        """
        self.patterns: List[re.Pattern] = []
        for pattern in patterns:
            try:
                self.patterns.append(re.compile(pattern, re.IGNORECASE))
            except re.error as e:
                raise ValueError(f"Invalid exclusion pattern {pattern!r}: {e}")

    def matches(self, absolute: str, relative: str) -> bool:
        for pattern in self.patterns:
            if pattern.search(absolute) or pattern.search(relative):
                return True
        return False


def walk_tree(root: Path) -> Iterator[TreeEntry]:
    """
    Recursively yield regular files under root, in name order.

    Symbolic links (to files or directories) are never followed or yielded.

    Args:
        root: Directory to walk

    Yields:
        TreeEntry per file; entries with error set for unreadable items
    """
    root = Path(root)
    yield from _walk_directory(root, root)


def _walk_directory(root: Path, directory: Path) -> Iterator[TreeEntry]:
    try:
        with os.scandir(directory) as scanner:
            entries = sorted(scanner, key=lambda item: item.name)
    except OSError as e:
        yield TreeEntry(directory, _relative(root, directory), error=f"Cannot read directory: {e}")
        return

    for entry in entries:
        path = Path(entry.path)
        relative = _relative(root, path)
        try:
            if entry.is_symlink():
                logger.debug(f"Skipping symlink: {path}")
                continue

            if entry.is_dir(follow_symlinks=False):
                yield from _walk_directory(root, path)
            elif entry.is_file(follow_symlinks=False):
                size = entry.stat(follow_symlinks=False).st_size
                yield TreeEntry(path, relative, size)
        except OSError as e:
            yield TreeEntry(path, relative, error=str(e))


def _relative(root: Path, path: Path) -> str:
    return os.path.relpath(path, root).replace(os.sep, '/')


def estimate_tree_size(root: Path) -> int:
    """Sum the sizes of all readable regular files under root."""
    return sum(entry.size for entry in walk_tree(root) if entry.ok)
