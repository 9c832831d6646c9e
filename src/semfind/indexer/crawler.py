"""Index policy and directory walking for the background indexer."""
from __future__ import annotations

from fnmatch import fnmatchcase
import logging
import os
import stat
from typing import Callable, Iterator, Optional, Sequence

from ..config import IndexerConfig

logger = logging.getLogger(__name__)


def _match_pathname(pattern: str, path: str) -> bool:
    # Wildcards never cross a "/" when matching the full path
    pat_parts = pattern.split("/")
    path_parts = path.split("/")
    if len(pat_parts) != len(path_parts):
        return False
    return all(fnmatchcase(seg, pat) for seg, pat in zip(path_parts, pat_parts))


def matches_exclude_pattern(path: str, patterns: Sequence[str]) -> bool:
    """True if any glob matches the full path or the basename."""
    basename = os.path.basename(path.rstrip("/")) or path
    for pattern in patterns:
        if fnmatchcase(basename, pattern):
            return True
        if "/" in pattern and _match_pathname(pattern, path):
            return True
    return False


def is_hidden(path: str) -> bool:
    return os.path.basename(path.rstrip("/")).startswith(".")


def should_index(path: str, config: IndexerConfig, st: Optional[os.stat_result] = None) -> bool:
    """Index policy: regular file, hidden rule, size cutoff, exclude globs.

    `st` is taken from lstat when not supplied; symlinks are never indexed.
    """
    if st is None:
        try:
            st = os.lstat(path)
        except OSError:
            return False
    if not stat.S_ISREG(st.st_mode):
        return False
    if not config.index_hidden_files and is_hidden(path):
        return False
    max_bytes = config.max_file_size_bytes
    if max_bytes > 0 and st.st_size > max_bytes:
        return False
    if matches_exclude_pattern(path, config.exclude_patterns):
        return False
    return True


def should_descend(path: str, config: IndexerConfig) -> bool:
    if not config.index_hidden_files and is_hidden(path):
        return False
    return not matches_exclude_pattern(path, config.exclude_patterns)


def walk(
    root: str,
    config: IndexerConfig,
    should_stop: Callable[[], bool] = lambda: False,
) -> Iterator[str]:
    """Yield every indexable file under `root`, depth first.

    Unreadable directories yield nothing. Symlinks are not followed. The walk
    ends early once `should_stop()` returns True.
    """
    stack = [root.rstrip("/") or "/"]
    while stack:
        if should_stop():
            return
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            logger.debug(f"Cannot read directory {current}: {e}")
            continue

        subdirs: list[str] = []
        for entry in entries:
            if should_stop():
                return
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError:
                continue
            if stat.S_ISDIR(st.st_mode):
                if config.recursive and should_descend(entry.path, config):
                    subdirs.append(entry.path)
                continue
            if should_index(entry.path, config, st):
                yield entry.path
        # Reverse so subdirectories are visited in name order
        stack.extend(reversed(subdirs))
