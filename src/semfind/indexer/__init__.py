from .crawler import matches_exclude_pattern, should_index, walk
from .indexer import Indexer
from .queue import IndexQueue
from .watcher import FileWatcher, WatchEvent, WatchEventType, WatchFlags

__all__ = [
    "matches_exclude_pattern",
    "should_index",
    "walk",
    "Indexer",
    "IndexQueue",
    "FileWatcher",
    "WatchEvent",
    "WatchEventType",
    "WatchFlags",
]
