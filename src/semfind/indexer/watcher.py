"""Filesystem watcher built on watchdog.

watchdog delivers raw events on its observer thread. FileWatcher translates
them into WatchEvents, buffers them, and hands them to the registered callback
in arrival order on its own notification thread every `latency` seconds.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntFlag
import itertools
import logging
import os
import threading
from typing import Any, Callable, Optional

from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
    FileSystemMovedEvent,
)
from watchdog.observers import Observer

logger = logging.getLogger(__name__)


class WatchEventType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"
    DIR_CREATED = "dir_created"
    DIR_DELETED = "dir_deleted"
    UNKNOWN = "unknown"


class WatchFlags(IntFlag):
    NONE = 0
    IS_DIR = 1 << 0
    IS_FILE = 1 << 1
    IS_SYMLINK = 1 << 2
    ITEM_RENAMED = 1 << 3
    ITEM_REMOVED = 1 << 4


@dataclass(frozen=True)
class WatchEvent:
    type: WatchEventType
    path: str
    flags: WatchFlags = WatchFlags.NONE
    event_id: int = 0

    @property
    def is_dir(self) -> bool:
        return bool(self.flags & WatchFlags.IS_DIR)


WatchCallback = Callable[[WatchEvent, Any], None]


def _decode(path: Any) -> str:
    return os.fsdecode(path)


class _Handler(FileSystemEventHandler):
    """Maps watchdog events onto WatchEvents and posts them to `sink`."""

    def __init__(self, sink: Callable[[WatchEventType, str, WatchFlags], None]) -> None:
        self._sink = sink

    def _kind(self, event: FileSystemEvent, path: str) -> WatchFlags:
        flags = WatchFlags.IS_DIR if event.is_directory else WatchFlags.IS_FILE
        if os.path.islink(path):
            flags |= WatchFlags.IS_SYMLINK
        return flags

    def on_created(self, event: FileSystemEvent) -> None:
        path = _decode(event.src_path)
        kind = WatchEventType.DIR_CREATED if isinstance(event, DirCreatedEvent) else WatchEventType.CREATED
        self._sink(kind, path, self._kind(event, path))

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtime changes accompany every child event
        if isinstance(event, DirModifiedEvent):
            return
        path = _decode(event.src_path)
        self._sink(WatchEventType.MODIFIED, path, self._kind(event, path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = _decode(event.src_path)
        if isinstance(event, DirDeletedEvent):
            self._sink(WatchEventType.DIR_DELETED, path, WatchFlags.IS_DIR | WatchFlags.ITEM_REMOVED)
        else:
            self._sink(WatchEventType.DELETED, path, WatchFlags.IS_FILE | WatchFlags.ITEM_REMOVED)

    def on_moved(self, event: FileSystemMovedEvent) -> None:
        base = WatchFlags.IS_DIR if event.is_directory else WatchFlags.IS_FILE
        self._sink(WatchEventType.RENAMED, _decode(event.src_path), base | WatchFlags.ITEM_RENAMED)
        self._sink(WatchEventType.RENAMED, _decode(event.dest_path), base | WatchFlags.ITEM_RENAMED)


class FileWatcher:
    """Recursive watcher over a set of directories."""

    def __init__(self, latency: float = 0.5) -> None:
        self._paths: list[str] = []
        self._latency = latency
        self._callback: Optional[WatchCallback] = None
        self._user_data: Any = None
        self._pending: list[WatchEvent] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._observer: Optional[Observer] = None
        self._watches: dict[str, Any] = {}
        self._flusher: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._handler = _Handler(self._post)

    @property
    def paths(self) -> list[str]:
        return list(self._paths)

    @property
    def latency(self) -> float:
        return self._latency

    def add_path(self, path: str) -> bool:
        if self.is_running():
            raise RuntimeError("Cannot add paths while the watcher is running")
        path = os.path.abspath(path)
        if path in self._paths:
            return False
        self._paths.append(path)
        return True

    def remove_path(self, path: str) -> bool:
        path = os.path.abspath(path)
        if path not in self._paths:
            return False
        self._paths.remove(path)
        watch = self._watches.pop(path, None)
        if watch is not None and self._observer is not None:
            self._observer.unschedule(watch)
        return True

    def set_callback(self, callback: Optional[WatchCallback], user_data: Any = None) -> None:
        self._callback = callback
        self._user_data = user_data

    def set_latency(self, seconds: float) -> None:
        self._latency = max(0.0, float(seconds))

    def is_running(self) -> bool:
        return self._observer is not None

    def start(self) -> bool:
        if self.is_running():
            return True
        if not self._paths:
            logger.warning("Watcher has no paths to watch")
            return False

        observer = Observer()
        for path in self._paths:
            try:
                self._watches[path] = observer.schedule(self._handler, path, recursive=True)
            except OSError as e:
                logger.warning(f"Cannot watch {path}: {e}")
        if not self._watches:
            return False

        observer.start()
        self._observer = observer
        self._stop_event.clear()
        self._flusher = threading.Thread(target=self._run, name="semfind-watcher", daemon=True)
        self._flusher.start()
        logger.info(f"Watching {len(self._watches)} directories")
        return True

    def stop(self) -> None:
        observer = self._observer
        if observer is None:
            return
        self._observer = None
        observer.stop()
        observer.join()
        self._watches.clear()
        self._stop_event.set()
        if self._flusher is not None and self._flusher is not threading.current_thread():
            self._flusher.join()
        self._flusher = None
        with self._lock:
            dropped = len(self._pending)
            self._pending.clear()
        if dropped:
            logger.debug(f"Dropped {dropped} undelivered events on stop")
        logger.info("Watcher stopped")

    def close(self) -> None:
        self.stop()
        self._paths.clear()
        self._callback = None
        self._user_data = None

    def _post(self, kind: WatchEventType, path: str, flags: WatchFlags) -> None:
        event = WatchEvent(type=kind, path=path, flags=flags, event_id=next(self._ids))
        with self._lock:
            self._pending.append(event)

    def flush(self) -> int:
        """Deliver buffered events to the callback; returns how many were delivered."""
        with self._lock:
            events, self._pending = self._pending, []
        callback, user_data = self._callback, self._user_data
        if callback is None:
            return 0
        for event in events:
            try:
                callback(event, user_data)
            except Exception:
                logger.exception(f"Watch callback failed for {event.path}")
        return len(events)

    def _run(self) -> None:
        while not self._stop_event.wait(max(self._latency, 0.01)):
            self.flush()
