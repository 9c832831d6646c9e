from __future__ import annotations

import logging
import os
import queue
import threading
import time
from typing import Any, Callable, Optional

from ..config import MAX_EXCLUDE_PATTERNS, MAX_WATCH_DIRS, IndexerConfig
from ..embeddings.text import MAX_TEXT_LEN, TextEmbeddingProvider
from ..errors import SemfindError, StoreError, TooManyItemsError
from ..hashing import hash_bytes
from ..models import FileType, IndexerState, IndexerStats
from ..store.vector_store import VectorStore
from .crawler import should_descend, should_index, walk
from .queue import IndexQueue
from .watcher import FileWatcher, WatchEvent, WatchEventType

logger = logging.getLogger(__name__)

FileCallback = Callable[[str, IndexerState], None]
ProgressCallback = Callable[[int, int, float], None]
WatcherFactory = Callable[[], Any]


class Indexer:
    """Background crawler that keeps a VectorStore in sync with the filesystem.

    One worker thread crawls every watched root, then drains the index queue.
    Once the queue first runs dry it optionally subscribes a watcher on the
    same roots. Watch events never touch the store directly: the watcher posts
    them to a channel and the worker applies them between queue items.

    States: STOPPED -> RUNNING (start) -> WATCHING (first drain, watching on),
    RUNNING <-> PAUSED (pause/resume), any -> STOPPED (stop).
    """

    def __init__(
        self,
        config: Optional[IndexerConfig] = None,
        store: Optional[VectorStore] = None,
        embedder: Optional[TextEmbeddingProvider] = None,
        watcher_factory: Optional[WatcherFactory] = None,
    ) -> None:
        self.config = (config or IndexerConfig()).copy()
        self._store = store
        self._embedder = embedder
        self._watcher_factory: WatcherFactory = watcher_factory or FileWatcher
        self._watcher: Any = None

        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._queue = IndexQueue()
        self._events: "queue.SimpleQueue[WatchEvent]" = queue.SimpleQueue()
        self._thread: Optional[threading.Thread] = None

        self._state = IndexerState.STOPPED
        self._watching_enabled = self.config.enable_watching
        self._crawl_done = False
        self._initial_scan_complete = False
        self._in_flight = False
        self._stats = IndexerStats()
        self._total_to_index = 0
        self._start_time = 0.0
        self._processed = 0

        self._callback: Optional[FileCallback] = None
        self._progress_callback: Optional[ProgressCallback] = None

    # Configuration

    @property
    def state(self) -> IndexerState:
        with self._lock:
            return self._state

    @property
    def store(self) -> Optional[VectorStore]:
        return self._store

    @property
    def watching_enabled(self) -> bool:
        with self._lock:
            return self._watching_enabled

    def set_store(self, store: Optional[VectorStore]) -> None:
        with self._lock:
            self._store = store

    def set_embedder(self, embedder: Optional[TextEmbeddingProvider]) -> None:
        with self._lock:
            self._embedder = embedder

    def add_watch_dir(self, path: str) -> bool:
        path = os.path.abspath(os.path.expanduser(path))
        with self._lock:
            if path in self.config.watch_dirs:
                return False
            if len(self.config.watch_dirs) >= MAX_WATCH_DIRS:
                raise TooManyItemsError(f"At most {MAX_WATCH_DIRS} watch directories are supported")
            self.config.watch_dirs.append(path)
        return True

    def remove_watch_dir(self, path: str) -> bool:
        path = os.path.abspath(os.path.expanduser(path))
        with self._lock:
            if path not in self.config.watch_dirs:
                return False
            self.config.watch_dirs.remove(path)
            watcher = self._watcher
        if watcher is not None:
            watcher.remove_path(path)
        return True

    def add_exclude_pattern(self, pattern: str) -> None:
        with self._lock:
            if len(self.config.exclude_patterns) >= MAX_EXCLUDE_PATTERNS:
                raise TooManyItemsError(f"At most {MAX_EXCLUDE_PATTERNS} exclude patterns are supported")
            self.config.exclude_patterns.append(pattern)

    def set_callback(self, callback: Optional[FileCallback]) -> None:
        with self._lock:
            self._callback = callback

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        with self._lock:
            self._progress_callback = callback

    def _config_snapshot(self) -> IndexerConfig:
        with self._lock:
            return self.config.copy()

    # Lifecycle

    def start(self) -> bool:
        with self._lock:
            if self._state not in (IndexerState.STOPPED, IndexerState.ERROR):
                return False
            if self._store is None:
                raise StoreError("No vector database set")
            self._stats = IndexerStats()
            self._start_time = time.monotonic()
            self._total_to_index = 0
            self._processed = 0
            self._crawl_done = False
            self._initial_scan_complete = False
            self._state = IndexerState.RUNNING

        thread = threading.Thread(target=self._run, name="semfind-indexer", daemon=True)
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"Failed to start indexer thread: {e}")
            with self._lock:
                self._state = IndexerState.ERROR
            return False
        self._thread = thread
        logger.info(f"Indexer started on {len(self.config.watch_dirs)} directories")
        return True

    def pause(self) -> bool:
        with self._cond:
            if self._state != IndexerState.RUNNING:
                return False
            self._state = IndexerState.PAUSED
            self._cond.notify_all()
        logger.info("Indexer paused")
        return True

    def resume(self) -> bool:
        with self._cond:
            if self._state != IndexerState.PAUSED:
                return False
            self._state = IndexerState.RUNNING
            self._cond.notify_all()
        logger.info("Indexer resumed")
        return True

    def stop(self) -> None:
        self._stop_watcher()
        with self._cond:
            was = self._state
            self._state = IndexerState.STOPPED
            self._cond.notify_all()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join()
        self._stop_watcher()
        if was != IndexerState.STOPPED:
            logger.info("Indexer stopped")

    def close(self) -> None:
        self.stop()
        if self._watcher is not None:
            self._watcher.close()
            self._watcher = None

    def enable_watching(self, enable: bool) -> bool:
        with self._lock:
            if self._watching_enabled == enable:
                return True
            self._watching_enabled = enable
            self.config.enable_watching = enable
            scan_complete = self._initial_scan_complete
            active = self._state in (IndexerState.RUNNING, IndexerState.WATCHING)

        if enable:
            if scan_complete and active:
                return self._start_watcher()
            return True

        self._stop_watcher()
        with self._lock:
            if self._state == IndexerState.WATCHING:
                self._state = IndexerState.RUNNING
        return True

    def _start_watcher(self) -> bool:
        cfg = self._config_snapshot()
        if self._watcher is None:
            watcher = self._watcher_factory()
            watcher.set_callback(self._on_watch_event, None)
            self._watcher = watcher
        watcher = self._watcher
        watcher.set_latency(cfg.watch_latency)
        if not watcher.is_running():
            for d in cfg.watch_dirs:
                watcher.add_path(d)
            if not watcher.start():
                logger.warning("Watcher failed to start; continuing without live updates")
                return False
        with self._lock:
            stopping = self._stopping()
            if self._state == IndexerState.RUNNING:
                self._state = IndexerState.WATCHING
        if stopping:
            # stop() ran while the watcher was being created
            watcher.stop()
            return False
        return True

    def _stop_watcher(self) -> None:
        watcher = self._watcher
        if watcher is not None and watcher.is_running():
            watcher.stop()

    def _on_watch_event(self, event: WatchEvent, user_data: Any = None) -> None:
        self._events.put(event)
        with self._cond:
            self._cond.notify_all()

    # Queries

    def should_index_file(self, path: str) -> bool:
        return should_index(path, self._config_snapshot())

    def is_busy(self) -> bool:
        with self._lock:
            return self._state == IndexerState.RUNNING and (len(self._queue) > 0 or self._in_flight)

    def get_stats(self) -> IndexerStats:
        with self._lock:
            s = self._stats
            return IndexerStats(
                files_indexed=s.files_indexed,
                files_pending=len(self._queue),
                files_skipped=s.files_skipped,
                total_bytes=s.total_bytes,
                progress=s.progress,
                elapsed_time_sec=s.elapsed_time_sec,
                avg_time_per_file_ms=s.avg_time_per_file_ms,
            )

    def _idle_locked(self) -> bool:
        return (
            self._crawl_done
            and len(self._queue) == 0
            and not self._in_flight
            and self._events.empty()
        )

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the crawl is done and no work is queued or in flight."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._state == IndexerState.STOPPED:
                    return True
                if self._state == IndexerState.ERROR:
                    return False
                if self._idle_locked():
                    return True
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(1.0 if remaining is None else min(remaining, 1.0))

    # Re-indexing

    def reindex_file(self, path: str) -> None:
        store = self._store
        if store is None:
            raise StoreError("No vector database set")
        store.delete(path)
        self._enqueue(path)

    def reindex_directory(self, path: str) -> int:
        store = self._store
        if store is None:
            raise StoreError("No vector database set")
        removed = store.delete_prefix(path)
        logger.info(f"Re-indexing {path} ({removed} rows cleared)")
        return self._crawl(path)

    # Worker

    def _stopping(self) -> bool:
        return self._state == IndexerState.STOPPED

    def _enqueue(self, path: str) -> None:
        with self._cond:
            self._queue.put(path)
            self._stats.files_pending = len(self._queue)
            self._cond.notify_all()

    def _crawl(self, root: str) -> int:
        cfg = self._config_snapshot()
        n = 0
        for path in walk(root, cfg, self._stopping):
            self._enqueue(path)
            n += 1
        return n

    def _run(self) -> None:
        try:
            for root in self._config_snapshot().watch_dirs:
                if self._stopping():
                    break
                queued = self._crawl(root)
                logger.debug(f"Queued {queued} files under {root}")

            with self._cond:
                self._total_to_index = len(self._queue)
                self._crawl_done = True
                self._cond.notify_all()
            logger.info(f"Initial crawl queued {self._total_to_index} files")

            self._loop()
        except Exception:
            logger.exception("Indexer worker crashed")
            with self._cond:
                self._state = IndexerState.ERROR
                self._in_flight = False
                self._cond.notify_all()

    def _next_item(self) -> Optional[str]:
        """Wait for the next path; None when the worker should re-check events or exit."""
        with self._cond:
            while self._state == IndexerState.PAUSED:
                self._cond.wait(1.0)
            if self._state == IndexerState.STOPPED:
                return None
            path = self._queue.get()
            self._in_flight = path is not None
            self._stats.files_pending = len(self._queue)
            return path

    def _loop(self) -> None:
        while not self._stopping():
            self._drain_events()
            path = self._next_item()
            if self._stopping():
                break
            if path is None:
                self._on_queue_empty()
                continue

            try:
                self._process_file(path)
            finally:
                with self._cond:
                    self._in_flight = False
                    self._processed += 1
                    processed = self._processed
                    self._cond.notify_all()

            cfg = self.config
            if cfg.delay_between_batches_ms > 0 and processed % max(cfg.batch_size, 1) == 0:
                time.sleep(cfg.delay_between_batches_ms / 1000.0)

    def _on_queue_empty(self) -> None:
        start_watching = False
        with self._cond:
            if not self._initial_scan_complete:
                self._initial_scan_complete = True
                start_watching = self._watching_enabled
                logger.info(
                    f"Initial indexing complete: {self._stats.files_indexed} indexed, "
                    f"{self._stats.files_skipped} skipped"
                )
            self._cond.notify_all()
        if start_watching and not self._stopping():
            self._start_watcher()
        with self._cond:
            if not self._stopping() and len(self._queue) == 0 and self._events.empty():
                self._cond.wait(1.0)

    def _drain_events(self) -> None:
        while not self._stopping():
            with self._cond:
                try:
                    event = self._events.get_nowait()
                except queue.Empty:
                    return
                self._in_flight = True
            try:
                self._handle_event(event)
            except SemfindError as e:
                logger.warning(f"Failed to apply {event.type.value} event for {event.path}: {e}")
            finally:
                with self._cond:
                    self._in_flight = False
                    self._cond.notify_all()

    def _handle_event(self, event: WatchEvent) -> None:
        store = self._store
        if store is None:
            return
        path = event.path
        kind = event.type

        if kind in (WatchEventType.CREATED, WatchEventType.MODIFIED):
            if not event.is_dir and self.should_index_file(path):
                self._enqueue(path)
        elif kind == WatchEventType.DELETED:
            store.delete(path)
        elif kind == WatchEventType.RENAMED:
            if event.is_dir:
                if os.path.isdir(path):
                    if should_descend(path, self._config_snapshot()):
                        self._crawl(path)
                else:
                    store.delete_prefix(path)
            elif os.path.exists(path):
                if self.should_index_file(path):
                    self._enqueue(path)
            else:
                store.delete(path)
        elif kind == WatchEventType.DIR_DELETED:
            store.delete_prefix(path)
        elif kind == WatchEventType.DIR_CREATED:
            if should_descend(path, self._config_snapshot()):
                self._crawl(path)

    def _read_text(self, path: str) -> tuple[Optional[str], Optional[str]]:
        with open(path, "rb") as f:
            raw = f.read(MAX_TEXT_LEN)
        if not raw:
            return None, None
        return raw.decode("utf-8", errors="replace"), hash_bytes(raw)

    def _process_file(self, path: str) -> None:
        store = self._store
        indexed = False
        size = 0
        try:
            st = os.stat(path)
            size = st.st_size
            mtime = int(st.st_mtime)
            if store is None or store.is_up_to_date(path, mtime):
                logger.debug(f"Skipping up-to-date {path}")
            else:
                name = os.path.basename(path)
                ext = os.path.splitext(name)[1][1:].lower()
                file_type = FileType.from_extension(ext)

                embedding = None
                content_hash = None
                embedder = self._embedder
                if file_type.is_textual and embedder is not None and embedder.is_loaded:
                    try:
                        text, content_hash = self._read_text(path)
                        if text is not None:
                            embedding = embedder.generate(text).embedding
                    except (OSError, SemfindError) as e:
                        logger.warning(f"Embedding failed for {path}, indexing metadata only: {e}")
                        embedding = None

                store.index(
                    path, name, file_type, size, mtime,
                    embedding=embedding, content_hash=content_hash,
                )
                indexed = True
        except OSError as e:
            logger.debug(f"Cannot stat {path}: {e}")
        except SemfindError as e:
            logger.warning(f"Failed to index {path}: {e}")

        with self._lock:
            if indexed:
                self._stats.files_indexed += 1
                self._stats.total_bytes += size
            else:
                self._stats.files_skipped += 1
            elapsed = time.monotonic() - self._start_time
            self._stats.elapsed_time_sec = elapsed
            if self._stats.files_indexed > 0:
                self._stats.avg_time_per_file_ms = elapsed * 1000.0 / self._stats.files_indexed
            total = self._total_to_index
            fraction = 0.0
            if total > 0:
                fraction = min(1.0, self._stats.files_indexed / total)
            self._stats.progress = fraction
            indexed_count = self._stats.files_indexed
            state = self._state
            callback = self._callback
            progress_callback = self._progress_callback

        if progress_callback is not None:
            progress_callback(indexed_count, total, fraction)
        if callback is not None:
            callback(path, state)
