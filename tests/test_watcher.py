"""Tests for the watchdog-backed file watcher."""
from __future__ import annotations

import time
from pathlib import Path

import pytest
from watchdog.events import (
    DirCreatedEvent,
    DirDeletedEvent,
    DirModifiedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from semfind.indexer.watcher import FileWatcher, WatchEvent, WatchEventType, WatchFlags


@pytest.fixture
def collected():
    return []


@pytest.fixture
def watcher(collected):
    w = FileWatcher(latency=0.05)
    w.set_callback(lambda event, data: collected.append((event, data)), user_data="ctx")
    yield w
    w.close()


class TestEventTranslation:
    def test_file_created(self, watcher, collected):
        watcher._handler.on_created(FileCreatedEvent("/w/a.txt"))
        assert watcher.flush() == 1
        event, data = collected[0]
        assert event.type == WatchEventType.CREATED
        assert event.path == "/w/a.txt"
        assert event.flags & WatchFlags.IS_FILE
        assert not event.is_dir
        assert data == "ctx"

    def test_dir_created(self, watcher, collected):
        watcher._handler.on_created(DirCreatedEvent("/w/sub"))
        watcher.flush()
        event, _ = collected[0]
        assert event.type == WatchEventType.DIR_CREATED
        assert event.is_dir

    def test_modified(self, watcher, collected):
        watcher._handler.on_modified(FileModifiedEvent("/w/a.txt"))
        watcher._handler.on_modified(DirModifiedEvent("/w"))
        assert watcher.flush() == 1
        assert collected[0][0].type == WatchEventType.MODIFIED

    def test_deleted(self, watcher, collected):
        watcher._handler.on_deleted(FileDeletedEvent("/w/a.txt"))
        watcher._handler.on_deleted(DirDeletedEvent("/w/sub"))
        watcher.flush()
        kinds = [e.type for e, _ in collected]
        assert kinds == [WatchEventType.DELETED, WatchEventType.DIR_DELETED]
        assert all(e.flags & WatchFlags.ITEM_REMOVED for e, _ in collected)
        assert collected[1][0].is_dir

    def test_file_moved_reports_both_paths(self, watcher, collected):
        watcher._handler.on_moved(FileMovedEvent("/w/old.txt", "/w/new.txt"))
        watcher.flush()
        events = [e for e, _ in collected]
        assert [e.type for e in events] == [WatchEventType.RENAMED, WatchEventType.RENAMED]
        assert [e.path for e in events] == ["/w/old.txt", "/w/new.txt"]
        assert all(e.flags & WatchFlags.ITEM_RENAMED for e in events)
        assert not events[0].is_dir

    def test_dir_moved(self, watcher, collected):
        watcher._handler.on_moved(DirMovedEvent("/w/a", "/w/b"))
        watcher.flush()
        assert all(e.is_dir for e, _ in collected)

    def test_event_ids_increase(self, watcher, collected):
        for name in ("a", "b", "c"):
            watcher._handler.on_created(FileCreatedEvent(f"/w/{name}"))
        watcher.flush()
        ids = [e.event_id for e, _ in collected]
        assert ids == sorted(ids)
        assert len(set(ids)) == 3


class TestDelivery:
    def test_callback_errors_do_not_stop_delivery(self, collected):
        w = FileWatcher()
        seen: list[WatchEvent] = []

        def flaky(event, _):
            seen.append(event)
            if len(seen) == 1:
                raise RuntimeError("boom")

        w.set_callback(flaky)
        w._handler.on_created(FileCreatedEvent("/w/a"))
        w._handler.on_created(FileCreatedEvent("/w/b"))
        assert w.flush() == 2
        assert [e.path for e in seen] == ["/w/a", "/w/b"]

    def test_no_callback(self):
        w = FileWatcher()
        w._handler.on_created(FileCreatedEvent("/w/a"))
        assert w.flush() == 0


class TestLifecycle:
    def test_paths(self, tmp_path: Path):
        w = FileWatcher()
        assert w.add_path(str(tmp_path))
        assert not w.add_path(str(tmp_path))
        assert w.paths == [str(tmp_path)]
        assert w.remove_path(str(tmp_path))
        assert not w.remove_path(str(tmp_path))

    def test_start_without_paths(self):
        w = FileWatcher()
        assert not w.start()
        assert not w.is_running()

    def test_latency_clamped(self):
        w = FileWatcher()
        w.set_latency(-3)
        assert w.latency == 0.0

    def test_live_events(self, tmp_path: Path, watcher, collected):
        watcher.add_path(str(tmp_path))
        assert watcher.start()
        try:
            assert watcher.is_running()
            with pytest.raises(RuntimeError):
                watcher.add_path(str(tmp_path / "other"))
            (tmp_path / "new.txt").write_text("hi")
            target = str(tmp_path / "new.txt")
            deadline = time.time() + 5.0
            while time.time() < deadline:
                if any(e.path == target for e, _ in collected):
                    break
                time.sleep(0.05)
            assert any(
                e.path == target and e.type in (WatchEventType.CREATED, WatchEventType.MODIFIED)
                for e, _ in collected
            )
        finally:
            watcher.stop()
        assert not watcher.is_running()
        watcher.stop()
