"""Tests for store schema versioning and migrations."""
from __future__ import annotations

import sqlite3
from pathlib import Path

import numpy as np
import pytest

from semfind.errors import SemfindError, StoreError
from semfind.store.schema import (
    CURRENT_SCHEMA_VERSION,
    SchemaManager,
    _add_column,
    v1_table_sql,
    validate_table_name,
)
from semfind.store.vector_store import VectorStore


def _columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})")}


def _indexes(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA index_list({table})")}


@pytest.fixture
def conn(tmp_path: Path):
    c = sqlite3.connect(str(tmp_path / "schema.db"))
    yield c
    c.close()


class TestFreshDatabase:
    def test_created_at_latest_version(self, conn):
        version = SchemaManager(conn, "files").ensure_current()
        assert version == CURRENT_SCHEMA_VERSION
        assert {"content_hash", "metadata_json", "embedding"} <= _columns(conn, "files")
        assert {"idx_files_path", "idx_files_modified", "idx_files_hash"} <= _indexes(conn, "files")

    def test_idempotent(self, conn):
        mgr = SchemaManager(conn, "files")
        assert mgr.ensure_current() == CURRENT_SCHEMA_VERSION
        assert mgr.ensure_current() == CURRENT_SCHEMA_VERSION
        rows = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
        assert rows == 1

    def test_tables_versioned_independently(self, conn):
        SchemaManager(conn, "text_files").ensure_current()
        assert SchemaManager(conn, "image_files").version() == 0
        SchemaManager(conn, "image_files").ensure_current()
        assert SchemaManager(conn, "image_files").version() == CURRENT_SCHEMA_VERSION


class TestLegacyMigration:
    def test_v1_table_is_upgraded(self, conn):
        conn.execute(v1_table_sql("files"))
        conn.execute(
            "INSERT INTO files (path, name, file_type, size, modified_time, indexed_time, embedding) "
            "VALUES ('/a/x.txt', 'x.txt', 1, 5, 10, 11, NULL)"
        )
        conn.commit()
        assert "content_hash" not in _columns(conn, "files")

        version = SchemaManager(conn, "files").ensure_current()

        assert version == CURRENT_SCHEMA_VERSION
        assert {"content_hash", "metadata_json"} <= _columns(conn, "files")
        row = conn.execute("SELECT path, content_hash, metadata_json FROM files").fetchone()
        assert row == ("/a/x.txt", None, None)

    def test_partial_legacy_columns_tolerated(self, conn):
        conn.execute(v1_table_sql("files"))
        conn.execute("ALTER TABLE files ADD COLUMN content_hash TEXT")
        conn.commit()
        assert SchemaManager(conn, "files").ensure_current() == CURRENT_SCHEMA_VERSION
        assert "metadata_json" in _columns(conn, "files")

    def test_store_opens_legacy_database(self, tmp_path: Path):
        db = tmp_path / "legacy.db"
        c = sqlite3.connect(str(db))
        c.execute(v1_table_sql("indexed_files"))
        vec = np.full(384, 1 / np.sqrt(384), dtype=np.float32)
        c.execute(
            "INSERT INTO indexed_files (path, name, file_type, size, modified_time, indexed_time, embedding) "
            "VALUES (?, ?, 1, 5, 10, 11, ?)",
            ("/old/a.txt", "a.txt", vec.tobytes()),
        )
        c.commit()
        c.close()

        with VectorStore.open_path(db) as store:
            assert store.version() == CURRENT_SCHEMA_VERSION
            e = store.get("/old/a.txt")
            assert e.has_embedding
            assert e.content_hash is None
            assert e.metadata == {}

    def test_newer_schema_rejected(self, conn):
        SchemaManager(conn, "files").ensure_current()
        conn.execute(
            "UPDATE schema_version SET version = ? WHERE table_name = 'files'",
            (CURRENT_SCHEMA_VERSION + 1,),
        )
        conn.commit()
        with pytest.raises(StoreError, match="newer than supported"):
            SchemaManager(conn, "files").ensure_current()

    def test_store_open_reports_newer_schema(self, tmp_path: Path):
        db = tmp_path / "future.db"
        VectorStore.open_path(db).close()
        c = sqlite3.connect(str(db))
        c.execute("UPDATE schema_version SET version = version + 1")
        c.commit()
        c.close()
        with pytest.raises(SemfindError):
            VectorStore.open_path(db)


class TestHelpers:
    def test_duplicate_column_is_ignored(self, conn):
        conn.execute("CREATE TABLE t (id INTEGER)")
        _add_column(conn, "t", "extra", "TEXT")
        _add_column(conn, "t", "extra", "TEXT")
        assert "extra" in _columns(conn, "t")

    def test_other_alter_errors_propagate(self, conn):
        with pytest.raises(sqlite3.OperationalError):
            _add_column(conn, "missing_table", "extra", "TEXT")

    @pytest.mark.parametrize("name", ["files", "_x", "image_index2"])
    def test_valid_table_names(self, name):
        assert validate_table_name(name) == name

    @pytest.mark.parametrize("name", ["", "1files", "files;drop", "a b", "a-b"])
    def test_invalid_table_names(self, name):
        with pytest.raises(ValueError):
            validate_table_name(name)
