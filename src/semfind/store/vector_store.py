from __future__ import annotations

from contextlib import contextmanager
import json
import logging
from pathlib import Path
import sqlite3
import threading
import time
from typing import Any, Iterator, Optional

import numpy as np

from ..embeddings.base import TEXT_EMBEDDING_DIMENSION, VectorLike, as_vector, cosine_similarity
from ..errors import InvalidEmbeddingError, NotFoundError, StoreError
from ..models import FileType, IndexedEntity, VectorHit
from .schema import SchemaManager, validate_table_name

logger = logging.getLogger(__name__)

MAX_RESULTS = 100
DEFAULT_TABLE = "indexed_files"


def _vec_to_blob(vec: np.ndarray) -> bytes:
    return np.asarray(vec, dtype=np.float32).ravel().tobytes()


def _file_type(value: int) -> FileType:
    try:
        return FileType(value)
    except ValueError:
        return FileType.UNKNOWN


def _prefix_of(directory: str) -> tuple[str, str]:
    """Return (directory itself, directory with one trailing slash)."""
    base = str(directory).rstrip("/") or "/"
    return base, base if base.endswith("/") else base + "/"


class VectorStore:
    """SQLite-backed store of per-file embeddings, keyed by absolute path.

    Search is a brute-force cosine scan over every stored vector. Rows whose
    blob is not exactly `dims` float32 values read as "no embedding" and are
    skipped by search.
    """

    def __init__(self, db_path: str | Path, dims: int = TEXT_EMBEDDING_DIMENSION, table: str = DEFAULT_TABLE) -> None:
        self.db_path = Path(db_path)
        self.dims = int(dims)
        self.table = validate_table_name(table)
        self._local = threading.local()
        self._connections: list[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._opened = False

    @classmethod
    def open_path(cls, db_path: str | Path, dims: int = TEXT_EMBEDDING_DIMENSION, table: str = DEFAULT_TABLE) -> "VectorStore":
        store = cls(db_path, dims=dims, table=table)
        store.open()
        return store

    def __enter__(self) -> "VectorStore":
        if not self._opened:
            self.open()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a thread-local SQLite connection.

        Each thread gets its own connection with WAL mode and busy timeout.
        Connections are tracked for cleanup via close().
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._local.conn = conn
            with self._conn_lock:
                self._connections.append(conn)
        return conn

    @contextmanager
    def _errors(self, op: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.Error as e:
            raise StoreError(f"{op} failed: {e}") from e

    def _require_open(self) -> sqlite3.Connection:
        if not self._opened:
            raise StoreError("Vector store is not open")
        return self._get_conn()

    def open(self) -> None:
        with self._errors("open"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._write_lock:
                version = SchemaManager(self._get_conn(), self.table).ensure_current()
        self._opened = True
        logger.debug(f"Opened vector store {self.db_path} (table={self.table}, schema v{version})")

    def close(self) -> None:
        """Close all thread-local connections."""
        with self._conn_lock:
            for conn in self._connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.debug(f"Error closing connection: {e}")
            self._connections.clear()
        self._local = threading.local()
        self._opened = False

    @property
    def is_open(self) -> bool:
        return self._opened

    def version(self) -> int:
        conn = self._require_open()
        with self._errors("version"):
            return SchemaManager(conn, self.table).version()

    def _check_vector(self, embedding: VectorLike) -> np.ndarray:
        vec = as_vector(embedding)
        if vec.size != self.dims:
            raise InvalidEmbeddingError(f"Expected {self.dims}-d embedding, got {vec.size}")
        return vec

    def _row_to_entity(self, row: sqlite3.Row) -> IndexedEntity:
        blob = row["embedding"]
        embedding = None
        if blob is not None and len(blob) == self.dims * 4:
            embedding = np.frombuffer(blob, dtype=np.float32).copy()
        keys = row.keys()
        meta_raw = row["metadata_json"] if "metadata_json" in keys else None
        return IndexedEntity(
            id=row["id"],
            path=row["path"],
            name=row["name"],
            file_type=_file_type(row["file_type"]),
            size=row["size"],
            modified_time=row["modified_time"],
            indexed_time=row["indexed_time"],
            embedding=embedding,
            has_embedding=embedding is not None,
            content_hash=row["content_hash"] if "content_hash" in keys else None,
            metadata=json.loads(meta_raw) if meta_raw else {},
        )

    # Writes

    def index(
        self,
        path: str,
        name: str,
        file_type: FileType,
        size: int,
        modified_time: int,
        embedding: Optional[VectorLike] = None,
        content_hash: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> int:
        """Insert or replace the row for `path`; returns the row id."""
        conn = self._require_open()
        blob = _vec_to_blob(self._check_vector(embedding)) if embedding is not None else None
        meta = json.dumps(metadata) if metadata else None
        with self._write_lock, self._errors("index"):
            conn.execute(
                f"""INSERT INTO {self.table}
                    (path, name, file_type, size, modified_time, indexed_time, embedding, content_hash, metadata_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(path) DO UPDATE SET
                      name=excluded.name,
                      file_type=excluded.file_type,
                      size=excluded.size,
                      modified_time=excluded.modified_time,
                      indexed_time=excluded.indexed_time,
                      embedding=excluded.embedding,
                      content_hash=excluded.content_hash,
                      metadata_json=excluded.metadata_json
                """,
                (path, name, int(file_type), int(size), int(modified_time), int(time.time()), blob, content_hash, meta),
            )
            conn.commit()
            row = conn.execute(f"SELECT id FROM {self.table} WHERE path = ?", (path,)).fetchone()
        return int(row["id"])

    def update_embedding(self, path: str, embedding: VectorLike) -> None:
        conn = self._require_open()
        blob = _vec_to_blob(self._check_vector(embedding))
        with self._write_lock, self._errors("update_embedding"):
            cur = conn.execute(
                f"UPDATE {self.table} SET embedding = ?, indexed_time = ? WHERE path = ?",
                (blob, int(time.time()), path),
            )
            conn.commit()
        if cur.rowcount == 0:
            raise NotFoundError(f"File not found in index: {path}")

    def delete(self, path: str) -> bool:
        conn = self._require_open()
        with self._write_lock, self._errors("delete"):
            cur = conn.execute(f"DELETE FROM {self.table} WHERE path = ?", (path,))
            conn.commit()
        return cur.rowcount > 0

    def delete_prefix(self, directory: str) -> int:
        """Remove `directory` and every row beneath it; returns the number removed."""
        conn = self._require_open()
        base, prefix = _prefix_of(directory)
        with self._write_lock, self._errors("delete_prefix"):
            cur = conn.execute(
                f"DELETE FROM {self.table} WHERE path = ? OR substr(path, 1, ?) = ?",
                (base, len(prefix), prefix),
            )
            conn.commit()
        if cur.rowcount:
            logger.debug(f"Removed {cur.rowcount} rows under {base}")
        return cur.rowcount

    def clear(self) -> None:
        conn = self._require_open()
        with self._write_lock, self._errors("clear"):
            conn.execute(f"DELETE FROM {self.table}")
            conn.commit()

    # Reads

    def is_up_to_date(self, path: str, modified_time: int) -> bool:
        conn = self._require_open()
        with self._errors("is_up_to_date"):
            row = conn.execute(
                f"SELECT 1 FROM {self.table} WHERE path = ? AND modified_time >= ?",
                (path, int(modified_time)),
            ).fetchone()
        return row is not None

    def get(self, path: str) -> IndexedEntity:
        conn = self._require_open()
        with self._errors("get"):
            row = conn.execute(f"SELECT * FROM {self.table} WHERE path = ?", (path,)).fetchone()
        if row is None:
            raise NotFoundError(f"File not found in index: {path}")
        return self._row_to_entity(row)

    def contains(self, path: str) -> bool:
        conn = self._require_open()
        with self._errors("contains"):
            row = conn.execute(f"SELECT 1 FROM {self.table} WHERE path = ?", (path,)).fetchone()
        return row is not None

    def count(self) -> int:
        conn = self._require_open()
        with self._errors("count"):
            return int(conn.execute(f"SELECT COUNT(*) FROM {self.table}").fetchone()[0])

    def count_with_embeddings(self) -> int:
        conn = self._require_open()
        with self._errors("count_with_embeddings"):
            row = conn.execute(
                f"SELECT COUNT(*) FROM {self.table} WHERE embedding IS NOT NULL AND length(embedding) = ?",
                (self.dims * 4,),
            ).fetchone()
        return int(row[0])

    def total_size(self) -> int:
        conn = self._require_open()
        with self._errors("total_size"):
            return int(conn.execute(f"SELECT COALESCE(SUM(size), 0) FROM {self.table}").fetchone()[0])

    def iter_paths(self) -> Iterator[str]:
        conn = self._require_open()
        with self._errors("iter_paths"):
            rows = conn.execute(f"SELECT path FROM {self.table} ORDER BY path").fetchall()
        for r in rows:
            yield r["path"]

    # Search

    def search(self, query: Optional[VectorLike], limit: int = 20) -> list[VectorHit]:
        """Top-`limit` rows by cosine similarity to `query`, best first."""
        return self._search(query, limit, None)

    def search_in_prefix(self, query: Optional[VectorLike], directory: str, limit: int = 20) -> list[VectorHit]:
        return self._search(query, limit, directory)

    def _search(self, query: Optional[VectorLike], limit: int, directory: Optional[str]) -> list[VectorHit]:
        if query is None:
            raise InvalidEmbeddingError("Query embedding is missing")
        if limit is None or limit <= 0:
            raise InvalidEmbeddingError(f"Invalid result limit: {limit}")
        q = self._check_vector(query)
        limit = min(int(limit), MAX_RESULTS)
        conn = self._require_open()

        sql = f"SELECT * FROM {self.table} WHERE embedding IS NOT NULL"
        params: tuple[Any, ...] = ()
        if directory is not None:
            base, prefix = _prefix_of(directory)
            sql += " AND (path = ? OR substr(path, 1, ?) = ?)"
            params = (base, len(prefix), prefix)

        expected = self.dims * 4
        working: list[tuple[float, sqlite3.Row]] = []
        with self._errors("search"):
            for row in conn.execute(sql, params):
                blob = row["embedding"]
                if len(blob) != expected:
                    continue
                sim = cosine_similarity(q, np.frombuffer(blob, dtype=np.float32))
                if len(working) < limit:
                    working.append((sim, row))
                    continue
                # Evict the current weakest candidate
                weakest = min(range(len(working)), key=lambda i: working[i][0])
                if sim > working[weakest][0]:
                    working[weakest] = (sim, row)

        working.sort(key=lambda item: item[0], reverse=True)
        return [VectorHit(entity=self._row_to_entity(row), similarity=sim) for sim, row in working]
