"""Schema migration manager for semfind vector stores."""
from __future__ import annotations

import logging
import re
import sqlite3
from datetime import datetime, timezone
from typing import Callable

from ..errors import StoreError

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 3

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def validate_table_name(table: str) -> str:
    if not _IDENTIFIER.match(table):
        raise ValueError(f"Invalid table name: {table!r}")
    return table


def v1_table_sql(table: str) -> str:
    """DDL of the original (v1) layout, kept for legacy detection and tests."""
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            file_type INTEGER NOT NULL DEFAULT 0,
            size INTEGER NOT NULL DEFAULT 0,
            modified_time INTEGER NOT NULL DEFAULT 0,
            indexed_time INTEGER NOT NULL DEFAULT 0,
            embedding BLOB
        )
    """


def latest_table_sql(table: str) -> str:
    return f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            file_type INTEGER NOT NULL DEFAULT 0,
            size INTEGER NOT NULL DEFAULT 0,
            modified_time INTEGER NOT NULL DEFAULT 0,
            indexed_time INTEGER NOT NULL DEFAULT 0,
            embedding BLOB,
            content_hash TEXT,
            metadata_json TEXT
        )
    """


class SchemaManager:
    """Keeps one store table at CURRENT_SCHEMA_VERSION.

    The version lives in a `schema_version` table keyed by store table name.
    A brand-new table is created at the latest layout and stamped directly; a
    table that exists without a version row is a legacy v1 store and is
    migrated step by step.
    """

    def __init__(self, conn: sqlite3.Connection, table: str) -> None:
        self._conn = conn
        self._table = validate_table_name(table)

    def ensure_current(self) -> int:
        self._ensure_version_table()
        current = self._get_version()

        if current == 0:
            if self._has_table():
                logger.info(f"Detected unversioned table '{self._table}', treating as v1")
                current = 1
                self._stamp_version(1)
            else:
                self._conn.execute(latest_table_sql(self._table))
                self._create_indexes()
                self._stamp_version(CURRENT_SCHEMA_VERSION)
                logger.info(f"Created table '{self._table}' at schema v{CURRENT_SCHEMA_VERSION}")
                return CURRENT_SCHEMA_VERSION

        if current > CURRENT_SCHEMA_VERSION:
            raise StoreError(
                f"Table '{self._table}' is at schema v{current}, newer than supported v{CURRENT_SCHEMA_VERSION}"
            )

        for target in range(current + 1, CURRENT_SCHEMA_VERSION + 1):
            migration = _MIGRATIONS.get(target)
            if migration is None:
                raise StoreError(f"No migration found for version {target}")
            logger.info(f"Running migration of '{self._table}' to v{target}")
            migration(self._conn, self._table)
            self._stamp_version(target)

        self._create_indexes()
        return self._get_version()

    def version(self) -> int:
        self._ensure_version_table()
        return self._get_version()

    def _ensure_version_table(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                table_name TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                applied_at TEXT NOT NULL
            )
        """)
        self._conn.commit()

    def _get_version(self) -> int:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE table_name = ?", (self._table,)
        ).fetchone()
        return 0 if row is None else int(row[0])

    def _has_table(self) -> bool:
        row = self._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (self._table,)
        ).fetchone()
        return row is not None

    def _create_indexes(self) -> None:
        t = self._table
        self._conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{t}_path ON {t}(path)")
        self._conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{t}_modified ON {t}(modified_time)")
        self._conn.execute(f"CREATE INDEX IF NOT EXISTS idx_{t}_hash ON {t}(content_hash)")
        self._conn.commit()

    def _stamp_version(self, version: int) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self._conn.execute(
            """INSERT INTO schema_version (table_name, version, applied_at)
               VALUES (?, ?, ?)
               ON CONFLICT(table_name) DO UPDATE SET version=excluded.version, applied_at=excluded.applied_at
            """,
            (self._table, version, now),
        )
        self._conn.commit()


def _add_column(conn: sqlite3.Connection, table: str, column: str, decl: str) -> None:
    try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl}")
    except sqlite3.OperationalError as e:
        if "duplicate column name" not in str(e).lower():
            raise
        logger.debug(f"Column {table}.{column} already present")
    conn.commit()


def _migrate_v1_to_v2(conn: sqlite3.Connection, table: str) -> None:
    """v2: content hash for change detection."""
    _add_column(conn, table, "content_hash", "TEXT")


def _migrate_v2_to_v3(conn: sqlite3.Connection, table: str) -> None:
    """v3: free-form JSON metadata (image dimensions and the like)."""
    _add_column(conn, table, "metadata_json", "TEXT")


# target_version -> migration
_MIGRATIONS: dict[int, Callable[[sqlite3.Connection, str], None]] = {
    2: _migrate_v1_to_v2,
    3: _migrate_v2_to_v3,
}
