"""Durable storage for flushed catalog snapshots.

The embedded engine is flushed to a single byte blob after every mutation
batch. Repositories in this module persist that blob under a key: in memory
(tests), on the local filesystem, or in a PostgreSQL table.

Example:
    Pick the repository configured for the running service:
        >>> from geocatalog.db import snapshots
        >>> repo = snapshots.get_snapshot_repository(settings)
        >>> repo.save("records.duckdb", payload)
        >>> repo.load("records.duckdb") == payload
        True
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import TYPE_CHECKING, Protocol

import psycopg2
import psycopg2.extensions

if TYPE_CHECKING:
    import pathlib

    from geocatalog.core import config

logger = logging.getLogger(__name__)


class SnapshotRepositoryProtocol(Protocol):
    """Protocol interface for storing and retrieving snapshot blobs."""

    def load(self, key: str) -> bytes | None: ...

    def save(self, key: str, payload: bytes) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemorySnapshotRepository(SnapshotRepositoryProtocol):
    """Simple in-memory store for tests and throwaway catalogs.

    Snapshots are lost when the process exits.
    """

    def __init__(self) -> None:
        """Initialize an empty in-memory repository."""
        self._store: dict[str, bytes] = {}

    def load(self, key: str) -> bytes | None:
        return self._store.get(key)

    def save(self, key: str, payload: bytes) -> None:
        self._store[key] = bytes(payload)

    def delete(self, key: str) -> None:
        self._store.pop(key, None)


class FileSnapshotRepository(SnapshotRepositoryProtocol):
    """Stores each snapshot as a file named after its key.

    Writes go to a temporary file in the same directory and are moved into
    place, so a crash mid-write never truncates the previous snapshot.
    """

    def __init__(self, directory: pathlib.Path) -> None:
        """Initialize the repository rooted at a directory.

        Args:
            directory: Directory holding snapshot files; created if absent.
        """
        self.directory = directory
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> pathlib.Path:
        return self.directory / key

    def load(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def save(self, key: str, payload: bytes) -> None:
        with tempfile.NamedTemporaryFile(
            delete=False, dir=self.directory
        ) as tmp:
            tmp.write(payload)
            tmp.flush()
        os.replace(tmp.name, self._path(key))

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class PostgresSnapshotRepository(SnapshotRepositoryProtocol):
    """PostgreSQL-backed snapshot repository.

    Stores snapshot blobs in a ``catalog_snapshots`` table, created on
    initialization.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS catalog_snapshots (
      key TEXT PRIMARY KEY,
      payload BYTEA NOT NULL,
      updated_at TIMESTAMPTZ DEFAULT now()
    );
    """

    def __init__(self, settings: config.Settings) -> None:
        """Initialize repository with database settings.

        Args:
            settings: Application settings containing database connection URL.
        """
        self.settings = settings
        self._ensure_schema()

    def _connection(self) -> psycopg2.extensions.connection:
        return psycopg2.connect(self.settings.database_url)

    def _ensure_schema(self) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(self.CREATE_TABLE_SQL)
            conn.commit()

    def load(self, key: str) -> bytes | None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT payload FROM catalog_snapshots WHERE key = %s",
                (key,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            else:
                return bytes(row[0])

    def save(self, key: str, payload: bytes) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO catalog_snapshots (key, payload, updated_at)
                VALUES (%(key)s, %(payload)s, now())
                ON CONFLICT (key) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    updated_at = EXCLUDED.updated_at;
                """,
                {"key": key, "payload": psycopg2.Binary(payload)},
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._connection() as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM catalog_snapshots WHERE key = %s", (key,))
            conn.commit()


def get_snapshot_repository(
    settings: config.Settings,
) -> SnapshotRepositoryProtocol:
    """Factory function to create the configured snapshot repository.

    Args:
        settings: Application settings selecting the backend.

    Returns:
        Repository for the configured snapshot_backend.
    """
    if settings.snapshot_backend == "memory":
        return InMemorySnapshotRepository()
    if settings.snapshot_backend == "postgres":
        return PostgresSnapshotRepository(settings)
    return FileSnapshotRepository(settings.snapshot_dir)
