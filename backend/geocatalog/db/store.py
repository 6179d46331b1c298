"""Embedded DuckDB relational store for the catalog.

CatalogStore owns the single DuckDB connection holding the five catalog
tables. Engine work runs on a worker thread, one statement batch at a time,
under an asyncio lock; callers simply await. The store is created per
application, opened once (concurrent callers share the same in-flight setup)
and flushed to a snapshot repository after every mutation batch.

Example:
    Open an in-memory store and run a query:
        >>> from geocatalog.db import snapshots, store
        >>> catalog = store.CatalogStore(
        ...     settings, snapshots.InMemorySnapshotRepository()
        ... )
        >>> await catalog.open()
        True
        >>> await catalog.fetch("SELECT count(*) AS n FROM resources")
        [{'n': 0}]
"""

from __future__ import annotations

import asyncio
import logging
import pathlib
import shutil
import tempfile
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

import duckdb
import httpx

from geocatalog.core import errors
from geocatalog.db import schema
from geocatalog.db import snapshots as db_snapshots
from geocatalog.utils import geometry, locks

if TYPE_CHECKING:
    from geocatalog.core import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

SNAPSHOT_IN = "snapshot_in"
SNAPSHOT_OUT = "snapshot_out"


def _sql_literal(text: str) -> str:
    return "'" + text.replace("'", "''") + "'"


def rows_as_dicts(
    conn: duckdb.DuckDBPyConnection,
    sql: str,
    params: Sequence[Any] = (),
) -> list[dict[str, Any]]:
    """Execute a query and return its rows as column-name dictionaries."""
    cursor = conn.execute(sql, list(params))
    if cursor.description is None:
        return []
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row, strict=True)) for row in cursor.fetchall()]


def export_database(conn: duckdb.DuckDBPyConnection) -> bytes:
    """Copy the five catalog tables into a fresh database file and read it.

    Args:
        conn: Open connection holding the catalog tables.

    Returns:
        The bytes of a standalone DuckDB database file.
    """
    workdir = pathlib.Path(tempfile.mkdtemp(prefix="geocatalog-flush-"))
    target = workdir / "snapshot.duckdb"
    try:
        conn.execute(f"ATTACH {_sql_literal(str(target))} AS {SNAPSHOT_OUT}")
        try:
            for table in schema.ALL_TABLES:
                conn.execute(
                    f"CREATE TABLE {SNAPSHOT_OUT}.{table} AS "
                    f"SELECT * FROM {table}"
                )
        finally:
            conn.execute(f"DETACH {SNAPSHOT_OUT}")
        return target.read_bytes()
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def _backfill_envelopes(conn: duckdb.DuckDBPyConnection) -> None:
    rows = conn.execute(
        f"SELECT id, dcat_bbox, locn_geometry FROM {schema.RESOURCES_TABLE} "
        "WHERE bbox_minx IS NULL "
        "AND (dcat_bbox IS NOT NULL OR locn_geometry IS NOT NULL)"
    ).fetchall()
    for record_id, bbox, geom in rows:
        envelope = geometry.parse_bbox(bbox, geom)
        if envelope is None:
            continue
        conn.execute(
            f"UPDATE {schema.RESOURCES_TABLE} SET bbox_minx = ?, "
            "bbox_miny = ?, bbox_maxx = ?, bbox_maxy = ? WHERE id = ?",
            [*geometry.envelope_params(envelope), record_id],
        )


def restore_database(conn: duckdb.DuckDBPyConnection, payload: bytes) -> None:
    """Replace the catalog tables with the contents of a snapshot file.

    The snapshot is attached read-only and, inside one transaction, every
    table is cleared and repopulated from the columns both sides share.
    Tables absent from the snapshot are left empty.

    Args:
        conn: Open connection holding the catalog tables.
        payload: Bytes of a DuckDB database file.

    Raises:
        TransactionFailure: If the snapshot cannot be attached or copied;
            the catalog is left unchanged.
    """
    workdir = pathlib.Path(tempfile.mkdtemp(prefix="geocatalog-restore-"))
    source = workdir / "restore.duckdb"
    source.write_bytes(payload)
    try:
        try:
            conn.execute(
                f"ATTACH {_sql_literal(str(source))} AS {SNAPSHOT_IN} "
                "(READ_ONLY)"
            )
        except duckdb.Error as exc:
            raise errors.TransactionFailure(
                f"Snapshot could not be opened: {exc}"
            ) from exc
        try:
            conn.execute("BEGIN TRANSACTION")
            try:
                for table in schema.ALL_TABLES:
                    conn.execute(f"DELETE FROM {table}")
                    source_columns = set(
                        schema.existing_columns(conn, table, SNAPSHOT_IN)
                    )
                    if not source_columns:
                        logger.info("Snapshot has no %s table", table)
                        continue
                    common = [
                        schema.quote_ident(column)
                        for column in schema.existing_columns(conn, table)
                        if column in source_columns
                    ]
                    columns = ", ".join(common)
                    conn.execute(
                        f"INSERT INTO {table} ({columns}) "
                        f"SELECT {columns} FROM {SNAPSHOT_IN}.{table}"
                    )
                _backfill_envelopes(conn)
                conn.execute("COMMIT")
            except duckdb.Error as exc:
                conn.execute("ROLLBACK")
                raise errors.TransactionFailure(
                    f"Snapshot restore rolled back: {exc}"
                ) from exc
        finally:
            conn.execute(f"DETACH {SNAPSHOT_IN}")
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


class CatalogStore:
    """Owner of the embedded engine connection and its persistence.

    Attributes:
        settings: Application settings.
        snapshots: Repository receiving flushed snapshot blobs.
        record_locks: Per-record locks serializing writes to one id.
    """

    def __init__(
        self,
        settings: config.Settings,
        snapshots: db_snapshots.SnapshotRepositoryProtocol | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create an unopened store.

        Args:
            settings: Application settings (database path, snapshot key and
                seed snapshot URL).
            snapshots: Snapshot repository; defaults to the configured one.
            http_transport: Optional httpx transport for the seed snapshot
                download.
        """
        self.settings = settings
        self._snapshots = snapshots
        self._http_transport = http_transport
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._lock = asyncio.Lock()
        self._open_task: asyncio.Task[bool] | None = None
        self.record_locks = locks.KeyedLock()

    @property
    def snapshots(self) -> db_snapshots.SnapshotRepositoryProtocol:
        """Snapshot repository, resolved from settings on first use."""
        if self._snapshots is None:
            self._snapshots = db_snapshots.get_snapshot_repository(
                self.settings
            )
        return self._snapshots

    @property
    def available(self) -> bool:
        return self._conn is not None

    async def open(self) -> bool:
        """Initialize the store once; later and concurrent calls share it.

        Returns:
            True when the engine is ready, False when setup failed and the
            store is unavailable.
        """
        if self._open_task is None:
            self._open_task = asyncio.ensure_future(self._setup())
        return await self._open_task

    async def close(self) -> None:
        async with self._lock:
            if self._conn is not None:
                self._conn.close()
            self._conn = None
            self._open_task = None

    async def _setup(self) -> bool:
        target = str(self.settings.database_path or ":memory:")
        try:
            conn = await asyncio.to_thread(duckdb.connect, target)
            await asyncio.to_thread(schema.ensure_schema, conn)
        except duckdb.Error:
            logger.exception("Catalog engine failed to initialize")
            return False
        self._conn = conn

        if await self.count_rows(schema.RESOURCES_TABLE) > 0:
            logger.info("Catalog database already populated")
            return True

        payload = await self._load_snapshot()
        if payload:
            try:
                await self.restore_snapshot(payload)
                logger.info("Catalog restored from snapshot")
            except errors.TransactionFailure:
                logger.exception("Persisted snapshot could not be restored")
        return True

    async def _load_snapshot(self) -> bytes | None:
        key = self.settings.snapshot_key
        try:
            payload = await asyncio.to_thread(self.snapshots.load, key)
        except Exception:
            logger.exception("Snapshot repository could not be read")
            return None
        if payload or not self.settings.snapshot_url:
            return payload
        return await self._download_seed(str(self.settings.snapshot_url))

    async def _download_seed(self, url: str) -> bytes | None:
        try:
            async with httpx.AsyncClient(
                transport=self._http_transport, timeout=60.0
            ) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Seed snapshot download failed: %s", exc)
            return None
        logger.info("Fetched seed snapshot from %s", url)
        return response.content

    def _require(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise errors.StoreUnavailable("Catalog store is not open")
        return self._conn

    async def run(
        self,
        fn: Callable[..., T],
        *args: Any,
    ) -> T:
        """Run ``fn(conn, *args)`` on a worker thread under the engine lock.

        Raises:
            StoreUnavailable: If the store has not been opened successfully.
        """
        async with self._lock:
            conn = self._require()
            return await asyncio.to_thread(fn, conn, *args)

    async def fetch(
        self,
        sql: str,
        params: Sequence[Any] = (),
    ) -> list[dict[str, Any]]:
        return await self.run(rows_as_dicts, sql, params)

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> None:
        def _execute(conn: duckdb.DuckDBPyConnection) -> None:
            conn.execute(sql, list(params))

        await self.run(_execute)

    async def transaction(
        self,
        fn: Callable[[duckdb.DuckDBPyConnection], T],
    ) -> T:
        """Run a callback inside BEGIN/COMMIT, rolling back on any error."""

        def _in_transaction(conn: duckdb.DuckDBPyConnection) -> T:
            conn.execute("BEGIN TRANSACTION")
            try:
                result = fn(conn)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
            return result

        return await self.run(_in_transaction)

    async def count_rows(self, table: str) -> int:
        rows = await self.fetch(f"SELECT count(*) AS n FROM {table}")
        return int(rows[0]["n"])

    async def snapshot_bytes(self) -> bytes:
        """Serialize the current catalog into a standalone database file."""
        return await self.run(export_database)

    async def flush(self) -> bool:
        """Persist the catalog to the snapshot repository.

        An empty serialization is treated as a failure and never overwrites
        the stored snapshot.

        Returns:
            True if a snapshot was saved.
        """
        try:
            payload = await self.snapshot_bytes()
        except (duckdb.Error, errors.CatalogError):
            logger.exception("Catalog flush failed")
            return False
        if not payload:
            logger.warning("Flush produced 0 bytes; keeping previous snapshot")
            return False
        try:
            await asyncio.to_thread(
                self.snapshots.save, self.settings.snapshot_key, payload
            )
        except Exception:
            logger.exception("Snapshot repository could not be written")
            return False
        logger.debug("Flushed %d byte snapshot", len(payload))
        return True

    async def restore_snapshot(self, payload: bytes) -> None:
        """Replace the catalog contents with a snapshot, atomically.

        Raises:
            TransactionFailure: If the restore was rolled back.
        """
        await self.run(restore_database, payload)
