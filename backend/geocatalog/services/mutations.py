"""Record mutations that keep the derived tables consistent.

An upsert fully replaces a record: inside one transaction, and while holding
that record's lock, every row for the id is deleted from the wide,
facet-index, distribution and search tables and then regenerated. Deletes
cascade the same way. Each public mutation ends with a flush of the store
to its snapshot repository unless the caller batches flushes itself.

Example:
    Upsert and then delete a record:
        >>> from geocatalog.services import mutations
        >>> result = await mutations.upsert_resource(store, resource)
        >>> result.success
        True
        >>> await mutations.delete_resource(store, resource.id)
        MutationResult(success=True, message='Deleted r1', count=1, skipped=0)
"""

from __future__ import annotations

import base64
import json
import logging
import time
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

import duckdb

from geocatalog.core import errors
from geocatalog.db import codec, models, schema
from geocatalog.services.search_models import MutationResult
from geocatalog.utils import geometry

if TYPE_CHECKING:
    from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)

WRITE_ERRORS = (duckdb.Error, errors.CatalogError)

_RESOURCE_COLUMNS = [
    *schema.STORED_SCALAR_FIELDS,
    *schema.ENVELOPE_COLUMNS,
    "extra_json",
]
INSERT_RESOURCE_SQL = (
    f"INSERT INTO {schema.RESOURCES_TABLE} "
    f"({', '.join(schema.quote_ident(c) for c in _RESOURCE_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _RESOURCE_COLUMNS)})"
)
INSERT_MV_SQL = (
    f"INSERT INTO {schema.RESOURCES_MV_TABLE} (id, field, val, ord) "
    "VALUES (?, ?, ?, ?)"
)
INSERT_DISTRIBUTION_SQL = (
    f"INSERT INTO {schema.DISTRIBUTIONS_TABLE} "
    "(resource_id, relation_key, url, label) VALUES (?, ?, ?, ?)"
)
INSERT_SEARCH_SQL = (
    f"INSERT INTO {schema.SEARCH_INDEX_TABLE} (id, content) VALUES (?, ?)"
)


def extra_json(extra: dict[str, Any]) -> str | None:
    if not extra:
        return None
    return json.dumps(extra, sort_keys=True, default=str)


def resource_row(
    resource: models.Resource,
    flat: dict[str, Any] | None = None,
) -> list[Any]:
    """Positional values for INSERT_RESOURCE_SQL."""
    flat = flat if flat is not None else codec.to_flat_row(resource)
    envelope = geometry.parse_bbox(
        flat.get("dcat_bbox"), flat.get("locn_geometry")
    )
    return [
        *(flat.get(field) for field in schema.STORED_SCALAR_FIELDS),
        *geometry.envelope_params(envelope),
        extra_json(resource.extra),
    ]


def mv_rows(resource: models.Resource) -> list[tuple[str, str, str, int]]:
    """One facet-index row per non-empty repeated element, with ordinal."""
    rows = []
    for field in schema.REPEATABLE_STRING_FIELDS:
        values = codec.clean_values(resource.repeated.get(field) or [])
        for ordinal, value in enumerate(values):
            rows.append((resource.id, field, value, ordinal))
    return rows


def delete_rows(
    conn: duckdb.DuckDBPyConnection,
    record_ids: Sequence[str],
) -> None:
    """Remove every derived row for the ids from the four data tables."""
    if not record_ids:
        return
    marks = ", ".join("?" for _ in record_ids)
    ids = list(record_ids)
    conn.execute(
        f"DELETE FROM {schema.RESOURCES_TABLE} WHERE id IN ({marks})", ids
    )
    conn.execute(
        f"DELETE FROM {schema.RESOURCES_MV_TABLE} WHERE id IN ({marks})", ids
    )
    conn.execute(
        f"DELETE FROM {schema.DISTRIBUTIONS_TABLE} "
        f"WHERE resource_id IN ({marks})",
        ids,
    )
    conn.execute(
        f"DELETE FROM {schema.SEARCH_INDEX_TABLE} WHERE id IN ({marks})", ids
    )


def write_resource(
    conn: duckdb.DuckDBPyConnection,
    resource: models.Resource,
    distributions: Sequence[models.Distribution],
) -> None:
    """Replace all stored rows of one record; caller owns the transaction."""
    delete_rows(conn, [resource.id])
    conn.execute(INSERT_RESOURCE_SQL, resource_row(resource))
    rows = mv_rows(resource)
    if rows:
        conn.executemany(INSERT_MV_SQL, rows)
    if distributions:
        conn.executemany(
            INSERT_DISTRIBUTION_SQL,
            [
                (resource.id, d.relation_key, d.url, d.label)
                for d in distributions
            ],
        )
    conn.execute(
        INSERT_SEARCH_SQL, [resource.id, codec.build_search_text(resource)]
    )


async def _flush(
    store: db_store.CatalogStore,
    result: MutationResult,
) -> MutationResult:
    if not await store.flush():
        logger.warning("Mutation applied but snapshot was not persisted")
        result.message = f"{result.message} (not persisted)".strip()
    return result


async def upsert_resource(
    store: db_store.CatalogStore,
    resource: models.Resource,
    distributions: Sequence[models.Distribution] | None = None,
    flush: bool = True,
) -> MutationResult:
    """Create or fully replace a record and its derived rows.

    Args:
        store: Catalog store.
        resource: Record to store.
        distributions: Distributions to store; defaults to the record's own.
        flush: Persist a snapshot afterwards.

    Returns:
        MutationResult; ``success`` is False when the record is invalid or
        the write was rolled back.
    """
    if not resource.id:
        return MutationResult(success=False, message="Record has no id")
    missing = [
        f for f in ("dct_title_s", "dct_accessRights_s")
        if not getattr(resource, f)
    ]
    if not resource.gbl_resourceClass_sm:
        missing.append("gbl_resourceClass_sm")
    if missing:
        return MutationResult(
            success=False,
            message=str(errors.MissingRequiredField(missing)),
        )
    dists = list(
        resource.distributions if distributions is None else distributions
    )

    try:
        async with store.record_locks.hold(resource.id):
            await store.transaction(
                lambda conn: write_resource(conn, resource, dists)
            )
    except WRITE_ERRORS as exc:
        logger.warning("Upsert of %s failed: %s", resource.id, exc)
        return MutationResult(success=False, message=str(exc))

    result = MutationResult(
        success=True, message=f"Saved {resource.id}", count=1
    )
    if flush:
        return await _flush(store, result)
    return result


async def delete_resource(
    store: db_store.CatalogStore,
    record_id: str,
    flush: bool = True,
) -> MutationResult:
    """Delete a record and all of its derived rows; idempotent."""

    def _delete(conn: duckdb.DuckDBPyConnection) -> int:
        existing = conn.execute(
            f"SELECT count(*) FROM {schema.RESOURCES_TABLE} WHERE id = ?",
            [record_id],
        ).fetchone()
        delete_rows(conn, [record_id])
        return int(existing[0]) if existing else 0

    try:
        async with store.record_locks.hold(record_id):
            removed = await store.transaction(_delete)
    except WRITE_ERRORS as exc:
        logger.warning("Delete of %s failed: %s", record_id, exc)
        return MutationResult(success=False, message=str(exc))

    result = MutationResult(
        success=True, message=f"Deleted {record_id}", count=removed
    )
    if flush:
        return await _flush(store, result)
    return result


async def upsert_thumbnail(
    store: db_store.CatalogStore,
    record_id: str,
    payload: bytes,
    flush: bool = True,
) -> MutationResult:
    """Replace the cached thumbnail of a record."""
    encoded = base64.b64encode(payload).decode("ascii")
    now_ms = int(time.time() * 1000)

    def _write(conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute(
            f"DELETE FROM {schema.IMAGE_SERVICE_TABLE} WHERE id = ?",
            [record_id],
        )
        conn.execute(
            f"INSERT INTO {schema.IMAGE_SERVICE_TABLE} "
            "(id, data, last_updated) VALUES (?, ?, ?)",
            [record_id, encoded, now_ms],
        )

    try:
        async with store.record_locks.hold(record_id):
            await store.transaction(_write)
    except WRITE_ERRORS as exc:
        logger.warning("Thumbnail for %s failed: %s", record_id, exc)
        return MutationResult(success=False, message=str(exc))

    result = MutationResult(
        success=True, message=f"Thumbnail saved for {record_id}", count=1
    )
    if flush:
        return await _flush(store, result)
    return result


async def apply_embedding(
    store: db_store.CatalogStore,
    record_id: str,
    embedding: Sequence[float],
) -> MutationResult:
    """Set only the embedding column of one record."""
    vector = [float(v) for v in embedding]
    try:
        async with store.record_locks.hold(record_id):
            await store.execute(
                f"UPDATE {schema.RESOURCES_TABLE} "
                "SET embedding = ?::FLOAT[] WHERE id = ?",
                [vector, record_id],
            )
    except WRITE_ERRORS as exc:
        logger.warning("Embedding for %s failed: %s", record_id, exc)
        return MutationResult(success=False, message=str(exc))
    return MutationResult(
        success=True, message=f"Embedding saved for {record_id}", count=1
    )
