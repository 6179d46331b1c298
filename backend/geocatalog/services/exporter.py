"""Catalog export: CSV sheets, zipped JSON documents and Parquet.

The zip layout groups one pretty-printed JSON document per record under
``metadata-aardvark/<primary resource class>/<id>.json`` and adds a
columnar ``metadata-aardvark/metadata.parquet`` written by DuckDB.

Example:
    Export the whole catalog as a zip archive:
        >>> from geocatalog.services import exporter
        >>> payload = await exporter.export_zip(store)
        >>> payload[:2]
        b'PK'
"""

from __future__ import annotations

import csv
import io
import json
import logging
import pathlib
import re
import shutil
import tempfile
import uuid
import zipfile
from collections.abc import Sequence
from typing import TYPE_CHECKING

import duckdb

from geocatalog.core import errors
from geocatalog.db import codec, models, schema
from geocatalog.services import hydrator, search, search_models
from geocatalog.services import query_compiler as qc

if TYPE_CHECKING:
    from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)

ZIP_ROOT = "metadata-aardvark"
PARQUET_NAME = "metadata.parquet"
UNCATEGORIZED = "Uncategorized"
DISTRIBUTION_CSV_HEADERS = ("resource_id", "relation_key", "url", "label")

_FOLDER_RE = re.compile(r"[^A-Za-z0-9 _-]")

CSV_FIELDS = (*schema.SCALAR_FIELDS, *schema.REPEATABLE_STRING_FIELDS)


def csv_header(field: str) -> str:
    return schema.FIELD_TO_CSV_HEADER.get(field, field)


def build_csv(resources: Sequence[models.Resource]) -> str:
    """Resources sheet with friendly headers and ``|``-joined lists."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow([csv_header(field) for field in CSV_FIELDS])
    for resource in resources:
        row = codec.to_flat_row(resource)
        row[schema.REFERENCES_FIELD] = codec.build_references_json(
            resource.distributions
        )
        writer.writerow([row.get(field) or "" for field in CSV_FIELDS])
    return buffer.getvalue()


def build_distributions_csv(resources: Sequence[models.Resource]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(DISTRIBUTION_CSV_HEADERS)
    for resource in resources:
        for dist in resource.distributions:
            writer.writerow(
                [resource.id, dist.relation_key, dist.url, dist.label or ""]
            )
    return buffer.getvalue()


def folder_name(resource: models.Resource) -> str:
    """Sanitized primary resource class used as the zip folder."""
    classes = resource.gbl_resourceClass_sm
    folder = _FOLDER_RE.sub("", classes[0]) if classes else ""
    return folder or UNCATEGORIZED


def document_name(resource: models.Resource) -> str:
    safe_id = resource.id.replace("/", "_").replace("\\", "_")
    return f"{ZIP_ROOT}/{folder_name(resource)}/{safe_id}.json"


def build_zip(
    resources: Sequence[models.Resource],
    parquet: bytes | None = None,
) -> bytes:
    """Zip archive of JSON documents plus the optional Parquet snapshot."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for resource in resources:
            archive.writestr(
                document_name(resource),
                json.dumps(codec.resource_to_json(resource), indent=2),
            )
        if parquet:
            archive.writestr(f"{ZIP_ROOT}/{PARQUET_NAME}", parquet)
    logger.info("Zipped %d records", len(resources))
    return buffer.getvalue()


def write_parquet(
    conn: duckdb.DuckDBPyConnection,
    resources: Sequence[models.Resource],
) -> bytes:
    """Write columnar rows to Parquet through a temporary DuckDB table."""
    table = f"export_{uuid.uuid4().hex[:12]}"
    columns = [(f, "VARCHAR") for f in schema.STORED_SCALAR_FIELDS]
    columns.append((schema.REFERENCES_FIELD, "VARCHAR"))
    columns.extend((f, "VARCHAR[]") for f in schema.REPEATABLE_STRING_FIELDS)
    names = [name for name, _ in columns]
    ddl = ", ".join(f"{schema.quote_ident(n)} {t}" for n, t in columns)
    workdir = pathlib.Path(tempfile.mkdtemp(prefix="geocatalog-export-"))
    target = workdir / PARQUET_NAME
    try:
        conn.execute(f"CREATE TEMP TABLE {table} ({ddl})")
        try:
            rows = []
            for resource in resources:
                row = codec.to_columnar_row(resource)
                row[schema.REFERENCES_FIELD] = codec.build_references_json(
                    resource.distributions
                )
                rows.append([row.get(name) for name in names])
            if rows:
                conn.executemany(
                    f"INSERT INTO {table} VALUES "
                    f"({', '.join('?' for _ in names)})",
                    rows,
                )
            path = str(target).replace("'", "''")
            conn.execute(f"COPY {table} TO '{path}' (FORMAT PARQUET)")
        finally:
            conn.execute(f"DROP TABLE IF EXISTS {table}")
        return target.read_bytes()
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


async def build_parquet(
    store: db_store.CatalogStore,
    resources: Sequence[models.Resource],
) -> bytes | None:
    try:
        return await store.run(write_parquet, resources)
    except duckdb.Error as exc:
        logger.warning("Parquet export failed: %s", exc)
        return None


async def _require(store: db_store.CatalogStore) -> None:
    if not await search.ensure_open(store):
        raise errors.StoreUnavailable("Catalog store is not available")


async def all_resources(store: db_store.CatalogStore) -> list[models.Resource]:
    await _require(store)
    rows = await store.fetch(
        f"SELECT id FROM {schema.RESOURCES_TABLE} ORDER BY id"
    )
    return await hydrator.fetch_resources_by_ids(
        store, [row["id"] for row in rows]
    )


async def filtered_resources(
    store: db_store.CatalogStore,
    request: search_models.FacetedSearchRequest,
) -> list[models.Resource]:
    """Every record matching a request, in its sort order, unpaged."""
    await _require(store)
    where = qc.compile_where(request)
    order = qc.compile_order(request)
    rows = await store.fetch(
        f"SELECT r.id FROM {schema.RESOURCES_TABLE} r WHERE {where.sql} "
        f"ORDER BY {order.sql}",
        [*where.params, *order.params],
    )
    return await hydrator.fetch_resources_by_ids(
        store, [row["id"] for row in rows]
    )


async def export_csv(store: db_store.CatalogStore) -> str:
    return build_csv(await all_resources(store))


async def export_distributions_csv(store: db_store.CatalogStore) -> str:
    return build_distributions_csv(await all_resources(store))


async def export_zip(store: db_store.CatalogStore) -> bytes:
    resources = await all_resources(store)
    return build_zip(resources, await build_parquet(store, resources))


async def export_filtered(
    store: db_store.CatalogStore,
    request: search_models.FacetedSearchRequest,
    export_format: str = "json",
) -> bytes | str:
    """Export the records matching a request as CSV text or a zip archive."""
    resources = await filtered_resources(store, request)
    logger.info("Exporting %d records as %s", len(resources), export_format)
    if export_format == "csv":
        return build_csv(resources)
    return build_zip(resources, await build_parquet(store, resources))


async def export_snapshot(store: db_store.CatalogStore) -> bytes:
    """Current catalog as a standalone DuckDB database file."""
    await _require(store)
    return await store.snapshot_bytes()
