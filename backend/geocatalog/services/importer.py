"""Bulk import of CSV, JSON and full-snapshot catalog data.

CSV uploads are classified as either a distributions sheet (``ID``,
``Type``, ``URL`` columns and no title) or a resources sheet whose headers
are canonical field names or the friendly aliases from the schema registry.
JSON uploads hold one document or an array of documents. A snapshot upload
is a DuckDB database file that replaces the whole catalog atomically.

Every import runs as one batch and ends with a single flush.
"""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Literal

import duckdb

from geocatalog.core import errors
from geocatalog.db import codec, models, schema
from geocatalog.services import mutations
from geocatalog.services.search_models import MutationResult

if TYPE_CHECKING:
    from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)

CsvKind = Literal["distributions", "resources"]
CsvRecord = tuple[models.Resource, list[models.Distribution] | None]

DISTRIBUTION_HEADERS = ("ID", "Type", "URL")


def decode_text(payload: bytes | str) -> str:
    if isinstance(payload, str):
        return payload
    return payload.decode("utf-8-sig")


def classify_csv(headers: Sequence[str]) -> CsvKind:
    """Tell a distributions sheet from a resources sheet by its headers."""
    present = set(headers)
    has_title = "Title" in present or schema.TITLE_FIELD in present
    if all(h in present for h in DISTRIBUTION_HEADERS) and not has_title:
        return "distributions"
    return "resources"


def find_column(field: str, headers: Iterable[str]) -> str | None:
    """Header carrying a field: its canonical name first, then its alias."""
    present = list(headers)
    if field in present:
        return field
    alias = schema.FIELD_TO_CSV_HEADER.get(field)
    if alias is not None and alias in present:
        return alias
    return None


def resolve_columns(headers: Sequence[str]) -> dict[str, str]:
    """Map every recognized field to the CSV header that carries it."""
    columns = {}
    for field in (*schema.SCALAR_FIELDS, *schema.REPEATABLE_STRING_FIELDS):
        column = find_column(field, headers)
        if column is not None:
            columns[field] = column
    return columns


def _relation_key(value: str) -> str:
    value = value.strip()
    return schema.URI_TO_RELATION_KEY.get(value, value)


async def import_distributions_csv(
    store: db_store.CatalogStore,
    rows: Sequence[Mapping[str, str | None]],
) -> MutationResult:
    """Append distribution rows from an ``ID, Type, URL[, Label]`` sheet."""
    values = []
    skipped = 0
    for row in rows:
        record_id = (row.get("ID") or "").strip()
        url = (row.get("URL") or "").strip()
        key = _relation_key(row.get("Type") or "")
        if not record_id or not url or not key:
            skipped += 1
            continue
        label = (row.get("Label") or "").strip() or None
        values.append((record_id, key, url, label))

    def _insert(conn: duckdb.DuckDBPyConnection) -> None:
        if values:
            conn.executemany(mutations.INSERT_DISTRIBUTION_SQL, values)

    try:
        await store.transaction(_insert)
    except mutations.WRITE_ERRORS as exc:
        logger.warning("Distribution import failed: %s", exc)
        return MutationResult(success=False, message=str(exc))

    await store.flush()
    logger.info("Imported %d distributions (%d skipped)", len(values), skipped)
    return MutationResult(
        success=True,
        message=f"Imported {len(values)} distributions.",
        count=len(values),
        skipped=skipped,
    )


def _csv_resource(
    row: Mapping[str, str | None],
    columns: Mapping[str, str],
) -> CsvRecord:
    flat = {
        field: row.get(column)
        for field, column in columns.items()
        if field != schema.REFERENCES_FIELD
    }
    flat["id"] = (flat.get("id") or "").strip()
    resource = codec.from_row(flat)
    references = None
    if schema.REFERENCES_FIELD in columns:
        raw = row.get(columns[schema.REFERENCES_FIELD]) or ""
        references = (
            codec.extract_distributions(raw, resource.id) if raw.strip()
            else []
        )
        resource.distributions = references
    return resource, references


def _write_csv_batch(
    conn: duckdb.DuckDBPyConnection,
    batch: Sequence[CsvRecord],
    replace_distributions: bool,
) -> None:
    ids = [resource.id for resource, _ in batch]
    marks = ", ".join("?" for _ in ids)
    for table in (
        schema.RESOURCES_TABLE,
        schema.RESOURCES_MV_TABLE,
        schema.SEARCH_INDEX_TABLE,
    ):
        conn.execute(f"DELETE FROM {table} WHERE id IN ({marks})", ids)
    if replace_distributions:
        conn.execute(
            f"DELETE FROM {schema.DISTRIBUTIONS_TABLE} "
            f"WHERE resource_id IN ({marks})",
            ids,
        )

    conn.executemany(
        mutations.INSERT_RESOURCE_SQL,
        [mutations.resource_row(resource) for resource, _ in batch],
    )
    mv = [row for resource, _ in batch for row in mutations.mv_rows(resource)]
    if mv:
        conn.executemany(mutations.INSERT_MV_SQL, mv)
    conn.executemany(
        mutations.INSERT_SEARCH_SQL,
        [(r.id, codec.build_search_text(r)) for r, _ in batch],
    )
    dists = [
        (d.resource_id, d.relation_key, d.url, d.label)
        for _, references in batch
        for d in references or []
    ]
    if dists:
        conn.executemany(mutations.INSERT_DISTRIBUTION_SQL, dists)


async def import_resources_csv(
    store: db_store.CatalogStore,
    headers: Sequence[str],
    rows: Sequence[Mapping[str, str | None]],
) -> MutationResult:
    """Replace the records named in a resources sheet.

    Repeated columns are ``|``-separated. A references column, when
    present, replaces the distributions of each imported record; a
    malformed cell only drops that row's distributions.
    """
    columns = resolve_columns(headers)
    if "id" not in columns:
        return MutationResult(success=False, message="CSV missing 'id' column")

    batch: dict[str, CsvRecord] = {}
    skipped = 0
    for row in rows:
        try:
            resource, references = _csv_resource(row, columns)
        except errors.ValidationError:
            skipped += 1
            continue
        batch[resource.id] = (resource, references)

    if batch:
        try:
            await store.transaction(
                lambda conn: _write_csv_batch(
                    conn,
                    list(batch.values()),
                    schema.REFERENCES_FIELD in columns,
                )
            )
        except mutations.WRITE_ERRORS as exc:
            logger.warning("CSV import failed: %s", exc)
            return MutationResult(success=False, message=str(exc))
        await store.flush()

    if skipped:
        logger.warning("Skipped %d CSV rows without an id", skipped)
    logger.info("Imported %d CSV rows", len(batch))
    return MutationResult(
        success=True,
        message=f"Imported {len(batch)} rows.",
        count=len(batch),
        skipped=skipped,
    )


async def import_csv(
    store: db_store.CatalogStore,
    payload: bytes | str,
) -> MutationResult:
    """Import a resources or distributions CSV.

    Args:
        store: Catalog store.
        payload: Raw CSV content with a header row.

    Returns:
        MutationResult with the number of imported and skipped rows.
    """
    try:
        reader = csv.DictReader(io.StringIO(decode_text(payload)))
        headers = [h.strip() for h in reader.fieldnames or []]
        reader.fieldnames = headers
        rows = list(reader)
    except (UnicodeDecodeError, csv.Error) as exc:
        return MutationResult(success=False, message=f"Unreadable CSV: {exc}")
    if not headers:
        return MutationResult(success=False, message="CSV has no header row")

    if classify_csv(headers) == "distributions":
        return await import_distributions_csv(store, rows)
    return await import_resources_csv(store, headers, rows)


def normalize_document(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Wrap scalar-typed repeated fields into one-element lists."""
    doc = dict(raw)
    for field in schema.REPEATABLE_STRING_FIELDS:
        value = doc.get(field)
        if value is not None and not isinstance(value, list):
            doc[field] = [value]
    return doc


async def import_json(
    store: db_store.CatalogStore,
    data: Any,
) -> MutationResult:
    """Upsert one document or an array of documents.

    Invalid documents are skipped and counted; the store is flushed once
    at the end.
    """
    documents = data if isinstance(data, list) else [data]
    count = 0
    skipped = 0
    for document in documents:
        if not isinstance(document, Mapping):
            skipped += 1
            continue
        try:
            resource = codec.resource_from_json(normalize_document(document))
        except errors.ValidationError as exc:
            logger.warning("Skipping document %s: %s", document.get("id"), exc)
            skipped += 1
            continue
        result = await mutations.upsert_resource(store, resource, flush=False)
        if result.success:
            count += 1
        else:
            skipped += 1

    if count:
        await store.flush()
    logger.info("Imported %d JSON documents (%d skipped)", count, skipped)
    return MutationResult(
        success=True,
        message=f"Imported {count} records.",
        count=count,
        skipped=skipped,
    )


async def restore_snapshot(
    store: db_store.CatalogStore,
    payload: bytes,
) -> MutationResult:
    """Replace the whole catalog with an uploaded snapshot, atomically."""
    if not payload:
        return MutationResult(success=False, message="Empty snapshot")
    try:
        await store.restore_snapshot(payload)
    except mutations.WRITE_ERRORS as exc:
        logger.warning("Snapshot restore failed: %s", exc)
        return MutationResult(success=False, message=str(exc))

    await store.flush()
    count = await store.count_rows(schema.RESOURCES_TABLE)
    logger.info("Catalog restored with %d records", count)
    return MutationResult(
        success=True,
        message="Database restored successfully.",
        count=count,
    )
