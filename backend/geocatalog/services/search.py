"""Faceted search and supplementary read operations.

Reads never raise. An unavailable store or a failing query degrades to an
empty, well-formed result and a logged warning; a failing facet only empties
that facet.

Example:
    Search with one filter and one facet:
        >>> from geocatalog.services import search, search_models
        >>> request = search_models.FacetedSearchRequest(
        ...     q="roads",
        ...     filters={"dct_subject_sm": {"any": ["Transportation"]}},
        ...     facets=[{"field": "gbl_resourceClass_sm"}],
        ... )
        >>> response = await search.faceted_search(store, request)
        >>> response.total
        3
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

import duckdb

from geocatalog.core import errors
from geocatalog.db import codec, models, schema
from geocatalog.services import hydrator
from geocatalog.services import query_compiler as qc
from geocatalog.services import search_models

if TYPE_CHECKING:
    from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)

READ_ERRORS = (duckdb.Error, errors.CatalogError)

SIMILARITY_WEIGHTS = {
    "dct_subject_sm": 3,
    "dct_creator_sm": 2,
    "dcat_theme_sm": 2,
    "dct_spatial_sm": 1,
    "gbl_resourceClass_sm": 1,
}

SUGGEST_SOURCES = (
    ("place", "dct_spatial_sm", 3),
    ("title", schema.TITLE_FIELD, 2),
    ("subject", "dct_subject_sm", 1),
    ("keyword", "dcat_keyword_sm", 1),
    ("theme", "dcat_theme_sm", 1),
)

DISTRIBUTION_SORT_COLUMNS = {
    "resource_id": "d.resource_id",
    "relation_key": "d.relation_key",
    "url": "d.url",
    "label": "d.label",
    "resource_title": "r.dct_title_s",
    "dct_title_s": "r.dct_title_s",
}


async def ensure_open(store: db_store.CatalogStore) -> bool:
    """Open the store on first use; False when it is unavailable."""
    if store.available:
        return True
    return await store.open()


def facet_limit(
    store: db_store.CatalogStore,
    spec: search_models.FacetSpec,
) -> int:
    if spec.limit is not None:
        return spec.limit
    if spec.field == schema.YEAR_FIELD:
        return store.settings.year_facet_limit
    return store.settings.default_facet_limit


async def _drop_hits(store: db_store.CatalogStore, table: str) -> None:
    try:
        await store.execute(qc.drop_hits_sql(table))
    except READ_ERRORS as exc:
        logger.warning("Could not drop %s: %s", table, exc)


async def _materialize_hits(
    store: db_store.CatalogStore,
    request: search_models.FacetedSearchRequest,
    table: str,
) -> None:
    insert = qc.insert_hits_query(table, request)

    def _create(conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute(qc.create_hits_sql(table))
        conn.execute(insert.sql, insert.params)

    await store.run(_create)


async def _facet(
    store: db_store.CatalogStore,
    request: search_models.FacetedSearchRequest,
    spec: search_models.FacetSpec,
    hits: str | None,
) -> list[search_models.FacetBucket]:
    where = qc.compile_where(request, omit_field=spec.field, hits_table=hits)
    query = qc.facet_query(spec.field, where, facet_limit(store, spec))
    try:
        rows = await store.fetch(query.sql, query.params)
    except READ_ERRORS as exc:
        logger.warning("Facet %s failed: %s", spec.field, exc)
        return []
    return [
        search_models.FacetBucket(value=str(row["val"]), count=int(row["c"]))
        for row in rows
    ]


async def faceted_search(
    store: db_store.CatalogStore,
    request: search_models.FacetedSearchRequest,
) -> search_models.FacetedSearchResponse:
    """Run a faceted search and hydrate the requested page.

    Free-text and spatial hits are materialized once into a temporary
    table shared by the page, count and facet queries and dropped on every
    exit path.

    Args:
        store: Catalog store.
        request: Faceted-search request.

    Returns:
        The hydrated page, the total hit count and the facet distributions.
        Failures yield empty parts, never an exception.
    """
    response = search_models.FacetedSearchResponse()
    if not await ensure_open(store):
        return response

    size = request.page.size
    if size is None:
        size = store.settings.default_page_size
    hits: str | None = None
    try:
        if qc.has_global(request):
            hits = qc.hits_table_name()
            await _materialize_hits(store, request, hits)
        where = qc.compile_where(request, hits_table=hits)
        order = qc.compile_order(request)
        page = qc.page_query(where, order, size, request.page.offset)
        count = qc.count_query(where)
        try:
            id_rows = await store.fetch(page.sql, page.params)
            total_rows = await store.fetch(count.sql, count.params)
            ids = [row["id"] for row in id_rows]
            response.total = int(total_rows[0]["total"])
        except READ_ERRORS as exc:
            logger.warning("Search query failed: %s", exc)
            ids = []
            response.total = 0

        buckets = await asyncio.gather(
            *(_facet(store, request, spec, hits) for spec in request.facets)
        )
        response.facets = {
            spec.field: facet for spec, facet in zip(request.facets, buckets)
        }

        resources = await hydrator.fetch_resources_by_ids(store, ids)
        response.results = [codec.resource_to_json(r) for r in resources]
    except READ_ERRORS as exc:
        logger.warning("Faceted search failed: %s", exc)
        return search_models.FacetedSearchResponse()
    finally:
        if hits is not None:
            await _drop_hits(store, hits)
    return response


async def search_neighbors(
    store: db_store.CatalogStore,
    request: search_models.FacetedSearchRequest,
    current_id: str,
) -> search_models.Neighbors:
    """Previous/next ids and position of a record within a result set."""
    if not await ensure_open(store):
        return search_models.Neighbors()
    query = qc.neighbors_query(
        qc.compile_where(request), qc.compile_order(request), current_id
    )
    try:
        rows = await store.fetch(query.sql, query.params)
    except READ_ERRORS as exc:
        logger.warning("Neighbor lookup failed: %s", exc)
        return search_models.Neighbors()
    if not rows:
        return search_models.Neighbors()
    row = rows[0]
    return search_models.Neighbors(
        prevId=row["prev_id"],
        nextId=row["next_id"],
        position=int(row["current_pos"]),
        total=int(row["total"]),
    )


async def facet_values(
    store: db_store.CatalogStore,
    request: search_models.FacetValueRequest,
) -> search_models.FacetValueResult:
    """Paged, searchable value list of one facet, self-excluding its filter."""
    if not await ensure_open(store):
        return search_models.FacetValueResult()
    where = qc.compile_where(request.request, omit_field=request.field)
    values, total = qc.facet_values_query(
        request.field,
        where,
        request.facetQuery,
        request.sort,
        request.pageSize,
        (request.page - 1) * request.pageSize,
    )
    try:
        rows = await store.fetch(values.sql, values.params)
        total_rows = await store.fetch(total.sql, total.params)
    except READ_ERRORS as exc:
        logger.warning("Facet values for %s failed: %s", request.field, exc)
        return search_models.FacetValueResult()
    return search_models.FacetValueResult(
        values=[
            search_models.FacetBucket(value=str(r["val"]), count=int(r["c"]))
            for r in rows
        ],
        total=int(total_rows[0]["total"]),
    )


async def suggest(
    store: db_store.CatalogStore,
    text: str,
    limit: int = 10,
) -> list[search_models.Suggestion]:
    """Autocomplete over places, titles, subjects, keywords and themes.

    Places rank before titles, titles before the rest; shorter matches
    first within a rank.
    """
    if not text or not text.strip() or not await ensure_open(store):
        return []
    needle = text.strip()
    parts = []
    params: list[Any] = []
    for kind, field, priority in SUGGEST_SOURCES:
        if schema.is_scalar(field):
            column = schema.quote_ident(field)
            parts.append(
                f"SELECT term, '{kind}' AS type, {priority} AS priority "
                f"FROM (SELECT DISTINCT {column} AS term "
                f"FROM {schema.RESOURCES_TABLE} "
                f"WHERE strpos(lower({column}), lower(?)) > 0 LIMIT ?)"
            )
            params.extend([needle, limit])
        else:
            parts.append(
                f"SELECT term, '{kind}' AS type, {priority} AS priority "
                f"FROM (SELECT DISTINCT val AS term "
                f"FROM {schema.RESOURCES_MV_TABLE} WHERE field = ? "
                f"AND strpos(lower(val), lower(?)) > 0 LIMIT ?)"
            )
            params.extend([field, needle, limit])
    sql = (
        f"SELECT term, type FROM ({' UNION ALL '.join(parts)}) "
        "ORDER BY priority DESC, length(term) ASC, term ASC LIMIT ?"
    )
    try:
        rows = await store.fetch(sql, [*params, limit])
    except READ_ERRORS as exc:
        logger.warning("Suggest failed: %s", exc)
        return []
    return [
        search_models.Suggestion(text=str(r["term"]), type=r["type"])
        for r in rows
    ]


async def similar_resources(
    store: db_store.CatalogStore,
    record_id: str,
    limit: int = 12,
) -> list[models.Resource]:
    """Records sharing weighted facet values with the given record."""
    if not await ensure_open(store):
        return []
    weights = " ".join(
        f"WHEN field = '{field}' THEN {weight}"
        for field, weight in SIMILARITY_WEIGHTS.items()
    )
    fields = ", ".join(f"'{field}'" for field in SIMILARITY_WEIGHTS)
    sql = f"""
        SELECT m.id, SUM(target.weight) AS score
        FROM {schema.RESOURCES_MV_TABLE} m
        JOIN (
            SELECT DISTINCT field, val,
                   CASE {weights} ELSE 1 END AS weight
            FROM {schema.RESOURCES_MV_TABLE}
            WHERE id = ? AND field IN ({fields})
        ) target ON m.field = target.field AND m.val = target.val
        WHERE m.id <> ?
        GROUP BY m.id
        ORDER BY score DESC, m.id ASC
        LIMIT ?
    """
    try:
        rows = await store.fetch(sql, [record_id, record_id, limit])
        return await hydrator.fetch_resources_by_ids(
            store, [row["id"] for row in rows]
        )
    except READ_ERRORS as exc:
        logger.warning("Similarity query for %s failed: %s", record_id, exc)
        return []


async def get_resource(
    store: db_store.CatalogStore,
    record_id: str,
) -> models.Resource | None:
    if not await ensure_open(store):
        return None
    try:
        found = await hydrator.fetch_resources_by_ids(store, [record_id])
    except READ_ERRORS as exc:
        logger.warning("Lookup of %s failed: %s", record_id, exc)
        return None
    return found[0] if found else None


async def count_resources(store: db_store.CatalogStore) -> int:
    if not await ensure_open(store):
        return 0
    try:
        return await store.count_rows(schema.RESOURCES_TABLE)
    except READ_ERRORS as exc:
        logger.warning("Count failed: %s", exc)
        return 0


async def distinct_values(
    store: db_store.CatalogStore,
    field: str,
    search_text: str = "",
    limit: int = 20,
) -> list[str]:
    """Distinct values of a field containing ``search_text``."""
    if not await ensure_open(store):
        return []
    needle = search_text.strip()
    if schema.is_scalar(field):
        column = schema.quote_ident(field)
        sql = (
            f"SELECT DISTINCT {column} AS val FROM {schema.RESOURCES_TABLE} "
            f"WHERE {column} IS NOT NULL "
            f"AND strpos(lower({column}), lower(?)) > 0 "
            "ORDER BY val LIMIT ?"
        )
        params: list[Any] = [needle, limit]
    else:
        sql = (
            f"SELECT DISTINCT val FROM {schema.RESOURCES_MV_TABLE} "
            "WHERE field = ? AND strpos(lower(val), lower(?)) > 0 "
            "ORDER BY val LIMIT ?"
        )
        params = [field, needle, limit]
    try:
        rows = await store.fetch(sql, params)
    except READ_ERRORS as exc:
        logger.warning("Distinct values for %s failed: %s", field, exc)
        return []
    return [str(row["val"]) for row in rows]


async def list_distributions(
    store: db_store.CatalogStore,
    page: int = 1,
    page_size: int = 20,
    sort_by: str = "resource_id",
    sort_order: str = "asc",
    keyword: str = "",
) -> search_models.DistributionPage:
    """Page through all distributions joined with their record titles."""
    if not await ensure_open(store):
        return search_models.DistributionPage()
    column = DISTRIBUTION_SORT_COLUMNS.get(sort_by, "d.resource_id")
    direction = "DESC" if sort_order.lower() == "desc" else "ASC"
    where = ""
    params: list[Any] = []
    if keyword.strip():
        where = (
            "WHERE strpos(lower(d.resource_id), lower(?)) > 0 "
            "OR strpos(lower(d.relation_key), lower(?)) > 0 "
            "OR strpos(lower(d.url), lower(?)) > 0 "
            "OR strpos(lower(coalesce(r.dct_title_s, '')), lower(?)) > 0"
        )
        params = [keyword.strip()] * 4
    base = (
        f"FROM {schema.DISTRIBUTIONS_TABLE} d "
        f"LEFT JOIN {schema.RESOURCES_TABLE} r ON d.resource_id = r.id {where}"
    )
    offset = (max(page, 1) - 1) * page_size
    try:
        rows = await store.fetch(
            "SELECT d.resource_id, d.relation_key, d.url, d.label, "
            f"r.dct_title_s AS resource_title {base} "
            f"ORDER BY {column} {direction} NULLS LAST, d.resource_id, d.url "
            "LIMIT ? OFFSET ?",
            [*params, page_size, offset],
        )
        total = await store.fetch(f"SELECT count(*) AS c {base}", params)
    except READ_ERRORS as exc:
        logger.warning("Distribution listing failed: %s", exc)
        return search_models.DistributionPage()
    return search_models.DistributionPage(
        distributions=[search_models.DistributionRow(**row) for row in rows],
        total=int(total[0]["c"]),
    )


async def distributions_for_resource(
    store: db_store.CatalogStore,
    record_id: str,
) -> list[models.Distribution]:
    if not await ensure_open(store):
        return []
    try:
        rows = await store.fetch(
            "SELECT resource_id, relation_key, url, label "
            f"FROM {schema.DISTRIBUTIONS_TABLE} WHERE resource_id = ? "
            "ORDER BY relation_key, url",
            [record_id],
        )
    except READ_ERRORS as exc:
        logger.warning("Distributions for %s failed: %s", record_id, exc)
        return []
    return [models.Distribution(**row) for row in rows]


async def get_thumbnail(
    store: db_store.CatalogStore,
    record_id: str,
) -> bytes | None:
    if not await ensure_open(store):
        return None
    try:
        rows = await store.fetch(
            f"SELECT data FROM {schema.IMAGE_SERVICE_TABLE} WHERE id = ?",
            [record_id],
        )
    except READ_ERRORS as exc:
        logger.warning("Thumbnail for %s failed: %s", record_id, exc)
        return None
    if not rows:
        return None
    return hydrator.decode_thumbnail(record_id, rows[0]["data"])
