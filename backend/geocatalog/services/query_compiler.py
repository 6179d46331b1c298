"""Compile faceted-search requests into parameterized DuckDB SQL.

Every function here is pure: it takes a FacetedSearchRequest (or parts of
one) and returns a Clause holding SQL text and its bound parameters. The
wide table is always aliased ``r`` and the facet-index table ``m``. Only
registry-declared column names are interpolated; field names used as
facet-index keys and every filter value are bound as parameters.

Example:
    Build the page query for a request:
        >>> from geocatalog.services import query_compiler as qc
        >>> where = qc.compile_where(request)
        >>> order = qc.compile_order(request)
        >>> page = qc.page_query(where, order, size=20, offset=0)
        >>> page.sql.startswith("SELECT r.id FROM resources r")
        True
"""

from __future__ import annotations

import dataclasses
import logging
import uuid
from collections.abc import Iterable
from typing import Any

from geocatalog.db import schema
from geocatalog.services import search_models
from geocatalog.utils import geometry

logger = logging.getLogger(__name__)

R = schema.RESOURCES_TABLE
MV = schema.RESOURCES_MV_TABLE
TITLE = f"r.{schema.quote_ident(schema.TITLE_FIELD)}"


@dataclasses.dataclass
class Clause:
    """SQL fragment plus its positional parameters."""

    sql: str
    params: list[Any] = dataclasses.field(default_factory=list)


def and_all(clauses: Iterable[Clause | None]) -> Clause:
    """Join clauses with AND; no clauses yields TRUE."""
    parts = [c for c in clauses if c is not None]
    if not parts:
        return Clause("TRUE")
    return Clause(
        " AND ".join(f"({c.sql})" for c in parts),
        [p for c in parts for p in c.params],
    )


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def _column(field: str) -> str:
    return f"r.{schema.quote_ident(field)}"


def parse_year_range(value: str | None) -> tuple[int, int] | None:
    """Parse a ``"min,max"`` year range; None when malformed."""
    if not value:
        return None
    parts = [p.strip() for p in value.split(",")]
    if len(parts) != 2:
        return None
    try:
        low, high = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    return min(low, high), max(low, high)


def effective_filters(
    request: search_models.FacetedSearchRequest,
) -> dict[str, search_models.FilterCondition]:
    """Request filters with the yearRange shorthand folded in."""
    filters = dict(request.filters)
    year_range = parse_year_range(request.yearRange)
    if year_range is not None:
        current = filters.get(schema.YEAR_FIELD)
        base = current.model_copy() if current else (
            search_models.FilterCondition()
        )
        base.gte, base.lte = year_range
        filters[schema.YEAR_FIELD] = base
    return filters


def text_clause(q: str | None) -> Clause | None:
    """Case-insensitive substring match against the search documents."""
    if q is None or not q.strip():
        return None
    return Clause(
        f"r.id IN (SELECT s.id FROM {schema.SEARCH_INDEX_TABLE} s "
        "WHERE strpos(lower(s.content), lower(?)) > 0)",
        [q.strip()],
    )


def query_envelope(bbox: search_models.BBox) -> geometry.Envelope:
    return geometry.Envelope(
        min(bbox.minX, bbox.maxX),
        min(bbox.minY, bbox.maxY),
        max(bbox.minX, bbox.maxX),
        max(bbox.minY, bbox.maxY),
    )


def spatial_clause(bbox: search_models.BBox | None) -> Clause | None:
    if bbox is None:
        return None
    envelope = query_envelope(bbox)
    return Clause(
        geometry.intersects_sql("r"), geometry.intersects_params(envelope)
    )


def _scalar_clause(
    field: str,
    cond: search_models.FilterCondition,
) -> list[Clause]:
    column = _column(field)
    clauses = []
    if cond.any:
        clauses.append(
            Clause(f"{column} IN ({_placeholders(len(cond.any))})",
                   list(cond.any))
        )
    if cond.none:
        clauses.append(
            Clause(
                f"({column} IS NULL OR {column} NOT IN "
                f"({_placeholders(len(cond.none))}))",
                list(cond.none),
            )
        )
    if cond.all:
        wanted = sorted(set(cond.all))
        if len(wanted) == 1:
            clauses.append(Clause(f"{column} = ?", wanted))
        else:
            clauses.append(Clause("FALSE"))
    if cond.gte is not None:
        clauses.append(
            Clause(f"TRY_CAST({column} AS BIGINT) >= ?", [cond.gte])
        )
    if cond.lte is not None:
        clauses.append(
            Clause(f"TRY_CAST({column} AS BIGINT) <= ?", [cond.lte])
        )
    return clauses


def _mv_exists(field: str, predicate: str, params: list[Any]) -> Clause:
    return Clause(
        f"EXISTS (SELECT 1 FROM {MV} m WHERE m.id = r.id AND m.field = ? "
        f"AND {predicate})",
        [field, *params],
    )


def _repeated_clause(
    field: str,
    cond: search_models.FilterCondition,
) -> list[Clause]:
    clauses = []
    if cond.any:
        clauses.append(
            _mv_exists(
                field,
                f"m.val IN ({_placeholders(len(cond.any))})",
                list(cond.any),
            )
        )
    if cond.none:
        exists = _mv_exists(
            field,
            f"m.val IN ({_placeholders(len(cond.none))})",
            list(cond.none),
        )
        clauses.append(Clause(f"NOT {exists.sql}", exists.params))
    if cond.all:
        wanted = sorted(set(cond.all))
        clauses.append(
            Clause(
                f"(SELECT count(DISTINCT m.val) FROM {MV} m "
                f"WHERE m.id = r.id AND m.field = ? "
                f"AND m.val IN ({_placeholders(len(wanted))})) = ?",
                [field, *wanted, len(wanted)],
            )
        )
    bounds = []
    params: list[Any] = []
    if cond.gte is not None:
        bounds.append("TRY_CAST(m.val AS BIGINT) >= ?")
        params.append(cond.gte)
    if cond.lte is not None:
        bounds.append("TRY_CAST(m.val AS BIGINT) <= ?")
        params.append(cond.lte)
    if bounds:
        clauses.append(_mv_exists(field, " AND ".join(bounds), params))
    return clauses


def field_clause(
    field: str,
    cond: search_models.FilterCondition,
) -> Clause | None:
    """Predicate for one filter.

    Scalar columns are matched on the wide table directly; repeated and
    unknown fields are matched against the facet-index rows.
    """
    if cond.is_empty():
        return None
    if schema.is_scalar(field):
        clauses = _scalar_clause(field, cond)
    else:
        clauses = _repeated_clause(field, cond)
    if not clauses:
        return None
    return and_all(clauses)


def has_global(request: search_models.FacetedSearchRequest) -> bool:
    """True when free-text or spatial predicates are present."""
    return bool(request.q and request.q.strip()) or request.bbox is not None


def global_clause(request: search_models.FacetedSearchRequest) -> Clause:
    return and_all([text_clause(request.q), spatial_clause(request.bbox)])


def compile_where(
    request: search_models.FacetedSearchRequest,
    omit_field: str | None = None,
    include_global: bool = True,
    hits_table: str | None = None,
) -> Clause:
    """Compile the WHERE predicate of a request.

    Args:
        request: Faceted-search request.
        omit_field: Filter field to leave out (facet self-exclusion).
        include_global: Include free-text and spatial predicates.
        hits_table: Temporary table holding the pre-materialized global
            hits; replaces the free-text and spatial predicates.

    Returns:
        Clause over the wide table aliased ``r``.
    """
    clauses: list[Clause | None] = []
    if include_global:
        if hits_table is not None:
            clauses.append(Clause(f"r.id IN (SELECT id FROM {hits_table})"))
        else:
            clauses.append(text_clause(request.q))
            clauses.append(spatial_clause(request.bbox))
    for field, cond in effective_filters(request).items():
        if field == omit_field:
            continue
        clauses.append(field_clause(field, cond))
    return and_all(clauses)


def primary_sort(
    request: search_models.FacetedSearchRequest,
) -> search_models.SortSpec:
    if request.sort:
        return request.sort[0]
    return search_models.SortSpec(field=schema.TITLE_FIELD, dir="asc")


def is_default_sort(request: search_models.FacetedSearchRequest) -> bool:
    sort = primary_sort(request)
    return sort.field == schema.TITLE_FIELD and sort.dir == "asc"


def compile_order(request: search_models.FacetedSearchRequest) -> Clause:
    """Compile the ORDER BY list of a request.

    Spatial queries with the default sort rank by envelope overlap. Record
    id is always the last key so pages are stable.
    """
    sort = primary_sort(request)
    direction = "DESC" if sort.dir == "desc" else "ASC"
    tail = f"{TITLE} ASC, r.id ASC"

    if request.bbox is not None and is_default_sort(request):
        envelope = query_envelope(request.bbox)
        return Clause(
            f"{geometry.overlap_score_sql('r')} DESC NULLS LAST, {tail}",
            geometry.overlap_score_params(envelope),
        )
    if sort.field == schema.TITLE_FIELD:
        return Clause(f"{TITLE} {direction} NULLS LAST, r.id ASC")
    if sort.field == schema.YEAR_FIELD:
        agg = "max" if direction == "DESC" else "min"
        return Clause(
            f"(SELECT {agg}(TRY_CAST(m.val AS BIGINT)) FROM {MV} m "
            f"WHERE m.id = r.id AND m.field = ?) {direction} NULLS LAST, "
            f"{tail}",
            [schema.YEAR_FIELD],
        )
    if schema.is_scalar(sort.field):
        return Clause(
            f"{_column(sort.field)} {direction} NULLS LAST, {tail}"
        )
    agg = "max" if direction == "DESC" else "min"
    return Clause(
        f"(SELECT {agg}(m.val) FROM {MV} m WHERE m.id = r.id "
        f"AND m.field = ?) {direction} NULLS LAST, {tail}",
        [sort.field],
    )


def page_query(
    where: Clause,
    order: Clause,
    size: int,
    offset: int,
) -> Clause:
    return Clause(
        f"SELECT r.id FROM {R} r WHERE {where.sql} ORDER BY {order.sql} "
        "LIMIT ? OFFSET ?",
        [*where.params, *order.params, size, offset],
    )


def count_query(where: Clause) -> Clause:
    return Clause(
        f"SELECT count(*) AS total FROM {R} r WHERE {where.sql}",
        list(where.params),
    )


def _facet_source(field: str, where: Clause) -> tuple[str, str, list[Any]]:
    """Value expression, FROM/WHERE body and params for a facet field."""
    if schema.is_scalar(field):
        column = _column(field)
        body = (
            f"FROM {R} r WHERE {column} IS NOT NULL AND {column} <> '' "
            f"AND ({where.sql})"
        )
        return column, body, list(where.params)
    body = (
        f"FROM {MV} m JOIN {R} r ON r.id = m.id "
        f"WHERE m.field = ? AND m.val IS NOT NULL AND m.val <> '' "
        f"AND ({where.sql})"
    )
    return "m.val", body, [field, *where.params]


def _count_expr(field: str) -> str:
    return "count(*)" if schema.is_scalar(field) else "count(DISTINCT m.id)"


def facet_query(field: str, where: Clause, limit: int) -> Clause:
    """Value/count distribution of one field over the filtered set.

    One row beyond ``limit`` is requested so callers can detect truncation.
    """
    value, body, params = _facet_source(field, where)
    count = _count_expr(field)
    if field == schema.YEAR_FIELD:
        order = f"TRY_CAST({value} AS BIGINT) ASC NULLS LAST, {value} ASC"
    else:
        order = f"{count} DESC, {value} ASC"
    return Clause(
        f"SELECT {value} AS val, {count} AS c {body} GROUP BY {value} "
        f"ORDER BY {order} LIMIT ?",
        [*params, limit + 1],
    )


FACET_VALUE_ORDER = {
    "count_desc": "{count} DESC, {value} ASC",
    "count_asc": "{count} ASC, {value} ASC",
    "alpha_asc": "{value} ASC",
    "alpha_desc": "{value} DESC",
}


def facet_values_query(
    field: str,
    where: Clause,
    facet_query_text: str | None,
    sort: str,
    size: int,
    offset: int,
) -> tuple[Clause, Clause]:
    """Paged value listing and distinct-value count for one facet."""
    value, body, params = _facet_source(field, where)
    if facet_query_text and facet_query_text.strip():
        body += f" AND strpos(lower({value}), lower(?)) > 0"
        params = [*params, facet_query_text.strip()]
    count = _count_expr(field)
    order = FACET_VALUE_ORDER.get(sort, FACET_VALUE_ORDER["count_desc"])
    order = order.format(count=count, value=value)
    values = Clause(
        f"SELECT {value} AS val, {count} AS c {body} GROUP BY {value} "
        f"ORDER BY {order} LIMIT ? OFFSET ?",
        [*params, size, offset],
    )
    total = Clause(
        f"SELECT count(DISTINCT {value}) AS total {body}", list(params)
    )
    return values, total


def neighbors_query(where: Clause, order: Clause, current_id: str) -> Clause:
    """Previous/next id and 1-based position of a record in the ordering."""
    return Clause(
        f"""
        WITH sorted_ids AS (
            SELECT r.id AS id,
                   ROW_NUMBER() OVER (ORDER BY {order.sql}) AS rn
            FROM {R} r WHERE {where.sql}
        ),
        target AS (SELECT rn FROM sorted_ids WHERE id = ?)
        SELECT (SELECT count(*) FROM sorted_ids) AS total,
               t.rn AS current_pos,
               p.id AS prev_id,
               n.id AS next_id
        FROM target t
        LEFT JOIN sorted_ids p ON p.rn = t.rn - 1
        LEFT JOIN sorted_ids n ON n.rn = t.rn + 1
        """,
        [*order.params, *where.params, current_id],
    )


def hits_table_name() -> str:
    """Unique name for a temporary global-hits table."""
    return f"global_hits_{uuid.uuid4().hex[:12]}"


def create_hits_sql(table: str) -> str:
    return f"CREATE TEMP TABLE {table} (id VARCHAR)"


def insert_hits_query(
    table: str,
    request: search_models.FacetedSearchRequest,
) -> Clause:
    where = global_clause(request)
    return Clause(
        f"INSERT INTO {table} SELECT r.id FROM {R} r WHERE {where.sql}",
        list(where.params),
    )


def drop_hits_sql(table: str) -> str:
    return f"DROP TABLE IF EXISTS {table}"
