"""Catalog export API endpoints.

Every export is returned as a downloadable attachment. An unavailable
store answers 503 instead of an empty file.

Example:
    Download every record as a zip of JSON documents:
        >>> response = client.get("/api/export/zip")
        >>> response.headers["content-type"]
        'application/zip'
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Literal

import fastapi

from geocatalog.api import dependencies
from geocatalog.core import errors
from geocatalog.db import store as db_store
from geocatalog.services import exporter, search_models

router = fastapi.APIRouter(prefix="/api/export", tags=["export"])

CSV_MEDIA_TYPE = "text/csv; charset=utf-8"
ZIP_MEDIA_TYPE = "application/zip"
SNAPSHOT_MEDIA_TYPE = "application/octet-stream"


async def _attachment(
    export: Awaitable[bytes | str],
    filename: str,
    media_type: str,
) -> fastapi.Response:
    try:
        content = await export
    except errors.StoreUnavailable as exc:
        raise fastapi.HTTPException(status_code=503, detail=str(exc)) from exc

    return fastapi.Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/csv")
async def export_csv(
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> fastapi.Response:
    """All records as a CSV sheet with friendly column headers."""
    return await _attachment(
        exporter.export_csv(store), "resources.csv", CSV_MEDIA_TYPE
    )


@router.get("/distributions.csv")
async def export_distributions_csv(
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> fastapi.Response:
    return await _attachment(
        exporter.export_distributions_csv(store),
        "distributions.csv",
        CSV_MEDIA_TYPE,
    )


@router.get("/zip")
async def export_zip(
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> fastapi.Response:
    """JSON documents grouped by resource class plus a Parquet snapshot."""
    return await _attachment(
        exporter.export_zip(store), "metadata-aardvark.zip", ZIP_MEDIA_TYPE
    )


@router.get("/snapshot")
async def export_snapshot(
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> fastapi.Response:
    return await _attachment(
        exporter.export_snapshot(store),
        "records.duckdb",
        SNAPSHOT_MEDIA_TYPE,
    )


@router.post("/filtered")
async def export_filtered(
    request: search_models.FacetedSearchRequest,
    export_format: Literal["json", "csv"] = fastapi.Query(  # noqa: B008
        default="json", alias="format"
    ),
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> fastapi.Response:
    """Export the records matching a faceted-search request.

    Args:
        request: The same request body the search endpoint accepts; paging
            is ignored.
        export_format: "csv" for a sheet, "json" for the zip archive.
        store: Catalog store (injected via FastAPI Depends).
    """
    if export_format == "csv":
        return await _attachment(
            exporter.export_filtered(store, request, "csv"),
            "resources.csv",
            CSV_MEDIA_TYPE,
        )
    return await _attachment(
        exporter.export_filtered(store, request, "json"),
        "metadata-aardvark.zip",
        ZIP_MEDIA_TYPE,
    )
