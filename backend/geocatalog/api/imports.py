"""Bulk import API endpoints.

Uploads arrive as multipart files and are size-checked before they reach
the import pipeline. A resources CSV, a distributions CSV, a JSON document
or array, and a full DuckDB snapshot are accepted.

Example:
    Import a resources sheet:
        >>> response = client.post(
        ...     "/api/import/csv",
        ...     files={"file": ("records.csv", open("records.csv", "rb"))},
        ... )
        >>> response.json()
        {'success': True, 'message': 'Imported 12 rows.', 'count': 12,
         'skipped': 0}
"""

from __future__ import annotations

import json

import fastapi

from geocatalog.api import dependencies
from geocatalog.core import config
from geocatalog.db import store as db_store
from geocatalog.services import importer, search_models

router = fastapi.APIRouter(prefix="/api/import", tags=["import"])


@router.post("/csv")
async def import_csv(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(dependencies.get_app_settings),  # noqa: B008
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.MutationResult:
    """Import a resources or distributions CSV.

    The sheet kind is detected from its header row. Rows without an id are
    skipped and counted.

    Raises:
        HTTPException: 413 for oversized uploads, 400 when the sheet is
            unreadable or the import was rolled back.
    """
    payload = dependencies.read_upload(
        file, settings.storage_dir, settings.max_upload_size_bytes
    )
    result = await importer.import_csv(store, payload)
    return dependencies.raise_for_result(result)


@router.post("/json")
async def import_json(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(dependencies.get_app_settings),  # noqa: B008
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.MutationResult:
    """Import one JSON document or an array of documents."""
    payload = dependencies.read_upload(
        file, settings.storage_dir, settings.max_upload_size_bytes
    )
    try:
        data = json.loads(importer.decode_text(payload))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise fastapi.HTTPException(
            status_code=400,
            detail=f"Invalid JSON: {exc}",
        ) from exc

    result = await importer.import_json(store, data)
    return dependencies.raise_for_result(result)


@router.post("/snapshot")
async def import_snapshot(
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(dependencies.get_app_settings),  # noqa: B008
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.MutationResult:
    """Replace the whole catalog with an uploaded DuckDB snapshot.

    The restore is atomic: a snapshot that cannot be read leaves the
    catalog unchanged and answers 400.
    """
    payload = dependencies.read_upload(
        file, settings.storage_dir, settings.max_upload_size_bytes
    )
    result = await importer.restore_snapshot(store, payload)
    return dependencies.raise_for_result(result)
