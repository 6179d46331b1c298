"""Catalog record search, retrieval and editing API endpoints.

This module exposes the faceted search, its neighbor and facet-value
companions, autocomplete, and the per-record endpoints used by the record
editor: fetch, upsert, delete, distributions, similar records and the
cached thumbnail. A second router lists distributions across the catalog.

Example:
    Search for records with a subject filter and a facet:
        >>> response = client.post(
        ...     "/api/resources/search",
        ...     json={
        ...         "q": "roads",
        ...         "filters": {"dct_subject_sm": {"any": ["Transportation"]}},
        ...         "facets": ["gbl_resourceClass_sm"],
        ...     },
        ... )
        >>> response.json()["total"]
        3

    Replace a record:
        >>> client.put("/api/resources/r1", json=document).json()
        {'success': True, 'message': 'Saved r1', 'count': 1, 'skipped': 0}
"""

from __future__ import annotations

import dataclasses
from typing import Any

import fastapi

from geocatalog.api import dependencies
from geocatalog.core import config, errors
from geocatalog.db import codec
from geocatalog.db import store as db_store
from geocatalog.services import mutations, search, search_models

router = fastapi.APIRouter(prefix="/api/resources", tags=["resources"])
distributions_router = fastapi.APIRouter(
    prefix="/api/distributions", tags=["distributions"]
)

_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF8", "image/gif"),
)


def _image_media_type(payload: bytes) -> str:
    for signature, media_type in _IMAGE_SIGNATURES:
        if payload.startswith(signature):
            return media_type
    return "application/octet-stream"


@router.post("/search")
async def search_resources(
    request: search_models.FacetedSearchRequest,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.FacetedSearchResponse:
    """Run a faceted search.

    Args:
        request: Text query, filters, bbox, sort, page and facets.
        store: Catalog store (injected via FastAPI Depends).

    Returns:
        One page of records as JSON documents, facet buckets per requested
        field and the total number of matches. A failing search returns
        an empty response rather than an error.
    """
    return await search.faceted_search(store, request)


@router.post("/search/neighbors")
async def search_neighbors(
    body: search_models.NeighborsRequest,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.Neighbors:
    """Previous and next record ids around ``currentId`` in a result set."""
    return await search.search_neighbors(store, body.request, body.currentId)


@router.post("/facets/values")
async def facet_values(
    body: search_models.FacetValueRequest,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.FacetValueResult:
    return await search.facet_values(store, body)


@router.get("/suggest")
async def suggest(
    q: str = "",
    limit: int = fastapi.Query(default=10, ge=1, le=100),
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> list[search_models.Suggestion]:
    """Autocomplete suggestions for a partial query."""
    return await search.suggest(store, q, limit)


@router.get("/values/{field}")
async def distinct_values(
    field: str,
    q: str = "",
    limit: int = fastapi.Query(default=20, ge=1, le=500),
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> list[str]:
    return await search.distinct_values(store, field, q, limit)


@router.get("/count")
async def count_resources(
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> dict[str, int]:
    return {"count": await search.count_resources(store)}


@router.get("/{record_id}")
async def get_resource(
    record_id: str,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> dict[str, Any]:
    """Fetch one record as a JSON document.

    Raises:
        HTTPException: If the record is not found (404 status code).
    """
    resource = await search.get_resource(store, record_id)
    if resource is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Resource not found",
        )

    return codec.resource_to_json(resource)


@router.put("/{record_id}")
async def put_resource(
    record_id: str,
    document: dict[str, Any] = fastapi.Body(...),  # noqa: B008
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.MutationResult:
    """Create or fully replace a record.

    The path id wins over any ``id`` in the document.

    Raises:
        HTTPException: 422 when required fields are missing, 400 when the
            write fails.
    """
    try:
        resource = codec.resource_from_json({**document, "id": record_id})
    except errors.ValidationError as exc:
        raise fastapi.HTTPException(status_code=422, detail=str(exc)) from exc

    result = await mutations.upsert_resource(store, resource)
    return dependencies.raise_for_result(result)


@router.delete("/{record_id}")
async def delete_resource(
    record_id: str,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.MutationResult:
    """Delete a record and its derived rows; deleting twice is harmless."""
    result = await mutations.delete_resource(store, record_id)
    return dependencies.raise_for_result(result)


@router.get("/{record_id}/distributions")
async def resource_distributions(
    record_id: str,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> list[dict[str, Any]]:
    return [
        dataclasses.asdict(dist)
        for dist in await search.distributions_for_resource(store, record_id)
    ]


@router.get("/{record_id}/similar")
async def similar_resources(
    record_id: str,
    limit: int = fastapi.Query(default=12, ge=1, le=100),
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> list[dict[str, Any]]:
    """Records sharing subjects, creators, themes or places with a record."""
    return [
        codec.resource_to_json(resource)
        for resource in await search.similar_resources(store, record_id, limit)
    ]


@router.get("/{record_id}/thumbnail")
async def get_thumbnail(
    record_id: str,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> fastapi.Response:
    payload = await search.get_thumbnail(store, record_id)
    if payload is None:
        raise fastapi.HTTPException(
            status_code=404,
            detail="Thumbnail not found",
        )

    return fastapi.Response(
        content=payload, media_type=_image_media_type(payload)
    )


@router.put("/{record_id}/thumbnail")
async def put_thumbnail(
    record_id: str,
    file: fastapi.UploadFile,
    settings: config.Settings = fastapi.Depends(dependencies.get_app_settings),  # noqa: B008
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.MutationResult:
    """Replace the cached thumbnail image of a record."""
    payload = dependencies.read_upload(
        file, settings.storage_dir, settings.max_upload_size_bytes
    )
    result = await mutations.upsert_thumbnail(store, record_id, payload)
    return dependencies.raise_for_result(result)


@distributions_router.get("")
async def list_distributions(
    page: int = fastapi.Query(default=1, ge=1),
    page_size: int = fastapi.Query(default=20, ge=1, le=500),
    sort_by: str = "resource_id",
    sort_order: str = "asc",
    keyword: str = "",
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
) -> search_models.DistributionPage:
    """Page through every distribution with its record title.

    Args:
        page: 1-based page number.
        page_size: Rows per page.
        sort_by: One of resource_id, relation_key, url, label or
            resource_title; anything else sorts by resource_id.
        sort_order: "asc" or "desc".
        keyword: Case-insensitive substring matched against id, relation,
            URL and title.
        store: Catalog store (injected via FastAPI Depends).
    """
    return await search.list_distributions(
        store, page, page_size, sort_by, sort_order, keyword
    )
