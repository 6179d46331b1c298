"""Embedding generation trigger endpoint.

Example:
    Embed the next batch, starting with the record being viewed:
        >>> client.post("/api/embeddings/ensure", params={"priority_id": "r1"})
"""

from __future__ import annotations

import fastapi

from geocatalog.api import dependencies
from geocatalog.core import config
from geocatalog.db import store as db_store
from geocatalog.services import embeddings, search_models

router = fastapi.APIRouter(prefix="/api/embeddings", tags=["embeddings"])


def _get_worker(
    settings: config.Settings = fastapi.Depends(dependencies.get_app_settings),  # noqa: B008
) -> embeddings.EmbeddingWorkerProtocol:
    """Resolve the embedding worker dependency.

    Returns:
        HttpEmbeddingWorker posting to the configured worker URL.
    """
    return embeddings.HttpEmbeddingWorker(settings.embedding_worker_url)


@router.post("/ensure")
async def ensure_embeddings(
    priority_id: str | None = None,
    store: db_store.CatalogStore = fastapi.Depends(dependencies.get_store),  # noqa: B008
    worker: embeddings.EmbeddingWorkerProtocol = fastapi.Depends(_get_worker),  # noqa: B008
) -> search_models.MutationResult:
    """Generate embeddings for up to one batch of records lacking them.

    Args:
        priority_id: Record to embed first.
        store: Catalog store (injected via FastAPI Depends).
        worker: Embedding worker (injected via FastAPI Depends).

    Returns:
        MutationResult with the number of stored vectors in ``count`` and
        failed responses in ``skipped``.
    """
    coordinator = embeddings.EmbeddingCoordinator(store, worker)
    result = await coordinator.ensure_embeddings(priority_id)
    return dependencies.raise_for_result(result, status_code=503)
