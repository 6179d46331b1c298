"""Coordinate embedding generation with an external worker.

Records whose embedding is still null are described as plain text and
handed to an embedding worker through a bounded job queue; the worker's
responses come back through a result queue and only the embedding column
of the matching record is updated.

Worker contract:
    request ``{"id": str, "text": str}``;
    response ``{"id": str, "embedding": [float], "success": bool,
    "error": str | None}``.

Example:
    Fill embeddings for a batch, the opened record first:
        >>> coordinator = EmbeddingCoordinator(
        ...     store, HttpEmbeddingWorker(settings.embedding_worker_url)
        ... )
        >>> result = await coordinator.ensure_embeddings(priority_id="r1")
        >>> result.count
        5
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Protocol, TypedDict

import duckdb
import httpx

from geocatalog.core import errors
from geocatalog.db import models, schema
from geocatalog.services import hydrator, mutations, search
from geocatalog.services.search_models import MutationResult

if TYPE_CHECKING:
    from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)


class EmbeddingJob(TypedDict):
    id: str
    text: str


class EmbeddingResponse(TypedDict, total=False):
    id: str
    embedding: list[float] | None
    success: bool
    error: str | None


def failed_response(job: EmbeddingJob, error: str) -> EmbeddingResponse:
    return {
        "id": job["id"],
        "embedding": None,
        "success": False,
        "error": error,
    }


class EmbeddingWorkerProtocol(Protocol):
    """Anything that turns one job into one response."""

    async def embed(self, job: EmbeddingJob) -> EmbeddingResponse: ...


class HttpEmbeddingWorker(EmbeddingWorkerProtocol):
    """Posts jobs as JSON to an embedding endpoint."""

    def __init__(
        self,
        url: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = str(url)
        self.timeout = timeout
        self._transport = transport

    async def embed(self, job: EmbeddingJob) -> EmbeddingResponse:
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self.timeout
            ) as client:
                response = await client.post(self.url, json=job)
                response.raise_for_status()
                body: Any = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            return failed_response(job, str(exc))
        if not isinstance(body, dict):
            return failed_response(
                job, f"Expected a JSON object, got {type(body).__name__}"
            )
        return {
            "id": str(body.get("id", job["id"])),
            "embedding": body.get("embedding"),
            "success": bool(body.get("success", False)),
            "error": body.get("error"),
        }


def _joined(values: list[str] | None, sep: str = ", ") -> str:
    return sep.join(values or [])


def build_embedding_text(resource: models.Resource) -> str:
    """Labeled description of a record; empty sections are left out."""
    repeated = resource.repeated
    pieces = [
        f"Title: {resource.dct_title_s or ''}",
        f"Alternative Title: {_joined(repeated.get('dct_alternative_sm'))}",
        f"Description: {_joined(repeated.get('dct_description_sm'), ' ')}",
        f"Subjects: {_joined(repeated.get('dct_subject_sm'))}",
        f"Keywords: {_joined(repeated.get('dcat_keyword_sm'))}",
        f"Themes: {_joined(repeated.get('dcat_theme_sm'))}",
        f"Creators: {_joined(repeated.get('dct_creator_sm'))}",
        f"Publisher: {_joined(repeated.get('dct_publisher_sm'))}",
        f"Language: {_joined(repeated.get('dct_language_sm'))}",
        f"Resource Class: {_joined(repeated.get('gbl_resourceClass_sm'))}",
        f"Resource Type: {_joined(repeated.get('gbl_resourceType_sm'))}",
        f"Place: {_joined(repeated.get('dct_spatial_sm'))}",
        f"Year: {_joined(repeated.get(schema.YEAR_FIELD), ',')}",
    ]
    stripped = (piece.strip() for piece in pieces)
    return ". ".join(p for p in stripped if not p.endswith(":"))


class EmbeddingCoordinator:
    """Bounded job queue and result channel towards an embedding worker.

    Attributes:
        store: Catalog store whose embedding column is filled.
        worker: Worker producing vectors.
        batch_size: Maximum records per run and queue capacity.
        dimensions: Required vector length.
    """

    def __init__(
        self,
        store: db_store.CatalogStore,
        worker: EmbeddingWorkerProtocol,
        batch_size: int | None = None,
        dimensions: int | None = None,
    ) -> None:
        self.store = store
        self.worker = worker
        self.batch_size = batch_size or store.settings.embedding_batch_size
        self.dimensions = dimensions or store.settings.embedding_dimensions

    async def pending_ids(self, priority_id: str | None = None) -> list[str]:
        """Up to batch_size ids without an embedding, priority id first."""
        ids: list[str] = []
        if priority_id:
            rows = await self.store.fetch(
                f"SELECT id FROM {schema.RESOURCES_TABLE} "
                "WHERE id = ? AND embedding IS NULL",
                [priority_id],
            )
            ids.extend(row["id"] for row in rows)
        remaining = self.batch_size - len(ids)
        if remaining > 0:
            rows = await self.store.fetch(
                f"SELECT id FROM {schema.RESOURCES_TABLE} "
                "WHERE embedding IS NULL AND id IS DISTINCT FROM ? "
                "ORDER BY id LIMIT ?",
                [priority_id, remaining],
            )
            ids.extend(row["id"] for row in rows)
        return ids

    async def _produce(
        self,
        jobs: asyncio.Queue[EmbeddingJob | None],
        resources: list[models.Resource],
    ) -> None:
        for resource in resources:
            await jobs.put(
                {"id": resource.id, "text": build_embedding_text(resource)}
            )
        await jobs.put(None)

    async def _consume(
        self,
        jobs: asyncio.Queue[EmbeddingJob | None],
        results: asyncio.Queue[EmbeddingResponse | None],
    ) -> None:
        try:
            while True:
                job = await jobs.get()
                if job is None:
                    return
                try:
                    response = await self.worker.embed(job)
                except Exception as exc:
                    logger.exception("Embedding worker raised for %s", job["id"])
                    response = failed_response(job, str(exc))
                await results.put(response)
        finally:
            results.put_nowait(None)

    async def _apply(self, response: EmbeddingResponse) -> bool:
        record_id = response.get("id")
        vector = response.get("embedding")
        if (
            not record_id
            or not response.get("success")
            or not isinstance(vector, list)
            or not vector
        ):
            logger.warning(
                "Embedding failed for %s: %s", record_id, response.get("error")
            )
            return False
        if len(vector) != self.dimensions:
            logger.warning(
                "Rejected %d-dimensional embedding for %s (expected %d)",
                len(vector), record_id, self.dimensions,
            )
            return False
        result = await mutations.apply_embedding(self.store, record_id, vector)
        return result.success

    async def ensure_embeddings(
        self,
        priority_id: str | None = None,
    ) -> MutationResult:
        """Embed up to one batch of records lacking a vector.

        Args:
            priority_id: Record to embed first, if it still lacks a vector.

        Returns:
            MutationResult counting stored vectors and failed responses.
        """
        if not await search.ensure_open(self.store):
            return MutationResult(success=False, message="Store unavailable")
        try:
            ids = await self.pending_ids(priority_id)
            if not ids:
                return MutationResult(success=True, message="Nothing to embed")
            resources = await hydrator.fetch_resources_by_ids(self.store, ids)
        except (duckdb.Error, errors.CatalogError) as exc:
            logger.warning("Could not load records to embed: %s", exc)
            return MutationResult(success=False, message="Store unavailable")
        logger.info("Generating embeddings for %d records", len(resources))

        jobs: asyncio.Queue[EmbeddingJob | None] = asyncio.Queue(
            maxsize=self.batch_size
        )
        results: asyncio.Queue[EmbeddingResponse | None] = asyncio.Queue(
            maxsize=self.batch_size + 1
        )
        producer = asyncio.create_task(self._produce(jobs, resources))
        consumer = asyncio.create_task(self._consume(jobs, results))

        stored = failed = 0
        try:
            while True:
                response = await results.get()
                if response is None:
                    break
                if await self._apply(response):
                    stored += 1
                else:
                    failed += 1
        finally:
            for task in (producer, consumer):
                if not task.done():
                    task.cancel()
            await asyncio.gather(producer, consumer, return_exceptions=True)

        if stored:
            await self.store.flush()
        return MutationResult(
            success=True,
            message=f"Embedded {stored} records.",
            count=stored,
            skipped=failed,
        )
