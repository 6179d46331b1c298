"""Tests for embedding text, the coordinator and the HTTP worker."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING

import duckdb
import httpx
import pytest

from geocatalog.db import models, schema
from geocatalog.services import embeddings, mutations

if TYPE_CHECKING:
    from conftest import ResourceFactory

    from geocatalog.db import store


class FakeWorker:
    """Returns a fixed vector and records the jobs it received."""

    def __init__(self, vectors: dict[str, list[float]] | None = None) -> None:
        self.vectors = vectors or {}
        self.jobs: list[embeddings.EmbeddingJob] = []

    async def embed(
        self, job: embeddings.EmbeddingJob
    ) -> embeddings.EmbeddingResponse:
        self.jobs.append(job)
        vector = self.vectors.get(job["id"], [0.1, 0.2, 0.3])
        return {"id": job["id"], "embedding": vector, "success": True}


async def _embedded_ids(catalog: store.CatalogStore) -> list[str]:
    rows = await catalog.fetch(
        f"SELECT id FROM {schema.RESOURCES_TABLE} "
        "WHERE embedding IS NOT NULL ORDER BY id"
    )
    return [row["id"] for row in rows]


def test_build_embedding_text() -> None:
    """Test the labeled sections and omission of empty ones."""
    resource = models.Resource(
        id="r1",
        dct_title_s="Alpha roads",
        dct_accessRights_s="Public",
        repeated={
            "dct_description_sm": ["First part.", "Second part."],
            "dct_subject_sm": ["Roads", "Transport"],
            "gbl_resourceClass_sm": ["Maps"],
            schema.YEAR_FIELD: ["1990", "2000"],
        },
    )
    assert embeddings.build_embedding_text(resource) == (
        "Title: Alpha roads. "
        "Description: First part. Second part.. "
        "Subjects: Roads, Transport. "
        "Resource Class: Maps. "
        "Year: 1990,2000"
    )


async def test_ensure_embeddings_fills_batch(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that one run embeds at most one batch, priority first."""
    for i in range(7):
        await mutations.upsert_resource(
            catalog, make_resource(f"r{i}"), flush=False
        )
    worker = FakeWorker()
    coordinator = embeddings.EmbeddingCoordinator(catalog, worker)

    result = await coordinator.ensure_embeddings(priority_id="r6")
    assert result.success
    assert result.count == 5
    assert worker.jobs[0]["id"] == "r6"
    assert worker.jobs[0]["text"].startswith("Title: Record r6")
    assert await _embedded_ids(catalog) == ["r0", "r1", "r2", "r3", "r6"]

    second = await coordinator.ensure_embeddings()
    assert second.count == 2
    third = await coordinator.ensure_embeddings()
    assert third.message == "Nothing to embed"
    assert third.count == 0


async def test_wrong_dimensions_are_rejected(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that vectors of the wrong length are not stored."""
    await mutations.upsert_resource(catalog, make_resource("a"), flush=False)
    await mutations.upsert_resource(catalog, make_resource("b"), flush=False)
    worker = FakeWorker({"b": [1.0, 2.0]})
    coordinator = embeddings.EmbeddingCoordinator(catalog, worker)

    result = await coordinator.ensure_embeddings()
    assert result.count == 1
    assert result.skipped == 1
    assert await _embedded_ids(catalog) == ["a"]


async def test_embedded_priority_record_is_not_repeated(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that a priority id with a vector is not embedded again."""
    await mutations.upsert_resource(catalog, make_resource("a"), flush=False)
    await mutations.apply_embedding(catalog, "a", [1.0, 1.0, 1.0])
    worker = FakeWorker()
    coordinator = embeddings.EmbeddingCoordinator(catalog, worker)
    assert await coordinator.pending_ids("a") == []


async def test_http_worker_posts_job() -> None:
    """Test the worker request and response mapping."""
    seen: list[dict[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200, json={"id": "r1", "embedding": [0.5], "success": True}
        )

    worker = embeddings.HttpEmbeddingWorker(
        "http://worker.example/embed", transport=httpx.MockTransport(handler)
    )
    response = await worker.embed({"id": "r1", "text": "Title: A"})
    assert seen == [{"id": "r1", "text": "Title: A"}]
    assert response == {
        "id": "r1",
        "embedding": [0.5],
        "success": True,
        "error": None,
    }


async def test_http_worker_reports_failures() -> None:
    """Test that transport errors become failed responses."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    worker = embeddings.HttpEmbeddingWorker(
        "http://worker.example/embed", transport=httpx.MockTransport(handler)
    )
    response = await worker.embed({"id": "r1", "text": "x"})
    assert response["success"] is False
    assert response["embedding"] is None
    assert response["id"] == "r1"


async def test_non_object_worker_reply_does_not_hang(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that a JSON array from the worker counts as a failed response."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[1, 2, 3])

    await mutations.upsert_resource(catalog, make_resource("a"), flush=False)
    worker = embeddings.HttpEmbeddingWorker(
        "http://worker.example/embed", transport=httpx.MockTransport(handler)
    )
    assert (await worker.embed({"id": "a", "text": "x"}))["success"] is False

    coordinator = embeddings.EmbeddingCoordinator(catalog, worker)
    result = await asyncio.wait_for(coordinator.ensure_embeddings(), 5)
    assert result.success
    assert result.count == 0
    assert result.skipped == 1
    assert await _embedded_ids(catalog) == []


async def test_raising_worker_does_not_hang(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that a worker exception fails only its own record."""

    class ExplodingWorker(FakeWorker):
        async def embed(
            self, job: embeddings.EmbeddingJob
        ) -> embeddings.EmbeddingResponse:
            if job["id"] == "a":
                raise RuntimeError("worker crashed")
            return await super().embed(job)

    await mutations.upsert_resource(catalog, make_resource("a"), flush=False)
    await mutations.upsert_resource(catalog, make_resource("b"), flush=False)
    coordinator = embeddings.EmbeddingCoordinator(catalog, ExplodingWorker())
    result = await asyncio.wait_for(coordinator.ensure_embeddings(), 5)
    assert result.count == 1
    assert result.skipped == 1
    assert await _embedded_ids(catalog) == ["b"]


async def test_store_failure_while_loading_jobs(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a failing pending-id query is reported, not raised."""
    await mutations.upsert_resource(catalog, make_resource("a"), flush=False)

    async def broken_fetch(*args: object, **kwargs: object) -> None:
        raise duckdb.IOException("disk gone")

    monkeypatch.setattr(catalog, "fetch", broken_fetch)
    coordinator = embeddings.EmbeddingCoordinator(catalog, FakeWorker())
    result = await coordinator.ensure_embeddings()
    assert result.success is False
    assert result.message == "Store unavailable"
