"""Tests for record upserts, deletes, thumbnails and embedding writes."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from geocatalog.db import models, schema
from geocatalog.services import mutations

if TYPE_CHECKING:
    from conftest import ResourceFactory

    from geocatalog.core import config
    from geocatalog.db import snapshots, store


async def _table_counts(catalog: store.CatalogStore) -> dict[str, int]:
    return {
        table: await catalog.count_rows(table) for table in schema.ALL_TABLES
    }


async def test_upsert_is_idempotent(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that upserting twice leaves no duplicate derived rows."""
    resource = make_resource(
        "r1",
        dct_subject_sm=["Maps", "History"],
        distributions=[
            models.Distribution("r1", "download", "https://x/a.zip"),
            models.Distribution("r1", "download", "https://x/b.zip"),
        ],
    )
    first = await mutations.upsert_resource(catalog, resource)
    once = await _table_counts(catalog)
    second = await mutations.upsert_resource(catalog, resource)
    assert first.success and second.success
    assert await _table_counts(catalog) == once
    assert once[schema.RESOURCES_TABLE] == 1
    assert once[schema.RESOURCES_MV_TABLE] == 3
    assert once[schema.DISTRIBUTIONS_TABLE] == 2
    assert once[schema.SEARCH_INDEX_TABLE] == 1


async def test_upsert_replaces_previous_values(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that an upsert fully replaces the record's rows."""
    await mutations.upsert_resource(
        catalog, make_resource("r1", dct_subject_sm=["Maps"])
    )
    await mutations.upsert_resource(
        catalog, make_resource("r1", title="Renamed", dct_subject_sm=["Soil"])
    )
    rows = await catalog.fetch(
        f"SELECT val FROM {schema.RESOURCES_MV_TABLE} "
        "WHERE id = 'r1' AND field = 'dct_subject_sm'"
    )
    assert rows == [{"val": "Soil"}]
    search_rows = await catalog.fetch(
        f"SELECT content FROM {schema.SEARCH_INDEX_TABLE}"
    )
    assert search_rows[0]["content"].startswith("Renamed")


async def test_upsert_rejects_invalid_records(
    catalog: store.CatalogStore,
) -> None:
    """Test validation of title, access rights and resource class."""
    resource = models.Resource(id="r1", dct_title_s="", dct_accessRights_s="")
    result = await mutations.upsert_resource(catalog, resource)
    assert not result.success
    assert "dct_title_s" in result.message
    assert "gbl_resourceClass_sm" in result.message
    assert await catalog.count_rows(schema.RESOURCES_TABLE) == 0


async def test_upsert_does_not_mutate_caller_distributions(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that explicit distributions override the record's own."""
    resource = make_resource("r1")
    explicit = [models.Distribution("r1", "url", "https://x")]
    await mutations.upsert_resource(catalog, resource, explicit)
    assert resource.distributions == []
    assert await catalog.count_rows(schema.DISTRIBUTIONS_TABLE) == 1


async def test_concurrent_upserts_of_one_id(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that concurrent writers for one id leave a single record."""
    results = await asyncio.gather(
        *(
            mutations.upsert_resource(
                catalog,
                make_resource("r1", dct_subject_sm=[f"S{i}"]),
                flush=False,
            )
            for i in range(5)
        )
    )
    assert all(r.success for r in results)
    assert await catalog.count_rows(schema.RESOURCES_TABLE) == 1
    assert await catalog.count_rows(schema.RESOURCES_MV_TABLE) == 2
    assert len(catalog.record_locks) == 0


async def test_delete_cascades(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that no derived rows reference a deleted id."""
    resource = make_resource(
        "r1",
        dct_subject_sm=["Maps"],
        distributions=[models.Distribution("r1", "url", "https://x")],
    )
    await mutations.upsert_resource(catalog, resource)
    await mutations.upsert_resource(catalog, make_resource("r2"))

    result = await mutations.delete_resource(catalog, "r1")
    assert result.success
    assert result.count == 1
    for table, column in (
        (schema.RESOURCES_TABLE, "id"),
        (schema.RESOURCES_MV_TABLE, "id"),
        (schema.DISTRIBUTIONS_TABLE, "resource_id"),
        (schema.SEARCH_INDEX_TABLE, "id"),
    ):
        rows = await catalog.fetch(
            f"SELECT count(*) AS n FROM {table} WHERE {column} = 'r1'"
        )
        assert rows[0]["n"] == 0
    assert await catalog.count_rows(schema.RESOURCES_TABLE) == 1

    again = await mutations.delete_resource(catalog, "r1")
    assert again.success
    assert again.count == 0


async def test_mutations_flush_snapshot(
    catalog: store.CatalogStore,
    settings: config.Settings,
    snapshot_repo: snapshots.InMemorySnapshotRepository,
    make_resource: ResourceFactory,
) -> None:
    """Test that flush=False defers persistence and flush=True saves."""
    await mutations.upsert_resource(catalog, make_resource("r1"), flush=False)
    assert snapshot_repo.load(settings.snapshot_key) is None
    await mutations.delete_resource(catalog, "r1")
    assert snapshot_repo.load(settings.snapshot_key)


async def test_flush_failure_is_reported(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that an unpersisted mutation says so in its message."""

    async def failing_flush() -> bool:
        return False

    catalog.flush = failing_flush  # type: ignore[method-assign]
    result = await mutations.upsert_resource(catalog, make_resource("r1"))
    assert result.success
    assert result.message.endswith("(not persisted)")


async def test_upsert_thumbnail_replaces(catalog: store.CatalogStore) -> None:
    """Test that a record keeps a single cached thumbnail."""
    await mutations.upsert_thumbnail(catalog, "r1", b"one")
    await mutations.upsert_thumbnail(catalog, "r1", b"two")
    rows = await catalog.fetch(
        f"SELECT data, last_updated FROM {schema.IMAGE_SERVICE_TABLE}"
    )
    assert len(rows) == 1
    assert rows[0]["data"] == "dHdv"
    assert rows[0]["last_updated"] > 0


async def test_apply_embedding_updates_only_vector(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that an embedding write leaves the record intact."""
    await mutations.upsert_resource(catalog, make_resource("r1"))
    result = await mutations.apply_embedding(catalog, "r1", [0.5, 0.25, 1])
    assert result.success
    rows = await catalog.fetch(
        f"SELECT embedding, dct_title_s FROM {schema.RESOURCES_TABLE}"
    )
    assert rows == [{"embedding": [0.5, 0.25, 1.0], "dct_title_s": "Record r1"}]
