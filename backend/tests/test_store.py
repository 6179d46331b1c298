"""Tests for the DuckDB catalog store: lifecycle, flush and restore.

The store is exercised against in-memory engines and an in-memory snapshot
repository. The seed snapshot download uses an httpx mock transport.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import duckdb
import httpx
import pytest

from geocatalog.core import errors
from geocatalog.db import schema, snapshots, store
from geocatalog.services import mutations
from geocatalog.utils import locks

if TYPE_CHECKING:
    from conftest import ResourceFactory

    from geocatalog.core import config


async def test_open_is_memoized(
    settings: config.Settings,
    snapshot_repo: snapshots.InMemorySnapshotRepository,
) -> None:
    """Test that concurrent opens share a single setup."""
    catalog = store.CatalogStore(settings, snapshot_repo)
    assert not catalog.available
    results = await asyncio.gather(catalog.open(), catalog.open())
    assert results == [True, True]
    assert catalog.available
    assert await catalog.count_rows(schema.RESOURCES_TABLE) == 0
    await catalog.close()
    assert not catalog.available


async def test_unavailable_engine(
    settings: config.Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a failing engine leaves the store unavailable."""

    def broken_connect(*args: object, **kwargs: object) -> None:
        raise duckdb.IOException("disk gone")

    monkeypatch.setattr(duckdb, "connect", broken_connect)
    catalog = store.CatalogStore(
        settings, snapshots.InMemorySnapshotRepository()
    )
    assert await catalog.open() is False
    assert not catalog.available
    with pytest.raises(errors.StoreUnavailable):
        await catalog.fetch("SELECT 1")
    assert await catalog.flush() is False


async def test_transaction_rolls_back(catalog: store.CatalogStore) -> None:
    """Test that a failing callback leaves no partial writes."""

    def _write(conn: duckdb.DuckDBPyConnection) -> None:
        conn.execute(
            f"INSERT INTO {schema.SEARCH_INDEX_TABLE} VALUES ('r1', 'x')"
        )
        raise errors.CatalogError("boom")

    with pytest.raises(errors.CatalogError):
        await catalog.transaction(_write)
    assert await catalog.count_rows(schema.SEARCH_INDEX_TABLE) == 0


async def test_flush_and_restore_into_new_store(
    catalog: store.CatalogStore,
    settings: config.Settings,
    snapshot_repo: snapshots.InMemorySnapshotRepository,
    make_resource: ResourceFactory,
) -> None:
    """Test that a flushed snapshot repopulates a fresh engine at open."""
    resource = make_resource(
        "r1",
        scalars={"dcat_bbox": "ENVELOPE(-10,10,20,-20)"},
        dct_subject_sm=["Maps"],
    )
    result = await mutations.upsert_resource(catalog, resource)
    assert result.success
    assert snapshot_repo.load(settings.snapshot_key)

    fresh = store.CatalogStore(settings, snapshot_repo)
    assert await fresh.open()
    try:
        assert await fresh.count_rows(schema.RESOURCES_TABLE) == 1
        assert await fresh.count_rows(schema.RESOURCES_MV_TABLE) == 2
        rows = await fresh.fetch(
            f"SELECT bbox_minx, bbox_maxy FROM {schema.RESOURCES_TABLE}"
        )
        assert rows == [{"bbox_minx": -10.0, "bbox_maxy": 20.0}]
    finally:
        await fresh.close()


async def test_empty_flush_keeps_previous_snapshot(
    catalog: store.CatalogStore,
    settings: config.Settings,
    snapshot_repo: snapshots.InMemorySnapshotRepository,
    make_resource: ResourceFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that a zero-byte serialization never overwrites a snapshot."""
    await mutations.upsert_resource(catalog, make_resource("r1"), flush=False)
    assert await catalog.flush() is True
    saved = snapshot_repo.load(settings.snapshot_key)
    assert saved

    async def empty_snapshot() -> bytes:
        return b""

    monkeypatch.setattr(catalog, "snapshot_bytes", empty_snapshot)
    assert await catalog.flush() is False
    assert snapshot_repo.load(settings.snapshot_key) == saved


async def test_restore_invalid_payload_keeps_catalog(
    catalog: store.CatalogStore,
    make_resource: ResourceFactory,
) -> None:
    """Test that an unreadable snapshot raises and changes nothing."""
    await mutations.upsert_resource(catalog, make_resource("r1"))
    with pytest.raises(errors.TransactionFailure):
        await catalog.restore_snapshot(b"definitely not a database")
    assert await catalog.count_rows(schema.RESOURCES_TABLE) == 1


async def test_restore_replaces_contents(
    catalog: store.CatalogStore,
    settings: config.Settings,
    make_resource: ResourceFactory,
) -> None:
    """Test that restore drops records absent from the snapshot."""
    await mutations.upsert_resource(catalog, make_resource("r1"))
    payload = await catalog.snapshot_bytes()
    await mutations.upsert_resource(catalog, make_resource("r2"))
    assert await catalog.count_rows(schema.RESOURCES_TABLE) == 2

    await catalog.restore_snapshot(payload)
    rows = await catalog.fetch(f"SELECT id FROM {schema.RESOURCES_TABLE}")
    assert rows == [{"id": "r1"}]


async def test_seed_snapshot_download(
    catalog: store.CatalogStore,
    settings: config.Settings,
    make_resource: ResourceFactory,
) -> None:
    """Test that an empty repository falls back to the seed URL once."""
    await mutations.upsert_resource(catalog, make_resource("seeded"))
    payload = await catalog.snapshot_bytes()
    requested: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        return httpx.Response(200, content=payload)

    seeded_settings = settings.model_copy(
        update={"snapshot_url": "http://seed.example/records.duckdb"}
    )
    fresh = store.CatalogStore(
        seeded_settings,
        snapshots.InMemorySnapshotRepository(),
        http_transport=httpx.MockTransport(handler),
    )
    assert await fresh.open()
    try:
        rows = await fresh.fetch(f"SELECT id FROM {schema.RESOURCES_TABLE}")
        assert rows == [{"id": "seeded"}]
        assert requested == ["http://seed.example/records.duckdb"]
    finally:
        await fresh.close()


async def test_seed_download_failure_opens_empty(
    settings: config.Settings,
) -> None:
    """Test that a failing seed download still opens an empty catalog."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    fresh = store.CatalogStore(
        settings.model_copy(update={"snapshot_url": "http://seed.example/x"}),
        snapshots.InMemorySnapshotRepository(),
        http_transport=httpx.MockTransport(handler),
    )
    assert await fresh.open()
    assert await fresh.count_rows(schema.RESOURCES_TABLE) == 0
    await fresh.close()


async def test_keyed_lock_serializes_same_key() -> None:
    """Test that holders of one key run one at a time and locks are freed."""
    keyed = locks.KeyedLock()
    order: list[str] = []

    async def worker(name: str) -> None:
        async with keyed.hold("r1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0.01)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert len(keyed) == 0
