"""Shared fixtures: in-memory settings, an opened store and record builders.

Every test gets its own in-memory DuckDB engine and in-memory snapshot
repository, so nothing touches the filesystem outside ``tmp_path`` and no
database server is required.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Iterator
from typing import TYPE_CHECKING, Any

import pytest
from fastapi import testclient

from geocatalog import main
from geocatalog.core import config
from geocatalog.db import models, snapshots, store

if TYPE_CHECKING:
    import pathlib

ResourceFactory = Callable[..., models.Resource]


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> config.Settings:
    """Settings for an in-memory catalog rooted in a temp directory."""
    settings = config.Settings(
        snapshot_backend="memory",
        snapshot_dir=tmp_path / "snapshots",
        storage_dir=tmp_path / "uploads",
        embedding_dimensions=3,
        embedding_batch_size=5,
    )
    settings.ensure_directories()
    return settings


@pytest.fixture
def snapshot_repo() -> snapshots.InMemorySnapshotRepository:
    return snapshots.InMemorySnapshotRepository()


@pytest.fixture
async def catalog(
    settings: config.Settings,
    snapshot_repo: snapshots.InMemorySnapshotRepository,
) -> AsyncIterator[store.CatalogStore]:
    """Opened store over an empty in-memory engine."""
    catalog = store.CatalogStore(settings, snapshot_repo)
    assert await catalog.open()
    try:
        yield catalog
    finally:
        await catalog.close()


@pytest.fixture
def make_resource() -> ResourceFactory:
    """Build a valid Resource; keyword arguments set repeated fields."""

    def _make(
        record_id: str,
        title: str | None = None,
        scalars: dict[str, Any] | None = None,
        distributions: list[models.Distribution] | None = None,
        **repeated: list[str],
    ) -> models.Resource:
        fields = {"gbl_resourceClass_sm": ["Datasets"], **repeated}
        return models.Resource(
            id=record_id,
            dct_title_s=title or f"Record {record_id}",
            dct_accessRights_s="Public",
            scalars=dict(scalars or {}),
            repeated=fields,
            distributions=list(distributions or []),
        )

    return _make


@pytest.fixture
def client(settings: config.Settings) -> Iterator[testclient.TestClient]:
    """Test client for an application running on the test settings."""
    app = main.create_app(settings)
    with testclient.TestClient(app) as client:
        yield client
