"""Tests for the export and embedding endpoints, including degraded mode."""

from __future__ import annotations

import csv
import io
import zipfile
from typing import TYPE_CHECKING

import duckdb
import pytest
from fastapi import testclient

from geocatalog import main
from geocatalog.api import embeddings as embeddings_api
from geocatalog.services import embeddings

if TYPE_CHECKING:
    from geocatalog.core import config

CSV = (
    "ID,Title,Access Rights,Resource Class,Subject\n"
    "r1,Alpha,Public,Maps,Roads\n"
    "r2,Bravo,Public,Datasets,Rivers\n"
)


class StaticWorker:
    async def embed(
        self, job: embeddings.EmbeddingJob
    ) -> embeddings.EmbeddingResponse:
        return {"id": job["id"], "embedding": [1.0, 0.0, 0.0], "success": True}


@pytest.fixture
def loaded(client: testclient.TestClient) -> testclient.TestClient:
    response = client.post(
        "/api/import/csv", files={"file": ("records.csv", CSV, "text/csv")}
    )
    assert response.status_code == 200
    return client


def test_export_csv(loaded: testclient.TestClient) -> None:
    """Test the CSV download headers and rows."""
    response = loaded.get("/api/export/csv")
    assert response.status_code == 200
    assert response.headers["content-type"] == "text/csv; charset=utf-8"
    assert response.headers["content-disposition"] == (
        'attachment; filename="resources.csv"'
    )
    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert [row["ID"] for row in rows] == ["r1", "r2"]


def test_export_zip(loaded: testclient.TestClient) -> None:
    """Test the zip download layout."""
    response = loaded.get("/api/export/zip")
    assert response.headers["content-type"] == "application/zip"
    with zipfile.ZipFile(io.BytesIO(response.content)) as archive:
        names = set(archive.namelist())
    assert names == {
        "metadata-aardvark/Maps/r1.json",
        "metadata-aardvark/Datasets/r2.json",
        "metadata-aardvark/metadata.parquet",
    }


def test_export_filtered(loaded: testclient.TestClient) -> None:
    """Test the filtered export in both formats."""
    body = {"filters": {"dct_subject_sm": {"any": ["Rivers"]}}}
    as_csv = loaded.post(
        "/api/export/filtered", params={"format": "csv"}, json=body
    )
    assert [row["ID"] for row in csv.DictReader(io.StringIO(as_csv.text))] == [
        "r2"
    ]
    as_zip = loaded.post("/api/export/filtered", json=body)
    with zipfile.ZipFile(io.BytesIO(as_zip.content)) as archive:
        assert "metadata-aardvark/Datasets/r2.json" in archive.namelist()

    unknown = loaded.post(
        "/api/export/filtered", params={"format": "xml"}, json=body
    )
    assert unknown.status_code == 422


def test_export_distributions_csv(loaded: testclient.TestClient) -> None:
    """Test the distributions sheet download."""
    response = loaded.get("/api/export/distributions.csv")
    assert response.status_code == 200
    assert response.text == "resource_id,relation_key,url,label\n"


def test_ensure_embeddings(loaded: testclient.TestClient) -> None:
    """Test the embedding trigger with a stubbed worker."""
    app = loaded.app
    app.dependency_overrides[embeddings_api._get_worker] = StaticWorker
    try:
        response = loaded.post(
            "/api/embeddings/ensure", params={"priority_id": "r2"}
        )
        again = loaded.post("/api/embeddings/ensure")
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    assert response.json()["message"] == "Embedded 2 records."
    assert again.json()["message"] == "Nothing to embed"


def test_unavailable_store(
    settings: config.Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test that reads degrade while exports and embeddings answer 503."""

    def broken_connect(*args: object, **kwargs: object) -> None:
        raise duckdb.IOException("disk gone")

    monkeypatch.setattr(duckdb, "connect", broken_connect)
    app = main.create_app(settings)
    app.dependency_overrides[embeddings_api._get_worker] = StaticWorker
    try:
        with testclient.TestClient(app) as client:
            search = client.post("/api/resources/search", json={"q": "x"})
            assert search.status_code == 200
            assert search.json() == {"results": [], "facets": {}, "total": 0}
            assert client.get("/api/resources/count").json() == {"count": 0}
            assert client.get("/api/export/csv").status_code == 503
            assert client.get("/api/export/snapshot").status_code == 503
            ensure = client.post("/api/embeddings/ensure")
            assert ensure.status_code == 503
            assert ensure.json() == {"detail": "Store unavailable"}
            assert client.get("/health").json() == {"status": "ok"}
    finally:
        app.dependency_overrides.clear()
