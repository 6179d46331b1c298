"""Tests for the record search, retrieval and editing endpoints.

Requests go through the full application with an in-memory catalog; records
are created through the PUT endpoint the editor uses.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from fastapi import testclient

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def _document(title: str, **fields: Any) -> dict[str, Any]:
    return {
        "dct_title_s": title,
        "dct_accessRights_s": "Public",
        "gbl_resourceClass_sm": ["Maps"],
        "gbl_mdVersion_s": "Aardvark",
        **fields,
    }


@pytest.fixture
def populated(client: testclient.TestClient) -> testclient.TestClient:
    """Client over a catalog holding three records."""
    documents = {
        "r1": _document(
            "Alpha roads",
            dct_subject_sm=["Roads", "Maps"],
            dct_spatial_sm=["Zagreb"],
            dcat_bbox="ENVELOPE(-10,10,20,-20)",
            dct_references_s=json.dumps(
                {"http://schema.org/downloadUrl": "https://x/r1.zip"}
            ),
        ),
        "r2": _document("Bravo rivers", dct_subject_sm=["Maps"]),
        "r3": _document("Charlie census", dct_subject_sm=["Census"]),
    }
    for record_id, document in documents.items():
        response = client.put(f"/api/resources/{record_id}", json=document)
        assert response.status_code == 200
    return client


def test_put_and_get_resource(populated: testclient.TestClient) -> None:
    """Test that a stored record comes back as the same document."""
    response = populated.get("/api/resources/r1")
    assert response.status_code == 200
    document = response.json()
    assert document["id"] == "r1"
    assert document["dct_subject_sm"] == ["Roads", "Maps"]
    assert json.loads(document["dct_references_s"]) == {
        "http://schema.org/downloadUrl": "https://x/r1.zip"
    }


def test_put_uses_path_id(client: testclient.TestClient) -> None:
    """Test that the path id overrides an id in the body."""
    response = client.put(
        "/api/resources/path-id", json={**_document("T"), "id": "body-id"}
    )
    assert response.json()["message"] == "Saved path-id"
    assert client.get("/api/resources/path-id").status_code == 200
    assert client.get("/api/resources/body-id").status_code == 404


def test_put_rejects_incomplete_document(client: testclient.TestClient) -> None:
    """Test that a document without required fields answers 422."""
    response = client.put("/api/resources/r1", json={"dct_title_s": "T"})
    assert response.status_code == 422
    assert "dct_accessRights_s" in response.json()["detail"]


def test_get_missing_resource(client: testclient.TestClient) -> None:
    """Test 404 for an unknown record."""
    response = client.get("/api/resources/nope")
    assert response.status_code == 404
    assert response.json() == {"detail": "Resource not found"}


def test_delete_resource_is_idempotent(
    populated: testclient.TestClient,
) -> None:
    """Test deleting a record twice."""
    first = populated.delete("/api/resources/r1")
    second = populated.delete("/api/resources/r1")
    assert first.json()["count"] == 1
    assert second.status_code == 200
    assert second.json()["count"] == 0
    assert populated.get("/api/resources/r1").status_code == 404
    assert populated.get("/api/resources/count").json() == {"count": 2}


def test_search_endpoint(populated: testclient.TestClient) -> None:
    """Test filters and facets through the search endpoint."""
    response = populated.post(
        "/api/resources/search",
        json={
            "filters": {"dct_subject_sm": {"any": ["Maps"]}},
            "facets": ["dct_subject_sm"],
        },
    )
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [doc["id"] for doc in body["results"]] == ["r1", "r2"]
    buckets = {b["value"]: b["count"] for b in body["facets"]["dct_subject_sm"]}
    assert buckets == {"Maps": 2, "Roads": 1, "Census": 1}


def test_search_rejects_malformed_request(
    client: testclient.TestClient,
) -> None:
    """Test request validation on the search body."""
    response = client.post(
        "/api/resources/search", json={"bbox": {"minX": "west"}}
    )
    assert response.status_code == 422


def test_neighbors_and_facet_values(populated: testclient.TestClient) -> None:
    """Test the result-navigation and facet-value endpoints."""
    neighbors = populated.post(
        "/api/resources/search/neighbors", json={"currentId": "r2"}
    ).json()
    assert neighbors == {
        "prevId": "r1", "nextId": "r3", "position": 2, "total": 3,
    }

    values = populated.post(
        "/api/resources/facets/values",
        json={"field": "dct_subject_sm", "facetQuery": "ma"},
    ).json()
    assert values == {"values": [{"value": "Maps", "count": 2}], "total": 1}


def test_suggest_and_values(populated: testclient.TestClient) -> None:
    """Test autocomplete and distinct value listing."""
    suggestions = populated.get(
        "/api/resources/suggest", params={"q": "zag"}
    ).json()
    assert suggestions[0] == {"text": "Zagreb", "type": "place"}

    values = populated.get("/api/resources/values/dct_subject_sm").json()
    assert values == ["Census", "Maps", "Roads"]


def test_distributions_endpoints(populated: testclient.TestClient) -> None:
    """Test per-record and catalog-wide distribution listings."""
    own = populated.get("/api/resources/r1/distributions").json()
    assert own == [
        {
            "resource_id": "r1",
            "relation_key": "download",
            "url": "https://x/r1.zip",
            "label": None,
        }
    ]
    page = populated.get(
        "/api/distributions", params={"keyword": "alpha"}
    ).json()
    assert page["total"] == 1
    assert page["distributions"][0]["resource_title"] == "Alpha roads"


def test_similar_resources(populated: testclient.TestClient) -> None:
    """Test that a shared subject outranks a shared resource class."""
    similar = populated.get("/api/resources/r2/similar").json()
    assert [doc["id"] for doc in similar] == ["r1", "r3"]


def test_thumbnail_round_trip(populated: testclient.TestClient) -> None:
    """Test uploading and serving a cached thumbnail."""
    assert populated.get("/api/resources/r1/thumbnail").status_code == 404
    upload = populated.put(
        "/api/resources/r1/thumbnail",
        files={"file": ("thumb.png", PNG, "image/png")},
    )
    assert upload.status_code == 200
    response = populated.get("/api/resources/r1/thumbnail")
    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content == PNG
