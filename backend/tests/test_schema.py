"""Tests for the schema registry and the additive schema bootstrap."""

from __future__ import annotations

import duckdb

from geocatalog.db import schema


def test_field_registry() -> None:
    """Test scalar/repeated classification and alias tables."""
    assert schema.is_scalar("dct_title_s")
    assert not schema.is_scalar("dct_references_s")
    assert schema.is_repeated("dct_subject_sm")
    assert schema.is_repeated(schema.YEAR_FIELD)
    assert not schema.is_repeated("dct_title_s")
    assert schema.CSV_HEADER_MAPPING["Subject"] == "dct_subject_sm"
    assert schema.FIELD_TO_CSV_HEADER["dct_title_s"] == "Title"
    assert schema.URI_TO_RELATION_KEY["http://schema.org/downloadUrl"] == (
        "download"
    )


def test_quote_ident() -> None:
    """Test identifier quoting."""
    assert schema.quote_ident("dct_title_s") == '"dct_title_s"'
    assert schema.quote_ident('a"b') == '"a""b"'


def test_ensure_schema_creates_tables() -> None:
    """Test that all five tables are created with their columns."""
    conn = duckdb.connect(":memory:")
    schema.ensure_schema(conn)
    for table in schema.ALL_TABLES:
        assert schema.existing_columns(conn, table)
    columns = schema.existing_columns(conn, schema.RESOURCES_TABLE)
    assert "embedding" in columns
    assert "bbox_minx" in columns
    assert "dct_references_s" not in columns
    assert schema.existing_columns(conn, schema.RESOURCES_MV_TABLE) == [
        "id", "field", "val", "ord",
    ]
    conn.close()


def test_ensure_schema_is_idempotent_and_additive() -> None:
    """Test that older layouts gain missing columns and keep their rows."""
    conn = duckdb.connect(":memory:")
    conn.execute("CREATE TABLE resources (id VARCHAR, dct_title_s VARCHAR)")
    conn.execute("INSERT INTO resources VALUES ('r1', 'Old')")
    conn.execute(
        "CREATE TABLE resources_mv (id VARCHAR, field VARCHAR, val VARCHAR)"
    )

    schema.ensure_schema(conn)
    schema.ensure_schema(conn)

    columns = schema.existing_columns(conn, schema.RESOURCES_TABLE)
    assert columns[:2] == ["id", "dct_title_s"]
    assert "embedding" in columns
    assert "ord" in schema.existing_columns(conn, schema.RESOURCES_MV_TABLE)
    row = conn.execute("SELECT id, dct_title_s FROM resources").fetchone()
    assert row == ("r1", "Old")
    conn.close()
