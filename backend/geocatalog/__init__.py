"""Geospatial resource catalog backend.

This package stores OpenGeoMetadata Aardvark records in an embedded DuckDB
database and serves them over a FastAPI application: faceted search with
spatial ranking, record editing, bulk CSV/JSON import, CSV/zip/Parquet
export, snapshot persistence and embedding generation through an external
worker.

- Records are kept in a wide table plus a per-element facet index, a
  distributions table and a search-text table, all rebuilt on every upsert
- The database is flushed to a snapshot blob (file, PostgreSQL or memory)
  after every mutation batch and restored from it at startup

See module docstrings for details on architecture and usage.
"""
