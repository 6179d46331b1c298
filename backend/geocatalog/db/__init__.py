"""Catalog storage: schema registry, record codec, engine and snapshots.

Submodules:
    - schema: Field registry, table names and DDL bootstrap.
    - models: Resource and Distribution dataclasses.
    - codec: Conversions between records, flat rows and JSON documents.
    - store: The DuckDB-backed CatalogStore.
    - snapshots: Repositories persisting flushed snapshot blobs.

Example:
    Open a store backed by an in-memory snapshot repository:
        >>> from geocatalog.db import snapshots, store
        >>> catalog = store.CatalogStore(
        ...     settings, snapshots.InMemorySnapshotRepository()
        ... )
"""
