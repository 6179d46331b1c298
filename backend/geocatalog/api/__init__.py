"""API router subpackage for the catalog backend.

Each module exposes its own APIRouter for composition in the application's
main FastAPI instance.

Submodules:
    - resources: Faceted search, autocomplete, per-record CRUD, thumbnails
      and the catalog-wide distributions listing.
    - imports: CSV, JSON and snapshot uploads.
    - exports: CSV, zip, Parquet and snapshot downloads.
    - embeddings: Triggers embedding generation for pending records.
    - dependencies: Store and settings dependencies, upload handling.
"""
