"""Shared FastAPI dependencies and helpers for the catalog routers.

The catalog store lives on ``app.state`` and is opened lazily on first
use; routers receive it through ``get_store``. Uploads are spooled to the
configured storage directory with a size limit before their bytes are
handed to the import pipeline.
"""

from __future__ import annotations

import pathlib
import tempfile

import fastapi

from geocatalog.core import config
from geocatalog.db import store as db_store
from geocatalog.services.search_models import MutationResult

CHUNK_SIZE = 1024 * 1024


def get_app_settings(request: fastapi.Request) -> config.Settings:
    """Settings the application was created with."""
    return request.app.state.settings


async def get_store(request: fastapi.Request) -> db_store.CatalogStore:
    """Resolve the application's catalog store, opening it once.

    Args:
        request: Incoming request carrying the application state.

    Returns:
        The shared CatalogStore. Opening failures are not raised here;
        reads degrade and mutations report them.
    """
    store: db_store.CatalogStore = request.app.state.store
    await store.open()
    return store


def read_upload(
    file: fastapi.UploadFile,
    storage_dir: pathlib.Path,
    max_size: int,
) -> bytes:
    """Spool an uploaded file to disk with size validation and return it.

    Args:
        file: FastAPI UploadFile object containing the file data.
        storage_dir: Directory receiving the temporary copy.
        max_size: Maximum allowed file size in bytes.

    Returns:
        The uploaded bytes.

    Raises:
        HTTPException: If the file exceeds the maximum size limit (413).
    """
    storage_dir.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryFile(dir=storage_dir) as tmp:
        size = 0
        for chunk in iter(lambda: file.file.read(CHUNK_SIZE), b""):
            size += len(chunk)
            if size > max_size:
                raise fastapi.HTTPException(
                    status_code=413,
                    detail="Upload too large",
                )

            tmp.write(chunk)

        tmp.seek(0)
        return tmp.read()


def raise_for_result(
    result: MutationResult,
    status_code: int = 400,
) -> MutationResult:
    """Turn an unsuccessful mutation into an HTTP error."""
    if not result.success:
        raise fastapi.HTTPException(
            status_code=status_code,
            detail=result.message,
        )

    return result
