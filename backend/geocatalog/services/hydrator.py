"""Reassemble full records from their relational rows.

A record is spread over four tables: the wide scalar row, its facet-index
rows, its distributions and an optional cached thumbnail. Hydration issues
the four lookups concurrently and joins them in memory by id, keeping the
order of the requested ids.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from geocatalog.core import errors
from geocatalog.db import codec, models, schema

if TYPE_CHECKING:
    from geocatalog.db import store as db_store

logger = logging.getLogger(__name__)


def _in_list(ids: Sequence[str]) -> str:
    return ", ".join("?" for _ in ids)


def decode_thumbnail(record_id: str, data: Any) -> bytes | None:
    """Decode a base64 asset-cache entry; None (and a warning) if invalid."""
    if not data:
        return None
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Malformed thumbnail cache for %s: %s", record_id, exc)
        return None


async def fetch_resources_by_ids(
    store: db_store.CatalogStore,
    ids: Sequence[str],
) -> list[models.Resource]:
    """Hydrate records for the given ids.

    Args:
        store: Open catalog store.
        ids: Record ids in the desired output order.

    Returns:
        Records in the order of ``ids``; ids without a stored row are
        dropped.
    """
    unique_ids = list(dict.fromkeys(ids))
    if not unique_ids:
        return []
    marks = _in_list(unique_ids)

    scalar_rows, mv_rows, dist_rows, image_rows = await asyncio.gather(
        store.fetch(
            f"SELECT * EXCLUDE (embedding) FROM {schema.RESOURCES_TABLE} "
            f"WHERE id IN ({marks})",
            unique_ids,
        ),
        store.fetch(
            f"SELECT id, field, val FROM {schema.RESOURCES_MV_TABLE} "
            f"WHERE id IN ({marks}) ORDER BY id, field, ord NULLS LAST",
            unique_ids,
        ),
        store.fetch(
            f"SELECT resource_id, relation_key, url, label "
            f"FROM {schema.DISTRIBUTIONS_TABLE} "
            f"WHERE resource_id IN ({marks}) ORDER BY rowid",
            unique_ids,
        ),
        store.fetch(
            f"SELECT id, data FROM {schema.IMAGE_SERVICE_TABLE} "
            f"WHERE id IN ({marks})",
            unique_ids,
        ),
    )

    repeated: dict[str, dict[str, list[str]]] = {}
    for row in mv_rows:
        fields = repeated.setdefault(row["id"], {})
        fields.setdefault(row["field"], []).append(row["val"])

    distributions: dict[str, list[models.Distribution]] = {}
    for row in dist_rows:
        distributions.setdefault(row["resource_id"], []).append(
            models.Distribution(
                resource_id=row["resource_id"],
                relation_key=row["relation_key"],
                url=row["url"],
                label=row["label"],
            )
        )

    thumbnails = {row["id"]: row["data"] for row in image_rows}

    by_id: dict[str, models.Resource] = {}
    for row in scalar_rows:
        record_id = row["id"]
        merged = {
            field: value
            for field, value in row.items()
            if not schema.is_repeated(field)
        }
        merged.update(repeated.get(record_id, {}))
        try:
            resource = codec.from_row(
                merged, distributions.get(record_id, [])
            )
        except errors.ValidationError as exc:
            logger.warning("Skipping unreadable row %s: %s", record_id, exc)
            continue
        resource.thumbnail = decode_thumbnail(
            record_id, thumbnails.get(record_id)
        )
        by_id[record_id] = resource

    return [by_id[i] for i in unique_ids if i in by_id]
