"""Record codec: conversions between nested documents and relational rows.

A record travels through three shapes:

- the nested JSON document (as imported, exported and served by the API),
- the flat row used for CSV, where repeated fields are ``|``-joined,
- the columnar row used for Parquet, where repeated fields stay lists.

The references map (``dct_references_s``) is never stored in the wide row;
it is exploded into Distribution rows and rebuilt on the way out.

Example:
    Round-trip a record through the flat row shape:
        >>> from geocatalog.db import codec
        >>> row = codec.to_flat_row(resource)
        >>> row["dct_subject_sm"]
        'History|Maps'
        >>> codec.from_row(row, resource.distributions).id
        'r1'
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from geocatalog.core import errors
from geocatalog.db import models, schema

logger = logging.getLogger(__name__)

PIPE = "|"
TRUE_VALUES = frozenset({"1", "true", "yes", "y"})


def clean_values(values: Iterable[Any]) -> list[str]:
    """Stringify, trim and drop empty elements, keeping order."""
    cleaned = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            cleaned.append(text)
    return cleaned


def pipe_join(values: Iterable[Any] | None) -> str:
    """Join a repeated field for the flat row.

    Elements are trimmed, empties dropped, duplicates removed and the
    remainder sorted, so element order and repeats are not preserved.
    """
    if values is None:
        return ""
    if isinstance(values, str):
        values = [values]
    return PIPE.join(sorted(set(clean_values(values))))


def pipe_split(value: Any) -> list[str]:
    """Split a stored repeated value back into a list.

    Native lists are accepted as-is (cleaned), a string is split on ``|``,
    and any other scalar becomes a one-element list.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return clean_values(value)
    if isinstance(value, str):
        return clean_values(value.split(PIPE))
    return clean_values([value])


def parse_bool(value: Any) -> bool:
    """Parse a boolean case-insensitively from common truthy spellings."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


def format_scalar(field: str, value: Any) -> str | None:
    """Render a scalar for storage; booleans become "true"/"false"."""
    if value is None:
        return None
    if field in schema.BOOLEAN_FIELDS:
        if isinstance(value, str) and not value.strip():
            return None
        return "true" if parse_bool(value) else "false"
    return str(value)


def _scalar_items(resource: models.Resource) -> dict[str, str | None]:
    row: dict[str, str | None] = {}
    for field in schema.STORED_SCALAR_FIELDS:
        row[field] = format_scalar(field, resource.get(field))
    row["gbl_mdVersion_s"] = schema.MD_VERSION
    return row


def to_flat_row(resource: models.Resource) -> dict[str, str | None]:
    """Flatten a record into a row of strings.

    Args:
        resource: Record to flatten.

    Returns:
        Mapping of every stored scalar and every repeated field; repeated
        fields are normalized with pipe_join.
    """
    row = _scalar_items(resource)
    for field in schema.REPEATABLE_STRING_FIELDS:
        row[field] = pipe_join(resource.repeated.get(field))
    return row


def to_columnar_row(resource: models.Resource) -> dict[str, Any]:
    """Flatten a record keeping repeated fields as native lists."""
    row: dict[str, Any] = _scalar_items(resource)
    for field in schema.REPEATABLE_STRING_FIELDS:
        row[field] = clean_values(resource.repeated.get(field) or [])
    return row


def _load_extra(raw: Any) -> dict[str, Any]:
    if not raw:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        loaded = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unreadable extra attributes")
        return {}
    return loaded if isinstance(loaded, dict) else {}


def from_row(
    row: Mapping[str, Any],
    distributions: Sequence[models.Distribution] = (),
    legacy_references: bool = False,
) -> models.Resource:
    """Rebuild a record from a flat or columnar row.

    Args:
        row: Row mapping keyed by field name. Repeated fields may be
            ``|``-joined strings or native lists. An ``extra_json`` column
            is decoded into the extra bag.
        distributions: Distribution rows owned by the record.
        legacy_references: Collapse repeated relation keys to a single
            URL per key (last write wins) and drop labels.

    Returns:
        The reconstructed Resource.

    Raises:
        MissingRequiredField: If the row has no id.
    """
    record_id = row.get("id")
    if record_id is None or str(record_id) == "":
        raise errors.MissingRequiredField(["id"])

    resource = models.Resource(
        id=str(record_id),
        dct_title_s=str(row.get("dct_title_s") or ""),
        dct_accessRights_s=str(row.get("dct_accessRights_s") or ""),
    )
    for field in schema.STORED_SCALAR_FIELDS:
        if field in ("id", "dct_title_s", "dct_accessRights_s",
                     "gbl_mdVersion_s"):
            continue
        value = row.get(field)
        if value is None or value == "":
            continue
        if field in schema.BOOLEAN_FIELDS:
            resource.scalars[field] = parse_bool(value)
        else:
            resource.scalars[field] = value
    for field in schema.REPEATABLE_STRING_FIELDS:
        values = pipe_split(row.get(field))
        if values:
            resource.repeated[field] = values

    resource.extra = _load_extra(row.get("extra_json"))
    dists = list(distributions)
    if legacy_references:
        dists = collapse_distributions(dists)
    resource.distributions = dists
    return resource


def collapse_distributions(
    distributions: Iterable[models.Distribution],
) -> list[models.Distribution]:
    """Keep one unlabeled URL per relation key, the last one seen."""
    collapsed: dict[str, models.Distribution] = {}
    for dist in distributions:
        collapsed[dist.relation_key] = models.Distribution(
            dist.resource_id, dist.relation_key, dist.url
        )
    return list(collapsed.values())


def legacy_references_map(
    distributions: Iterable[models.Distribution],
) -> dict[str, str]:
    """Relation URI -> single URL mapping, last write wins."""
    return {
        schema.REFERENCE_URI_MAPPING.get(d.relation_key, d.relation_key): d.url
        for d in distributions
    }


def _relation_key(reference: str) -> str:
    return schema.URI_TO_RELATION_KEY.get(reference, reference)


def parse_references(references_json: Any) -> dict[str, Any]:
    """Decode a references JSON string into a mapping.

    Raises:
        ParseError: If the value is not a JSON object.
    """
    if isinstance(references_json, Mapping):
        return dict(references_json)
    try:
        refs = json.loads(references_json)
    except (TypeError, ValueError) as exc:
        raise errors.ParseError(f"Malformed references JSON: {exc}") from exc
    if not isinstance(refs, dict):
        raise errors.ParseError("References JSON must be an object")
    return refs


def extract_distributions(
    references_json: Any,
    resource_id: str,
) -> list[models.Distribution]:
    """Explode a references map into Distribution rows.

    Each value may be a bare URL, an array of bare URLs or an array of
    ``{url, label}`` objects. Known reference URIs map to short relation
    keys; unknown keys are kept verbatim. Objects without a ``url`` are kept
    as their JSON text.

    Args:
        references_json: JSON string (or already decoded mapping).
        resource_id: Identifier of the owning record.

    Returns:
        Distribution rows in document order; empty on malformed input.
    """
    if not references_json:
        return []
    try:
        refs = parse_references(references_json)
    except errors.ParseError as exc:
        logger.warning("Ignoring references for %s: %s", resource_id, exc)
        return []

    distributions = []
    for reference, value in refs.items():
        key = _relation_key(str(reference))
        items = value if isinstance(value, list) else [value]
        for item in items:
            label = None
            if isinstance(item, dict):
                if "url" in item:
                    url = str(item["url"])
                    if item.get("label") is not None:
                        label = str(item["label"])
                else:
                    url = json.dumps(item)
            elif item is None:
                continue
            else:
                url = str(item)
            if url:
                distributions.append(
                    models.Distribution(resource_id, key, url, label)
                )
    return distributions


def build_references_json(
    distributions: Iterable[models.Distribution],
) -> str | None:
    """Fold Distribution rows back into a references JSON string.

    A key with a single unlabeled URL maps to a bare string, several
    unlabeled URLs to an array of strings, and any labeled entry turns the
    key into an array of ``{url, label}`` objects.

    Returns:
        JSON text with sorted keys, or None when there are no distributions.
    """
    grouped: dict[str, list[models.Distribution]] = {}
    for dist in distributions:
        reference = schema.REFERENCE_URI_MAPPING.get(
            dist.relation_key, dist.relation_key
        )
        grouped.setdefault(reference, []).append(dist)
    if not grouped:
        return None

    refs: dict[str, Any] = {}
    for reference, dists in grouped.items():
        if any(d.label for d in dists):
            refs[reference] = [
                {"url": d.url, "label": d.label} if d.label else {"url": d.url}
                for d in dists
            ]
        elif len(dists) == 1:
            refs[reference] = dists[0].url
        else:
            refs[reference] = [d.url for d in dists]
    return json.dumps(refs, sort_keys=True)


def _is_missing(value: Any) -> bool:
    return value is None or value == "" or value == []


def resource_from_json(raw: Mapping[str, Any]) -> models.Resource:
    """Validate a nested JSON document and partition it into a Resource.

    The metadata version is normalized to "Aardvark". Known scalars populate
    ``scalars``; registered repeated fields populate ``repeated`` (a bare
    value becomes a one-element list); ``dct_references_s`` is parsed into
    distributions; everything else lands in ``extra``.

    Args:
        raw: Document as decoded from JSON.

    Returns:
        The validated Resource.

    Raises:
        MissingRequiredField: If any required field is absent or empty.
    """
    data = dict(raw)
    data["gbl_mdVersion_s"] = schema.MD_VERSION
    missing = [f for f in schema.REQUIRED_FIELDS if _is_missing(data.get(f))]
    if missing:
        raise errors.MissingRequiredField(missing)

    resource = models.Resource(
        id=str(data["id"]),
        dct_title_s=str(data["dct_title_s"]),
        dct_accessRights_s=str(data["dct_accessRights_s"]),
    )
    for key, value in data.items():
        if key in ("id", "dct_title_s", "dct_accessRights_s",
                   "gbl_mdVersion_s"):
            continue
        if key == schema.REFERENCES_FIELD:
            resource.distributions = extract_distributions(value, resource.id)
        elif schema.is_repeated(key):
            resource.repeated[key] = pipe_split(value)
        elif schema.is_scalar(key):
            if value is not None:
                resource.scalars[key] = value
        else:
            resource.extra[key] = value
    if not resource.gbl_resourceClass_sm:
        raise errors.MissingRequiredField(["gbl_resourceClass_sm"])
    return resource


def resource_to_json(
    resource: models.Resource,
    legacy_references: bool = False,
) -> dict[str, Any]:
    """Emit a Resource as a nested JSON document.

    Args:
        resource: Record to serialize.
        legacy_references: Emit one URL per relation key (last write wins).

    Returns:
        Document with required fields first, then scalars, repeated fields,
        the references JSON string (when there are distributions) and the
        extra bag.
    """
    doc: dict[str, Any] = {
        "id": resource.id,
        "dct_title_s": resource.dct_title_s,
        "dct_accessRights_s": resource.dct_accessRights_s,
        "gbl_resourceClass_sm": list(resource.gbl_resourceClass_sm),
        "gbl_mdVersion_s": schema.MD_VERSION,
    }
    for field in schema.STORED_SCALAR_FIELDS:
        value = resource.scalars.get(field)
        if value is not None and value != "":
            doc[field] = value
    for field in schema.REPEATABLE_STRING_FIELDS:
        values = resource.repeated.get(field)
        if values:
            doc[field] = list(values)

    if legacy_references:
        legacy = legacy_references_map(resource.distributions)
        references = json.dumps(legacy, sort_keys=True) if legacy else None
    else:
        references = build_references_json(resource.distributions)
    if references is not None:
        doc[schema.REFERENCES_FIELD] = references

    for key, value in resource.extra.items():
        doc.setdefault(key, value)
    return doc


def build_search_text(resource: models.Resource) -> str:
    """Concatenate title, description, subjects and keywords on one line."""
    parts = [resource.dct_title_s or ""]
    for field in ("dct_description_sm", "dct_subject_sm", "dcat_keyword_sm"):
        parts.extend(resource.repeated.get(field) or [])
    return " ".join(parts).replace("\r", " ").replace("\n", " ")
