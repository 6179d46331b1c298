"""Data models for catalog records and their distributions.

This module defines the core data structures used throughout the
application to represent Aardvark resource records. A Resource carries the
required scalars as attributes, optional scalars and repeated string fields
in dictionaries keyed by field name, an ``extra`` bag preserving unmodeled
attributes, its distributions, and an optional cached thumbnail.

Conversion from and to JSON documents and relational rows lives in
geocatalog.db.codec.

Example:
    Creating a Resource by hand:
        >>> from geocatalog.db.models import Distribution, Resource
        >>> resource = Resource(
        ...     id="r1",
        ...     dct_title_s="Roads 1990",
        ...     dct_accessRights_s="Public",
        ...     repeated={
        ...         "gbl_resourceClass_sm": ["Datasets"],
        ...         "dct_subject_sm": ["Transportation"],
        ...     },
        ...     distributions=[
        ...         Distribution("r1", "download", "https://x/roads.zip"),
        ...     ],
        ... )
        >>> resource.gbl_resourceClass_sm
        ['Datasets']
"""

from __future__ import annotations

import dataclasses
from typing import Any

from geocatalog.db import schema

_REQUIRED_ATTRIBUTES = frozenset(
    {"id", "dct_title_s", "dct_accessRights_s", "gbl_mdVersion_s"}
)


@dataclasses.dataclass
class Distribution:
    """A named link associated with a record.

    Attributes:
        resource_id: Identifier of the owning record.
        relation_key: Short relation key (e.g. "download") or a verbatim
            unknown reference key.
        url: Target URL.
        label: Optional human-readable label.
    """

    resource_id: str
    relation_key: str
    url: str
    label: str | None = None


@dataclasses.dataclass
class Resource:
    """One cataloged geospatial resource conforming to the Aardvark schema.

    Required scalars are plain attributes. Optional scalars live in
    ``scalars`` and repeated string fields in ``repeated``; both are keyed by
    their schema field name. The required ``gbl_resourceClass_sm`` list is
    kept in ``repeated`` like every other list field.

    Attributes:
        id: Unique record identifier.
        dct_title_s: Title.
        dct_accessRights_s: Access rights (e.g. "Public").
        gbl_mdVersion_s: Metadata version, always "Aardvark".
        scalars: Optional scalar fields.
        repeated: Repeated string fields as ordered lists.
        extra: Unmodeled attributes preserved for round-trip fidelity.
        distributions: Links parsed from the references map.
        thumbnail: Cached thumbnail bytes, if any.
    """

    id: str
    dct_title_s: str
    dct_accessRights_s: str
    gbl_mdVersion_s: str = schema.MD_VERSION
    scalars: dict[str, Any] = dataclasses.field(default_factory=dict)
    repeated: dict[str, list[str]] = dataclasses.field(default_factory=dict)
    extra: dict[str, Any] = dataclasses.field(default_factory=dict)
    distributions: list[Distribution] = dataclasses.field(
        default_factory=list
    )
    thumbnail: bytes | None = None

    @property
    def gbl_resourceClass_sm(self) -> list[str]:  # noqa: N802
        return self.repeated.get("gbl_resourceClass_sm", [])

    def get(self, field: str, default: Any = None) -> Any:
        """Look up any field by its schema name."""
        if field in _REQUIRED_ATTRIBUTES:
            return getattr(self, field)
        if schema.is_repeated(field):
            return self.repeated.get(field, default)
        if field in self.scalars:
            return self.scalars[field]
        return self.extra.get(field, default)
