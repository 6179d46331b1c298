"""Request and response models for faceted search and mutations.

Field names of the faceted-search request and response are part of the
public contract and are kept verbatim (``minX``, ``yearRange``, ``from``).
"""

from __future__ import annotations

from typing import Any, Literal

import pydantic

SortDirection = Literal["asc", "desc"]
FacetValueSort = Literal["count_desc", "count_asc", "alpha_asc", "alpha_desc"]


class BBox(pydantic.BaseModel):
    """Query rectangle in the record coordinate system."""

    minX: float  # noqa: N815
    minY: float  # noqa: N815
    maxX: float  # noqa: N815
    maxY: float  # noqa: N815


class FilterCondition(pydantic.BaseModel):
    """Per-field filter. Empty lists are ignored."""

    any: list[str] = pydantic.Field(default_factory=list)
    none: list[str] = pydantic.Field(default_factory=list)
    all: list[str] = pydantic.Field(default_factory=list)
    gte: int | None = None
    lte: int | None = None

    @pydantic.field_validator("any", "none", "all", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int, float)):
            return [str(value)]
        if isinstance(value, list):
            return [str(v) for v in value if v is not None]
        return value

    def is_empty(self) -> bool:
        return not (
            self.any or self.none or self.all
            or self.gte is not None or self.lte is not None
        )


class SortSpec(pydantic.BaseModel):
    field: str
    dir: SortDirection = "asc"


class PageSpec(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(populate_by_name=True)

    size: int | None = pydantic.Field(default=None, ge=0)
    offset: int = pydantic.Field(
        default=0,
        ge=0,
        validation_alias=pydantic.AliasChoices("offset", "from"),
    )


class FacetSpec(pydantic.BaseModel):
    field: str
    limit: int | None = pydantic.Field(default=None, ge=0)


class FacetedSearchRequest(pydantic.BaseModel):
    """Declarative faceted-search request.

    Attributes:
        q: Free-text query matched case-insensitively as a substring.
        filters: Field name to filter condition.
        bbox: Spatial query rectangle.
        sort: Sort keys; only the first one is used.
        page: Page size and offset (``from`` is accepted as an alias).
        facets: Facet distributions to compute.
        yearRange: ``"min,max"`` shorthand for gte/lte on the index year.
    """

    q: str | None = None
    filters: dict[str, FilterCondition] = pydantic.Field(default_factory=dict)
    bbox: BBox | None = None
    sort: list[SortSpec] = pydantic.Field(default_factory=list)
    page: PageSpec = pydantic.Field(default_factory=PageSpec)
    facets: list[FacetSpec] = pydantic.Field(default_factory=list)
    yearRange: str | None = None  # noqa: N815

    @pydantic.field_validator("sort", mode="before")
    @classmethod
    def _coerce_sort(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, dict):
            return [value]
        return value

    @pydantic.field_validator("facets", mode="before")
    @classmethod
    def _coerce_facets(cls, value: Any) -> Any:
        if value is None:
            return []
        return [{"field": v} if isinstance(v, str) else v for v in value]


class FacetBucket(pydantic.BaseModel):
    value: str
    count: int


class FacetedSearchResponse(pydantic.BaseModel):
    results: list[dict[str, Any]] = pydantic.Field(default_factory=list)
    facets: dict[str, list[FacetBucket]] = pydantic.Field(default_factory=dict)
    total: int = 0


class NeighborsRequest(pydantic.BaseModel):
    request: FacetedSearchRequest = pydantic.Field(
        default_factory=FacetedSearchRequest
    )
    currentId: str  # noqa: N815


class Neighbors(pydantic.BaseModel):
    prevId: str | None = None  # noqa: N815
    nextId: str | None = None  # noqa: N815
    position: int = 0
    total: int = 0


class FacetValueRequest(pydantic.BaseModel):
    """Paged, searchable listing of one facet's values."""

    field: str
    request: FacetedSearchRequest = pydantic.Field(
        default_factory=FacetedSearchRequest
    )
    facetQuery: str | None = None  # noqa: N815
    sort: FacetValueSort = "count_desc"
    page: int = pydantic.Field(default=1, ge=1)
    pageSize: int = pydantic.Field(default=20, ge=1)  # noqa: N815


class FacetValueResult(pydantic.BaseModel):
    values: list[FacetBucket] = pydantic.Field(default_factory=list)
    total: int = 0


class Suggestion(pydantic.BaseModel):
    text: str
    type: Literal["place", "title", "subject", "keyword", "theme"]


class DistributionRow(pydantic.BaseModel):
    resource_id: str
    relation_key: str
    url: str
    label: str | None = None
    resource_title: str | None = None


class DistributionPage(pydantic.BaseModel):
    distributions: list[DistributionRow] = pydantic.Field(default_factory=list)
    total: int = 0


class MutationResult(pydantic.BaseModel):
    """Outcome of a mutation or import."""

    success: bool
    message: str = ""
    count: int = 0
    skipped: int = 0
