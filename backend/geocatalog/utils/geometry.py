"""Bounding envelope parsing and spatial SQL fragments.

Records describe their footprint either as an ``ENVELOPE(W,E,N,S)`` string
(the Solr/Aardvark convention) or as ``minX,minY,maxX,maxY``. Both are
normalized to an Envelope stored in the four ``bbox_*`` columns of the wide
table; anything unparsable leaves the envelope empty and the record simply
never matches a spatial filter.
"""

from __future__ import annotations

import logging
import re
from typing import Any, NamedTuple

from geocatalog.core import errors

logger = logging.getLogger(__name__)

_ENVELOPE_RE = re.compile(r"^\s*ENVELOPE\s*\((.*)\)\s*$", re.IGNORECASE)


class Envelope(NamedTuple):
    """Axis-aligned rectangle with min/max ordered bounds."""

    min_x: float
    min_y: float
    max_x: float
    max_y: float


def _numbers(text: str) -> list[float]:
    parts = [p.strip() for p in text.split(",")]
    if len(parts) != 4:
        raise errors.ParseError(f"Expected four coordinates, got {text!r}")
    try:
        return [float(p) for p in parts]
    except ValueError as exc:
        raise errors.ParseError(f"Invalid coordinate in {text!r}") from exc


def parse_envelope(value: str) -> Envelope:
    """Parse an envelope string.

    Args:
        value: ``ENVELOPE(west,east,north,south)`` or ``minX,minY,maxX,maxY``.

    Returns:
        Envelope with min/max normalized.

    Raises:
        ParseError: If the text is neither form.
    """
    match = _ENVELOPE_RE.match(value)
    if match:
        west, east, north, south = _numbers(match.group(1))
        min_x, max_x, min_y, max_y = west, east, south, north
    else:
        min_x, min_y, max_x, max_y = _numbers(value)
    return Envelope(
        min(min_x, max_x),
        min(min_y, max_y),
        max(min_x, max_x),
        max(min_y, max_y),
    )


def parse_bbox(bbox: Any, geometry: Any = None) -> Envelope | None:
    """Best-effort envelope for a record.

    Tries ``dcat_bbox`` first and falls back to ``locn_geometry`` when it
    holds an envelope. Parse failures are logged at debug level.

    Returns:
        The envelope, or None when neither value parses.
    """
    for candidate in (bbox, geometry):
        if not isinstance(candidate, str) or not candidate.strip():
            continue
        try:
            return parse_envelope(candidate)
        except errors.ParseError as exc:
            logger.debug("Unparsable envelope %r: %s", candidate, exc)
    return None


def envelope_params(envelope: Envelope | None) -> list[float | None]:
    """Column values for bbox_minx, bbox_miny, bbox_maxx, bbox_maxy."""
    if envelope is None:
        return [None, None, None, None]
    return [envelope.min_x, envelope.min_y, envelope.max_x, envelope.max_y]


def intersects_sql(alias: str = "r") -> str:
    """Predicate matching envelopes that intersect the bound query box.

    Parameters are bound in the order of intersects_params().
    """
    return (
        f"({alias}.bbox_minx <= ? AND {alias}.bbox_maxx >= ? "
        f"AND {alias}.bbox_miny <= ? AND {alias}.bbox_maxy >= ?)"
    )


def intersects_params(query: Envelope) -> list[float]:
    return [query.max_x, query.min_x, query.max_y, query.min_y]


def overlap_score_sql(alias: str = "r") -> str:
    """Intersection-over-union of the record envelope and the query box.

    Parameters are bound in the order of overlap_score_params().
    """
    ix = (
        f"GREATEST(0, LEAST({alias}.bbox_maxx, ?) - "
        f"GREATEST({alias}.bbox_minx, ?))"
    )
    iy = (
        f"GREATEST(0, LEAST({alias}.bbox_maxy, ?) - "
        f"GREATEST({alias}.bbox_miny, ?))"
    )
    record_area = (
        f"(({alias}.bbox_maxx - {alias}.bbox_minx) * "
        f"({alias}.bbox_maxy - {alias}.bbox_miny))"
    )
    return (
        f"(({ix}) * ({iy})) / NULLIF({record_area} + ? - "
        f"(({ix}) * ({iy})), 0)"
    )


def overlap_score_params(query: Envelope) -> list[float]:
    area = (query.max_x - query.min_x) * (query.max_y - query.min_y)
    pair = [query.max_x, query.min_x, query.max_y, query.min_y]
    return pair + [area] + pair
