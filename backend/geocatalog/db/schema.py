"""Schema registry and DDL bootstrap for the catalog store.

This module declares the fixed Aardvark field layout (scalar fields,
repeatable string fields, required and boolean fields, the ordinal index
year field), the CSV header and reference URI alias tables, the five table
names, and the idempotent, additive-only schema bootstrap.

Example:
    Bootstrap a fresh in-memory engine:
        >>> import duckdb
        >>> from geocatalog.db import schema
        >>> conn = duckdb.connect(":memory:")
        >>> schema.ensure_schema(conn)
        >>> schema.is_repeated("dct_subject_sm")
        True
"""

from __future__ import annotations

import logging

import duckdb

logger = logging.getLogger(__name__)

RESOURCES_TABLE = "resources"
RESOURCES_MV_TABLE = "resources_mv"
DISTRIBUTIONS_TABLE = "distributions"
SEARCH_INDEX_TABLE = "search_index"
IMAGE_SERVICE_TABLE = "resources_image_service"

ALL_TABLES = (
    RESOURCES_TABLE,
    RESOURCES_MV_TABLE,
    DISTRIBUTIONS_TABLE,
    SEARCH_INDEX_TABLE,
    IMAGE_SERVICE_TABLE,
)

ID_FIELD = "id"
TITLE_FIELD = "dct_title_s"
REFERENCES_FIELD = "dct_references_s"
YEAR_FIELD = "gbl_indexYear_im"
MD_VERSION = "Aardvark"

REPEATABLE_STRING_FIELDS: tuple[str, ...] = (
    "dct_alternative_sm",
    "dct_description_sm",
    "dct_language_sm",
    "gbl_displayNote_sm",
    "dct_creator_sm",
    "dct_publisher_sm",
    "gbl_resourceClass_sm",
    "gbl_resourceType_sm",
    "dct_subject_sm",
    "dcat_theme_sm",
    "dcat_keyword_sm",
    "dct_temporal_sm",
    "gbl_indexYear_im",
    "gbl_dateRange_drsim",
    "dct_spatial_sm",
    "dct_relation_sm",
    "pcdm_memberOf_sm",
    "dct_isPartOf_sm",
    "dct_source_sm",
    "dct_isVersionOf_sm",
    "dct_replaces_sm",
    "dct_isReplacedBy_sm",
    "dct_rights_sm",
    "dct_rightsHolder_sm",
    "dct_license_sm",
    "dct_identifier_sm",
)

SCALAR_FIELDS: tuple[str, ...] = (
    "id",
    "dct_title_s",
    "schema_provider_s",
    "dct_issued_s",
    "locn_geometry",
    "dcat_bbox",
    "dcat_centroid",
    "dct_accessRights_s",
    "dct_format_s",
    "gbl_fileSize_s",
    "gbl_wxsIdentifier_s",
    "dct_references_s",
    "gbl_mdModified_dt",
    "gbl_mdVersion_s",
    "gbl_suppressed_b",
    "gbl_georeferenced_b",
)

# References live in the distributions table, never in the wide row.
STORED_SCALAR_FIELDS: tuple[str, ...] = tuple(
    f for f in SCALAR_FIELDS if f != REFERENCES_FIELD
)

REQUIRED_FIELDS: tuple[str, ...] = (
    "id",
    "dct_title_s",
    "gbl_resourceClass_sm",
    "dct_accessRights_s",
    "gbl_mdVersion_s",
)

BOOLEAN_FIELDS: frozenset[str] = frozenset(
    {"gbl_suppressed_b", "gbl_georeferenced_b"}
)

ENVELOPE_COLUMNS = ("bbox_minx", "bbox_miny", "bbox_maxx", "bbox_maxy")

# Friendly CSV header -> canonical field name.
CSV_HEADER_MAPPING: dict[str, str] = {
    "ID": "id",
    "Title": "dct_title_s",
    "Alternative Title": "dct_alternative_sm",
    "Description": "dct_description_sm",
    "Language": "dct_language_sm",
    "Display Note": "gbl_displayNote_sm",
    "Creator": "dct_creator_sm",
    "Publisher": "dct_publisher_sm",
    "Provider": "schema_provider_s",
    "Resource Class": "gbl_resourceClass_sm",
    "Resource Type": "gbl_resourceType_sm",
    "Subject": "dct_subject_sm",
    "Theme": "dcat_theme_sm",
    "Keyword": "dcat_keyword_sm",
    "Temporal Coverage": "dct_temporal_sm",
    "Date Issued": "dct_issued_s",
    "Index Year": "gbl_indexYear_im",
    "Date Range": "gbl_dateRange_drsim",
    "Spatial Coverage": "dct_spatial_sm",
    "Geometry": "locn_geometry",
    "Bounding Box": "dcat_bbox",
    "Centroid": "dcat_centroid",
    "Relation": "dct_relation_sm",
    "Member Of": "pcdm_memberOf_sm",
    "Is Part Of": "dct_isPartOf_sm",
    "Source": "dct_source_sm",
    "Is Version Of": "dct_isVersionOf_sm",
    "Replaces": "dct_replaces_sm",
    "Is Replaced By": "dct_isReplacedBy_sm",
    "Rights": "dct_rights_sm",
    "Rights Holder": "dct_rightsHolder_sm",
    "License": "dct_license_sm",
    "Access Rights": "dct_accessRights_s",
    "Format": "dct_format_s",
    "File Size": "gbl_fileSize_s",
    "WxS Identifier": "gbl_wxsIdentifier_s",
    "Identifier": "dct_identifier_sm",
    "Modified": "gbl_mdModified_dt",
    "Metadata Version": "gbl_mdVersion_s",
    "Suppressed": "gbl_suppressed_b",
    "Georeferenced": "gbl_georeferenced_b",
    "References": "dct_references_s",
}

FIELD_TO_CSV_HEADER: dict[str, str] = {
    field: header for header, field in CSV_HEADER_MAPPING.items()
}

# Short relation key -> reference URI used inside dct_references_s.
REFERENCE_URI_MAPPING: dict[str, str] = {
    "download": "http://schema.org/downloadUrl",
    "url": "http://schema.org/url",
    "documentation": "http://lccn.loc.gov/sh85035852",
    "iiif_image": "http://iiif.io/api/image",
    "iiif_manifest": "http://iiif.io/api/presentation#manifest",
    "iso19139": "http://www.isotc211.org/schemas/2005/gmd/",
    "fgdc": "http://www.opengis.net/cat/csw/csdgm",
    "mods": "http://www.loc.gov/mods/v3",
    "html": "http://www.w3.org/1999/xhtml",
    "open_index_map": "https://openindexmaps.org",
    "wms": "http://www.opengis.net/def/serviceType/ogc/wms",
    "wfs": "http://www.opengis.net/def/serviceType/ogc/wfs",
    "wcs": "http://www.opengis.net/def/serviceType/ogc/wcs",
    "wmts": "http://www.opengis.net/def/serviceType/ogc/wmts",
    "xyz": "https://wiki.openstreetmap.org/wiki/Slippy_map_tilenames",
    "pmtiles": "https://github.com/protomaps/PMTiles",
    "cog": "https://github.com/cogeotiff/cog-spec",
    "tms": "https://wiki.osgeo.org/wiki/Tile_Map_Service_Specification",
    "arcgis_dynamic_map_layer": "urn:x-esri:serviceType:ArcGIS#DynamicMapLayer",
    "arcgis_feature_layer": "urn:x-esri:serviceType:ArcGIS#FeatureLayer",
    "arcgis_image_map_layer": "urn:x-esri:serviceType:ArcGIS#ImageMapLayer",
    "arcgis_tiled_map_layer": "urn:x-esri:serviceType:ArcGIS#TiledMapLayer",
    "thumbnail": "http://schema.org/thumbnailUrl",
}

URI_TO_RELATION_KEY: dict[str, str] = {
    uri: key for key, uri in REFERENCE_URI_MAPPING.items()
}

_SCALAR_SET = frozenset(STORED_SCALAR_FIELDS)
_REPEATED_SET = frozenset(REPEATABLE_STRING_FIELDS)


def is_scalar(field: str) -> bool:
    """Return True if the field is stored as a column of the wide table."""
    return field in _SCALAR_SET


def is_repeated(field: str) -> bool:
    """Return True if the field is a registered repeatable string field."""
    return field in _REPEATED_SET


def quote_ident(name: str) -> str:
    """Double-quote a registry column name for SQL.

    Only names declared in this module are ever quoted; request values are
    always bound as parameters.
    """
    return '"' + name.replace('"', '""') + '"'


def resources_columns() -> list[tuple[str, str]]:
    """Column name and type pairs of the wide resources table."""
    columns = [(field, "VARCHAR") for field in STORED_SCALAR_FIELDS]
    columns.extend((column, "DOUBLE") for column in ENVELOPE_COLUMNS)
    columns.append(("embedding", "FLOAT[]"))
    columns.append(("extra_json", "VARCHAR"))
    return columns


TABLE_DDL: dict[str, str] = {
    RESOURCES_TABLE: "CREATE TABLE IF NOT EXISTS {table} ({columns})".format(
        table=RESOURCES_TABLE,
        columns=", ".join(
            f"{quote_ident(name)} {dtype}"
            for name, dtype in resources_columns()
        ),
    ),
    RESOURCES_MV_TABLE: (
        f"CREATE TABLE IF NOT EXISTS {RESOURCES_MV_TABLE} "
        "(id VARCHAR, field VARCHAR, val VARCHAR, ord INTEGER)"
    ),
    DISTRIBUTIONS_TABLE: (
        f"CREATE TABLE IF NOT EXISTS {DISTRIBUTIONS_TABLE} "
        "(resource_id VARCHAR, relation_key VARCHAR, url VARCHAR, "
        "label VARCHAR)"
    ),
    SEARCH_INDEX_TABLE: (
        f"CREATE TABLE IF NOT EXISTS {SEARCH_INDEX_TABLE} "
        "(id VARCHAR, content VARCHAR)"
    ),
    IMAGE_SERVICE_TABLE: (
        f"CREATE TABLE IF NOT EXISTS {IMAGE_SERVICE_TABLE} "
        "(id VARCHAR, data VARCHAR, last_updated UBIGINT)"
    ),
}

# Columns added to tables created by earlier layouts.
MIGRATED_COLUMNS: dict[str, list[tuple[str, str]]] = {
    RESOURCES_TABLE: resources_columns(),
    RESOURCES_MV_TABLE: [("ord", "INTEGER")],
    DISTRIBUTIONS_TABLE: [("label", "VARCHAR")],
}

INDEX_DDL = (
    f"CREATE INDEX IF NOT EXISTS idx_resources_mv_id "
    f"ON {RESOURCES_MV_TABLE} (id)",
    f"CREATE INDEX IF NOT EXISTS idx_resources_mv_field "
    f"ON {RESOURCES_MV_TABLE} (field)",
    f"CREATE INDEX IF NOT EXISTS idx_distributions_resource "
    f"ON {DISTRIBUTIONS_TABLE} (resource_id)",
)


def existing_columns(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    catalog: str | None = None,
) -> list[str]:
    """List the column names of a table, optionally in an attached catalog."""
    sql = (
        "SELECT column_name FROM information_schema.columns "
        "WHERE table_name = ?"
    )
    params: list[object] = [table]
    if catalog is not None:
        sql += " AND table_catalog = ?"
        params.append(catalog)
    else:
        sql += " AND table_catalog = current_database()"
    sql += " ORDER BY ordinal_position"
    return [row[0] for row in conn.execute(sql, params).fetchall()]


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the five catalog tables and add any missing columns.

    The bootstrap is additive only: existing tables are never dropped and
    existing columns are never renamed. Secondary index creation is
    best-effort; the wide table carries no index so later ALTERs succeed.

    Args:
        conn: Open DuckDB connection.
    """
    for ddl in TABLE_DDL.values():
        conn.execute(ddl)

    for table, columns in MIGRATED_COLUMNS.items():
        present = set(existing_columns(conn, table))
        for name, dtype in columns:
            if name not in present:
                logger.info("Adding column %s.%s", table, name)
                conn.execute(
                    f"ALTER TABLE {table} ADD COLUMN {quote_ident(name)} "
                    f"{dtype}"
                )

    for ddl in INDEX_DDL:
        try:
            conn.execute(ddl)
        except duckdb.Error as exc:
            logger.warning("Index creation skipped: %s", exc)
