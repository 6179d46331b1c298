"""Exception hierarchy for catalog storage, query and import failures.

Every error raised by the catalog layer derives from CatalogError so API
handlers and bulk pipelines can catch the whole family in one place. Reads
never let these escape; mutations turn them into a MutationResult.

Example:
    Validate a document before upserting it:
        >>> from geocatalog.core import errors
        >>> try:
        ...     resource = codec.resource_from_json({"id": "r1"})
        ... except errors.MissingRequiredField as exc:
        ...     print(exc.fields)
        ['dct_title_s', 'gbl_resourceClass_sm', 'dct_accessRights_s']
"""

from __future__ import annotations

from collections.abc import Sequence


class CatalogError(RuntimeError):
    """Base class for all catalog errors."""


class ValidationError(CatalogError):
    """Raised when a record document cannot be accepted."""


class MissingRequiredField(ValidationError):
    """Raised when a record lacks one or more required fields.

    Attributes:
        fields: Names of the missing required fields, in registry order.
    """

    def __init__(self, fields: Sequence[str]) -> None:
        self.fields = list(fields)
        super().__init__(
            f"Missing required Aardvark fields: {', '.join(self.fields)}"
        )


class ParseError(CatalogError):
    """Raised for malformed references JSON or unparsable geometry."""


class StoreUnavailable(CatalogError):
    """Raised when the embedded engine failed to initialize."""


class TransactionFailure(CatalogError):
    """Raised when a transactional restore was rolled back."""
