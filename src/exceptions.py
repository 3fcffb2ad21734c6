"""
exceptions.py

Domain-specific exceptions for the fuel transaction import.

Everything inherits from FuelImportError. Row-level problems raise a RowError
subclass and are contained by the upsert engine at the row boundary; every
other subclass is file-level and aborts the current file.
"""

from typing import Optional


class FuelImportError(Exception):
    """Base exception for all import errors."""

    pass


class ConfigError(FuelImportError):
    """Raised when settings are missing or inconsistent (bad profile, bad table name)."""

    pass


class FileLevelError(FuelImportError):
    """Raised when an input file cannot be processed at all.

    This exception is raised when:
    - The file cannot be opened or decoded
    - Mandatory header columns are missing
    - The spreadsheet has no usable sheet
    """

    pass


class CatalogLoadError(FuelImportError):
    """Raised when the reference catalog cannot be loaded from the store."""

    pass


class ImportCancelled(FuelImportError):
    """Raised at a row boundary once a shutdown has been requested."""

    pass


class RowError(FuelImportError):
    """Raised when a single extract row cannot be turned into facts.

    Carries the 1-based data row number and, when known, the offending field
    and its raw value so the rejected-rows report can point at the cause.
    """

    def __init__(
        self,
        message: str,
        row_number: Optional[int] = None,
        field: Optional[str] = None,
        value: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.row_number = row_number
        self.field = field
        self.value = value

    def __str__(self) -> str:
        parts = [self.message]
        if self.row_number is not None:
            parts.append(f"row={self.row_number}")
        if self.field:
            parts.append(f"field={self.field}")
        if self.value is not None:
            parts.append(f"value={self.value!r}")
        return " ".join(parts)


class ParseError(RowError):
    """Raised when a mandatory field is missing or cannot be parsed."""

    pass


class ResolutionError(RowError):
    """Raised when a mandatory business key (station, terminal, article) cannot be resolved."""

    pass


class TenderCodeError(RowError):
    """Raised in strict tender mode for an unsupported payment flag combination."""

    pass
