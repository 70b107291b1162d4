"""
geoworkshop — Custom Exception Hierarchy
=========================================
Every geoworkshop operation raises exceptions from this module so callers can
catch them at the right level of granularity.

Hierarchy::

    GeoWorkshopError                     ← catch-all base
    ├── InputValidationError             ← bad arguments, missing files, etc.
    │   ├── ColumnNotFoundError          ← table column missing
    │   ├── UnknownPredicateError        ← predicate name not supported
    │   └── FormatError                  ← unreadable vector/raster source
    │       └── UnsupportedFormatError   ← unknown output format
    ├── CRSError                         ← missing / unresolvable CRS
    │   └── ProjectionError              ← no transform path between CRSs
    ├── GeometryError                    ← geometry operation refused
    │   ├── UnitMismatchError            ← linear op on angular-unit data
    │   └── IncompatibleCastError        ← impossible geometry type change
    ├── RasterError                      ← rasterio / numpy raster issues
    │   ├── BandIndexError               ← requested band does not exist
    │   ├── DisjointExtentError          ← no spatial overlap
    │   └── GridMismatchError            ← rasters not on the same grid
    ├── ServiceError                     ← remote fetch failures
    │   ├── ServiceRequestError          ← non-retryable HTTP response
    │   ├── ServiceUnavailableError      ← retries exhausted
    │   └── SchemaMismatchError          ← payload shape not as expected
    ├── CancelledError                   ← caller cancelled a fetch
    └── OutputWriteError                 ← cannot write to output path

Usage::

    from geoworkshop.exceptions import CRSError

    raise CRSError("EPSG:99999", operation="load")
"""

from __future__ import annotations

from typing import Any, Sequence


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class GeoWorkshopError(Exception):
    """Base exception for all geoworkshop operations.

    Catch this to handle any package error without caring about the exact
    subtype.

    Args:
        message: Human-readable description of the error.
        operation: Name of the operation that failed (e.g. ``"crop"``),
                   or ``None`` when not applicable.
    """

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        if operation:
            message = f"[{operation}] {message}"
        super().__init__(message)
        self.message: str = message
        self.operation: str | None = operation

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(GeoWorkshopError):
    """Raised when an operation's inputs fail validation.

    This is the parent class for more specific input problems.
    """


class ColumnNotFoundError(InputValidationError):
    """Raised when an expected column is absent from a table.

    Args:
        column: The name of the missing column.
        available: Column names that ARE present, used to build a helpful
                   error message.

    Example::

        raise ColumnNotFoundError("huc8", table.columns)
    """

    def __init__(
        self,
        column: str,
        available: Sequence[str],
        *,
        operation: str | None = None,
    ) -> None:
        available_str = ", ".join(f"'{c}'" for c in available)
        super().__init__(
            f"Column '{column}' not found. Available columns: {available_str}",
            operation=operation,
        )
        self.column: str = column
        self.available: list[str] = list(available)


class UnknownPredicateError(InputValidationError):
    """Raised when a spatial predicate name is not supported.

    Args:
        name: The predicate name that was requested.
        supported: Names that are supported.
    """

    def __init__(self, name: str, supported: Sequence[str]) -> None:
        super().__init__(
            f"Unknown predicate '{name}'. Supported: {', '.join(sorted(supported))}",
            operation="evaluate",
        )
        self.name: str = name
        self.supported: list[str] = list(supported)


class FormatError(InputValidationError):
    """Raised when a vector or raster source cannot be read.

    Args:
        source: String form of the path or URL that failed.
        reason: Underlying driver or OS error message.
    """

    def __init__(
        self,
        source: str,
        reason: str,
        *,
        operation: str | None = None,
    ) -> None:
        super().__init__(f"Cannot read '{source}': {reason}", operation=operation)
        self.source: str = source
        self.reason: str = reason


class UnsupportedFormatError(FormatError):
    """Raised when a requested output format is not one of the known drivers.

    Args:
        format_name: The format or file suffix that was requested.
        supported: Format names that are accepted.
    """

    def __init__(self, format_name: str, supported: Sequence[str]) -> None:
        super().__init__(
            format_name,
            f"unsupported format. Accepted formats: {', '.join(supported)}",
            operation="save",
        )
        self.format_name: str = format_name
        self.supported: list[str] = list(supported)


# ---------------------------------------------------------------------------
# CRS
# ---------------------------------------------------------------------------


class CRSError(GeoWorkshopError):
    """Raised when a coordinate reference system is missing, cannot be
    parsed, or two datasets disagree on their CRS.

    Args:
        detail: Either the raw CRS input that failed to parse
                (e.g. ``"EPSG:99999"``) or a description of the problem.
        operation: Name of the operation that needed the CRS.

    Example::

        raise CRSError("EPSG:99999")
    """

    def __init__(self, detail: str, *, operation: str | None = None) -> None:
        super().__init__(
            f"Invalid, missing or mismatched CRS: {detail}. "
            "Use an EPSG code (e.g. 'EPSG:4326') or a valid WKT/PROJ string.",
            operation=operation,
        )
        self.detail: str = detail


class ProjectionError(CRSError):
    """Raised when no transform path exists between two CRSs, or the input
    coordinates fall outside the target projection's domain.

    Args:
        source_crs: String form of the source CRS.
        target_crs: String form of the target CRS.
        reason: Underlying PROJ message.
    """

    def __init__(self, source_crs: str, target_crs: str, reason: str) -> None:
        super().__init__(
            f"cannot transform {source_crs} → {target_crs} ({reason})",
            operation="reproject",
        )
        self.source_crs: str = source_crs
        self.target_crs: str = target_crs
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


class GeometryError(GeoWorkshopError):
    """Raised when a geometry operation cannot produce a valid result."""


class UnitMismatchError(GeometryError):
    """Raised when a linear-distance operation is applied to data in an
    angular (degree) CRS.

    Args:
        crs_name: Name of the offending CRS.
        unit: Axis unit of that CRS (e.g. ``"degree"``).
        operation: Operation that was refused (e.g. ``"buffer"``).
    """

    def __init__(self, crs_name: str, unit: str, operation: str) -> None:
        super().__init__(
            f"'{crs_name}' uses angular units ({unit}); reproject to a projected "
            "CRS with linear units before calling this operation",
            operation=operation,
        )
        self.crs_name: str = crs_name
        self.unit: str = unit


class IncompatibleCastError(GeometryError):
    """Raised when a geometry cannot be converted to the requested type.

    Args:
        source_type: Geometry type of the input (e.g. ``"Polygon"``).
        target_type: Requested geometry type (e.g. ``"Point"``).
        reason: Why the conversion is impossible.
    """

    def __init__(self, source_type: str, target_type: str, reason: str) -> None:
        super().__init__(
            f"cannot cast {source_type} to {target_type}: {reason}",
            operation="cast",
        )
        self.source_type: str = source_type
        self.target_type: str = target_type


# ---------------------------------------------------------------------------
# Raster
# ---------------------------------------------------------------------------


class RasterError(GeoWorkshopError):
    """Raised for general raster processing failures (rasterio / numpy).

    Subclass this for more specific raster errors.
    """


class BandIndexError(RasterError):
    """Raised when a requested raster band index does not exist.

    Args:
        band_index: The 1-based band number that was requested.
        total_bands: Total number of bands in the raster.

    Example::

        raise BandIndexError(band_index=5, total_bands=4)
    """

    def __init__(self, band_index: int, total_bands: int) -> None:
        super().__init__(
            f"Band {band_index} does not exist. "
            f"This raster has {total_bands} band(s) (1-indexed)."
        )
        self.band_index: int = band_index
        self.total_bands: int = total_bands


class DisjointExtentError(RasterError):
    """Raised when a bounding box or geometry does not overlap a raster.

    Args:
        requested: The requested extent ``(minx, miny, maxx, maxy)``.
        raster_extent: The raster extent ``(minx, miny, maxx, maxy)``.
    """

    def __init__(
        self,
        requested: tuple[float, float, float, float],
        raster_extent: tuple[float, float, float, float],
        *,
        operation: str = "crop",
    ) -> None:
        super().__init__(
            f"extent {requested} does not overlap raster extent {raster_extent}",
            operation=operation,
        )
        self.requested = requested
        self.raster_extent = raster_extent


class GridMismatchError(RasterError):
    """Raised when rasters combined cell-by-cell do not share one grid."""


# ---------------------------------------------------------------------------
# Remote services
# ---------------------------------------------------------------------------


class ServiceError(GeoWorkshopError):
    """Raised for failures talking to a remote data service.

    Args:
        endpoint: URL that was requested.
        message: Description of the failure.
    """

    def __init__(self, endpoint: str, message: str) -> None:
        super().__init__(f"{message} ({endpoint})", operation="fetch")
        self.endpoint: str = endpoint


class ServiceRequestError(ServiceError):
    """Raised when the service rejects the request (non-retryable HTTP 4xx).

    Args:
        endpoint: URL that was requested.
        status_code: HTTP status returned by the service.
    """

    def __init__(self, endpoint: str, status_code: int, body: str = "") -> None:
        snippet = f": {body[:200]}" if body else ""
        super().__init__(endpoint, f"service returned HTTP {status_code}{snippet}")
        self.status_code: int = status_code


class ServiceUnavailableError(ServiceError):
    """Raised when a remote fetch still fails after every retry attempt.

    Args:
        endpoint: URL that was requested.
        attempts: Number of attempts made.
        last_error: Description of the final failure.
    """

    def __init__(self, endpoint: str, attempts: int, last_error: str) -> None:
        super().__init__(
            endpoint,
            f"service unavailable after {attempts} attempt(s); last error: {last_error}",
        )
        self.attempts: int = attempts
        self.last_error: str = last_error


class SchemaMismatchError(ServiceError):
    """Raised when a service payload does not match the caller's expectation.

    Args:
        endpoint: URL that was requested.
        expected: What the caller expected (e.g. ``"Polygon geometries"``).
        found: What the payload actually contained.
    """

    def __init__(self, endpoint: str, expected: Any, found: Any) -> None:
        super().__init__(endpoint, f"payload mismatch: expected {expected}, found {found}")
        self.expected = expected
        self.found = found


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancelledError(GeoWorkshopError):
    """Raised when a caller cancels a long-running fetch.

    Args:
        endpoint: URL whose fetch was cancelled.
    """

    def __init__(self, endpoint: str) -> None:
        super().__init__(f"fetch of '{endpoint}' was cancelled", operation="fetch")
        self.endpoint: str = endpoint


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(GeoWorkshopError):
    """Raised when output cannot be written to disk.

    Args:
        output_path: String representation of the path that failed.
        reason: Underlying OS or library error message.

    Example::

        raise OutputWriteError("/read-only/dir/out.gpkg", "Permission denied")
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(f"Failed to write output to '{output_path}': {reason}")
        self.output_path: str = output_path
        self.reason: str = reason
