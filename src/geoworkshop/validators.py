"""
geoworkshop — Shared Input Validators
======================================
Static precondition checks used by the stores, engines and tools.

All methods raise an exception from :mod:`geoworkshop.exceptions` rather than
returning booleans, which keeps call sites short::

    Validators.assert_file_exists(path)
    Validators.assert_supported_extension(path, [".tif", ".tiff"])
    Validators.assert_positive(distance, "distance")
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import Sequence

from geoworkshop.exceptions import (
    BandIndexError,
    ColumnNotFoundError,
    FormatError,
    InputValidationError,
    OutputWriteError,
)


class Validators:
    """Collection of static precondition checks.

    All methods are ``@staticmethod`` — this class is never instantiated.
    It exists purely as a logical namespace.
    """

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_file_exists(path: Path, *, operation: str = "load") -> None:
        """Assert that *path* points to an existing regular file.

        Raises:
            FormatError: If *path* does not exist or is a directory.
        """
        path = Path(path)
        if not path.exists():
            raise FormatError(str(path), "file not found", operation=operation)
        if path.is_dir():
            raise FormatError(
                str(path), "expected a file but got a directory", operation=operation
            )

    @staticmethod
    def assert_output_dir_writable(output_path: Path) -> None:
        """Assert that the parent directory of *output_path* is writable.

        Creates the parent directory (and any missing parents) if it does
        not yet exist.

        Raises:
            OutputWriteError: If the parent directory cannot be created.
        """
        parent = Path(output_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(output_path), str(exc)) from exc

    @staticmethod
    def assert_supported_extension(path: Path, extensions: Sequence[str]) -> None:
        """Assert that *path* has one of the allowed file extensions.

        Args:
            path: File path to check.
            extensions: Allowed extensions, each starting with a dot
                        (e.g. ``[".shp", ".geojson", ".gpkg"]``).

        Raises:
            InputValidationError: If the file extension is not allowed.
        """
        path = Path(path)
        suffix = path.suffix.lower()
        allowed = [ext.lower() for ext in extensions]
        if suffix not in allowed:
            raise InputValidationError(
                f"Unsupported file extension '{suffix}' for '{path.name}'. "
                f"Accepted extensions: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # CRS checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_crs_valid(crs: object) -> None:
        """Assert that *crs* resolves to a CRS.

        Raises:
            CRSError: If pyproj cannot parse it.
        """
        from geoworkshop.crs import resolve_crs  # noqa: PLC0415

        resolve_crs(crs, operation="validate")

    # ------------------------------------------------------------------
    # Tabular data checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_columns_exist(
        columns: Sequence[str],
        required_columns: Sequence[str],
        *,
        operation: str | None = None,
    ) -> None:
        """Assert that every name in *required_columns* is in *columns*.

        Raises:
            ColumnNotFoundError: On the first missing column found.
        """
        available = list(columns)
        for col in required_columns:
            if col not in available:
                raise ColumnNotFoundError(col, available, operation=operation)

    # ------------------------------------------------------------------
    # Numeric checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_positive(value: float, name: str, *, allow_zero: bool = False) -> None:
        """Assert that *value* is a finite number greater than zero.

        Raises:
            InputValidationError: If *value* is not finite or not positive.
        """
        if value is None or not math.isfinite(value):
            raise InputValidationError(f"{name} must be a finite number, got {value!r}")
        if value < 0 or (value == 0 and not allow_zero):
            bound = ">= 0" if allow_zero else "> 0"
            raise InputValidationError(f"{name} must be {bound}, got {value!r}")

    # ------------------------------------------------------------------
    # Raster checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_band_index_valid(band_index: int, total_bands: int) -> None:
        """Assert that 1-based *band_index* exists in a raster.

        Raises:
            BandIndexError: If *band_index* is out of range.
        """
        if band_index < 1 or band_index > total_bands:
            raise BandIndexError(band_index, total_bands)
