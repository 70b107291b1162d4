"""
Coordinate reference system helpers.

Every CRS that enters the package goes through :func:`resolve_crs`, which
accepts the three identifier forms used in the workshop material (PROJ
strings, OGC WKT, ``authority:code`` strings) plus EPSG integers,
``(authority, code)`` tuples and already-built ``pyproj`` / ``rasterio``
CRS objects, and returns a :class:`pyproj.CRS`.
"""

from __future__ import annotations

import logging
from typing import Any, Union

from pyproj import CRS
from pyproj.exceptions import CRSError as PyprojCRSError

from geoworkshop.exceptions import CRSError

logger = logging.getLogger("geoworkshop.crs")

CRSLike = Union[CRS, str, int, tuple, Any]

#: CRS assumed for GeoJSON payloads that carry no ``crs`` member (RFC 7946).
CRS84 = CRS.from_user_input("OGC:CRS84")


def resolve_crs(value: CRSLike, *, operation: str | None = None) -> CRS:
    """Resolve any supported CRS identifier to a :class:`pyproj.CRS`.

    Args:
        value: PROJ string, WKT, ``"EPSG:4326"``-style string, EPSG integer,
               ``("EPSG", 4326)`` tuple, or a CRS object.
        operation: Operation name used in the error message.

    Raises:
        CRSError: If *value* is ``None`` or cannot be parsed.
    """
    if value is None:
        raise CRSError("no CRS supplied", operation=operation)
    if isinstance(value, CRS):
        return value
    try:
        if isinstance(value, tuple):
            if len(value) != 2:
                raise CRSError(repr(value), operation=operation)
            authority, code = value
            return CRS.from_authority(str(authority), str(code))
        if hasattr(value, "to_wkt") and not isinstance(value, str):
            # rasterio.crs.CRS and similar wrappers
            return CRS.from_wkt(value.to_wkt())
        return CRS.from_user_input(value)
    except PyprojCRSError as exc:
        raise CRSError(repr(value), operation=operation) from exc


def crs_equal(a: CRS | None, b: CRS | None) -> bool:
    """Return ``True`` when *a* and *b* describe the same CRS.

    Axis order is ignored and an identical EPSG identification is accepted,
    so ``"EPSG:32614"`` and its PROJ-string equivalent compare equal.
    """
    if a is None or b is None:
        return a is None and b is None
    if a == b or a.equals(b, ignore_axis_order=True):
        return True
    epsg_a = a.to_epsg()
    return epsg_a is not None and epsg_a == b.to_epsg()


def require_crs(crs: CRS | None, *, operation: str, subject: str = "dataset") -> CRS:
    """Return *crs* or raise :class:`CRSError` if it is ``None``."""
    if crs is None:
        raise CRSError(f"{subject} has no CRS", operation=operation)
    return crs


def require_same_crs(
    a: CRS | None,
    b: CRS | None,
    *,
    operation: str,
    labels: tuple[str, str] = ("left", "right"),
) -> CRS:
    """Check two datasets share one CRS and return it.

    Raises:
        CRSError: If either CRS is missing or they differ.  Nothing is
            reprojected implicitly.
    """
    require_crs(a, operation=operation, subject=labels[0])
    require_crs(b, operation=operation, subject=labels[1])
    if not crs_equal(a, b):
        raise CRSError(
            f"{labels[0]} is {crs_label(a)} but {labels[1]} is {crs_label(b)}; "
            "reproject one of them first",
            operation=operation,
        )
    return a  # type: ignore[return-value]


def is_geographic(crs: CRS) -> bool:
    """``True`` for CRSs whose horizontal axes are angular (degrees)."""
    return bool(crs.is_geographic)


def linear_unit(crs: CRS) -> str:
    """Name of the unit of the first horizontal axis (e.g. ``"metre"``)."""
    if not crs.axis_info:
        return "unknown"
    return crs.axis_info[0].unit_name


def crs_label(crs: CRS | None) -> str:
    """Short human-readable label, preferring ``AUTH:CODE``."""
    if crs is None:
        return "None"
    auth = crs.to_authority()
    if auth:
        return f"{auth[0]}:{auth[1]}"
    return crs.name


def to_rasterio_crs(crs: CRS | None):
    """Convert a :class:`pyproj.CRS` to a :class:`rasterio.crs.CRS`."""
    if crs is None:
        return None
    from rasterio.crs import CRS as RioCRS  # noqa: PLC0415

    return RioCRS.from_wkt(crs.to_wkt())
