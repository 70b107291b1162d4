"""
PredicateEngine — Topological Predicates
=========================================
Binary spatial predicates whose truth conditions come from the
Dimensionally Extended Nine-Intersection Model (DE-9IM), evaluated by GEOS
through :mod:`shapely`, plus unary checks that explain *why* a geometry is
not simple / not valid.

Binary predicates:
    contains, within, intersects, disjoint, touches, overlaps, crosses,
    covers, covered_by, equals, equals_exact, is_within_distance

Unary predicates (return :class:`UnaryResult`):
    is_simple, is_valid, is_empty

Collection helpers:
    subset         Keep features satisfying a predicate against a geometry.
    spatial_join   Attribute join driven by a predicate (geopandas ``sjoin``).

Usage::

    engine = PredicateEngine()
    engine.evaluate("within", gage, basin)          # -> bool
    engine.relate(a, b)                             # -> "FF2F11212"
    report = engine.is_valid(parcel)
    if not report:
        print(report.reason, report.location)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Mapping, Union

import geopandas as gpd
import shapely
from shapely.geometry import Point, shape
from shapely.geometry.base import BaseGeometry
from shapely.validation import explain_validity

from geoworkshop.crs import require_same_crs
from geoworkshop.exceptions import InputValidationError, UnknownPredicateError
from geoworkshop.models import Feature, FeatureCollection

logger = logging.getLogger("geoworkshop.predicates")

GeometryLike = Union[BaseGeometry, Feature]


# ---------------------------------------------------------------------------
# Unary results
# ---------------------------------------------------------------------------


class InvalidityReason(Enum):
    """Why a geometry failed a unary check."""

    SELF_INTERSECTION = "self-intersection"
    RING_SELF_INTERSECTION = "ring self-intersection"
    UNCLOSED_RING = "unclosed ring"
    HOLE_OUTSIDE_SHELL = "hole outside shell"
    NESTED_HOLES = "nested holes"
    NESTED_SHELLS = "nested shells"
    DISCONNECTED_INTERIOR = "disconnected interior"
    TOO_FEW_POINTS = "too few points"
    INVALID_COORDINATE = "invalid coordinate"
    DUPLICATE_RINGS = "duplicate rings"
    EMPTY = "empty"
    OTHER = "other"


# GEOS explain_validity prefixes → reasons.  Order matters: the ring
# variant must be tested before plain self-intersection.
_GEOS_REASONS: list[tuple[str, InvalidityReason]] = [
    ("ring self-intersection", InvalidityReason.RING_SELF_INTERSECTION),
    ("self-intersection", InvalidityReason.SELF_INTERSECTION),
    ("hole lies outside shell", InvalidityReason.HOLE_OUTSIDE_SHELL),
    ("holes are nested", InvalidityReason.NESTED_HOLES),
    ("nested holes", InvalidityReason.NESTED_HOLES),
    ("nested shells", InvalidityReason.NESTED_SHELLS),
    ("interior is disconnected", InvalidityReason.DISCONNECTED_INTERIOR),
    ("too few", InvalidityReason.TOO_FEW_POINTS),
    ("invalid coordinate", InvalidityReason.INVALID_COORDINATE),
    ("duplicate rings", InvalidityReason.DUPLICATE_RINGS),
    ("ring is not closed", InvalidityReason.UNCLOSED_RING),
]

_LOCATION_RE = re.compile(r"\[\s*([-+0-9.eE]+)\s+([-+0-9.eE]+)")


@dataclass(frozen=True)
class UnaryResult:
    """Outcome of a unary predicate.

    Truthiness follows :attr:`value`, so ``if engine.is_valid(g):`` reads
    naturally while the reason stays available for repair workflows.

    Attributes:
        predicate: ``"is_simple"``, ``"is_valid"`` or ``"is_empty"``.
        value: The predicate's truth value.
        reason: Why the geometry is defective, or ``None``.
        detail: Diagnostic text (GEOS message where available).
        location: Point where the defect was found, if known.
    """

    predicate: str
    value: bool
    reason: InvalidityReason | None = None
    detail: str = ""
    location: Point | None = None

    def __bool__(self) -> bool:
        return self.value


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PredicateEngine:
    """Evaluate DE-9IM predicates on geometries and features."""

    _BINARY: dict[str, Callable[[BaseGeometry, BaseGeometry], bool]] = {
        "contains": shapely.contains,
        "within": shapely.within,
        "intersects": shapely.intersects,
        "disjoint": shapely.disjoint,
        "touches": shapely.touches,
        "overlaps": shapely.overlaps,
        "crosses": shapely.crosses,
        "covers": shapely.covers,
        "covered_by": shapely.covered_by,
        "equals": shapely.equals,
    }

    #: Predicates understood by geopandas.sjoin (used by spatial_join).
    _SJOIN_PREDICATES = frozenset(
        {"intersects", "contains", "within", "touches", "crosses", "overlaps", "covers", "covered_by"}
    )

    @property
    def supported(self) -> list[str]:
        return sorted([*self._BINARY, "equals_exact", "is_within_distance"])

    # ------------------------------------------------------------------
    # Binary predicates
    # ------------------------------------------------------------------

    def evaluate(
        self,
        predicate_name: str,
        geom_a: GeometryLike,
        geom_b: GeometryLike,
        distance: float | None = None,
        tolerance: float = 0.0,
    ) -> bool:
        """Evaluate a named binary predicate.

        Args:
            predicate_name: One of :attr:`supported`.
            geom_a: First operand (geometry or feature).
            geom_b: Second operand.
            distance: Required for ``is_within_distance``.
            tolerance: Coordinate tolerance for ``equals_exact``.

        Raises:
            UnknownPredicateError: For unsupported names.
            CRSError: If both operands are features with different CRSs.
            InputValidationError: If ``is_within_distance`` has no distance.
        """
        a, b = self._operands(geom_a, geom_b, operation=predicate_name)

        if predicate_name in self._BINARY:
            return bool(self._BINARY[predicate_name](a, b))
        if predicate_name == "equals_exact":
            return bool(shapely.equals_exact(a, b, tolerance=tolerance))
        if predicate_name == "is_within_distance":
            if distance is None or distance < 0:
                raise InputValidationError(
                    f"is_within_distance needs a non-negative distance, got {distance!r}",
                    operation=predicate_name,
                )
            return bool(shapely.dwithin(a, b, distance))
        raise UnknownPredicateError(predicate_name, self.supported)

    def relate(self, geom_a: GeometryLike, geom_b: GeometryLike) -> str:
        """The 9-character DE-9IM matrix of *geom_a* relative to *geom_b*."""
        a, b = self._operands(geom_a, geom_b, operation="relate")
        return str(shapely.relate(a, b))

    def relate_pattern(self, geom_a: GeometryLike, geom_b: GeometryLike, pattern: str) -> bool:
        """Test the DE-9IM matrix against a pattern such as ``"T*F**F***"``."""
        if not re.fullmatch(r"[TF*012]{9}", pattern):
            raise InputValidationError(f"Invalid DE-9IM pattern {pattern!r}", operation="relate_pattern")
        a, b = self._operands(geom_a, geom_b, operation="relate_pattern")
        return bool(shapely.relate_pattern(a, b, pattern))

    @staticmethod
    def _operands(
        geom_a: GeometryLike,
        geom_b: GeometryLike,
        *,
        operation: str,
    ) -> tuple[BaseGeometry, BaseGeometry]:
        if isinstance(geom_a, Feature) and isinstance(geom_b, Feature):
            require_same_crs(geom_a.crs, geom_b.crs, operation=operation, labels=(f"feature {geom_a.id!r}", f"feature {geom_b.id!r}"))
        a = geom_a.geometry if isinstance(geom_a, Feature) else geom_a
        b = geom_b.geometry if isinstance(geom_b, Feature) else geom_b
        return a, b

    # ------------------------------------------------------------------
    # Unary predicates
    # ------------------------------------------------------------------

    def is_empty(self, geometry: GeometryLike) -> UnaryResult:
        geom = geometry.geometry if isinstance(geometry, Feature) else geometry
        if geom is None or geom.is_empty:
            return UnaryResult("is_empty", True, InvalidityReason.EMPTY, "geometry has no coordinates")
        return UnaryResult("is_empty", False)

    def is_simple(self, geometry: GeometryLike) -> UnaryResult:
        """Check that a geometry has no self-intersections.

        For lines the check follows OGC simplicity (no self-crossing or
        self-tangency except at the endpoints of a closed ring).
        """
        geom = geometry.geometry if isinstance(geometry, Feature) else geometry
        if geom.is_simple:
            return UnaryResult("is_simple", True)
        location = self._self_intersection_point(geom)
        detail = "geometry intersects itself"
        if location is not None:
            detail += f" at ({location.x:g}, {location.y:g})"
        return UnaryResult("is_simple", False, InvalidityReason.SELF_INTERSECTION, detail, location)

    def is_valid(self, geometry: GeometryLike | Mapping[str, Any]) -> UnaryResult:
        """Check OGC validity and report the specific defect.

        Accepts a GeoJSON-like mapping as well as a geometry so that unclosed
        polygon rings can be reported before shapely closes them on
        construction.
        """
        if isinstance(geometry, Mapping):
            unclosed = self._unclosed_ring(geometry)
            if unclosed is not None:
                return UnaryResult(
                    "is_valid",
                    False,
                    InvalidityReason.UNCLOSED_RING,
                    f"ring starts at {unclosed[0]} but ends at {unclosed[1]}",
                    Point(unclosed[0]),
                )
            geom = shape(geometry)
        else:
            geom = geometry.geometry if isinstance(geometry, Feature) else geometry

        if geom.is_valid:
            return UnaryResult("is_valid", True)

        detail = explain_validity(geom)
        return UnaryResult("is_valid", False, self._classify(detail), detail, self._location(detail))

    @staticmethod
    def _classify(detail: str) -> InvalidityReason:
        lowered = detail.lower()
        for prefix, reason in _GEOS_REASONS:
            if prefix in lowered:
                return reason
        return InvalidityReason.OTHER

    @staticmethod
    def _location(detail: str) -> Point | None:
        match = _LOCATION_RE.search(detail)
        if match is None:
            return None
        return Point(float(match.group(1)), float(match.group(2)))

    @staticmethod
    def _unclosed_ring(mapping: Mapping[str, Any]) -> tuple[tuple, tuple] | None:
        gtype = mapping.get("type")
        coords = mapping.get("coordinates") or []
        if gtype == "Polygon":
            polygons = [coords]
        elif gtype == "MultiPolygon":
            polygons = list(coords)
        else:
            return None
        for rings in polygons:
            for ring in rings:
                if len(ring) >= 2 and tuple(ring[0]) != tuple(ring[-1]):
                    return tuple(ring[0]), tuple(ring[-1])
        return None

    @staticmethod
    def _self_intersection_point(geom: BaseGeometry) -> Point | None:
        """A node where three or more pieces of the noded linework meet."""
        if geom.geom_type not in ("LineString", "LinearRing", "MultiLineString", "Polygon", "MultiPolygon"):
            return None
        linework = geom.boundary if geom.geom_type in ("Polygon", "MultiPolygon") else geom
        seen: dict[tuple[float, float], int] = {}
        for part in shapely.get_parts(shapely.node(linework)):
            coords = list(part.coords)
            for x, y in (coords[0][:2], coords[-1][:2]):
                key = (round(x, 12), round(y, 12))
                seen[key] = seen.get(key, 0) + 1
        for key, count in seen.items():
            if count > 2:
                return Point(key)
        return None

    # ------------------------------------------------------------------
    # Collection helpers
    # ------------------------------------------------------------------

    def subset(
        self,
        collection: FeatureCollection,
        geometry: GeometryLike,
        predicate: str = "intersects",
        **kwargs: Any,
    ) -> FeatureCollection:
        """Keep the features for which ``predicate(feature, geometry)`` holds.

        Raises:
            CRSError: If *geometry* is a feature in a different CRS.
        """
        if isinstance(geometry, Feature):
            require_same_crs(collection.crs, geometry.crs, operation="subset", labels=("collection", "geometry"))
            geometry = geometry.geometry
        kept = [f for f in collection if self.evaluate(predicate, f.geometry, geometry, **kwargs)]
        logger.debug("subset(%s): kept %d of %d feature(s)", predicate, len(kept), len(collection))
        return collection.with_features(kept)

    def spatial_join(
        self,
        left: FeatureCollection,
        right: FeatureCollection,
        predicate: str = "intersects",
        how: str = "inner",
    ):
        """Join attributes of *right* onto *left* where the predicate holds.

        Returns:
            A :class:`~geoworkshop.tables.SpatialTable` with *left*'s
            geometry and both sets of attributes.

        Raises:
            CRSError: If the collections are in different CRSs.
            UnknownPredicateError: For predicates geopandas cannot join on.
        """
        from geoworkshop.tables import SpatialTable  # noqa: PLC0415

        if predicate not in self._SJOIN_PREDICATES:
            raise UnknownPredicateError(predicate, sorted(self._SJOIN_PREDICATES))
        if how not in ("inner", "left"):
            raise InputValidationError(f"how must be 'inner' or 'left', got {how!r}", operation="spatial_join")
        require_same_crs(left.crs, right.crs, operation="spatial_join", labels=("left", "right"))

        joined = gpd.sjoin(
            left.to_geodataframe(),
            right.to_geodataframe(),
            how=how,
            predicate=predicate,
        )
        return SpatialTable(joined)
