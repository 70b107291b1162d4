"""
TransformEngine — Geometry Transformations
===========================================
Reprojection, buffering, simplification, overlay and type casting.

Every operation returns new geometries / features; inputs are never
modified.  Empty overlay results are reported with the module-level
:data:`EMPTY` sentinel rather than ``None``.

Usage::

    engine = TransformEngine()
    utm = engine.reproject(gages, "EPSG:32614")
    zones = engine.buffer(utm[0], 500.0)
    merged = engine.union(basins.geometries)
"""

from __future__ import annotations

import logging
from typing import Iterable, Union

import numpy as np
import shapely
from pyproj import Transformer
from pyproj.exceptions import ProjError
from shapely.geometry import (
    GeometryCollection,
    LineString,
    MultiLineString,
    MultiPoint,
    MultiPolygon,
    Polygon,
)
from shapely.geometry.base import BaseGeometry

from geoworkshop.crs import (
    CRSLike,
    crs_equal,
    crs_label,
    is_geographic,
    linear_unit,
    require_crs,
    require_same_crs,
    resolve_crs,
)
from geoworkshop.exceptions import (
    IncompatibleCastError,
    InputValidationError,
    ProjectionError,
    UnitMismatchError,
)
from geoworkshop.models import Feature, FeatureCollection

logger = logging.getLogger("geoworkshop.transforms")

#: Returned by overlay operations whose result has no coordinates.
EMPTY = GeometryCollection()

GeometryLike = Union[BaseGeometry, Feature]

_TYPE_NAMES = {
    name.lower(): name
    for name in ("Point", "MultiPoint", "LineString", "MultiLineString", "Polygon", "MultiPolygon")
}
_MULTI_OF = {"Point": "MultiPoint", "LineString": "MultiLineString", "Polygon": "MultiPolygon"}
_MULTI_CLASSES = {"MultiPoint": MultiPoint, "MultiLineString": MultiLineString, "MultiPolygon": MultiPolygon}


def _unwrap(value: GeometryLike) -> BaseGeometry:
    return value.geometry if isinstance(value, Feature) else value


def _rewrap(original: GeometryLike, geometry: BaseGeometry, crs=None):
    if isinstance(original, Feature):
        return original.with_geometry(geometry, crs)
    return geometry


class TransformEngine:
    """Stateless geometry transformations."""

    # ------------------------------------------------------------------
    # Reprojection
    # ------------------------------------------------------------------

    def reproject(
        self,
        data: FeatureCollection | Feature | BaseGeometry,
        target_crs: CRSLike,
        *,
        source_crs: CRSLike | None = None,
    ):
        """Transform coordinates into *target_crs*.

        Args:
            data: A collection, a feature, or a bare geometry.
            target_crs: Destination CRS in any form accepted by
                        :func:`~geoworkshop.crs.resolve_crs`.
            source_crs: Required for bare geometries; ignored otherwise.

        Returns:
            An object of the same kind as *data*.  When the source and
            target CRS are equivalent, coordinates are left untouched.

        Raises:
            CRSError: If the source CRS is unknown or unparseable.
            ProjectionError: If no transformation exists or a coordinate
                falls outside the target CRS's domain.
        """
        target = resolve_crs(target_crs, operation="reproject")

        if isinstance(data, FeatureCollection):
            source = require_crs(data.crs, operation="reproject", subject="collection")
        elif isinstance(data, Feature):
            source = require_crs(data.crs, operation="reproject", subject=f"feature {data.id!r}")
        else:
            source = resolve_crs(source_crs, operation="reproject")

        if crs_equal(source, target):
            logger.debug("reproject: source and target are both %s; no-op", crs_label(target))
            if isinstance(data, FeatureCollection):
                return data.with_features(data.features)
            return data

        try:
            transformer = Transformer.from_crs(source, target, always_xy=True)
        except ProjError as exc:
            raise ProjectionError(crs_label(source), crs_label(target), str(exc)) from exc

        def _project(geom: BaseGeometry) -> BaseGeometry:
            if geom is None or geom.is_empty:
                return geom
            return self._transform_geometry(geom, transformer, source, target)

        if isinstance(data, FeatureCollection):
            features = [f.with_geometry(_project(f.geometry), target) for f in data]
            logger.info(
                "Reprojected %d feature(s) %s → %s",
                len(features),
                crs_label(source),
                crs_label(target),
            )
            return FeatureCollection(features, crs=target)
        if isinstance(data, Feature):
            return data.with_geometry(_project(data.geometry), target)
        return _project(data)

    @staticmethod
    def _transform_geometry(geom, transformer: Transformer, source, target) -> BaseGeometry:
        def _coords(arr: np.ndarray) -> np.ndarray:
            try:
                x, y = transformer.transform(arr[:, 0], arr[:, 1], errcheck=True)
            except ProjError as exc:
                raise ProjectionError(crs_label(source), crs_label(target), str(exc)) from exc
            out = arr.copy()
            out[:, 0] = x
            out[:, 1] = y
            if not np.all(np.isfinite(out[:, :2])):
                raise ProjectionError(
                    crs_label(source),
                    crs_label(target),
                    "coordinates fall outside the target CRS's domain",
                )
            return out

        return shapely.transform(geom, _coords, include_z=bool(shapely.has_z(geom)))

    # ------------------------------------------------------------------
    # Buffer / simplify
    # ------------------------------------------------------------------

    def buffer(
        self,
        geometry: GeometryLike,
        distance: float,
        *,
        crs: CRSLike | None = None,
        resolution: int = 16,
    ):
        """Buffer by *distance* in the CRS's linear unit.

        Args:
            geometry: Geometry or feature.  A feature supplies its own CRS.
            distance: Buffer distance; negative values erode polygons.
            crs: CRS of a bare geometry.
            resolution: Segments per quarter circle.

        Raises:
            CRSError: If no CRS is known.
            UnitMismatchError: If the CRS is geographic (degrees).
        """
        if isinstance(geometry, Feature):
            crs_obj = require_crs(geometry.crs, operation="buffer", subject=f"feature {geometry.id!r}")
        else:
            crs_obj = resolve_crs(crs, operation="buffer")
        if is_geographic(crs_obj):
            raise UnitMismatchError(crs_label(crs_obj), linear_unit(crs_obj), "buffer")
        if resolution < 1:
            raise InputValidationError(f"resolution must be >= 1, got {resolution}", operation="buffer")

        result = shapely.buffer(_unwrap(geometry), distance, quad_segs=resolution)
        return _rewrap(geometry, result)

    def simplify(self, geometry: GeometryLike, tolerance: float):
        """Topology-preserving Douglas-Peucker simplification.

        A tolerance of ``0`` returns the geometry unchanged.  Topology is
        preserved within one geometry only; shared edges between neighbouring
        geometries may diverge.

        Raises:
            InputValidationError: If *tolerance* is negative.
        """
        if tolerance < 0:
            raise InputValidationError(
                f"tolerance must be >= 0, got {tolerance}", operation="simplify"
            )
        if tolerance == 0:
            return geometry
        return _rewrap(geometry, shapely.simplify(_unwrap(geometry), tolerance, preserve_topology=True))

    # ------------------------------------------------------------------
    # Overlay
    # ------------------------------------------------------------------

    def union(self, geometries: Iterable[GeometryLike] | FeatureCollection) -> BaseGeometry:
        """Dissolve all inputs into one geometry (:data:`EMPTY` if none)."""
        if isinstance(geometries, FeatureCollection):
            geoms = geometries.geometries
        else:
            items = list(geometries)
            features = [g for g in items if isinstance(g, Feature)]
            for other in features[1:]:
                require_same_crs(features[0].crs, other.crs, operation="union")
            geoms = [_unwrap(g) for g in items]
        geoms = [g for g in geoms if g is not None and not g.is_empty]
        if not geoms:
            return EMPTY
        return self._or_empty(shapely.union_all(geoms))

    def intersection(self, geom_a: GeometryLike, geom_b: GeometryLike) -> BaseGeometry:
        a, b = self._pair(geom_a, geom_b, "intersection")
        return self._or_empty(shapely.intersection(a, b))

    def difference(self, geom_a: GeometryLike, geom_b: GeometryLike) -> BaseGeometry:
        a, b = self._pair(geom_a, geom_b, "difference")
        return self._or_empty(shapely.difference(a, b))

    def centroid(self, geometry: GeometryLike) -> BaseGeometry:
        return self._or_empty(shapely.centroid(_unwrap(geometry)))

    def point_on_surface(self, geometry: GeometryLike) -> BaseGeometry:
        """A point guaranteed to lie on the geometry (unlike the centroid)."""
        return self._or_empty(shapely.point_on_surface(_unwrap(geometry)))

    @staticmethod
    def _pair(geom_a: GeometryLike, geom_b: GeometryLike, operation: str) -> tuple[BaseGeometry, BaseGeometry]:
        if isinstance(geom_a, Feature) and isinstance(geom_b, Feature):
            require_same_crs(geom_a.crs, geom_b.crs, operation=operation)
        return _unwrap(geom_a), _unwrap(geom_b)

    @staticmethod
    def _or_empty(geom: BaseGeometry) -> BaseGeometry:
        return EMPTY if geom is None or geom.is_empty else geom

    # ------------------------------------------------------------------
    # Casting
    # ------------------------------------------------------------------

    def cast(self, geometry: GeometryLike, target_type: str):
        """Convert between geometry types where no information is invented.

        Supported conversions:

        * single ↔ multi of the same family (multi → single only with one part)
        * Polygon → LineString (no holes) / MultiLineString (all rings)
        * MultiPolygon → MultiLineString
        * closed LineString → Polygon, closed MultiLineString → MultiPolygon
        * anything → MultiPoint (unique vertices)
        * anything → Point when every vertex is the same location

        Raises:
            IncompatibleCastError: For any other combination.
        """
        geom = _unwrap(geometry)
        target = _TYPE_NAMES.get(str(target_type).lower())
        if target is None:
            raise IncompatibleCastError(
                geom.geom_type, str(target_type), f"unknown type; expected one of {sorted(_TYPE_NAMES.values())}"
            )
        return _rewrap(geometry, self._cast(geom, target))

    def _cast(self, geom: BaseGeometry, target: str) -> BaseGeometry:
        source = geom.geom_type
        if geom.is_empty:
            raise IncompatibleCastError(source, target, "geometry is empty")
        if source == target:
            return geom

        if _MULTI_OF.get(source) == target:
            return _MULTI_CLASSES[target]([geom])
        if _MULTI_OF.get(target) == source:
            parts = list(geom.geoms)
            if len(parts) != 1:
                raise IncompatibleCastError(source, target, f"geometry has {len(parts)} parts")
            return parts[0]

        if target == "MultiPoint":
            return shapely.extract_unique_points(geom)
        if target == "Point":
            unique = shapely.extract_unique_points(geom)
            if len(unique.geoms) != 1:
                raise IncompatibleCastError(source, target, f"geometry has {len(unique.geoms)} distinct vertices")
            return unique.geoms[0]

        if source == "Polygon" and target == "LineString":
            if geom.interiors:
                raise IncompatibleCastError(source, target, "polygon has holes; cast to MultiLineString")
            return LineString(geom.exterior.coords)
        if source in ("Polygon", "MultiPolygon") and target == "MultiLineString":
            polygons = [geom] if source == "Polygon" else list(geom.geoms)
            rings = [LineString(r.coords) for p in polygons for r in (p.exterior, *p.interiors)]
            return MultiLineString(rings)

        if source == "LineString" and target == "Polygon":
            return self._ring_to_polygon(geom, source, target)
        if source == "MultiLineString" and target == "MultiPolygon":
            return MultiPolygon([self._ring_to_polygon(line, source, target) for line in geom.geoms])

        raise IncompatibleCastError(source, target, "no lossless conversion exists")

    @staticmethod
    def _ring_to_polygon(line: LineString, source: str, target: str) -> Polygon:
        coords = list(line.coords)
        if len(coords) < 4 or coords[0] != coords[-1]:
            raise IncompatibleCastError(source, target, "line is not a closed ring")
        return Polygon(coords)

    # ------------------------------------------------------------------
    # Explode
    # ------------------------------------------------------------------

    def explode(self, collection: FeatureCollection) -> FeatureCollection:
        """Split multi-part features into single-part features.

        Each output feature's id is ``(original_id, part_index)`` and it
        carries a copy of the original attributes.
        """
        out: list[Feature] = []
        for feat in collection:
            parts = [feat.geometry] if feat.geometry is None else list(shapely.get_parts(feat.geometry))
            for index, part in enumerate(parts):
                out.append(Feature((feat.id, index), part, collection.crs, feat.attributes))
        logger.debug("explode: %d feature(s) → %d", len(collection), len(out))
        return collection.with_features(out)


