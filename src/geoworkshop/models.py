"""
geoworkshop — Core Data Model
==============================
Immutable value types shared by every engine.

Classes:
    BoundingBox         Axis-aligned extent ``(minx, miny, maxx, maxy)``.
    Feature             Geometry + CRS + ordered read-only attributes.
    FeatureCollection   Ordered features that share one CRS.
    Raster              Banded cell grid + affine transform + CRS + nodata.

Nothing in this module mutates geometry or cell values in place: every
operation elsewhere in the package returns new instances.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Hashable, Iterable, Iterator, Mapping, Sequence

import numpy as np
import numpy.typing as npt
from affine import Affine
from pyproj import CRS
from shapely.geometry import box
from shapely.geometry.base import BaseGeometry

from geoworkshop.crs import CRSLike, crs_equal, crs_label, resolve_crs
from geoworkshop.exceptions import BandIndexError, CRSError, InputValidationError

if TYPE_CHECKING:  # pragma: no cover
    import geopandas as gpd

    from geoworkshop.tables import SpatialTable


# ---------------------------------------------------------------------------
# Bounding box
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned extent in some CRS's units.

    Attributes:
        minx: Western / left edge.
        miny: Southern / bottom edge.
        maxx: Eastern / right edge.
        maxy: Northern / top edge.
    """

    minx: float
    miny: float
    maxx: float
    maxy: float

    def __post_init__(self) -> None:
        values = (self.minx, self.miny, self.maxx, self.maxy)
        if not all(math.isfinite(v) for v in values):
            raise InputValidationError(f"Bounding box values must be finite: {values}")
        if self.minx > self.maxx or self.miny > self.maxy:
            raise InputValidationError(
                f"Invalid bounding box: min must not exceed max, got {values}"
            )

    @classmethod
    def from_sequence(cls, values: Sequence[float]) -> "BoundingBox":
        """Build from any 4-item ``(minx, miny, maxx, maxy)`` sequence."""
        if len(values) != 4:
            raise InputValidationError(f"Bounding box needs 4 values, got {len(values)}")
        return cls(*(float(v) for v in values))

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.minx, self.miny, self.maxx, self.maxy)

    def intersects(self, other: "BoundingBox") -> bool:
        """``True`` when the two boxes share interior area."""
        return (
            self.minx < other.maxx
            and other.minx < self.maxx
            and self.miny < other.maxy
            and other.miny < self.maxy
        )

    def to_polygon(self) -> BaseGeometry:
        return box(self.minx, self.miny, self.maxx, self.maxy)

    def to_query_param(self) -> str:
        """Comma-joined form used by OGC API and most REST services."""
        return ",".join(f"{v:g}" for v in self.as_tuple())


# ---------------------------------------------------------------------------
# Vector features
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Feature:
    """One vector feature.

    Attributes:
        id: Identifier, unique within its collection.
        geometry: A shapely geometry (Point, LineString, Polygon or a
                  multi-part variant).
        crs: CRS the coordinates are expressed in, or ``None``.  A feature
             without a CRS cannot take part in cross-dataset operations.
        attributes: Ordered, read-only mapping of attribute name → value.
    """

    id: Hashable
    geometry: BaseGeometry
    crs: CRS | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.geometry is not None and not isinstance(self.geometry, BaseGeometry):
            raise InputValidationError(
                f"Feature {self.id!r}: geometry must be a shapely geometry, "
                f"got {type(self.geometry).__name__}"
            )
        if self.crs is not None and not isinstance(self.crs, CRS):
            object.__setattr__(self, "crs", resolve_crs(self.crs))
        object.__setattr__(self, "attributes", MappingProxyType(dict(self.attributes)))

    @property
    def geom_type(self) -> str:
        return self.geometry.geom_type if self.geometry is not None else "None"

    def with_geometry(self, geometry: BaseGeometry, crs: CRS | None = None) -> "Feature":
        """Return a copy carrying *geometry* (and optionally a new CRS)."""
        return Feature(
            id=self.id,
            geometry=geometry,
            crs=self.crs if crs is None else crs,
            attributes=self.attributes,
        )


class FeatureCollection:
    """An ordered, immutable sequence of :class:`Feature` objects sharing one CRS.

    Features built without a CRS adopt the collection CRS; a feature whose CRS
    differs from it raises :class:`CRSError`.  Ids must be unique; a repeated id
    raises :class:`InputValidationError`.

    Args:
        features: Features in their original order.
        crs: CRS shared by every member.  ``None`` is allowed for
             intermediate results, but cross-dataset operations reject it.

    Example::

        fc = FeatureCollection(
            [Feature(1, Point(0, 0)), Feature(2, Point(1, 1))],
            crs="EPSG:4326",
        )
    """

    def __init__(self, features: Iterable[Feature], crs: CRSLike | None = None) -> None:
        self._crs: CRS | None = resolve_crs(crs) if crs is not None else None
        members: list[Feature] = []
        for feat in features:
            if feat.crs is None:
                if self._crs is not None:
                    feat = feat.with_geometry(feat.geometry, self._crs)
            elif self._crs is None:
                self._crs = feat.crs
            elif not crs_equal(feat.crs, self._crs):
                raise CRSError(
                    f"feature {feat.id!r} is {crs_label(feat.crs)} but the "
                    f"collection is {crs_label(self._crs)}",
                    operation="FeatureCollection",
                )
            members.append(feat)

        repeated = [fid for fid, n in Counter(f.id for f in members).items() if n > 1]
        if repeated:
            raise InputValidationError(
                f"feature ids must be unique within a collection; repeated: {repeated!r}",
                operation="FeatureCollection",
            )
        self._features: tuple[Feature, ...] = tuple(members)

    # ------------------------------------------------------------------
    # Sequence protocol
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._features)

    def __iter__(self) -> Iterator[Feature]:
        return iter(self._features)

    def __getitem__(self, index: int) -> Feature:
        return self._features[index]

    def __repr__(self) -> str:
        return f"FeatureCollection(n={len(self)}, crs={crs_label(self._crs)!r})"

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def crs(self) -> CRS | None:
        return self._crs

    @property
    def features(self) -> tuple[Feature, ...]:
        return self._features

    @property
    def ids(self) -> list[Hashable]:
        return [f.id for f in self._features]

    @property
    def geometries(self) -> list[BaseGeometry]:
        return [f.geometry for f in self._features]

    @property
    def geom_types(self) -> set[str]:
        return {f.geom_type for f in self._features}

    @property
    def bounds(self) -> BoundingBox | None:
        """Union extent of all non-empty geometries, or ``None`` if there are none."""
        boxes = [g.bounds for g in self.geometries if g is not None and not g.is_empty]
        if not boxes:
            return None
        arr = np.asarray(boxes, dtype=float)
        return BoundingBox(
            float(arr[:, 0].min()), float(arr[:, 1].min()),
            float(arr[:, 2].max()), float(arr[:, 3].max()),
        )

    def get(self, feature_id: Hashable) -> Feature:
        """Return the feature with *feature_id*.

        Raises:
            KeyError: If no feature has that identifier.
        """
        for feat in self._features:
            if feat.id == feature_id:
                return feat
        raise KeyError(feature_id)

    def with_features(self, features: Iterable[Feature], crs: CRSLike | None = None) -> "FeatureCollection":
        """Build a new collection in this collection's CRS (or *crs*)."""
        return FeatureCollection(features, crs=self._crs if crs is None else crs)

    # ------------------------------------------------------------------
    # Conversions
    # ------------------------------------------------------------------

    def to_geodataframe(self) -> "gpd.GeoDataFrame":
        """Convert to a GeoDataFrame indexed by feature id."""
        import geopandas as gpd  # noqa: PLC0415

        columns: list[str] = []
        for feat in self._features:
            for key in feat.attributes:
                if key not in columns:
                    columns.append(key)
        records = [{c: feat.attributes.get(c) for c in columns} for feat in self._features]
        gdf = gpd.GeoDataFrame(
            records,
            columns=columns,
            geometry=self.geometries,
            crs=self._crs,
            index=self.ids,
        )
        return gdf

    @classmethod
    def from_geodataframe(
        cls,
        gdf: "gpd.GeoDataFrame",
        *,
        id_field: str | None = None,
    ) -> "FeatureCollection":
        """Build a collection from a GeoDataFrame.

        Args:
            gdf: Source frame; its active geometry column becomes the
                 feature geometry and the remaining columns the attributes.
            id_field: Column holding feature identifiers.  Defaults to the
                      frame index.
        """
        geom_name = gdf.geometry.name
        crs = resolve_crs(gdf.crs) if gdf.crs is not None else None
        attrs = gdf.drop(columns=[geom_name]).to_dict(orient="records")
        ids = list(gdf[id_field]) if id_field else list(gdf.index)
        features = [
            Feature(id=_native(fid), geometry=geom, crs=crs, attributes=row)
            for fid, geom, row in zip(ids, gdf.geometry, attrs)
        ]
        return cls(features, crs=crs)

    def to_table(self) -> "SpatialTable":
        """Wrap this collection as a :class:`~geoworkshop.tables.SpatialTable`."""
        from geoworkshop.tables import SpatialTable  # noqa: PLC0415

        return SpatialTable(self.to_geodataframe())


def _native(value: Any) -> Any:
    """Unwrap numpy scalars so identifiers hash and print like plain Python."""
    return value.item() if isinstance(value, np.generic) else value


# ---------------------------------------------------------------------------
# Raster
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Raster:
    """A banded grid of numeric cells.

    Attributes:
        data: Array of shape ``(bands, rows, cols)``.  Stored read-only.
        transform: Affine transform from ``(col, row)`` to world ``(x, y)``.
        crs: CRS of the world coordinates.
        nodata: Sentinel marking cells with no observation, or ``None``
                when every cell holds a value.
    """

    data: npt.NDArray
    transform: Affine
    crs: CRS | None
    nodata: float | None = None

    def __post_init__(self) -> None:
        arr = np.asarray(self.data)
        if arr.ndim == 2:
            arr = arr[np.newaxis, ...]
        if arr.ndim != 3:
            raise InputValidationError(
                f"Raster data must be 2-D or 3-D (bands, rows, cols), got shape {arr.shape}"
            )
        arr = np.array(arr, copy=True)
        arr.flags.writeable = False
        object.__setattr__(self, "data", arr)
        if self.crs is not None and not isinstance(self.crs, CRS):
            object.__setattr__(self, "crs", resolve_crs(self.crs))

    @property
    def count(self) -> int:
        return int(self.data.shape[0])

    @property
    def height(self) -> int:
        return int(self.data.shape[1])

    @property
    def width(self) -> int:
        return int(self.data.shape[2])

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def res(self) -> tuple[float, float]:
        """Cell size ``(x, y)`` as positive numbers."""
        return (abs(self.transform.a), abs(self.transform.e))

    @property
    def bounds(self) -> BoundingBox:
        t = self.transform
        xs = (t.c, t.c + t.a * self.width)
        ys = (t.f, t.f + t.e * self.height)
        return BoundingBox(min(xs), min(ys), max(xs), max(ys))

    def band(self, index: int) -> npt.NDArray:
        """Return the read-only 2-D array for 1-based band *index*."""
        if index < 1 or index > self.count:
            raise BandIndexError(index, self.count)
        return self.data[index - 1]

    def masked(self, index: int = 1) -> np.ma.MaskedArray:
        """Band *index* as a masked array with nodata (and NaN) cells masked."""
        values = self.band(index)
        mask = self.nodata_mask(index)
        return np.ma.MaskedArray(values, mask=mask)

    def nodata_mask(self, index: int = 1) -> npt.NDArray[np.bool_]:
        """Boolean array, ``True`` where band *index* holds no observation."""
        values = self.band(index)
        mask = np.zeros(values.shape, dtype=bool)
        if self.nodata is not None:
            if isinstance(self.nodata, float) and math.isnan(self.nodata):
                mask |= np.isnan(values)
            else:
                mask |= values == self.nodata
        if np.issubdtype(values.dtype, np.floating):
            mask |= np.isnan(values)
        return mask

    def valid_count(self, index: int = 1) -> int:
        """Number of cells in band *index* that hold an observation."""
        return int((~self.nodata_mask(index)).sum())

    def replace(self, data: npt.NDArray, transform: Affine | None = None, nodata: Any = ...) -> "Raster":
        """Return a new raster on this CRS with new cells (and optionally grid)."""
        return Raster(
            data=data,
            transform=self.transform if transform is None else transform,
            crs=self.crs,
            nodata=self.nodata if nodata is ... else nodata,
        )

    def same_grid(self, other: "Raster") -> bool:
        """``True`` when both rasters share shape, transform and CRS."""
        return (
            self.height == other.height
            and self.width == other.width
            and self.transform.almost_equals(other.transform)
            and crs_equal(self.crs, other.crs)
        )

    def __repr__(self) -> str:
        return (
            f"Raster(bands={self.count}, shape=({self.height}, {self.width}), "
            f"dtype={self.dtype}, crs={crs_label(self.crs)!r}, nodata={self.nodata!r})"
        )
