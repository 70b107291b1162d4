"""
ZonalEngine — Zonal Statistics
===============================
Aggregates raster cell values inside vector zones.

Cell membership follows the rasterization rule used everywhere in the
package:

* **center rule** (default) — a cell belongs to a zone when the cell center
  falls inside the zone polygon.  Adjacent zones never share a cell, so the
  per-zone counts never exceed the raster's valid cell count.
* **all-touched** — every cell the zone touches belongs to it.  Cells on a
  shared border are counted once *per zone*, so totals across adjacent zones
  can exceed the raster's cell count.

Statistics: ``mean``, ``sum``, ``min``, ``max``, ``count``, ``majority``.

Usage::

    engine = ZonalEngine()
    means = engine.aggregate(dem, basins, "mean")
    table = engine.summarize(dem, basins, ["mean", "max", "count"])
"""

from __future__ import annotations

import logging
from typing import Any, Hashable, Mapping, Sequence, Union

import numpy as np
import numpy.typing as npt
from rasterio.features import geometry_mask
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry

from geoworkshop.crs import require_same_crs
from geoworkshop.exceptions import DisjointExtentError, InputValidationError
from geoworkshop.models import BoundingBox, Feature, FeatureCollection, Raster
from geoworkshop.raster_store import RasterStore

logger = logging.getLogger("geoworkshop.zonal")

ZoneInput = Union[FeatureCollection, Feature, Mapping[Hashable, BaseGeometry]]


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def _majority(values: npt.NDArray) -> Any:
    # np.unique sorts, and argmax returns the first maximum, so ties go to
    # the smallest value.
    uniques, counts = np.unique(values, return_counts=True)
    return uniques[int(np.argmax(counts))].item()


_STATISTICS = {
    "mean": lambda v: float(np.mean(v)),
    "sum": lambda v: np.sum(v).item(),
    "min": lambda v: np.min(v).item(),
    "max": lambda v: np.max(v).item(),
    "majority": _majority,
}

SUPPORTED_STATISTICS = ("mean", "sum", "min", "max", "count", "majority")


class ZonalEngine:
    """Compute per-zone statistics of raster values.

    Args:
        store: Raster store used for cropping.  A default instance is
               created when omitted.
    """

    def __init__(self, store: RasterStore | None = None) -> None:
        self.store = store or RasterStore()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def aggregate(
        self,
        raster: Raster,
        zones: ZoneInput,
        statistic: str = "mean",
        all_touched: bool = False,
        *,
        band: int = 1,
        include_nodata: bool = False,
    ) -> dict[Hashable, Any]:
        """Compute one statistic per zone.

        Args:
            raster: Value raster.
            zones: Zone polygons as a collection, a single feature, or a
                   mapping of zone id → geometry (assumed to be in the
                   raster CRS).
            statistic: One of :data:`SUPPORTED_STATISTICS`.
            all_touched: Use the all-touched rule instead of the center rule.
            band: 1-based band index.
            include_nodata: Count nodata cells as ordinary values.

        Returns:
            Mapping of zone id → value, in zone order.  A zone covering no
            cells maps to ``None`` (``0`` for ``count``).

        Raises:
            InputValidationError: For an unknown statistic.
            CRSError: If the zones and raster are in different CRSs.
            BandIndexError: If *band* does not exist.
        """
        table = self._compute(raster, zones, [statistic], all_touched, band, include_nodata)
        return {zone_id: stats[statistic] for zone_id, stats in table.items()}

    def summarize(
        self,
        raster: Raster,
        zones: FeatureCollection,
        statistics: Sequence[str] = ("mean", "min", "max", "count"),
        all_touched: bool = False,
        *,
        band: int = 1,
        include_nodata: bool = False,
    ):
        """Zone attributes plus one column per statistic.

        Returns:
            A :class:`~geoworkshop.tables.SpatialTable` indexed by zone id.
        """
        from geoworkshop.tables import SpatialTable  # noqa: PLC0415

        stats = list(statistics)
        table = self._compute(raster, zones, stats, all_touched, band, include_nodata)
        gdf = zones.to_geodataframe()
        for name in stats:
            gdf[name] = [table[zone_id][name] for zone_id in gdf.index]
        return SpatialTable(gdf)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _compute(
        self,
        raster: Raster,
        zones: ZoneInput,
        statistics: list[str],
        all_touched: bool,
        band: int,
        include_nodata: bool,
    ) -> dict[Hashable, dict[str, Any]]:
        unknown = [s for s in statistics if s not in SUPPORTED_STATISTICS]
        if unknown:
            raise InputValidationError(
                f"Unknown statistic(s) {unknown}; supported: {', '.join(SUPPORTED_STATISTICS)}",
                operation="zonal",
            )
        raster.band(band)

        results: dict[Hashable, dict[str, Any]] = {}
        for zone_id, geom in self._zone_items(raster, zones):
            values = self._zone_values(raster, geom, band, all_touched, include_nodata)
            results[zone_id] = {name: self._statistic(name, values) for name in statistics}

        logger.info(
            "Zonal %s over %d zone(s) (%s rule)",
            "/".join(statistics),
            len(results),
            "all-touched" if all_touched else "center",
        )
        return results

    @staticmethod
    def _zone_items(raster: Raster, zones: ZoneInput) -> list[tuple[Hashable, BaseGeometry]]:
        if isinstance(zones, FeatureCollection):
            require_same_crs(raster.crs, zones.crs, operation="zonal", labels=("raster", "zones"))
            return [(f.id, f.geometry) for f in zones]
        if isinstance(zones, Feature):
            require_same_crs(raster.crs, zones.crs, operation="zonal", labels=("raster", "zone"))
            return [(zones.id, zones.geometry)]
        return list(zones.items())

    def _zone_values(
        self,
        raster: Raster,
        geom: BaseGeometry | None,
        band: int,
        all_touched: bool,
        include_nodata: bool,
    ) -> npt.NDArray:
        empty = np.empty(0, dtype=raster.dtype)
        if geom is None or geom.is_empty:
            return empty

        # Work on a one-cell-padded crop around the zone so large rasters
        # are not rasterized in full for every zone.
        xres, yres = raster.res
        minx, miny, maxx, maxy = geom.bounds
        padded = BoundingBox(minx - xres, miny - yres, maxx + xres, maxy + yres)
        try:
            sub = self.store.crop(raster, padded)
        except DisjointExtentError:
            return empty

        inside = geometry_mask(
            [mapping(geom)],
            out_shape=(sub.height, sub.width),
            transform=sub.transform,
            all_touched=all_touched,
            invert=True,
        )
        if not include_nodata:
            inside &= ~sub.nodata_mask(band)
        return sub.band(band)[inside]

    @staticmethod
    def _statistic(name: str, values: npt.NDArray) -> Any:
        if name == "count":
            return int(values.size)
        if values.size == 0:
            return None
        return _STATISTICS[name](values)
