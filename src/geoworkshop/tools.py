"""
geoworkshop — File-to-File Tools
=================================
Four :class:`~geoworkshop.base_tool.GeoTool` subclasses that chain the
engines into the workflows exposed by the ``geo-workshop`` CLI.

Classes:
    ReprojectTool      Vector file → vector file in another CRS.
    RasterClipTool     Raster file → raster cropped to a bbox and/or masked
                       by polygons from a vector file.
    ZonalStatsTool     Raster + zone polygons → per-zone statistics table.
    GeometryCheckTool  Vector file → JSON report of invalid / non-simple /
                       empty geometries with reasons and locations.

Usage::

    from pathlib import Path
    from geoworkshop.tools import ZonalStatsTool

    tool = ZonalStatsTool(
        input_path=Path("data/dem.tif"),
        output_path=Path("output/basin_stats.csv"),
        zones_path=Path("data/basins.gpkg"),
        statistics=["mean", "max"],
    )
    tool.run()
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Sequence

from geoworkshop.base_tool import GeoTool
from geoworkshop.crs import CRSLike, crs_equal, crs_label
from geoworkshop.exceptions import InputValidationError, OutputWriteError
from geoworkshop.geometry_store import GeometryStore
from geoworkshop.models import BoundingBox, FeatureCollection
from geoworkshop.predicates import PredicateEngine
from geoworkshop.raster_store import RasterStore
from geoworkshop.transforms import TransformEngine
from geoworkshop.validators import Validators
from geoworkshop.zonal import SUPPORTED_STATISTICS, ZonalEngine

logger = logging.getLogger("geoworkshop.tools")

VECTOR_EXTENSIONS = [".shp", ".gpkg", ".geojson", ".json"]


def _zones_in_raster_crs(zones: FeatureCollection, raster_crs, transforms: TransformEngine) -> FeatureCollection:
    """Explicitly reproject *zones* to the raster CRS when they differ."""
    if crs_equal(zones.crs, raster_crs):
        return zones
    logger.info("Reprojecting zones %s → %s", crs_label(zones.crs), crs_label(raster_crs))
    return transforms.reproject(zones, raster_crs)


# ---------------------------------------------------------------------------
# Reproject
# ---------------------------------------------------------------------------


class ReprojectTool(GeoTool):
    """Reproject every feature of a vector file.

    Args:
        input_path: Source vector file.
        output_path: Destination; format follows the suffix unless
                     *output_format* is given.
        target_crs: Destination CRS.
        output_format: Optional driver name / alias.
        default_crs: CRS to assume if the source declares none.
        verbose: Enable DEBUG logging.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        target_crs: CRSLike,
        *,
        output_format: str | None = None,
        default_crs: CRSLike | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(input_path, output_path, verbose=verbose)
        self.target_crs = target_crs
        self.output_format = output_format
        self.default_crs = default_crs
        self.feature_count: int = 0

    def validate_inputs(self) -> None:
        Validators.assert_file_exists(self.input_path)
        Validators.assert_supported_extension(self.input_path, VECTOR_EXTENSIONS)
        Validators.assert_crs_valid(self.target_crs)
        GeometryStore.resolve_driver(self.output_format, self.output_path)
        Validators.assert_output_dir_writable(self.output_path)

    def process(self) -> None:
        store = GeometryStore()
        collection = store.load(self.input_path, default_crs=self.default_crs)
        result = TransformEngine().reproject(collection, self.target_crs)
        store.save(result, self.output_path, self.output_format)
        self.feature_count = len(result)

    def summary(self) -> str:
        return f"{self.feature_count} feature(s) reprojected"


# ---------------------------------------------------------------------------
# Raster clip
# ---------------------------------------------------------------------------


class RasterClipTool(GeoTool):
    """Crop a raster to a bounding box and/or mask it with polygons.

    When a mask file is given the raster is first cropped to the mask's
    extent, then cells outside the polygons are set to nodata.

    Args:
        input_path: Source GeoTIFF.
        output_path: Destination GeoTIFF.
        bbox: ``(minx, miny, maxx, maxy)`` in the raster CRS.
        mask_path: Vector file of mask polygons.
        all_touched: Keep every cell a mask polygon touches.
        verbose: Enable DEBUG logging.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        bbox: Sequence[float] | None = None,
        mask_path: Path | None = None,
        all_touched: bool = False,
        verbose: bool = False,
    ) -> None:
        super().__init__(input_path, output_path, verbose=verbose)
        self.bbox = BoundingBox.from_sequence(bbox) if bbox is not None else None
        self.mask_path = Path(mask_path) if mask_path is not None else None
        self.all_touched = all_touched
        self.shape: tuple[int, int, int] = (0, 0, 0)

    def validate_inputs(self) -> None:
        Validators.assert_file_exists(self.input_path)
        Validators.assert_supported_extension(self.input_path, RasterStore.SUPPORTED_EXTENSIONS)
        if self.bbox is None and self.mask_path is None:
            raise InputValidationError("Provide a bounding box, a mask file, or both", operation="clip")
        if self.mask_path is not None:
            Validators.assert_file_exists(self.mask_path)
            Validators.assert_supported_extension(self.mask_path, VECTOR_EXTENSIONS)
        Validators.assert_supported_extension(self.output_path, [".tif", ".tiff"])
        Validators.assert_output_dir_writable(self.output_path)

    def process(self) -> None:
        store = RasterStore()
        raster = store.load(self.input_path)
        if self.bbox is not None:
            raster = store.crop(raster, self.bbox)
        if self.mask_path is not None:
            zones = GeometryStore().load(self.mask_path)
            zones = _zones_in_raster_crs(zones, raster.crs, TransformEngine())
            if zones.bounds is not None:
                raster = store.crop(raster, zones.bounds)
            raster = store.mask(raster, zones, all_touched=self.all_touched)
        store.save(raster, self.output_path)
        self.shape = (raster.count, raster.height, raster.width)

    def summary(self) -> str:
        bands, rows, cols = self.shape
        return f"{bands} band(s), {rows} x {cols} cells"


# ---------------------------------------------------------------------------
# Zonal statistics
# ---------------------------------------------------------------------------


class ZonalStatsTool(GeoTool):
    """Per-zone raster statistics written as CSV or as a vector file.

    Args:
        input_path: Value raster.
        output_path: ``.csv`` for a plain table, or a vector suffix to keep
                     the zone geometries.
        zones_path: Zone polygons.
        statistics: Statistic names (see :data:`SUPPORTED_STATISTICS`).
        all_touched: Use the all-touched rule.
        band: 1-based band index.
        verbose: Enable DEBUG logging.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        zones_path: Path,
        *,
        statistics: Sequence[str] = ("mean",),
        all_touched: bool = False,
        band: int = 1,
        verbose: bool = False,
    ) -> None:
        super().__init__(input_path, output_path, verbose=verbose)
        self.zones_path = Path(zones_path)
        self.statistics = list(statistics)
        self.all_touched = all_touched
        self.band = band
        self.zone_count: int = 0

    def validate_inputs(self) -> None:
        Validators.assert_file_exists(self.input_path)
        Validators.assert_file_exists(self.zones_path)
        Validators.assert_supported_extension(self.zones_path, VECTOR_EXTENSIONS)
        unknown = [s for s in self.statistics if s not in SUPPORTED_STATISTICS]
        if not self.statistics or unknown:
            raise InputValidationError(
                f"statistics must be chosen from {', '.join(SUPPORTED_STATISTICS)}; got {self.statistics}",
                operation="zonal",
            )
        Validators.assert_supported_extension(self.output_path, [".csv", *VECTOR_EXTENSIONS])
        Validators.assert_output_dir_writable(self.output_path)

    def process(self) -> None:
        raster = RasterStore().load(self.input_path)
        Validators.assert_band_index_valid(self.band, raster.count)
        zones = _zones_in_raster_crs(GeometryStore().load(self.zones_path), raster.crs, TransformEngine())

        table = ZonalEngine().summarize(
            raster, zones, self.statistics, self.all_touched, band=self.band
        )
        self.zone_count = len(table)

        if self.output_path.suffix.lower() == ".csv":
            try:
                table.drop_geometry().to_pandas().to_csv(self.output_path, index_label="zone_id")
            except OSError as exc:
                raise OutputWriteError(str(self.output_path), str(exc)) from exc
        else:
            GeometryStore().save(table.to_collection(), self.output_path)

    def summary(self) -> str:
        return f"{self.zone_count} zone(s), {', '.join(self.statistics)}"


# ---------------------------------------------------------------------------
# Geometry check
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeometryIssue:
    """One failed geometry check.

    Attributes:
        feature_id: Identifier of the offending feature.
        check: ``"is_empty"``, ``"is_valid"`` or ``"is_simple"``.
        reason: :class:`~geoworkshop.predicates.InvalidityReason` value.
        detail: Diagnostic message.
        location: ``[x, y]`` of the defect, when known.
    """

    feature_id: Any
    check: str
    reason: str
    detail: str
    location: list[float] | None = None


class GeometryCheckTool(GeoTool):
    """Report empty, invalid and non-simple geometries in a vector file.

    The report is a JSON document with a summary and one entry per issue.
    """

    def __init__(
        self,
        input_path: Path,
        output_path: Path,
        *,
        id_field: str | None = None,
        default_crs: CRSLike | None = None,
        verbose: bool = False,
    ) -> None:
        super().__init__(input_path, output_path, verbose=verbose)
        self.id_field = id_field
        self.default_crs = default_crs
        self.issues: list[GeometryIssue] = []
        self.feature_count: int = 0

    def validate_inputs(self) -> None:
        Validators.assert_file_exists(self.input_path)
        Validators.assert_supported_extension(self.input_path, VECTOR_EXTENSIONS)
        Validators.assert_supported_extension(self.output_path, [".json"])
        Validators.assert_output_dir_writable(self.output_path)

    def process(self) -> None:
        collection = GeometryStore().load(
            self.input_path, id_field=self.id_field, default_crs=self.default_crs
        )
        self.feature_count = len(collection)
        self.issues = self.check(collection)

        report = {
            "file": str(self.input_path),
            "crs": crs_label(collection.crs),
            "feature_count": self.feature_count,
            "issue_count": len(self.issues),
            "issues": [asdict(issue) for issue in self.issues],
        }
        try:
            self.output_path.write_text(json.dumps(report, indent=2, default=str), encoding="utf-8")
        except OSError as exc:
            raise OutputWriteError(str(self.output_path), str(exc)) from exc

        if self.issues:
            logger.warning("%d geometry issue(s) found in %s", len(self.issues), self.input_path.name)

    def summary(self) -> str:
        return f"{len(self.issues)} issue(s) in {self.feature_count} feature(s)"

    @staticmethod
    def check(collection: FeatureCollection) -> list[GeometryIssue]:
        """Run the unary checks on every feature; empty geometries skip the rest."""
        engine = PredicateEngine()
        issues: list[GeometryIssue] = []
        for feat in collection:
            if feat.geometry is None or feat.geometry.is_empty:
                result = engine.is_empty(feat)
                issues.append(GeometryIssue(feat.id, "is_empty", result.reason.value, result.detail))
                continue
            for result in (engine.is_valid(feat), engine.is_simple(feat)):
                if result:
                    continue
                location = [result.location.x, result.location.y] if result.location is not None else None
                issues.append(
                    GeometryIssue(feat.id, result.predicate, result.reason.value, result.detail, location)
                )
        return issues
