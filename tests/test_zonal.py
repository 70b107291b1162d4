"""
Tests — ZonalEngine
====================
The ``raster`` fixture holds 1..400 in row-major order on a 20 × 20 grid,
so per-zone statistics can be worked out by hand: the west half (columns
0-9) averages 195.5 and the east half (columns 10-19) averages 205.5.
"""

from __future__ import annotations

import numpy as np
import pytest
from rasterio.transform import from_origin
from shapely.geometry import Polygon

from conftest import CELL, ORIGIN_X, ORIGIN_Y, UTM, cell_box
from geoworkshop.exceptions import BandIndexError, CRSError, InputValidationError
from geoworkshop.models import Feature, FeatureCollection, Raster
from geoworkshop.tables import SpatialTable
from geoworkshop.zonal import SUPPORTED_STATISTICS, ZonalEngine


@pytest.fixture()
def engine() -> ZonalEngine:
    return ZonalEngine()


def _grid(values, nodata=None) -> Raster:
    return Raster(
        data=np.asarray(values),
        transform=from_origin(ORIGIN_X, ORIGIN_Y, CELL, CELL),
        crs=UTM,
        nodata=nodata,
    )


# ---------------------------------------------------------------------------
# aggregate
# ---------------------------------------------------------------------------


class TestAggregate:
    def test_mean(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        means = engine.aggregate(raster, zones, "mean")
        assert list(means) == ["west", "east", "away"]
        assert means["west"] == pytest.approx(195.5)
        assert means["east"] == pytest.approx(205.5)

    def test_count(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        counts = engine.aggregate(raster, zones, "count")
        assert counts == {"west": 200, "east": 200, "away": 0}

    def test_extremes_and_sum(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        assert engine.aggregate(raster, zones, "min")["east"] == 11
        assert engine.aggregate(raster, zones, "max")["west"] == 390
        assert engine.aggregate(raster, zones, "sum")["west"] == pytest.approx(195.5 * 200)

    def test_zone_outside_raster_is_none(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        for statistic in ("mean", "sum", "min", "max", "majority"):
            assert engine.aggregate(raster, zones, statistic)["away"] is None

    def test_nodata_excluded(self, engine: ZonalEngine) -> None:
        grid = _grid([[1.0, -9999.0], [3.0, 5.0]], nodata=-9999.0)
        zone = {"all": cell_box(0, 0, 2, 2)}
        assert engine.aggregate(grid, zone, "count") == {"all": 3}
        assert engine.aggregate(grid, zone, "mean")["all"] == pytest.approx(3.0)

    def test_nodata_included_on_request(self, engine: ZonalEngine) -> None:
        grid = _grid([[1.0, -9999.0], [3.0, 5.0]], nodata=-9999.0)
        counts = engine.aggregate(grid, {"all": cell_box(0, 0, 2, 2)}, "count", include_nodata=True)
        assert counts == {"all": 4}

    def test_all_nodata_zone(self, engine: ZonalEngine) -> None:
        grid = _grid([[-1, -1], [7, 7]], nodata=-1)
        assert engine.aggregate(grid, {"top": cell_box(0, 0, 2, 1)}, "mean") == {"top": None}

    def test_majority_tie_goes_to_smallest(self, engine: ZonalEngine) -> None:
        grid = _grid([[4, 4, 2, 2], [9, 1, 1, 7]])
        zone = {"top": cell_box(0, 0, 4, 1), "all": cell_box(0, 0, 4, 2)}
        result = engine.aggregate(grid, zone, "majority")
        assert result == {"top": 2, "all": 1}

    def test_single_feature(self, engine: ZonalEngine, raster: Raster) -> None:
        feat = Feature("corner", cell_box(0, 0, 1, 1), crs=UTM)
        assert engine.aggregate(raster, feat, "mean") == {"corner": pytest.approx(1.0)}

    def test_band_selection(self, engine: ZonalEngine) -> None:
        grid = _grid(np.stack([np.ones((2, 2)), np.full((2, 2), 8.0)]))
        assert engine.aggregate(grid, {"z": cell_box(0, 0, 2, 2)}, "mean", band=2) == {"z": 8.0}
        with pytest.raises(BandIndexError):
            engine.aggregate(grid, {"z": cell_box(0, 0, 2, 2)}, "mean", band=3)

    def test_unknown_statistic(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        with pytest.raises(InputValidationError, match="median"):
            engine.aggregate(raster, zones, "median")

    def test_crs_mismatch(self, engine: ZonalEngine, raster: Raster) -> None:
        zones = FeatureCollection([Feature(0, cell_box(0, 0, 1, 1))], crs="EPSG:32615")
        with pytest.raises(CRSError):
            engine.aggregate(raster, zones)


# ---------------------------------------------------------------------------
# Cell membership rules
# ---------------------------------------------------------------------------


class TestMembership:
    @pytest.fixture()
    def split(self) -> FeatureCollection:
        # The shared border runs through column 9, left of its center.
        return FeatureCollection(
            [
                Feature("left", cell_box(0, 0, 9.3, 20)),
                Feature("right", cell_box(9.3, 0, 20, 20)),
            ],
            crs=UTM,
        )

    def test_center_rule_never_double_counts(self, engine: ZonalEngine, raster: Raster, split: FeatureCollection) -> None:
        counts = engine.aggregate(raster, split, "count")
        assert counts == {"left": 180, "right": 220}
        assert sum(counts.values()) <= raster.valid_count()

    def test_all_touched_counts_border_cells_twice(self, engine: ZonalEngine, raster: Raster, split: FeatureCollection) -> None:
        counts = engine.aggregate(raster, split, "count", all_touched=True)
        assert counts == {"left": 200, "right": 220}
        assert sum(counts.values()) > raster.valid_count()

    def test_all_touched_is_a_superset(self, engine: ZonalEngine, raster: Raster) -> None:
        zone = {"t": Polygon([(ORIGIN_X, ORIGIN_Y), (ORIGIN_X + 100, ORIGIN_Y), (ORIGIN_X, ORIGIN_Y - 100)])}
        center = engine.aggregate(raster, zone, "count")["t"]
        touched = engine.aggregate(raster, zone, "count", all_touched=True)["t"]
        assert 0 < center < touched


# ---------------------------------------------------------------------------
# summarize
# ---------------------------------------------------------------------------


class TestSummarize:
    def test_columns_and_values(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        table = engine.summarize(raster, zones, ["mean", "count"])
        assert isinstance(table, SpatialTable)
        assert table.columns == ["name", "geometry", "mean", "count"]
        frame = table.to_pandas()
        assert frame.loc["east", "mean"] == pytest.approx(205.5)
        assert frame.loc["away", "count"] == 0
        assert frame.loc["west", "name"] == "West"

    def test_default_statistics(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        table = engine.summarize(raster, zones)
        for name in ("mean", "min", "max", "count"):
            assert name in table.columns

    def test_every_supported_statistic(self, engine: ZonalEngine, raster: Raster, zones: FeatureCollection) -> None:
        frame = engine.summarize(raster, zones, SUPPORTED_STATISTICS).to_pandas()
        assert frame.loc["west", "majority"] == 1
