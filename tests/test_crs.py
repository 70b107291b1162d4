"""
Tests — CRS helpers
====================
"""

from __future__ import annotations

import pytest
from pyproj import CRS
from rasterio.crs import CRS as RioCRS
from shapely.geometry import Point

from geoworkshop.crs import (
    CRS84,
    crs_equal,
    crs_label,
    is_geographic,
    linear_unit,
    require_same_crs,
    resolve_crs,
    to_rasterio_crs,
)
from geoworkshop.exceptions import CRSError
from geoworkshop.transforms import TransformEngine

UTM14_PROJ = "+proj=utm +zone=14 +datum=WGS84 +units=m +no_defs"


class TestResolveCRS:
    def test_authority_string(self) -> None:
        assert resolve_crs("EPSG:4326").to_epsg() == 4326

    def test_integer_and_tuple(self) -> None:
        assert resolve_crs(32614) == resolve_crs(("EPSG", 32614))

    def test_wkt(self) -> None:
        wkt = CRS.from_epsg(32614).to_wkt()
        assert resolve_crs(wkt).to_epsg() == 32614

    def test_rasterio_crs(self) -> None:
        assert resolve_crs(RioCRS.from_epsg(32614)).to_epsg() == 32614

    def test_crs_object_passes_through(self) -> None:
        crs = CRS.from_epsg(3857)
        assert resolve_crs(crs) is crs

    @pytest.mark.parametrize("bad", ["EPSG:999999", "not a crs", ("EPSG",)])
    def test_invalid_raises(self, bad) -> None:
        with pytest.raises(CRSError):
            resolve_crs(bad)

    def test_none_raises(self) -> None:
        with pytest.raises(CRSError):
            resolve_crs(None)

    def test_error_names_operation(self) -> None:
        with pytest.raises(CRSError) as exc_info:
            resolve_crs("nonsense", operation="reproject")
        assert exc_info.value.operation == "reproject"
        assert "[reproject]" in exc_info.value.message


class TestEquivalentIdentifiers:
    @pytest.mark.parametrize(
        "identifier",
        ["EPSG:32614", UTM14_PROJ, CRS.from_epsg(32614).to_wkt(), ("EPSG", 32614), 32614],
    )
    def test_every_form_gives_the_same_projection(self, identifier) -> None:
        engine = TransformEngine()
        reference = engine.reproject(Point(-99.0, 30.0), "EPSG:32614", source_crs="EPSG:4326")
        projected = engine.reproject(Point(-99.0, 30.0), identifier, source_crs="EPSG:4326")
        assert projected.x == pytest.approx(reference.x, abs=1e-6)
        assert projected.y == pytest.approx(reference.y, abs=1e-6)


class TestComparisons:
    def test_axis_order_ignored(self) -> None:
        assert crs_equal(resolve_crs("EPSG:4326"), CRS84)

    def test_different_crs_not_equal(self) -> None:
        assert not crs_equal(resolve_crs(32614), resolve_crs(32615))

    def test_none_handling(self) -> None:
        assert crs_equal(None, None)
        assert not crs_equal(resolve_crs(4326), None)

    def test_require_same_crs_mismatch_raises(self) -> None:
        with pytest.raises(CRSError, match="reproject one of them first"):
            require_same_crs(resolve_crs(4326), resolve_crs(32614), operation="join")

    def test_require_same_crs_missing_raises(self) -> None:
        with pytest.raises(CRSError, match="has no CRS"):
            require_same_crs(None, resolve_crs(32614), operation="join")


class TestDescriptors:
    def test_label(self) -> None:
        assert crs_label(resolve_crs(32614)) == "EPSG:32614"
        assert crs_label(None) == "None"

    def test_units(self) -> None:
        assert is_geographic(resolve_crs(4326))
        assert not is_geographic(resolve_crs(32614))
        assert linear_unit(resolve_crs(32614)) == "metre"

    def test_to_rasterio(self) -> None:
        assert to_rasterio_crs(resolve_crs(32614)).to_epsg() == 32614
        assert to_rasterio_crs(None) is None
