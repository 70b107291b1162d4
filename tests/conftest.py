"""
Shared fixtures — synthetic rasters and vector collections.

Rasters use a 10 m UTM zone 14N grid anchored at (500000, 4000000) so cell
edges fall on round numbers: column ``c`` spans x ∈ [500000 + 10c,
500000 + 10(c + 1)] and row ``r`` spans y ∈ [4000000 - 10(r + 1),
4000000 - 10r].
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin
from shapely.geometry import Point, box

from geoworkshop.models import Feature, FeatureCollection, Raster

UTM = "EPSG:32614"
ORIGIN_X = 500000.0
ORIGIN_Y = 4000000.0
CELL = 10.0


def cell_box(col0: float, row0: float, col1: float, row1: float):
    """Polygon spanning cell columns [col0, col1) and rows [row0, row1)."""
    return box(
        ORIGIN_X + CELL * col0,
        ORIGIN_Y - CELL * row1,
        ORIGIN_X + CELL * col1,
        ORIGIN_Y - CELL * row0,
    )


def make_raster(
    width: int = 20,
    height: int = 20,
    bands: int = 1,
    dtype: str = "float32",
    nodata: float | None = -9999.0,
    crs: str = UTM,
) -> Raster:
    """Raster whose cell values count up from 1 in row-major order."""
    data = np.arange(1, bands * width * height + 1).reshape(bands, height, width).astype(dtype)
    return Raster(
        data=data,
        transform=from_origin(ORIGIN_X, ORIGIN_Y, CELL, CELL),
        crs=crs,
        nodata=nodata,
    )


@pytest.fixture()
def raster() -> Raster:
    return make_raster()


@pytest.fixture()
def geotiff(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing a synthetic GeoTIFF and returning its path."""

    def _write(
        filename: str = "dem.tif",
        width: int = 20,
        height: int = 20,
        bands: int = 1,
        dtype: str = "float32",
        nodata: float | None = -9999.0,
        crs: str | None = UTM,
    ) -> Path:
        path = tmp_path / filename
        source = make_raster(width, height, bands, dtype, nodata)
        with rasterio.open(
            path, "w",
            driver="GTiff",
            height=height,
            width=width,
            count=bands,
            dtype=dtype,
            crs=crs,
            transform=source.transform,
            nodata=nodata,
        ) as dst:
            dst.write(source.data)
        return path

    return _write


@pytest.fixture()
def gages() -> FeatureCollection:
    """Three gauge points in WGS 84."""
    return FeatureCollection(
        [
            Feature(0, Point(-97.74, 30.27), attributes={"site_no": "08158000", "drainage_km2": 850.0}),
            Feature(1, Point(-97.70, 30.30), attributes={"site_no": "08158050", "drainage_km2": 120.5}),
            Feature(2, Point(-97.80, 30.20), attributes={"site_no": "08158700", "drainage_km2": 45.2}),
        ],
        crs="EPSG:4326",
    )


@pytest.fixture()
def zones() -> FeatureCollection:
    """Two adjacent cell-aligned zones plus one far outside the test raster."""
    return FeatureCollection(
        [
            Feature("west", cell_box(0, 0, 10, 20), attributes={"name": "West"}),
            Feature("east", cell_box(10, 0, 20, 20), attributes={"name": "East"}),
            Feature("away", cell_box(100, 100, 110, 110), attributes={"name": "Away"}),
        ],
        crs=UTM,
    )
