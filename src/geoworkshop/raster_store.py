"""
RasterStore — Raster I/O and Map Algebra
=========================================
Reads GeoTIFF (or any rasterio-supported raster) into
:class:`~geoworkshop.models.Raster` values and provides the grid operations
used throughout the workshop: crop, mask, reclassify, local map algebra and
point extraction.

Large rasters can be processed tile by tile: :meth:`RasterStore.iter_tiles`
reads one window per step and :meth:`RasterStore.map_tiles` applies a
function to every tile, optionally on a thread pool.  Each tile read opens
and closes its own dataset handle, so no handle is shared between threads.

``mask`` has to test every cell against the geometry, while ``crop`` only
slices the array.  Crop to the geometry's bounds first to bound that work;
the masked values are the same either way.

Usage::

    store = RasterStore()
    dem = store.load(Path("data/dem.tif"))
    basin_dem = store.mask(store.crop(dem, basin.bounds), basin)
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Sequence, Union

import numpy as np
import numpy.typing as npt
import rasterio
import rasterio.errors
from rasterio.features import geometry_mask
from rasterio.windows import Window
from rasterio.windows import transform as window_transform
from shapely.geometry import Point, mapping
from shapely.geometry.base import BaseGeometry

from geoworkshop.config import RasterConfig
from geoworkshop.crs import CRSLike, require_same_crs, resolve_crs, to_rasterio_crs
from geoworkshop.exceptions import (
    CRSError,
    DisjointExtentError,
    FormatError,
    GridMismatchError,
    InputValidationError,
    OutputWriteError,
)
from geoworkshop.models import BoundingBox, Feature, FeatureCollection, Raster
from geoworkshop.validators import Validators

logger = logging.getLogger("geoworkshop.raster_store")

GeometryInput = Union[BaseGeometry, Feature, FeatureCollection, Sequence[BaseGeometry]]
ClassRule = tuple[float, float, float]

# Tolerance used when snapping world coordinates to cell edges.
_EDGE_EPS = 1e-9


def default_nodata(dtype: np.dtype) -> float | int:
    """Sentinel used when a raster has no nodata value but one is needed.

    ``NaN`` for floating types, the minimum for signed integers and the
    maximum for unsigned integers.
    """
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.floating):
        return float("nan")
    if np.issubdtype(dtype, np.signedinteger):
        return int(np.iinfo(dtype).min)
    if np.issubdtype(dtype, np.unsignedinteger):
        return int(np.iinfo(dtype).max)
    raise InputValidationError(f"No default nodata value for dtype {dtype}")


def _fits_dtype(value: float, dtype: np.dtype) -> bool:
    if np.issubdtype(dtype, np.floating):
        return True
    if isinstance(value, float) and (math.isnan(value) or not value.is_integer()):
        return False
    info = np.iinfo(dtype)
    return info.min <= value <= info.max


def window_for_bounds(raster_bounds: BoundingBox, transform, width: int, height: int, bbox: BoundingBox) -> Window:
    """Smallest whole-cell window covering *bbox*, clipped to the grid.

    Raises:
        DisjointExtentError: If *bbox* shares no area with the grid.
    """
    if not bbox.intersects(raster_bounds):
        raise DisjointExtentError(bbox.as_tuple(), raster_bounds.as_tuple())

    inverse = ~transform
    corners = [
        inverse @ (x, y)
        for x in (bbox.minx, bbox.maxx)
        for y in (bbox.miny, bbox.maxy)
    ]
    cols = [c for c, _ in corners]
    rows = [r for _, r in corners]
    col_start = max(0, math.floor(min(cols) + _EDGE_EPS))
    col_stop = min(width, math.ceil(max(cols) - _EDGE_EPS))
    row_start = max(0, math.floor(min(rows) + _EDGE_EPS))
    row_stop = min(height, math.ceil(max(rows) - _EDGE_EPS))

    if col_start >= col_stop or row_start >= row_stop:
        raise DisjointExtentError(bbox.as_tuple(), raster_bounds.as_tuple())
    return Window(col_start, row_start, col_stop - col_start, row_stop - row_start)


class RasterStore:
    """Load, save and transform :class:`Raster` values.

    Args:
        config: Tiling defaults.  Defaults to :class:`RasterConfig()`.
    """

    SUPPORTED_EXTENSIONS = [".tif", ".tiff", ".vrt", ".img", ".nc"]

    def __init__(self, config: RasterConfig | None = None) -> None:
        self.config = config or RasterConfig()

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(
        self,
        source: Path | str,
        *,
        bands: Sequence[int] | int | None = None,
        window: Window | None = None,
        bbox: BoundingBox | Sequence[float] | None = None,
        default_crs: CRSLike | None = None,
    ) -> Raster:
        """Read a raster, optionally only some bands and one window.

        Args:
            source: Path to the raster file.
            bands: 1-based band index or indices.  All bands when omitted.
            window: Pixel window to read.  Mutually exclusive with *bbox*.
            bbox: World-coordinate extent to read, snapped outward to whole
                  cells.
            default_crs: CRS to assume if the file declares none.

        Raises:
            FormatError: If the file is missing or unreadable.
            BandIndexError: If a requested band does not exist.
            DisjointExtentError: If *bbox* does not overlap the raster.
            CRSError: If no CRS can be determined.
        """
        if window is not None and bbox is not None:
            raise InputValidationError("Pass either window or bbox, not both")
        source_str = str(source)
        if not source_str.startswith(("http://", "https://", "/vsi")):
            Validators.assert_file_exists(Path(source))

        try:
            with rasterio.open(source_str) as src:
                indexes = self._band_indexes(bands, src.count)
                if bbox is not None:
                    box = bbox if isinstance(bbox, BoundingBox) else BoundingBox.from_sequence(bbox)
                    full_bounds = BoundingBox(*src.bounds)
                    window = window_for_bounds(full_bounds, src.transform, src.width, src.height, box)
                data = src.read(indexes, window=window)
                transform = src.window_transform(window) if window is not None else src.transform
                nodata = src.nodata
                file_crs = src.crs
        except rasterio.errors.RasterioIOError as exc:
            raise FormatError(source_str, str(exc), operation="load") from exc

        if file_crs is not None:
            crs = resolve_crs(file_crs, operation="load")
        elif default_crs is not None:
            crs = resolve_crs(default_crs, operation="load")
        else:
            raise CRSError(f"'{source_str}' declares no CRS; pass default_crs", operation="load")

        raster = Raster(data=data, transform=transform, crs=crs, nodata=nodata)
        logger.debug("Loaded %r from %s", raster, source_str)
        return raster

    @staticmethod
    def _band_indexes(bands: Sequence[int] | int | None, total: int) -> list[int]:
        if bands is None:
            return list(range(1, total + 1))
        indexes = [bands] if isinstance(bands, int) else list(bands)
        for b in indexes:
            Validators.assert_band_index_valid(b, total)
        return indexes

    # ------------------------------------------------------------------
    # Tiling
    # ------------------------------------------------------------------

    def tile_windows(self, source: Path | str, tile_size: int | None = None) -> list[Window]:
        """Row-major list of windows covering the raster in square tiles.

        Edge tiles are truncated to the raster size.
        """
        size = tile_size or self.config.tile_size
        Validators.assert_positive(size, "tile_size")
        Validators.assert_file_exists(Path(source))
        try:
            with rasterio.open(source) as src:
                width, height = src.width, src.height
        except rasterio.errors.RasterioIOError as exc:
            raise FormatError(str(source), str(exc), operation="tile_windows") from exc

        return [
            Window(col, row, min(size, width - col), min(size, height - row))
            for row in range(0, height, size)
            for col in range(0, width, size)
        ]

    def iter_tiles(
        self,
        source: Path | str,
        tile_size: int | None = None,
    ) -> Iterator[tuple[Window, Raster]]:
        """Yield ``(window, tile)`` pairs, reading one tile per step."""
        for window in self.tile_windows(source, tile_size):
            yield window, self.load(source, window=window)

    def map_tiles(
        self,
        source: Path | str,
        func: Callable[[Raster], Raster],
        *,
        tile_size: int | None = None,
        max_workers: int | None = None,
    ) -> Raster:
        """Apply *func* to every tile and assemble the full-size result.

        *func* must return a raster covering the same cells as its input
        tile.  Tiles share no state, so the result is the same whether they
        run serially or on ``max_workers`` threads.

        Raises:
            GridMismatchError: If *func* changes a tile's height or width.
        """
        windows = self.tile_windows(source, tile_size)
        workers = max_workers if max_workers is not None else self.config.max_workers

        with rasterio.open(source) as src:
            full_transform = src.transform
            height, width = src.height, src.width

        def _run(window: Window) -> tuple[Window, Raster]:
            tile = self.load(source, window=window)
            result = func(tile)
            if result.height != tile.height or result.width != tile.width:
                raise GridMismatchError(
                    f"tile function returned shape ({result.height}, {result.width}) "
                    f"for a ({tile.height}, {tile.width}) tile",
                    operation="map_tiles",
                )
            return window, result

        if workers and workers > 1:
            logger.debug("Processing %d tile(s) on %d thread(s)", len(windows), workers)
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = [pool.submit(_run, w) for w in windows]
                results = [future.result() for future in as_completed(futures)]
        else:
            results = [_run(w) for w in windows]

        first = results[0][1]
        out = np.empty((first.count, height, width), dtype=first.dtype)
        for window, tile in results:
            r0, c0 = int(window.row_off), int(window.col_off)
            out[:, r0:r0 + tile.height, c0:c0 + tile.width] = tile.data

        return Raster(data=out, transform=full_transform, crs=first.crs, nodata=first.nodata)

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def save(self, raster: Raster, destination: Path | str, *, compress: str | None = "deflate") -> Path:
        """Write *raster* as a GeoTIFF.

        Raises:
            OutputWriteError: If the file cannot be written.
        """
        destination = Path(destination)
        Validators.assert_output_dir_writable(destination)
        profile: dict[str, Any] = {
            "driver": "GTiff",
            "height": raster.height,
            "width": raster.width,
            "count": raster.count,
            "dtype": raster.dtype.name,
            "crs": to_rasterio_crs(raster.crs),
            "transform": raster.transform,
            "nodata": raster.nodata,
        }
        if compress:
            profile["compress"] = compress
        try:
            with rasterio.open(destination, "w", **profile) as dst:
                dst.write(raster.data)
        except (OSError, rasterio.errors.RasterioIOError) as exc:
            raise OutputWriteError(str(destination), str(exc)) from exc
        logger.info("Wrote %r to %s", raster, destination)
        return destination

    # ------------------------------------------------------------------
    # Crop & mask
    # ------------------------------------------------------------------

    def crop(self, raster: Raster, bbox: BoundingBox | Sequence[float]) -> Raster:
        """Restrict *raster* to the cells intersecting *bbox*.

        The bounding box is snapped outward to whole cells, so the result
        stays aligned with the source grid.

        Raises:
            DisjointExtentError: If *bbox* does not overlap the raster.
        """
        box = bbox if isinstance(bbox, BoundingBox) else BoundingBox.from_sequence(bbox)
        window = window_for_bounds(raster.bounds, raster.transform, raster.width, raster.height, box)
        r0, c0 = int(window.row_off), int(window.col_off)
        r1, c1 = r0 + int(window.height), c0 + int(window.width)
        logger.debug("crop → rows %d:%d cols %d:%d", r0, r1, c0, c1)
        return raster.replace(
            raster.data[:, r0:r1, c0:c1],
            transform=window_transform(window, raster.transform),
        )

    def mask(
        self,
        raster: Raster,
        geometry: GeometryInput,
        *,
        all_touched: bool = False,
        invert: bool = False,
        nodata: float | None = None,
    ) -> Raster:
        """Set every cell outside *geometry* to nodata.

        A cell is inside when its center falls inside the geometry, or with
        ``all_touched=True`` when the geometry touches it at all.

        Args:
            raster: Source raster.
            geometry: Shapely geometry (assumed to be in the raster CRS),
                      feature, collection, or list of geometries.
            all_touched: Keep every cell the geometry touches.
            invert: Blank the cells *inside* the geometry instead.
            nodata: Sentinel for blanked cells.  Defaults to the raster's
                    nodata, then to :func:`default_nodata`.

        Raises:
            CRSError: If a feature/collection CRS differs from the raster CRS.
        """
        geoms = self._geometries(geometry, raster, operation="mask")
        fill = self._resolve_nodata(raster, nodata)
        data = raster.data
        if not _fits_dtype(fill, data.dtype):
            data = data.astype(np.float64)

        if geoms:
            outside = geometry_mask(
                [mapping(g) for g in geoms],
                out_shape=(raster.height, raster.width),
                transform=raster.transform,
                all_touched=all_touched,
                invert=invert,
            )
        else:
            outside = np.full((raster.height, raster.width), not invert, dtype=bool)

        out = np.array(data, copy=True)
        out[:, outside] = fill
        return raster.replace(out, nodata=fill)

    @staticmethod
    def _geometries(geometry: GeometryInput, raster: Raster, *, operation: str) -> list[BaseGeometry]:
        if isinstance(geometry, FeatureCollection):
            require_same_crs(raster.crs, geometry.crs, operation=operation, labels=("raster", "geometry"))
            geoms = geometry.geometries
        elif isinstance(geometry, Feature):
            require_same_crs(raster.crs, geometry.crs, operation=operation, labels=("raster", "geometry"))
            geoms = [geometry.geometry]
        elif isinstance(geometry, BaseGeometry):
            geoms = [geometry]
        else:
            geoms = list(geometry)
        return [g for g in geoms if g is not None and not g.is_empty]

    @staticmethod
    def _resolve_nodata(raster: Raster, nodata: float | None) -> float:
        if nodata is not None:
            return nodata
        if raster.nodata is not None:
            return raster.nodata
        return default_nodata(raster.dtype)

    # ------------------------------------------------------------------
    # Map algebra
    # ------------------------------------------------------------------

    def reclassify(
        self,
        raster: Raster,
        rules: Sequence[ClassRule] | Mapping[float, float],
        *,
        others: float | None = None,
    ) -> Raster:
        """Map cell values to new classes.

        Args:
            raster: Source raster.
            rules: Either ``(low, high, new_value)`` triples matching
                   ``low <= value < high`` (first matching rule wins), or a
                   ``{old_value: new_value}`` mapping for categorical data.
            others: Value for valid cells no rule matches.  ``None`` keeps
                    their original value.

        Nodata cells stay nodata.
        """
        if isinstance(rules, Mapping):
            triples = [(k, k, v) for k, v in rules.items()]
            exact = True
        else:
            triples = [tuple(r) for r in rules]
            exact = False
            for r in triples:
                if len(r) != 3 or r[0] > r[1]:
                    raise InputValidationError(f"Invalid reclassify rule {r!r}; expected (low, high, value)")

        new_values = [np.asarray(r[2]) for r in triples]
        if others is not None:
            new_values.append(np.asarray(others))
        dtype = np.result_type(raster.dtype, *new_values)

        src = raster.data
        out = src.astype(dtype, copy=True)
        invalid = np.stack([raster.nodata_mask(i) for i in range(1, raster.count + 1)])
        assigned = invalid.copy()

        for low, high, value in triples:
            hit = (src == low) if exact else ((src >= low) & (src < high))
            hit &= ~assigned
            out[hit] = value
            assigned |= hit

        if others is not None:
            out[~assigned] = others
        return raster.replace(out)

    def calc(
        self,
        func: Callable[..., Any],
        *rasters: Raster,
        nodata: float | None = None,
    ) -> Raster:
        """Local map algebra: combine aligned rasters cell by cell.

        *func* receives one masked array of shape ``(bands, rows, cols)``
        per input raster, with nodata cells masked, and returns an array.
        Cells masked in the result become nodata.

        Example::

            ndvi = store.calc(lambda nir, red: (nir - red) / (nir + red), nir, red)

        Raises:
            GridMismatchError: If the rasters do not share one grid.
        """
        if not rasters:
            raise InputValidationError("calc needs at least one raster")
        first = rasters[0]
        for other in rasters[1:]:
            if not first.same_grid(other):
                raise GridMismatchError(
                    f"{other!r} is not on the same grid as {first!r}",
                    operation="calc",
                )

        inputs = [
            np.ma.MaskedArray(
                r.data,
                mask=np.stack([r.nodata_mask(i) for i in range(1, r.count + 1)]),
            )
            for r in rasters
        ]
        with np.errstate(divide="ignore", invalid="ignore"):
            result = np.ma.masked_invalid(np.ma.asarray(func(*inputs)))

        if result.ndim == 2:
            result = result[np.newaxis, ...]
        if result.shape[1:] != (first.height, first.width):
            raise GridMismatchError(
                f"calc function returned shape {result.shape}, expected "
                f"(bands, {first.height}, {first.width})",
                operation="calc",
            )

        fill = nodata if nodata is not None else first.nodata
        if fill is None or not _fits_dtype(fill, result.dtype):
            fill = default_nodata(result.dtype)
        out = result.filled(fill)
        return Raster(data=out, transform=first.transform, crs=first.crs, nodata=fill)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    def extract(
        self,
        raster: Raster,
        points: FeatureCollection | Iterable[Point | tuple[float, float]],
        band: int = 1,
    ) -> list[float | int | None]:
        """Cell values under each point.

        Points outside the raster or over nodata cells yield ``None``.

        Raises:
            CRSError: If a collection's CRS differs from the raster CRS.
            InputValidationError: If a location is not a non-empty Point.
        """
        if isinstance(points, FeatureCollection):
            require_same_crs(raster.crs, points.crs, operation="extract", labels=("raster", "points"))
            points = list(points.geometries)
        coords = []
        for p in points:
            if isinstance(p, Point) and not p.is_empty:
                coords.append((p.x, p.y))
            elif isinstance(p, BaseGeometry) or p is None:
                kind = p.geom_type if p is not None else "None"
                raise InputValidationError(f"extract needs Point geometries, got {kind}", operation="extract")
            else:
                coords.append((float(p[0]), float(p[1])))

        values = raster.band(band)
        invalid = raster.nodata_mask(band)
        inverse = ~raster.transform
        out: list[float | int | None] = []
        for x, y in coords:
            col_f, row_f = inverse @ (x, y)
            col, row = math.floor(col_f), math.floor(row_f)
            if not (0 <= row < raster.height and 0 <= col < raster.width) or invalid[row, col]:
                out.append(None)
            else:
                out.append(values[row, col].item())
        return out
