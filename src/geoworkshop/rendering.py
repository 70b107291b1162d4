"""
geoworkshop — Map Rendering
============================
Static maps of rasters and vector layers drawn with matplotlib.

All styling comes from an explicit :class:`~geoworkshop.config.MapRenderConfig`
argument; nothing is read from module-level plotting state.

Usage::

    cfg = MapRenderConfig(cmap="terrain", title="Elevation and gages")
    render_map([dem, gages], cfg, output_path=Path("output/map.png"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence, Union

import geopandas as gpd
import matplotlib
matplotlib.use("Agg")  # non-interactive backend safe for headless execution
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from geoworkshop.config import MapRenderConfig
from geoworkshop.crs import crs_equal, crs_label, resolve_crs
from geoworkshop.exceptions import CRSError, InputValidationError, OutputWriteError
from geoworkshop.models import FeatureCollection, Raster
from geoworkshop.tables import SpatialTable
from geoworkshop.validators import Validators

logger = logging.getLogger("geoworkshop.rendering")

Layer = Union[Raster, FeatureCollection, SpatialTable, gpd.GeoDataFrame]


def render_map(
    layers: Layer | Sequence[Layer],
    config: MapRenderConfig | None = None,
    output_path: Path | None = None,
) -> Figure:
    """Draw *layers* bottom-to-top on one set of axes.

    Rasters show band 1 with nodata cells left transparent.  Vector layers
    are colored by ``config.column`` when that column exists in the layer,
    otherwise filled with ``config.facecolor``.

    Args:
        layers: One layer or a sequence of layers, all in the same CRS.
        config: Styling; defaults to ``MapRenderConfig()``.
        output_path: When given, the figure is saved there (PNG/PDF/SVG by
                     suffix) and closed.

    Returns:
        The matplotlib figure.

    Raises:
        InputValidationError: If there is nothing to draw.
        CRSError: If layers are in different CRSs.
        ColumnNotFoundError: If ``config.column`` is missing from every
            vector layer.
        OutputWriteError: If the image cannot be written.
    """
    config = config or MapRenderConfig()
    items: list[Layer] = list(layers) if isinstance(layers, (list, tuple)) else [layers]
    if not items:
        raise InputValidationError("render_map needs at least one layer", operation="render_map")

    frames = [_as_drawable(layer) for layer in items]
    _check_crs(frames)

    fig, ax = plt.subplots(figsize=config.figsize)
    colored = False
    vector_columns: list[str] = []
    for frame in frames:
        if isinstance(frame, Raster):
            _draw_raster(ax, frame, config)
            continue
        vector_columns.extend(str(c) for c in frame.columns)
        use_column = config.column is not None and config.column in frame.columns
        colored |= use_column
        _draw_vector(ax, frame, config, use_column)

    if config.column is not None and not colored and vector_columns:
        Validators.assert_columns_exist(sorted(set(vector_columns)), [config.column], operation="render_map")

    if config.title:
        ax.set_title(config.title, fontsize=13, fontweight="bold")
    if not config.show_axes:
        ax.axis("off")
    ax.set_aspect("equal")

    if output_path is not None:
        output_path = Path(output_path)
        Validators.assert_output_dir_writable(output_path)
        try:
            fig.savefig(str(output_path), dpi=config.dpi, bbox_inches="tight")
        except (OSError, ValueError) as exc:
            raise OutputWriteError(str(output_path), str(exc)) from exc
        finally:
            plt.close(fig)
        logger.info("Map written → %s", output_path)
    return fig


def _as_drawable(layer: Layer) -> Raster | gpd.GeoDataFrame:
    if isinstance(layer, Raster):
        return layer
    if isinstance(layer, FeatureCollection):
        return layer.to_geodataframe()
    if isinstance(layer, SpatialTable):
        return layer.to_pandas()
    if isinstance(layer, gpd.GeoDataFrame):
        return layer
    raise InputValidationError(
        f"Cannot draw a {type(layer).__name__}; expected Raster, FeatureCollection, "
        "SpatialTable or GeoDataFrame",
        operation="render_map",
    )


def _check_crs(frames: list[Raster | gpd.GeoDataFrame]) -> None:
    known = [(i, resolve_crs(f.crs)) for i, f in enumerate(frames) if f.crs is not None]
    for index, crs in known[1:]:
        if not crs_equal(known[0][1], crs):
            raise CRSError(
                f"layer {known[0][0]} is {crs_label(known[0][1])} but layer {index} is "
                f"{crs_label(crs)}; reproject before rendering",
                operation="render_map",
            )


def _draw_raster(ax, raster: Raster, config: MapRenderConfig) -> None:
    bounds = raster.bounds
    image = ax.imshow(
        raster.masked(1),
        cmap=config.cmap,
        alpha=config.alpha,
        extent=(bounds.minx, bounds.maxx, bounds.miny, bounds.maxy),
        interpolation="nearest",
    )
    if config.legend and config.column is None:
        ax.figure.colorbar(image, ax=ax, shrink=0.8)


def _draw_vector(ax, gdf: gpd.GeoDataFrame, config: MapRenderConfig, use_column: bool) -> None:
    if gdf.empty:
        return
    style = {
        "ax": ax,
        "edgecolor": config.edgecolor,
        "linewidth": config.linewidth,
        "alpha": config.alpha,
    }
    if use_column:
        gdf.plot(column=config.column, cmap=config.cmap, legend=config.legend, **style)
    else:
        gdf.plot(facecolor=config.facecolor, **style)
