"""
geoworkshop — CLI Entry Point
==============================
Command-line interface built with Click.  Installed as the ``geo-workshop``
command via ``pyproject.toml``.

Usage:
    geo-workshop reproject -i data/gages.gpkg -o out/gages_utm.gpkg --to-crs EPSG:32614
    geo-workshop clip -i data/dem.tif -o out/dem_basin.tif --mask data/basin.geojson
    geo-workshop zonal -i data/dem.tif -z data/basins.gpkg -o out/stats.csv -s mean -s max
    geo-workshop check -i data/parcels.shp -o out/parcels_report.json

Run ``geo-workshop COMMAND --help`` for a full list of options.
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from geoworkshop.base_tool import GeoTool
from geoworkshop.exceptions import GeoWorkshopError
from geoworkshop.tools import GeometryCheckTool, RasterClipTool, ReprojectTool, ZonalStatsTool
from geoworkshop.zonal import SUPPORTED_STATISTICS

_INPUT = click.Path(exists=True, file_okay=True, dir_okay=False, path_type=Path)
_OUTPUT = click.Path(file_okay=True, dir_okay=False, path_type=Path)


def _run(tool: GeoTool) -> None:
    """Run *tool*, turning package errors into a clean exit code 1."""
    try:
        tool.run()
    except GeoWorkshopError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)


@click.group(
    name="geo-workshop",
    help="Vector, raster and zonal geoprocessing commands.",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug-level logging.",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool) -> None:
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose


# ---------------------------------------------------------------------------
# reproject
# ---------------------------------------------------------------------------


@main.command(help="Reproject every feature of a vector file into another CRS.")
@click.option("--input", "-i", "input_path", required=True, type=_INPUT, help="Source vector file.")
@click.option("--output", "-o", "output_path", required=True, type=_OUTPUT, help="Destination vector file.")
@click.option("--to-crs", "target_crs", required=True, help="Target CRS (e.g. EPSG:32614 or a PROJ string).")
@click.option(
    "--format", "-f",
    "output_format",
    default=None,
    help="Output format (shp, gpkg, geojson). Inferred from the suffix by default.",
)
@click.option("--assume-crs", "default_crs", default=None, help="CRS to assume when the source declares none.")
@click.pass_context
def reproject(
    ctx: click.Context,
    input_path: Path,
    output_path: Path,
    target_crs: str,
    output_format: str | None,
    default_crs: str | None,
) -> None:
    tool = ReprojectTool(
        input_path=input_path,
        output_path=output_path,
        target_crs=target_crs,
        output_format=output_format,
        default_crs=default_crs,
        verbose=ctx.obj["verbose"],
    )
    _run(tool)
    click.echo(f"Reprojected {tool.feature_count} feature(s) → {output_path}")


# ---------------------------------------------------------------------------
# clip
# ---------------------------------------------------------------------------


@main.command(help="Crop a raster to a bounding box and/or mask it with polygons.")
@click.option("--input", "-i", "input_path", required=True, type=_INPUT, help="Source GeoTIFF.")
@click.option("--output", "-o", "output_path", required=True, type=_OUTPUT, help="Destination GeoTIFF.")
@click.option(
    "--bbox",
    nargs=4,
    type=float,
    default=None,
    help="MINX MINY MAXX MAXY in the raster CRS.",
)
@click.option("--mask", "mask_path", type=_INPUT, default=None, help="Vector file of mask polygons.")
@click.option("--all-touched", is_flag=True, default=False, help="Keep every cell a polygon touches.")
@click.pass_context
def clip(
    ctx: click.Context,
    input_path: Path,
    output_path: Path,
    bbox: tuple[float, float, float, float] | None,
    mask_path: Path | None,
    all_touched: bool,
) -> None:
    try:
        tool = RasterClipTool(
            input_path=input_path,
            output_path=output_path,
            bbox=bbox or None,
            mask_path=mask_path,
            all_touched=all_touched,
            verbose=ctx.obj["verbose"],
        )
    except GeoWorkshopError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)
    _run(tool)
    click.echo(f"Clipped raster written to: {output_path}")


# ---------------------------------------------------------------------------
# zonal
# ---------------------------------------------------------------------------


@main.command(help="Summarize raster values inside zone polygons.")
@click.option("--input", "-i", "input_path", required=True, type=_INPUT, help="Value raster.")
@click.option("--zones", "-z", "zones_path", required=True, type=_INPUT, help="Zone polygons.")
@click.option(
    "--output", "-o",
    "output_path",
    required=True,
    type=_OUTPUT,
    help="Output table (.csv) or vector file keeping the zone geometries.",
)
@click.option(
    "--stat", "-s",
    "statistics",
    multiple=True,
    type=click.Choice(SUPPORTED_STATISTICS, case_sensitive=False),
    help="Statistic to compute (can be repeated). Defaults to mean.",
)
@click.option("--band", "-b", type=int, default=1, show_default=True, help="1-based band index.")
@click.option("--all-touched", is_flag=True, default=False, help="Count every cell a zone touches.")
@click.pass_context
def zonal(
    ctx: click.Context,
    input_path: Path,
    zones_path: Path,
    output_path: Path,
    statistics: tuple[str, ...],
    band: int,
    all_touched: bool,
) -> None:
    tool = ZonalStatsTool(
        input_path=input_path,
        output_path=output_path,
        zones_path=zones_path,
        statistics=[s.lower() for s in statistics] or ["mean"],
        all_touched=all_touched,
        band=band,
        verbose=ctx.obj["verbose"],
    )
    _run(tool)
    click.echo(f"Statistics for {tool.zone_count} zone(s) written to: {output_path}")


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------


@main.command(help="Report empty, invalid and self-intersecting geometries.")
@click.option("--input", "-i", "input_path", required=True, type=_INPUT, help="Vector file to check.")
@click.option("--output", "-o", "output_path", required=True, type=_OUTPUT, help="JSON report path.")
@click.option("--id-field", default=None, help="Attribute column holding feature identifiers.")
@click.option("--assume-crs", "default_crs", default=None, help="CRS to assume when the source declares none.")
@click.pass_context
def check(
    ctx: click.Context,
    input_path: Path,
    output_path: Path,
    id_field: str | None,
    default_crs: str | None,
) -> None:
    tool = GeometryCheckTool(
        input_path=input_path,
        output_path=output_path,
        id_field=id_field,
        default_crs=default_crs,
        verbose=ctx.obj["verbose"],
    )
    _run(tool)
    click.echo(
        f"\nResults: {tool.feature_count} feature(s) checked | {len(tool.issues)} issue(s)"
    )
    click.echo(f"Report written to: {output_path}")


if __name__ == "__main__":
    main()
