"""
GeometryStore — Vector I/O
===========================
Reads Shapefile, GeoPackage and GeoJSON sources into
:class:`~geoworkshop.models.FeatureCollection` objects and writes them back.

Reading and writing go through :mod:`geopandas` (pyogrio engine), so any
OGR-readable source works for :meth:`GeometryStore.load`; writing is limited
to the three workshop formats.

Usage::

    store = GeometryStore()
    gages = store.load(Path("data/gages.gpkg"))
    store.save(gages, Path("output/gages.geojson"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import geopandas as gpd
from pyogrio.errors import DataLayerError, DataSourceError

from geoworkshop.crs import CRS84, CRSLike, resolve_crs
from geoworkshop.exceptions import CRSError, FormatError, OutputWriteError, UnsupportedFormatError
from geoworkshop.models import BoundingBox, FeatureCollection
from geoworkshop.validators import Validators

logger = logging.getLogger("geoworkshop.geometry_store")

_REMOTE_PREFIXES = ("http://", "https://", "/vsi")
_SHAPEFILE_FIELD_LIMIT = 10


class GeometryStore:
    """Load and save vector feature collections.

    Attributes:
        DRIVERS: OGR driver name → default file suffix for writable formats.
    """

    DRIVERS: dict[str, str] = {
        "ESRI Shapefile": ".shp",
        "GPKG": ".gpkg",
        "GeoJSON": ".geojson",
    }

    _ALIASES: dict[str, str] = {
        "esri shapefile": "ESRI Shapefile",
        "shapefile": "ESRI Shapefile",
        "shp": "ESRI Shapefile",
        "gpkg": "GPKG",
        "geopackage": "GPKG",
        "geojson": "GeoJSON",
        "json": "GeoJSON",
    }

    _GEOJSON_SUFFIXES = (".geojson", ".json")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def load(
        self,
        source: Path | str,
        *,
        layer: str | int | None = None,
        bbox: BoundingBox | Sequence[float] | None = None,
        id_field: str | None = None,
        default_crs: CRSLike | None = None,
    ) -> FeatureCollection:
        """Read a vector source into a :class:`FeatureCollection`.

        Args:
            source: File path (or GDAL-readable URL / ``/vsi`` path).
            layer: Layer name or index for multi-layer sources (GeoPackage).
            bbox: Only read features intersecting this extent, expressed in
                  the source's CRS.
            id_field: Attribute column to use as feature identifiers.
                      Defaults to the feature's position in the file.
            default_crs: CRS to assume when the source declares none
                         (e.g. a shapefile without a ``.prj`` sidecar).

        Raises:
            FormatError: If the source is missing or the driver cannot read it.
            CRSError: If no CRS can be determined.
            ColumnNotFoundError: If *id_field* is not a column of the source.
        """
        source_str = str(source)
        is_remote = source_str.startswith(_REMOTE_PREFIXES)
        if not is_remote:
            Validators.assert_file_exists(Path(source))

        read_kwargs: dict = {}
        if layer is not None:
            read_kwargs["layer"] = layer
        if bbox is not None:
            box = bbox if isinstance(bbox, BoundingBox) else BoundingBox.from_sequence(bbox)
            read_kwargs["bbox"] = box.as_tuple()

        logger.debug("Reading vector source %s", source_str)
        try:
            gdf = gpd.read_file(source_str, **read_kwargs)
        except (DataSourceError, DataLayerError) as exc:
            raise FormatError(source_str, str(exc), operation="load") from exc

        if gdf.crs is None:
            gdf = gdf.set_crs(self._fallback_crs(source_str, default_crs))

        if id_field is not None:
            Validators.assert_columns_exist(list(gdf.columns), [id_field], operation="load")

        collection = FeatureCollection.from_geodataframe(gdf, id_field=id_field)
        logger.info(
            "Loaded %d feature(s) from %s (%s)",
            len(collection),
            Path(source_str).name,
            collection.crs.name if collection.crs else "no CRS",
        )
        return collection

    def _fallback_crs(self, source: str, default_crs: CRSLike | None):
        if default_crs is not None:
            return resolve_crs(default_crs, operation="load")
        if source.lower().endswith(self._GEOJSON_SUFFIXES):
            logger.debug("No CRS member in %s; assuming OGC:CRS84", source)
            return CRS84
        raise CRSError(
            f"'{source}' declares no CRS (missing .prj?); pass default_crs",
            operation="load",
        )

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def save(
        self,
        collection: FeatureCollection,
        destination: Path | str,
        format: str | None = None,  # noqa: A002
        *,
        layer: str | None = None,
    ) -> Path:
        """Write *collection* to *destination*.

        Args:
            collection: Features to write.
            destination: Output path.  Parent directories are created.
            format: Driver name or alias (``"shp"``, ``"gpkg"``,
                    ``"geojson"``…).  Inferred from the suffix when omitted.
            layer: Layer name for GeoPackage output (defaults to the stem).

        Returns:
            The path that was written.

        Raises:
            UnsupportedFormatError: If the format is unknown.
            CRSError: If the collection has no CRS.
            OutputWriteError: If the driver or OS refuses the write.
        """
        destination = Path(destination)
        driver = self.resolve_driver(format, destination)
        if collection.crs is None:
            raise CRSError("collection has no CRS", operation="save")

        Validators.assert_output_dir_writable(destination)
        gdf = collection.to_geodataframe()

        if driver == "ESRI Shapefile":
            long_names = [c for c in gdf.columns if c != gdf.geometry.name and len(c) > _SHAPEFILE_FIELD_LIMIT]
            if long_names:
                logger.warning(
                    "Shapefile field names are limited to %d characters; "
                    "these will be truncated: %s",
                    _SHAPEFILE_FIELD_LIMIT,
                    ", ".join(long_names),
                )

        write_kwargs: dict = {"driver": driver, "index": False}
        if driver == "GPKG":
            write_kwargs["layer"] = layer or destination.stem

        try:
            gdf.to_file(destination, **write_kwargs)
        except (OSError, DataSourceError, DataLayerError) as exc:
            raise OutputWriteError(str(destination), str(exc)) from exc

        logger.info("Wrote %d feature(s) to %s [%s]", len(collection), destination, driver)
        return destination

    @classmethod
    def resolve_driver(cls, format_name: str | None, destination: Path | None = None) -> str:
        """Map a format name, alias or file suffix to an OGR driver name.

        Raises:
            UnsupportedFormatError: If nothing matches.
        """
        supported = list(cls.DRIVERS)
        if format_name is None:
            suffix = destination.suffix.lower() if destination is not None else ""
            for driver, ext in cls.DRIVERS.items():
                if suffix == ext:
                    return driver
            if suffix == ".json":
                return "GeoJSON"
            raise UnsupportedFormatError(suffix or "<no suffix>", supported)

        if format_name in cls.DRIVERS:
            return format_name
        driver = cls._ALIASES.get(format_name.lower().lstrip("."))
        if driver is None:
            raise UnsupportedFormatError(format_name, supported)
        return driver
