"""
geoworkshop — Geospatial Workshop Toolkit
==========================================
Load, transform, relate and summarize vector and raster data, and fetch
geodata from web services, behind one consistent data model::

    from geoworkshop import GeometryStore, RasterStore, ZonalEngine

    basins = GeometryStore().load("data/basins.gpkg")
    dem = RasterStore().load("data/dem.tif")
    means = ZonalEngine().aggregate(dem, basins, "mean")

Rendering (:mod:`geoworkshop.rendering`) and the command-line tools
(:mod:`geoworkshop.tools`, :mod:`geoworkshop.cli`) are imported on demand.
"""

from geoworkshop.config import (
    MapRenderConfig,
    RasterConfig,
    ServiceConfig,
    WorkshopConfig,
    load_config,
)
from geoworkshop.crs import resolve_crs
from geoworkshop.exceptions import (
    CRSError,
    GeoWorkshopError,
    InputValidationError,
    RasterError,
    ServiceError,
)
from geoworkshop.geometry_store import GeometryStore
from geoworkshop.models import BoundingBox, Feature, FeatureCollection, Raster
from geoworkshop.predicates import PredicateEngine
from geoworkshop.raster_store import RasterStore
from geoworkshop.service import (
    CancellationToken,
    Expectation,
    FetchQuery,
    HydroDataClient,
    ServiceClient,
)
from geoworkshop.tables import PlainTable, SpatialTable
from geoworkshop.transforms import EMPTY, TransformEngine
from geoworkshop.zonal import ZonalEngine

__version__ = "1.0.0"

__all__ = [
    "BoundingBox",
    "Feature",
    "FeatureCollection",
    "Raster",
    "GeometryStore",
    "RasterStore",
    "PredicateEngine",
    "TransformEngine",
    "EMPTY",
    "ZonalEngine",
    "ServiceClient",
    "HydroDataClient",
    "FetchQuery",
    "Expectation",
    "CancellationToken",
    "SpatialTable",
    "PlainTable",
    "WorkshopConfig",
    "ServiceConfig",
    "RasterConfig",
    "MapRenderConfig",
    "load_config",
    "resolve_crs",
    "GeoWorkshopError",
    "InputValidationError",
    "CRSError",
    "RasterError",
    "ServiceError",
]
