"""
ServiceClient — Remote Geodata Retrieval
=========================================
Fetches vector (GeoJSON) and raster (GeoTIFF / NetCDF bytes) payloads over
HTTP(S) with bounded timeouts, exponential-backoff retries, payload
validation and cooperative cancellation.

Retry schedule:
    Attempt *n* (1-based) that fails with a connection error, a timeout or
    a retryable status (429 / 5xx by default) is followed by a pause of
    ``min(max_backoff, backoff_factor * 2 ** (n - 1))`` seconds.  Any other
    4xx response is raised immediately as :class:`ServiceRequestError`.

Usage::

    client = ServiceClient()
    basins = client.fetch(
        "https://example.org/collections/basins/items",
        FetchQuery(bbox=BoundingBox(-97.9, 30.1, -97.5, 30.5)),
        expect=Expectation(kind="features", geometry_types={"Polygon", "MultiPolygon"}),
    )
"""

from __future__ import annotations

import io
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Mapping, Sequence

import pandas as pd
import requests
from rasterio.errors import RasterioIOError
from rasterio.io import MemoryFile
from shapely.geometry import shape

from geoworkshop.config import ServiceConfig
from geoworkshop.crs import CRS84, CRSLike, crs_equal, crs_label, resolve_crs
from geoworkshop.exceptions import (
    CancelledError,
    CRSError,
    InputValidationError,
    SchemaMismatchError,
    ServiceRequestError,
    ServiceUnavailableError,
)
from geoworkshop.models import BoundingBox, Feature, FeatureCollection, Raster
from geoworkshop.tables import PlainTable

logger = logging.getLogger("geoworkshop.service")


# ---------------------------------------------------------------------------
# Request / response descriptions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try and how long to wait between attempts."""

    max_attempts: int = 3
    backoff_factor: float = 0.5
    max_backoff: float = 30.0
    retry_statuses: tuple[int, ...] = (429, 500, 502, 503, 504)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InputValidationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.backoff_factor < 0 or self.max_backoff < 0:
            raise InputValidationError("backoff values must be >= 0")

    @classmethod
    def from_config(cls, config: ServiceConfig) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_attempts,
            backoff_factor=config.backoff_factor,
            max_backoff=config.max_backoff,
            retry_statuses=tuple(config.retry_statuses),
        )

    def delay(self, attempt: int) -> float:
        """Pause after failed 1-based *attempt*."""
        return min(self.max_backoff, self.backoff_factor * 2 ** (attempt - 1))


@dataclass(frozen=True)
class FetchQuery:
    """Filters sent with a request.

    Attributes:
        bbox: Spatial filter, sent as ``bbox=minx,miny,maxx,maxy``.
        ids: Identifiers, sent comma-joined as ``ids``.
        start_date: Start of the time window (inclusive).
        end_date: End of the time window (inclusive).
        params: Extra service-specific parameters.
        method: ``"GET"`` (parameters in the query string) or ``"POST"``
                (parameters as a JSON body).
    """

    bbox: BoundingBox | None = None
    ids: Sequence[Any] | None = None
    start_date: date | str | None = None
    end_date: date | str | None = None
    params: Mapping[str, Any] = field(default_factory=dict)
    method: str = "GET"

    def __post_init__(self) -> None:
        if self.method.upper() not in ("GET", "POST"):
            raise InputValidationError(f"method must be GET or POST, got {self.method!r}")
        object.__setattr__(self, "method", self.method.upper())

    def to_params(self) -> dict[str, Any]:
        """Flatten into request parameters.

        The time window uses the OGC API ``datetime`` interval form, with
        ``..`` for an open end.
        """
        out: dict[str, Any] = {}
        if self.bbox is not None:
            out["bbox"] = self.bbox.to_query_param()
        if self.ids:
            out["ids"] = ",".join(str(i) for i in self.ids)
        if self.start_date is not None or self.end_date is not None:
            start = str(self.start_date) if self.start_date is not None else ".."
            end = str(self.end_date) if self.end_date is not None else ".."
            out["datetime"] = f"{start}/{end}"
        out.update(self.params)
        return out


@dataclass(frozen=True)
class Expectation:
    """What a caller expects a payload to look like.

    Attributes:
        kind: ``"features"`` or ``"raster"``.
        crs: Required CRS of the payload, if any.
        geometry_types: Allowed geometry types for feature payloads.
    """

    kind: str = "features"
    crs: CRSLike | None = None
    geometry_types: frozenset[str] | set[str] | None = None

    def __post_init__(self) -> None:
        if self.kind not in ("features", "raster"):
            raise InputValidationError(f"kind must be 'features' or 'raster', got {self.kind!r}")


class CancellationToken:
    """Thread-safe flag a caller sets to abandon an in-flight fetch.

    The fetch checks the token before every attempt and wakes from a
    backoff pause as soon as the token is cancelled.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds; return ``True`` if cancelled meanwhile."""
        return self._event.wait(timeout)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ServiceClient:
    """HTTP client for geodata services.

    Args:
        config: Network behavior.  Defaults to :class:`ServiceConfig()`.
        session: Optional pre-configured ``requests.Session``.
        sleep: Replacement for the backoff pause (called with seconds);
               mainly for tests.
    """

    def __init__(
        self,
        config: ServiceConfig | None = None,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.config = config or ServiceConfig()
        self.policy = RetryPolicy.from_config(self.config)
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = self.config.user_agent
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: ServiceConfig, **kwargs: Any) -> "ServiceClient":
        return cls(config=config, **kwargs)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def fetch(
        self,
        endpoint: str,
        query: FetchQuery | None = None,
        *,
        expect: Expectation | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> FeatureCollection | Raster:
        """Retrieve and decode a geodata payload.

        JSON bodies are decoded as GeoJSON (``OGC:CRS84`` unless a legacy
        ``crs`` member names another CRS); any other body is opened as an
        in-memory raster.

        Raises:
            ServiceRequestError: On a non-retryable 4xx response.
            ServiceUnavailableError: When every attempt failed.
            SchemaMismatchError: If the payload cannot be decoded or does
                not meet *expect*.
            CancelledError: If *cancel_token* is cancelled.
        """
        response = self._request(endpoint, query, timeout, cancel_token)
        if expect is not None and expect.kind == "raster" and _is_json(response):
            raise SchemaMismatchError(endpoint, "raster", response.headers.get("Content-Type", "JSON"))
        if expect is not None and expect.kind == "features" and not _is_json(response):
            raise SchemaMismatchError(endpoint, "GeoJSON", response.headers.get("Content-Type", "binary"))

        if _is_json(response):
            payload: FeatureCollection | Raster = self._decode_geojson(endpoint, response)
        else:
            payload = self._decode_raster(endpoint, response)

        if expect is not None:
            self._check(endpoint, payload, expect)
        logger.info("Fetched %r from %s", payload, endpoint)
        return payload

    def fetch_json(
        self,
        endpoint: str,
        query: FetchQuery | None = None,
        *,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> Any:
        """Retrieve a JSON document with the same retry behavior as :meth:`fetch`."""
        response = self._request(endpoint, query, timeout, cancel_token)
        try:
            return response.json()
        except ValueError as exc:
            raise SchemaMismatchError(endpoint, "JSON", "unparseable body") from exc

    def fetch_table(
        self,
        endpoint: str,
        query: FetchQuery | None = None,
        *,
        records_key: str | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PlainTable:
        """Retrieve tabular data as a :class:`PlainTable`.

        CSV bodies are parsed with pandas.  JSON bodies must be a list of
        records, or an object holding that list under *records_key*.
        """
        response = self._request(endpoint, query, timeout, cancel_token)
        content_type = response.headers.get("Content-Type", "")
        if "csv" in content_type or "text/plain" in content_type:
            return PlainTable(pd.read_csv(io.StringIO(response.text), comment="#"))

        try:
            body = response.json()
        except ValueError as exc:
            raise SchemaMismatchError(endpoint, "JSON or CSV table", content_type or "unknown") from exc
        records = body.get(records_key) if records_key and isinstance(body, dict) else body
        if not isinstance(records, list):
            raise SchemaMismatchError(endpoint, "list of records", type(records).__name__)
        return PlainTable(pd.DataFrame.from_records(records))

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _request(
        self,
        endpoint: str,
        query: FetchQuery | None,
        timeout: float | None,
        cancel_token: CancellationToken | None,
    ) -> requests.Response:
        query = query or FetchQuery()
        params = query.to_params()
        request_kwargs: dict[str, Any] = {"timeout": timeout or self.config.timeout}
        if query.method == "POST":
            request_kwargs["json"] = params
        else:
            request_kwargs["params"] = params

        last_error = "no attempt made"
        attempts = self.policy.max_attempts
        for attempt in range(1, attempts + 1):
            self._raise_if_cancelled(endpoint, cancel_token)
            retry_after: float | None = None
            try:
                response = self._session.request(query.method, endpoint, **request_kwargs)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
            else:
                status = response.status_code
                if status < 400:
                    logger.debug("%s %s → %d (attempt %d)", query.method, endpoint, status, attempt)
                    return response
                if status not in self.policy.retry_statuses:
                    raise ServiceRequestError(endpoint, status, response.text[:500])
                last_error = f"HTTP {status}"
                retry_after = _retry_after(response)

            logger.warning("%s attempt %d/%d failed: %s", endpoint, attempt, attempts, last_error)
            if attempt < attempts:
                delay = self.policy.delay(attempt)
                if retry_after is not None:
                    delay = min(self.policy.max_backoff, max(delay, retry_after))
                self._pause(endpoint, delay, cancel_token)

        raise ServiceUnavailableError(endpoint, attempts, last_error)

    def _pause(self, endpoint: str, seconds: float, cancel_token: CancellationToken | None) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        elif cancel_token is not None:
            cancel_token.wait(seconds)
        else:
            time.sleep(seconds)
        self._raise_if_cancelled(endpoint, cancel_token)

    @staticmethod
    def _raise_if_cancelled(endpoint: str, cancel_token: CancellationToken | None) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            logger.info("Fetch from %s cancelled", endpoint)
            raise CancelledError(endpoint)

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    @staticmethod
    def _decode_geojson(endpoint: str, response: requests.Response) -> FeatureCollection:
        try:
            body = response.json()
        except ValueError as exc:
            raise SchemaMismatchError(endpoint, "GeoJSON", "unparseable body") from exc
        if not isinstance(body, dict) or "type" not in body:
            raise SchemaMismatchError(endpoint, "GeoJSON object", type(body).__name__)

        crs = CRS84
        crs_name = (body.get("crs") or {}).get("properties", {}).get("name")
        if crs_name:
            try:
                crs = resolve_crs(crs_name, operation="fetch")
            except CRSError as exc:
                raise SchemaMismatchError(endpoint, "resolvable crs member", crs_name) from exc

        kind = body["type"]
        if kind == "FeatureCollection":
            raw_features = body.get("features") or []
        elif kind == "Feature":
            raw_features = [body]
        else:
            raw_features = [{"type": "Feature", "geometry": body, "properties": {}}]

        features = []
        for index, raw in enumerate(raw_features):
            try:
                geom = shape(raw["geometry"]) if raw.get("geometry") else None
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                raise SchemaMismatchError(endpoint, "GeoJSON geometry", str(exc)) from exc
            features.append(
                Feature(
                    id=raw.get("id", index),
                    geometry=geom,
                    crs=crs,
                    attributes=raw.get("properties") or {},
                )
            )
        try:
            return FeatureCollection(features, crs=crs)
        except InputValidationError as exc:
            raise SchemaMismatchError(endpoint, "unique feature ids", exc.message) from exc

    @staticmethod
    def _decode_raster(endpoint: str, response: requests.Response) -> Raster:
        try:
            with MemoryFile(response.content) as memfile:
                with memfile.open() as src:
                    if src.crs is None:
                        raise SchemaMismatchError(endpoint, "raster with a CRS", "no CRS")
                    return Raster(
                        data=src.read(),
                        transform=src.transform,
                        crs=resolve_crs(src.crs),
                        nodata=src.nodata,
                    )
        except RasterioIOError as exc:
            raise SchemaMismatchError(
                endpoint,
                "GeoJSON or raster",
                response.headers.get("Content-Type", "unrecognized body"),
            ) from exc

    @staticmethod
    def _check(endpoint: str, payload: FeatureCollection | Raster, expect: Expectation) -> None:
        if expect.crs is not None:
            wanted = resolve_crs(expect.crs)
            if not crs_equal(wanted, payload.crs):
                raise SchemaMismatchError(endpoint, crs_label(wanted), crs_label(payload.crs))
        if expect.geometry_types and isinstance(payload, FeatureCollection):
            found = payload.geom_types - {"None"}
            extra = found - set(expect.geometry_types)
            if extra:
                raise SchemaMismatchError(endpoint, sorted(expect.geometry_types), sorted(found))


def _is_json(response: requests.Response) -> bool:
    content_type = response.headers.get("Content-Type", "")
    if "json" in content_type:
        return True
    if content_type:
        return False
    return response.content[:1] in (b"{", b"[")


def _retry_after(response: requests.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Hydrology services
# ---------------------------------------------------------------------------


class HydroDataClient:
    """Convenience wrappers for common U.S. hydrology web services.

    * NLDI — feature sources, upstream basins and network navigation.
    * USGS Water Data OGC API — monitoring locations.
    * EPA StreamCat — watershed metrics by NHDPlus COMID.

    Args:
        client: Transport to use; a default :class:`ServiceClient` otherwise.
        nldi_url: NLDI ``linked-data`` base URL.
        waterdata_url: OGC API ``collections`` base URL.
        streamcat_url: StreamCat metrics endpoint.
    """

    NAVIGATION_MODES = ("UM", "UT", "DM", "DD")

    def __init__(
        self,
        client: ServiceClient | None = None,
        *,
        nldi_url: str = "https://api.water.usgs.gov/nldi/linked-data",
        waterdata_url: str = "https://api.waterdata.usgs.gov/ogcapi/v0/collections",
        streamcat_url: str = "https://api.epa.gov/StreamCat/streams/metrics",
    ) -> None:
        self.client = client or ServiceClient()
        self.nldi_url = nldi_url.rstrip("/")
        self.waterdata_url = waterdata_url.rstrip("/")
        self.streamcat_url = streamcat_url

    def nldi_sources(self, **kwargs: Any) -> dict[str, str]:
        """Feature sources NLDI can start from, as ``{source: description}``."""
        body = self.client.fetch_json(self.nldi_url, **kwargs)
        if not isinstance(body, list):
            raise SchemaMismatchError(self.nldi_url, "list of sources", type(body).__name__)
        try:
            return {entry["source"]: entry.get("sourceName", "") for entry in body}
        except (KeyError, TypeError, AttributeError) as exc:
            raise SchemaMismatchError(self.nldi_url, "source entries", str(exc)) from exc

    def nldi_basin(self, feature_source: str, feature_id: str, **kwargs: Any) -> FeatureCollection:
        """Upstream drainage basin of an NLDI feature (e.g. ``("nwissite", "USGS-08158000")``)."""
        endpoint = f"{self.nldi_url}/{feature_source}/{feature_id}/basin"
        return self.client.fetch(
            endpoint,
            expect=Expectation(kind="features", geometry_types={"Polygon", "MultiPolygon"}),
            **kwargs,
        )

    def nldi_navigate(
        self,
        feature_source: str,
        feature_id: str,
        mode: str = "UM",
        data_source: str = "flowlines",
        distance_km: float | None = None,
        **kwargs: Any,
    ) -> FeatureCollection:
        """Navigate the network from a feature.

        Args:
            mode: ``UM`` upstream main, ``UT`` upstream tributaries,
                  ``DM`` downstream main, ``DD`` downstream diversions.
            data_source: ``"flowlines"`` or another NLDI source
                         (``"nwissite"``, ``"wqp"``…) to find along the path.
            distance_km: Maximum navigation distance.
        """
        mode = mode.upper()
        if mode not in self.NAVIGATION_MODES:
            raise InputValidationError(
                f"Unknown navigation mode {mode!r}; expected one of {', '.join(self.NAVIGATION_MODES)}",
                operation="nldi_navigate",
            )
        endpoint = f"{self.nldi_url}/{feature_source}/{feature_id}/navigation/{mode}/{data_source}"
        params = {"distance": distance_km} if distance_km is not None else {}
        return self.client.fetch(endpoint, FetchQuery(params=params), expect=Expectation(kind="features"), **kwargs)

    def monitoring_locations(
        self,
        bbox: BoundingBox | None = None,
        *,
        params: Mapping[str, Any] | None = None,
        **kwargs: Any,
    ) -> FeatureCollection:
        """Monitoring locations, optionally within a CRS84 bounding box."""
        endpoint = f"{self.waterdata_url}/monitoring-locations/items"
        query = FetchQuery(bbox=bbox, params={"f": "json", **(params or {})})
        return self.client.fetch(
            endpoint, query, expect=Expectation(kind="features", geometry_types={"Point"}), **kwargs
        )

    def streamcat_metrics(
        self,
        metrics: Sequence[str],
        comids: Sequence[int],
        *,
        aoi: str = "watershed",
        **kwargs: Any,
    ) -> PlainTable:
        """StreamCat metrics (e.g. ``["pctimp2019", "elev"]``) for NHDPlus COMIDs."""
        if not metrics or not comids:
            raise InputValidationError("streamcat_metrics needs at least one metric and one COMID")
        query = FetchQuery(
            params={
                "name": ",".join(metrics),
                "comid": ",".join(str(c) for c in comids),
                "aoi": aoi,
            }
        )
        return self.client.fetch_table(self.streamcat_url, query, records_key="items", **kwargs)
