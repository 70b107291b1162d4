"""
Tests — ServiceClient and HydroDataClient
==========================================
HTTP traffic is intercepted with ``responses``; backoff pauses go through an
injected ``sleep`` so the suite never waits.
"""

from __future__ import annotations

import json
from datetime import date
from unittest import mock
from urllib.parse import parse_qs, urlparse

import numpy as np
import pytest
import requests
import responses
from rasterio.io import MemoryFile
from rasterio.transform import from_origin

from geoworkshop.config import ServiceConfig
from geoworkshop.crs import CRS84, crs_equal
from geoworkshop.exceptions import (
    CancelledError,
    InputValidationError,
    SchemaMismatchError,
    ServiceRequestError,
    ServiceUnavailableError,
)
from geoworkshop.models import BoundingBox, FeatureCollection, Raster
from geoworkshop.service import (
    CancellationToken,
    Expectation,
    FetchQuery,
    HydroDataClient,
    RetryPolicy,
    ServiceClient,
)
from geoworkshop.tables import PlainTable

URL = "https://geo.example.org/collections/gages/items"

POINTS = {
    "type": "FeatureCollection",
    "features": [
        {"type": "Feature", "id": "USGS-08158000", "properties": {"name": "Colorado Rv at Austin"},
         "geometry": {"type": "Point", "coordinates": [-97.694, 30.245]}},
        {"type": "Feature", "id": "USGS-08158050", "properties": {"name": "Boggy Ck"},
         "geometry": {"type": "Point", "coordinates": [-97.701, 30.261]}},
    ],
}

BASIN = {
    "type": "FeatureCollection",
    "features": [
        {"type": "Feature", "properties": {},
         "geometry": {"type": "Polygon", "coordinates": [[[-98, 30], [-97, 30], [-97, 31], [-98, 30]]]}},
    ],
}


@pytest.fixture()
def sleeps() -> mock.Mock:
    """Stands in for the backoff pause so the suite never waits."""
    return mock.Mock()


@pytest.fixture()
def client(sleeps: mock.Mock) -> ServiceClient:
    return ServiceClient(ServiceConfig(timeout=5), sleep=sleeps)


def _geotiff_bytes(crs: str | None = "EPSG:32614") -> bytes:
    data = np.arange(12, dtype="float32").reshape(1, 3, 4)
    with MemoryFile() as memfile:
        with memfile.open(
            driver="GTiff", width=4, height=3, count=1, dtype="float32",
            crs=crs, transform=from_origin(500000, 4000000, 30, 30), nodata=-1.0,
        ) as dst:
            dst.write(data)
        return memfile.read()


def _delays(sleep: mock.Mock) -> list[float]:
    return [c.args[0] for c in sleep.call_args_list]


def _query(call) -> dict[str, list[str]]:
    return parse_qs(urlparse(call.request.url).query)


# ---------------------------------------------------------------------------
# Request descriptions
# ---------------------------------------------------------------------------


class TestRequestDescriptions:
    def test_backoff_schedule(self) -> None:
        policy = RetryPolicy(max_attempts=6, backoff_factor=0.5, max_backoff=3.0)
        assert [policy.delay(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_policy_rejects_zero_attempts(self) -> None:
        with pytest.raises(InputValidationError):
            RetryPolicy(max_attempts=0)

    def test_query_params(self) -> None:
        query = FetchQuery(
            bbox=BoundingBox(-97.9, 30.1, -97.5, 30.5),
            ids=["a", "b"],
            start_date=date(2024, 1, 1),
            params={"limit": 10},
        )
        assert query.to_params() == {
            "bbox": "-97.9,30.1,-97.5,30.5",
            "ids": "a,b",
            "datetime": "2024-01-01/..",
            "limit": 10,
        }

    def test_bad_method(self) -> None:
        with pytest.raises(InputValidationError):
            FetchQuery(method="PUT")

    def test_bad_expectation_kind(self) -> None:
        with pytest.raises(InputValidationError):
            Expectation(kind="table")


# ---------------------------------------------------------------------------
# Transport: retries, errors, cancellation
# ---------------------------------------------------------------------------


class TestTransport:
    @responses.activate
    def test_retry_then_success(self, client: ServiceClient, sleeps: mock.Mock) -> None:
        responses.add(responses.GET, URL, status=503)
        responses.add(responses.GET, URL, body=requests.ConnectionError("connection reset"))
        responses.add(responses.GET, URL, json=POINTS)

        result = client.fetch(URL)

        assert isinstance(result, FeatureCollection)
        assert len(responses.calls) == 3
        assert _delays(sleeps) == [0.5, 1.0]

    @responses.activate
    def test_exhausted_attempts(self, client: ServiceClient, sleeps: mock.Mock) -> None:
        responses.add(responses.GET, URL, status=502)
        with pytest.raises(ServiceUnavailableError) as exc_info:
            client.fetch(URL)
        assert exc_info.value.attempts == 3
        assert len(responses.calls) == 3
        assert sleeps.call_count == 2

    @responses.activate
    def test_timeouts_are_retried(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, body=requests.Timeout("read timed out"))
        with pytest.raises(ServiceUnavailableError, match="Timeout"):
            client.fetch(URL)

    @responses.activate
    def test_client_error_is_not_retried(self, client: ServiceClient, sleeps: mock.Mock) -> None:
        responses.add(responses.GET, URL, status=404, body="no such collection")
        with pytest.raises(ServiceRequestError) as exc_info:
            client.fetch(URL)
        assert exc_info.value.status_code == 404
        assert len(responses.calls) == 1
        sleeps.assert_not_called()

    @responses.activate
    def test_retry_after_is_honored(self, client: ServiceClient, sleeps: mock.Mock) -> None:
        responses.add(responses.GET, URL, status=429, headers={"Retry-After": "4"})
        responses.add(responses.GET, URL, json=POINTS)
        client.fetch(URL)
        assert _delays(sleeps) == [4.0]

    @responses.activate
    def test_cancel_during_backoff(self) -> None:
        token = CancellationToken()
        client = ServiceClient(sleep=mock.Mock(side_effect=lambda _seconds: token.cancel()))
        responses.add(responses.GET, URL, status=503)
        with pytest.raises(CancelledError):
            client.fetch(URL, cancel_token=token)
        assert len(responses.calls) == 1

    @responses.activate
    def test_cancelled_before_first_attempt(self, client: ServiceClient) -> None:
        token = CancellationToken()
        token.cancel()
        with pytest.raises(CancelledError):
            client.fetch(URL, cancel_token=token)
        assert len(responses.calls) == 0

    @responses.activate
    def test_query_and_headers_sent(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json=POINTS)
        client.fetch(URL, FetchQuery(bbox=BoundingBox(-98, 30, -97, 31), params={"limit": 5}))
        sent = responses.calls[0]
        assert _query(sent) == {"bbox": ["-98,30,-97,31"], "limit": ["5"]}
        assert sent.request.headers["User-Agent"] == "geoworkshop/1.0"

    @responses.activate
    def test_post_sends_json_body(self, client: ServiceClient) -> None:
        responses.add(responses.POST, URL, json=POINTS)
        client.fetch(URL, FetchQuery(ids=[1, 2], method="post"))
        assert json.loads(responses.calls[0].request.body) == {"ids": "1,2"}


# ---------------------------------------------------------------------------
# Payload decoding and validation
# ---------------------------------------------------------------------------


class TestDecoding:
    @responses.activate
    def test_geojson_defaults_to_crs84(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json=POINTS)
        result = client.fetch(URL, expect=Expectation(kind="features", geometry_types={"Point"}))
        assert crs_equal(result.crs, CRS84)
        assert result.ids == ["USGS-08158000", "USGS-08158050"]
        assert result[1].attributes["name"] == "Boggy Ck"

    @responses.activate
    def test_legacy_crs_member(self, client: ServiceClient) -> None:
        body = dict(POINTS, crs={"type": "name", "properties": {"name": "EPSG:3857"}})
        responses.add(responses.GET, URL, json=body)
        assert client.fetch(URL).crs.to_epsg() == 3857

    @responses.activate
    def test_geometry_type_mismatch(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json=POINTS)
        with pytest.raises(SchemaMismatchError):
            client.fetch(URL, expect=Expectation(kind="features", geometry_types={"Polygon"}))

    @responses.activate
    def test_crs_mismatch(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json=POINTS)
        with pytest.raises(SchemaMismatchError):
            client.fetch(URL, expect=Expectation(kind="features", crs="EPSG:32614"))

    @responses.activate
    def test_json_when_raster_expected(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json=POINTS)
        with pytest.raises(SchemaMismatchError):
            client.fetch(URL, expect=Expectation(kind="raster"))

    @responses.activate
    def test_raster_payload(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, body=_geotiff_bytes(), content_type="image/tiff")
        result = client.fetch(URL, expect=Expectation(kind="raster", crs="EPSG:32614"))
        assert isinstance(result, Raster)
        assert (result.height, result.width) == (3, 4)
        assert result.nodata == -1.0
        assert result.band(1)[2, 3] == 11.0

    @responses.activate
    def test_raster_without_crs(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, body=_geotiff_bytes(crs=None), content_type="image/tiff")
        with pytest.raises(SchemaMismatchError):
            client.fetch(URL)

    @responses.activate
    def test_unreadable_binary(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, body=b"\x00\x01not a raster", content_type="application/octet-stream")
        with pytest.raises(SchemaMismatchError):
            client.fetch(URL)

    @responses.activate
    def test_fetch_table_json(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json={"items": [{"comid": 1, "elev": 210.0}, {"comid": 2, "elev": 198.5}]})
        table = client.fetch_table(URL, records_key="items")
        assert isinstance(table, PlainTable)
        assert table.columns == ["comid", "elev"]
        assert len(table) == 2

    @responses.activate
    def test_fetch_table_csv(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, body="# header\ncomid,elev\n1,210.0\n2,198.5\n", content_type="text/csv")
        frame = client.fetch_table(URL).to_pandas()
        assert frame["elev"].tolist() == [210.0, 198.5]

    @responses.activate
    def test_fetch_table_wrong_shape(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, json={"items": {"comid": 1}})
        with pytest.raises(SchemaMismatchError):
            client.fetch_table(URL, records_key="items")

    @responses.activate
    def test_fetch_json(self, client: ServiceClient, sleeps: mock.Mock) -> None:
        responses.add(responses.GET, URL, status=503)
        responses.add(responses.GET, URL, json={"numberMatched": 2, "links": []})
        body = client.fetch_json(URL, FetchQuery(params={"f": "json"}))
        assert body == {"numberMatched": 2, "links": []}
        assert len(responses.calls) == 2
        sleeps.assert_called_once()

    @responses.activate
    def test_fetch_json_unparseable_body(self, client: ServiceClient) -> None:
        responses.add(responses.GET, URL, body="<html>maintenance</html>", content_type="text/html")
        with pytest.raises(SchemaMismatchError, match="JSON"):
            client.fetch_json(URL)

    @responses.activate
    def test_repeated_feature_ids(self, client: ServiceClient) -> None:
        body = dict(POINTS, features=[POINTS["features"][0], POINTS["features"][0]])
        responses.add(responses.GET, URL, json=body)
        with pytest.raises(SchemaMismatchError, match="USGS-08158000"):
            client.fetch(URL)


# ---------------------------------------------------------------------------
# Hydrology wrappers
# ---------------------------------------------------------------------------


NLDI = "https://api.water.usgs.gov/nldi/linked-data"


class TestHydroDataClient:
    @pytest.fixture()
    def hydro(self, client: ServiceClient) -> HydroDataClient:
        return HydroDataClient(client)

    @responses.activate
    def test_nldi_basin(self, hydro: HydroDataClient) -> None:
        responses.add(responses.GET, f"{NLDI}/nwissite/USGS-08158000/basin", json=BASIN)
        basin = hydro.nldi_basin("nwissite", "USGS-08158000")
        assert basin.geom_types == {"Polygon"}

    @responses.activate
    def test_nldi_basin_rejects_points(self, hydro: HydroDataClient) -> None:
        responses.add(responses.GET, f"{NLDI}/nwissite/USGS-08158000/basin", json=POINTS)
        with pytest.raises(SchemaMismatchError):
            hydro.nldi_basin("nwissite", "USGS-08158000")

    @responses.activate
    def test_nldi_navigate(self, hydro: HydroDataClient) -> None:
        url = f"{NLDI}/comid/5781901/navigation/DM/flowlines"
        responses.add(responses.GET, url, json={"type": "FeatureCollection", "features": []})
        hydro.nldi_navigate("comid", "5781901", mode="dm", distance_km=50)
        assert _query(responses.calls[0]) == {"distance": ["50"]}

    @responses.activate
    def test_nldi_sources(self, hydro: HydroDataClient) -> None:
        responses.add(
            responses.GET,
            NLDI,
            json=[
                {"source": "comid", "sourceName": "NHDPlus comid", "features": f"{NLDI}/comid"},
                {"source": "nwissite", "sourceName": "NWIS Surface Water Sites", "features": f"{NLDI}/nwissite"},
            ],
        )
        assert hydro.nldi_sources() == {"comid": "NHDPlus comid", "nwissite": "NWIS Surface Water Sites"}

    @responses.activate
    def test_nldi_sources_wrong_shape(self, hydro: HydroDataClient) -> None:
        responses.add(responses.GET, NLDI, json={"source": "comid"})
        with pytest.raises(SchemaMismatchError):
            hydro.nldi_sources()

    def test_nldi_navigate_bad_mode(self, hydro: HydroDataClient) -> None:
        with pytest.raises(InputValidationError):
            hydro.nldi_navigate("comid", "5781901", mode="XX")

    @responses.activate
    def test_monitoring_locations(self, hydro: HydroDataClient) -> None:
        url = "https://api.waterdata.usgs.gov/ogcapi/v0/collections/monitoring-locations/items"
        responses.add(responses.GET, url, json=POINTS)
        sites = hydro.monitoring_locations(BoundingBox(-98, 30, -97, 31))
        assert len(sites) == 2
        assert _query(responses.calls[0])["f"] == ["json"]

    @responses.activate
    def test_streamcat_metrics(self, hydro: HydroDataClient) -> None:
        responses.add(
            responses.GET,
            "https://api.epa.gov/StreamCat/streams/metrics",
            json={"items": [{"comid": 5781901, "pctimp2019ws": 12.4}]},
        )
        table = hydro.streamcat_metrics(["pctimp2019"], [5781901])
        assert table.to_pandas().loc[0, "pctimp2019ws"] == pytest.approx(12.4)
        sent = _query(responses.calls[0])
        assert sent["name"] == ["pctimp2019"]
        assert sent["aoi"] == ["watershed"]

    def test_streamcat_needs_metrics(self, hydro: HydroDataClient) -> None:
        with pytest.raises(InputValidationError):
            hydro.streamcat_metrics([], [1])
