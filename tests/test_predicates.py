"""
Tests — PredicateEngine
========================
"""

from __future__ import annotations

import itertools

import pytest
from shapely.geometry import LineString, MultiPolygon, Point, Polygon, box

from conftest import UTM
from geoworkshop.exceptions import CRSError, InputValidationError, UnknownPredicateError
from geoworkshop.models import Feature, FeatureCollection
from geoworkshop.predicates import InvalidityReason, PredicateEngine
from geoworkshop.tables import SpatialTable

SQUARE = box(0, 0, 4, 4)
INNER = box(1, 1, 2, 2)
NEIGHBOR = box(4, 0, 8, 4)
OVERLAPPING = box(2, 2, 6, 6)
FAR = box(10, 10, 11, 11)
DIAGONAL = LineString([(-1, -1), (5, 5)])
BOW_TIE = LineString([(0, 0), (1, 1), (2, 2), (0, 2), (1, 1), (2, 0)])

SAMPLES = [SQUARE, INNER, NEIGHBOR, OVERLAPPING, FAR, DIAGONAL, Point(2, 2), Point(4, 2)]


@pytest.fixture()
def engine() -> PredicateEngine:
    return PredicateEngine()


# ---------------------------------------------------------------------------
# Binary predicates
# ---------------------------------------------------------------------------


class TestBinaryPredicates:
    @pytest.mark.parametrize(
        ("name", "a", "b", "expected"),
        [
            ("contains", SQUARE, INNER, True),
            ("contains", INNER, SQUARE, False),
            ("within", INNER, SQUARE, True),
            ("touches", SQUARE, NEIGHBOR, True),
            ("touches", SQUARE, OVERLAPPING, False),
            ("overlaps", SQUARE, OVERLAPPING, True),
            ("crosses", DIAGONAL, SQUARE, True),
            ("disjoint", SQUARE, FAR, True),
            ("covers", SQUARE, Point(4, 2), True),
            ("contains", SQUARE, Point(4, 2), False),
            ("covered_by", Point(4, 2), SQUARE, True),
            ("equals", SQUARE, Polygon([(4, 4), (0, 4), (0, 0), (4, 0)]), True),
        ],
    )
    def test_truth_table(self, engine: PredicateEngine, name: str, a, b, expected: bool) -> None:
        assert engine.evaluate(name, a, b) is expected

    @pytest.mark.parametrize(("a", "b"), list(itertools.product(SAMPLES, repeat=2)))
    def test_intersects_is_not_disjoint(self, engine: PredicateEngine, a, b) -> None:
        assert engine.evaluate("intersects", a, b) == (not engine.evaluate("disjoint", a, b))

    def test_equals_exact_tolerance(self, engine: PredicateEngine) -> None:
        assert not engine.evaluate("equals_exact", Point(0, 0), Point(0.001, 0))
        assert engine.evaluate("equals_exact", Point(0, 0), Point(0.001, 0), tolerance=0.01)

    def test_is_within_distance(self, engine: PredicateEngine) -> None:
        assert engine.evaluate("is_within_distance", SQUARE, FAR, distance=9)
        assert not engine.evaluate("is_within_distance", SQUARE, FAR, distance=5)

    def test_is_within_distance_needs_distance(self, engine: PredicateEngine) -> None:
        with pytest.raises(InputValidationError):
            engine.evaluate("is_within_distance", SQUARE, FAR)

    def test_unknown_predicate(self, engine: PredicateEngine) -> None:
        with pytest.raises(UnknownPredicateError) as exc_info:
            engine.evaluate("near", SQUARE, FAR)
        assert "intersects" in exc_info.value.supported

    def test_feature_crs_mismatch(self, engine: PredicateEngine) -> None:
        a = Feature(1, SQUARE, crs=UTM)
        b = Feature(2, INNER, crs="EPSG:4326")
        with pytest.raises(CRSError):
            engine.evaluate("contains", a, b)

    def test_features_in_same_crs(self, engine: PredicateEngine) -> None:
        assert engine.evaluate("contains", Feature(1, SQUARE, crs=UTM), Feature(2, INNER, crs=UTM))


class TestRelate:
    def test_matrix(self, engine: PredicateEngine) -> None:
        assert engine.relate(SQUARE, FAR) == "FF2FF1212"

    def test_pattern(self, engine: PredicateEngine) -> None:
        assert engine.relate_pattern(SQUARE, INNER, "T*****FF*")

    def test_bad_pattern(self, engine: PredicateEngine) -> None:
        with pytest.raises(InputValidationError):
            engine.relate_pattern(SQUARE, INNER, "XYZ")


# ---------------------------------------------------------------------------
# Unary predicates
# ---------------------------------------------------------------------------


class TestUnaryPredicates:
    def test_bow_tie_line_is_not_simple(self, engine: PredicateEngine) -> None:
        result = engine.is_simple(BOW_TIE)
        assert not result
        assert result.reason is InvalidityReason.SELF_INTERSECTION
        assert result.location is not None
        assert result.location.equals(Point(1, 1))

    def test_straight_line_is_simple(self, engine: PredicateEngine) -> None:
        result = engine.is_simple(LineString([(0, 0), (1, 1), (2, 2)]))
        assert result
        assert result.reason is None

    def test_closed_ring_is_simple(self, engine: PredicateEngine) -> None:
        assert engine.is_simple(LineString([(0, 0), (1, 0), (1, 1), (0, 0)]))

    def test_bow_tie_polygon_is_invalid(self, engine: PredicateEngine) -> None:
        result = engine.is_valid(Polygon([(0, 0), (2, 2), (2, 0), (0, 2), (0, 0)]))
        assert not result
        assert result.reason in (InvalidityReason.SELF_INTERSECTION, InvalidityReason.RING_SELF_INTERSECTION)
        assert result.location is not None
        assert result.location.x == pytest.approx(1.0)
        assert result.location.y == pytest.approx(1.0)

    def test_hole_outside_shell(self, engine: PredicateEngine) -> None:
        poly = Polygon(box(0, 0, 2, 2).exterior.coords, [box(5, 5, 6, 6).exterior.coords])
        assert engine.is_valid(poly).reason is InvalidityReason.HOLE_OUTSIDE_SHELL

    def test_overlapping_multipolygon_is_invalid(self, engine: PredicateEngine) -> None:
        result = engine.is_valid(MultiPolygon([box(0, 0, 2, 2), box(1, 1, 3, 3)]))
        assert not result
        assert result.detail

    def test_valid_polygon(self, engine: PredicateEngine) -> None:
        result = engine.is_valid(SQUARE)
        assert result
        assert result.predicate == "is_valid"

    def test_unclosed_ring_mapping(self, engine: PredicateEngine) -> None:
        mapping = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1]]]}
        result = engine.is_valid(mapping)
        assert not result
        assert result.reason is InvalidityReason.UNCLOSED_RING
        assert result.location.equals(Point(0, 0))

    def test_closed_ring_mapping_is_valid(self, engine: PredicateEngine) -> None:
        mapping = {"type": "Polygon", "coordinates": [[[0, 0], [1, 0], [1, 1], [0, 1], [0, 0]]]}
        assert engine.is_valid(mapping)

    def test_empty(self, engine: PredicateEngine) -> None:
        result = engine.is_empty(Polygon())
        assert result
        assert result.reason is InvalidityReason.EMPTY
        assert not engine.is_empty(SQUARE)

    def test_feature_argument(self, engine: PredicateEngine) -> None:
        assert not engine.is_simple(Feature("route", BOW_TIE))


# ---------------------------------------------------------------------------
# Collection helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def blocks() -> FeatureCollection:
    return FeatureCollection(
        [
            Feature("a", box(0, 0, 1, 1), attributes={"zone": "res"}),
            Feature("b", box(3, 3, 4, 4), attributes={"zone": "com"}),
            Feature("c", box(0.5, 0.5, 3.5, 3.5), attributes={"zone": "ind"}),
        ],
        crs=UTM,
    )


@pytest.fixture()
def wells() -> FeatureCollection:
    return FeatureCollection(
        [
            Feature(10, Point(0.25, 0.25), attributes={"depth_m": 30}),
            Feature(11, Point(3.75, 3.75), attributes={"depth_m": 55}),
            Feature(12, Point(9, 9), attributes={"depth_m": 12}),
        ],
        crs=UTM,
    )


class TestCollections:
    def test_subset_keeps_order(self, engine: PredicateEngine, blocks: FeatureCollection) -> None:
        kept = engine.subset(blocks, box(0, 0, 2, 2), "intersects")
        assert kept.ids == ["a", "c"]
        assert kept.crs.to_epsg() == 32614

    def test_subset_with_feature_crs_mismatch(self, engine: PredicateEngine, blocks: FeatureCollection) -> None:
        with pytest.raises(CRSError):
            engine.subset(blocks, Feature(0, box(0, 0, 1, 1), crs="EPSG:4326"))

    def test_spatial_join(self, engine: PredicateEngine, wells: FeatureCollection, blocks: FeatureCollection) -> None:
        joined = engine.spatial_join(wells, blocks, "within")
        assert isinstance(joined, SpatialTable)
        frame = joined.to_pandas()
        assert sorted(frame["zone"].tolist()) == ["com", "res"]
        assert 12 not in frame.index

    def test_left_join_keeps_unmatched(self, engine: PredicateEngine, wells: FeatureCollection, blocks: FeatureCollection) -> None:
        frame = engine.spatial_join(wells, blocks, "within", how="left").to_pandas()
        assert 12 in frame.index

    def test_spatial_join_crs_mismatch(self, engine: PredicateEngine, wells: FeatureCollection) -> None:
        other = FeatureCollection([Feature(0, box(0, 0, 1, 1))], crs="EPSG:4326")
        with pytest.raises(CRSError):
            engine.spatial_join(wells, other)

    def test_spatial_join_unsupported_predicate(self, engine: PredicateEngine, wells, blocks) -> None:
        with pytest.raises(UnknownPredicateError):
            engine.spatial_join(wells, blocks, "equals_exact")
