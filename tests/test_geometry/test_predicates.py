"""
Tests for spatial predicates and distances.
"""

import numpy as np
import pytest
from shapely.geometry import LineString, Point, Polygon, box
from shapely import wkt

from spatialsql.core.errors import EmptyGeometryDistance
from spatialsql.core.geometry import predicates
from spatialsql.core.geometry.predicates import PredicateKind

# Self-intersecting ring: a left and a right triangle meeting at (1, 1)
BOWTIE = Polygon([(0, 0), (2, 2), (2, 0), (0, 2), (0, 0)])
EMPTY = wkt.loads("POLYGON EMPTY")


class TestPredicateKind:
    """Tests for PredicateKind."""

    def test_function_names(self) -> None:
        """Test SQL function names."""
        assert PredicateKind.INTERSECTS.function_name == "ST_Intersects"
        assert PredicateKind.KNN.function_name == "ST_KNN"

    def test_flipped(self) -> None:
        """Test that contains and within flip into each other."""
        assert PredicateKind.CONTAINS.flipped() is PredicateKind.WITHIN
        assert PredicateKind.WITHIN.flipped() is PredicateKind.CONTAINS
        assert PredicateKind.INTERSECTS.flipped() is PredicateKind.INTERSECTS

    def test_is_boolean(self) -> None:
        """Test that KNN is not a boolean predicate."""
        assert PredicateKind.CONTAINS.is_boolean
        assert not PredicateKind.KNN.is_boolean


class TestBooleanPredicates:
    """Tests for boolean predicates."""

    def test_intersects(self) -> None:
        """Test intersects."""
        assert predicates.intersects(box(0, 0, 2, 2), box(1, 1, 3, 3))
        assert not predicates.intersects(box(0, 0, 1, 1), box(2, 2, 3, 3))

    def test_contains_within_are_converse(self) -> None:
        """Test that contains and within are converses."""
        outer, inner = box(0, 0, 10, 10), box(2, 2, 3, 3)
        assert predicates.contains(outer, inner)
        assert predicates.within(inner, outer)
        assert not predicates.contains(inner, outer)

    def test_boundary_point_not_contained(self) -> None:
        """Test that a boundary point intersects but is not contained."""
        assert not predicates.contains(box(0, 0, 1, 1), Point(0, 0.5))
        assert predicates.intersects(box(0, 0, 1, 1), Point(0, 0.5))

    @pytest.mark.parametrize("fn", [predicates.intersects, predicates.contains, predicates.within])
    def test_empty_is_false(self, fn) -> None:
        """Test that empty geometries never satisfy a predicate."""
        assert fn(EMPTY, box(0, 0, 1, 1)) is False
        assert fn(box(0, 0, 1, 1), EMPTY) is False
        assert fn(EMPTY, EMPTY) is False

    def test_invalid_polygon_repaired(self) -> None:
        """Test that self-intersecting polygons are repaired first."""
        assert not BOWTIE.is_valid
        assert predicates.intersects(BOWTIE, Point(0.5, 1.0))
        assert predicates.contains(BOWTIE, Point(1.5, 1.0))
        assert not predicates.contains(BOWTIE, Point(1.0, 0.3))

    def test_evaluate_dispatch(self) -> None:
        """Test dispatch by predicate kind."""
        assert predicates.evaluate(PredicateKind.WITHIN, Point(1, 1), box(0, 0, 2, 2))
        with pytest.raises(ValueError):
            predicates.evaluate(PredicateKind.KNN, Point(1, 1), Point(2, 2))

    def test_evaluate_pairs(self) -> None:
        """Test the vectorized pairwise evaluation."""
        left = np.array([box(0, 0, 2, 2), box(0, 0, 1, 1)], dtype=object)
        right = np.array([Point(1, 1), Point(5, 5)], dtype=object)
        result = predicates.evaluate_pairs(PredicateKind.CONTAINS, left, right)
        assert result.tolist() == [True, False]


class TestRepair:
    """Tests for geometry repair."""

    def test_valid_untouched(self) -> None:
        """Test that valid geometries are returned as is."""
        polygon = box(0, 0, 1, 1)
        assert predicates.repair(polygon) is polygon

    def test_repair_array_keeps_none(self) -> None:
        """Test that repair_array keeps null slots."""
        repaired = predicates.repair_array(np.array([None, BOWTIE, Point(0, 0)], dtype=object))
        assert repaired[0] is None
        assert repaired[1].is_valid
        assert repaired[2].equals(Point(0, 0))


class TestDistances:
    """Tests for planar and geodesic distances."""

    def test_planar(self) -> None:
        """Test planar distance."""
        assert predicates.planar_distance(Point(0, 0), Point(3, 4)) == pytest.approx(5.0)

    def test_planar_empty(self) -> None:
        """Test that planar distance to an empty geometry raises."""
        with pytest.raises(EmptyGeometryDistance):
            predicates.planar_distance(EMPTY, Point(0, 0))

    def test_geodesic_one_degree_of_longitude(self) -> None:
        """Test one degree of longitude at the equator."""
        # One degree of longitude on the WGS84 equator is 111319.49 m
        distance = predicates.geodesic_distance(Point(0, 0), Point(1, 0))
        assert distance == pytest.approx(111319.49, abs=0.01)

    def test_geodesic_intersecting_is_zero(self) -> None:
        """Test that intersecting geometries are zero apart."""
        assert predicates.geodesic_distance(box(0, 0, 2, 2), Point(1, 1)) == 0.0

    def test_geodesic_line_to_point(self) -> None:
        """Test geodesic distance from a line to a point."""
        line = LineString([(0, -1), (0, 1)])
        distance = predicates.geodesic_distance(line, Point(1, 0))
        assert distance == pytest.approx(111319.49, abs=0.01)

    def test_geodesic_empty(self) -> None:
        """Test that geodesic distance to an empty geometry raises."""
        with pytest.raises(EmptyGeometryDistance):
            predicates.geodesic_distance(Point(0, 0), EMPTY)

    def test_geodesic_distances_nan_for_empty(self) -> None:
        """Test that the vectorized form gives NaN for empties."""
        left = np.array([Point(0, 0), EMPTY], dtype=object)
        right = np.array([Point(0, 1), Point(0, 1)], dtype=object)
        result = predicates.geodesic_distances(left, right)
        assert result[0] > 0
        assert np.isnan(result[1])

    def test_knn_distance_switch(self) -> None:
        """Test choosing planar or spheroid KNN distance."""
        planar = predicates.knn_distance(Point(0, 0), Point(1, 0))
        spheroid = predicates.knn_distance(Point(0, 0), Point(1, 0), use_spheroid=True)
        assert planar == pytest.approx(1.0)
        assert spheroid > 100000
