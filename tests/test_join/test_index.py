"""
Tests for candidate generation and verification.
"""

import numpy as np
import pytest
from shapely.geometry import Point, box

from spatialsql.core.geometry.predicates import PredicateKind
from spatialsql.core.join.index import (
    BruteForceIndex,
    CandidateGenerator,
    PairVerifier,
    StrTreeIndex,
)


# Fixtures

@pytest.fixture
def build_geoms() -> np.ndarray:
    return np.array(
        [box(0, 0, 1, 1), None, box(5, 5, 6, 6), Point(2, 2), box(0.5, 0.5, 3, 3)],
        dtype=object,
    )


@pytest.fixture
def query_geoms() -> np.ndarray:
    return np.array([Point(0.75, 0.75), Point(10, 10), None, box(2, 2, 5.5, 5.5)], dtype=object)


@pytest.mark.parametrize("index_cls", [StrTreeIndex, BruteForceIndex])
class TestIndexes:
    """Tests shared by the STRtree and brute force indexes."""

    def test_query_pairs(self, index_cls, build_geoms, query_geoms) -> None:
        """Test candidate pairs from an envelope query."""
        index = index_cls(build_geoms)
        pairs = CandidateGenerator(index).candidates(query_geoms)

        assert pairs.shape[0] == 2
        assert sorted(zip(pairs[0].tolist(), pairs[1].tolist())) == [
            (0, 0),
            (0, 4),
            (3, 2),
            (3, 3),
            (3, 4),
        ]

    def test_no_false_negatives(self, index_cls, build_geoms, query_geoms) -> None:
        """Test that every intersecting pair is a candidate."""
        pairs = set(zip(*CandidateGenerator(index_cls(build_geoms)).candidates(query_geoms).tolist()))
        for q, target in enumerate(query_geoms):
            for b, build in enumerate(build_geoms):
                if target is not None and build is not None and target.intersects(build):
                    assert (q, b) in pairs

    def test_query_dwithin(self, index_cls, build_geoms) -> None:
        """Test the distance query."""
        index = index_cls(build_geoms)
        pairs = index.query_dwithin(np.array([Point(4, 4)], dtype=object), 1.5)
        assert sorted(pairs[1].tolist()) == [2, 4]

    def test_empty_query(self, index_cls, build_geoms) -> None:
        """Test that null query geometries produce no pairs."""
        index = index_cls(build_geoms)
        pairs = index.query(np.array([None], dtype=object))
        assert pairs.shape == (2, 0)

    def test_size(self, index_cls, build_geoms) -> None:
        """Test that null build rows count toward size."""
        assert index_cls(build_geoms).size == 5


class TestCandidateGenerator:
    """Tests for CandidateGenerator."""

    def test_sorted_unique(self) -> None:
        """Test that candidates are sorted and deduplicated."""
        class DuplicatingIndex:
            size = 2

            def query(self, geometries):
                return np.array([[1, 0, 1, 0], [0, 1, 0, 1]])

            def query_dwithin(self, geometries, distance):
                raise NotImplementedError

        pairs = CandidateGenerator(DuplicatingIndex()).candidates(np.array([], dtype=object))
        assert pairs.tolist() == [[0, 1], [1, 0]]


class TestPairVerifier:
    """Tests for PairVerifier."""

    def test_filters_false_positives(self) -> None:
        """Test that envelope-only candidates are dropped."""
        left = np.array([Point(0.9, 0.1), Point(0.5, 0.5)], dtype=object)
        right = np.array([box(0, 0, 1, 1).difference(box(0.8, 0, 1, 0.2)), box(0, 0, 1, 1)], dtype=object)
        mask = PairVerifier(PredicateKind.WITHIN).verify(left, right)
        assert mask.tolist() == [False, True]

    def test_empty_input(self) -> None:
        """Test verifying no pairs."""
        mask = PairVerifier(PredicateKind.INTERSECTS).verify(np.array([], dtype=object), np.array([], dtype=object))
        assert mask.shape == (0,)

    def test_knn_not_verifiable(self) -> None:
        """Test that KNN has no pair verifier."""
        with pytest.raises(ValueError):
            PairVerifier(PredicateKind.KNN)
