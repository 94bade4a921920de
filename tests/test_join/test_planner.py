"""
Tests for spatial join planning.
"""

import pytest

from spatialsql.core.crs.registry import CrsRegistry
from spatialsql.core.errors import InvalidPlanError, MismatchedCrs
from spatialsql.core.geometry.predicates import PredicateKind
from spatialsql.core.geometry.value import GeometryValue
from spatialsql.core.join.index import BruteForceIndex
from spatialsql.core.join.planner import (
    JoinPredicate,
    JoinState,
    JoinStrategy,
    SpatialJoinPlanner,
)
from spatialsql.core.schema import GeometryColumn, Table
from spatialsql.models.crs import CrsId


# Fixtures

@pytest.fixture
def registry() -> CrsRegistry:
    return CrsRegistry.standard(use_proj_database=False)


@pytest.fixture
def planner(registry: CrsRegistry) -> SpatialJoinPlanner:
    return SpatialJoinPlanner(registry)


def make_table(wkts, crs, registry, name="geom") -> Table:
    return Table({"id": list(range(len(wkts))), name: GeometryColumn.from_wkt(wkts, crs, registry)})


class TestJoinPredicate:
    """Tests for JoinPredicate."""

    def test_str(self) -> None:
        """Test predicate rendering."""
        assert str(JoinPredicate.intersects()) == "ST_Intersects(left, right)"
        assert str(JoinPredicate.knn(3, True)) == "ST_KNN(left, right, 3, True)"

    @pytest.mark.parametrize("k", [0, -1, None, 2.5, True])
    def test_knn_requires_positive_k(self, k) -> None:
        """Test that k must be a positive integer."""
        with pytest.raises(InvalidPlanError):
            JoinPredicate.knn(k)

    def test_k_only_for_knn(self) -> None:
        """Test that k is only allowed for KNN."""
        with pytest.raises(InvalidPlanError):
            JoinPredicate(PredicateKind.CONTAINS, k=2)


class TestPlanning:
    """Tests for SpatialJoinPlanner."""

    def test_predicate_plan(self, planner, registry) -> None:
        """Test the states and sides of a predicate plan."""
        left = make_table(["POINT (0 0)"] * 3, "epsg:4326", registry)
        right = make_table(["POINT (0 0)"] * 5, "EPSG:4326", registry)

        plan = planner.plan(left, "geom", right, "geom", JoinPredicate.intersects())

        assert plan.state is JoinState.STRATEGY_CHOSEN
        assert plan.history == [JoinState.PLANNING, JoinState.CRS_CHECKED, JoinState.STRATEGY_CHOSEN]
        assert plan.strategy is JoinStrategy.INDEXED_PREDICATE
        assert plan.build_side == "left"
        assert plan.probe_side == "right"
        assert plan.crs_binding.output_crs == CrsId("epsg", "4326")

    def test_build_side_ties_go_right(self, planner, registry) -> None:
        """Test that equal sizes build on the right."""
        left = make_table(["POINT (0 0)"], "epsg:4326", registry)
        right = make_table(["POINT (0 0)"], "epsg:4326", registry)
        plan = planner.plan(left, "geom", right, "geom", JoinPredicate.contains())
        assert plan.build_side == "right"

    def test_knn_builds_right(self, planner, registry) -> None:
        """Test that KNN always builds the right side."""
        left = make_table(["POINT (0 0)"], "epsg:3857", registry)
        right = make_table(["POINT (0 0)"] * 10, "epsg:3857", registry)
        plan = planner.plan(left, "geom", right, "geom", JoinPredicate.knn(2))
        assert plan.strategy is JoinStrategy.KNN
        assert plan.build_side == "right"

    def test_mismatched_crs_rejected(self, planner, registry) -> None:
        """Test that mismatched CRSs reject the plan."""
        left = make_table(["POINT (-8238310.24 4969803.34)"], "epsg:3857", registry)
        right = make_table(["POINT (0 0)"], "epsg:4326", registry)

        with pytest.raises(MismatchedCrs) as exc_info:
            planner.plan(left, "geom", right, "geom", JoinPredicate.within())

        assert exc_info.value.left == CrsId("epsg", "3857")
        assert exc_info.value.right == CrsId("epsg", "4326")
        assert exc_info.value.details["function"] == "ST_Within"
        assert exc_info.value.details["join_state"] == "rejected"

    def test_mismatch_found_without_decoding(self, planner, registry) -> None:
        """Undecodable payloads are never touched when planning fails."""
        left = Table({"geom": GeometryColumn.from_values([GeometryValue(b"junk")], "epsg:3857", registry)})
        right = Table({"geom": GeometryColumn.from_values([GeometryValue(b"junk")], "epsg:4326", registry)})

        with pytest.raises(MismatchedCrs):
            planner.plan(left, "geom", right, "geom", JoinPredicate.intersects())

    def test_untagged_side_allowed(self, planner, registry) -> None:
        """Test that one untagged side is allowed."""
        left = make_table(["POINT (0 0)"], None, registry)
        right = make_table(["POINT (0 0)"], "epsg:4326", registry)
        plan = planner.plan(left, "geom", right, "geom", JoinPredicate.intersects())
        assert plan.crs_binding.output_crs is None

    def test_non_geometry_column(self, planner, registry) -> None:
        """Test that join columns must hold geometry."""
        table = make_table(["POINT (0 0)"], "epsg:4326", registry)
        with pytest.raises(InvalidPlanError):
            planner.plan(table, "id", table, "geom", JoinPredicate.intersects())

    def test_spheroid_knn_over_projected_rejected(self, planner, registry) -> None:
        """Test that spheroid KNN needs a geographic CRS."""
        table = make_table(["POINT (0 0)"], "epsg:3857", registry)
        with pytest.raises(InvalidPlanError, match="geographic"):
            planner.plan(table, "geom", table, "geom", JoinPredicate.knn(1, use_spheroid=True))

    def test_spheroid_knn_over_geographic(self, planner, registry) -> None:
        """Test spheroid KNN over CRS84."""
        table = make_table(["POINT (0 0)"], "ogc:crs84", registry)
        plan = planner.plan(table, "geom", table, "geom", JoinPredicate.knn(1, use_spheroid=True))
        assert plan.state is JoinState.STRATEGY_CHOSEN

    def test_index_factory_carried(self, registry) -> None:
        """Test that the index factory reaches the plan."""
        planner = SpatialJoinPlanner(registry, index_factory=BruteForceIndex)
        table = make_table(["POINT (0 0)"], "epsg:4326", registry)
        plan = planner.plan(table, "geom", table, "geom", JoinPredicate.intersects())
        assert plan.index_factory is BruteForceIndex

    def test_explain(self, planner, registry) -> None:
        """Test the plan description."""
        table = make_table(["POINT (0 0)"], "epsg:4326", registry)
        plan = planner.plan(table, "geom", table, "geom", JoinPredicate.intersects())
        assert plan.explain() == (
            "SpatialJoin[indexed_predicate] ST_Intersects(left, right) build=right "
            "crs=epsg:4326 left=geom(1 rows) right=geom(1 rows)"
        )

    def test_illegal_transition(self, planner, registry) -> None:
        """Test that skipping states is rejected."""
        table = make_table(["POINT (0 0)"], "epsg:4326", registry)
        plan = planner.plan(table, "geom", table, "geom", JoinPredicate.intersects())
        with pytest.raises(InvalidPlanError):
            plan.transition(JoinState.DONE)
