"""
Spatial join planning.

Planning moves a ``JoinPlan`` through
``PLANNING -> CRS_CHECKED -> STRATEGY_CHOSEN``; the executor then drives it
through ``EXECUTING -> DONE``. Any plan-time failure moves it to ``REJECTED``
and is raised before a single row is decoded.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from spatialsql.core.crs.compatibility import CrsBinding, check_crs_compatibility
from spatialsql.core.crs.registry import CrsRegistry, default_registry
from spatialsql.core.errors import InvalidPlanError, PlanningError
from spatialsql.core.geometry.predicates import PredicateKind
from spatialsql.core.join.index import IndexFactory, StrTreeIndex
from spatialsql.core.schema import Table
from spatialsql.models.crs import format_crs

logger = logging.getLogger(__name__)


class JoinState(str, Enum):
    PLANNING = "planning"
    CRS_CHECKED = "crs_checked"
    STRATEGY_CHOSEN = "strategy_chosen"
    EXECUTING = "executing"
    DONE = "done"
    REJECTED = "rejected"


_TRANSITIONS = {
    JoinState.PLANNING: {JoinState.CRS_CHECKED, JoinState.REJECTED},
    JoinState.CRS_CHECKED: {JoinState.STRATEGY_CHOSEN, JoinState.REJECTED},
    JoinState.STRATEGY_CHOSEN: {JoinState.EXECUTING},
    JoinState.EXECUTING: {JoinState.DONE},
    JoinState.DONE: set(),
    JoinState.REJECTED: set(),
}


class JoinStrategy(str, Enum):
    INDEXED_PREDICATE = "indexed_predicate"
    KNN = "knn"


@dataclass(frozen=True)
class JoinPredicate:
    """
    Spatial join condition, ``predicate(left, right)``.

    Use the constructors: ``intersects()``, ``contains()``, ``within()``,
    ``knn(k, use_spheroid)``.
    """

    kind: PredicateKind
    k: Optional[int] = None
    use_spheroid: bool = False

    def __post_init__(self) -> None:
        if self.kind is PredicateKind.KNN:
            if self.k is None or isinstance(self.k, bool) or not isinstance(self.k, int) or self.k < 1:
                raise InvalidPlanError(f"ST_KNN requires a positive integer k, got {self.k!r}")
        elif self.k is not None or self.use_spheroid:
            raise InvalidPlanError(f"{self.kind.value} takes no k or use_spheroid argument")

    @classmethod
    def intersects(cls) -> "JoinPredicate":
        return cls(PredicateKind.INTERSECTS)

    @classmethod
    def contains(cls) -> "JoinPredicate":
        return cls(PredicateKind.CONTAINS)

    @classmethod
    def within(cls) -> "JoinPredicate":
        return cls(PredicateKind.WITHIN)

    @classmethod
    def knn(cls, k: int, use_spheroid: bool = False) -> "JoinPredicate":
        return cls(PredicateKind.KNN, k=k, use_spheroid=use_spheroid)

    @property
    def function_name(self) -> str:
        return self.kind.function_name

    def __str__(self) -> str:
        if self.kind is PredicateKind.KNN:
            return f"ST_KNN(left, right, {self.k}, {self.use_spheroid})"
        return f"{self.function_name}(left, right)"


@dataclass
class JoinPlan:
    """
    A planned spatial join.

    Attributes:
        build_side: 'left' or 'right'; the side the index is built over
        crs_binding: Result of the CRS compatibility check
        history: Every state the plan has been in
    """

    left: Table
    left_column: str
    right: Table
    right_column: str
    predicate: JoinPredicate
    index_factory: IndexFactory
    state: JoinState = JoinState.PLANNING
    crs_binding: Optional[CrsBinding] = None
    strategy: Optional[JoinStrategy] = None
    build_side: Optional[str] = None
    history: List[JoinState] = field(default_factory=lambda: [JoinState.PLANNING])

    def transition(self, state: JoinState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise InvalidPlanError(
                f"Illegal join state transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)

    @property
    def probe_side(self) -> Optional[str]:
        if self.build_side is None:
            return None
        return "left" if self.build_side == "right" else "right"

    def explain(self) -> str:
        crs = format_crs(self.crs_binding.common_crs) if self.crs_binding else "unchecked"
        return (
            f"SpatialJoin[{self.strategy.value if self.strategy else 'unplanned'}] "
            f"{self.predicate} build={self.build_side} crs={crs} "
            f"left={self.left_column}({self.left.num_rows} rows) "
            f"right={self.right_column}({self.right.num_rows} rows)"
        )


class SpatialJoinPlanner:
    """Checks CRS compatibility and chooses a join strategy."""

    def __init__(
        self,
        registry: Optional[CrsRegistry] = None,
        index_factory: IndexFactory = StrTreeIndex,
    ):
        self.registry = registry or default_registry()
        self.index_factory = index_factory

    def plan(
        self,
        left: Table,
        left_column: str,
        right: Table,
        right_column: str,
        predicate: JoinPredicate,
    ) -> JoinPlan:
        """
        Plan a join of ``left.left_column`` with ``right.right_column``.

        Raises:
            MismatchedCrs: If the two columns declare different CRS
            InvalidPlanError: If a column is not a geometry column, or a
                spheroid KNN is requested over a projected CRS
        """
        plan = JoinPlan(
            left=left,
            left_column=left_column,
            right=right,
            right_column=right_column,
            predicate=predicate,
            index_factory=self.index_factory,
        )
        try:
            self._check_crs(plan)
            self._choose_strategy(plan)
        except PlanningError as e:
            plan.transition(JoinState.REJECTED)
            e.details.setdefault("join_state", plan.state.value)
            logger.info(f"Join plan rejected: {e}")
            raise
        logger.debug(plan.explain())
        return plan

    def _check_crs(self, plan: JoinPlan) -> None:
        left_type = plan.left.schema.geometry_type(plan.left_column)
        right_type = plan.right.schema.geometry_type(plan.right_column)
        plan.crs_binding = check_crs_compatibility(
            plan.predicate.function_name,
            [left_type.crs, right_type.crs],
            self.registry,
        )
        plan.transition(JoinState.CRS_CHECKED)

    def _choose_strategy(self, plan: JoinPlan) -> None:
        kind = plan.predicate.kind
        if kind is PredicateKind.KNN:
            if plan.predicate.use_spheroid:
                self._check_spheroid(plan)
            plan.strategy = JoinStrategy.KNN
            plan.build_side = "right"
        elif kind in (PredicateKind.INTERSECTS, PredicateKind.CONTAINS, PredicateKind.WITHIN):
            plan.strategy = JoinStrategy.INDEXED_PREDICATE
            plan.build_side = "left" if plan.left.num_rows < plan.right.num_rows else "right"
        else:
            raise InvalidPlanError(f"No join strategy for {kind.value}")
        plan.transition(JoinState.STRATEGY_CHOSEN)

    def _check_spheroid(self, plan: JoinPlan) -> None:
        crs = plan.crs_binding.common_crs if plan.crs_binding else None
        if crs is None:
            logger.warning("Spheroid KNN over untagged columns: coordinates read as lon/lat degrees")
            return
        if not self.registry.is_geographic(crs):
            raise InvalidPlanError(
                f"Spheroid distance needs geographic coordinates, columns are in {crs}",
                details={"crs": str(crs)},
            )
