"""
Spatial join execution.

The build side is decoded and indexed once by a single build phase; probe
batches are then processed on the worker pool, all reading the same
immutable index. Matches stream out in batch order, and within a batch in
(probe row, build row) order, so repeated runs yield the same sequence.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from spatialsql.core.config import settings
from spatialsql.core.crs.registry import CrsRegistry
from spatialsql.core.errors import InvalidPlanError, MalformedGeometry
from spatialsql.core.execution import (
    CancellationToken,
    FaultCollector,
    FaultSummary,
    RowFault,
    run_batches,
)
from spatialsql.core.geometry.predicates import repair_array
from spatialsql.core.join.index import CandidateGenerator, PairVerifier
from spatialsql.core.join.knn import KnnSearcher
from spatialsql.core.join.planner import (
    JoinPlan,
    JoinPredicate,
    JoinState,
    JoinStrategy,
    SpatialJoinPlanner,
)
from spatialsql.core.schema import GeometryColumn, Table
from spatialsql.utils.logging import PerformanceTimer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinMatch:
    """
    One output pair.

    Attributes:
        left_row: Row number in the left table
        right_row: Row number in the right table
        distance: KNN distance (CRS units, or meters for spheroid); None for predicate joins
        rank: 1-based KNN rank within the left row; None for predicate joins
    """

    left_row: int
    right_row: int
    distance: Optional[float] = None
    rank: Optional[int] = None


@dataclass
class JoinResult:
    matches: List[JoinMatch] = field(default_factory=list)
    faults: FaultSummary = field(default_factory=FaultSummary)

    def pairs(self) -> List[Tuple[int, int]]:
        return [(m.left_row, m.right_row) for m in self.matches]

    def __len__(self) -> int:
        return len(self.matches)


def decode_geometries(
    column: GeometryColumn,
    start: int,
    stop: int,
    side: str,
    collector: FaultCollector,
    sink: List[RowFault],
) -> np.ndarray:
    """
    Decode rows ``[start, stop)`` of a column into a repaired shapely array.

    Null rows and rows that fail to decode become None; decode failures are
    passed to the fault collector.
    """
    out = np.empty(stop - start, dtype=object)
    for i, value in enumerate(column.values[start:stop]):
        if value is None:
            continue
        try:
            out[i] = value.decode()
        except MalformedGeometry as e:
            e.details.setdefault("row", start + i)
            e.details.setdefault("side", side)
            collector.handle(side, start + i, e, sink)
    return repair_array(out)


class SpatialJoinExecutor:
    """
    Runs a planned join.

    Attributes:
        plan: A plan in state STRATEGY_CHOSEN
        faults: Row faults seen so far
    """

    def __init__(
        self,
        plan: JoinPlan,
        batch_size: Optional[int] = None,
        max_workers: Optional[int] = None,
        strict: Optional[bool] = None,
        cancel: Optional[CancellationToken] = None,
    ):
        if plan.state is not JoinState.STRATEGY_CHOSEN:
            raise InvalidPlanError(
                f"Join plan is {plan.state.value}, expected {JoinState.STRATEGY_CHOSEN.value}"
            )
        self.plan = plan
        self.batch_size = batch_size or settings.batch_size
        self.max_workers = max_workers or settings.max_workers
        self.cancel = cancel or CancellationToken()
        self._collector = FaultCollector(strict)

    @property
    def faults(self) -> FaultSummary:
        return self._collector.summary

    def _side(self, side: str) -> GeometryColumn:
        if side == "left":
            return self.plan.left.geometry_column(self.plan.left_column)
        return self.plan.right.geometry_column(self.plan.right_column)

    def stream(self) -> Iterator[JoinMatch]:
        """
        Execute the join, yielding matches as probe batches complete.

        Raises:
            QueryCancelled: If the cancellation token is set between batches
            MalformedGeometry: In strict mode, on the first undecodable row
        """
        plan = self.plan
        plan.transition(JoinState.EXECUTING)
        build_side = plan.build_side
        probe_side = plan.probe_side
        build_column = self._side(build_side)
        probe_column = self._side(probe_side)

        build_faults: List[RowFault] = []
        with PerformanceTimer(
            "join_build", side=build_side, rows=len(build_column), strategy=plan.strategy.value
        ):
            build_geoms = decode_geometries(
                build_column, 0, len(build_column), build_side, self._collector, build_faults
            )
            index = plan.index_factory(build_geoms)
        self.faults.extend(build_faults)

        if plan.strategy is JoinStrategy.KNN:
            searcher = KnnSearcher(build_geoms, index, settings.knn_initial_radius)
            work = self._knn_worker(probe_column, searcher)
        else:
            work = self._predicate_worker(probe_column, build_geoms, index)

        starts = range(0, len(probe_column), self.batch_size)
        with PerformanceTimer("join_probe", side=probe_side, rows=len(probe_column)):
            for matches, faults in run_batches(
                work, starts, str(plan.predicate), self.cancel, self.max_workers
            ):
                self.faults.extend(faults)
                yield from matches

        plan.transition(JoinState.DONE)
        if self.faults:
            logger.warning(
                f"{plan.predicate}: {self.faults.count} rows excluded "
                f"({self.faults.by_error_code()})"
            )

    def execute(self) -> JoinResult:
        """Execute the join and collect every match."""
        matches = list(self.stream())
        return JoinResult(matches=matches, faults=self.faults)

    def _predicate_worker(self, probe_column: GeometryColumn, build_geoms: np.ndarray, index):
        generator = CandidateGenerator(index)
        kind = self.plan.predicate.kind
        probe_is_left = self.plan.probe_side == "left"
        # Verification always evaluates predicate(probe, build)
        verifier = PairVerifier(kind if probe_is_left else kind.flipped())
        probe_side = self.plan.probe_side

        def work(start: int) -> Tuple[List[JoinMatch], List[RowFault]]:
            stop = min(start + self.batch_size, len(probe_column))
            faults: List[RowFault] = []
            probe = decode_geometries(probe_column, start, stop, probe_side, self._collector, faults)
            pairs = generator.candidates(probe)
            mask = verifier.verify(probe[pairs[0]], build_geoms[pairs[1]])
            probe_rows = pairs[0][mask] + start
            build_rows = pairs[1][mask]
            if probe_is_left:
                matches = [JoinMatch(int(p), int(b)) for p, b in zip(probe_rows, build_rows)]
            else:
                matches = [JoinMatch(int(b), int(p)) for p, b in zip(probe_rows, build_rows)]
            return matches, faults

        return work

    def _knn_worker(self, probe_column: GeometryColumn, searcher: KnnSearcher):
        k = self.plan.predicate.k
        use_spheroid = self.plan.predicate.use_spheroid

        def work(start: int) -> Tuple[List[JoinMatch], List[RowFault]]:
            stop = min(start + self.batch_size, len(probe_column))
            faults: List[RowFault] = []
            probe = decode_geometries(probe_column, start, stop, "left", self._collector, faults)
            matches: List[JoinMatch] = []
            for offset, neighbours in enumerate(searcher.nearest(probe, k, use_spheroid)):
                for rank, (right_row, distance) in enumerate(neighbours, 1):
                    matches.append(JoinMatch(start + offset, right_row, distance, rank))
            return matches, faults

        return work


def spatial_join(
    left: Table,
    left_column: str,
    right: Table,
    right_column: str,
    predicate: JoinPredicate,
    registry: Optional[CrsRegistry] = None,
    **executor_options,
) -> JoinResult:
    """Plan and execute a spatial join in one call."""
    plan = SpatialJoinPlanner(registry).plan(left, left_column, right, right_column, predicate)
    return SpatialJoinExecutor(plan, **executor_options).execute()
