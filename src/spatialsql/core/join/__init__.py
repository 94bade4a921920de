"""
Spatial join planning and execution.
"""

from spatialsql.core.join.executor import (
    JoinMatch,
    JoinResult,
    SpatialJoinExecutor,
    spatial_join,
)
from spatialsql.core.join.index import BruteForceIndex, SpatialIndex, StrTreeIndex
from spatialsql.core.join.planner import (
    JoinPlan,
    JoinPredicate,
    JoinState,
    JoinStrategy,
    SpatialJoinPlanner,
)

__all__ = [
    # Planning
    "JoinPlan",
    "JoinPredicate",
    "JoinState",
    "JoinStrategy",
    "SpatialJoinPlanner",
    # Indexes
    "BruteForceIndex",
    "SpatialIndex",
    "StrTreeIndex",
    # Execution
    "JoinMatch",
    "JoinResult",
    "SpatialJoinExecutor",
    "spatial_join",
]
