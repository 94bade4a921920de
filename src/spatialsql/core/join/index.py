"""
Candidate generation and exact verification for spatial joins.

The index is a conservative filter: it returns every pair whose bounding
boxes meet (no false negatives) and may return pairs that do not satisfy the
predicate. ``PairVerifier`` re-checks candidates exactly. The two stages are
independent so the index structure can be swapped.
"""

from typing import Callable, Protocol

import numpy as np
import shapely
from shapely import STRtree

from spatialsql.core.geometry.predicates import PredicateKind, evaluate_pairs


class SpatialIndex(Protocol):
    """Bounding-box index over the build side of a join."""

    size: int

    def query(self, probe: np.ndarray) -> np.ndarray:
        """Return a (2, n) int array of [probe_index, build_index] box-overlap pairs."""
        ...

    def query_dwithin(self, probe: np.ndarray, distance: float) -> np.ndarray:
        """Return [probe_index, build_index] pairs whose exact distance is <= ``distance``."""
        ...


IndexFactory = Callable[[np.ndarray], SpatialIndex]


class StrTreeIndex:
    """
    Sort-Tile-Recursive R-tree over the build geometries.

    Missing and empty geometries are not indexed and never produce candidates.
    Queries are read-only and may run concurrently from several threads.
    """

    def __init__(self, geometries: np.ndarray):
        self.geometries = np.asarray(geometries, dtype=object)
        self.size = len(self.geometries)
        self.tree = STRtree(self.geometries)

    def query(self, probe: np.ndarray) -> np.ndarray:
        return np.asarray(self.tree.query(probe), dtype=np.intp).reshape(2, -1)

    def query_dwithin(self, probe: np.ndarray, distance: float) -> np.ndarray:
        pairs = self.tree.query(probe, predicate="dwithin", distance=distance)
        return np.asarray(pairs, dtype=np.intp).reshape(2, -1)


class BruteForceIndex:
    """All-pairs bounding-box comparison; a reference index for small inputs."""

    def __init__(self, geometries: np.ndarray):
        self.geometries = np.asarray(geometries, dtype=object)
        self.size = len(self.geometries)
        usable = ~(shapely.is_missing(self.geometries) | shapely.is_empty(self.geometries))
        self._usable = np.flatnonzero(usable)
        self._bounds = shapely.bounds(self.geometries[self._usable]).reshape(-1, 4)

    def query(self, probe: np.ndarray) -> np.ndarray:
        probe = np.asarray(probe, dtype=object)
        probe_usable = np.flatnonzero(~(shapely.is_missing(probe) | shapely.is_empty(probe)))
        if len(probe_usable) == 0 or len(self._usable) == 0:
            return np.empty((2, 0), dtype=np.intp)
        pb = shapely.bounds(probe[probe_usable]).reshape(-1, 4)
        bb = self._bounds
        overlap = (
            (pb[:, None, 0] <= bb[None, :, 2])
            & (pb[:, None, 2] >= bb[None, :, 0])
            & (pb[:, None, 1] <= bb[None, :, 3])
            & (pb[:, None, 3] >= bb[None, :, 1])
        )
        pi, bi = np.nonzero(overlap)
        return np.vstack([probe_usable[pi], self._usable[bi]]).astype(np.intp)

    def query_dwithin(self, probe: np.ndarray, distance: float) -> np.ndarray:
        probe = np.asarray(probe, dtype=object)
        probe_usable = np.flatnonzero(~(shapely.is_missing(probe) | shapely.is_empty(probe)))
        if len(probe_usable) == 0 or len(self._usable) == 0:
            return np.empty((2, 0), dtype=np.intp)
        pi = np.repeat(probe_usable, len(self._usable))
        bi = np.tile(self._usable, len(probe_usable))
        keep = shapely.distance(probe[pi], self.geometries[bi]) <= distance
        return np.vstack([pi[keep], bi[keep]]).astype(np.intp)


class CandidateGenerator:
    """First join stage: bounding-box candidates from the index."""

    def __init__(self, index: SpatialIndex):
        self.index = index

    def candidates(self, probe: np.ndarray) -> np.ndarray:
        """
        Candidate pairs for a batch of probe geometries.

        Returns:
            (2, n) array of [probe_index, build_index], unique and sorted by
            probe index then build index
        """
        pairs = self.index.query(probe)
        if pairs.shape[1] == 0:
            return pairs
        return np.unique(pairs, axis=1)


class PairVerifier:
    """Second join stage: exact predicate evaluation on candidate pairs."""

    def __init__(self, kind: PredicateKind):
        if not kind.is_boolean:
            raise ValueError(f"{kind.value} cannot be verified pairwise")
        self.kind = kind

    def verify(self, left: np.ndarray, right: np.ndarray) -> np.ndarray:
        """Boolean mask over aligned (left, right) candidate geometries."""
        if len(left) == 0:
            return np.zeros(0, dtype=bool)
        return evaluate_pairs(self.kind, left, right)
