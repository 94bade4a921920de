"""
K-nearest-neighbour search over the right side of a KNN join.

Planar search expands a ``dwithin`` radius around each probe geometry until
at least ``k`` candidates are found; since every geometry within the final
radius is returned, the k smallest candidate distances are the true k
nearest.

Geodesic search starts from the planar neighbours in lon/lat. Their largest
geodesic distance bounds the k-th nearest, and that bound converts to a
degree radius for one more index query, so only nearby rows are measured.

Distance ties are broken by right row number.
"""

import logging
import math
from typing import List, Optional, Tuple

import numpy as np
import shapely

from spatialsql.core.geometry.predicates import geodesic_distances
from spatialsql.core.join.index import SpatialIndex

logger = logging.getLogger(__name__)

Neighbours = List[Tuple[int, float]]

# Smallest radius of curvature of the WGS84 ellipsoid, a * (1 - e^2), in meters
MIN_CURVATURE_RADIUS = 6_335_439.0


def _rank(candidates: np.ndarray, distances: np.ndarray, k: int) -> Neighbours:
    order = np.lexsort((candidates, distances))[:k]
    return [(int(candidates[i]), float(distances[i])) for i in order]


class KnnSearcher:
    """
    Nearest-neighbour queries against indexed right-side geometries.

    Attributes:
        geometries: Right geometries (None for null/faulted rows)
        usable: Indices of right rows that have a non-empty geometry
    """

    def __init__(
        self,
        geometries: np.ndarray,
        index: SpatialIndex,
        initial_radius: float = 0.0,
    ):
        self.geometries = np.asarray(geometries, dtype=object)
        self.index = index
        usable = ~(shapely.is_missing(self.geometries) | shapely.is_empty(self.geometries))
        self.usable = np.flatnonzero(usable)
        self.initial_radius = initial_radius or self._default_radius()
        self._within_lon_range = self._lon_range_ok()

    def _default_radius(self) -> float:
        if len(self.usable) == 0:
            return 1.0
        minx, miny, maxx, maxy = shapely.total_bounds(self.geometries[self.usable])
        diagonal = math.hypot(maxx - minx, maxy - miny)
        if diagonal == 0:
            return 1.0
        return diagonal / math.sqrt(len(self.usable))

    def _lon_range_ok(self) -> bool:
        if len(self.usable) == 0:
            return True
        minx, _, maxx, _ = shapely.total_bounds(self.geometries[self.usable])
        return -180.0 <= minx and maxx <= 180.0

    def nearest(self, probe: np.ndarray, k: int, use_spheroid: bool = False) -> List[Neighbours]:
        """
        The ``k`` nearest right rows of every probe geometry.

        Returns:
            One list per probe geometry of (right_row, distance), sorted by
            distance then right row; empty for null or empty probes
        """
        probe = np.asarray(probe, dtype=object)
        if use_spheroid:
            return self._nearest_geodesic(probe, k)
        return self._nearest_planar(probe, k)

    def _nearest_planar(self, probe: np.ndarray, k: int) -> List[Neighbours]:
        results: List[Neighbours] = [[] for _ in range(len(probe))]
        wanted = min(k, len(self.usable))
        pending = np.flatnonzero(~(shapely.is_missing(probe) | shapely.is_empty(probe)))
        if wanted == 0 or len(pending) == 0:
            return results

        radius = self.initial_radius
        while len(pending):
            pairs = self.index.query_dwithin(probe[pending], radius)
            counts = np.bincount(pairs[0], minlength=len(pending))
            order = np.argsort(pairs[0], kind="stable")
            grouped = np.split(pairs[1][order], np.cumsum(counts)[:-1])
            complete = counts >= wanted
            for local in np.flatnonzero(complete):
                candidates = grouped[local]
                distances = shapely.distance(probe[pending[local]], self.geometries[candidates])
                results[pending[local]] = _rank(candidates, np.asarray(distances), k)
            pending = pending[~complete]
            radius *= 2.0
            if len(pending) and not math.isfinite(radius):
                raise ArithmeticError("KNN search radius overflowed")
        return results

    def _nearest_geodesic(self, probe: np.ndarray, k: int) -> List[Neighbours]:
        # The planar neighbours bound the k-th geodesic distance from above;
        # every row within that distance lies inside the matching degree radius.
        seeds = self._nearest_planar(probe, k)
        results: List[Neighbours] = [[] for _ in range(len(probe))]
        for i, seed in enumerate(seeds):
            if not seed:
                continue
            geometry = probe[i]
            seed_rows = np.array([row for row, _ in seed], dtype=np.intp)
            bound = float(np.max(self._geodesic_from(geometry, seed_rows)))
            radius = self._degree_radius(geometry, bound)
            if radius is None:
                candidates = self.usable
            else:
                candidates = self.index.query_dwithin(probe[i : i + 1], radius)[1]
            results[i] = _rank(candidates, self._geodesic_from(geometry, candidates), k)
        return results

    def _geodesic_from(self, geometry: object, rows: np.ndarray) -> np.ndarray:
        left = np.full(len(rows), geometry, dtype=object)
        return geodesic_distances(left, self.geometries[rows])

    def _degree_radius(self, geometry: object, meters: float) -> Optional[float]:
        """
        Planar lon/lat radius that holds every geometry within ``meters``.

        On WGS84 every path is at least ``MIN_CURVATURE_RADIUS`` times as long
        as the great-circle angle between its geodetic endpoints, so the
        haversine formula bounds the latitude and longitude offsets. Returns
        None when no finite radius is safe (near a pole or the antimeridian).
        """
        theta = meters / MIN_CURVATURE_RADIUS
        if theta >= math.pi / 2:
            return None
        dlat = math.degrees(theta)
        minx, miny, maxx, maxy = shapely.bounds(geometry)
        lat_limit = max(abs(miny), abs(maxy)) + dlat
        if lat_limit >= 90.0:
            return None
        ratio = math.sin(theta / 2) / math.cos(math.radians(lat_limit))
        if ratio >= 1.0:
            return None
        dlon = math.degrees(2 * math.asin(ratio))
        if minx - dlon <= -180.0 or maxx + dlon >= 180.0 or not self._within_lon_range:
            return None
        return math.hypot(dlat, dlon) * (1 + 1e-9) + 1e-12
