"""
Binary spatial predicates over decoded geometries.

Predicates form a closed set (``PredicateKind``). Every function here is a
pure function of its geometry arguments and assumes CRS compatibility was
established when the calling expression or join was planned.

Degenerate inputs:
- empty geometries never intersect, contain or lie within anything;
- distances involving an empty geometry raise ``EmptyGeometryDistance``;
- invalid polygons (self-intersecting rings, bow-ties) are repaired with
  ``shapely.make_valid`` before evaluation, so GEOS topology errors cannot
  escape as undefined results.
"""

from enum import Enum

import numpy as np
import shapely
from pyproj import Geod
from shapely.geometry.base import BaseGeometry

from spatialsql.core.errors import EmptyGeometryDistance

# Geodesic computations on the WGS84 ellipsoid, lon/lat degrees in, meters out
_WGS84 = Geod(ellps="WGS84")


class PredicateKind(str, Enum):
    """The spatial predicates the planner knows how to execute."""

    INTERSECTS = "st_intersects"
    CONTAINS = "st_contains"
    WITHIN = "st_within"
    KNN = "st_knn"

    @property
    def function_name(self) -> str:
        return {
            "st_intersects": "ST_Intersects",
            "st_contains": "ST_Contains",
            "st_within": "ST_Within",
            "st_knn": "ST_KNN",
        }[self.value]

    @property
    def is_boolean(self) -> bool:
        return self is not PredicateKind.KNN

    def flipped(self) -> "PredicateKind":
        """Predicate with its arguments swapped: contains(a, b) == within(b, a)."""
        if self is PredicateKind.CONTAINS:
            return PredicateKind.WITHIN
        if self is PredicateKind.WITHIN:
            return PredicateKind.CONTAINS
        return self


def repair(geometry: BaseGeometry) -> BaseGeometry:
    """Return a valid version of ``geometry`` (itself if already valid or empty)."""
    if geometry.is_empty or geometry.is_valid:
        return geometry
    return shapely.make_valid(geometry)


def repair_array(geometries: np.ndarray) -> np.ndarray:
    """Vectorized ``repair``; None entries are left untouched."""
    geometries = np.asarray(geometries, dtype=object)
    present = ~shapely.is_missing(geometries)
    invalid = present & ~shapely.is_empty(geometries) & ~shapely.is_valid(geometries)
    if invalid.any():
        geometries = geometries.copy()
        geometries[invalid] = shapely.make_valid(geometries[invalid])
    return geometries


def intersects(a: BaseGeometry, b: BaseGeometry) -> bool:
    if a.is_empty or b.is_empty:
        return False
    return bool(shapely.intersects(repair(a), repair(b)))


def contains(a: BaseGeometry, b: BaseGeometry) -> bool:
    """True if no point of ``b`` lies outside ``a`` and their interiors meet."""
    if a.is_empty or b.is_empty:
        return False
    return bool(shapely.contains(repair(a), repair(b)))


def within(a: BaseGeometry, b: BaseGeometry) -> bool:
    return contains(b, a)


def planar_distance(a: BaseGeometry, b: BaseGeometry) -> float:
    """
    Cartesian distance in CRS units.

    Raises:
        EmptyGeometryDistance: If either geometry is empty
    """
    if a.is_empty or b.is_empty:
        raise EmptyGeometryDistance()
    return float(shapely.distance(repair(a), repair(b)))


def geodesic_distance(a: BaseGeometry, b: BaseGeometry) -> float:
    """
    Distance in meters on the WGS84 ellipsoid between lon/lat geometries.

    The closest pair of vertices/points is found in lon/lat space and the
    geodesic between them is measured; this is exact for points.

    Raises:
        EmptyGeometryDistance: If either geometry is empty
    """
    if a.is_empty or b.is_empty:
        raise EmptyGeometryDistance()
    return float(geodesic_distances(np.array([a], dtype=object), np.array([b], dtype=object))[0])


def geodesic_distances(left: np.ndarray, right: np.ndarray) -> np.ndarray:
    """Pairwise (elementwise) geodesic distances in meters; NaN where either side is empty."""
    left = repair_array(left)
    right = repair_array(right)
    result = np.full(len(left), np.nan)
    usable = ~(shapely.is_empty(left) | shapely.is_empty(right))
    if not usable.any():
        return result

    touching = np.zeros(len(left), dtype=bool)
    touching[usable] = shapely.intersects(left[usable], right[usable])
    result[touching] = 0.0

    apart = usable & ~touching
    if apart.any():
        lines = shapely.shortest_line(left[apart], right[apart])
        coords = shapely.get_coordinates(lines).reshape(-1, 2, 2)
        _, _, dist = _WGS84.inv(
            coords[:, 0, 0], coords[:, 0, 1], coords[:, 1, 0], coords[:, 1, 1]
        )
        result[apart] = np.asarray(dist, dtype=float)
    return result


def knn_distance(a: BaseGeometry, b: BaseGeometry, use_spheroid: bool = False) -> float:
    """Distance used to rank KNN candidates."""
    if use_spheroid:
        return geodesic_distance(a, b)
    return planar_distance(a, b)


def evaluate(kind: PredicateKind, a: BaseGeometry, b: BaseGeometry) -> bool:
    """Evaluate a boolean predicate."""
    if kind is PredicateKind.INTERSECTS:
        return intersects(a, b)
    if kind is PredicateKind.CONTAINS:
        return contains(a, b)
    if kind is PredicateKind.WITHIN:
        return within(a, b)
    raise ValueError(f"{kind.value} is not a boolean predicate")


def evaluate_pairs(kind: PredicateKind, left: np.ndarray, right: np.ndarray) -> np.ndarray:
    """
    Evaluate a boolean predicate elementwise over two aligned geometry arrays.

    Inputs must already be repaired (see ``repair_array``); empty geometries
    yield False.
    """
    if kind is PredicateKind.INTERSECTS:
        result = shapely.intersects(left, right)
    elif kind is PredicateKind.CONTAINS:
        result = shapely.contains(left, right)
    elif kind is PredicateKind.WITHIN:
        result = shapely.within(left, right)
    else:
        raise ValueError(f"{kind.value} is not a boolean predicate")
    return np.asarray(result, dtype=bool)
