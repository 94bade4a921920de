"""
Coordinate transform pipelines between registered CRS.

Projection math is delegated to a transform provider; the default provider
uses pyproj. A pipeline only changes coordinate values: vertex count, ring
order and winding order are preserved.
"""

import threading
from typing import Callable, Optional, Protocol, Tuple

import numpy as np
import shapely
from pyproj import Transformer
from pyproj.exceptions import ProjError
from shapely.geometry.base import BaseGeometry

from spatialsql.core.errors import CoordinateTransformError, NoTransformPath
from spatialsql.models.crs import CanonicalCrs

CoordinateFn = Callable[..., Tuple[np.ndarray, ...]]


class TransformProvider(Protocol):
    """Builds coordinate functions between two CRS, or raises NoTransformPath."""

    def build(self, source: CanonicalCrs, target: CanonicalCrs) -> CoordinateFn:
        ...


class _ProjCoordinateFn:
    """
    pyproj-backed coordinate function.

    pyproj Transformer objects must not be shared between threads, so one is
    created lazily per worker thread.
    """

    def __init__(self, source: CanonicalCrs, target: CanonicalCrs):
        self.source = source
        self.target = target
        self._local = threading.local()
        # Fail at plan time rather than inside the first worker
        self._transformer()

    def _transformer(self) -> Transformer:
        transformer = getattr(self._local, "transformer", None)
        if transformer is None:
            try:
                transformer = Transformer.from_crs(
                    self.source.proj,
                    self.target.proj,
                    always_xy=True,
                )
            except ProjError as e:
                raise NoTransformPath(self.source.crs_id, self.target.crs_id, str(e))
            self._local.transformer = transformer
        return transformer

    def __call__(
        self,
        x: np.ndarray,
        y: np.ndarray,
        z: Optional[np.ndarray] = None,
    ) -> Tuple[np.ndarray, ...]:
        transformer = self._transformer()
        if z is not None:
            return transformer.transform(x, y, z)
        return transformer.transform(x, y)


class ProjTransformProvider:
    """Default transform provider backed by the PROJ database."""

    def build(self, source: CanonicalCrs, target: CanonicalCrs) -> CoordinateFn:
        src, tgt = source.proj, target.proj
        # Engineering/local systems have no datum to bridge through
        if src.geodetic_crs is None or tgt.geodetic_crs is None:
            raise NoTransformPath(
                source.crs_id, target.crs_id, "CRS has no geodetic datum"
            )
        return _ProjCoordinateFn(source, target)


class TransformPipeline:
    """
    Reprojects coordinates from a source CRS to a target CRS.

    Attributes:
        source: Source CRS
        target: Target CRS
        tolerance: Declared round-trip tolerance, in source CRS units
        is_identity: True when source and target are the same CRS
    """

    def __init__(
        self,
        source: CanonicalCrs,
        target: CanonicalCrs,
        provider: TransformProvider,
        tolerance: float = 1e-6,
    ):
        """
        Initialize pipeline.

        Raises:
            NoTransformPath: If the provider cannot bridge the two systems
        """
        self.source = source
        self.target = target
        self.tolerance = tolerance
        self.is_identity = source.crs_id == target.crs_id
        self._provider = provider
        self._fn: Optional[CoordinateFn] = None
        if not self.is_identity:
            self._fn = provider.build(source, target)

    def transform_batch(
        self,
        x_coords,
        y_coords,
        z_coords=None,
    ) -> Tuple[np.ndarray, ...]:
        """
        Transform coordinate arrays.

        Returns:
            Tuple of transformed arrays (xx, yy) or (xx, yy, zz)

        Raises:
            CoordinateTransformError: If any output coordinate is not finite
        """
        x_arr = np.asarray(x_coords, dtype=float)
        y_arr = np.asarray(y_coords, dtype=float)
        if len(x_arr) != len(y_arr):
            raise CoordinateTransformError("x_coords and y_coords must have same length")

        if self.is_identity:
            if z_coords is not None:
                return x_arr, y_arr, np.asarray(z_coords, dtype=float)
            return x_arr, y_arr

        if z_coords is not None:
            z_arr = np.asarray(z_coords, dtype=float)
            result = self._fn(x_arr, y_arr, z_arr)
        else:
            result = self._fn(x_arr, y_arr)

        result = tuple(np.asarray(axis, dtype=float) for axis in result)
        if not all(np.isfinite(axis).all() for axis in result[:2]):
            raise CoordinateTransformError(
                f"Coordinates fall outside the domain of {self.source} -> {self.target}"
            )
        return result

    def transform(self, x: float, y: float) -> Tuple[float, float]:
        """Transform a single coordinate."""
        xx, yy = self.transform_batch([x], [y])
        return float(xx[0]), float(yy[0])

    def _transform_coords(self, coords: np.ndarray) -> np.ndarray:
        if coords.shape[1] == 3:
            xx, yy, zz = self.transform_batch(coords[:, 0], coords[:, 1], coords[:, 2])
            return np.column_stack([xx, yy, zz])
        xx, yy = self.transform_batch(coords[:, 0], coords[:, 1])
        return np.column_stack([xx, yy])

    def apply(self, geometry: BaseGeometry) -> BaseGeometry:
        """
        Reproject every vertex of a geometry.

        Identity pipelines return the input object unchanged.
        """
        if self.is_identity or geometry.is_empty:
            return geometry
        return shapely.transform(
            geometry,
            self._transform_coords,
            include_z=bool(shapely.has_z(geometry)),
        )

    __call__ = apply

    def inverse(self) -> "TransformPipeline":
        """Pipeline in the opposite direction."""
        return TransformPipeline(self.target, self.source, self._provider, self.tolerance)

    def __repr__(self) -> str:
        return f"TransformPipeline({self.source} -> {self.target})"
