"""
Exception hierarchy for the spatialsql query core.

Errors fall in these groups:

- plan-time errors (``UnknownCrs``, ``NoDeclaredCrs``, ``NoTransformPath``,
  ``MismatchedCrs``, ``InvalidPlanError``) depend only on schema and CRS
  metadata and are raised before any row is scanned;
- row-level errors (``MalformedGeometry``, ``CoordinateTransformError``) are
  attached to a single row and recorded as faults unless strict mode is on;
- execution errors (``QueryCancelled``), numeric errors
  (``EmptyGeometryDistance``) and I/O errors (``GeoParquetError``).
"""

from typing import Any, Dict, List, Optional


class SpatialSqlError(Exception):
    """
    Base exception for all spatialsql errors.

    Attributes:
        message: Human-readable error message
        error_code: Stable machine-readable identifier for the error type
        category: Error category tag (e.g. 'type_coercion', 'crs', 'row')
        details: Technical details for logging/debugging
        suggestions: Optional list of resolution hints
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        category: str = "internal",
        details: Optional[Dict[str, Any]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        """
        Initialize SpatialSqlError.

        Args:
            message: Human-readable error message
            error_code: String identifier for the error type
            category: Error category tag
            details: Technical details for logging
            suggestions: List of suggestions for resolution
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.category = category
        self.details = details or {}
        self.suggestions = suggestions or []

    @property
    def plan_time(self) -> bool:
        """True if the error is raised during planning, before any scan."""
        return False

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to a dictionary.

        Returns:
            Dictionary representation of the error
        """
        return {
            "error_code": self.error_code,
            "category": self.category,
            "message": self.message,
            "details": self.details,
            "suggestions": self.suggestions,
        }

    def __str__(self) -> str:
        return f"{self.error_code}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"error_code='{self.error_code}', "
            f"category='{self.category}', "
            f"message='{self.message}')"
        )


class PlanningError(SpatialSqlError):
    """Base class for errors that surface during planning."""

    @property
    def plan_time(self) -> bool:
        return True


class UnknownCrs(PlanningError):
    """Raised when a CRS identifier cannot be parsed or is not registered."""

    def __init__(self, identifier: Any, reason: Optional[str] = None):
        message = f"Unknown CRS identifier: {identifier}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message=message,
            error_code="UNKNOWN_CRS",
            category="crs",
            details={"identifier": str(identifier)},
            suggestions=[
                "Use the '<authority>:<code>' form, e.g. 'EPSG:4326' or 'OGC:CRS84'",
                "Check that the code exists in the registry catalog",
            ],
        )
        self.identifier = identifier


class NoDeclaredCrs(PlanningError):
    """Raised when a transform is requested on geometry with no declared CRS."""

    def __init__(self, target: Any = None, column: Optional[str] = None):
        subject = f"column '{column}'" if column else "geometry"
        message = f"Cannot transform {subject}: it has no declared CRS"
        details: Dict[str, Any] = {}
        if target is not None:
            details["target_crs"] = str(target)
        if column:
            details["column"] = column
        super().__init__(
            message=message,
            error_code="NO_DECLARED_CRS",
            category="crs",
            details=details,
            suggestions=["Tag the geometry with ST_SetSRID before calling ST_Transform"],
        )
        self.target = target


class NoTransformPath(PlanningError):
    """Raised when the registry cannot bridge two coordinate systems."""

    def __init__(self, source: Any, target: Any, reason: Optional[str] = None):
        message = f"No transform path from {source} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code="NO_TRANSFORM_PATH",
            category="crs",
            details={"source_crs": str(source), "target_crs": str(target)},
            suggestions=["Transform through an intermediate CRS such as EPSG:4326"],
        )
        self.source = source
        self.target = target


class MismatchedCrs(PlanningError):
    """
    Raised when two geometry arguments carry different declared CRS tags.

    The message format is stable: ``Mismatched CRS arguments: <crs1> vs <crs2>``.
    """

    def __init__(self, left: Any, right: Any, function_name: Optional[str] = None):
        details: Dict[str, Any] = {"left_crs": str(left), "right_crs": str(right)}
        if function_name:
            details["function"] = function_name
        super().__init__(
            message=f"Mismatched CRS arguments: {left} vs {right}",
            error_code="MISMATCHED_CRS",
            category="type_coercion",
            details=details,
            suggestions=[
                "Use ST_Transform to reproject one argument into the other's CRS",
                "Use ST_SetSRID if one argument is tagged with the wrong CRS",
            ],
        )
        self.left = left
        self.right = right


class InvalidPlanError(PlanningError):
    """Raised for structurally invalid plans: unknown functions, bad arity, wrong types."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="INVALID_PLAN",
            category="binding",
            details=details,
        )


class MalformedGeometry(SpatialSqlError):
    """Raised when a geometry payload fails to decode."""

    def __init__(
        self,
        message: str,
        row: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if row is not None:
            error_details["row"] = row
        super().__init__(
            message=message,
            error_code="MALFORMED_GEOMETRY",
            category="row",
            details=error_details,
            suggestions=["Check the WKB/WKT payload of the offending row"],
        )
        self.row = row


class CoordinateTransformError(SpatialSqlError):
    """Raised when a vertex cannot be reprojected (non-finite output)."""

    def __init__(self, message: str, row: Optional[int] = None):
        super().__init__(
            message=message,
            error_code="COORDINATE_TRANSFORM_FAILED",
            category="row",
            details={"row": row} if row is not None else None,
            suggestions=["Check that the coordinates lie inside the CRS area of use"],
        )
        self.row = row


class EmptyGeometryDistance(SpatialSqlError):
    """Raised when a distance is requested with an empty geometry operand."""

    def __init__(self) -> None:
        super().__init__(
            message="Distance is undefined for empty geometries",
            error_code="EMPTY_GEOMETRY_DISTANCE",
            category="numeric",
        )


class QueryCancelled(SpatialSqlError):
    """Raised when a running operation observes its cancellation token."""

    def __init__(self, operation: str, batches_done: int = 0):
        super().__init__(
            message=f"{operation} cancelled after {batches_done} batches",
            error_code="QUERY_CANCELLED",
            category="execution",
            details={"operation": operation, "batches_done": batches_done},
        )


class ConfigurationError(SpatialSqlError):
    """Raised when settings are invalid."""

    def __init__(self, message: str, config_key: Optional[str] = None):
        super().__init__(
            message=message,
            error_code="CONFIGURATION_ERROR",
            category="config",
            details={"config_key": config_key} if config_key else None,
            suggestions=["Check SPATIALSQL_* environment variables"],
        )


class GeoParquetError(SpatialSqlError):
    """Raised when a GeoParquet file or its ``geo`` metadata cannot be used."""

    def __init__(self, message: str, path: Optional[str] = None, column: Optional[str] = None):
        details: Dict[str, Any] = {}
        if path is not None:
            details["path"] = path
        if column is not None:
            details["column"] = column
        super().__init__(
            message=message,
            error_code="GEOPARQUET_ERROR",
            category="io",
            details=details,
        )
