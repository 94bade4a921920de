"""
Pydantic models for error and row-fault reports.

These are the serializable forms of ``SpatialSqlError`` and ``FaultSummary``,
for callers that log or ship query diagnostics as JSON.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class ErrorReport(BaseModel):
    """
    A typed error in serializable form.

    Attributes:
        error_code: Stable machine-readable identifier (e.g. 'MISMATCHED_CRS')
        category: Error category tag
        message: Human-readable message
        details: Technical details
        suggestions: Resolution hints
        plan_time: True if raised before any row was scanned
    """

    error_code: str = Field(..., description="Machine-readable error code")
    category: str = Field("internal", description="Error category tag")
    message: str = Field(..., description="Human-readable error message")
    details: Dict[str, Any] = Field(default_factory=dict)
    suggestions: List[str] = Field(default_factory=list)
    plan_time: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "error_code": "MISMATCHED_CRS",
                "category": "type_coercion",
                "message": "Mismatched CRS arguments: epsg:3857 vs epsg:4326",
                "details": {"left": "epsg:3857", "right": "epsg:4326"},
                "suggestions": ["Wrap one argument in ST_Transform"],
                "plan_time": True,
            }
        }
    )

    @field_serializer("timestamp")
    def serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat()

    @classmethod
    def from_error(cls, error: Any) -> "ErrorReport":
        """Build a report from a ``SpatialSqlError``."""
        return cls(plan_time=error.plan_time, **error.to_dict())


class RowFaultReport(BaseModel):
    side: str
    row: int = Field(..., ge=0)
    error: ErrorReport


class FaultReport(BaseModel):
    """Rows excluded from a result, grouped by error code."""

    operation: Optional[str] = None
    count: int = Field(0, ge=0)
    by_error_code: Dict[str, int] = Field(default_factory=dict)
    faults: List[RowFaultReport] = Field(default_factory=list)
