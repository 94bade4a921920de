"""
Data models and schemas.
"""

from .crs import CanonicalCrs, CoordinateOrder, CrsId, DistanceUnit, format_crs
from .reports import ErrorReport, FaultReport, RowFaultReport

__all__ = [
    # CRS models
    "CanonicalCrs",
    "CoordinateOrder",
    "CrsId",
    "DistanceUnit",
    "format_crs",
    # Reports
    "ErrorReport",
    "FaultReport",
    "RowFaultReport",
]
