"""
Coordinate Reference System (CRS) handling.

This module provides:
- the CRS registry (identifier resolution and alias rules)
- transform pipelines between registered CRS
- the CRS compatibility rule for multi-geometry functions
"""

from spatialsql.core.crs.compatibility import CrsBinding, check_crs_compatibility
from spatialsql.core.crs.pipeline import (
    ProjTransformProvider,
    TransformPipeline,
    TransformProvider,
)
from spatialsql.core.crs.registry import (
    STANDARD_CATALOG,
    CrsRegistry,
    Identifier,
    default_registry,
)

__all__ = [
    # Registry
    "STANDARD_CATALOG",
    "CrsRegistry",
    "Identifier",
    "default_registry",
    # Pipelines
    "ProjTransformProvider",
    "TransformPipeline",
    "TransformProvider",
    # Compatibility
    "CrsBinding",
    "check_crs_compatibility",
]
