"""
Geometry values and spatial predicates.
"""

from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue

__all__ = [
    "GeometryEncoding",
    "GeometryValue",
]
