"""
Columnar file I/O.
"""

from spatialsql.io.geoparquet import read_geoparquet, write_geoparquet

__all__ = ["read_geoparquet", "write_geoparquet"]
