"""
spatialsql - CRS-aware spatial query core.

Geometry values tagged with a coordinate reference system, a CRS registry
with transform pipelines, spatial predicates and an indexed spatial join.
Call ``setup_logging`` once at startup to configure the package logger.
"""

from spatialsql.core.logging_config import LogContext, setup_logging

__version__ = "0.1.0"

__all__ = ["LogContext", "setup_logging", "__version__"]
