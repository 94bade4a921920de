"""
ST_SetSRID and ST_Transform.

``st_setsrid`` relabels a geometry without touching its payload.
``st_transform`` reprojects vertices through a registry pipeline and tags the
result with the canonical target identifier. Column variants resolve the CRS
and the pipeline once, before any row is read.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from spatialsql.core.config import settings
from spatialsql.core.crs.pipeline import TransformPipeline
from spatialsql.core.crs.registry import CrsRegistry, Identifier, default_registry
from spatialsql.core.errors import (
    CoordinateTransformError,
    MalformedGeometry,
    NoDeclaredCrs,
)
from spatialsql.core.execution import (
    CancellationToken,
    FaultCollector,
    FaultSummary,
    RowFault,
    run_batches,
)
from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue
from spatialsql.core.schema import GeometryColumn
from spatialsql.utils.logging import PerformanceTimer

logger = logging.getLogger(__name__)


def st_setsrid(
    geometry: GeometryValue,
    identifier: Identifier,
    registry: Optional[CrsRegistry] = None,
) -> GeometryValue:
    """
    Tag a geometry with a CRS, leaving its payload untouched.

    Raises:
        UnknownCrs: If ``identifier`` does not resolve
    """
    registry = registry or default_registry()
    crs = registry.resolve(identifier).crs_id
    if geometry.crs == crs:
        return geometry
    return geometry.with_crs(crs)


def apply_pipeline(geometry: GeometryValue, pipeline: TransformPipeline) -> GeometryValue:
    """
    Reproject one geometry through a resolved pipeline.

    Identity pipelines keep the payload byte-for-byte and only re-tag.

    Raises:
        MalformedGeometry: If the payload does not decode
        CoordinateTransformError: If a vertex cannot be reprojected
    """
    target = pipeline.target.crs_id
    if pipeline.is_identity:
        return geometry.with_crs(target)
    reprojected = pipeline.apply(geometry.decode())
    return GeometryValue.from_shapely(reprojected, target)


def st_transform(
    geometry: GeometryValue,
    identifier: Identifier,
    registry: Optional[CrsRegistry] = None,
) -> GeometryValue:
    """
    Reproject a geometry into another CRS.

    Raises:
        NoDeclaredCrs: If the geometry carries no CRS
        UnknownCrs: If either CRS does not resolve
        NoTransformPath: If the registry cannot bridge the two systems
        MalformedGeometry: If the payload does not decode
    """
    registry = registry or default_registry()
    if geometry.crs is None:
        raise NoDeclaredCrs(target=identifier)
    pipeline = registry.transform_pipeline(geometry.crs, identifier)
    return apply_pipeline(geometry, pipeline)


@dataclass
class ColumnResult:
    """A transformed column plus the faults of rows that were nulled out."""

    column: GeometryColumn
    faults: FaultSummary = field(default_factory=FaultSummary)


def set_srid_column(
    column: GeometryColumn,
    identifier: Identifier,
    registry: Optional[CrsRegistry] = None,
) -> GeometryColumn:
    """Relabel every row of a column; payloads are shared, not copied."""
    registry = registry or default_registry()
    crs = registry.resolve(identifier).crs_id
    values = [v.with_crs(crs) if v is not None else None for v in column]
    return GeometryColumn(values, crs, column.encoding)


def transform_column(
    column: GeometryColumn,
    identifier: Identifier,
    registry: Optional[CrsRegistry] = None,
    strict: Optional[bool] = None,
    cancel: Optional[CancellationToken] = None,
    batch_size: Optional[int] = None,
    column_name: Optional[str] = None,
) -> ColumnResult:
    """
    Reproject a whole column.

    The CRS check and pipeline construction happen before any row is read.
    Rows that fail to decode or reproject become nulls and are reported as
    faults (or abort the operation in strict mode).

    Raises:
        NoDeclaredCrs: If the column has no declared CRS
        UnknownCrs: If the target does not resolve
        NoTransformPath: If the registry cannot bridge the two systems
        QueryCancelled: If ``cancel`` is triggered between batches
    """
    registry = registry or default_registry()
    if column.crs is None:
        raise NoDeclaredCrs(target=identifier, column=column_name)
    pipeline = registry.transform_pipeline(column.crs, identifier)
    batch_size = batch_size or settings.batch_size
    collector = FaultCollector(strict)

    def work(start: int):
        out: List[Optional[GeometryValue]] = []
        faults: List[RowFault] = []
        for row, value in enumerate(column.values[start:start + batch_size], start):
            if value is None:
                out.append(None)
                continue
            try:
                out.append(apply_pipeline(value, pipeline))
            except (MalformedGeometry, CoordinateTransformError) as e:
                e.details.setdefault("row", row)
                collector.handle("input", row, e, faults)
                out.append(None)
        return out, faults

    values: List[Optional[GeometryValue]] = []
    with PerformanceTimer("transform_column", rows=len(column), target=str(pipeline.target)):
        for out, faults in run_batches(
            work, range(0, len(column), batch_size), "ST_Transform", cancel
        ):
            values.extend(out)
            collector.summary.extend(faults)

    if collector.summary:
        logger.warning(
            f"ST_Transform to {pipeline.target}: {collector.summary.count} rows faulted"
        )
    encoding = column.encoding if pipeline.is_identity else GeometryEncoding.OWNED
    return ColumnResult(
        GeometryColumn(values, pipeline.target.crs_id, encoding), collector.summary
    )
