"""
Spatial scalar and aggregate expressions.

Expressions are built with ``col``, ``lit`` and ``call`` and bound against a
schema with ``bind``. Binding does all CRS work for the call site: the
compatibility rule for functions with several geometry arguments, target
resolution for ST_SetSRID and pipeline construction for ST_Transform. The
bound tree carries a static result type, so evaluation never checks CRS.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import shapely

from spatialsql.core.config import settings
from spatialsql.core.crs.compatibility import check_crs_compatibility
from spatialsql.core.crs.pipeline import TransformPipeline
from spatialsql.core.crs.registry import CrsRegistry, default_registry
from spatialsql.core.crs.transform import apply_pipeline
from spatialsql.core.errors import (
    CoordinateTransformError,
    EmptyGeometryDistance,
    InvalidPlanError,
    MalformedGeometry,
    NoDeclaredCrs,
    SpatialSqlError,
)
from spatialsql.core.execution import (
    CancellationToken,
    FaultCollector,
    FaultSummary,
    RowFault,
    run_batches,
)
from spatialsql.core.geometry import predicates
from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue
from spatialsql.core.schema import (
    DataType,
    GeometryColumn,
    GeometryType,
    RecordBatch,
    ScalarType,
    Schema,
    Table,
    describe_type,
    infer_scalar_type,
)
from spatialsql.models.crs import CrsId

logger = logging.getLogger(__name__)

# Errors that null out a single row instead of failing the query
ROW_ERRORS = (MalformedGeometry, CoordinateTransformError, EmptyGeometryDistance)


@dataclass(frozen=True)
class ColumnRef:
    name: str


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Call:
    name: str
    args: Tuple["Expression", ...] = ()


Expression = Union[ColumnRef, Literal, Call]


def col(name: str) -> ColumnRef:
    return ColumnRef(name)


def lit(value: Any) -> Literal:
    return Literal(value)


def call(name: str, *args: Any) -> Call:
    """Function call; bare Python values are wrapped as literals."""
    wrapped = tuple(a if isinstance(a, (ColumnRef, Literal, Call)) else Literal(a) for a in args)
    return Call(name, wrapped)


class BoundExpression:
    """A type-checked expression. ``dtype`` is known before any row is read."""

    dtype: DataType
    is_aggregate = False

    def value_at(self, batch: RecordBatch, row: int) -> Any:
        raise NotImplementedError


@dataclass
class BoundColumn(BoundExpression):
    name: str
    dtype: DataType

    def value_at(self, batch: RecordBatch, row: int) -> Any:
        return batch.column(self.name)[row]


@dataclass
class BoundLiteral(BoundExpression):
    value: Any
    dtype: DataType

    def value_at(self, batch: RecordBatch, row: int) -> Any:
        return self.value


@dataclass
class BoundCall(BoundExpression):
    name: str
    args: List[BoundExpression]
    dtype: DataType
    fn: Callable[..., Any]
    # Literal arguments consumed at bind time (CRS identifiers, flags)
    constants: Dict[str, Any] = field(default_factory=dict)

    def value_at(self, batch: RecordBatch, row: int) -> Any:
        values = [arg.value_at(batch, row) for arg in self.args]
        if any(v is None for v in values):
            return None
        return self.fn(*values)


@dataclass
class BoundAggregate(BoundExpression):
    name: str
    arg: BoundExpression
    dtype: DataType
    step: Callable[[Any, Any], Any]
    finish: Callable[[Any], Any]
    is_aggregate = True


# Function binders, keyed by lowercase name

Binder = Callable[["_Binder", str, List[BoundExpression], List[Expression]], BoundExpression]
_FUNCTIONS: Dict[str, Tuple[int, int, Binder]] = {}


def _register(name: str, min_args: int, max_args: Optional[int] = None):
    def decorator(binder: Binder) -> Binder:
        _FUNCTIONS[name.lower()] = (min_args, max_args if max_args is not None else min_args, binder)
        return binder

    return decorator


def function_names() -> List[str]:
    return sorted(_FUNCTIONS)


def _require_geometry(name: str, arg: BoundExpression, position: int) -> GeometryType:
    if not isinstance(arg.dtype, GeometryType):
        raise InvalidPlanError(
            f"{name} argument {position} must be a geometry, got {describe_type(arg.dtype)}"
        )
    return arg.dtype


def _require_literal(name: str, expr: Expression, position: int) -> Any:
    if not isinstance(expr, Literal):
        raise InvalidPlanError(f"{name} argument {position} must be a constant")
    return expr.value


def _decode(value: GeometryValue):
    return value.decode()


@_register("ST_GeomFromText", 1, 2)
def _bind_from_text(binder, name, args, exprs):
    if args[0].dtype not in (ScalarType.STRING, ScalarType.NULL):
        raise InvalidPlanError(f"{name} expects WKT text")
    crs = binder.resolve_crs_arg(name, exprs, 1)

    def fn(text: str) -> GeometryValue:
        return GeometryValue.from_wkt(text, crs)

    return BoundCall(name, args[:1], GeometryType(GeometryEncoding.OWNED, crs), fn, {"crs": crs})


@_register("ST_GeomFromWKB", 1, 2)
def _bind_from_wkb(binder, name, args, exprs):
    if args[0].dtype not in (ScalarType.BINARY, ScalarType.NULL):
        raise InvalidPlanError(f"{name} expects WKB bytes")
    crs = binder.resolve_crs_arg(name, exprs, 1)

    def fn(wkb) -> GeometryValue:
        value = GeometryValue.from_wkb(bytes(wkb), crs)
        value.decode()
        return value

    return BoundCall(name, args[:1], GeometryType(GeometryEncoding.OWNED, crs), fn, {"crs": crs})


@_register("ST_SetSRID", 2)
def _bind_setsrid(binder, name, args, exprs):
    source = _require_geometry(name, args[0], 1)
    identifier = _require_literal(name, exprs[1], 2)
    crs = binder.registry.resolve(identifier).crs_id

    def fn(value: GeometryValue) -> GeometryValue:
        return value if value.crs == crs else value.with_crs(crs)

    return BoundCall(name, args[:1], GeometryType(source.encoding, crs), fn, {"crs": crs})


@_register("ST_Transform", 2)
def _bind_transform(binder, name, args, exprs):
    source = _require_geometry(name, args[0], 1)
    identifier = _require_literal(name, exprs[1], 2)
    if source.crs is None:
        column = exprs[0].name if isinstance(exprs[0], ColumnRef) else None
        raise NoDeclaredCrs(target=identifier, column=column)
    pipeline: TransformPipeline = binder.registry.transform_pipeline(source.crs, identifier)
    encoding = source.encoding if pipeline.is_identity else GeometryEncoding.OWNED

    def fn(value: GeometryValue) -> GeometryValue:
        return apply_pipeline(value, pipeline)

    return BoundCall(
        name,
        args[:1],
        GeometryType(encoding, pipeline.target.crs_id),
        fn,
        {"pipeline": pipeline},
    )


def _bind_predicate(kind: predicates.PredicateKind) -> Binder:
    def bind_fn(binder, name, args, exprs):
        binder.check_geometry_args(name, args)

        def fn(a: GeometryValue, b: GeometryValue) -> bool:
            return predicates.evaluate(kind, _decode(a), _decode(b))

        return BoundCall(name, args, ScalarType.BOOLEAN, fn)

    return bind_fn


_register("ST_Intersects", 2)(_bind_predicate(predicates.PredicateKind.INTERSECTS))
_register("ST_Contains", 2)(_bind_predicate(predicates.PredicateKind.CONTAINS))
_register("ST_Within", 2)(_bind_predicate(predicates.PredicateKind.WITHIN))


@_register("ST_Distance", 2, 3)
def _bind_distance(binder, name, args, exprs):
    binding = binder.check_geometry_args(name, args[:2])
    use_spheroid = bool(_require_literal(name, exprs[2], 3)) if len(exprs) > 2 else False
    if use_spheroid and binding.common_crs is not None:
        if not binder.registry.is_geographic(binding.common_crs):
            raise InvalidPlanError(
                f"{name} with use_spheroid needs geographic coordinates, got {binding.common_crs}"
            )

    def fn(a: GeometryValue, b: GeometryValue) -> float:
        return predicates.knn_distance(_decode(a), _decode(b), use_spheroid)

    return BoundCall(name, args[:2], ScalarType.FLOAT, fn, {"use_spheroid": use_spheroid})


@_register("ST_AsText", 1)
def _bind_as_text(binder, name, args, exprs):
    _require_geometry(name, args[0], 1)
    return BoundCall(name, args, ScalarType.STRING, lambda v: v.to_wkt())


@_register("ST_SRID", 1)
def _bind_srid(binder, name, args, exprs):
    source = _require_geometry(name, args[0], 1)
    # Column CRS is authoritative, so this is a constant per call site
    srid = str(source.crs) if source.crs is not None else None
    return BoundCall(name, args, ScalarType.STRING, lambda v: srid)


@_register("ST_Envelope", 1)
def _bind_envelope(binder, name, args, exprs):
    source = _require_geometry(name, args[0], 1)

    def fn(value: GeometryValue) -> GeometryValue:
        return GeometryValue.from_shapely(shapely.envelope(_decode(value)), value.crs)

    return BoundCall(name, args, GeometryType(GeometryEncoding.OWNED, source.crs), fn)


@_register("ST_Envelope_Agg", 1)
def _bind_envelope_agg(binder, name, args, exprs):
    source = _require_geometry(name, args[0], 1)

    def step(state, value: GeometryValue):
        geometry = _decode(value)
        if geometry.is_empty:
            return state
        bounds = shapely.bounds(geometry)
        if state is None:
            return tuple(bounds)
        return (
            min(state[0], bounds[0]),
            min(state[1], bounds[1]),
            max(state[2], bounds[2]),
            max(state[3], bounds[3]),
        )

    def finish(state) -> Optional[GeometryValue]:
        if state is None:
            return None
        return GeometryValue.from_shapely(shapely.envelope(shapely.box(*state)), source.crs)

    return BoundAggregate(name, args[0], GeometryType(GeometryEncoding.OWNED, source.crs), step, finish)


class _Binder:
    def __init__(self, schema: Schema, registry: CrsRegistry):
        self.schema = schema
        self.registry = registry

    def bind(self, expr: Expression) -> BoundExpression:
        if isinstance(expr, ColumnRef):
            return BoundColumn(expr.name, self.schema.field(expr.name).dtype)
        if isinstance(expr, Literal):
            return self._bind_literal(expr)
        if isinstance(expr, Call):
            return self._bind_call(expr)
        raise InvalidPlanError(f"Not an expression: {expr!r}")

    def _bind_literal(self, expr: Literal) -> BoundLiteral:
        value = expr.value
        if isinstance(value, GeometryValue):
            crs = self.registry.resolve(value.crs).crs_id if value.crs is not None else None
            if crs != value.crs:
                value = value.with_crs(crs)
            return BoundLiteral(value, GeometryType(value.encoding, crs))
        return BoundLiteral(value, infer_scalar_type([value]))

    def _bind_call(self, expr: Call) -> BoundExpression:
        entry = _FUNCTIONS.get(expr.name.lower())
        if entry is None:
            raise InvalidPlanError(f"Unknown function {expr.name}", details={"function": expr.name})
        min_args, max_args, binder = entry
        if not min_args <= len(expr.args) <= max_args:
            raise InvalidPlanError(
                f"{expr.name} takes {min_args}..{max_args} arguments, got {len(expr.args)}"
            )
        args = [self.bind(arg) for arg in expr.args]
        for arg in args:
            if arg.is_aggregate:
                raise InvalidPlanError(f"Aggregate {arg.name} cannot be nested in {expr.name}")
        return binder(self, expr.name, args, list(expr.args))

    def resolve_crs_arg(self, name: str, exprs: Sequence[Expression], position: int) -> Optional[CrsId]:
        if len(exprs) <= position:
            return None
        identifier = _require_literal(name, exprs[position], position + 1)
        return self.registry.resolve(identifier).crs_id

    def check_geometry_args(self, name: str, args: Sequence[BoundExpression]):
        types = [_require_geometry(name, arg, i) for i, arg in enumerate(args, 1)]
        return check_crs_compatibility(name, [t.crs for t in types], self.registry)


def bind(
    expr: Expression,
    schema: Schema,
    registry: Optional[CrsRegistry] = None,
) -> BoundExpression:
    """
    Type-check an expression against a schema.

    Raises:
        MismatchedCrs: If a function receives geometries in different CRS
        UnknownCrs: If a CRS literal does not resolve
        NoDeclaredCrs: If ST_Transform is applied to an untagged geometry
        NoTransformPath: If ST_Transform cannot reach its target
        InvalidPlanError: For unknown functions, columns, arity or types
    """
    return _Binder(schema, registry or default_registry()).bind(expr)


@dataclass
class EvaluationResult:
    values: List[Any]
    dtype: DataType
    faults: FaultSummary = field(default_factory=FaultSummary)

    def to_column(self) -> Union[GeometryColumn, List[Any]]:
        if isinstance(self.dtype, GeometryType):
            return GeometryColumn(self.values, self.dtype.crs, self.dtype.encoding)
        return list(self.values)


def evaluate(
    bound: BoundExpression,
    table: Table,
    strict: Optional[bool] = None,
    cancel: Optional[CancellationToken] = None,
    batch_size: Optional[int] = None,
) -> EvaluationResult:
    """
    Evaluate a bound expression over every row of a table.

    Row-level failures null out the row and are recorded as faults, or abort
    the evaluation in strict mode. Aggregates produce a single value.
    """
    batch_size = batch_size or settings.batch_size
    collector = FaultCollector(strict)

    if bound.is_aggregate:
        return _evaluate_aggregate(bound, table, collector, cancel, batch_size)

    def work(batch: RecordBatch) -> Tuple[List[Any], List[RowFault]]:
        out: List[Any] = []
        faults: List[RowFault] = []
        for i in range(batch.num_rows):
            try:
                out.append(bound.value_at(batch, i))
            except ROW_ERRORS as e:
                _fault(collector, batch.offset + i, e, faults)
                out.append(None)
        return out, faults

    values: List[Any] = []
    for out, faults in run_batches(work, table.batches(batch_size), "evaluate", cancel):
        values.extend(out)
        collector.summary.extend(faults)
    return EvaluationResult(values, bound.dtype, collector.summary)


def _fault(collector: FaultCollector, row: int, error: SpatialSqlError, sink: List[RowFault]) -> None:
    error.details.setdefault("row", row)
    collector.handle("input", row, error, sink)


def _evaluate_aggregate(
    bound: BoundAggregate,
    table: Table,
    collector: FaultCollector,
    cancel: Optional[CancellationToken],
    batch_size: int,
) -> EvaluationResult:
    token = cancel or CancellationToken()
    state = None
    faults: List[RowFault] = []
    for done, batch in enumerate(table.batches(batch_size)):
        token.check(bound.name, done)
        for i in range(batch.num_rows):
            try:
                value = bound.arg.value_at(batch, i)
                if value is not None:
                    state = bound.step(state, value)
            except ROW_ERRORS as e:
                _fault(collector, batch.offset + i, e, faults)
    collector.summary.extend(faults)
    return EvaluationResult([bound.finish(state)], bound.dtype, collector.summary)
