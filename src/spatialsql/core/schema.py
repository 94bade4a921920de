"""
Table, column and schema model.

A geometry column declares exactly one CRS for all of its rows; ingestion
enforces this so that planning can reason about CRS from the schema alone.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from spatialsql.core.crs.registry import CrsRegistry, Identifier, default_registry
from spatialsql.core.errors import InvalidPlanError, MismatchedCrs
from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue
from spatialsql.models.crs import CrsId, format_crs


class ScalarType(str, Enum):
    """Non-geometry column types."""

    BOOLEAN = "boolean"
    INTEGER = "integer"
    FLOAT = "float"
    STRING = "string"
    BINARY = "binary"
    NULL = "null"


@dataclass(frozen=True)
class GeometryType:
    """Geometry column type, parameterized by encoding and CRS."""

    encoding: GeometryEncoding = GeometryEncoding.OWNED
    crs: Optional[CrsId] = None

    def describe(self) -> str:
        """Introspection string, e.g. ``wkb epsg:4326`` or ``wkb_view none``."""
        return f"{self.encoding.value} {format_crs(self.crs)}"

    def __str__(self) -> str:
        return self.describe()


DataType = Union[ScalarType, GeometryType]


def describe_type(dtype: DataType) -> str:
    if isinstance(dtype, GeometryType):
        return dtype.describe()
    return dtype.value


@dataclass(frozen=True)
class Field:
    name: str
    dtype: DataType

    @property
    def is_geometry(self) -> bool:
        return isinstance(self.dtype, GeometryType)


class Schema:
    """Ordered collection of fields."""

    def __init__(self, fields: Sequence[Field]):
        self.fields: Tuple[Field, ...] = tuple(fields)
        self._by_name = {f.name: f for f in self.fields}
        if len(self._by_name) != len(self.fields):
            raise InvalidPlanError("Duplicate column names in schema")

    @property
    def names(self) -> List[str]:
        return [f.name for f in self.fields]

    def field(self, name: str) -> Field:
        try:
            return self._by_name[name]
        except KeyError:
            raise InvalidPlanError(
                f"Unknown column '{name}'", details={"available": self.names}
            )

    def geometry_type(self, name: str) -> GeometryType:
        dtype = self.field(name).dtype
        if not isinstance(dtype, GeometryType):
            raise InvalidPlanError(f"Column '{name}' is not a geometry column")
        return dtype

    def describe(self) -> Dict[str, str]:
        return {f.name: describe_type(f.dtype) for f in self.fields}

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Schema) and self.fields == other.fields

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}: {v}" for k, v in self.describe().items())
        return f"Schema({inner})"


class GeometryColumn:
    """
    Geometry values sharing one declared CRS.

    Rows may be None (SQL NULL). Every non-null value carries the column CRS.
    """

    def __init__(
        self,
        values: Sequence[Optional[GeometryValue]],
        crs: Optional[CrsId],
        encoding: GeometryEncoding = GeometryEncoding.OWNED,
    ):
        self.values: Tuple[Optional[GeometryValue], ...] = tuple(values)
        self.crs = crs
        self.encoding = encoding

    @classmethod
    def from_values(
        cls,
        values: Sequence[Optional[GeometryValue]],
        crs: Optional[Identifier] = None,
        registry: Optional[CrsRegistry] = None,
    ) -> "GeometryColumn":
        """
        Ingest geometry values, enforcing the single-CRS invariant.

        If ``crs`` is not given the column takes the first declared row tag.
        Untagged rows inherit the column CRS.

        Raises:
            MismatchedCrs: If a row is tagged with a different CRS
            UnknownCrs: If ``crs`` does not resolve
        """
        registry = registry or default_registry()
        column_crs = registry.resolve(crs).crs_id if crs is not None else None

        if column_crs is None:
            for value in values:
                if value is not None and value.crs is not None:
                    column_crs = registry.canonicalize(value.crs)
                    break

        tagged: List[Optional[GeometryValue]] = []
        for value in values:
            if value is None:
                tagged.append(None)
                continue
            if value.crs is not None and registry.canonicalize(value.crs) != column_crs:
                raise MismatchedCrs(column_crs, value.crs, function_name="column ingestion")
            tagged.append(value if value.crs == column_crs else value.with_crs(column_crs))

        present = [v for v in tagged if v is not None]
        encoding = GeometryEncoding.OWNED
        if present and all(v.encoding is GeometryEncoding.VIEW for v in present):
            encoding = GeometryEncoding.VIEW
        return cls(tagged, column_crs, encoding)

    @classmethod
    def from_wkt(
        cls,
        wkts: Sequence[Optional[str]],
        crs: Optional[Identifier] = None,
        registry: Optional[CrsRegistry] = None,
    ) -> "GeometryColumn":
        values = [GeometryValue.from_wkt(w) if w is not None else None for w in wkts]
        return cls.from_values(values, crs=crs, registry=registry)

    @property
    def dtype(self) -> GeometryType:
        return GeometryType(self.encoding, self.crs)

    def slice(self, start: int, stop: int) -> "GeometryColumn":
        return GeometryColumn(self.values[start:stop], self.crs, self.encoding)

    def __len__(self) -> int:
        return len(self.values)

    def __iter__(self) -> Iterator[Optional[GeometryValue]]:
        return iter(self.values)

    def __getitem__(self, index: int) -> Optional[GeometryValue]:
        return self.values[index]


ColumnData = Union[GeometryColumn, Sequence[Any]]


def infer_scalar_type(values: Sequence[Any]) -> ScalarType:
    for value in values:
        if value is None:
            continue
        if isinstance(value, bool):
            return ScalarType.BOOLEAN
        if isinstance(value, int):
            return ScalarType.INTEGER
        if isinstance(value, float):
            return ScalarType.FLOAT
        if isinstance(value, (bytes, memoryview)):
            return ScalarType.BINARY
        return ScalarType.STRING
    return ScalarType.NULL


@dataclass(frozen=True)
class RecordBatch:
    """A contiguous slice of a table; ``offset`` is the row number of its first row."""

    offset: int
    num_rows: int
    columns: Mapping[str, ColumnData]

    def column(self, name: str) -> ColumnData:
        return self.columns[name]


class Table:
    """Materialized columnar data as handed over by the I/O layer."""

    def __init__(self, columns: Mapping[str, ColumnData], schema: Optional[Schema] = None):
        lengths = {len(c) for c in columns.values()}
        if len(lengths) > 1:
            raise InvalidPlanError("Columns have different lengths")
        self._columns: Dict[str, ColumnData] = {
            name: data if isinstance(data, GeometryColumn) else list(data)
            for name, data in columns.items()
        }
        self.num_rows = lengths.pop() if lengths else 0
        if schema is None:
            schema = Schema(
                [
                    Field(name, data.dtype)
                    if isinstance(data, GeometryColumn)
                    else Field(name, infer_scalar_type(data))
                    for name, data in self._columns.items()
                ]
            )
        self.schema = schema

    def column(self, name: str) -> ColumnData:
        self.schema.field(name)
        return self._columns[name]

    def geometry_column(self, name: str) -> GeometryColumn:
        self.schema.geometry_type(name)
        return self._columns[name]  # type: ignore[return-value]

    def batches(self, batch_size: int) -> Iterator[RecordBatch]:
        """Split into batches of at most ``batch_size`` rows."""
        for start in range(0, self.num_rows, batch_size):
            stop = min(start + batch_size, self.num_rows)
            yield RecordBatch(
                offset=start,
                num_rows=stop - start,
                columns={
                    name: data.slice(start, stop)
                    if isinstance(data, GeometryColumn)
                    else data[start:stop]
                    for name, data in self._columns.items()
                },
            )

    def row(self, index: int) -> Dict[str, Any]:
        return {name: data[index] for name, data in self._columns.items()}

    def __len__(self) -> int:
        return self.num_rows

    def __repr__(self) -> str:
        return f"Table({self.num_rows} rows, {self.schema!r})"
