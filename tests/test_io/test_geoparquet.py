"""
Tests for GeoParquet reading and writing.
"""

import json

import pyarrow as pa
import pyarrow.parquet as pq
import pytest
import shapely

from spatialsql.core.crs.registry import CrsRegistry
from spatialsql.core.crs.transform import transform_column
from spatialsql.core.errors import GeoParquetError, NoDeclaredCrs, UnknownCrs
from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue
from spatialsql.core.schema import GeometryColumn, Table
from spatialsql.io.geoparquet import (
    crs_from_projjson,
    read_geo_metadata,
    read_geoparquet,
    write_geoparquet,
)
from spatialsql.models.crs import CrsId


# Fixtures

@pytest.fixture
def registry() -> CrsRegistry:
    return CrsRegistry.standard(use_proj_database=False)


def make_table(crs, registry) -> Table:
    return Table(
        {
            "id": [1, 2, 3],
            "name": ["a", None, "c"],
            "geom": GeometryColumn.from_wkt(
                ["POINT (1 2)", None, "POLYGON ((0 0, 0 1, 1 1, 0 0))"], crs, registry
            ),
        }
    )


def write_plain_parquet(path, geo=None) -> None:
    wkb = shapely.to_wkb(shapely.Point(1, 2), flavor="iso")
    metadata = {b"geo": json.dumps(geo).encode()} if geo is not None else None
    schema = pa.schema([pa.field("geometry", pa.binary())], metadata=metadata)
    pq.write_table(pa.table({"geometry": [wkb]}, schema=schema), str(path))


class TestRoundTrip:
    """Tests for writing then reading GeoParquet."""

    @pytest.mark.parametrize("crs", ["epsg:4326", "ogc:crs84", "epsg:3857", "EPSG:27700"])
    def test_crs_round_trips(self, tmp_path, registry, crs) -> None:
        """Test that the column CRS survives a round trip."""
        path = tmp_path / "data.parquet"
        table = make_table(crs, registry)

        write_geoparquet(table, path, registry=registry)
        loaded = read_geoparquet(path, registry=registry)

        assert loaded.geometry_column("geom").crs == table.geometry_column("geom").crs
        assert loaded.schema.describe() == table.schema.describe()

    def test_values_round_trip(self, tmp_path, registry) -> None:
        """Test that geometry and scalar values survive a round trip."""
        path = tmp_path / "data.parquet"
        table = make_table("epsg:4326", registry)

        write_geoparquet(table, path, registry=registry)
        loaded = read_geoparquet(path, registry=registry)

        assert list(loaded.geometry_column("geom")) == list(table.geometry_column("geom"))
        assert loaded.column("id") == [1, 2, 3]
        assert loaded.column("name") == ["a", None, "c"]

    def test_untagged_written_as_null(self, tmp_path, registry) -> None:
        """Test that untagged columns are written with a null crs."""
        path = tmp_path / "data.parquet"
        write_geoparquet(make_table(None, registry), path, registry=registry)

        geo = read_geo_metadata(path)
        assert geo["columns"]["geom"]["crs"] is None

        loaded = read_geoparquet(path, registry=registry)
        assert loaded.schema.describe()["geom"] == "wkb none"

    def test_metadata_contents(self, tmp_path, registry) -> None:
        """Test the written geo metadata."""
        path = tmp_path / "data.parquet"
        write_geoparquet(make_table("epsg:4326", registry), path, registry=registry)

        geo = read_geo_metadata(path)
        column = geo["columns"]["geom"]

        assert geo["primary_column"] == "geom"
        assert column["encoding"] == "WKB"
        assert column["geometry_types"] == ["Point", "Polygon"]
        assert column["bbox"] == [0.0, 0.0, 1.0, 2.0]
        assert column["crs"]["id"] == {"authority": "EPSG", "code": 4326}

    def test_zero_copy_views(self, tmp_path, registry) -> None:
        """Test reading geometry as views into Arrow buffers."""
        path = tmp_path / "data.parquet"
        table = make_table("epsg:3857", registry)
        write_geoparquet(table, path, registry=registry)

        loaded = read_geoparquet(path, registry=registry, zero_copy=True)
        column = loaded.geometry_column("geom")

        assert column.encoding is GeometryEncoding.VIEW
        assert loaded.schema.describe()["geom"] == "wkb_view epsg:3857"
        assert column[0].encoding is GeometryEncoding.VIEW
        assert column[1] is None
        assert list(column) == list(table.geometry_column("geom"))

    def test_transformed_column_round_trip(self, tmp_path, registry) -> None:
        """Test writing a transformed column."""
        path = tmp_path / "data.parquet"
        column = GeometryColumn.from_wkt(["POINT (-74.006 40.7128)"], "epsg:4326", registry)
        mercator = transform_column(column, "epsg:3857", registry).column
        write_geoparquet(Table({"geom": mercator}), path, registry=registry)

        loaded = read_geoparquet(path, registry=registry)
        assert loaded.geometry_column("geom")[0] == mercator[0]


class TestReadingRules:
    """Tests for geo metadata reading rules."""

    def test_no_geo_metadata(self, tmp_path, registry) -> None:
        """Test that files without geo metadata have no geometry columns."""
        path = tmp_path / "plain.parquet"
        write_plain_parquet(path)

        loaded = read_geoparquet(path, registry=registry)
        assert loaded.schema.describe() == {"geometry": "binary"}

    def test_no_geo_metadata_named_geometry(self, tmp_path, registry) -> None:
        """Test that named columns without metadata are untagged."""
        path = tmp_path / "plain.parquet"
        write_plain_parquet(path)

        loaded = read_geoparquet(path, registry=registry, geometry_columns=["geometry"])
        column = loaded.geometry_column("geometry")

        assert loaded.schema.describe() == {"geometry": "wkb none"}
        with pytest.raises(NoDeclaredCrs):
            transform_column(column, "epsg:4326", registry)

    def test_missing_crs_key_is_crs84(self, tmp_path, registry) -> None:
        """Test that a missing crs key means OGC:CRS84."""
        path = tmp_path / "default.parquet"
        write_plain_parquet(
            path,
            {"version": "1.1.0", "primary_column": "geometry", "columns": {"geometry": {"encoding": "WKB"}}},
        )
        loaded = read_geoparquet(path, registry=registry)
        assert loaded.geometry_column("geometry").crs == CrsId("ogc", "crs84")

    def test_unsupported_encoding(self, tmp_path, registry) -> None:
        """Test that non-WKB encodings are rejected."""
        path = tmp_path / "arrow.parquet"
        write_plain_parquet(
            path,
            {"version": "1.1.0", "primary_column": "geometry", "columns": {"geometry": {"encoding": "point"}}},
        )
        with pytest.raises(GeoParquetError):
            read_geoparquet(path, registry=registry)

    def test_invalid_crs_value(self, tmp_path, registry) -> None:
        """Test that a string crs value is rejected."""
        path = tmp_path / "bad.parquet"
        write_plain_parquet(
            path,
            {"version": "1.1.0", "primary_column": "geometry", "columns": {"geometry": {"crs": "EPSG:4326"}}},
        )
        with pytest.raises(GeoParquetError):
            read_geoparquet(path, registry=registry)

    def test_invalid_geo_json(self, tmp_path, registry) -> None:
        """Test that unparseable geo metadata is rejected."""
        path = tmp_path / "bad.parquet"
        schema = pa.schema([pa.field("geometry", pa.binary())], metadata={b"geo": b"{not json"})
        pq.write_table(pa.table({"geometry": [b"\x00"]}, schema=schema), str(path))
        with pytest.raises(GeoParquetError):
            read_geoparquet(path, registry=registry)

    def test_missing_file(self, tmp_path, registry) -> None:
        """Test reading a file that does not exist."""
        with pytest.raises(GeoParquetError):
            read_geoparquet(tmp_path / "nope.parquet", registry=registry)


class TestWriting:
    """Tests for writing rules."""

    def test_requires_geometry_column(self, tmp_path, registry) -> None:
        """Test that a table needs a geometry column."""
        with pytest.raises(GeoParquetError):
            write_geoparquet(Table({"id": [1]}), tmp_path / "x.parquet", registry=registry)

    def test_primary_column_must_be_geometry(self, tmp_path, registry) -> None:
        """Test that the primary column must hold geometry."""
        with pytest.raises(GeoParquetError):
            write_geoparquet(make_table("epsg:4326", registry), tmp_path / "x.parquet", "id", registry)


class TestCrsFromProjjson:
    """Tests for crs_from_projjson."""

    def test_uses_id(self) -> None:
        """Test that the PROJJSON id is used directly."""
        assert crs_from_projjson({"id": {"authority": "EPSG", "code": 3857}}) == CrsId("epsg", "3857")

    def test_identifies_definition(self, registry) -> None:
        """Test identifying a definition without an id."""
        projjson = registry.resolve("epsg:4326").proj.to_json_dict()
        del projjson["id"]
        assert crs_from_projjson(projjson) == CrsId("epsg", "4326")

    def test_unidentifiable(self) -> None:
        """Test that unknown definitions are rejected."""
        with pytest.raises(UnknownCrs):
            crs_from_projjson({"type": "GeographicCRS", "name": "nonsense"})
