"""
Tests for geometry values.
"""

import pytest
import shapely
from shapely.geometry import Point

from spatialsql.core.errors import MalformedGeometry
from spatialsql.core.geometry.value import GeometryEncoding, GeometryValue
from spatialsql.models.crs import CrsId

WGS84 = CrsId("epsg", "4326")


class TestConstruction:
    """Tests for building geometry values."""

    def test_from_wkt(self) -> None:
        """Test building a value from WKT."""
        value = GeometryValue.from_wkt("POINT (1 2)", WGS84)
        assert value.crs == WGS84
        assert value.encoding is GeometryEncoding.OWNED
        assert value.decode().equals(Point(1, 2))

    def test_from_wkt_invalid(self) -> None:
        """Test that invalid WKT raises MalformedGeometry."""
        with pytest.raises(MalformedGeometry):
            GeometryValue.from_wkt("POINT (1")

    def test_from_shapely_uses_iso_wkb(self) -> None:
        """Test that shapely geometries are stored as ISO WKB."""
        value = GeometryValue.from_shapely(Point(1, 2, 3))
        assert value.to_bytes() == shapely.to_wkb(Point(1, 2, 3), flavor="iso")

    def test_payload_type_checked(self) -> None:
        """Test that text payloads are rejected."""
        with pytest.raises(TypeError):
            GeometryValue("POINT (1 2)")  # type: ignore[arg-type]

    def test_decode_malformed(self) -> None:
        """Test that decoding junk raises MalformedGeometry."""
        with pytest.raises(MalformedGeometry, match="Invalid WKB payload"):
            GeometryValue(b"\x00\x01\x02").decode()


class TestViews:
    """Tests for zero-copy views."""

    def test_view_encoding(self) -> None:
        """Test decoding a view into a larger buffer."""
        wkb = shapely.to_wkb(Point(3, 4), flavor="iso")
        buffer = memoryview(b"xx" + wkb + b"yy")
        value = GeometryValue(buffer[2 : 2 + len(wkb)], WGS84)

        assert value.encoding is GeometryEncoding.VIEW
        assert value.decode().equals(Point(3, 4))

    def test_view_equals_owned(self) -> None:
        """Test that views equal and hash like owned values."""
        wkb = shapely.to_wkb(Point(3, 4), flavor="iso")
        view = GeometryValue(memoryview(wkb), WGS84)
        owned = GeometryValue(wkb, WGS84)

        assert view == owned
        assert hash(view) == hash(owned)

    def test_to_owned_copies(self) -> None:
        """Test that to_owned copies into bytes."""
        wkb = shapely.to_wkb(Point(3, 4), flavor="iso")
        owned = GeometryValue(memoryview(wkb)).to_owned()
        assert owned.encoding is GeometryEncoding.OWNED
        assert isinstance(owned.payload, bytes)


class TestImmutability:
    """Tests for value immutability."""

    def test_with_crs_returns_new_value(self) -> None:
        """Test that with_crs leaves the original untouched."""
        value = GeometryValue.from_wkt("POINT (1 2)")
        tagged = value.with_crs(WGS84)

        assert value.crs is None
        assert tagged.crs == WGS84
        assert tagged.payload is value.payload

    def test_frozen(self) -> None:
        """Test that attributes cannot be reassigned."""
        value = GeometryValue.from_wkt("POINT (1 2)")
        with pytest.raises(AttributeError):
            value.crs = WGS84  # type: ignore[misc]

    def test_crs_part_of_equality(self) -> None:
        """Test that the CRS tag takes part in equality."""
        a = GeometryValue.from_wkt("POINT (1 2)", WGS84)
        b = GeometryValue.from_wkt("POINT (1 2)")
        assert a != b

    def test_repr(self) -> None:
        """Test repr of an untagged value."""
        assert "crs=none" in repr(GeometryValue.from_wkt("POINT (1 2)"))
