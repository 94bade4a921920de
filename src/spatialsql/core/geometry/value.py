"""
Geometry values: an immutable WKB payload plus an optional CRS tag.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

import shapely
from shapely.errors import GEOSException
from shapely.geometry.base import BaseGeometry

from spatialsql.core.errors import MalformedGeometry
from spatialsql.models.crs import CrsId, format_crs

Payload = Union[bytes, memoryview]


class GeometryEncoding(str, Enum):
    """Ownership of the payload buffer."""

    OWNED = "wkb"  # payload is an owned bytes object
    VIEW = "wkb_view"  # payload is a zero-copy view into a larger buffer


@dataclass(frozen=True, eq=False)
class GeometryValue:
    """
    A serialized geometry with its CRS tag.

    Values are never modified; operators return new values. Equality compares
    payload bytes and CRS tag, regardless of encoding.

    Attributes:
        payload: WKB bytes (OWNED) or a memoryview slice (VIEW)
        crs: Declared CRS, None if no CRS is declared
    """

    payload: Payload
    crs: Optional[CrsId] = None

    def __post_init__(self) -> None:
        if not isinstance(self.payload, (bytes, memoryview)):
            raise TypeError(f"Geometry payload must be bytes or memoryview, got {type(self.payload)}")

    @property
    def encoding(self) -> GeometryEncoding:
        if isinstance(self.payload, memoryview):
            return GeometryEncoding.VIEW
        return GeometryEncoding.OWNED

    @classmethod
    def from_wkb(cls, wkb: Payload, crs: Optional[CrsId] = None) -> "GeometryValue":
        return cls(wkb, crs)

    @classmethod
    def from_shapely(cls, geometry: BaseGeometry, crs: Optional[CrsId] = None) -> "GeometryValue":
        """Serialize a shapely geometry to ISO WKB."""
        return cls(shapely.to_wkb(geometry, flavor="iso"), crs)

    @classmethod
    def from_wkt(cls, wkt: str, crs: Optional[CrsId] = None) -> "GeometryValue":
        """
        Parse well-known text.

        Raises:
            MalformedGeometry: If the text is not valid WKT
        """
        try:
            geometry = shapely.from_wkt(wkt)
        except (GEOSException, ValueError) as e:
            raise MalformedGeometry(f"Invalid WKT: {e}")
        return cls.from_shapely(geometry, crs)

    def to_bytes(self) -> bytes:
        """Payload as bytes (copies a view)."""
        return bytes(self.payload)

    def to_owned(self) -> "GeometryValue":
        """Value whose payload no longer references a shared buffer."""
        if self.encoding is GeometryEncoding.OWNED:
            return self
        return GeometryValue(self.to_bytes(), self.crs)

    def with_crs(self, crs: Optional[CrsId]) -> "GeometryValue":
        """Same payload, new CRS tag."""
        return GeometryValue(self.payload, crs)

    def decode(self) -> BaseGeometry:
        """
        Decode the payload into a shapely geometry.

        Raises:
            MalformedGeometry: If the payload is not valid WKB
        """
        try:
            return shapely.from_wkb(self.to_bytes())
        except (GEOSException, ValueError, TypeError) as e:
            raise MalformedGeometry(f"Invalid WKB payload: {e}")

    def to_wkt(self) -> str:
        return shapely.to_wkt(self.decode())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GeometryValue):
            return NotImplemented
        return self.crs == other.crs and self.to_bytes() == other.to_bytes()

    def __hash__(self) -> int:
        return hash((self.to_bytes(), self.crs))

    def __repr__(self) -> str:
        return (
            f"GeometryValue({self.encoding.value}, {len(self.payload)} bytes, "
            f"crs={format_crs(self.crs)})"
        )
