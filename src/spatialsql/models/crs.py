"""
Data models for coordinate reference system identity.

``CrsId`` is the canonical ``<authority>:<code>`` identifier carried by
geometry values and geometry column types. ``CanonicalCrs`` is what the
registry resolves an identifier to.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple, Union

from pyproj import CRS

from spatialsql.core.errors import UnknownCrs

_AUTHORITY_CODE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9_.-]*)\s*:+\s*([A-Za-z0-9_.-]+)\s*$")
_URN = re.compile(r"^urn:ogc:def:crs:([A-Za-z]+):[^:]*:([A-Za-z0-9_.-]+)$", re.IGNORECASE)
_URL = re.compile(r"/def/crs/([A-Za-z]+)/[^/]+/([A-Za-z0-9_.-]+)/?$", re.IGNORECASE)


class CoordinateOrder(str, Enum):
    """Axis order convention declared by the CRS authority."""

    LON_LAT = "lon_lat"
    LAT_LON = "lat_lon"
    XY = "xy"


class DistanceUnit(str, Enum):
    """Linear or angular unit of the first CRS axis."""

    METERS = "meters"
    FEET = "feet"
    DEGREES = "degrees"
    UNKNOWN = "unknown"


@dataclass(frozen=True, order=True)
class CrsId:
    """
    Canonical CRS identifier.

    Both parts are stored lowercase, so ``CrsId.parse("EPSG:4326")`` and
    ``CrsId.parse("epsg:4326")`` compare equal. Equality is exact: no two
    distinct identifiers are ever considered equal here; alias rules live in
    the registry.
    """

    authority: str
    code: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "authority", self.authority.strip().lower())
        object.__setattr__(self, "code", str(self.code).strip().lower())
        if not self.authority or not self.code:
            raise UnknownCrs(f"{self.authority}:{self.code}", "empty authority or code")

    @classmethod
    def parse(cls, identifier: Union[str, int, "CrsId"]) -> "CrsId":
        """
        Parse a CRS identifier.

        Supports:
        - ``"EPSG:4326"``, ``"epsg:4326"``, ``"OGC:CRS84"``
        - URN format: ``"urn:ogc:def:crs:EPSG::4326"``
        - URL format: ``"http://www.opengis.net/def/crs/EPSG/0/4326"``
        - bare integers or digit strings, read as EPSG codes

        Raises:
            UnknownCrs: If the identifier cannot be parsed
        """
        if isinstance(identifier, CrsId):
            return identifier
        if isinstance(identifier, bool):
            raise UnknownCrs(identifier, "not a CRS identifier")
        if isinstance(identifier, int):
            return cls("epsg", str(identifier))
        if not isinstance(identifier, str):
            raise UnknownCrs(identifier, "not a CRS identifier")

        text = identifier.strip()

        urn_match = _URN.match(text)
        if urn_match:
            return cls(urn_match.group(1), urn_match.group(2))

        url_match = _URL.search(text)
        if url_match:
            return cls(url_match.group(1), url_match.group(2))

        if text.isdigit():
            return cls("epsg", text)

        match = _AUTHORITY_CODE.match(text)
        if match:
            return cls(match.group(1), match.group(2))

        raise UnknownCrs(identifier, "expected '<authority>:<code>'")

    @classmethod
    def from_pyproj(cls, crs: CRS) -> "CrsId":
        """Build an identifier from a pyproj CRS that has an authority code."""
        authority = crs.to_authority(min_confidence=100) or crs.to_authority()
        if not authority:
            raise UnknownCrs(crs.name, "CRS has no authority code")
        return cls(authority[0], authority[1])

    def to_pyproj_input(self) -> str:
        """Identifier in the form pyproj expects (authority uppercased)."""
        return f"{self.authority.upper()}:{self.code.upper()}"

    def __str__(self) -> str:
        return f"{self.authority}:{self.code}"


def format_crs(crs: Optional[CrsId]) -> str:
    """Render an optional identifier, ``none`` for untagged."""
    return str(crs) if crs is not None else "none"


@dataclass(frozen=True)
class CanonicalCrs:
    """
    A registered coordinate reference system.

    Attributes:
        crs_id: Canonical identifier
        name: Human-readable name
        is_geographic: True for lon/lat systems, False for projected
        units: Units of the first axis
        coordinate_order: Authority axis order (geometry values are always x/lon first)
        area_of_use: Geographic bounds (west, south, east, north), if known
    """

    crs_id: CrsId
    name: str
    is_geographic: bool
    units: DistanceUnit = DistanceUnit.METERS
    coordinate_order: CoordinateOrder = CoordinateOrder.XY
    area_of_use: Optional[Tuple[float, float, float, float]] = None
    _proj: Any = field(default=None, repr=False, compare=False, hash=False)

    @classmethod
    def from_pyproj(cls, crs_id: CrsId, crs: CRS) -> "CanonicalCrs":
        """
        Describe a pyproj CRS.

        Args:
            crs_id: Identifier the CRS was looked up under
            crs: pyproj CRS object

        Returns:
            CanonicalCrs instance
        """
        units = DistanceUnit.UNKNOWN
        if crs.is_geographic:
            units = DistanceUnit.DEGREES
        elif crs.axis_info:
            unit_name = crs.axis_info[0].unit_name.lower()
            if "foot" in unit_name or "feet" in unit_name:
                units = DistanceUnit.FEET
            elif "meter" in unit_name or "metre" in unit_name:
                units = DistanceUnit.METERS

        coord_order = CoordinateOrder.XY
        if crs.is_geographic:
            coord_order = CoordinateOrder.LON_LAT
            if crs.axis_info and len(crs.axis_info) >= 2:
                first_axis = crs.axis_info[0].direction.lower()
                if "north" in first_axis or "south" in first_axis:
                    coord_order = CoordinateOrder.LAT_LON

        area = None
        if crs.area_of_use is not None:
            area = tuple(crs.area_of_use.bounds)

        return cls(
            crs_id=crs_id,
            name=crs.name,
            is_geographic=crs.is_geographic,
            units=units,
            coordinate_order=coord_order,
            area_of_use=area,
            _proj=crs,
        )

    @property
    def proj(self) -> CRS:
        """The underlying pyproj CRS."""
        if self._proj is None:
            return CRS.from_user_input(self.crs_id.to_pyproj_input())
        return self._proj

    def __str__(self) -> str:
        return str(self.crs_id)
