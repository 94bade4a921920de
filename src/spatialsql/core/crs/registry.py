"""
CRS registry: identifier resolution, alias rules and transform pipelines.

A registry is immutable once constructed. The process-wide default registry
is built on first use from the standard catalog and the current settings, and
shared read-only by every worker.
"""

import logging
import threading
from functools import lru_cache
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Union

from pyproj import CRS
from pyproj.exceptions import CRSError

from spatialsql.core.config import settings
from spatialsql.core.crs.pipeline import (
    ProjTransformProvider,
    TransformPipeline,
    TransformProvider,
)
from spatialsql.core.errors import ConfigurationError, UnknownCrs
from spatialsql.models.crs import CanonicalCrs, CrsId

logger = logging.getLogger(__name__)

Identifier = Union[str, int, CrsId]


def _utm_codes() -> Iterable[str]:
    for zone in range(1, 61):
        yield f"epsg:{32600 + zone}"
        yield f"epsg:{32700 + zone}"


STANDARD_CATALOG = (
    "epsg:4326",  # WGS 84
    "ogc:crs84",  # WGS 84, lon/lat axis order
    "ogc:crs83",  # NAD83, lon/lat axis order
    "ogc:crs27",  # NAD27, lon/lat axis order
    "epsg:4269",  # NAD83
    "epsg:4258",  # ETRS89
    "epsg:3857",  # WGS 84 / Pseudo-Mercator
    "epsg:3395",  # WGS 84 / World Mercator
    "epsg:27700",  # OSGB36 / British National Grid
    "epsg:2154",  # RGF93 / Lambert-93
    *_utm_codes(),
)


@lru_cache(maxsize=4096)
def _lookup_proj(crs_id: CrsId) -> Optional[CanonicalCrs]:
    """Look an identifier up in the PROJ database; None if it does not exist."""
    try:
        crs = CRS.from_user_input(crs_id.to_pyproj_input())
    except CRSError:
        return None
    return CanonicalCrs.from_pyproj(crs_id, crs)


class CrsRegistry:
    """
    Canonical lookup of CRS identifiers.

    Attributes:
        aliases: Read-only alias rules, alias -> canonical identifier
        use_proj_database: Fall back to the PROJ database for identifiers
            that are not in the catalog
        tolerance: Round-trip tolerance declared by built pipelines
    """

    def __init__(
        self,
        entries: Iterable[CanonicalCrs],
        aliases: Optional[Mapping[Identifier, Identifier]] = None,
        use_proj_database: bool = False,
        provider: Optional[TransformProvider] = None,
        tolerance: float = 1e-6,
    ):
        """
        Initialize registry.

        Args:
            entries: Catalog entries
            aliases: Alias rules; each target must resolve and must not itself be an alias
            use_proj_database: Resolve unknown identifiers through PROJ
            provider: Transform provider, pyproj by default
            tolerance: Round-trip tolerance declared by pipelines

        Raises:
            ConfigurationError: If an alias rule is invalid
        """
        self._entries: Mapping[CrsId, CanonicalCrs] = MappingProxyType(
            {entry.crs_id: entry for entry in entries}
        )
        self.use_proj_database = use_proj_database
        self.tolerance = tolerance
        self._provider = provider or ProjTransformProvider()

        alias_map: Dict[CrsId, CrsId] = {}
        for alias, target in (aliases or {}).items():
            try:
                alias_id, target_id = CrsId.parse(alias), CrsId.parse(target)
            except UnknownCrs as e:
                raise ConfigurationError(f"Invalid CRS alias rule: {e.message}", "crs_aliases")
            if alias_id == target_id:
                continue
            alias_map[alias_id] = target_id
        for alias_id, target_id in alias_map.items():
            if target_id in alias_map:
                raise ConfigurationError(
                    f"CRS alias target {target_id} is itself an alias", "crs_aliases"
                )
            if self._lookup(target_id) is None:
                raise ConfigurationError(
                    f"CRS alias {alias_id} points to unknown CRS {target_id}", "crs_aliases"
                )
        self.aliases: Mapping[CrsId, CrsId] = MappingProxyType(alias_map)

    @classmethod
    def standard(
        cls,
        aliases: Optional[Mapping[Identifier, Identifier]] = None,
        use_proj_database: bool = True,
        provider: Optional[TransformProvider] = None,
        tolerance: float = 1e-6,
    ) -> "CrsRegistry":
        """Registry pre-populated with the standard catalog."""
        entries = []
        for code in STANDARD_CATALOG:
            entry = _lookup_proj(CrsId.parse(code))
            if entry is None:
                logger.warning(f"Standard catalog entry {code} missing from PROJ database")
                continue
            entries.append(entry)
        logger.debug(f"Loaded {len(entries)} standard CRS catalog entries")
        return cls(
            entries,
            aliases=aliases,
            use_proj_database=use_proj_database,
            provider=provider,
            tolerance=tolerance,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        try:
            self.resolve(identifier)  # type: ignore[arg-type]
        except UnknownCrs:
            return False
        return True

    def _lookup(self, crs_id: CrsId) -> Optional[CanonicalCrs]:
        entry = self._entries.get(crs_id)
        if entry is None and self.use_proj_database:
            entry = _lookup_proj(crs_id)
        return entry

    def canonicalize(self, identifier: Identifier) -> CrsId:
        """
        Parse an identifier and apply alias rules.

        Does not check that the identifier is registered.
        """
        crs_id = CrsId.parse(identifier)
        return self.aliases.get(crs_id, crs_id)

    def resolve(self, identifier: Identifier) -> CanonicalCrs:
        """
        Resolve an identifier to its canonical definition.

        Raises:
            UnknownCrs: If the identifier cannot be parsed or is not registered
        """
        crs_id = self.canonicalize(identifier)
        entry = self._lookup(crs_id)
        if entry is None:
            raise UnknownCrs(identifier, "not registered")
        return entry

    def equivalent(self, a: Optional[Identifier], b: Optional[Identifier]) -> bool:
        """True if two identifiers name the same CRS after canonicalization."""
        if a is None or b is None:
            return a is None and b is None
        return self.canonicalize(a) == self.canonicalize(b)

    def is_geographic(self, identifier: Identifier) -> bool:
        return self.resolve(identifier).is_geographic

    def transform_pipeline(self, source: Identifier, target: Identifier) -> TransformPipeline:
        """
        Build a transform pipeline between two registered CRS.

        Raises:
            UnknownCrs: If either identifier does not resolve
            NoTransformPath: If no projection chain is known
        """
        return TransformPipeline(
            self.resolve(source),
            self.resolve(target),
            self._provider,
            tolerance=self.tolerance,
        )


_default_registry: Optional[CrsRegistry] = None
_default_lock = threading.Lock()


def default_registry() -> CrsRegistry:
    """Process-wide registry, built once from ``settings``."""
    global _default_registry
    if _default_registry is None:
        with _default_lock:
            if _default_registry is None:
                _default_registry = CrsRegistry.standard(
                    aliases=settings.crs_aliases,
                    use_proj_database=settings.use_proj_database,
                    tolerance=settings.transform_tolerance,
                )
    return _default_registry
