"""
CRS compatibility rule applied when a spatial function is bound.

The check runs once per call site against the schema-declared CRS of each
geometry argument. It never looks at row values.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from spatialsql.core.crs.registry import CrsRegistry, default_registry
from spatialsql.core.errors import MismatchedCrs
from spatialsql.models.crs import CrsId, format_crs

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CrsBinding:
    """
    Outcome of a successful compatibility check.

    Attributes:
        function_name: Function or predicate that was checked
        argument_crs: Canonicalized CRS of each geometry argument (None if untagged)
        common_crs: The shared declared CRS, None if no argument is tagged
        output_crs: CRS of the result; None unless every argument is tagged
    """

    function_name: str
    argument_crs: Tuple[Optional[CrsId], ...]
    common_crs: Optional[CrsId]
    output_crs: Optional[CrsId]

    @property
    def fully_tagged(self) -> bool:
        return all(crs is not None for crs in self.argument_crs)


def check_crs_compatibility(
    function_name: str,
    argument_crs: Sequence[Optional[CrsId]],
    registry: Optional[CrsRegistry] = None,
) -> CrsBinding:
    """
    Check that the geometry arguments of one call site share a CRS.

    - all declared tags equal: compatible, output carries that CRS;
    - untagged arguments mixed with tagged ones: compatible, output untagged;
    - two different declared tags: MismatchedCrs.

    Args:
        function_name: Name of the function or join predicate
        argument_crs: Declared CRS of each geometry argument, None if untagged
        registry: Registry used for alias canonicalization

    Returns:
        CrsBinding describing the bound CRS

    Raises:
        MismatchedCrs: If two declared tags differ after canonicalization
    """
    registry = registry or default_registry()

    canonical = tuple(
        registry.canonicalize(crs) if crs is not None else None for crs in argument_crs
    )

    common: Optional[CrsId] = None
    common_raw: Optional[CrsId] = None
    for raw, crs in zip(argument_crs, canonical):
        if crs is None:
            continue
        if common is None:
            common, common_raw = crs, raw
        elif crs != common:
            logger.debug(
                f"{function_name}: rejecting {format_crs(common_raw)} vs {format_crs(raw)}"
            )
            raise MismatchedCrs(common_raw, raw, function_name=function_name)

    fully_tagged = all(crs is not None for crs in canonical)
    output = common if fully_tagged else None
    if common is not None and not fully_tagged:
        logger.debug(f"{function_name}: untagged argument bound against {common}, output untagged")

    return CrsBinding(
        function_name=function_name,
        argument_crs=canonical,
        common_crs=common,
        output_crs=output,
    )
