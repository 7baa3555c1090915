"""
Manifest selection by semantic version range.

Range expressions are comparators (``=``, ``!=``, ``>``, ``>=``, ``<``,
``<=``; a bare version means ``=``) over full semantic versions. Space
separated comparators must all hold (``>=1.0.0 <2.0.0``) and ``||``
separates alternatives. Versions compare by plain semantic version order,
so pre-releases satisfy a range like any other version.
"""

import logging
import re
from typing import Iterable, Optional, Union

from semantic_version import Version
from semantic_version.base import AllOf, Always, AnyOf, Clause, Range

from errors import NotFoundError, RangeParseError
from models import AddonManifest

logger = logging.getLogger(__name__)

# Matches every parsed version, pre-releases included
ANY_VERSION = Always()

_OPERATORS = {
    "": Range.OP_EQ,
    "=": Range.OP_EQ,
    "==": Range.OP_EQ,
    "!": Range.OP_NEQ,
    "!=": Range.OP_NEQ,
    ">": Range.OP_GT,
    ">=": Range.OP_GTE,
    "<": Range.OP_LT,
    "<=": Range.OP_LTE,
}

_OPERATOR = r"(>=|<=|!=|==|>|<|=|!)"
_COMPARATOR_PATTERN = re.compile(rf"^{_OPERATOR}?(.+)$")


def _parse_comparator(comparator: str) -> Range:
    match = _COMPARATOR_PATTERN.match(comparator)
    operator, version = match.group(1) or "", match.group(2)
    try:
        return Range(
            _OPERATORS[operator], Version(version), prerelease_policy=Range.PRERELEASE_ALWAYS
        )
    except ValueError as e:
        raise RangeParseError(f"invalid comparator {comparator!r}: {e}") from e


def parse_range(expression: str) -> Clause:
    """
    Parse a version range expression.

    Raises:
        RangeParseError: If the expression is empty or malformed
    """
    if not expression or not expression.strip():
        raise RangeParseError("empty version range")

    alternatives = []
    for alternative in expression.split("||"):
        # Allow whitespace between an operator and its version
        comparators = re.sub(rf"{_OPERATOR}\s+", r"\1", alternative).split()
        if not comparators:
            raise RangeParseError(f"empty alternative in version range {expression!r}")
        alternatives.append(AllOf(*(_parse_comparator(c) for c in comparators)))

    if len(alternatives) == 1:
        return alternatives[0]
    return AnyOf(*alternatives)


def select_manifest(
    manifests: Iterable[AddonManifest],
    name: str,
    version_range: Union[str, Clause],
) -> AddonManifest:
    """
    Select the manifest with the greatest version satisfying a range.

    Args:
        manifests: Candidate manifests
        name: Base name the manifest must carry
        version_range: Range expression or an already parsed range

    Returns:
        The matching manifest with the highest version

    Raises:
        RangeParseError: If the range expression does not parse
        NotFoundError: If no manifest matches
    """
    if isinstance(version_range, str):
        version_range = parse_range(version_range)

    best: Optional[AddonManifest] = None
    best_version: Optional[Version] = None

    for manifest in manifests:
        manifest_name, version = manifest.name_and_version()
        if manifest_name != name or version is None:
            continue
        if not version_range.match(version):
            continue
        if best_version is None or version > best_version:
            best, best_version = manifest, version

    if best is None:
        raise NotFoundError(f"no matching manifest for {name} ({version_range})")

    logger.debug(f"Selected manifest {best.key} for {name} ({version_range})")
    return best
