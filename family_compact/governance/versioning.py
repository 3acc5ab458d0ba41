"""Version assignment for a family's agreement lineage."""

from __future__ import annotations

import math
from collections.abc import Iterable

FIRST_VERSION = "1"


def parse_version(value: object) -> float | None:
    """Numeric value of a stored version string, or None if it is not a version."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number) or number < 0:
        return None
    return number


def next_version(existing_versions: Iterable[object]) -> str:
    """
    Compute the next version for a family.

    Versions are decimal strings. The next version is one more than the
    integer part of the highest existing version, so legacy dotted versions
    such as "1.2" are still ordered correctly. Archived and superseded
    versions count, so a version is never handed out twice.

    >>> next_version([])
    '1'
    >>> next_version(["1", "2", None])
    '3'
    >>> next_version(["1.1"])
    '2'
    """
    numbers = [n for n in (parse_version(v) for v in existing_versions) if n is not None]
    if not numbers:
        return FIRST_VERSION
    return str(math.floor(max(numbers)) + 1)
