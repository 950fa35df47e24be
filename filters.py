"""Container filter chain: name globs, a label pair, and a minimum age.

A filter that cannot be parsed or evaluated is logged and treated as absent
so that one bad setting never blocks a whole check cycle.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Iterable, Optional, Tuple, Union

from errors import FilterError
from models import ContainerRecord

logger = logging.getLogger(__name__)

_AGE_RE = re.compile(r'^\s*(\d+)\s*([dwmy]?)\s*$')
_AGE_UNITS = {'d': 1, 'w': 7, 'm': 30, 'y': 365, '': 1}


def split_patterns(value: Union[str, Iterable[str], None]) -> Tuple[str, ...]:
    """Normalize a comma-separated string or a list into trimmed patterns."""
    if not value:
        return ()
    if isinstance(value, str):
        value = value.split(',')
    return tuple(p.strip() for p in value if p and p.strip())


def parse_label_filter(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """Parse 'key=value'.

    Raises:
        FilterError: when the string has no '=' or an empty key
    """
    if not value or not value.strip():
        return None
    key, sep, label_value = value.strip().partition('=')
    if not sep or not key.strip():
        raise FilterError(f"label filter '{value}' is not in key=value form")
    return key.strip(), label_value.strip()


def parse_age_filter(value: Union[str, int, None]) -> Optional[int]:
    """Convert '7d', '2w', '1m', '1y' or a bare number into days.

    Returns None for an empty value or zero (no age filter).

    Raises:
        FilterError: when the string is not understood
    """
    if value is None or value == '':
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    match = _AGE_RE.match(value)
    if not match:
        raise FilterError(f"minimum age '{value}' is not like '7d', '2w', '1m' or '1y'")
    days = int(match.group(1)) * _AGE_UNITS[match.group(2)]
    return days if days > 0 else None


@dataclass(frozen=True)
class FilterSpec:
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    label_filter: Optional[Tuple[str, str]] = None
    min_age_days: Optional[int] = None

    @classmethod
    def build(cls, include=None, exclude=None, label=None, min_age=None) -> "FilterSpec":
        """Build a spec from raw settings, dropping filters that do not parse."""
        label_filter = None
        try:
            label_filter = parse_label_filter(label)
        except FilterError as e:
            logger.warning(f"Ignoring label filter: {e}")

        min_age_days = None
        try:
            min_age_days = parse_age_filter(min_age)
        except FilterError as e:
            logger.warning(f"Ignoring age filter: {e}")

        return cls(
            include=split_patterns(include),
            exclude=split_patterns(exclude),
            label_filter=label_filter,
            min_age_days=min_age_days,
        )


def _matches_any(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatchcase(name, pattern) for pattern in patterns)


def matches(container: ContainerRecord, spec: FilterSpec,
            now: Optional[datetime] = None) -> Tuple[bool, str]:
    """Decide whether *container* passes *spec*.

    Order is fixed: exclude, include, label, minimum age.  Returns
    ``(passed, reason)`` where reason names the filter that rejected.
    """
    name = container.name

    if _matches_any(name, spec.exclude):
        return False, "excluded by name"

    if spec.include and not _matches_any(name, spec.include):
        return False, "not in include list"

    if spec.label_filter:
        key, value = spec.label_filter
        if container.labels.get(key) != value:
            return False, f"missing label {key}={value}"

    if spec.min_age_days:
        age = container.age_days(now)
        if age is None:
            logger.warning(
                f"Cannot determine age of {name} (created '{container.created_at}'), "
                f"ignoring age filter"
            )
        elif age < spec.min_age_days:
            return False, f"too new ({age}d < {spec.min_age_days}d)"

    return True, ""
