"""Clause operators used when matching user attributes against rule values."""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from semver import Version

OpFn = Callable[[Any, Any], bool]


class Operator(str, Enum):
    """The operators a clause may use."""

    IN = "in"
    ENDS_WITH = "endsWith"
    STARTS_WITH = "startsWith"
    MATCHES = "matches"
    CONTAINS = "contains"
    LESS_THAN = "lessThan"
    LESS_THAN_OR_EQUAL = "lessThanOrEqual"
    GREATER_THAN = "greaterThan"
    GREATER_THAN_OR_EQUAL = "greaterThanOrEqual"
    BEFORE = "before"
    AFTER = "after"
    SEGMENT_MATCH = "segmentMatch"
    SEMVER_EQUAL = "semVerEqual"
    SEMVER_LESS_THAN = "semVerLessThan"
    SEMVER_GREATER_THAN = "semVerGreaterThan"


_VERSION_NUMERIC_COMPONENTS = re.compile(r"^[0-9]+(\.[0-9]+)?(\.[0-9]+)?")

_RFC3339 = re.compile(
    r"^([0-9]{4})-([0-9]{2})-([0-9]{2})[Tt]([0-9]{2}):([0-9]{2}):([0-9]{2})"
    r"(?:\.([0-9]+))?([Zz]|[+-][0-9]{2}:[0-9]{2})$"
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _values_equal(u: Any, c: Any) -> bool:
    # Booleans are never equal to numbers, unlike Python's default semantics.
    if isinstance(u, bool) or isinstance(c, bool):
        return type(u) is type(c) and u == c
    return u == c


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _parse_time(value: Any) -> Optional[int]:
    """Return nanoseconds since the epoch for a timestamp string or millisecond number."""
    if isinstance(value, str):
        match = _RFC3339.match(value)
        if match is None:
            return None
        year, month, day, hour, minute, second, fraction, zone = match.groups()
        try:
            moment = datetime(
                int(year), int(month), int(day), int(hour), int(minute), int(second),
                tzinfo=timezone.utc,
            )
        except ValueError:
            return None
        if zone not in ("Z", "z"):
            sign = 1 if zone[0] == "+" else -1
            offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
            moment -= sign * offset
        delta = moment - _EPOCH
        nanos = (delta.days * 86400 + delta.seconds) * 1_000_000_000
        if fraction:
            nanos += int(fraction[:9].ljust(9, "0"))
        return nanos
    number = _as_number(value)
    if number is None:
        return None
    return int(number * 1_000_000)


def _string_op(fn: Callable[[str, str], bool]) -> OpFn:
    def op(u: Any, c: Any) -> bool:
        return isinstance(u, str) and isinstance(c, str) and fn(u, c)

    return op


def _numeric_op(fn: Callable[[float, float], bool]) -> OpFn:
    def op(u: Any, c: Any) -> bool:
        u_num = _as_number(u)
        if u_num is None:
            return False
        c_num = _as_number(c)
        return c_num is not None and fn(u_num, c_num)

    return op


def _time_op(fn: Callable[[int, int], bool]) -> OpFn:
    def op(u: Any, c: Any) -> bool:
        u_time = _parse_time(u)
        if u_time is None:
            return False
        c_time = _parse_time(c)
        return c_time is not None and fn(u_time, c_time)

    return op


def parse_semver(value: Any) -> Optional[Version]:
    """Parse a semantic version, padding missing minor and patch numbers with zeroes."""
    if not isinstance(value, str):
        return None
    try:
        return Version.parse(value)
    except ValueError:
        pass
    match = _VERSION_NUMERIC_COMPONENTS.match(value)
    if match is None:
        return None
    padding = "".join(".0" for group in match.groups() if group is None)
    transformed = match.group(0) + padding + value[match.end():]
    try:
        return Version.parse(transformed)
    except ValueError:
        return None


def _semver_op(fn: Callable[[int], bool]) -> OpFn:
    def op(u: Any, c: Any) -> bool:
        u_ver = parse_semver(u)
        c_ver = parse_semver(c)
        return u_ver is not None and c_ver is not None and fn(u_ver.compare(c_ver))

    return op


def _matches(u: str, c: str) -> bool:
    try:
        return re.search(c, u) is not None
    except re.error:
        return False


def _in(u: Any, c: Any) -> bool:
    return _values_equal(u, c) or _numeric_op(lambda a, b: a == b)(u, c)


# Operators without a comparison of their own never match.
_NEVER: OpFn = lambda u, c: False  # noqa: E731


_ALL_OPS: dict = {
    Operator.IN: _in,
    Operator.ENDS_WITH: _string_op(lambda u, c: u.endswith(c)),
    Operator.STARTS_WITH: _string_op(lambda u, c: u.startswith(c)),
    Operator.MATCHES: _string_op(_matches),
    Operator.CONTAINS: _string_op(lambda u, c: c in u),
    Operator.LESS_THAN: _numeric_op(lambda u, c: u < c),
    Operator.LESS_THAN_OR_EQUAL: _numeric_op(lambda u, c: u <= c),
    Operator.GREATER_THAN: _numeric_op(lambda u, c: u > c),
    Operator.GREATER_THAN_OR_EQUAL: _numeric_op(lambda u, c: u >= c),
    Operator.BEFORE: _time_op(lambda u, c: u < c),
    Operator.AFTER: _time_op(lambda u, c: u > c),
    Operator.SEMVER_EQUAL: _semver_op(lambda cmp: cmp == 0),
    Operator.SEMVER_LESS_THAN: _semver_op(lambda cmp: cmp < 0),
    Operator.SEMVER_GREATER_THAN: _semver_op(lambda cmp: cmp > 0),
}


def operator_fn(operator: Any) -> OpFn:
    """Return the comparison function for an operator; unknown operators never match."""
    try:
        op = Operator(operator)
    except ValueError:
        return _NEVER
    return _ALL_OPS.get(op, _NEVER)