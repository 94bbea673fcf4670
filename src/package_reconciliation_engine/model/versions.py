from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from packaging.specifiers import InvalidSpecifier, Specifier
from packaging.version import Version

_ANY_TOKENS = frozenset({"", "*"})
_EMPTY_TOKEN = "<empty>"
_UNION_SEP = "||"


class Ordering(Enum):
    LESS = -1
    EQUAL = 0
    GREATER = 1


def _coerce_version(value: Version | str) -> Version:
    return value if isinstance(value, Version) else Version(value)


def compare(v1: Version | str, v2: Version | str) -> Ordering:
    a, b = _coerce_version(v1), _coerce_version(v2)
    if a < b:
        return Ordering.LESS
    if a > b:
        return Ordering.GREATER
    return Ordering.EQUAL


@dataclass(frozen=True, slots=True)
class VersionInterval:
    """
    A contiguous range of versions.

    A bound of None is unbounded on that side; unbounded sides are never inclusive.
    The interval may be empty (e.g. lower > upper); VersionSet drops empty intervals
    during normalization.
    """

    lower: Version | None = None
    upper: Version | None = None
    lower_inclusive: bool = True
    upper_inclusive: bool = False

    def __post_init__(self) -> None:
        if self.lower is not None:
            object.__setattr__(self, "lower", _coerce_version(self.lower))
        else:
            object.__setattr__(self, "lower_inclusive", False)
        if self.upper is not None:
            object.__setattr__(self, "upper", _coerce_version(self.upper))
        else:
            object.__setattr__(self, "upper_inclusive", False)

    @property
    def is_empty(self) -> bool:
        if self.lower is None or self.upper is None:
            return False
        if self.lower < self.upper:
            return False
        if self.lower == self.upper:
            return not (self.lower_inclusive and self.upper_inclusive)
        return True

    @property
    def is_unbounded(self) -> bool:
        return self.lower is None and self.upper is None

    @property
    def is_exact(self) -> bool:
        return (
            self.lower is not None
            and self.lower == self.upper
            and self.lower_inclusive
            and self.upper_inclusive
        )

    def contains(self, version: Version | str) -> bool:
        v = _coerce_version(version)
        if self.lower is not None:
            if v < self.lower or (v == self.lower and not self.lower_inclusive):
                return False
        if self.upper is not None:
            if v > self.upper or (v == self.upper and not self.upper_inclusive):
                return False
        return True

    def intersect(self, other: VersionInterval) -> VersionInterval:
        lower, lower_inc = _tighter_lower(
            (self.lower, self.lower_inclusive), (other.lower, other.lower_inclusive)
        )
        upper, upper_inc = _tighter_upper(
            (self.upper, self.upper_inclusive), (other.upper, other.upper_inclusive)
        )
        return VersionInterval(lower, upper, lower_inc, upper_inc)

    def __str__(self) -> str:
        if self.is_unbounded:
            return "*"
        if self.is_exact:
            return f"=={self.lower}"
        parts: list[str] = []
        if self.lower is not None:
            parts.append(f"{'>=' if self.lower_inclusive else '>'}{self.lower}")
        if self.upper is not None:
            parts.append(f"{'<=' if self.upper_inclusive else '<'}{self.upper}")
        return ",".join(parts)


_Bound = tuple[Version | None, bool]


def _tighter_lower(a: _Bound, b: _Bound) -> _Bound:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] != b[0]:
        return a if a[0] > b[0] else b
    return a[0], a[1] and b[1]


def _tighter_upper(a: _Bound, b: _Bound) -> _Bound:
    if a[0] is None:
        return b
    if b[0] is None:
        return a
    if a[0] != b[0]:
        return a if a[0] < b[0] else b
    return a[0], a[1] and b[1]


def _lower_sort_key(interval: VersionInterval) -> tuple[int, Version, int]:
    # unbounded first; at equal bounds an inclusive lower starts earlier
    if interval.lower is None:
        return 0, Version("0"), 0
    return 1, interval.lower, 0 if interval.lower_inclusive else 1


def _joins(current: VersionInterval, nxt: VersionInterval) -> bool:
    if current.upper is None or nxt.lower is None:
        return True
    if nxt.lower < current.upper:
        return True
    return nxt.lower == current.upper and (current.upper_inclusive or nxt.lower_inclusive)


def _looser_upper(a: VersionInterval, b: VersionInterval) -> _Bound:
    if a.upper is None or b.upper is None:
        return None, False
    if a.upper != b.upper:
        return (a.upper, a.upper_inclusive) if a.upper > b.upper else (b.upper, b.upper_inclusive)
    return a.upper, a.upper_inclusive or b.upper_inclusive


def _normalize_intervals(intervals: Iterable[VersionInterval]) -> tuple[VersionInterval, ...]:
    ordered = sorted((i for i in intervals if not i.is_empty), key=_lower_sort_key)
    merged: list[VersionInterval] = []
    for interval in ordered:
        if merged and _joins(merged[-1], interval):
            current = merged[-1]
            upper, upper_inc = _looser_upper(current, interval)
            merged[-1] = VersionInterval(
                current.lower, upper, current.lower_inclusive, upper_inc
            )
        else:
            merged.append(interval)
    return tuple(merged)


@dataclass(frozen=True, slots=True)
class VersionSet:
    """
    A constraint over versions: a normalized union of disjoint intervals.

    VersionSet.any() admits every version and VersionSet.empty() admits none; the two
    are distinct values, so an empty intersection is never confused with "no
    constraint". Instances are immutable and compare equal when they admit the same
    versions.
    """

    intervals: tuple[VersionInterval, ...] = field(default=(VersionInterval(),))

    def __post_init__(self) -> None:
        object.__setattr__(self, "intervals", _normalize_intervals(self.intervals))

    @classmethod
    def any(cls) -> VersionSet:
        return cls((VersionInterval(),))

    @classmethod
    def empty(cls) -> VersionSet:
        return cls(())

    @classmethod
    def exact(cls, version: Version | str) -> VersionSet:
        v = _coerce_version(version)
        return cls((VersionInterval(v, v, True, True),))

    @classmethod
    def range(
        cls,
        lower: Version | str | None = None,
        upper: Version | str | None = None,
        *,
        lower_inclusive: bool = True,
        upper_inclusive: bool = False,
    ) -> VersionSet:
        return cls((VersionInterval(lower, upper, lower_inclusive, upper_inclusive),))

    @property
    def is_any(self) -> bool:
        return len(self.intervals) == 1 and self.intervals[0].is_unbounded

    @property
    def is_empty(self) -> bool:
        return not self.intervals

    def contains(self, version: Version | str) -> bool:
        v = _coerce_version(version)
        return any(i.contains(v) for i in self.intervals)

    def __contains__(self, version: object) -> bool:
        if not isinstance(version, (Version, str)):
            return False
        return self.contains(version)

    def intersect(self, other: VersionSet) -> VersionSet:
        return VersionSet(tuple(a.intersect(b) for a in self.intervals for b in other.intervals))

    def union(self, other: VersionSet) -> VersionSet:
        return VersionSet(self.intervals + other.intervals)

    def __and__(self, other: VersionSet) -> VersionSet:
        return self.intersect(other)

    def __or__(self, other: VersionSet) -> VersionSet:
        return self.union(other)

    def __str__(self) -> str:
        if self.is_empty:
            return _EMPTY_TOKEN
        return f" {_UNION_SEP} ".join(str(i) for i in self.intervals)

    @classmethod
    def parse(cls, text: str) -> VersionSet:
        """
        Parse a constraint such as ">=1.0,<2.0 || ==3.1".

        Commas intersect PEP 440 clauses, "||" unions alternatives, and "*" (or an
        empty string) means any version. "<empty>" parses to the empty set so that
        str() output always round-trips.
        """
        text = text.strip()
        if text == _EMPTY_TOKEN:
            return cls.empty()
        if text in _ANY_TOKENS:
            return cls.any()

        result = cls.empty()
        for alternative in text.split(_UNION_SEP):
            part = cls.any()
            alternative = alternative.strip()
            if alternative not in _ANY_TOKENS:
                for clause in alternative.split(","):
                    part = part.intersect(_clause_to_set(clause.strip()))
            result = result.union(part)
        return result


def _bump(release: tuple[int, ...], index: int) -> Version:
    bumped = list(release[: index + 1])
    bumped[index] += 1
    return Version(".".join(str(p) for p in bumped))


def _complement(vs: VersionSet) -> VersionSet:
    result = VersionSet.any()
    for i in vs.intervals:
        below = VersionInterval(None, i.lower, upper_inclusive=not i.lower_inclusive)
        above = VersionInterval(i.upper, None, lower_inclusive=not i.upper_inclusive)
        hole = VersionSet(
            tuple(x for x, bound in ((below, i.lower), (above, i.upper)) if bound is not None)
        )
        result = result.intersect(hole)
    return result


def _clause_to_set(clause: str) -> VersionSet:
    try:
        spec = Specifier(clause)
    except InvalidSpecifier as e:
        raise ValueError(f"Invalid version constraint clause: {clause!r}") from e

    op, raw = spec.operator, spec.version
    if raw.endswith(".*"):
        prefix = Version(raw[:-2])
        wildcard = VersionSet.range(prefix, _bump(prefix.release, len(prefix.release) - 1))
        match op:
            case "==":
                return wildcard
            case "!=":
                return _complement(wildcard)
            case _:
                raise ValueError(f"Wildcards are only valid with == and !=: {clause!r}")

    v = Version(raw)
    match op:
        case "==":
            return VersionSet.exact(v)
        case "!=":
            return _complement(VersionSet.exact(v))
        case ">=":
            return VersionSet.range(v, None)
        case ">":
            return VersionSet.range(v, None, lower_inclusive=False)
        case "<=":
            return VersionSet.range(None, v, upper_inclusive=True)
        case "<":
            return VersionSet.range(None, v)
        case "~=":
            if len(v.release) < 2:
                raise ValueError(f"Compatible release needs at least two components: {clause!r}")
            return VersionSet.range(v, _bump(v.release, len(v.release) - 2))
        case _:
            raise ValueError(f"Unsupported version constraint operator {op!r} in {clause!r}")


def contains(vs: VersionSet, version: Version | str) -> bool:
    return vs.contains(version)


def intersect(a: VersionSet, b: VersionSet) -> VersionSet:
    return a.intersect(b)
