"""
Wasmgate Semantic Versions

SemVer 2.0.0 versions and comparator-set requirements used to match
version ranges against release lists.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import List, Optional, Tuple

from wasmgate.errors import InvalidVersionSpecError


def _prerelease_key(prerelease: Optional[str]) -> tuple:
    # Release sorts above any pre-release; identifiers compare field by field,
    # numeric identifiers numerically and below alphanumeric ones.
    if not prerelease:
        return (1,)
    parts = []
    for ident in prerelease.split("."):
        if ident.isdigit():
            parts.append((0, int(ident), ""))
        else:
            parts.append((1, 0, ident))
    return (0, tuple(parts))


@total_ordering
@dataclass(frozen=True)
class SemanticVersion:
    """
    Semantic versioning (SemVer 2.0.0) representation.

    Format: MAJOR.MINOR.PATCH[-PRERELEASE][+BUILD]

    Build metadata is kept for display but ignored for precedence and
    equality.
    """

    major: int
    minor: int
    patch: int
    prerelease: Optional[str] = None
    build: Optional[str] = field(default=None, compare=False)

    _SEMVER_PATTERN = re.compile(
        r'^(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)'
        r'(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)'
        r'(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?'
        r'(?:\+(?P<build>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$'
    )

    @classmethod
    def parse(cls, version_str: str) -> "SemanticVersion":
        """Parse a full version string, accepting an optional leading 'v'."""
        text = (version_str or "").strip()
        if text[:1] in ("v", "V"):
            text = text[1:]

        match = cls._SEMVER_PATTERN.match(text)
        if not match:
            raise InvalidVersionSpecError(f"Invalid semantic version: '{version_str}'")

        groups = match.groupdict()
        return cls(
            major=int(groups["major"]),
            minor=int(groups["minor"]),
            patch=int(groups["patch"]),
            prerelease=groups.get("prerelease"),
            build=groups.get("build"),
        )

    @classmethod
    def try_parse(cls, version_str: str) -> Optional["SemanticVersion"]:
        try:
            return cls.parse(version_str)
        except InvalidVersionSpecError:
            return None

    def __str__(self) -> str:
        version = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            version += f"-{self.prerelease}"
        if self.build:
            version += f"+{self.build}"
        return version

    def __repr__(self) -> str:
        return f"SemanticVersion({self})"

    def _compare_tuple(self) -> tuple:
        return (self.major, self.minor, self.patch, _prerelease_key(self.prerelease))

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, SemanticVersion):
            return NotImplemented
        return self._compare_tuple() < other._compare_tuple()

    @property
    def release(self) -> Tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def is_prerelease(self) -> bool:
        """Check if this is a prerelease version."""
        return self.prerelease is not None


# === Requirements ===


_OPERATORS = (">=", "<=", "~>", "!=", ">", "<", "=", "^", "~")
_WILDCARDS = ("x", "X", "*")
_PARTIAL_PATTERN = re.compile(
    r'^v?(?P<major>\d+|[xX*])'
    r'(?:\.(?P<minor>\d+|[xX*]))?'
    r'(?:\.(?P<patch>\d+|[xX*]))?'
    r'(?:-(?P<prerelease>[0-9A-Za-z.-]+))?'
    r'(?:\+[0-9A-Za-z.-]+)?$'
)


@dataclass(frozen=True)
class _Partial:
    major: Optional[int]
    minor: Optional[int]
    patch: Optional[int]
    prerelease: Optional[str] = None

    def floor(self) -> SemanticVersion:
        return SemanticVersion(
            self.major or 0,
            self.minor or 0,
            self.patch or 0,
            self.prerelease if self.patch is not None else None,
        )


def _parse_partial(text: str, expression: str) -> _Partial:
    match = _PARTIAL_PATTERN.match(text)
    if not match:
        raise InvalidVersionSpecError(f"Invalid version '{text}' in requirement '{expression}'")

    def component(name: str) -> Optional[int]:
        value = match.group(name)
        if value is None or value in _WILDCARDS:
            return None
        return int(value)

    major = component("major")
    minor = component("minor") if major is not None else None
    patch = component("patch") if minor is not None else None
    return _Partial(major, minor, patch, match.group("prerelease"))


@dataclass(frozen=True)
class Comparator:
    """A primitive comparison against a single version."""

    op: str
    version: SemanticVersion

    def test(self, version: SemanticVersion) -> bool:
        if self.op == "=":
            return version == self.version
        if self.op == "!=":
            return version != self.version
        if self.op == ">":
            return version > self.version
        if self.op == ">=":
            return version >= self.version
        if self.op == "<":
            return version < self.version
        if self.op == "<=":
            return version <= self.version
        raise ValueError(f"Unknown comparator operator: {self.op}")

    def __str__(self) -> str:
        return f"{self.op}{self.version}"


def _expand(op: str, partial: _Partial) -> List[Comparator]:
    """Reduce an operator applied to a possibly partial version to primitives."""
    if partial.major is None:
        # Wildcard: any version, except that "<*" and ">*" match nothing.
        if op in ("<", ">"):
            return [Comparator("<", SemanticVersion(0, 0, 0))]
        return []

    M = partial.major
    m = partial.minor
    p = partial.patch
    low = partial.floor()

    if op in ("=", ""):
        if p is not None:
            return [Comparator("=", low)]
        if m is not None:
            return [Comparator(">=", low), Comparator("<", SemanticVersion(M, m + 1, 0))]
        return [Comparator(">=", low), Comparator("<", SemanticVersion(M + 1, 0, 0))]

    if op == "!=":
        return [Comparator("!=", low)]

    if op == "^":
        # Pessimistic compatibility: the rightmost given component may move,
        # everything left of it is pinned. Leading zeros pin one level deeper.
        if p is not None:
            if M == 0 and m == 0:
                upper = SemanticVersion(0, 0, p + 1)
            else:
                upper = SemanticVersion(M, m + 1, 0)
        elif m is not None:
            upper = SemanticVersion(0, m + 1, 0) if M == 0 else SemanticVersion(M + 1, 0, 0)
        else:
            upper = SemanticVersion(M + 1, 0, 0)
        return [Comparator(">=", low), Comparator("<", upper)]

    if op in ("~", "~>"):
        if m is None:
            upper = SemanticVersion(M + 1, 0, 0)
        else:
            upper = SemanticVersion(M, m + 1, 0)
        return [Comparator(">=", low), Comparator("<", upper)]

    if op == ">":
        if p is not None:
            return [Comparator(">", low)]
        if m is not None:
            return [Comparator(">=", SemanticVersion(M, m + 1, 0))]
        return [Comparator(">=", SemanticVersion(M + 1, 0, 0))]

    if op == ">=":
        return [Comparator(">=", low)]

    if op == "<":
        return [Comparator("<", low)]

    if op == "<=":
        if p is not None:
            return [Comparator("<=", low)]
        if m is not None:
            return [Comparator("<", SemanticVersion(M, m + 1, 0))]
        return [Comparator("<", SemanticVersion(M + 1, 0, 0))]

    raise InvalidVersionSpecError(f"Unknown operator '{op}'")


def _split_operator(token: str) -> Tuple[str, str]:
    for op in _OPERATORS:
        if token.startswith(op):
            return op, token[len(op):]
    return "", token


@dataclass(frozen=True)
class VersionRequirement:
    """
    A range expression: OR-ed alternatives of AND-ed comparators.

    Supports operators: =, !=, >, >=, <, <=, ^, ~, ~>, wildcards (x, *),
    partial versions (a bare partial version behaves like ^), hyphen ranges
    ("1.2 - 1.4"), comma or whitespace separated AND, and "||" OR.
    """

    expression: str
    alternatives: Tuple[Tuple[Comparator, ...], ...]

    @classmethod
    def parse(cls, expression: str) -> "VersionRequirement":
        text = (expression or "").strip()
        if not text:
            raise InvalidVersionSpecError("Empty version requirement")

        alternatives = []
        for alternative in text.split("||"):
            alternatives.append(tuple(cls._parse_set(alternative.strip(), text)))
        return cls(expression=text, alternatives=tuple(alternatives))

    @staticmethod
    def _parse_set(text: str, expression: str) -> List[Comparator]:
        if not text or text in ("*", "any"):
            return []

        # Glue operators to their operands: ">= 1.2" -> ">=1.2"
        normalized = re.sub(r'(>=|<=|~>|!=|>|<|=|\^|~)\s+', r'\1', text)
        tokens = [t for t in re.split(r'[\s,]+', normalized) if t]

        comparators: List[Comparator] = []
        index = 0
        while index < len(tokens):
            token = tokens[index]
            if index + 2 < len(tokens) and tokens[index + 1] == "-":
                low = _parse_partial(token, expression)
                high = _parse_partial(tokens[index + 2], expression)
                comparators.extend(_expand(">=", low))
                comparators.extend(_expand("<=", high))
                index += 3
                continue

            op, operand = _split_operator(token)
            partial = _parse_partial(operand, expression)
            if op == "" and (partial.patch is None):
                op = "^" if partial.major is not None and all(
                    c not in operand for c in _WILDCARDS
                ) else "="
            comparators.extend(_expand(op, partial))
            index += 1

        return comparators

    @staticmethod
    def _set_satisfied(comparators: Tuple[Comparator, ...], version: SemanticVersion) -> bool:
        if not all(c.test(version) for c in comparators):
            return False
        if version.is_prerelease():
            # Pre-releases only match when explicitly named on the same release.
            return any(
                c.version.is_prerelease() and c.version.release == version.release
                for c in comparators
            )
        return True

    def satisfies(self, version: SemanticVersion) -> bool:
        """Check if version satisfies any alternative of this requirement."""
        return any(self._set_satisfied(alt, version) for alt in self.alternatives)

    def __str__(self) -> str:
        return self.expression
