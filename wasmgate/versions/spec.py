"""
Wasmgate Version Specs

Unresolved version requirements (exact, range, alias, canary), the
concrete resolved version, and the candidate list they are matched against.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Sequence, Union

import structlog

from wasmgate.errors import InvalidVersionSpecError
from wasmgate.versions.semver import SemanticVersion, VersionRequirement

logger = structlog.get_logger(__name__)

CANARY = "canary"

_ALIAS_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_.\-/]*$')
_VERSIONISH_PATTERN = re.compile(r'^(?:[vV]\d|[xX]$|[xX]\.)')


@dataclass(frozen=True)
class Exact:
    """A single fully specified version."""

    version: SemanticVersion

    def __str__(self) -> str:
        return str(self.version)


@dataclass(frozen=True)
class Range:
    """A comparator expression matched against candidates."""

    requirement: VersionRequirement

    @classmethod
    def parse(cls, expression: str) -> "Range":
        return cls(VersionRequirement.parse(expression))

    def __str__(self) -> str:
        return str(self.requirement)


@dataclass(frozen=True)
class Alias:
    """A named indirection such as "latest" or "stable"."""

    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Canary:
    """The always-latest build, exempt from cache freshness."""

    def __str__(self) -> str:
        return CANARY


VersionSpec = Union[Exact, Range, Alias, Canary]


def parse_version_spec(value: Union[str, VersionSpec]) -> VersionSpec:
    """
    Classify a requirement string.

    - "canary" -> Canary
    - a bare identifier ("latest", "stable", "lts") -> Alias
    - a full semantic version ("1.2.3", "v1.2.3-rc.1") -> Exact
    - anything else ("1.2", "^1.2", ">=1, <2", "1 || 2") -> Range
    """
    if isinstance(value, (Exact, Range, Alias, Canary)):
        return value

    text = (value or "").strip()
    if not text:
        raise InvalidVersionSpecError("Empty version spec")

    if text.lower() == CANARY:
        return Canary()

    version = SemanticVersion.try_parse(text)
    if version is not None:
        return Exact(version)

    if _ALIAS_PATTERN.match(text) and not _VERSIONISH_PATTERN.match(text):
        return Alias(text)

    return Range.parse(text)


@dataclass(frozen=True)
class ResolvedVersion:
    """A concrete version, or the canary sentinel."""

    label: str
    semver: Optional[SemanticVersion] = None

    @classmethod
    def from_semver(cls, version: SemanticVersion) -> "ResolvedVersion":
        return cls(label=str(version), semver=version)

    @classmethod
    def canary(cls) -> "ResolvedVersion":
        return cls(label=CANARY)

    @property
    def is_canary(self) -> bool:
        return self.semver is None and self.label == CANARY

    def __str__(self) -> str:
        return self.label


@dataclass
class VersionCandidateList:
    """
    Known concrete versions, unique and ordered descending by precedence.

    Entries that are not valid semantic versions are skipped.
    """

    versions: List[SemanticVersion] = field(default_factory=list)

    def __post_init__(self) -> None:
        unique = {}
        for version in self.versions:
            unique.setdefault(version, version)
        self.versions = sorted(unique.values(), reverse=True)

    @classmethod
    def from_strings(cls, values: Iterable[str]) -> "VersionCandidateList":
        versions = []
        skipped = []
        for value in values:
            version = SemanticVersion.try_parse(value)
            if version is None:
                skipped.append(value)
            else:
                versions.append(version)
        if skipped:
            logger.debug("Skipped non-semver candidates", skipped=skipped)
        return cls(versions)

    @classmethod
    def coerce(
        cls,
        candidates: Union["VersionCandidateList", Sequence[Union[str, SemanticVersion]], None],
    ) -> "VersionCandidateList":
        if candidates is None:
            return cls()
        if isinstance(candidates, VersionCandidateList):
            return candidates
        return cls.from_strings(str(c) for c in candidates)

    def __iter__(self) -> Iterator[SemanticVersion]:
        return iter(self.versions)

    def __len__(self) -> int:
        return len(self.versions)

    def __contains__(self, version: object) -> bool:
        return version in self.versions

    def latest(self, include_prerelease: bool = False) -> Optional[SemanticVersion]:
        for version in self.versions:
            if include_prerelease or not version.is_prerelease():
                return version
        return None

    def labels(self) -> List[str]:
        return [str(v) for v in self.versions]
