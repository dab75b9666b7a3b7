"""
Wasmgate Version Resolver

Matches a version spec against a candidate list and returns the best
concrete version.
"""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Union

import structlog

from wasmgate.errors import (
    AliasCycleError,
    NoMatchingVersionError,
    VersionResolutionError,
)
from wasmgate.versions.semver import SemanticVersion
from wasmgate.versions.spec import (
    Alias,
    Canary,
    Exact,
    Range,
    ResolvedVersion,
    VersionCandidateList,
    VersionSpec,
    parse_version_spec,
)

logger = structlog.get_logger(__name__)

# Aliases with a built-in meaning when the registry does not map them.
LATEST_ALIASES = ("latest", "stable")


class VersionResolver:
    """
    Resolves version specs against known releases.

    Features:
    - Exact matches (build metadata ignored)
    - Ranges: maximum satisfying candidate wins
    - Aliases mapped to versions or to other specs, with cycle detection
    - Canary sentinel that bypasses the candidate list
    """

    def __init__(
        self,
        candidates: Union[VersionCandidateList, Sequence[Union[str, SemanticVersion]], None] = None,
        aliases: Optional[Mapping[str, str]] = None,
    ):
        self.candidates = VersionCandidateList.coerce(candidates)
        self.aliases: Dict[str, str] = dict(aliases or {})

    def resolve(self, spec: Union[str, VersionSpec]) -> ResolvedVersion:
        """
        Resolve a spec to a concrete version.

        Raises:
            NoMatchingVersionError: Nothing satisfies the spec
            AliasCycleError: Alias indirection loops
        """
        parsed = parse_version_spec(spec)
        resolved = self._resolve(parsed, chain=[])
        logger.debug("Resolved version", spec=str(parsed), version=str(resolved))
        return resolved

    def _resolve(self, spec: VersionSpec, chain: List[str]) -> ResolvedVersion:
        if isinstance(spec, Canary):
            return ResolvedVersion.canary()

        if isinstance(spec, Exact):
            if spec.version in self.candidates:
                # Return the candidate itself so build metadata is preserved.
                match = next(v for v in self.candidates if v == spec.version)
                return ResolvedVersion.from_semver(match)
            raise self._no_match(spec)

        if isinstance(spec, Range):
            for version in self.candidates:
                if spec.requirement.satisfies(version):
                    return ResolvedVersion.from_semver(version)
            raise self._no_match(spec)

        if isinstance(spec, Alias):
            return self._resolve_alias(spec, chain)

        raise VersionResolutionError(f"Unsupported version spec: {spec!r}")

    def _resolve_alias(self, spec: Alias, chain: List[str]) -> ResolvedVersion:
        name = spec.name
        if name in chain:
            raise AliasCycleError(chain + [name])

        target = self.aliases.get(name)
        if target is None:
            if name.lower() in LATEST_ALIASES:
                latest = self.candidates.latest()
                if latest is not None:
                    return ResolvedVersion.from_semver(latest)
            raise self._no_match(spec)

        return self._resolve(parse_version_spec(target), chain + [name])

    def _no_match(self, spec: VersionSpec) -> NoMatchingVersionError:
        return NoMatchingVersionError(str(spec), self.candidates.labels())

    def matching(self, spec: Union[str, VersionSpec]) -> List[SemanticVersion]:
        """List every candidate satisfying a range or exact spec."""
        parsed = parse_version_spec(spec)
        if isinstance(parsed, Exact):
            return [v for v in self.candidates if v == parsed.version]
        if isinstance(parsed, Range):
            return [v for v in self.candidates if parsed.requirement.satisfies(v)]
        return [self.resolve(parsed).semver] if not isinstance(parsed, Canary) else []


def resolve_version(
    spec: Union[str, VersionSpec],
    candidates: Union[VersionCandidateList, Sequence[Union[str, SemanticVersion]], None],
    aliases: Optional[Mapping[str, str]] = None,
) -> ResolvedVersion:
    """Resolve a spec against candidates in one call."""
    return VersionResolver(candidates, aliases).resolve(spec)
