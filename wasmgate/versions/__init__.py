"""
Wasmgate Versions

Version parsing, requirement matching, and spec resolution.
"""

from wasmgate.versions.semver import Comparator, SemanticVersion, VersionRequirement
from wasmgate.versions.spec import (
    CANARY,
    Alias,
    Canary,
    Exact,
    Range,
    ResolvedVersion,
    VersionCandidateList,
    VersionSpec,
    parse_version_spec,
)
from wasmgate.versions.resolver import VersionResolver, resolve_version

__all__ = [
    "CANARY",
    "Alias",
    "Canary",
    "Comparator",
    "Exact",
    "Range",
    "ResolvedVersion",
    "SemanticVersion",
    "VersionCandidateList",
    "VersionRequirement",
    "VersionResolver",
    "VersionSpec",
    "parse_version_spec",
    "resolve_version",
]
