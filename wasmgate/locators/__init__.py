"""
Wasmgate Locators

Locator resolution to concrete artifacts, and remote version listings.
"""

from wasmgate.locators.github import GitHubVersionSource, VersionsMemo, tag_regex, versions_from_tags
from wasmgate.locators.resolver import (
    GITHUB_DOWNLOAD_URL,
    LocatorResolver,
    interpolate,
    template_fields,
)

__all__ = [
    "GITHUB_DOWNLOAD_URL",
    "GitHubVersionSource",
    "LocatorResolver",
    "VersionsMemo",
    "interpolate",
    "tag_regex",
    "template_fields",
    "versions_from_tags",
]
