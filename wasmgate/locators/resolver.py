"""
Wasmgate Locator Resolver

Turns an abstract plugin locator plus a concrete version into a
ResolvedArtifact. Pure: no I/O.
"""

from __future__ import annotations

import string
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import structlog

from wasmgate.errors import LocatorError, UnresolvedTemplateError, UnsupportedPlatformError
from wasmgate.types import (
    FileLocator,
    GitHubLocator,
    PlatformDescriptor,
    PluginDescriptor,
    PluginLocator,
    ResolvedArtifact,
    UrlLocator,
)
from wasmgate.versions.spec import ResolvedVersion

logger = structlog.get_logger(__name__)

GITHUB_DOWNLOAD_URL = "https://github.com/{owner}/{repo}/releases/download/{tag}/{asset}"


def template_fields(template: str) -> List[str]:
    """Names of the placeholders used by a str.format template."""
    names = []
    for _, name, _, _ in string.Formatter().parse(template):
        if name is not None and name != "" and name not in names:
            names.append(name)
    return names


def interpolate(template: str, values: Mapping[str, str]) -> str:
    """
    Fill a template, failing on any placeholder without a value.

    Raises:
        UnresolvedTemplateError: If a placeholder is missing
    """
    try:
        names = template_fields(template)
    except ValueError as e:
        raise LocatorError(f"Malformed template '{template}'", cause=e)

    missing = [name for name in names if name not in values]
    if missing:
        raise UnresolvedTemplateError(template, missing)
    return template.format(**{name: values[name] for name in names})


class LocatorResolver:
    """
    Builds concrete fetch targets from locators.

    Template variables available to URL templates and file paths:
    {version}, {os}, {arch}, {libc} (Linux only), the locator's own vars, and
    any per-platform vars. Checksum and signature URL templates may also use
    {url} (the resolved artifact location).
    """

    def __init__(
        self,
        platform: Optional[PlatformDescriptor] = None,
        base_dir: Optional[Path] = None,
    ):
        self.platform = platform or PlatformDescriptor.detect()
        self.base_dir = base_dir

    def resolve(
        self,
        descriptor: PluginDescriptor,
        version: ResolvedVersion,
        locator: Optional[PluginLocator] = None,
    ) -> ResolvedArtifact:
        """
        Resolve a descriptor's locator for one version.

        Raises:
            UnresolvedTemplateError: Required interpolation variables missing
            UnsupportedPlatformError: No variant for the running platform
        """
        locator = locator or descriptor.parsed_locator()
        context = {"plugin_id": descriptor.id, "version": str(version), "locator": str(locator)}

        try:
            values = self._base_values(descriptor, version)
            if isinstance(locator, UrlLocator):
                artifact = self._resolve_url(descriptor, version, locator, values)
            elif isinstance(locator, GitHubLocator):
                artifact = self._resolve_github(descriptor, version, locator, values)
            elif isinstance(locator, FileLocator):
                artifact = self._resolve_file(descriptor, version, locator, values)
            else:
                raise LocatorError(f"Unsupported locator type: {type(locator).__name__}")
        except LocatorError as e:
            raise e.with_context(**context)

        logger.debug(
            "Resolved locator",
            plugin_id=descriptor.id,
            version=str(version),
            source=artifact.source,
        )
        return artifact

    def _base_values(self, descriptor: PluginDescriptor, version: ResolvedVersion) -> Dict[str, str]:
        values = dict(self.platform.template_vars())
        values["version"] = str(version)
        values["id"] = descriptor.id
        return values

    def _platform_values(self, locator: UrlLocator) -> Dict[str, str]:
        if not locator.platforms:
            return {}
        variant = locator.platforms.get(self.platform.key)
        if variant is None:
            raise UnsupportedPlatformError(self.platform.key, sorted(locator.platforms))
        return dict(variant)

    def _resolve_url(
        self,
        descriptor: PluginDescriptor,
        version: ResolvedVersion,
        locator: UrlLocator,
        values: Dict[str, str],
    ) -> ResolvedArtifact:
        values = {**values, **locator.vars, **self._platform_values(locator)}
        url = interpolate(locator.template, values)
        return self._artifact(descriptor, version, locator, values, url=url)

    def _resolve_github(
        self,
        descriptor: PluginDescriptor,
        version: ResolvedVersion,
        locator: GitHubLocator,
        values: Dict[str, str],
    ) -> ResolvedArtifact:
        values = {**values, "owner": locator.owner, "repo": locator.repo}
        if version.is_canary:
            tag = GitHubLocator.CANARY_TAG
        else:
            tag = interpolate(locator.tag_pattern, values)
        values["tag"] = tag
        asset = interpolate(locator.asset, values)
        url = GITHUB_DOWNLOAD_URL.format(
            owner=locator.owner, repo=locator.repo, tag=tag, asset=asset
        )
        return self._artifact(descriptor, version, locator, values, url=url)

    def _resolve_file(
        self,
        descriptor: PluginDescriptor,
        version: ResolvedVersion,
        locator: FileLocator,
        values: Dict[str, str],
    ) -> ResolvedArtifact:
        path = Path(interpolate(locator.path, values)).expanduser()
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return self._artifact(descriptor, version, locator, values, path=path)

    def _artifact(
        self,
        descriptor: PluginDescriptor,
        version: ResolvedVersion,
        locator: PluginLocator,
        values: Dict[str, str],
        url: Optional[str] = None,
        path: Optional[Path] = None,
    ) -> ResolvedArtifact:
        location = url if url is not None else str(path)
        aux_values = {**values, "url": location}

        checksum_url = None
        if descriptor.checksum_url:
            checksum_url = interpolate(descriptor.checksum_url, aux_values)

        signature = descriptor.signature_descriptor()
        if signature is not None:
            template = descriptor.signature_url or "{url}.sig"
            signature = replace(signature, signature_url=interpolate(template, aux_values))

        return ResolvedArtifact(
            plugin_id=descriptor.id,
            version=version,
            locator=locator,
            url=url,
            path=path,
            checksum=descriptor.expected_checksum(),
            checksum_url=checksum_url,
            signature=signature,
            unverified=descriptor.unverified,
        )
