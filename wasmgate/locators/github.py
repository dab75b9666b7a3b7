"""
Wasmgate GitHub Version Source

Lists the released versions of a GitHub-hosted plugin from the repository's
tags, memoized on disk beside the plugin's cache slots.
"""

from __future__ import annotations

import os
import re
import time
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, ValidationError

from wasmgate.config import NetworkConfig
from wasmgate.errors import NetworkError, OfflineCacheMissError
from wasmgate.net.fetcher import HttpFetcher
from wasmgate.types import GitHubLocator, PluginDescriptor, locator_fingerprint
from wasmgate.versions.spec import VersionCandidateList

logger = structlog.get_logger(__name__)

GITHUB_API_URL = "https://api.github.com"
PER_PAGE = 100
MAX_PAGES = 10


class VersionsMemo(BaseModel):
    """On-disk record of a remote version listing."""
    locator: str
    fetched_at: float
    versions: List[str]


def tag_regex(tag_pattern: str, locator: GitHubLocator) -> re.Pattern:
    """Turn a tag pattern such as "v{version}" into a regex capturing the version."""
    pattern = tag_pattern.replace("{owner}", locator.owner).replace("{repo}", locator.repo)
    head, sep, tail = pattern.partition("{version}")
    if not sep:
        return re.compile(r'^(?P<version>' + re.escape(pattern) + r')$')
    return re.compile("^" + re.escape(head) + r'(?P<version>.+?)' + re.escape(tail) + "$")


def versions_from_tags(tags: List[str], locator: GitHubLocator) -> VersionCandidateList:
    regex = tag_regex(locator.tag_pattern, locator)
    matched = []
    for tag in tags:
        m = regex.match(tag)
        if m:
            matched.append(m.group("version"))
    return VersionCandidateList.from_strings(matched)


class GitHubVersionSource:
    """
    Remote version listing for github:// locators.

    Features:
    - Paginated tags API, authenticated with GITHUB_TOKEN when available
    - Disk memo with a TTL, so warm runs need no network
    - Offline mode serves the memo regardless of age
    """

    def __init__(
        self,
        fetcher: HttpFetcher,
        cache_root: Path,
        config: Optional[NetworkConfig] = None,
        api_url: str = GITHUB_API_URL,
    ):
        self.fetcher = fetcher
        self.cache_root = Path(cache_root)
        self.config = config or fetcher.config
        self.api_url = api_url.rstrip("/")

    def memo_path(self, descriptor: PluginDescriptor, locator: GitHubLocator) -> Path:
        return self.cache_root / descriptor.id / f"versions-{locator_fingerprint(locator)}.json"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        token = self.config.github_token or os.environ.get("GITHUB_TOKEN")
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def list_versions(
        self,
        descriptor: PluginDescriptor,
        refresh: bool = False,
    ) -> VersionCandidateList:
        """
        Known versions for a descriptor with a GitHub locator.

        Raises:
            OfflineCacheMissError: Offline with no memo on disk
            NetworkError: The tags API failed permanently
        """
        locator = descriptor.parsed_locator()
        if not isinstance(locator, GitHubLocator):
            return VersionCandidateList()

        path = self.memo_path(descriptor, locator)
        memo = self._read_memo(path, locator)

        if self.fetcher.offline:
            if memo is None:
                raise OfflineCacheMissError(
                    "Offline mode and no cached version list",
                    plugin_id=descriptor.id,
                    locator=str(locator),
                )
            return VersionCandidateList.from_strings(memo.versions)

        age = time.time() - memo.fetched_at if memo is not None else None
        if memo is not None and not refresh and age < self.config.versions_ttl_seconds:
            logger.debug("Using cached version list", plugin_id=descriptor.id, age=round(age))
            return VersionCandidateList.from_strings(memo.versions)

        try:
            tags = await self._fetch_tags(locator)
        except NetworkError as e:
            if memo is not None:
                logger.warning(
                    "Version list fetch failed, using stale cache",
                    plugin_id=descriptor.id,
                    error=str(e),
                )
                return VersionCandidateList.from_strings(memo.versions)
            raise e.with_context(plugin_id=descriptor.id, locator=str(locator))

        candidates = versions_from_tags(tags, locator)
        self._write_memo(path, VersionsMemo(
            locator=locator.canonical(),
            fetched_at=time.time(),
            versions=candidates.labels(),
        ))
        logger.info("Fetched version list", plugin_id=descriptor.id, count=len(candidates))
        return candidates

    async def _fetch_tags(self, locator: GitHubLocator) -> List[str]:
        tags: List[str] = []
        for page in range(1, MAX_PAGES + 1):
            url = (
                f"{self.api_url}/repos/{locator.owner}/{locator.repo}/tags"
                f"?per_page={PER_PAGE}&page={page}"
            )
            response = await self.fetcher.get(url, headers=self._headers())
            try:
                entries = response.json()
            except ValueError as e:
                raise NetworkError("Invalid JSON from tags API", url=url, cause=e)
            if not isinstance(entries, list):
                raise NetworkError("Unexpected tags API response", url=url)
            tags.extend(entry["name"] for entry in entries if isinstance(entry, dict) and "name" in entry)
            if len(entries) < PER_PAGE:
                break
        return tags

    def _read_memo(self, path: Path, locator: GitHubLocator) -> Optional[VersionsMemo]:
        try:
            memo = VersionsMemo.model_validate_json(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring unreadable version cache", path=str(path), error=str(e))
            return None
        if memo.locator != locator.canonical():
            return None
        return memo

    def _write_memo(self, path: Path, memo: VersionsMemo) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}")
        tmp.write_text(memo.model_dump_json())
        os.replace(tmp, path)
