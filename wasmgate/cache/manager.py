"""
Wasmgate Cache Manager

Acquires plugins: resolves the version, then either returns a valid cached
slot or fetches, verifies, extracts and atomically publishes a new one.

Concurrency model:
- Readers of a published slot take no lock.
- Writers serialize per slot, first on an in-process asyncio.Lock and then
  on a cross-process file lock, and re-check the slot after locking so
  concurrent acquirers share one fetch.
- Blocking filesystem work runs in an executor and is shielded from
  cancellation, so a lock is never released while a slot is half written.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import time
import weakref
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar, Union

import httpx
import structlog

from wasmgate.archive import ArchiveExtractor
from wasmgate.cache.lock import LockToken, SlotLock
from wasmgate.cache.store import CacheStore, SlotMetadata, file_digest, utcnow
from wasmgate.config import WasmgateConfig, get_config
from wasmgate.errors import (
    AliasCycleError,
    LockTimeoutError,
    OfflineCacheMissError,
    SignatureInvalidError,
    WasmgateError,
)
from wasmgate.locators.github import GitHubVersionSource
from wasmgate.locators.resolver import LocatorResolver
from wasmgate.net.fetcher import HttpFetcher, read_local
from wasmgate.security.signing import TrustStore, decode_signature
from wasmgate.security.verifier import ArtifactVerifier, parse_checksum_file
from wasmgate.types import (
    CacheSlot,
    Checksum,
    GitHubLocator,
    PluginDescriptor,
    PluginLocator,
    ResolvedArtifact,
    SlotKey,
    locator_fingerprint,
)
from wasmgate.versions.resolver import VersionResolver
from wasmgate.versions.semver import SemanticVersion
from wasmgate.versions.spec import (
    Alias,
    Canary,
    Exact,
    ResolvedVersion,
    VersionCandidateList,
    VersionSpec,
    parse_version_spec,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Candidates = Union[VersionCandidateList, Sequence[Union[str, SemanticVersion]], None]


def _is_remote(location: str) -> bool:
    return location.startswith(("https://", "http://"))


class CacheManager:
    """
    Plugin acquisition with a shared on-disk cache.

    Usage:
        async with CacheManager(config) as manager:
            slot = await manager.acquire(descriptor, "^1.2")
            print(slot.module_path)
    """

    def __init__(
        self,
        config: Optional[WasmgateConfig] = None,
        fetcher: Optional[HttpFetcher] = None,
        trust_store: Optional[TrustStore] = None,
        verifier: Optional[ArtifactVerifier] = None,
        extractor: Optional[ArchiveExtractor] = None,
        locator_resolver: Optional[LocatorResolver] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_dir: Optional[Path] = None,
    ):
        self.config = config or get_config()
        self.store = CacheStore(self.config.cache_dir)
        self.fetcher = fetcher or HttpFetcher(
            self.config.network,
            offline=self.config.offline,
            transport=transport,
        )
        if trust_store is None:
            if self.config.trusted_keys_dir is not None:
                trust_store = TrustStore.from_directory(self.config.trusted_keys_dir)
            else:
                trust_store = TrustStore()
        self.trust_store = trust_store
        self.verifier = verifier or ArtifactVerifier(trust_store)
        self.extractor = extractor or ArchiveExtractor()
        self.locator_resolver = locator_resolver or LocatorResolver(
            platform=self.config.platform(),
            base_dir=base_dir,
        )
        self.github = GitHubVersionSource(self.fetcher, self.config.cache_dir, self.config.network)

        self._key_locks: "weakref.WeakValueDictionary[SlotKey, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._held: Dict[SlotKey, asyncio.Lock] = {}
        self._stats = {"hits": 0, "fetches": 0, "shared": 0}

    async def __aenter__(self) -> "CacheManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.fetcher.aclose()

    @property
    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    # === Version resolution ===

    def installed_versions(self, descriptor: PluginDescriptor) -> VersionCandidateList:
        """Versions already published in the cache for this descriptor's locator."""
        fingerprint = locator_fingerprint(descriptor.parsed_locator())
        return VersionCandidateList.from_strings(
            slot.version
            for slot in self.store.list_slots(descriptor.id)
            if slot.key.fingerprint == fingerprint and not slot.is_canary
        )

    def _dereference(self, spec: VersionSpec, aliases: Mapping[str, str]) -> VersionSpec:
        chain: List[str] = []
        while isinstance(spec, Alias) and spec.name in aliases:
            if spec.name in chain:
                raise AliasCycleError(chain + [spec.name])
            chain.append(spec.name)
            spec = parse_version_spec(aliases[spec.name])
        return spec

    async def resolve_version(
        self,
        descriptor: PluginDescriptor,
        spec: Union[str, VersionSpec],
        candidates: Candidates = None,
    ) -> ResolvedVersion:
        """
        Resolve a spec for a descriptor.

        With explicit candidates they are authoritative. Without them, an
        exact version is taken verbatim; otherwise GitHub locators list their
        release tags and other locators fall back to installed versions.
        """
        parsed = parse_version_spec(spec)
        aliases = descriptor.version_aliases
        context = {"plugin_id": descriptor.id, "locator": descriptor.locator}

        try:
            if candidates is None:
                target = self._dereference(parsed, aliases)
                if isinstance(target, Canary):
                    return ResolvedVersion.canary()
                if isinstance(target, Exact):
                    return ResolvedVersion.from_semver(target.version)
                candidates = await self._discover_candidates(descriptor)
            return VersionResolver(candidates, aliases).resolve(parsed)
        except WasmgateError as e:
            raise e.with_context(**context)

    async def _discover_candidates(self, descriptor: PluginDescriptor) -> VersionCandidateList:
        if isinstance(descriptor.parsed_locator(), GitHubLocator):
            try:
                return await self.github.list_versions(descriptor)
            except OfflineCacheMissError:
                installed = self.installed_versions(descriptor)
                if not len(installed):
                    raise
                logger.warning("Offline, resolving against installed versions", plugin_id=descriptor.id)
                return installed
        return self.installed_versions(descriptor)

    # === Acquisition ===

    def _matches_checksum(self, slot: CacheSlot, descriptor: PluginDescriptor) -> bool:
        """A pinned checksum that changed since the slot was published makes it stale."""
        expected = descriptor.expected_checksum()
        return expected is None or slot.digest == str(expected)

    def _is_fresh(self, slot: CacheSlot, descriptor: PluginDescriptor, refresh: bool) -> bool:
        if refresh or slot.is_canary or not self._matches_checksum(slot, descriptor):
            return False
        max_age = self.config.slot_max_age_seconds
        return max_age is None or slot_age(slot) <= max_age

    async def acquire(
        self,
        descriptor: Union[PluginDescriptor, Mapping[str, Any]],
        spec: Union[str, VersionSpec],
        candidates: Candidates = None,
        timeout: Optional[float] = None,
        force_refresh: Optional[bool] = None,
    ) -> CacheSlot:
        """
        Return a verified, extracted slot for the plugin version.

        Raises:
            VersionResolutionError: The spec cannot be resolved
            LocatorError: The locator cannot produce an artifact
            NetworkError: The fetch failed
            VerificationError: Checksum or signature checks failed
            ExtractError: The artifact could not be unpacked safely
            LockTimeoutError: The slot lock was not acquired in time
            OfflineCacheMissError: Offline with nothing usable cached
        """
        if not isinstance(descriptor, PluginDescriptor):
            descriptor = PluginDescriptor.model_validate(descriptor)

        started = utcnow()
        version = await self.resolve_version(descriptor, spec, candidates)
        locator = descriptor.parsed_locator()
        key = SlotKey(descriptor.id, str(version), locator_fingerprint(locator))
        refresh = self.config.force_refresh if force_refresh is None else force_refresh
        log = logger.bind(plugin_id=descriptor.id, version=str(version))

        slot = self.store.read_slot(key)
        if slot is not None and self._is_fresh(slot, descriptor, refresh):
            self._stats["hits"] += 1
            log.debug("Cache hit", path=str(slot.path))
            return slot

        if self.config.offline:
            if slot is not None and self._matches_checksum(slot, descriptor):
                log.warning("Offline, using cached slot without refresh", fetched_at=str(slot.fetched_at))
                self._stats["hits"] += 1
                return slot
            raise OfflineCacheMissError(
                "Offline mode and plugin is not cached",
                plugin_id=descriptor.id,
                version=str(version),
                locator=str(locator),
            )

        timeout = self.config.lock.timeout_seconds if timeout is None else timeout
        token = await self._lock(key, timeout)
        try:
            slot = self.store.read_slot(key)
            if (
                slot is not None
                and self._matches_checksum(slot, descriptor)
                and (self._is_fresh(slot, descriptor, refresh) or slot.fetched_at >= started)
            ):
                self._stats["shared"] += 1
                log.debug("Slot published while waiting", path=str(slot.path))
                return slot
            return await self._fetch_and_publish(descriptor, version, locator, key, slot)
        finally:
            token.release()
            self._key_locks_release(key)

    async def _lock(self, key: SlotKey, timeout: float) -> LockToken:
        """Take the in-process then the cross-process lock within one deadline."""
        deadline = time.monotonic() + timeout
        key_lock = self._key_locks.get(key)
        if key_lock is None:
            key_lock = asyncio.Lock()
            self._key_locks[key] = key_lock

        if not key_lock.locked():
            await key_lock.acquire()
        else:
            try:
                await asyncio.wait_for(key_lock.acquire(), timeout=max(timeout, 0.0))
            except asyncio.TimeoutError:
                raise LockTimeoutError(
                    str(self.store.lock_path(key)), timeout, plugin_id=key.plugin_id
                )
        self._held[key] = key_lock

        try:
            slot_lock = SlotLock(
                self.store.lock_path(key),
                timeout=timeout,
                poll_interval=self.config.lock.poll_interval_seconds,
            )
            return await slot_lock.acquire(timeout=max(deadline - time.monotonic(), 0.0))
        except BaseException as e:
            self._key_locks_release(key)
            if isinstance(e, LockTimeoutError):
                raise e.with_context(plugin_id=key.plugin_id, version=key.version)
            raise

    def _key_locks_release(self, key: SlotKey) -> None:
        key_lock = self._held.pop(key, None)
        if key_lock is not None and key_lock.locked():
            key_lock.release()

    async def _run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, functools.partial(func, *args))
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            # Finish the filesystem step before the lock is released; the
            # cancellation is re-raised regardless of its outcome.
            with contextlib.suppress(Exception):
                await future
            raise

    async def _read_location(self, location: str) -> Optional[bytes]:
        if _is_remote(location):
            return await self.fetcher.fetch_optional(location)
        path = Path(location)
        if not path.is_file():
            return None
        return await read_local(path)

    async def _expected_checksum(self, artifact: ResolvedArtifact) -> Optional[Checksum]:
        if artifact.checksum is not None or not artifact.checksum_url:
            return None
        if _is_remote(artifact.checksum_url):
            text = await self.fetcher.fetch_text(artifact.checksum_url)
        else:
            text = (await read_local(Path(artifact.checksum_url))).decode("utf-8")
        return parse_checksum_file(text, artifact.filename)

    async def _detached_signature(self, artifact: ResolvedArtifact) -> Optional[bytes]:
        descriptor = artifact.signature
        if descriptor is None or descriptor.signature is not None or not descriptor.signature_url:
            return None
        raw = await self._read_location(descriptor.signature_url)
        if raw is None:
            return None
        try:
            return decode_signature(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise SignatureInvalidError(f"Malformed signature at {descriptor.signature_url}", cause=e)

    async def _fetch_and_publish(
        self,
        descriptor: PluginDescriptor,
        version: ResolvedVersion,
        locator: PluginLocator,
        key: SlotKey,
        existing: Optional[CacheSlot],
    ) -> CacheSlot:
        context = {"plugin_id": descriptor.id, "version": str(version), "locator": str(locator)}
        log = logger.bind(plugin_id=descriptor.id, version=str(version))

        try:
            artifact = self.locator_resolver.resolve(descriptor, version, locator)
            log.info("Fetching plugin", source=artifact.source)
            data = await self.fetcher.fetch_artifact(artifact)
            self._stats["fetches"] += 1
            checksum = await self._expected_checksum(artifact)
            signature = await self._detached_signature(artifact)
            report = self.verifier.verify(data, artifact, checksum=checksum, signature=signature)
        except WasmgateError as e:
            raise e.with_context(**context)

        if existing is not None and existing.digest == report.digest:
            log.info("Artifact unchanged, keeping cached slot", digest=report.digest)
            return await self._run_blocking(self.store.touch, existing)

        staging = self.store.create_temp_dir(key)
        try:
            result = await self._run_blocking(
                self.extractor.extract, data, staging, descriptor.id, artifact.filename
            )
            module_digest = await self._run_blocking(file_digest, staging / result.module)
            metadata = SlotMetadata(
                plugin_id=key.plugin_id,
                version=key.version,
                fingerprint=key.fingerprint,
                locator=locator.canonical(),
                source=artifact.source,
                digest=report.digest,
                module=result.module,
                module_digest=module_digest,
                fetched_at=utcnow(),
                format=result.format,
                signature_key_id=report.signature_key_id,
                unverified=report.unverified,
            )
            slot = await self._run_blocking(self.store.publish, key, staging, metadata)
        except WasmgateError as e:
            self.store.discard(staging)
            raise e.with_context(**context)
        except BaseException:
            self.store.discard(staging)
            raise

        log.info("Plugin cached", path=str(slot.path), digest=slot.digest)
        return slot

    # === Maintenance ===

    def list_slots(self, plugin_id: Optional[str] = None) -> List[CacheSlot]:
        return self.store.list_slots(plugin_id)

    async def clean(
        self,
        max_age_seconds: Optional[float] = None,
        plugin_id: Optional[str] = None,
    ) -> List[SlotKey]:
        """
        Remove published slots older than max_age_seconds (all when None).
        Slots currently locked by a writer are skipped.
        """
        now = utcnow()
        removed = []
        for slot in self.store.list_slots(plugin_id):
            if max_age_seconds is not None and slot_age(slot, now) <= max_age_seconds:
                continue
            token = SlotLock(self.store.lock_path(slot.key)).try_acquire()
            if token is None:
                logger.debug("Skipping locked slot", slot=str(slot.key))
                continue
            try:
                if await self._run_blocking(self.store.remove, slot.key):
                    removed.append(slot.key)
            finally:
                token.release()

        swept = await self._run_blocking(self.store.sweep_staging)
        logger.info("Cache cleaned", removed=len(removed), swept=swept)
        return removed


def slot_age(slot: CacheSlot, now: Optional[datetime] = None) -> float:
    """Seconds since the slot was fetched."""
    return ((now or utcnow()) - slot.fetched_at).total_seconds()
