"""
Wasmgate Cache Tests

Plugin acquisition end to end against a fake HTTP server: resolution,
verification, atomic publication, locking, offline mode and canaries.
"""

import asyncio
import time

import httpx
import pytest

from conftest import EMPTY_WASM, make_tar, make_zip, sha256_hex
from wasmgate.archive import ArchiveExtractor
from wasmgate.cache import CacheManager, CacheStore, SlotLock, SlotMetadata, slot_age
from wasmgate.cache.store import utcnow
from wasmgate.errors import (
    ChecksumMismatchError,
    LockTimeoutError,
    NetworkError,
    NoMatchingVersionError,
    OfflineCacheMissError,
    SignatureInvalidError,
    SignatureMissingError,
    UnsafeArchiveEntryError,
    UntrustedKeyError,
)
from wasmgate.security import SigningKey, TrustStore
from wasmgate.types import PluginDescriptor, SlotKey, locator_fingerprint, parse_locator

TEMPLATE = "https://plugins.test/demo/{version}/demo.wasm"
CANDIDATES = ["1.2.0", "1.2.5", "1.3.0", "2.0.0"]
MODULE_V125 = EMPTY_WASM + b"demo-1.2.5"


def url(version: str) -> str:
    return TEMPLATE.format(version=version)


def descriptor(data: bytes = MODULE_V125, **kwargs) -> PluginDescriptor:
    kwargs.setdefault("locator", TEMPLATE)
    if not kwargs.get("unverified") and "signature" not in kwargs and "checksum-url" not in kwargs:
        kwargs.setdefault("checksum", f"sha256:{sha256_hex(data)}")
    return PluginDescriptor(id="demo", **kwargs)


def slot_key(version: str, locator: str = TEMPLATE) -> SlotKey:
    return SlotKey("demo", version, locator_fingerprint(parse_locator(locator)))


def leftovers(config) -> list:
    """Entries in the plugin directory other than published slots and lock files."""
    plugin_dir = config.cache_dir / "demo"
    if not plugin_dir.is_dir():
        return []
    return [
        p.name for p in plugin_dir.iterdir()
        if p.name.startswith(".") and not p.name.endswith(".lock")
    ]


@pytest.fixture
def manager(config, server):
    return CacheManager(config, transport=server.transport)


@pytest.fixture
def signing_key():
    return SigningKey.generate(key_id="release")


# === Acquisition Tests ===


class TestAcquire:
    """Test the fetch, verify, publish path."""

    @pytest.mark.asyncio
    async def test_resolves_and_fetches(self, manager, server, config):
        server.add(url("1.2.5"), content=MODULE_V125)

        slot = await manager.acquire(descriptor(), "^1.2.0", candidates=CANDIDATES)

        assert slot.version == "1.2.5"
        assert slot.module_path.read_bytes() == MODULE_V125
        assert slot.digest == f"sha256:{sha256_hex(MODULE_V125)}"
        assert slot.path == config.cache_dir / "demo" / slot_key("1.2.5").dirname
        assert (slot.path / "metadata.json").is_file()
        assert server.count(url("1.2.5")) == 1
        await manager.close()

    @pytest.mark.asyncio
    async def test_warm_cache_makes_no_requests(self, manager, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        first = await manager.acquire(descriptor(), "^1.2.0", candidates=CANDIDATES)
        server.requests.clear()

        second = await manager.acquire(descriptor(), "^1.2.0", candidates=CANDIDATES)

        assert second.path == first.path
        assert server.requests == []
        assert manager.stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_mapping_descriptor(self, manager, server):
        server.add(url("1.3.0"), content=MODULE_V125)
        slot = await manager.acquire(
            {"id": "demo", "locator": TEMPLATE, "checksum": f"sha256:{sha256_hex(MODULE_V125)}",
             "version-aliases": {"stable": "~1.3"}},
            "stable",
            candidates=CANDIDATES,
        )
        assert slot.version == "1.3.0"

    @pytest.mark.asyncio
    async def test_exact_version_without_candidates(self, manager, server):
        server.add(url("2.0.0"), content=MODULE_V125)
        slot = await manager.acquire(descriptor(), "2.0.0")
        assert slot.version == "2.0.0"

    @pytest.mark.asyncio
    async def test_range_without_known_versions(self, manager, server):
        with pytest.raises(NoMatchingVersionError) as exc_info:
            await manager.acquire(descriptor(), "^1.2")
        assert exc_info.value.plugin_id == "demo"
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_checksum_mismatch_leaves_nothing(self, manager, server, config):
        server.add(url("1.2.5"), content=b"\x00asm\x01\x00\x00\x00tampered")

        with pytest.raises(ChecksumMismatchError) as exc_info:
            await manager.acquire(descriptor(), "1.2.5")

        assert exc_info.value.plugin_id == "demo"
        assert exc_info.value.version == "1.2.5"
        assert manager.list_slots("demo") == []
        assert leftovers(config) == []

    @pytest.mark.asyncio
    async def test_checksum_file(self, manager, server):
        digest = sha256_hex(MODULE_V125)
        server.add(url("1.2.5"), content=MODULE_V125)
        server.add(url("1.2.5") + ".sha256", content=f"{digest}  demo.wasm\n".encode())

        slot = await manager.acquire(descriptor(**{"checksum-url": "{url}.sha256"}), "1.2.5")
        assert slot.digest == f"sha256:{digest}"

    @pytest.mark.asyncio
    async def test_tar_archive(self, manager, server):
        archive = make_tar({"demo/demo.wasm": MODULE_V125, "demo/README": b"docs"})
        template = "https://plugins.test/demo/{version}/demo.tar.gz"
        server.add(template.format(version="1.0.0"), content=archive)

        slot = await manager.acquire(descriptor(archive, locator=template), "1.0.0")

        assert slot.module_path.name == "demo.wasm"
        assert slot.module_path.read_bytes() == MODULE_V125
        assert (slot.path / "demo" / "README").read_bytes() == b"docs"
        assert slot.digest == f"sha256:{sha256_hex(archive)}"

    @pytest.mark.asyncio
    async def test_unsafe_archive_is_not_published(self, manager, server, config):
        archive = make_zip({"demo.wasm": MODULE_V125, "../evil.txt": b"x"})
        template = "https://plugins.test/demo/{version}/demo.zip"
        server.add(template.format(version="1.0.0"), content=archive)

        with pytest.raises(UnsafeArchiveEntryError):
            await manager.acquire(descriptor(archive, locator=template), "1.0.0")

        assert manager.list_slots() == []
        assert leftovers(config) == []
        assert not (config.cache_dir / "demo" / "evil.txt").exists()

    @pytest.mark.asyncio
    async def test_file_locator(self, manager, server, temp_dir):
        (temp_dir / "demo-1.0.0.wasm").write_bytes(MODULE_V125)
        d = descriptor(locator=f"file://{temp_dir}/demo-{{version}}.wasm")

        slot = await manager.acquire(d, "1.0.0")

        assert slot.module_path.read_bytes() == MODULE_V125
        assert slot.source == str(temp_dir / "demo-1.0.0.wasm")
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_missing_local_file(self, manager, temp_dir):
        d = descriptor(locator=f"file://{temp_dir}/absent.wasm")
        with pytest.raises(NetworkError) as exc_info:
            await manager.acquire(d, "1.0.0")
        assert exc_info.value.status == 404


# === Network Failure Tests ===


class TestNetworkFailures:
    """Test retry classification during acquisition."""

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, manager, server):
        with pytest.raises(NetworkError) as exc_info:
            await manager.acquire(descriptor(), "1.2.5")
        assert exc_info.value.status == 404
        assert exc_info.value.plugin_id == "demo"
        assert server.count(url("1.2.5")) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_recovers(self, manager, server):
        server.add_sequence(url("1.2.5"), [
            httpx.Response(503),
            httpx.Response(200, content=MODULE_V125),
        ])
        slot = await manager.acquire(descriptor(), "1.2.5")
        assert slot.module_path.read_bytes() == MODULE_V125
        assert server.count(url("1.2.5")) == 2


# === Signature Tests ===


class TestSignedPlugins:
    """Test detached signatures fetched next to the artifact."""

    @pytest.fixture
    def signed(self, signing_key):
        return descriptor(signature="ed25519:release")

    def trusted(self, config, server, signing_key) -> CacheManager:
        store = TrustStore()
        store.add_trusted_key(signing_key.get_verifying_key())
        return CacheManager(config, transport=server.transport, trust_store=store)

    @pytest.mark.asyncio
    async def test_valid_signature(self, config, server, signing_key, signed):
        server.add(url("1.2.5"), content=MODULE_V125)
        server.add(url("1.2.5") + ".sig", content=signing_key.sign_b64(MODULE_V125).encode())

        async with self.trusted(config, server, signing_key) as manager:
            slot = await manager.acquire(signed, "1.2.5")

        metadata = CacheStore(config.cache_dir).read_metadata(slot.path)
        assert metadata.signature_key_id == "release"

    @pytest.mark.asyncio
    async def test_untrusted_key(self, manager, server, signing_key, signed):
        server.add(url("1.2.5"), content=MODULE_V125)
        server.add(url("1.2.5") + ".sig", content=signing_key.sign(MODULE_V125))

        with pytest.raises(UntrustedKeyError):
            await manager.acquire(signed, "1.2.5")
        assert manager.list_slots() == []

    @pytest.mark.asyncio
    async def test_invalid_signature(self, config, server, signing_key, signed):
        server.add(url("1.2.5"), content=MODULE_V125)
        server.add(url("1.2.5") + ".sig", content=signing_key.sign(b"something else"))

        async with self.trusted(config, server, signing_key) as manager:
            with pytest.raises(SignatureInvalidError):
                await manager.acquire(signed, "1.2.5")
            assert manager.list_slots() == []

    @pytest.mark.asyncio
    async def test_missing_signature(self, config, server, signing_key, signed):
        server.add(url("1.2.5"), content=MODULE_V125)

        async with self.trusted(config, server, signing_key) as manager:
            with pytest.raises(SignatureMissingError):
                await manager.acquire(signed, "1.2.5")

    @pytest.mark.asyncio
    async def test_malformed_signature(self, config, server, signing_key, signed):
        server.add(url("1.2.5"), content=MODULE_V125)
        server.add(url("1.2.5") + ".sig", content=b"not a signature")

        async with self.trusted(config, server, signing_key) as manager:
            with pytest.raises(SignatureInvalidError):
                await manager.acquire(signed, "1.2.5")


# === Concurrency Tests ===


class TestConcurrency:
    """Test locking and fetch sharing."""

    @pytest.mark.asyncio
    async def test_concurrent_acquires_fetch_once(self, manager, server):
        server.add(url("1.2.5"), content=MODULE_V125)

        slots = await asyncio.gather(*[
            manager.acquire(descriptor(), "^1.2.0", candidates=CANDIDATES) for _ in range(5)
        ])

        assert len({slot.path for slot in slots}) == 1
        assert server.count(url("1.2.5")) == 1
        assert manager.stats["fetches"] == 1

    @pytest.mark.asyncio
    async def test_managers_share_one_fetch(self, config, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        first = CacheManager(config, transport=server.transport)
        second = CacheManager(config, transport=server.transport)

        await asyncio.gather(
            first.acquire(descriptor(), "1.2.5"),
            second.acquire(descriptor(), "1.2.5"),
        )

        assert server.count(url("1.2.5")) == 1

    @pytest.mark.asyncio
    async def test_lock_timeout_then_success(self, manager, server, config):
        server.add(url("1.2.5"), content=MODULE_V125)
        key = slot_key("1.2.5")
        holder = SlotLock(manager.store.lock_path(key)).try_acquire()
        assert holder is not None

        with pytest.raises(LockTimeoutError) as exc_info:
            await manager.acquire(descriptor(), "1.2.5", timeout=0.2)
        assert exc_info.value.plugin_id == "demo"
        assert server.requests == []

        holder.release()
        slot = await manager.acquire(descriptor(), "1.2.5", timeout=0.2)
        assert slot.version == "1.2.5"

    @pytest.mark.asyncio
    async def test_cancelled_during_fetch(self, config):
        delay = [10.0]

        async def slow(request):
            await asyncio.sleep(delay[0])
            return httpx.Response(200, content=MODULE_V125)

        async with CacheManager(config, transport=httpx.MockTransport(slow)) as manager:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(manager.acquire(descriptor(), "1.2.5"), timeout=0.1)

            assert leftovers(config) == []
            token = SlotLock(manager.store.lock_path(slot_key("1.2.5"))).try_acquire()
            assert token is not None
            token.release()

            delay[0] = 0.0
            slot = await manager.acquire(descriptor(), "1.2.5", timeout=0.5)
            assert slot.module_path.read_bytes() == MODULE_V125

    @pytest.mark.asyncio
    async def test_cancelled_during_extraction(self, config, server):
        class SlowExtractor(ArchiveExtractor):
            def extract(self, *args, **kwargs):
                time.sleep(0.3)
                return super().extract(*args, **kwargs)

        server.add(url("1.2.5"), content=MODULE_V125)
        slow = CacheManager(config, transport=server.transport, extractor=SlowExtractor())
        async with slow:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(slow.acquire(descriptor(), "1.2.5"), timeout=0.1)

        assert leftovers(config) == []
        assert slow.list_slots() == []
        token = SlotLock(slow.store.lock_path(slot_key("1.2.5"))).try_acquire()
        assert token is not None
        token.release()

        async with CacheManager(config, transport=server.transport) as manager:
            slot = await manager.acquire(descriptor(), "1.2.5", timeout=0.5)
        assert slot.module_path.read_bytes() == MODULE_V125


# === Offline Tests ===


class TestOffline:
    """Test offline mode."""

    @pytest.mark.asyncio
    async def test_offline_miss(self, config, server):
        offline = config.model_copy(update={"offline": True})
        async with CacheManager(offline, transport=server.transport) as manager:
            with pytest.raises(OfflineCacheMissError) as exc_info:
                await manager.acquire(descriptor(), "1.2.5")
        assert exc_info.value.plugin_id == "demo"
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_offline_hit(self, config, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        async with CacheManager(config, transport=server.transport) as manager:
            cached = await manager.acquire(descriptor(), "1.2.5")
        server.requests.clear()

        offline = config.model_copy(update={"offline": True})
        async with CacheManager(offline, transport=server.transport) as manager:
            slot = await manager.acquire(descriptor(), "^1.2")

        assert slot.path == cached.path
        assert server.requests == []

    @pytest.mark.asyncio
    async def test_offline_stale_slot_is_used(self, config, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        async with CacheManager(config, transport=server.transport) as manager:
            await manager.acquire(descriptor(), "1.2.5")

        offline = config.model_copy(update={"offline": True, "slot_max_age_seconds": 0})
        async with CacheManager(offline, transport=server.transport) as manager:
            slot = await manager.acquire(descriptor(), "1.2.5")
        assert slot.version == "1.2.5"

    @pytest.mark.asyncio
    async def test_offline_changed_checksum_is_a_miss(self, config, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        async with CacheManager(config, transport=server.transport) as manager:
            await manager.acquire(descriptor(), "1.2.5")

        offline = config.model_copy(update={"offline": True})
        async with CacheManager(offline, transport=server.transport) as manager:
            with pytest.raises(OfflineCacheMissError):
                await manager.acquire(descriptor(EMPTY_WASM + b"demo-rebuilt"), "1.2.5")


# === Freshness Tests ===


class TestFreshness:
    """Test canaries, forced refreshes and expiry."""

    @pytest.mark.asyncio
    async def test_canary_unchanged_keeps_slot(self, manager, server):
        canary_url = url("canary")
        server.add(canary_url, content=MODULE_V125)
        d = descriptor(unverified=True)

        first = await manager.acquire(d, "canary")
        second = await manager.acquire(d, "canary")

        assert first.is_canary
        assert server.count(canary_url) == 2
        assert second.path == first.path
        assert second.digest == first.digest
        assert second.fetched_at >= first.fetched_at

    @pytest.mark.asyncio
    async def test_canary_changed_replaces_slot(self, manager, server, config):
        canary_url = url("canary")
        updated = EMPTY_WASM + b"demo-canary-2"
        server.add(canary_url, content=MODULE_V125)
        d = descriptor(unverified=True)

        first = await manager.acquire(d, "canary")
        server.add(canary_url, content=updated)
        second = await manager.acquire(d, "canary")

        assert second.digest != first.digest
        assert second.module_path.read_bytes() == updated
        assert leftovers(config) == []

    @pytest.mark.asyncio
    async def test_force_refresh(self, manager, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        await manager.acquire(descriptor(), "1.2.5")
        await manager.acquire(descriptor(), "1.2.5", force_refresh=True)
        assert server.count(url("1.2.5")) == 2

    @pytest.mark.asyncio
    async def test_expired_slot_is_refetched(self, config, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        expiring = config.model_copy(update={"slot_max_age_seconds": 0})
        async with CacheManager(expiring, transport=server.transport) as manager:
            first = await manager.acquire(descriptor(), "1.2.5")
            await asyncio.sleep(0.01)
            second = await manager.acquire(descriptor(), "1.2.5")
        assert server.count(url("1.2.5")) == 2
        assert second.fetched_at > first.fetched_at

    @pytest.mark.asyncio
    async def test_changed_checksum_refetches(self, manager, server, config):
        old = EMPTY_WASM + b"old"
        new = EMPTY_WASM + b"new"
        server.add(url("1.0.0"), content=old)
        first = await manager.acquire(descriptor(old), "1.0.0")

        server.add(url("1.0.0"), content=new)
        second = await manager.acquire(descriptor(new), "1.0.0")

        assert second.path == first.path
        assert second.digest == f"sha256:{sha256_hex(new)}"
        assert second.module_path.read_bytes() == new
        assert server.count(url("1.0.0")) == 2
        assert leftovers(config) == []

    @pytest.mark.asyncio
    async def test_changed_checksum_with_stale_upstream_fails(self, manager, server):
        server.add(url("1.0.0"), content=MODULE_V125)
        await manager.acquire(descriptor(), "1.0.0")

        with pytest.raises(ChecksumMismatchError):
            await manager.acquire(descriptor(EMPTY_WASM + b"rebuilt"), "1.0.0")
        assert server.count(url("1.0.0")) == 2


# === GitHub Tests ===


class TestGitHubAcquire:
    """Test acquisition from GitHub releases."""

    TAGS_URL = "https://api.github.com/repos/acme/demo/tags?per_page=100&page=1"

    @pytest.mark.asyncio
    async def test_latest_release(self, config, server):
        server.add(self.TAGS_URL, json=[{"name": "v1.0.0"}, {"name": "v1.1.0"}, {"name": "v2.0.0-rc.1"}])
        asset = "https://github.com/acme/demo/releases/download/v1.1.0/demo.wasm"
        server.add(asset, content=MODULE_V125)
        d = PluginDescriptor(id="demo", locator="github://acme/demo", unverified=True)

        async with CacheManager(config, transport=server.transport) as manager:
            slot = await manager.acquire(d, "latest")
        assert slot.version == "1.1.0"

        async with CacheManager(config, transport=server.transport) as manager:
            again = await manager.acquire(d, "latest")
        assert again.path == slot.path
        assert server.count(self.TAGS_URL) == 1
        assert server.count(asset) == 1

    @pytest.mark.asyncio
    async def test_offline_resolves_installed_versions(self, config, server):
        server.add("https://github.com/acme/demo/releases/download/v1.0.0/demo.wasm", content=MODULE_V125)
        d = PluginDescriptor(id="demo", locator="github://acme/demo", unverified=True)
        async with CacheManager(config, transport=server.transport) as manager:
            await manager.acquire(d, "1.0.0")

        offline = config.model_copy(update={"offline": True})
        async with CacheManager(offline, transport=server.transport) as manager:
            slot = await manager.acquire(d, "^1")
        assert slot.version == "1.0.0"


# === Maintenance Tests ===


class TestMaintenance:
    """Test listing and cleaning the cache."""

    @pytest.mark.asyncio
    async def test_list_and_clean(self, manager, server):
        for version in ("1.2.0", "1.3.0"):
            server.add(url(version), content=MODULE_V125)
            await manager.acquire(descriptor(), version)

        assert [s.version for s in manager.list_slots("demo")] == ["1.2.0", "1.3.0"]
        assert await manager.clean(max_age_seconds=3600) == []

        removed = await manager.clean()
        assert sorted(k.version for k in removed) == ["1.2.0", "1.3.0"]
        assert manager.list_slots() == []

    @pytest.mark.asyncio
    async def test_clean_skips_locked_slot(self, manager, server):
        server.add(url("1.2.5"), content=MODULE_V125)
        slot = await manager.acquire(descriptor(), "1.2.5")
        holder = SlotLock(manager.store.lock_path(slot.key)).try_acquire()
        try:
            assert await manager.clean() == []
        finally:
            holder.release()
        assert len(await manager.clean()) == 1

    @pytest.mark.asyncio
    async def test_installed_versions(self, manager, server):
        server.add(url("1.2.0"), content=MODULE_V125)
        await manager.acquire(descriptor(), "1.2.0")
        assert manager.installed_versions(descriptor()).labels() == ["1.2.0"]
        other = descriptor(locator="https://mirror.test/{version}/demo.wasm")
        assert manager.installed_versions(other).labels() == []


# === Store and Lock Tests ===


class TestCacheStore:
    """Test slot publication on disk."""

    def metadata(self, key: SlotKey) -> SlotMetadata:
        return SlotMetadata(
            plugin_id=key.plugin_id,
            version=key.version,
            fingerprint=key.fingerprint,
            locator="file://demo.wasm",
            source="demo.wasm",
            digest=f"sha256:{sha256_hex(MODULE_V125)}",
            module="plugin.wasm",
            module_digest=f"sha256:{sha256_hex(MODULE_V125)}",
            fetched_at=utcnow(),
        )

    def staged(self, store: CacheStore, key: SlotKey, content: bytes):
        staging = store.create_temp_dir(key)
        (staging / "plugin.wasm").write_bytes(content)
        return staging

    def test_publish_replace_remove(self, temp_dir):
        store = CacheStore(temp_dir)
        key = SlotKey("demo", "1.0.0", "0123456789abcdef")
        assert store.read_slot(key) is None

        slot = store.publish(key, self.staged(store, key, MODULE_V125), self.metadata(key))
        assert store.read_slot(key) == slot

        replacement = store.publish(key, self.staged(store, key, b"new"), self.metadata(key))
        assert replacement.module_path.read_bytes() == b"new"
        assert [p.name for p in (temp_dir / "demo").iterdir()] == [key.dirname]

        assert store.remove(key)
        assert not store.remove(key)
        assert store.list_slots() == []

    def test_touch_updates_fetched_at(self, temp_dir):
        store = CacheStore(temp_dir)
        key = SlotKey("demo", "1.0.0", "0123456789abcdef")
        slot = store.publish(key, self.staged(store, key, MODULE_V125), self.metadata(key))

        touched = store.touch(slot)

        assert touched.fetched_at >= slot.fetched_at
        assert store.read_slot(key).fetched_at == touched.fetched_at
        assert slot_age(touched) >= 0

    def test_incomplete_slot_is_invisible(self, temp_dir):
        store = CacheStore(temp_dir)
        key = SlotKey("demo", "1.0.0", "0123456789abcdef")
        store.slot_path(key).mkdir(parents=True)
        (store.slot_path(key) / "plugin.wasm").write_bytes(MODULE_V125)
        assert store.read_slot(key) is None
        assert store.list_slots() == []

    def test_sweep_staging(self, temp_dir):
        store = CacheStore(temp_dir)
        key = SlotKey("demo", "1.0.0", "0123456789abcdef")
        store.create_temp_dir(key)
        assert store.sweep_staging(max_age_seconds=3600) == 0
        assert store.sweep_staging(max_age_seconds=-1) == 1


class TestSlotLock:
    """Test the cross-process slot lock."""

    def test_exclusive(self, temp_dir):
        path = temp_dir / "demo" / ".slot.lock"
        first = SlotLock(path).try_acquire()
        assert first is not None and first.held
        assert SlotLock(path).try_acquire() is None

        first.release()
        first.release()
        assert not first.held

        second = SlotLock(path).try_acquire()
        assert second is not None
        second.release()

    @pytest.mark.asyncio
    async def test_context_manager_and_timeout(self, temp_dir):
        path = temp_dir / ".slot.lock"
        async with SlotLock(path) as token:
            assert token.held
            with pytest.raises(LockTimeoutError):
                await SlotLock(path, timeout=0.05, poll_interval=0.01).acquire()
        assert not token.held
