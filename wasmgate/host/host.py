"""
Wasmgate Plugin Host

Loads cached plugin modules into sandboxed instances and invokes their
exported functions. Each handle owns its instance and memory; compiled
modules are shared per content digest.
"""

from __future__ import annotations

import asyncio
import functools
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional, Type, Union

import httpx
import structlog
from wasmtime import Config, Engine, Module, WasmtimeError

from wasmgate.cache.manager import Candidates, CacheManager
from wasmgate.cache.store import file_digest
from wasmgate.config import WasmgateConfig, get_config
from wasmgate.errors import InvalidModuleError, PluginLoadError, WasmgateError
from wasmgate.host.capabilities import HostCapabilities
from wasmgate.host.sandbox import PluginHandle
from wasmgate.types import CacheSlot, PluginDescriptor
from wasmgate.versions.spec import VersionSpec

logger = structlog.get_logger(__name__)


class PluginHost:
    """
    Sandbox host for WASM plugins.

    Features:
    - Shared engine with fuel metering and per-store memory limits
    - Compiled module cache keyed by module digest
    - Capability-gated host functions
    - Blocking calls run on a bounded thread pool for async callers

    Usage:
        host = PluginHost(config)
        handle = await host.load_plugin(descriptor, "^1", capabilities=HostCapabilities())
        result = await host.acall(handle, "parse_version", {"input": "1.2"})
    """

    def __init__(
        self,
        config: Optional[WasmgateConfig] = None,
        cache: Optional[CacheManager] = None,
        http_transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config or get_config()
        self.sandbox = self.config.sandbox
        self._cache = cache
        self._http_transport = http_transport
        self._http_client: Optional[httpx.Client] = None

        engine_config = Config()
        engine_config.consume_fuel = self.sandbox.fuel is not None
        self.engine = Engine(engine_config)

        self._modules: Dict[str, Module] = {}
        self._modules_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=self.sandbox.max_workers,
            thread_name_prefix="wasmgate-plugin",
        )

    @property
    def cache(self) -> CacheManager:
        if self._cache is None:
            self._cache = CacheManager(self.config)
        return self._cache

    def _get_http_client(self) -> httpx.Client:
        if self._http_client is None:
            self._http_client = httpx.Client(
                transport=self._http_transport,
                timeout=self.sandbox.http_timeout_seconds,
                follow_redirects=True,
                headers={"User-Agent": self.config.network.user_agent},
            )
        return self._http_client

    def _compile(self, slot: CacheSlot) -> Module:
        context = {"plugin_id": slot.plugin_id, "version": slot.version}
        with self._modules_lock:
            module = self._modules.get(slot.module_digest)
            if module is not None:
                return module

            try:
                digest = file_digest(slot.module_path)
            except OSError as e:
                raise PluginLoadError("Cannot read cached module", cause=e, **context)
            if digest != slot.module_digest:
                raise InvalidModuleError(
                    f"Cached module digest {digest} does not match recorded {slot.module_digest}",
                    **context,
                )

            try:
                module = Module.from_file(self.engine, str(slot.module_path))
            except (WasmtimeError, ValueError) as e:
                raise InvalidModuleError("Not a valid WebAssembly module", cause=e, **context)

            self._modules[slot.module_digest] = module
            logger.debug("Compiled plugin module", path=str(slot.module_path), **context)
            return module

    def load(
        self,
        slot: CacheSlot,
        capabilities: Optional[HostCapabilities] = None,
    ) -> PluginHandle:
        """
        Instantiate a cached plugin.

        Raises:
            InvalidModuleError: The module is corrupt or violates the ABI
            CapabilityDeniedError: The module imports an ungranted host function
        """
        capabilities = capabilities if capabilities is not None else HostCapabilities()
        if self.config.offline and capabilities.allowed_hosts:
            capabilities = HostCapabilities(
                log=capabilities.log,
                allowed_env_vars=list(capabilities.allowed_env_vars),
                virtual_paths=dict(capabilities.virtual_paths),
            )
        module = self._compile(slot)
        handle = PluginHandle.instantiate(
            self.engine,
            module,
            slot,
            capabilities,
            self.sandbox,
            self._get_http_client,
        )
        logger.info(
            "Plugin loaded",
            plugin_id=slot.plugin_id,
            version=slot.version,
            exports=handle.exports(),
            capabilities=sorted(c.value for c in capabilities.granted()),
        )
        return handle

    async def aload(
        self,
        slot: CacheSlot,
        capabilities: Optional[HostCapabilities] = None,
    ) -> PluginHandle:
        return await self._run(self.load, slot, capabilities)

    async def load_plugin(
        self,
        descriptor: Union[PluginDescriptor, Mapping[str, Any]],
        spec: Union[str, VersionSpec],
        candidates: Candidates = None,
        capabilities: Optional[HostCapabilities] = None,
    ) -> PluginHandle:
        """Acquire a plugin through the cache and load it."""
        slot = await self.cache.acquire(descriptor, spec, candidates=candidates)
        return await self.aload(slot, capabilities)

    def call(
        self,
        handle: PluginHandle,
        export: str,
        input: Any = None,
        output_type: Optional[Type[Any]] = None,
    ) -> Any:
        """Invoke an export synchronously."""
        try:
            return handle.call(export, input, output_type)
        except WasmgateError as e:
            logger.warning("Plugin call failed", plugin_id=handle.plugin_id, export=export, error=str(e))
            raise

    async def acall(
        self,
        handle: PluginHandle,
        export: str,
        input: Any = None,
        output_type: Optional[Type[Any]] = None,
    ) -> Any:
        """Invoke an export on the host's thread pool."""
        return await self._run(self.call, handle, export, input, output_type)

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(func, *args))

    def unload(self, handle: PluginHandle) -> None:
        handle.close()
        logger.debug("Plugin unloaded", plugin_id=handle.plugin_id, calls=handle.stats.calls)

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
        with self._modules_lock:
            self._modules.clear()

    async def aclose(self) -> None:
        self.close()
        if self._cache is not None:
            await self._cache.close()

    async def __aenter__(self) -> "PluginHost":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()
