"""
Wasmgate Plugin Sandbox

One isolated wasmtime instance per handle, and the data exchange ABI.

Guest module contract:
- exports `memory` and `alloc(len: i32) -> i32`
- plugin functions have the signature `(ptr: i32, len: i32) -> i64`; input
  is a JSON document written at ptr, the result packs the output location
  as `(out_ptr << 32) | out_len`

Host functions (module "env"), linked only when their capability is granted:
- host_log(level: i32, ptr: i32, len: i32)
- get_env_var(ptr: i32, len: i32) -> i64
- read_file(ptr: i32, len: i32) -> i64
- http_fetch(ptr: i32, len: i32) -> i64
Host functions returning i64 use the same packing, or -1 on denial/failure.
"""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type

import httpx
import structlog
from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python
from wasmtime import (
    Caller,
    Engine,
    Func,
    FuncType,
    Linker,
    Memory,
    Module,
    Store,
    Trap,
    ValType,
    WasmtimeError,
)

from wasmgate.config import SandboxConfig
from wasmgate.errors import (
    CapabilityDeniedError,
    ExportNotFoundError,
    HandleBusyError,
    InvalidModuleError,
    PluginTrapError,
    SerializationError,
)
from wasmgate.host.capabilities import HOST_FUNCTIONS, HOST_MODULE, HostCapabilities
from wasmgate.types import CacheSlot

logger = structlog.get_logger(__name__)

MEMORY_EXPORT = "memory"
ALLOC_EXPORT = "alloc"
RESERVED_EXPORTS = (MEMORY_EXPORT, ALLOC_EXPORT)
HOST_ERROR = -1

_LOG_LEVELS = {0: "debug", 1: "info", 2: "warning", 3: "error"}


def pack(ptr: int, length: int) -> int:
    return (ptr << 32) | length


def unpack(value: int) -> tuple:
    value &= 0xFFFFFFFFFFFFFFFF
    return value >> 32, value & 0xFFFFFFFF


# === Host functions ===


class HostFunctions:
    """Host-side implementations bound to one plugin's capabilities."""

    def __init__(
        self,
        plugin_id: str,
        capabilities: HostCapabilities,
        http_client_factory: Callable[[], httpx.Client],
    ):
        self.plugin_id = plugin_id
        self.capabilities = capabilities
        self._http_client_factory = http_client_factory

    @staticmethod
    def _read(caller: Caller, ptr: int, length: int) -> bytes:
        memory = caller.get(MEMORY_EXPORT)
        if not isinstance(memory, Memory):
            raise ValueError("guest exports no memory")
        if ptr < 0 or length < 0 or ptr + length > memory.data_len(caller):
            raise ValueError("guest range out of bounds")
        return bytes(memory.read(caller, ptr, ptr + length))

    @staticmethod
    def _write(caller: Caller, data: bytes) -> int:
        alloc = caller.get(ALLOC_EXPORT)
        memory = caller.get(MEMORY_EXPORT)
        if not isinstance(alloc, Func) or not isinstance(memory, Memory):
            return HOST_ERROR
        ptr = alloc(caller, len(data))
        memory.write(caller, data, ptr)
        return pack(ptr, len(data))

    def host_log(self, caller: Caller, level: int, ptr: int, length: int) -> None:
        try:
            message = self._read(caller, ptr, length).decode("utf-8", errors="replace")
        except ValueError as e:
            logger.warning("Invalid plugin log call", plugin_id=self.plugin_id, error=str(e))
            return
        method = getattr(logger, _LOG_LEVELS.get(level, "info"))
        method("Plugin log", plugin_id=self.plugin_id, message=message)

    def get_env_var(self, caller: Caller, ptr: int, length: int) -> int:
        try:
            name = self._read(caller, ptr, length).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return HOST_ERROR
        value = self.capabilities.read_env_var(name)
        if value is None:
            return HOST_ERROR
        return self._write(caller, value.encode("utf-8"))

    def read_file(self, caller: Caller, ptr: int, length: int) -> int:
        try:
            guest_path = self._read(caller, ptr, length).decode("utf-8")
        except (ValueError, UnicodeDecodeError):
            return HOST_ERROR
        host_path = self.capabilities.resolve_virtual_path(guest_path)
        if host_path is None:
            logger.warning("Denied file access", plugin_id=self.plugin_id, path=guest_path)
            return HOST_ERROR
        try:
            data = host_path.read_bytes()
        except OSError as e:
            logger.debug("Plugin file read failed", plugin_id=self.plugin_id, path=guest_path, error=str(e))
            return HOST_ERROR
        return self._write(caller, data)

    def http_fetch(self, caller: Caller, ptr: int, length: int) -> int:
        try:
            url = self._read(caller, ptr, length).decode("utf-8").strip()
        except (ValueError, UnicodeDecodeError):
            return HOST_ERROR
        if not self.capabilities.allows_url(url):
            logger.warning("Denied network access", plugin_id=self.plugin_id, url=url)
            return HOST_ERROR
        try:
            response = self._http_client_factory().get(url)
        except httpx.HTTPError as e:
            logger.debug("Plugin fetch failed", plugin_id=self.plugin_id, url=url, error=str(e))
            return HOST_ERROR
        if response.status_code >= 400:
            return HOST_ERROR
        return self._write(caller, response.content)

    def define(self, linker: Linker, module: Module) -> None:
        """
        Define the host functions the module imports.

        Raises:
            CapabilityDeniedError: An import needs an ungranted capability
            InvalidModuleError: An import is not a known host function
        """
        granted = self.capabilities.granted()
        i32, i64 = ValType.i32(), ValType.i64()
        signatures = {
            "host_log": FuncType([i32, i32, i32], []),
            "get_env_var": FuncType([i32, i32], [i64]),
            "read_file": FuncType([i32, i32], [i64]),
            "http_fetch": FuncType([i32, i32], [i64]),
        }

        for imported in module.imports:
            name = imported.name
            if imported.module != HOST_MODULE or name not in HOST_FUNCTIONS:
                raise InvalidModuleError(
                    f"Module imports unknown host function {imported.module}.{name}",
                    plugin_id=self.plugin_id,
                )
            capability = HOST_FUNCTIONS[name]
            if capability not in granted:
                raise CapabilityDeniedError(capability.value, plugin_id=self.plugin_id)
            linker.define_func(HOST_MODULE, name, signatures[name], getattr(self, name), access_caller=True)


# === Instances ===


@dataclass
class CallStats:
    calls: int = 0
    traps: int = 0
    total_time_ms: float = 0.0


@dataclass
class PluginHandle:
    """
    A live, isolated plugin instance. Calls are serialized: a second call
    while one is running fails with HandleBusyError.
    """

    plugin_id: str
    version: str
    slot: CacheSlot
    module: Module
    store: Store
    exports_map: Dict[str, Any]
    config: SandboxConfig
    capabilities: HostCapabilities
    stats: CallStats = field(default_factory=CallStats)
    _busy: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _closed: bool = False

    @classmethod
    def instantiate(
        cls,
        engine: Engine,
        module: Module,
        slot: CacheSlot,
        capabilities: HostCapabilities,
        config: SandboxConfig,
        http_client_factory: Callable[[], httpx.Client],
    ) -> "PluginHandle":
        """
        Create a fresh store and instance for a compiled module.

        Raises:
            CapabilityDeniedError, InvalidModuleError
        """
        context = {"plugin_id": slot.plugin_id, "version": slot.version}
        store = Store(engine)
        store.set_limits(memory_size=config.max_memory_bytes)
        if config.fuel is not None:
            store.set_fuel(config.fuel)

        linker = Linker(engine)
        HostFunctions(slot.plugin_id, capabilities, http_client_factory).define(linker, module)

        try:
            instance = linker.instantiate(store, module)
        except (Trap, WasmtimeError) as e:
            raise InvalidModuleError("Module failed to instantiate", cause=e, **context)

        exports = instance.exports(store)
        exports_map = {}
        for export_type in module.exports:
            exports_map[export_type.name] = exports[export_type.name]

        if not isinstance(exports_map.get(MEMORY_EXPORT), Memory):
            raise InvalidModuleError("Module does not export 'memory'", **context)
        if not isinstance(exports_map.get(ALLOC_EXPORT), Func):
            raise InvalidModuleError("Module does not export 'alloc'", **context)

        return cls(
            plugin_id=slot.plugin_id,
            version=slot.version,
            slot=slot,
            module=module,
            store=store,
            exports_map=exports_map,
            config=config,
            capabilities=capabilities,
        )

    @property
    def memory(self) -> Memory:
        return self.exports_map[MEMORY_EXPORT]

    def exports(self) -> List[str]:
        """Callable plugin functions (the ABI exports are excluded)."""
        return sorted(
            name for name, extern in self.exports_map.items()
            if isinstance(extern, Func) and name not in RESERVED_EXPORTS
        )

    def has_export(self, name: str) -> bool:
        return name in self.exports()

    def _encode(self, value: Any) -> bytes:
        if value is None:
            return b""
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        try:
            return json.dumps(to_jsonable_python(value)).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(
                f"Cannot serialize input of type {type(value).__name__}",
                plugin_id=self.plugin_id,
                version=self.version,
                cause=e,
            )

    def _decode(self, raw: bytes, output_type: Optional[Type[Any]]) -> Any:
        if output_type is bytes:
            return raw
        if not raw:
            return None
        context = {"plugin_id": self.plugin_id, "version": self.version}
        try:
            value = json.loads(raw)
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationError("Plugin returned invalid JSON", cause=e, **context)
        if output_type is None:
            return value
        try:
            return TypeAdapter(output_type).validate_python(value)
        except ValidationError as e:
            raise SerializationError(
                f"Plugin output does not match {getattr(output_type, '__name__', output_type)}",
                cause=e,
                **context,
            )

    def call(self, export: str, input: Any = None, output_type: Optional[Type[Any]] = None) -> Any:
        """
        Invoke an exported plugin function.

        Raises:
            HandleBusyError: Another call is in progress on this handle
            ExportNotFoundError: No such callable export
            PluginTrapError: The guest trapped or ran out of fuel
            SerializationError: Input or output could not be marshaled
        """
        context = {"plugin_id": self.plugin_id, "version": self.version}
        if self._closed:
            raise PluginTrapError(export, "handle is closed", **context)
        if not self._busy.acquire(blocking=False):
            raise HandleBusyError(f"Handle is busy, cannot call '{export}'", **context)

        start = time.perf_counter()
        try:
            func = self.exports_map.get(export)
            if export in RESERVED_EXPORTS or not isinstance(func, Func):
                raise ExportNotFoundError(export, self.exports(), **context)

            payload = self._encode(input)
            if self.config.fuel is not None:
                self.store.set_fuel(self.config.fuel)

            try:
                ptr = self.exports_map[ALLOC_EXPORT](self.store, len(payload))
                if payload:
                    self.memory.write(self.store, payload, ptr)
                result = func(self.store, ptr, len(payload))
            except (Trap, WasmtimeError) as e:
                self.stats.traps += 1
                raise PluginTrapError(export, str(e).strip() or repr(e), **context)

            if not isinstance(result, int):
                raise SerializationError(
                    f"Export '{export}' does not follow the (ptr, len) -> i64 convention",
                    **context,
                )
            out_ptr, out_len = unpack(result)
            if out_ptr + out_len > self.memory.data_len(self.store):
                raise SerializationError(f"Export '{export}' returned an out-of-bounds result", **context)
            raw = bytes(self.memory.read(self.store, out_ptr, out_ptr + out_len)) if out_len else b""
            return self._decode(raw, output_type)
        finally:
            self.stats.calls += 1
            self.stats.total_time_ms += (time.perf_counter() - start) * 1000
            self._busy.release()

    def close(self) -> None:
        self._closed = True
        self.exports_map.clear()
