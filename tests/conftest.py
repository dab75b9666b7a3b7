"""
Shared fixtures for wasmgate tests.
"""

import hashlib
import io
import tarfile
import tempfile
import zipfile
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest
import structlog
from wasmtime import wat2wasm

from wasmgate.cache.store import file_digest, utcnow
from wasmgate.config import (
    LockConfig,
    NetworkConfig,
    SandboxConfig,
    WasmgateConfig,
    reset_config,
)
from wasmgate.types import CacheSlot, SlotKey

# Smallest valid module: magic + version.
EMPTY_WASM = b"\x00asm\x01\x00\x00\x00"


# === WAT modules ===

ALLOC = """
  (memory (export "memory") 1)
  (global $heap (mut i32) (i32.const 1024))
  (func (export "alloc") (param $len i32) (result i32)
    (local $ptr i32)
    global.get $heap
    local.set $ptr
    global.get $heap
    local.get $len
    i32.add
    global.set $heap
    local.get $ptr)
"""

ECHO_WAT = """
(module
""" + ALLOC + """
  (global $count (mut i32) (i32.const 0))
  (data (i32.const 16) "not json")
  (func (export "echo") (param $ptr i32) (param $len i32) (result i64)
    local.get $ptr
    i64.extend_i32_u
    i64.const 32
    i64.shl
    local.get $len
    i64.extend_i32_u
    i64.or)
  (func (export "crash") (param i32 i32) (result i64)
    unreachable)
  (func (export "garbage") (param i32 i32) (result i64)
    ;; (16 << 32) | 8
    i64.const 68719476744)
  (func (export "nothing") (param i32 i32) (result i64)
    i64.const 0)
  (func (export "spin") (param i32 i32) (result i64)
    (loop $forever (br $forever))
    i64.const 0)
  (func (export "bump") (param i32 i32) (result i64)
    global.get $count
    i32.const 1
    i32.add
    global.set $count
    i32.const 32
    global.get $count
    i32.const 48
    i32.add
    i32.store8
    ;; (32 << 32) | 1
    i64.const 137438953473)
)
"""

LOG_WAT = """
(module
  (import "env" "host_log" (func $log (param i32 i32 i32)))
""" + ALLOC + """
  (data (i32.const 16) "hello")
  (func (export "greet") (param i32 i32) (result i64)
    i32.const 1
    i32.const 16
    i32.const 5
    call $log
    i64.const 0)
)
"""

ENV_WAT = """
(module
  (import "env" "get_env_var" (func $env (param i32 i32) (result i64)))
""" + ALLOC + """
  (data (i32.const 16) "WASMGATE_TEST_VALUE")
  (func (export "read_env") (param i32 i32) (result i64)
    i32.const 16
    i32.const 19
    call $env)
)
"""

FILE_WAT = """
(module
  (import "env" "read_file" (func $read (param i32 i32) (result i64)))
""" + ALLOC + """
  (func (export "cat") (param $ptr i32) (param $len i32) (result i64)
    local.get $ptr
    local.get $len
    call $read)
)
"""

NO_ALLOC_WAT = """
(module
  (memory (export "memory") 1)
  (func (export "noop") (param i32 i32) (result i64)
    i64.const 0)
)
"""

UNKNOWN_IMPORT_WAT = """
(module
  (import "wasi_snapshot_preview1" "fd_write" (func (param i32 i32 i32 i32) (result i32)))
""" + ALLOC + """
)
"""


def wat(source: str) -> bytes:
    return bytes(wat2wasm(source))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# === Archives ===


def make_zip(entries: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in entries.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def make_tar(entries: Dict[str, bytes], mode: str = "w:gz", links: Optional[Dict[str, str]] = None) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode=mode) as archive:
        for name, content in entries.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            archive.addfile(info, io.BytesIO(content))
        for name, target in (links or {}).items():
            info = tarfile.TarInfo(name)
            info.type = tarfile.SYMTYPE
            info.linkname = target
            archive.addfile(info)
    return buffer.getvalue()


# === Fake HTTP server ===


Route = Union[httpx.Response, List[httpx.Response], Callable[[httpx.Request], httpx.Response]]


class FakeServer:
    """Routes exact URLs to canned responses and records every request."""

    def __init__(self):
        self.routes: Dict[str, Route] = {}
        self.requests: List[httpx.Request] = []

    def add(self, url: str, content: bytes = b"", status: int = 200, json=None) -> None:
        if json is not None:
            self.routes[url] = httpx.Response(status, json=json)
        else:
            self.routes[url] = httpx.Response(status, content=content)

    def add_sequence(self, url: str, responses: List[httpx.Response]) -> None:
        self.routes[url] = list(responses)

    def count(self, url: str) -> int:
        return sum(1 for r in self.requests if str(r.url) == url)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if callable(route):
            return route(request)
        if isinstance(route, list):
            return route.pop(0) if len(route) > 1 else route[0]
        return route

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


# === Fixtures ===


@pytest.fixture(autouse=True)
def _isolate_global_state(monkeypatch):
    """Keep tests independent of the environment and of each other."""
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    reset_config()
    yield
    reset_config()
    structlog.reset_defaults()


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir):
    """Config with a private cache, no backoff delays and short lock waits."""
    return WasmgateConfig(
        cache_dir=temp_dir / "cache",
        platform_os="linux",
        platform_arch="x64",
        network=NetworkConfig(backoff_base_seconds=0.0, backoff_max_seconds=0.0),
        lock=LockConfig(timeout_seconds=5.0, poll_interval_seconds=0.01),
        sandbox=SandboxConfig(fuel=10_000_000, max_workers=2),
    )


@pytest.fixture
def server():
    return FakeServer()


def make_slot(root: Path, module: bytes, plugin_id: str = "demo", version: str = "1.0.0") -> CacheSlot:
    """Write a module as if it had been published, and return its slot."""
    key = SlotKey(plugin_id, version, "0123456789abcdef")
    slot_dir = root / plugin_id / key.dirname
    slot_dir.mkdir(parents=True, exist_ok=True)
    module_path = slot_dir / "plugin.wasm"
    module_path.write_bytes(module)
    return CacheSlot(
        key=key,
        path=slot_dir,
        module_path=module_path,
        digest=f"sha256:{sha256_hex(module)}",
        module_digest=file_digest(module_path),
        fetched_at=utcnow(),
        source="test",
        locator="file://test",
    )
