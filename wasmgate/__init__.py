"""
Wasmgate - WASM Plugin Acquisition and Execution Core

Fetches versioned WebAssembly plugins from URL templates, GitHub releases
or local paths, verifies them, caches them safely across processes, and
runs them in a capability-gated sandbox.

Features:
- Locators: URL templates, github://owner/repo, file:// paths
- Version specs: exact, ranges (^ ~ >= < ||), aliases, canary
- Checksum (sha256/sha512/blake2b) and ED25519 signature verification
- Zip/tar extraction with path traversal protection
- Atomic cache publication under a cross-process slot lock
- Sandboxed calls with fuel, memory limits and JSON marshaling

Basic Usage:
    from wasmgate import CacheManager, PluginHost, PluginDescriptor, HostCapabilities

    descriptor = PluginDescriptor(
        id="node",
        locator="github://acme/node-plugin",
        checksum_url="{url}.sha256",
    )

    async with PluginHost() as host:
        handle = await host.load_plugin(descriptor, "^1.2", capabilities=HostCapabilities())
        result = await host.acall(handle, "parse_version", {"input": "1.2.3"})

Configuration comes from WASMGATE_* environment variables (see
wasmgate.config.WasmgateConfig).
"""

from wasmgate.archive import ArchiveExtractor, ExtractResult, detect_format
from wasmgate.cache import CacheManager, CacheStore, LockToken, SlotLock, SlotMetadata
from wasmgate.config import (
    LockConfig,
    NetworkConfig,
    SandboxConfig,
    WasmgateConfig,
    get_config,
    reset_config,
    set_config,
)
from wasmgate.errors import (
    AliasCycleError,
    CallError,
    CapabilityDeniedError,
    ChecksumMismatchError,
    CorruptArchiveError,
    ExportNotFoundError,
    ExtractError,
    HandleBusyError,
    InvalidModuleError,
    InvalidVersionSpecError,
    LocatorError,
    LockError,
    LockIOError,
    LockTimeoutError,
    ModuleNotFoundInArchiveError,
    NetworkError,
    NoMatchingVersionError,
    OfflineCacheMissError,
    PluginCallError,
    PluginLoadError,
    PluginTrapError,
    SerializationError,
    SignatureInvalidError,
    SignatureMissingError,
    UnresolvedTemplateError,
    UnsafeArchiveEntryError,
    UnsupportedPlatformError,
    UntrustedKeyError,
    VerificationError,
    VersionResolutionError,
    WasmgateError,
)
from wasmgate.host import Capability, HostCapabilities, PluginHandle, PluginHost
from wasmgate.locators import GitHubVersionSource, LocatorResolver
from wasmgate.net import HttpFetcher
from wasmgate.observability import setup_logging
from wasmgate.security import ArtifactVerifier, SigningKey, TrustStore, VerifyingKey
from wasmgate.types import (
    CacheSlot,
    Checksum,
    FileLocator,
    GitHubLocator,
    PlatformDescriptor,
    PluginDescriptor,
    PluginLocator,
    ResolvedArtifact,
    SignatureDescriptor,
    SlotKey,
    UrlLocator,
    locator_fingerprint,
    parse_locator,
)
from wasmgate.versions import (
    ResolvedVersion,
    SemanticVersion,
    VersionCandidateList,
    VersionRequirement,
    VersionResolver,
    VersionSpec,
    parse_version_spec,
    resolve_version,
)

__version__ = "0.3.0"

__all__ = [
    # Acquisition
    "ArchiveExtractor",
    "ArtifactVerifier",
    "CacheManager",
    "CacheStore",
    "ExtractResult",
    "GitHubVersionSource",
    "HttpFetcher",
    "LocatorResolver",
    "LockToken",
    "SlotLock",
    "SlotMetadata",
    "detect_format",
    # Execution
    "Capability",
    "HostCapabilities",
    "PluginHandle",
    "PluginHost",
    # Types
    "CacheSlot",
    "Checksum",
    "FileLocator",
    "GitHubLocator",
    "PlatformDescriptor",
    "PluginDescriptor",
    "PluginLocator",
    "ResolvedArtifact",
    "SignatureDescriptor",
    "SlotKey",
    "UrlLocator",
    "locator_fingerprint",
    "parse_locator",
    # Versions
    "ResolvedVersion",
    "SemanticVersion",
    "VersionCandidateList",
    "VersionRequirement",
    "VersionResolver",
    "VersionSpec",
    "parse_version_spec",
    "resolve_version",
    # Security
    "SigningKey",
    "TrustStore",
    "VerifyingKey",
    # Configuration
    "LockConfig",
    "NetworkConfig",
    "SandboxConfig",
    "WasmgateConfig",
    "get_config",
    "reset_config",
    "set_config",
    "setup_logging",
    # Errors
    "AliasCycleError",
    "CallError",
    "CapabilityDeniedError",
    "ChecksumMismatchError",
    "CorruptArchiveError",
    "ExportNotFoundError",
    "ExtractError",
    "HandleBusyError",
    "InvalidModuleError",
    "InvalidVersionSpecError",
    "LocatorError",
    "LockError",
    "LockIOError",
    "LockTimeoutError",
    "ModuleNotFoundInArchiveError",
    "NetworkError",
    "NoMatchingVersionError",
    "OfflineCacheMissError",
    "PluginCallError",
    "PluginLoadError",
    "PluginTrapError",
    "SerializationError",
    "SignatureInvalidError",
    "SignatureMissingError",
    "UnresolvedTemplateError",
    "UnsafeArchiveEntryError",
    "UnsupportedPlatformError",
    "UntrustedKeyError",
    "VerificationError",
    "VersionResolutionError",
    "WasmgateError",
]
