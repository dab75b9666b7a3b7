"""
Wasmgate Errors

Exception taxonomy for plugin acquisition and execution. Every error carries
enough structured context (plugin id, version, locator, underlying cause) to
render a precise message for the user.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


class WasmgateError(Exception):
    """Base class for all wasmgate errors."""

    def __init__(
        self,
        message: str,
        *,
        plugin_id: Optional[str] = None,
        version: Optional[str] = None,
        locator: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.plugin_id = plugin_id
        self.version = version
        self.locator = locator
        self.cause = cause
        super().__init__(self._render())

    def _render(self) -> str:
        context = []
        if self.plugin_id:
            context.append(f"plugin={self.plugin_id}")
        if self.version:
            context.append(f"version={self.version}")
        if self.locator:
            context.append(f"locator={self.locator}")
        if self.cause is not None:
            context.append(f"cause={self.cause}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"

    def with_context(self, **context: Any) -> "WasmgateError":
        """Fill in missing context fields and re-render the message."""
        for key in ("plugin_id", "version", "locator"):
            if getattr(self, key) is None and context.get(key) is not None:
                setattr(self, key, str(context[key]))
        self.args = (self._render(),)
        return self

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "plugin_id": self.plugin_id,
            "version": self.version,
            "locator": self.locator,
            "cause": str(self.cause) if self.cause is not None else None,
        }


# === Locators ===


class LocatorError(WasmgateError):
    """A locator could not be turned into a concrete artifact."""


class UnresolvedTemplateError(LocatorError):
    """A template placeholder had no value."""

    def __init__(self, template: str, missing: Sequence[str], **kwargs: Any):
        self.template = template
        self.missing = list(missing)
        super().__init__(
            f"Unresolved template variables {', '.join(self.missing)} in '{template}'",
            **kwargs,
        )


class UnsupportedPlatformError(LocatorError):
    """No artifact variant exists for the running platform."""

    def __init__(self, platform: str, supported: Sequence[str], **kwargs: Any):
        self.platform = platform
        self.supported = list(supported)
        super().__init__(
            f"No artifact for platform {platform} (supported: {', '.join(self.supported) or 'none'})",
            **kwargs,
        )


# === Versions ===


class VersionResolutionError(WasmgateError):
    """A version requirement could not be resolved."""


class InvalidVersionSpecError(VersionResolutionError):
    """A version requirement string could not be parsed."""


class NoMatchingVersionError(VersionResolutionError):
    """No candidate satisfies the requirement."""

    def __init__(self, spec: str, available: Sequence[str], **kwargs: Any):
        self.spec = spec
        self.available = list(available)
        shown = ", ".join(self.available[:10])
        if len(self.available) > 10:
            shown += ", ..."
        super().__init__(
            f"No version matching '{spec}' (available: {shown or 'none'})",
            **kwargs,
        )


class AliasCycleError(VersionResolutionError):
    """Alias indirection loops back on itself."""

    def __init__(self, chain: Sequence[str], **kwargs: Any):
        self.chain = list(chain)
        super().__init__(f"Alias cycle detected: {' -> '.join(self.chain)}", **kwargs)


# === Verification ===


class VerificationError(WasmgateError):
    """Downloaded bytes failed integrity or authenticity checks."""


class ChecksumMismatchError(VerificationError):
    """Computed digest differs from the expected digest."""

    def __init__(self, algorithm: str, expected: str, actual: str, **kwargs: Any):
        self.algorithm = algorithm
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch ({algorithm}): expected {expected}, got {actual}",
            **kwargs,
        )


class SignatureMissingError(VerificationError):
    """A signature was declared but none could be obtained."""


class SignatureInvalidError(VerificationError):
    """The signature does not match the artifact bytes."""


class UntrustedKeyError(VerificationError):
    """The signing key is not in the trust store."""


# === Extraction ===


class ExtractError(WasmgateError):
    """An artifact could not be unpacked."""


class CorruptArchiveError(ExtractError):
    """The archive is unreadable or of an unknown format."""


class UnsafeArchiveEntryError(ExtractError):
    """An archive entry would be written outside the destination."""

    def __init__(self, entry: str, reason: str = "escapes destination", **kwargs: Any):
        self.entry = entry
        self.reason = reason
        super().__init__(f"Unsafe archive entry '{entry}': {reason}", **kwargs)


class ModuleNotFoundInArchiveError(ExtractError):
    """The archive contains no identifiable WASM module."""


# === Locking ===


class LockError(WasmgateError):
    """A cache slot lock could not be acquired."""


class LockTimeoutError(LockError):
    """The lock was not acquired within the configured bound."""

    def __init__(self, path: str, timeout: float, **kwargs: Any):
        self.path = path
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}", **kwargs)


class LockIOError(LockError):
    """The lock file could not be opened or locked."""


# === Network ===


class NetworkError(WasmgateError):
    """A fetch failed. Transient failures are retried, permanent ones are not."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status: Optional[int] = None,
        transient: bool = False,
        **kwargs: Any,
    ):
        self.url = url
        self.status = status
        self.transient = transient
        if url:
            message = f"{message} [{url}]"
        super().__init__(message, **kwargs)


class OfflineCacheMissError(WasmgateError):
    """Offline mode is enabled and nothing usable is cached."""


# === Plugin loading and calls ===


class PluginLoadError(WasmgateError):
    """A cached module could not be loaded into the sandbox."""


class InvalidModuleError(PluginLoadError):
    """The module bytes are not a valid WASM module or fail integrity checks."""


class CapabilityDeniedError(PluginLoadError):
    """The module requires a host capability it was not granted."""

    def __init__(self, capability: str, **kwargs: Any):
        self.capability = capability
        super().__init__(f"Capability denied: {capability}", **kwargs)


class PluginCallError(PluginLoadError):
    """A call into a loaded plugin failed."""


CallError = PluginCallError


class ExportNotFoundError(PluginCallError):
    """The module does not export the requested function."""

    def __init__(self, export: str, available: Optional[List[str]] = None, **kwargs: Any):
        self.export = export
        self.available = available or []
        super().__init__(f"Export '{export}' not found", **kwargs)


class PluginTrapError(PluginCallError):
    """Execution raised a runtime fault inside the sandbox."""

    def __init__(self, export: str, detail: str, **kwargs: Any):
        self.export = export
        self.detail = detail
        super().__init__(f"Plugin trapped in '{export}': {detail}", **kwargs)


class SerializationError(PluginCallError):
    """Arguments or results could not be marshaled."""


class HandleBusyError(PluginCallError):
    """A handle received a call while another call was in progress."""
