"""
Wasmgate Configuration

Type-safe settings for the plugin core, loaded from environment variables
prefixed with WASMGATE_ (e.g. WASMGATE_OFFLINE=1,
WASMGATE_NETWORK__MAX_RETRIES=5).
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from wasmgate.types import PlatformDescriptor


class NetworkConfig(BaseModel):
    """HTTP fetch and retry settings."""
    timeout_seconds: float = 30.0
    max_retries: int = 3  # retries after the first attempt
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    user_agent: str = "wasmgate/0.3"
    github_token: Optional[str] = None
    versions_ttl_seconds: int = 24 * 3600


class LockConfig(BaseModel):
    """Cross-process slot lock settings."""
    timeout_seconds: float = 60.0
    poll_interval_seconds: float = 0.05


class SandboxConfig(BaseModel):
    """Per-handle execution limits."""
    fuel: Optional[int] = 5_000_000_000  # instructions per call, None = unlimited
    max_memory_bytes: int = 256 * 1024 * 1024
    max_workers: int = 4
    http_timeout_seconds: float = 30.0


class WasmgateConfig(BaseSettings):
    """
    Main wasmgate configuration.

    Only the knobs the core consumes: cache location, offline mode,
    freshness overrides, platform overrides, and subsystem limits.
    """

    cache_dir: Path = Field(default_factory=lambda: Path.home() / ".wasmgate" / "plugins")

    # Disable all network access; a cache miss becomes fatal.
    offline: bool = False

    # Slots older than this are re-fetched (None = published slots never expire).
    slot_max_age_seconds: Optional[int] = None

    # Re-fetch even when a valid slot exists.
    force_refresh: bool = False

    # Override the detected platform, e.g. os="linux", arch="arm64".
    platform_os: Optional[str] = None
    platform_arch: Optional[str] = None
    platform_libc: Optional[str] = None

    # Key ids / PEM files of trusted publishers.
    trusted_keys_dir: Optional[Path] = None

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)

    log_level: str = "INFO"
    log_json: bool = False

    model_config = {
        "env_prefix": "WASMGATE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }

    @field_validator("cache_dir", "trusted_keys_dir", mode="before")
    @classmethod
    def ensure_path(cls, v: Any) -> Any:
        """Ensure value is converted to an expanded Path."""
        if isinstance(v, str):
            return Path(v).expanduser()
        return v

    def platform(self) -> PlatformDescriptor:
        """The platform descriptor, honoring overrides."""
        detected = PlatformDescriptor.detect()
        return PlatformDescriptor(
            os=self.platform_os or detected.os,
            arch=self.platform_arch or detected.arch,
            libc=self.platform_libc or detected.libc,
        )

    def ensure_directories(self) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance (lazy loaded)
_config: Optional[WasmgateConfig] = None


def get_config() -> WasmgateConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = WasmgateConfig()
    return _config


def set_config(config: WasmgateConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config


def reset_config() -> None:
    """Reset the global configuration to default."""
    global _config
    _config = None
