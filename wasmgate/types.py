"""
Wasmgate Types

Core value types shared across the plugin acquisition pipeline:
platform descriptors, plugin locators, checksums and signature descriptors,
resolved artifacts, cache slots, and the plugin descriptor consumed from
configuration.
"""

from __future__ import annotations

import hashlib
import platform as _platform
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from wasmgate.errors import LocatorError
from wasmgate.versions.spec import CANARY, ResolvedVersion


# === Platform ===


_OS_NAMES = {
    "linux": "linux",
    "darwin": "macos",
    "windows": "windows",
    "freebsd": "freebsd",
}

_ARCH_NAMES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "i386": "x86",
    "i686": "x86",
    "x86": "x86",
}


@dataclass(frozen=True)
class PlatformDescriptor:
    """The os/arch pair (and libc on Linux) used to pick artifact variants."""

    os: str
    arch: str
    libc: Optional[str] = None

    @classmethod
    def detect(cls) -> "PlatformDescriptor":
        system = _platform.system().lower()
        machine = _platform.machine().lower()
        libc = None
        if system == "linux":
            name, _ = _platform.libc_ver()
            libc = "gnu" if name == "glibc" else "musl"
        return cls(
            os=_OS_NAMES.get(system, system),
            arch=_ARCH_NAMES.get(machine, machine),
            libc=libc,
        )

    @property
    def key(self) -> str:
        return f"{self.os}-{self.arch}"

    def template_vars(self) -> Dict[str, str]:
        values = {"os": self.os, "arch": self.arch}
        if self.libc:
            values["libc"] = self.libc
        return values

    def __str__(self) -> str:
        return self.key


# === Locators ===


def _freeze(mapping: Optional[Mapping[str, Any]]) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclass(frozen=True)
class UrlLocator:
    """
    A URL template, e.g. "https://example.com/{version}/plugin-{os}.wasm".

    `platforms` optionally maps "os-arch" keys to extra template vars; when
    given, only those platforms are supported.
    """

    template: str
    vars: Mapping[str, str] = field(default_factory=dict)
    platforms: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "vars", _freeze(self.vars))
        object.__setattr__(
            self,
            "platforms",
            _freeze({k: _freeze(v) for k, v in dict(self.platforms).items()}),
        )

    def canonical(self) -> str:
        parts = [self.template]
        if self.vars:
            parts.append("&".join(f"{k}={v}" for k, v in sorted(self.vars.items())))
        if self.platforms:
            parts.append(",".join(sorted(self.platforms)))
        return "|".join(parts)

    def __str__(self) -> str:
        return self.template


@dataclass(frozen=True)
class GitHubLocator:
    """A release asset on GitHub: github://owner/repo[@tag-pattern]."""

    owner: str
    repo: str
    tag_pattern: str = "v{version}"
    asset: str = "{repo}.wasm"

    CANARY_TAG: ClassVar[str] = "canary"

    def canonical(self) -> str:
        return f"github://{self.owner}/{self.repo}@{self.tag_pattern}#{self.asset}"

    def __str__(self) -> str:
        return f"github://{self.owner}/{self.repo}"


@dataclass(frozen=True)
class FileLocator:
    """A module or archive on the local filesystem."""

    path: str

    def canonical(self) -> str:
        return f"file://{self.path}"

    def __str__(self) -> str:
        return self.canonical()


PluginLocator = Union[UrlLocator, GitHubLocator, FileLocator]

_GITHUB_PATTERN = re.compile(
    r'^github://(?P<owner>[A-Za-z0-9_.\-]+)/(?P<repo>[A-Za-z0-9_.\-]+)'
    r'(?:@(?P<tag>[^#]+))?(?:#(?P<asset>.+))?$'
)


def parse_locator(
    value: Union[str, PluginLocator],
    vars: Optional[Mapping[str, str]] = None,
    platforms: Optional[Mapping[str, Mapping[str, str]]] = None,
) -> PluginLocator:
    """
    Parse a locator string.

    Formats:
    - "https://host/path/{version}.wasm" - URL template
    - "github://owner/repo", "github://owner/repo@{version}#asset.wasm"
    - "file://./plugins/tool.wasm", "source:./plugins/tool.wasm"
    """
    if isinstance(value, (UrlLocator, GitHubLocator, FileLocator)):
        return value

    text = (value or "").strip()
    if text.startswith(("https://", "http://")):
        return UrlLocator(template=text, vars=vars or {}, platforms=platforms or {})

    if text.startswith("github://"):
        match = _GITHUB_PATTERN.match(text)
        if not match:
            raise LocatorError(f"Invalid GitHub locator '{text}'")
        return GitHubLocator(
            owner=match.group("owner"),
            repo=match.group("repo"),
            tag_pattern=match.group("tag") or "v{version}",
            asset=match.group("asset") or "{repo}.wasm",
        )

    for prefix in ("file://", "source:"):
        if text.startswith(prefix):
            path = text[len(prefix):]
            if not path:
                raise LocatorError(f"Empty file locator '{text}'")
            return FileLocator(path=path)

    raise LocatorError(f"Unsupported plugin locator '{text}'")


def locator_fingerprint(locator: PluginLocator) -> str:
    """Stable short digest identifying a locator in cache paths."""
    return hashlib.sha256(locator.canonical().encode("utf-8")).hexdigest()[:16]


# === Verification descriptors ===


@dataclass(frozen=True)
class Checksum:
    """An expected digest: "<algorithm>:<hex-digest>"."""

    algorithm: str
    digest: str

    SUPPORTED: ClassVar[Tuple[str, ...]] = ("sha256", "sha512", "blake2b")
    _HEX: ClassVar[re.Pattern] = re.compile(r'^[0-9a-fA-F]+$')

    def __post_init__(self) -> None:
        algorithm = self.algorithm.lower()
        if algorithm not in self.SUPPORTED:
            raise ValueError(f"Unsupported checksum algorithm '{self.algorithm}'")
        if not self._HEX.match(self.digest):
            raise ValueError(f"Checksum digest is not hex: '{self.digest}'")
        expected_len = hashlib.new(algorithm).digest_size * 2
        if len(self.digest) != expected_len:
            raise ValueError(
                f"{algorithm} digest must be {expected_len} hex characters, got {len(self.digest)}"
            )
        object.__setattr__(self, "algorithm", algorithm)
        object.__setattr__(self, "digest", self.digest.lower())

    @classmethod
    def parse(cls, value: str) -> "Checksum":
        text = value.strip()
        if ":" in text:
            algorithm, _, digest = text.partition(":")
            return cls(algorithm.strip(), digest.strip())
        return cls("sha256", text)

    @classmethod
    def of(cls, data: bytes, algorithm: str = "sha256") -> "Checksum":
        return cls(algorithm, hashlib.new(algorithm, data).hexdigest())

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.digest}"


@dataclass(frozen=True)
class SignatureDescriptor:
    """
    A declared detached signature: "<scheme>:<public-key-id>".

    The signature bytes are either given inline or fetched from
    `signature_url`.
    """

    scheme: str
    key_id: str
    signature: Optional[bytes] = None
    signature_url: Optional[str] = None

    SUPPORTED: ClassVar[Tuple[str, ...]] = ("ed25519",)

    def __post_init__(self) -> None:
        scheme = self.scheme.lower()
        if scheme not in self.SUPPORTED:
            raise ValueError(f"Unsupported signature scheme '{self.scheme}'")
        if not self.key_id:
            raise ValueError("Signature descriptor requires a public key id")
        object.__setattr__(self, "scheme", scheme)

    @classmethod
    def parse(cls, value: str, signature_url: Optional[str] = None) -> "SignatureDescriptor":
        scheme, sep, key_id = value.strip().partition(":")
        if not sep:
            raise ValueError(f"Signature must be '<scheme>:<public-key-id>', got '{value}'")
        return cls(scheme=scheme, key_id=key_id, signature_url=signature_url)

    def __str__(self) -> str:
        return f"{self.scheme}:{self.key_id}"


# === Artifacts ===


@dataclass(frozen=True)
class ResolvedArtifact:
    """
    A concrete fetch target for one plugin version.

    Invariant: a checksum (literal or URL) and/or a signature must be present
    unless the artifact is explicitly marked unverified.
    """

    plugin_id: str
    version: ResolvedVersion
    locator: PluginLocator
    url: Optional[str] = None
    path: Optional[Path] = None
    checksum: Optional[Checksum] = None
    checksum_url: Optional[str] = None
    signature: Optional[SignatureDescriptor] = None
    unverified: bool = False

    def __post_init__(self) -> None:
        if (self.url is None) == (self.path is None):
            raise ValueError("ResolvedArtifact requires exactly one of url or path")
        if not self.unverified and not (self.checksum or self.checksum_url or self.signature):
            raise ValueError(
                f"Artifact for '{self.plugin_id}' has no checksum or signature; "
                "mark it unverified explicitly to allow this"
            )

    @property
    def is_remote(self) -> bool:
        return self.url is not None

    @property
    def source(self) -> str:
        return self.url if self.url is not None else str(self.path)

    @property
    def filename(self) -> str:
        source = self.url.split("?", 1)[0] if self.url else str(self.path)
        return source.rstrip("/").rsplit("/", 1)[-1]


# === Cache slots ===


@dataclass(frozen=True)
class SlotKey:
    """Identity of a cache slot: (plugin id, resolved version, locator fingerprint)."""

    plugin_id: str
    version: str
    fingerprint: str

    @property
    def dirname(self) -> str:
        return f"{self.version}-{self.fingerprint}"

    def __str__(self) -> str:
        return f"{self.plugin_id}/{self.dirname}"


@dataclass(frozen=True)
class CacheSlot:
    """A published, verified, extracted plugin on disk."""

    key: SlotKey
    path: Path
    module_path: Path
    digest: str
    module_digest: str
    fetched_at: datetime
    source: str
    locator: str

    @property
    def plugin_id(self) -> str:
        return self.key.plugin_id

    @property
    def version(self) -> str:
        return self.key.version

    @property
    def is_canary(self) -> bool:
        return self.key.version == CANARY


# === Plugin descriptor ===


_PLUGIN_ID_PATTERN = re.compile(r'^[a-z0-9][a-z0-9_\-]*$')


class PluginDescriptor(BaseModel):
    """
    A plugin entry as supplied by configuration.

    Example:
        {
            "id": "node",
            "locator": "github://acme/node-plugin",
            "checksum-url": "https://github.com/acme/node-plugin/releases/download/v{version}/node.wasm.sha256",
            "signature": "ed25519:acme-release",
            "version-aliases": {"lts": "^20"},
        }
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    locator: str
    checksum: Optional[str] = None
    checksum_url: Optional[str] = Field(default=None, alias="checksum-url")
    signature: Optional[str] = None
    signature_url: Optional[str] = Field(default=None, alias="signature-url")
    version_aliases: Dict[str, str] = Field(default_factory=dict, alias="version-aliases")
    vars: Dict[str, str] = Field(default_factory=dict)
    platforms: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    unverified: bool = False

    @field_validator("id")
    @classmethod
    def _validate_id(cls, v: str) -> str:
        if not _PLUGIN_ID_PATTERN.match(v):
            raise ValueError(
                f"Invalid plugin id '{v}': must be lowercase alphanumeric with dashes/underscores"
            )
        return v

    @field_validator("checksum")
    @classmethod
    def _validate_checksum(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            Checksum.parse(v)
        return v

    @field_validator("signature")
    @classmethod
    def _validate_signature(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            SignatureDescriptor.parse(v)
        return v

    @model_validator(mode="after")
    def _require_verification(self) -> "PluginDescriptor":
        if not self.unverified and not (self.checksum or self.checksum_url or self.signature):
            raise ValueError(
                f"Plugin '{self.id}' declares no checksum or signature; "
                "set 'unverified: true' to opt out explicitly"
            )
        return self

    def parsed_locator(self) -> PluginLocator:
        return parse_locator(self.locator, vars=self.vars, platforms=self.platforms)

    def expected_checksum(self) -> Optional[Checksum]:
        return Checksum.parse(self.checksum) if self.checksum else None

    def signature_descriptor(self) -> Optional[SignatureDescriptor]:
        if not self.signature:
            return None
        return SignatureDescriptor.parse(self.signature, signature_url=self.signature_url)
