"""
Host Capabilities for Plugins

Capability grants decide which host functions are linked into a plugin
instance. A module importing a host function whose capability was not
granted fails to load.
"""

from __future__ import annotations

import fnmatch
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Set
from urllib.parse import urlparse

import structlog

logger = structlog.get_logger(__name__)

HOST_MODULE = "env"


class Capability(str, Enum):
    """Host functions a plugin may be granted."""

    LOG = "log"  # host_log
    ENV_READ = "env_read"  # get_env_var
    READ_FILE = "read_file"  # read_file, through virtual paths
    NETWORK_CONNECT = "network_connect"  # http_fetch


# Host import name -> capability required to link it.
HOST_FUNCTIONS: Dict[str, Capability] = {
    "host_log": Capability.LOG,
    "get_env_var": Capability.ENV_READ,
    "read_file": Capability.READ_FILE,
    "http_fetch": Capability.NETWORK_CONNECT,
}


@dataclass
class HostCapabilities:
    """
    The capabilities granted to one plugin instance, with their resource
    restrictions.

    Example:
        HostCapabilities(
            allowed_env_vars=["HOME", "WASMGATE_*"],
            virtual_paths={"/cwd": Path.cwd()},
            allowed_hosts=["api.github.com"],
        )
    """

    log: bool = True
    allowed_env_vars: List[str] = field(default_factory=list)
    # Guest path prefix -> host directory.
    virtual_paths: Dict[str, Path] = field(default_factory=dict)
    allowed_hosts: List[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> "HostCapabilities":
        """No capabilities at all, not even logging."""
        return cls(log=False)

    def granted(self) -> Set[Capability]:
        granted = set()
        if self.log:
            granted.add(Capability.LOG)
        if self.allowed_env_vars:
            granted.add(Capability.ENV_READ)
        if self.virtual_paths:
            granted.add(Capability.READ_FILE)
        if self.allowed_hosts:
            granted.add(Capability.NETWORK_CONNECT)
        return granted

    def allows(self, capability: Capability) -> bool:
        return capability in self.granted()

    def allows_env_var(self, name: str) -> bool:
        return any(fnmatch.fnmatchcase(name, pattern) for pattern in self.allowed_env_vars)

    def read_env_var(self, name: str) -> Optional[str]:
        if not self.allows_env_var(name):
            logger.warning("Denied env var access", name=name)
            return None
        return os.environ.get(name)

    def allows_url(self, url: str) -> bool:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return False
        return any(fnmatch.fnmatchcase(parsed.hostname, pattern) for pattern in self.allowed_hosts)

    def resolve_virtual_path(self, guest_path: str) -> Optional[Path]:
        """
        Map a guest path to a host path through the longest matching virtual
        prefix. Returns None when unmapped or when the result escapes the
        mapped directory.
        """
        posix = PurePosixPath(guest_path)
        if not posix.is_absolute() or ".." in posix.parts:
            return None

        best = None
        for prefix in self.virtual_paths:
            prefix_path = PurePosixPath(prefix)
            if posix == prefix_path or prefix_path in posix.parents:
                if best is None or len(prefix_path.parts) > len(PurePosixPath(best).parts):
                    best = prefix
        if best is None:
            return None

        root = Path(self.virtual_paths[best]).resolve()
        relative = posix.relative_to(PurePosixPath(best))
        host_path = (root / Path(*relative.parts)).resolve() if relative.parts else root
        if host_path != root and root not in host_path.parents:
            return None
        return host_path

    def to_dict(self) -> dict:
        return {
            "log": self.log,
            "allowed_env_vars": list(self.allowed_env_vars),
            "virtual_paths": {k: str(v) for k, v in self.virtual_paths.items()},
            "allowed_hosts": list(self.allowed_hosts),
        }
