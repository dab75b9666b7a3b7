"""
Wasmgate Plugin Host

Sandboxed execution of cached WASM plugins.
"""

from wasmgate.host.capabilities import HOST_FUNCTIONS, Capability, HostCapabilities
from wasmgate.host.host import PluginHost
from wasmgate.host.sandbox import CallStats, PluginHandle, pack, unpack

__all__ = [
    "HOST_FUNCTIONS",
    "CallStats",
    "Capability",
    "HostCapabilities",
    "PluginHandle",
    "PluginHost",
    "pack",
    "unpack",
]
