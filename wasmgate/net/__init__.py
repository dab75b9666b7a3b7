"""
Wasmgate Network

HTTP fetching with retry for artifacts and release metadata.
"""

from wasmgate.net.fetcher import HttpFetcher, is_transient_status, read_local

__all__ = ["HttpFetcher", "is_transient_status", "read_local"]
