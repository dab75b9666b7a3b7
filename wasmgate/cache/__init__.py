"""
Wasmgate Cache

Content-addressed plugin cache with cross-process slot locking.
"""

from wasmgate.cache.lock import LockToken, SlotLock
from wasmgate.cache.manager import CacheManager, slot_age
from wasmgate.cache.store import CacheStore, SlotMetadata, file_digest

__all__ = [
    "CacheManager",
    "CacheStore",
    "LockToken",
    "SlotLock",
    "SlotMetadata",
    "file_digest",
    "slot_age",
]
