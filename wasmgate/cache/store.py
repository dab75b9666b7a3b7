"""
Wasmgate Cache Store

On-disk layout of published plugin slots:

    <root>/<plugin-id>/<version>-<fingerprint>/         published slot
    <root>/<plugin-id>/<version>-<fingerprint>/metadata.json
    <root>/<plugin-id>/.<version>-<fingerprint>.lock    slot lock file
    <root>/<plugin-id>/.tmp-<version>-<fingerprint>-*/  in-flight staging
    <root>/<plugin-id>/.trash-*/                        replaced slots

A slot only appears at its final path through an atomic rename of a fully
populated staging directory, so readers never observe partial content.
"""

from __future__ import annotations

import hashlib
import os
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import structlog
from pydantic import BaseModel, ValidationError

from wasmgate.types import CacheSlot, SlotKey

logger = structlog.get_logger(__name__)

METADATA_FILE = "metadata.json"
TEMP_PREFIX = ".tmp-"
TRASH_PREFIX = ".trash-"


class SlotMetadata(BaseModel):
    """Sidecar written into every published slot."""
    plugin_id: str
    version: str
    fingerprint: str
    locator: str
    source: str
    digest: str
    module: str
    module_digest: str
    fetched_at: datetime
    format: str = "wasm"
    signature_key_id: Optional[str] = None
    unverified: bool = False


def file_digest(path: Path) -> str:
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return f"sha256:{hasher.hexdigest()}"


class CacheStore:
    """Filesystem operations on the plugin cache. Callers hold the slot lock."""

    def __init__(self, root: Path):
        self.root = Path(root)

    # === Paths ===

    def plugin_dir(self, plugin_id: str) -> Path:
        return self.root / plugin_id

    def slot_path(self, key: SlotKey) -> Path:
        return self.plugin_dir(key.plugin_id) / key.dirname

    def lock_path(self, key: SlotKey) -> Path:
        return self.plugin_dir(key.plugin_id) / f".{key.dirname}.lock"

    def create_temp_dir(self, key: SlotKey) -> Path:
        path = self.plugin_dir(key.plugin_id) / f"{TEMP_PREFIX}{key.dirname}-{uuid.uuid4().hex[:12]}"
        path.mkdir(parents=True)
        return path

    # === Reading ===

    def read_metadata(self, slot_dir: Path) -> Optional[SlotMetadata]:
        try:
            return SlotMetadata.model_validate_json((slot_dir / METADATA_FILE).read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger.warning("Ignoring corrupt slot metadata", path=str(slot_dir), error=str(e))
            return None

    def _to_slot(self, key: SlotKey, slot_dir: Path, metadata: SlotMetadata) -> Optional[CacheSlot]:
        module_path = slot_dir / metadata.module
        if not module_path.is_file():
            logger.warning("Slot is missing its module", path=str(slot_dir), module=metadata.module)
            return None
        return CacheSlot(
            key=key,
            path=slot_dir,
            module_path=module_path,
            digest=metadata.digest,
            module_digest=metadata.module_digest,
            fetched_at=metadata.fetched_at,
            source=metadata.source,
            locator=metadata.locator,
        )

    def read_slot(self, key: SlotKey) -> Optional[CacheSlot]:
        """The published slot for a key, or None if absent or incomplete."""
        slot_dir = self.slot_path(key)
        if not slot_dir.is_dir():
            return None
        metadata = self.read_metadata(slot_dir)
        if metadata is None:
            return None
        if (metadata.plugin_id, metadata.version, metadata.fingerprint) != (
            key.plugin_id, key.version, key.fingerprint
        ):
            logger.warning("Slot metadata does not match its path", path=str(slot_dir))
            return None
        return self._to_slot(key, slot_dir, metadata)

    def list_slots(self, plugin_id: Optional[str] = None) -> List[CacheSlot]:
        """Every valid published slot, optionally for one plugin."""
        if plugin_id is not None:
            plugin_dirs = [self.plugin_dir(plugin_id)]
        elif self.root.is_dir():
            plugin_dirs = sorted(p for p in self.root.iterdir() if p.is_dir())
        else:
            plugin_dirs = []

        slots = []
        for plugin_dir in plugin_dirs:
            if not plugin_dir.is_dir():
                continue
            for slot_dir in sorted(plugin_dir.iterdir()):
                if slot_dir.name.startswith(".") or not slot_dir.is_dir():
                    continue
                metadata = self.read_metadata(slot_dir)
                if metadata is None:
                    continue
                key = SlotKey(metadata.plugin_id, metadata.version, metadata.fingerprint)
                if self.slot_path(key) != slot_dir:
                    continue
                slot = self._to_slot(key, slot_dir, metadata)
                if slot is not None:
                    slots.append(slot)
        return slots

    # === Writing ===

    def publish(self, key: SlotKey, staging: Path, metadata: SlotMetadata) -> CacheSlot:
        """
        Write the sidecar into a fully populated staging directory and move
        it to the slot's final path, replacing any previous slot.
        """
        (staging / METADATA_FILE).write_text(metadata.model_dump_json(indent=2))

        final = self.slot_path(key)
        trash = None
        if final.exists():
            trash = final.with_name(f"{TRASH_PREFIX}{key.dirname}-{uuid.uuid4().hex[:12]}")
            os.replace(final, trash)
        try:
            os.replace(staging, final)
        except OSError:
            if trash is not None:
                os.replace(trash, final)
            raise
        if trash is not None:
            shutil.rmtree(trash, ignore_errors=True)

        logger.info("Published cache slot", slot=str(key), digest=metadata.digest)
        slot = self._to_slot(key, final, metadata)
        if slot is None:
            raise FileNotFoundError(f"Published slot {final} lost its module")
        return slot

    def touch(self, slot: CacheSlot) -> CacheSlot:
        """Mark a slot as freshly fetched by atomically rewriting its sidecar."""
        metadata = self.read_metadata(slot.path)
        if metadata is None:
            raise FileNotFoundError(f"Slot {slot.path} has no metadata")
        metadata = metadata.model_copy(update={"fetched_at": utcnow()})
        target = slot.path / METADATA_FILE
        tmp = slot.path / f".{METADATA_FILE}.{uuid.uuid4().hex[:12]}"
        tmp.write_text(metadata.model_dump_json(indent=2))
        os.replace(tmp, target)
        return self._to_slot(slot.key, slot.path, metadata) or slot

    def discard(self, path: Path) -> None:
        shutil.rmtree(path, ignore_errors=True)

    def remove(self, key: SlotKey) -> bool:
        """Delete a published slot. Returns whether one existed."""
        final = self.slot_path(key)
        if not final.exists():
            return False
        trash = final.with_name(f"{TRASH_PREFIX}{key.dirname}-{uuid.uuid4().hex[:12]}")
        os.replace(final, trash)
        shutil.rmtree(trash, ignore_errors=True)
        logger.info("Removed cache slot", slot=str(key))
        return True

    def sweep_staging(self, max_age_seconds: float = 3600.0) -> int:
        """Remove abandoned staging and trash directories older than max_age_seconds."""
        if not self.root.is_dir():
            return 0
        cutoff = time.time() - max_age_seconds
        removed = 0
        for plugin_dir in self.root.iterdir():
            if not plugin_dir.is_dir():
                continue
            for entry in plugin_dir.iterdir():
                if not entry.name.startswith((TEMP_PREFIX, TRASH_PREFIX)) or not entry.is_dir():
                    continue
                try:
                    if entry.stat().st_mtime > cutoff:
                        continue
                except FileNotFoundError:
                    continue
                shutil.rmtree(entry, ignore_errors=True)
                removed += 1
        return removed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
