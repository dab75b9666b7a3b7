"""
Wasmgate Archive Extractor

Unpacks a verified artifact (raw module, zip, or tar in any common
compression) into a plugin directory, refusing entries that would land
outside it.
"""

from __future__ import annotations

import io
import shutil
import stat
import tarfile
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional, Union

import structlog

from wasmgate.errors import (
    CorruptArchiveError,
    ModuleNotFoundInArchiveError,
    UnsafeArchiveEntryError,
)

logger = structlog.get_logger(__name__)

WASM_MAGIC = b"\x00asm"
MODULE_FILENAME = "plugin.wasm"


class ArchiveFormat:
    WASM = "wasm"
    ZIP = "zip"
    TAR = "tar"


@dataclass
class ExtractResult:
    """What was written and where the module is, relative to the destination."""

    format: str
    module: str
    files: List[str] = field(default_factory=list)


def detect_format(data: bytes, filename: str = "") -> str:
    """
    Detect the container format from magic bytes, then from the filename.

    Raises:
        CorruptArchiveError: If the format is unknown
    """
    if data.startswith(WASM_MAGIC):
        return ArchiveFormat.WASM
    if data.startswith(b"PK\x03\x04") or data.startswith(b"PK\x05\x06"):
        return ArchiveFormat.ZIP
    if data[:2] == b"\x1f\x8b" or data[:6] == b"\xfd7zXZ\x00" or data[:3] == b"BZh":
        return ArchiveFormat.TAR
    if len(data) > 262 and data[257:262] == b"ustar":
        return ArchiveFormat.TAR

    name = filename.lower()
    if name.endswith(".wasm"):
        return ArchiveFormat.WASM
    if name.endswith(".zip"):
        return ArchiveFormat.ZIP
    if name.endswith((".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2")):
        return ArchiveFormat.TAR
    raise CorruptArchiveError(f"Unrecognized artifact format for '{filename or '<bytes>'}'")


def _safe_target(dest: Path, name: str) -> Path:
    """Resolve an entry name under dest or raise UnsafeArchiveEntryError."""
    if not name or "\x00" in name:
        raise UnsafeArchiveEntryError(name or "<empty>", "invalid name")

    normalized = name.replace("\\", "/")
    posix = PurePosixPath(normalized)
    if posix.is_absolute() or (len(normalized) > 1 and normalized[1] == ":"):
        raise UnsafeArchiveEntryError(name, "absolute path")
    if ".." in posix.parts:
        raise UnsafeArchiveEntryError(name, "parent directory traversal")

    target = (dest / Path(*posix.parts)).resolve() if posix.parts else dest.resolve()
    root = dest.resolve()
    if target != root and root not in target.parents:
        raise UnsafeArchiveEntryError(name)
    return target


class ArchiveExtractor:
    """
    Extracts plugin artifacts.

    Every entry is validated before anything is written; unsafe paths,
    symbolic links, and device entries are fatal.
    """

    def extract(
        self,
        source: Union[bytes, Path],
        dest: Path,
        plugin_id: Optional[str] = None,
        filename: str = "",
    ) -> ExtractResult:
        """
        Extract an artifact into dest (which should be a fresh temp directory).

        Raises:
            CorruptArchiveError: Unreadable or unknown archive
            UnsafeArchiveEntryError: Entry escapes dest
            ModuleNotFoundInArchiveError: No WASM module inside
        """
        if isinstance(source, Path):
            filename = filename or source.name
            data = source.read_bytes()
        else:
            data = source

        dest.mkdir(parents=True, exist_ok=True)
        archive_format = detect_format(data, filename)

        if archive_format == ArchiveFormat.WASM:
            (dest / MODULE_FILENAME).write_bytes(data)
            return ExtractResult(format=archive_format, module=MODULE_FILENAME, files=[MODULE_FILENAME])

        if archive_format == ArchiveFormat.ZIP:
            files = self._extract_zip(data, dest)
        else:
            files = self._extract_tar(data, dest)

        module = self._find_module(files, plugin_id)
        logger.debug(
            "Extracted archive",
            format=archive_format,
            files=len(files),
            module=module,
            dest=str(dest),
        )
        return ExtractResult(format=archive_format, module=module, files=files)

    def _extract_zip(self, data: bytes, dest: Path) -> List[str]:
        try:
            archive = zipfile.ZipFile(io.BytesIO(data))
        except zipfile.BadZipFile as e:
            raise CorruptArchiveError("Invalid zip archive", cause=e)

        with archive:
            infos = archive.infolist()
            targets = []
            for info in infos:
                target = _safe_target(dest, info.filename)
                mode = info.external_attr >> 16
                if stat.S_ISLNK(mode):
                    raise UnsafeArchiveEntryError(info.filename, "symbolic links are not allowed")
                targets.append((info, target))

            files = []
            try:
                for info, target in targets:
                    if info.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with archive.open(info) as src, open(target, "wb") as dst:
                        shutil.copyfileobj(src, dst)
                    files.append(target.relative_to(dest.resolve()).as_posix())
            except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, ValueError) as e:
                raise CorruptArchiveError("Corrupt zip entry", cause=e)
            return files

    def _extract_tar(self, data: bytes, dest: Path) -> List[str]:
        try:
            archive = tarfile.open(fileobj=io.BytesIO(data), mode="r:*")
        except (tarfile.TarError, EOFError, OSError) as e:
            raise CorruptArchiveError("Invalid tar archive", cause=e)

        with archive:
            try:
                members = archive.getmembers()
            except (tarfile.TarError, EOFError, OSError) as e:
                raise CorruptArchiveError("Corrupt tar archive", cause=e)

            root = dest.resolve()
            targets = []
            for member in members:
                target = _safe_target(dest, member.name)
                if member.isdev() or member.isfifo():
                    raise UnsafeArchiveEntryError(member.name, "device or fifo entry")
                if member.issym():
                    raise UnsafeArchiveEntryError(member.name, "symbolic links are not allowed")
                if member.islnk():
                    _safe_target(dest, member.linkname)
                targets.append((member, target))

            files = []
            try:
                for member, target in targets:
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if member.islnk():
                        shutil.copyfile(_safe_target(dest, member.linkname), target)
                    else:
                        src = archive.extractfile(member)
                        if src is None:
                            continue
                        with src, open(target, "wb") as dst:
                            shutil.copyfileobj(src, dst)
                    files.append(target.relative_to(root).as_posix())
            except (tarfile.TarError, EOFError) as e:
                raise CorruptArchiveError("Corrupt tar entry", cause=e)
            return files

    def _find_module(self, files: List[str], plugin_id: Optional[str]) -> str:
        modules = [f for f in files if f.endswith(".wasm")]
        if plugin_id:
            preferred = [f for f in modules if PurePosixPath(f).name == f"{plugin_id}.wasm"]
            if preferred:
                return min(preferred, key=len)
        if len(modules) == 1:
            return modules[0]
        if not modules:
            raise ModuleNotFoundInArchiveError("Archive contains no .wasm module", plugin_id=plugin_id)
        named = [f for f in modules if PurePosixPath(f).name == MODULE_FILENAME]
        if named:
            return min(named, key=len)
        raise ModuleNotFoundInArchiveError(
            f"Archive contains several modules ({', '.join(sorted(modules))}); "
            f"expected one named '{plugin_id}.wasm'",
            plugin_id=plugin_id,
        )
