"""
Archive Guard - validation and safe extraction of uploaded ZIP archives.

Security:
- Pre-flight scan enforces file-count and uncompressed-size ceilings
  before a single byte is written
- Zip-slip prevention (absolute paths, drive letters, `..` segments)
- Symlink entries are never materialized
- Entries are streamed to disk, never buffered whole
"""
import logging
import posixpath
import stat
import zipfile
import zlib
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, Optional, Union

from buildfarm.core.errors import (
    InvalidArchiveError,
    PathTraversalError,
    TooLargeError,
    TooManyFilesError,
)

logger = logging.getLogger(__name__)

ArchiveSource = Union[str, Path, BinaryIO]

# OS-generated housekeeping files that never belong to a project
METADATA_DIRS = {"__MACOSX"}
METADATA_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}

# Directories never searched for a project manifest
SKIP_SEARCH_DIRS = {"node_modules"}

COPY_CHUNK_BYTES = 64 * 1024

# Raised by zipfile while reading a damaged, encrypted or unsupported entry,
# or by the filesystem when a file and a directory share a name
ENTRY_READ_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    RuntimeError,
    NotImplementedError,
    EOFError,
    FileExistsError,
    IsADirectoryError,
    NotADirectoryError,
)


@dataclass
class ArchiveEntry:
    """One file entry of an archive (validation only)."""
    path: str
    size: int
    compressed_size: int


@dataclass
class ArchiveScan:
    """Result of the pre-flight scan."""
    file_count: int = 0
    total_uncompressed_bytes: int = 0
    entries: list[ArchiveEntry] = field(default_factory=list)


def is_metadata_entry(name: str) -> bool:
    """Check if an entry is OS housekeeping (resource forks, Finder files)."""
    parts = [p for p in name.replace("\\", "/").split("/") if p]
    if not parts:
        return False
    if any(p in METADATA_DIRS for p in parts):
        return True
    basename = parts[-1]
    return basename in METADATA_FILES or basename.startswith("._")


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    mode = info.external_attr >> 16
    return stat.S_ISLNK(mode)


def normalize_entry_path(name: str) -> str:
    """
    Normalize an archive entry name to a safe relative POSIX path.

    Raises:
        PathTraversalError: If the entry is absolute or escapes the root
    """
    unified = name.replace("\\", "/")
    if unified.startswith("/") or (len(unified) > 1 and unified[1] == ":"):
        raise PathTraversalError(name)

    normalized = posixpath.normpath(unified)
    if normalized == ".." or normalized.startswith("../"):
        raise PathTraversalError(name)
    return normalized


class ArchiveGuard:
    """Validates and extracts untrusted ZIP uploads."""

    def __init__(
        self,
        max_files: int,
        max_uncompressed_bytes: int,
        max_archive_bytes: Optional[int] = None,
    ):
        self.max_files = max_files
        self.max_uncompressed_bytes = max_uncompressed_bytes
        self.max_archive_bytes = max_archive_bytes

    def check_upload_size(self, num_bytes: int) -> None:
        """Reject uploads larger than the configured archive ceiling."""
        if self.max_archive_bytes is not None and num_bytes > self.max_archive_bytes:
            raise TooLargeError(num_bytes, self.max_archive_bytes, what="Archive size")

    def _open(self, archive: ArchiveSource) -> zipfile.ZipFile:
        try:
            return zipfile.ZipFile(archive, "r")
        except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
            raise InvalidArchiveError(f"Invalid ZIP archive: {e}") from e

    def _scan(self, zf: zipfile.ZipFile) -> ArchiveScan:
        result = ArchiveScan()
        for info in zf.infolist():
            if info.is_dir() or is_metadata_entry(info.filename):
                continue

            result.file_count += 1
            if result.file_count > self.max_files:
                raise TooManyFilesError(result.file_count, self.max_files)

            # Declared sizes only; extraction re-checks the bytes actually written
            result.total_uncompressed_bytes += info.file_size
            if result.total_uncompressed_bytes > self.max_uncompressed_bytes:
                raise TooLargeError(result.total_uncompressed_bytes, self.max_uncompressed_bytes)

            result.entries.append(ArchiveEntry(
                path=info.filename,
                size=info.file_size,
                compressed_size=info.compress_size,
            ))
        return result

    def scan(self, archive: ArchiveSource) -> ArchiveScan:
        """
        Iterate every entry without writing anything.

        Raises:
            TooManyFilesError: File count exceeds the ceiling
            TooLargeError: Cumulative uncompressed size exceeds the ceiling
            InvalidArchiveError: Not a readable ZIP
        """
        with self._open(archive) as zf:
            return self._scan(zf)

    def extract(self, archive: ArchiveSource, dest_dir: Path) -> int:
        """
        Extract an archive into dest_dir.

        Returns:
            Number of files written

        Raises:
            PathTraversalError: Any entry would land outside dest_dir
            InvalidArchiveError: An entry cannot be read or written
        """
        dest_dir = Path(dest_dir)
        dest_dir.mkdir(parents=True, exist_ok=True)
        root = dest_dir.resolve()

        with self._open(archive) as zf:
            self._scan(zf)

            # Validate every path before writing the first file
            plan: list[tuple[zipfile.ZipInfo, Path]] = []
            for info in zf.infolist():
                relative = normalize_entry_path(info.filename)
                target = (root / relative).resolve()
                if target != root and root not in target.parents:
                    raise PathTraversalError(info.filename)
                if relative == "." or info.is_dir() or is_metadata_entry(info.filename):
                    continue
                if _is_symlink(info):
                    logger.warning(f"archive_symlink_skipped entry={relative}")
                    continue
                plan.append((info, target))

            written = 0
            total = 0
            for info, target in plan:
                try:
                    total = self._copy_entry(zf, info, target, total)
                except ENTRY_READ_ERRORS as e:
                    raise InvalidArchiveError(
                        f"Cannot extract entry {info.filename}: {type(e).__name__}"
                    ) from e
                written += 1

        logger.info(f"archive_extracted files={written} bytes={total}")
        return written

    def _copy_entry(self, zf: zipfile.ZipFile, info: zipfile.ZipInfo, target: Path, total: int) -> int:
        """Stream one entry to target. Returns the running uncompressed total."""
        target.parent.mkdir(parents=True, exist_ok=True)
        with zf.open(info, "r") as src, open(target, "wb") as dst:
            while True:
                chunk = src.read(COPY_CHUNK_BYTES)
                if not chunk:
                    break
                total += len(chunk)
                if total > self.max_uncompressed_bytes:
                    raise TooLargeError(total, self.max_uncompressed_bytes)
                dst.write(chunk)
        return total


def locate_project_root(
    dest_dir: Path,
    manifest: str = "package.json",
    max_depth: int = 4,
) -> Optional[Path]:
    """
    Find the shallowest directory containing a build manifest.

    Breadth-first up to max_depth levels below dest_dir (dest_dir itself is
    depth 0). Among candidates at the same depth the lexically first wins.
    """
    dest_dir = Path(dest_dir)
    queue: deque[tuple[Path, int]] = deque([(dest_dir, 0)])

    while queue:
        directory, depth = queue.popleft()
        if (directory / manifest).is_file():
            return directory
        if depth >= max_depth:
            continue
        try:
            children = sorted(
                p for p in directory.iterdir()
                if p.is_dir() and not p.is_symlink()
            )
        except OSError:
            continue
        for child in children:
            if child.name in SKIP_SEARCH_DIRS or child.name.startswith("."):
                continue
            if child.name in METADATA_DIRS:
                continue
            queue.append((child, depth + 1))

    return None


__all__ = [
    "ArchiveEntry",
    "ArchiveGuard",
    "ArchiveScan",
    "locate_project_root",
    "normalize_entry_path",
    "is_metadata_entry",
]
