# storage/archive.py
from __future__ import annotations
import io
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional

from core.errors import InvalidArchive, NoContent, PathTraversal
from storage.workspace import is_inside

logger = logging.getLogger(__name__)

SKIP_PATTERNS = ("__MACOSX", ".DS_Store", "Thumbs.db")
HTML_SUFFIXES = (".html", ".htm")
SUPPORTED_COMPRESSION = (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED, zipfile.ZIP_BZIP2, zipfile.ZIP_LZMA)

@dataclass
class ExtractResult:
    root_dir: Path
    files: List[str] = field(default_factory=list)

    @property
    def html_files(self) -> List[str]:
        return [f for f in self.files if f.lower().endswith(HTML_SUFFIXES)]

def should_skip(entry_name: str) -> bool:
    """OS metadata and dot-files never reach the content tree."""
    parts = [p for p in entry_name.replace("\\", "/").split("/") if p]
    if not parts:
        return True
    if any(pattern in entry_name for pattern in SKIP_PATTERNS):
        return True
    return any(p.startswith(".") and p not in (".", "..") for p in parts)

def resolve_entry(dest_dir: Path, entry_name: str) -> Path:
    """
    Maps a ZIP entry name onto the filesystem below dest_dir.
    Raises PathTraversal for anything that would land outside of it.
    """
    name = entry_name.replace("\\", "/")
    pure = PurePosixPath(name)
    if pure.is_absolute() or (len(name) > 1 and name[1] == ":"):
        raise PathTraversal(f"Zip path traversal detected: {entry_name}")

    root = dest_dir.resolve()
    target = (root / Path(*pure.parts)).resolve() if pure.parts else root
    if target != root and not is_inside(target, root):
        raise PathTraversal(f"Zip path traversal detected: {entry_name}")
    return target

def check_readable(info: zipfile.ZipInfo) -> None:
    """Encrypted entries and unknown compression methods cannot be extracted."""
    if info.flag_bits & 0x1:
        raise InvalidArchive(f"Encrypted entry {info.filename} is not supported")
    if info.compress_type not in SUPPORTED_COMPRESSION:
        raise InvalidArchive(
            f"Entry {info.filename} uses unsupported compression method {info.compress_type}"
        )

def looks_like_html(payload: bytes, filename: Optional[str]) -> bool:
    if filename and filename.lower().endswith(HTML_SUFFIXES):
        return True
    head = payload[:512].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html")

def extract(
    payload: bytes,
    dest_dir: Path,
    filename: Optional[str] = None,
    max_total_bytes: Optional[int] = None,
) -> ExtractResult:
    """
    Extracts an uploaded bundle into dest_dir.

    - ZIP archives: every entry name is validated before anything is written,
      junk entries are skipped, and a single shared top-level folder becomes
      the effective root.
    - A bare HTML upload is written as index.html.
    """
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)

    if not zipfile.is_zipfile(io.BytesIO(payload)):
        if looks_like_html(payload, filename):
            (dest_dir / "index.html").write_bytes(payload)
            logger.info("Single HTML upload stored as index.html")
            return ExtractResult(root_dir=dest_dir, files=["index.html"])
        raise InvalidArchive("Upload is not a valid ZIP archive")

    try:
        zf = zipfile.ZipFile(io.BytesIO(payload))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise InvalidArchive(f"Corrupt ZIP archive: {e}") from e

    with zf:
        entries = [info for info in zf.infolist() if not should_skip(info.filename)]

        # validate every entry before the first write
        targets = [(info, resolve_entry(dest_dir, info.filename)) for info in entries]
        for info in entries:
            if not info.is_dir():
                check_readable(info)

        if max_total_bytes is not None:
            total = sum(info.file_size for info in entries)
            if total > max_total_bytes:
                raise InvalidArchive(
                    f"Archive expands to {total} bytes, limit is {max_total_bytes}"
                )

        files: List[str] = []
        for info, target in targets:
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            try:
                target.write_bytes(zf.read(info))
            except (zipfile.BadZipFile, zlib.error, RuntimeError, NotImplementedError) as e:
                raise InvalidArchive(f"Corrupt entry {info.filename}: {e}") from e
            files.append(info.filename.replace("\\", "/"))

    result = ExtractResult(root_dir=detect_root(files, dest_dir), files=files)
    if not result.html_files:
        raise NoContent("No HTML files found in the ZIP archive")

    logger.info(
        "ZIP extracted: %d files, %d html, root=%s",
        len(files), len(result.html_files), result.root_dir,
    )
    return result

def detect_root(files: List[str], dest_dir: Path) -> Path:
    """If every file sits under one top-level directory, that directory is the root."""
    if not files:
        return dest_dir
    top_level = set()
    for f in files:
        parts = [p for p in f.split("/") if p]
        if len(parts) < 2:
            return dest_dir
        top_level.add(parts[0])
    if len(top_level) == 1:
        return dest_dir / top_level.pop()
    return dest_dir
