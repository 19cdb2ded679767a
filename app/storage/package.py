# storage/package.py
from __future__ import annotations
import logging
import os
import tempfile
import zipfile
from pathlib import Path
from typing import List, Optional, Sequence

from core.errors import PackagingError
from worker.detector import natural_key

logger = logging.getLogger(__name__)

def collect_files(source_dir: Path) -> List[Path]:
    """All files below source_dir in natural order (slide-999.png before slide-1000.png)."""
    return sorted(
        (p for p in Path(source_dir).rglob("*") if p.is_file()),
        key=lambda p: natural_key(p.relative_to(source_dir).as_posix()),
    )

def package(
    source_dir: Path,
    archive_path: Optional[Path] = None,
    files: Optional[Sequence[Path]] = None,
) -> Path:
    """
    Zips source_dir into archive_path (default: <source_dir>.zip).

    `files` fixes the entry order, normally the paths in the order the
    slides were captured; without it every file below source_dir is added
    in natural order. The archive is built under a temporary name and
    renamed into place, so readers never see a partial file.
    """
    source_dir = Path(source_dir)
    archive_path = Path(archive_path) if archive_path else source_dir.with_suffix(".zip")

    if not source_dir.is_dir():
        raise PackagingError(f"Nothing to package: {source_dir} is not a directory")

    entries = [Path(f) for f in files] if files is not None else collect_files(source_dir)
    tmp_path: Optional[Path] = None
    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{archive_path.name}.", suffix=".part", dir=archive_path.parent
        )
        os.close(fd)
        tmp_path = Path(tmp_name)

        with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as zf:
            for f in entries:
                zf.write(f, arcname=f.relative_to(source_dir).as_posix())

        os.replace(tmp_path, archive_path)
        tmp_path = None
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        raise PackagingError(f"Failed to write output archive: {e}") from e
    finally:
        if tmp_path is not None and tmp_path.exists():
            tmp_path.unlink()

    logger.info("Packaged %d files into %s", len(entries), archive_path)
    return archive_path
