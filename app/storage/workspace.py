# storage/workspace.py
from __future__ import annotations
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class Workspace:
    """Private temp tree of one job: input/, output/ and the packaged slides.zip."""
    base: Path

    @property
    def input_dir(self) -> Path:
        return self.base / "input"

    @property
    def output_dir(self) -> Path:
        return self.base / "output"

    @property
    def archive_path(self) -> Path:
        return self.base / "slides.zip"

    def ensure(self) -> "Workspace":
        self.input_dir.mkdir(parents=True, exist_ok=True)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        return self

def workspace_for(work_root: Path, job_id: str) -> Workspace:
    base = (Path(work_root) / job_id).resolve()
    if not is_inside(base, work_root):
        raise ValueError(f"Job id escapes the work root: {job_id!r}")
    return Workspace(base=base)

def is_inside(path: Path, root: Path) -> bool:
    """True iff `path` resolves strictly below `root` (never `root` itself)."""
    resolved = Path(path).resolve()
    root_resolved = Path(root).resolve()
    return resolved != root_resolved and resolved.is_relative_to(root_resolved)

def remove_tree(path: Path, root: Path) -> bool:
    """
    Deletes `path` recursively, but only after checking it lies inside `root`.
    Returns True if something was removed.
    """
    resolved = Path(path).resolve()
    if not is_inside(resolved, root):
        logger.error("Refusing to delete path outside work root: %s", resolved)
        return False
    if not resolved.exists():
        return False
    try:
        shutil.rmtree(resolved)
    except OSError as e:
        logger.warning("Failed to clean up %s: %s", resolved, e)
        return False
    logger.debug("Cleaned up %s", resolved)
    return True
