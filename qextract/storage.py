"""
Filesystem Storage Layout
=========================
Directory layout and best-effort file helpers shared by the pipeline.

Directory Layout:
    <root>/
    ├── uploads/            # Incoming PDFs, removed after a successful run
    ├── temp/
    │   └── {group_id}/     # Per-run scratch area for page images
    └── questions/
        └── {group_id}/     # Cropped question images per document
"""

from __future__ import annotations

import logging
import re
import shutil
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_GROUP_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

# Upper bound on threads used for bulk deletion
MAX_DELETE_WORKERS = 8


@dataclass(frozen=True)
class StorageLayout:
    """Resolved storage directories under a single root."""

    root: Path

    @classmethod
    def at(cls, root: str | Path) -> StorageLayout:
        return cls(Path(root).absolute())

    @property
    def uploads_dir(self) -> Path:
        return self.root / "uploads"

    @property
    def temp_dir(self) -> Path:
        return self.root / "temp"

    @property
    def questions_dir(self) -> Path:
        return self.root / "questions"

    def init(self):
        """Ensure the top-level directories exist."""
        for directory in (self.uploads_dir, self.temp_dir, self.questions_dir):
            directory.mkdir(parents=True, exist_ok=True)
        logger.info(f"Storage initialized: {self.root}")

    def scratch_dir(self, group_id: str) -> Path:
        """Per-run scratch directory. Not created here."""
        return self.temp_dir / validate_group_id(group_id)

    def group_dir(self, group_id: str) -> Path:
        """Per-document image directory. Not created here."""
        return self.questions_dir / validate_group_id(group_id)


# ─── Group IDs ────────────────────────────────────────────────────────────────


def new_group_id() -> str:
    """Generate a fresh storage namespace for one run."""
    return uuid.uuid4().hex


def validate_group_id(group_id: str) -> str:
    """Reject group ids that could escape their storage partition."""
    if not group_id or not _GROUP_ID_PATTERN.match(group_id):
        raise ValueError(f"Invalid group id: {group_id!r}")
    return group_id


def unique_token() -> str:
    return uuid.uuid4().hex


# ─── Uploads ──────────────────────────────────────────────────────────────────


def save_uploaded_file(file_obj, filename: str, layout: StorageLayout) -> Path:
    """
    Save a Flask upload object into uploads/.
    Returns the absolute path to the saved file.
    """
    layout.uploads_dir.mkdir(parents=True, exist_ok=True)
    dest = layout.uploads_dir / sanitize_name(filename)
    file_obj.save(str(dest))
    logger.info(f"Uploaded PDF saved: {dest}")
    return dest


def sanitize_name(name: str) -> str:
    """Sanitize a name for filesystem use."""
    return "".join(
        c if c.isalnum() or c in "-_. " else "_"
        for c in name
    ).strip().replace(" ", "_")[:100]


# ─── Deletion ─────────────────────────────────────────────────────────────────


def remove_file(path: str | Path) -> bool:
    """
    Delete a single file. A file that is already gone counts as deleted.
    Returns True if this call removed it.
    """
    try:
        Path(path).unlink()
    except FileNotFoundError:
        logger.debug(f"Already removed: {path}")
        return False
    return True


def remove_files(paths: Iterable[str | Path]) -> int:
    """
    Delete many independent files in parallel.
    Returns the number of files actually removed.
    """
    paths = list(paths)
    if not paths:
        return 0
    workers = min(MAX_DELETE_WORKERS, len(paths))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        removed = sum(pool.map(remove_file, paths))
    logger.debug(f"Removed {removed}/{len(paths)} files")
    return removed


def remove_tree(path: str | Path) -> bool:
    """
    Recursively delete a directory. Missing directories are not an error.
    Returns True if something was removed.
    """
    path = Path(path)
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        return False
    return True
