"""Local directory scanning."""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..utils.file_utils import FileHelper

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalFile:
    """A regular file selected for backup."""
    path: Path
    name: str
    size: int
    relative_dir: str  # POSIX separators, "" for files directly under the root


def _on_walk_error(error: OSError) -> None:
    logger.warning(f"Cannot read directory {error.filename}: {error.strerror}")


def iter_files(root: Path, max_size_bytes: int) -> Iterator[LocalFile]:
    """Yield regular files under ``root`` no larger than ``max_size_bytes``.

    Directories are always descended; oversized files are left out. The walk
    is sorted so repeated calls visit files in the same order. The sequence
    is lazy and reflects the tree as it is when each directory is reached.
    """
    root = Path(root)
    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_walk_error):
        dirnames.sort()
        current = Path(dirpath)
        for name in sorted(filenames):
            path = current / name
            try:
                if not path.is_file():
                    continue
                size = path.stat().st_size
            except OSError as e:
                logger.warning(f"Skipping unreadable file {path}: {e}")
                continue
            if size > max_size_bytes:
                continue
            yield LocalFile(
                path=path,
                name=name,
                size=size,
                relative_dir=FileHelper.get_relative_dir(path, root),
            )


def count_files(root: Path, max_size_bytes: int) -> int:
    """Count the files ``iter_files`` would yield right now."""
    return sum(1 for _ in iter_files(root, max_size_bytes))
