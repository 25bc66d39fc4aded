"""File utility functions."""

import hashlib
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class FileHelper:
    """Helper class for file operations."""

    @staticmethod
    def compute_md5(file_path: Path, block_size: int = 8192) -> Optional[str]:
        """Compute the hex MD5 digest of a file.

        Args:
            file_path: Path to the file
            block_size: Read buffer size

        Returns:
            Lowercase hex digest, or None if the file could not be read
        """
        md5 = hashlib.md5()
        try:
            with open(file_path, 'rb') as f:
                for block in iter(lambda: f.read(block_size), b''):
                    md5.update(block)
        except OSError as e:
            logger.error(f"Error computing md5 for {file_path}: {e}")
            return None
        return md5.hexdigest()

    @staticmethod
    def get_relative_dir(file_path: Path, base_path: Path) -> str:
        """Get the POSIX-style directory of a file relative to a base path.

        Args:
            file_path: Full file path
            base_path: Base path to calculate relative from

        Returns:
            Relative directory ("" if the file sits directly under base_path)
        """
        parent = file_path.parent
        if parent == base_path:
            return ""
        return parent.relative_to(base_path).as_posix()
