"""Bounded per-session log that is persisted alongside the backup state.

The recorder keeps the most recent lines of a backup session in memory
(oldest lines are evicted first) and writes them to ``session_log_*`` files
when the session ends. Large logs are gzip-compressed and only the newest
files are retained.
"""

import gzip
import threading
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Tuple, Union

from ..config.settings import LogLevel
from .logging import get_logger

session_logger = get_logger("session")

SESSION_LOG_PREFIX = "session_log_"
MAX_LINES = 4000
COMPRESS_THRESHOLD_BYTES = 64 * 1024
MAX_HISTORY = 30


class SessionRecorder:
    """Ring buffer of ``timestamp | level | message`` lines."""

    def __init__(self, level: Union[LogLevel, str] = LogLevel.INFO, capacity: int = MAX_LINES):
        self._lines = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._level = LogLevel(level)

    @property
    def level(self) -> LogLevel:
        return self._level

    def set_level(self, level: str) -> bool:
        """Change the capture level.

        Args:
            level: ``INFO`` or ``DEBUG`` (case-insensitive)

        Returns:
            True if the level was recognised and applied
        """
        try:
            self._level = LogLevel(level.upper())
        except (ValueError, AttributeError):
            return False
        return True

    def log(self, message: str) -> None:
        """Record an INFO line."""
        self._add(LogLevel.INFO, message)
        session_logger.info(message)

    def debug(self, message: str) -> None:
        """Record a DEBUG line if the recorder is at DEBUG level."""
        if self._level == LogLevel.DEBUG:
            self._add(LogLevel.DEBUG, message)
        session_logger.debug(message)

    def _add(self, level: LogLevel, message: str) -> None:
        line = f"{datetime.now().strftime('%H:%M:%S')} | {level.value} | {message}"
        with self._lock:
            self._lines.append(line)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)

    def persist(self, directory: Path, file_name: str) -> str:
        """Write the buffered lines to ``directory/file_name``.

        Files larger than 64 KiB are gzip-compressed and stored with a
        ``.gz`` suffix; the uncompressed file is removed. Retention is
        enforced after every write.

        Args:
            directory: Target directory (created if missing)
            file_name: Base file name, e.g. ``session_log_<ms>_ok.txt``

        Returns:
            Name of the file actually written

        Raises:
            OSError: If the log cannot be written
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        text = self.text()
        out_file = directory / file_name
        out_file.write_text(text, encoding="utf-8")
        final_file = out_file

        if out_file.stat().st_size > COMPRESS_THRESHOLD_BYTES:
            gz_file = directory / f"{file_name}.gz"
            with gzip.open(gz_file, "wt", encoding="utf-8") as f:
                f.write(text)
            out_file.unlink()
            final_file = gz_file

        enforce_retention(directory)
        return final_file.name


def enforce_retention(directory: Path, max_history: int = MAX_HISTORY) -> List[str]:
    """Delete all but the ``max_history`` most recently modified session logs.

    Returns:
        Names of the deleted files
    """
    logs = [p for p in Path(directory).iterdir()
            if p.is_file() and p.name.startswith(SESSION_LOG_PREFIX)]
    if len(logs) <= max_history:
        return []

    logs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    deleted = []
    for stale in logs[max_history:]:
        try:
            stale.unlink()
            deleted.append(stale.name)
        except OSError as e:
            session_logger.warning(f"Could not delete old session log {stale.name}: {e}")
    return deleted


def list_logs(directory: Path) -> List[Tuple[str, int, float]]:
    """List persisted session logs as ``(name, size, modified)``, newest first."""
    directory = Path(directory)
    if not directory.is_dir():
        return []
    entries = []
    for p in directory.iterdir():
        if p.is_file() and p.name.startswith(SESSION_LOG_PREFIX):
            stat = p.stat()
            entries.append((p.name, stat.st_size, stat.st_mtime))
    entries.sort(key=lambda e: e[2], reverse=True)
    return entries


def read_log(directory: Path, name: str) -> Optional[str]:
    """Read a persisted session log, decompressing ``.gz`` files.

    Only plain ``session_log_*`` file names inside ``directory`` are served.

    Returns:
        Log text, or None if the file does not exist or the name is not a
        session log name
    """
    if not name.startswith(SESSION_LOG_PREFIX) or any(sep in name for sep in ("/", "\\", "..")):
        session_logger.warning(f"Refusing to read session log with invalid name: {name!r}")
        return None
    path = Path(directory) / name
    if not path.is_file():
        return None
    if path.name.endswith(".gz"):
        with gzip.open(path, "rt", encoding="utf-8") as f:
            return f.read()
    return path.read_text(encoding="utf-8")
