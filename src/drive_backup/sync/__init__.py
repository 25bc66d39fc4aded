"""Backup engine: scanning, deduplication, folder mapping and uploads."""

from .backup_session import BackupSession, SessionResult, SessionState
from .dedup_index import DedupCatalog, DedupIndex
from .events import EventChannel
from .upload_session import UploadSession

__all__ = [
    "BackupSession",
    "SessionResult",
    "SessionState",
    "DedupCatalog",
    "DedupIndex",
    "EventChannel",
    "UploadSession",
]
