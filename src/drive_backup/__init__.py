"""
Drive Backup Application

Incremental backup of a local directory tree to a cloud drive using
resumable chunked uploads, content-hash deduplication and session logs.
"""

__version__ = "1.0.0"
__author__ = "Drive Backup Tool"
__description__ = "Incremental backup of local folders to a cloud drive"

from .config.settings import BackupConfig
from .service.launcher import BackupLauncher
from .sync.backup_session import BackupSession

__all__ = ["BackupConfig", "BackupLauncher", "BackupSession"]
