"""Background service hosting backup sessions."""

from .launcher import BackupLauncher

__all__ = ["BackupLauncher"]
