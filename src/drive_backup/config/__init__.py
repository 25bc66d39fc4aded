"""Configuration management for the drive backup application."""

from .settings import BackupConfig, CredentialsConfig, LogLevel, SessionRequest, UploadOptions

__all__ = ["BackupConfig", "CredentialsConfig", "LogLevel", "SessionRequest", "UploadOptions"]
