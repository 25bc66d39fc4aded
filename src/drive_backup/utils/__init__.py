"""Utility functions and helpers."""

from .logging import setup_logging
from .file_utils import FileHelper
from .session_log import SessionRecorder

__all__ = ["setup_logging", "FileHelper", "SessionRecorder"]
