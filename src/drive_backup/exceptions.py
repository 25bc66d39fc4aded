"""Exception types raised by the backup engine."""

from typing import Optional


class BackupError(Exception):
    """Base class for all backup errors."""


class ConfigError(BackupError):
    """Session cannot start: missing root folder, missing credentials, bad config."""


class RemoteAPIError(BackupError):
    """Non-success HTTP response from the storage API."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = truncate_body(body)

    def __str__(self) -> str:
        text = super().__str__()
        if self.status is not None:
            text = f"{text} (HTTP {self.status})"
        if self.body:
            text = f"{text}: {self.body}"
        return text


class AuthError(RemoteAPIError):
    """The API rejected the credentials (HTTP 401)."""


class FolderResolutionError(BackupError):
    """A remote folder could not be found or created."""


class TransientNetworkError(BackupError):
    """The remote host could not be reached."""


class TransientTimeout(BackupError):
    """A request timed out waiting on the socket."""


class ChunkTransportError(BackupError):
    """A chunk was rejected after exhausting its retries."""

    def __init__(self, message: str, status: Optional[int] = None, content_range: str = ""):
        super().__init__(message)
        self.status = status
        self.content_range = content_range


class UploadValidationError(BackupError):
    """Uploaded file metadata does not match the local file."""


class AuthPreflightError(BackupError):
    """Credentials are invalid and could not be refreshed before the session."""


class UploadCancelled(BackupError):
    """The session was stopped while a file was being uploaded."""


def truncate_body(body: Optional[str], limit: int = 300) -> str:
    """Shorten a response body for log lines."""
    if not body:
        return ""
    body = " ".join(body.split())
    if len(body) > limit:
        return body[:limit] + "..."
    return body
