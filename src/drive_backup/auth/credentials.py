"""Credential storage and the shared auth-header cell."""

import logging
import threading
from pathlib import Path
from typing import Dict, Optional, Union

from ..config.settings import CredentialsConfig

logger = logging.getLogger(__name__)


class AuthCredential:
    """Single mutable holder of the auth headers sent with every API call.

    Network calls read ``headers``; only the auth guard swaps in a new value.
    """

    def __init__(self, headers: Optional[Dict[str, str]] = None):
        self._headers: Dict[str, str] = dict(headers or {})
        self._lock = threading.Lock()

    @property
    def headers(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._headers)

    def swap(self, headers: Dict[str, str]) -> bool:
        """Replace the headers.

        Returns:
            True if the new value differs from the current one
        """
        with self._lock:
            changed = dict(headers) != self._headers
            self._headers = dict(headers)
        return changed

    def __bool__(self) -> bool:
        return bool(self._headers)


class CredentialStore:
    """Reads auth headers from a credentials file, falling back to environment.

    Refresh is passive: whoever owns the sign-in rewrites the file, and the
    engine re-reads it through ``load``.
    """

    def __init__(self, credentials_path: Optional[Union[str, Path]] = None, use_env: bool = True):
        self.credentials_path = Path(credentials_path) if credentials_path else None
        self.use_env = use_env

    def load(self) -> Dict[str, str]:
        """Load the current auth headers.

        Returns:
            Header map; empty if no credentials are configured
        """
        headers: Dict[str, str] = {}
        if self.credentials_path is not None:
            headers = CredentialsConfig.from_yaml(self.credentials_path).auth_headers
        if not headers and self.use_env:
            headers = CredentialsConfig.from_env().auth_headers
        return dict(headers)

    def save(self, headers: Dict[str, str]) -> None:
        """Persist new auth headers to the credentials file."""
        if self.credentials_path is None:
            raise ValueError("No credentials file configured")
        CredentialsConfig(auth_headers=headers).to_yaml(self.credentials_path)
        logger.info(f"Saved {len(headers)} auth header(s) to {self.credentials_path}")
