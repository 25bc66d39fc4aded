"""Authentication module for the Drive API."""

from .credentials import AuthCredential, CredentialStore
from .guard import AuthGuard

__all__ = ["AuthCredential", "CredentialStore", "AuthGuard"]
