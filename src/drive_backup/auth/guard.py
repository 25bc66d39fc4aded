"""Credential preflight, passive refresh and auth-failure tracking."""

import logging
from typing import Optional

from ..exceptions import AuthPreflightError, TransientNetworkError, TransientTimeout
from ..utils.session_log import SessionRecorder
from .credentials import AuthCredential, CredentialStore

logger = logging.getLogger(__name__)

SIGN_IN_AGAIN = "Authentication expired - please sign in again"


class AuthGuard:
    """Validates and refreshes credentials for one backup session.

    Keeps a count of consecutive upload-initiation auth failures. Reaching
    ``threshold`` latches ``aborted``, which stops the session.
    """

    def __init__(self, api, credential: AuthCredential, store: CredentialStore,
                 threshold: int = 5, recorder: Optional[SessionRecorder] = None):
        """Initialize the guard.

        Args:
            api: CloudStorageAPI used for the probe request
            credential: Shared auth header cell
            store: Source of refreshed headers
            threshold: Consecutive auth failures that abort the session
            recorder: Session log
        """
        self.api = api
        self.credential = credential
        self.store = store
        self.threshold = threshold
        self.recorder = recorder or SessionRecorder()
        self.consecutive_failures = 0
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    def validate(self) -> bool:
        """Probe the API with the current credentials.

        Only a 401 counts as invalid; network trouble is not an auth problem.
        """
        try:
            status = self.api.probe()
        except (TransientNetworkError, TransientTimeout) as e:
            logger.warning(f"Auth probe could not reach the API, assuming valid: {e}")
            self.recorder.log(f"AUTH probe network error ({e.__class__.__name__}), treating as valid")
            return True
        self.recorder.debug(f"AUTH probe status={status}")
        return status != 401

    def refresh(self) -> bool:
        """Re-read the credential store.

        Returns:
            True only if the stored headers differ from the ones in use
        """
        try:
            headers = self.store.load()
        except Exception as e:
            logger.error(f"Failed to reload credentials: {e}")
            self.recorder.log(f"AUTH refresh failed to load credentials: {e}")
            return False

        if not headers or headers == self.credential.headers:
            self.recorder.log("AUTH refresh produced no new credentials")
            return False

        self.credential.swap(headers)
        logger.info("🔄 Auth headers refreshed from credential store")
        self.recorder.log("AUTH credentials refreshed")
        return True

    def preflight(self) -> None:
        """Validate before any file is touched, refreshing once if needed.

        Raises:
            AuthPreflightError: If credentials remain invalid after a refresh
        """
        if self.validate():
            self.recorder.log("AUTH preflight ok")
            return
        self.recorder.log("AUTH preflight got 401, attempting refresh")
        if self.refresh() and self.validate():
            self.recorder.log("AUTH preflight ok after refresh")
            return
        self.recorder.log("ERROR auth preflight failed, aborting session")
        raise AuthPreflightError(SIGN_IN_AGAIN)

    def record_auth_failure(self) -> bool:
        """Count one upload initiation that failed auth after its retry.

        Returns:
            True if the session must abort
        """
        self.consecutive_failures += 1
        self.recorder.log(f"AUTH failure consecutive={self.consecutive_failures}/{self.threshold}")
        if self.consecutive_failures >= self.threshold and not self._aborted:
            self._aborted = True
            logger.error(f"❌ {self.consecutive_failures} consecutive auth failures, aborting session")
            self.recorder.log("ERROR auth failure threshold reached, aborting session")
        return self._aborted

    def record_auth_success(self) -> None:
        if self.consecutive_failures:
            self.recorder.debug(f"AUTH failure streak reset after {self.consecutive_failures}")
        self.consecutive_failures = 0
