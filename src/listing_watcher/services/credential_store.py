"""Encrypted per-user, per-service login credentials."""

import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy.orm import Session, sessionmaker

from listing_watcher.database.repository import CredentialRepository
from listing_watcher.errors import CredentialError, CredentialNotFoundError
from listing_watcher.models.pydantic_models import Credential

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_ENV = "WATCHER_ENCRYPTION_KEY"


def load_fernet(key: str | bytes | None = None) -> Fernet:
    """Build the cipher from an explicit key or WATCHER_ENCRYPTION_KEY.

    Raises:
        RuntimeError: If no key is configured.
    """
    key = key or os.environ.get(ENCRYPTION_KEY_ENV)
    if not key:
        raise RuntimeError(
            f"{ENCRYPTION_KEY_ENV} is not set; generate one with "
            "`python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'`"
        )
    return Fernet(key)


class CredentialStore:
    """Decrypt-on-demand access to stored credentials.

    Plaintext only exists in the returned Credential objects; rows hold
    Fernet tokens.
    """

    def __init__(self, session_factory: sessionmaker[Session], fernet: Fernet) -> None:
        self._session_factory = session_factory
        self._fernet = fernet

    def save_credential(self, user_id: int, service_id: int, username: str, password: str) -> int:
        """Encrypt and store a credential. Returns the credential id."""
        with self._session_factory() as session:
            credential = CredentialRepository(session).upsert_credential(
                user_id=user_id,
                service_id=service_id,
                username_encrypted=self._encrypt(username),
                password_encrypted=self._encrypt(password),
            )
            return credential.id

    def get_decrypted_credential(self, user_id: int, service_id: int) -> Credential:
        """Return the decrypted credential for the pair.

        Raises:
            CredentialNotFoundError: No credential, or it was invalidated.
            CredentialError: Stored tokens cannot be decrypted with the current key.
        """
        with self._session_factory() as session:
            row = CredentialRepository(session).get_credential(user_id, service_id)
            if row is None or not row.is_valid:
                raise CredentialNotFoundError(user_id, service_id)

            try:
                return Credential(
                    credential_id=row.id,
                    username=self._decrypt(row.username_encrypted),
                    password=self._decrypt(row.password_encrypted),
                )
            except InvalidToken as e:
                logger.error("Credential %d cannot be decrypted with the configured key", row.id)
                raise CredentialError("stored credential cannot be decrypted") from e

    def record_failure(self, credential_id: int, error: str, threshold: int) -> bool:
        """Count a login failure; invalidate at the threshold.

        Returns:
            True if the credential was invalidated by this call.
        """
        with self._session_factory() as session:
            repo = CredentialRepository(session)
            count = repo.record_failure(credential_id, error)
            if count >= threshold:
                repo.invalidate(credential_id, error)
                logger.warning(
                    "Credential %d invalidated after %d login failures", credential_id, count
                )
                return True
        return False

    def reset_failures(self, credential_id: int) -> None:
        with self._session_factory() as session:
            CredentialRepository(session).reset_failures(credential_id)

    def invalidate(self, credential_id: int, reason: str) -> None:
        """Mark a credential unusable until the user saves it again."""
        with self._session_factory() as session:
            CredentialRepository(session).invalidate(credential_id, reason)

    def _encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def _decrypt(self, token: str) -> str:
        return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
