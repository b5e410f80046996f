"""Credential encryption utilities.

PPPoE passwords and router passwords are stored as Fernet tokens with an
``enc:`` prefix. There is no plaintext fallback: encrypting without a
configured key is an error.
"""

from __future__ import annotations

import logging
import os

from cryptography.fernet import Fernet, InvalidToken

_ENCRYPTION_KEY_ENV = "CREDENTIAL_ENCRYPTION_KEY"
_PREFIX = "enc:"
_logger = logging.getLogger(__name__)


class CredentialKeyMissing(RuntimeError):
    pass


def get_encryption_key() -> bytes:
    """Return the Fernet key from CREDENTIAL_ENCRYPTION_KEY.

    Raises:
        CredentialKeyMissing: if the variable is unset or empty
    """
    key_str = os.environ.get(_ENCRYPTION_KEY_ENV)
    if not key_str:
        _logger.error("CREDENTIAL_ENCRYPTION_KEY not configured")
        raise CredentialKeyMissing(
            "CREDENTIAL_ENCRYPTION_KEY must be set to store credentials"
        )
    return key_str.encode("ascii")


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key.

    Use this to generate a key for the CREDENTIAL_ENCRYPTION_KEY env var:
        python -c "from app.services.credential_crypto import generate_encryption_key; print(generate_encryption_key())"
    """
    return Fernet.generate_key().decode("ascii")


def is_encrypted(value: str | None) -> bool:
    if not value:
        return False
    return value.startswith(_PREFIX)


def encrypt_credential(value: str | None) -> str | None:
    """Encrypt a credential for storage at rest.

    Returns None/empty input unchanged and never double-encrypts.
    """
    if not value:
        return value
    if is_encrypted(value):
        return value
    fernet = Fernet(get_encryption_key())
    encrypted = fernet.encrypt(value.encode("utf-8"))
    return f"{_PREFIX}{encrypted.decode('ascii')}"


def decrypt_credential(value: str | None) -> str | None:
    """Decrypt a stored credential.

    Raises:
        ValueError: if the value is not an encrypted token or decryption fails
    """
    if not value:
        return value
    if not is_encrypted(value):
        raise ValueError("Stored credential is not encrypted")
    fernet = Fernet(get_encryption_key())
    try:
        decrypted = fernet.decrypt(value[len(_PREFIX):].encode("ascii"))
        return decrypted.decode("utf-8")
    except InvalidToken as e:
        raise ValueError("Failed to decrypt credential: invalid token") from e
