"""Encryption at rest for provider access tokens (Fernet)."""
from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from codelink import config

logger = logging.getLogger("codelink.crypto")

_ephemeral_key: bytes | None = None


class TokenDecryptionError(Exception):
    """Stored token cannot be decrypted with the configured key."""


def _fernet() -> Fernet:
    global _ephemeral_key
    if config.TOKEN_ENCRYPTION_KEY:
        return Fernet(config.TOKEN_ENCRYPTION_KEY.encode())
    if _ephemeral_key is None:
        # Tokens stored under this key will not survive a restart.
        logger.warning("CODELINK_TOKEN_ENCRYPTION_KEY missing. Using a process-local key.")
        _ephemeral_key = Fernet.generate_key()
    return Fernet(_ephemeral_key)


def encrypt_token(token: str) -> str:
    """Encrypt a plain text token."""
    return _fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt an encrypted token."""
    try:
        return _fernet().decrypt(encrypted_token.encode()).decode()
    except InvalidToken as exc:
        raise TokenDecryptionError("Stored access token could not be decrypted") from exc
