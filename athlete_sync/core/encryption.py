"""Token encryption utilities using Fernet symmetric encryption.

Provides encryption/decryption for OAuth tokens stored in the database.
"""

from __future__ import annotations

import base64
import os

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger


class EncryptionError(Exception):
    """Raised when encryption/decryption operations fail."""


class EncryptionKeyError(EncryptionError):
    """Raised when decryption fails due to wrong encryption key.

    This typically occurs when ENCRYPTION_KEY is not set or changed,
    causing tokens encrypted with a different key to fail decryption.
    """


def _get_encryption_key() -> bytes:
    """Get encryption key from environment or generate a new one.

    Returns:
        Fernet encryption key as bytes
    """
    key_env = os.getenv("ENCRYPTION_KEY")
    if key_env:
        return key_env.encode()

    logger.warning(
        "ENCRYPTION_KEY not set. Generating a new key (NOT suitable for production). "
        "Tokens stored with this key cannot be read after a restart."
    )
    return Fernet.generate_key()


_cipher: Fernet | None = None


def _get_cipher() -> Fernet:
    """Get or create the process-wide Fernet cipher."""
    global _cipher
    if _cipher is None:
        try:
            _cipher = Fernet(_get_encryption_key())
        except ValueError as e:
            raise EncryptionError("Invalid ENCRYPTION_KEY format. Must be a Fernet key (base64-encoded string).") from e
    return _cipher


def encrypt_token(token: str) -> str:
    """Encrypt a token string for storage.

    Raises:
        EncryptionError: If encryption fails
    """
    try:
        encrypted = _get_cipher().encrypt(token.encode())
        return base64.urlsafe_b64encode(encrypted).decode()
    except EncryptionError:
        raise
    except Exception as e:
        logger.error(f"Token encryption failed: {e}")
        raise EncryptionError(f"Failed to encrypt token: {e}") from e


def decrypt_token(encrypted_token: str) -> str:
    """Decrypt a token previously produced by encrypt_token.

    Raises:
        EncryptionKeyError: If decryption fails due to wrong encryption key
        EncryptionError: If decryption fails for other reasons
    """
    try:
        encrypted_bytes = base64.urlsafe_b64decode(encrypted_token.encode())
        return _get_cipher().decrypt(encrypted_bytes).decode()
    except InvalidToken as e:
        error_msg = (
            "Token decryption failed: wrong encryption key. "
            "ENCRYPTION_KEY is either unset or has changed; the athlete must reconnect."
        )
        logger.error(error_msg)
        raise EncryptionKeyError(error_msg) from e
    except EncryptionError:
        raise
    except Exception as e:
        logger.error(f"Token decryption failed: {e}")
        raise EncryptionError(f"Failed to decrypt token: {e}") from e
