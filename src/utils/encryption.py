"""
Encryption for stored OAuth credentials (refresh and access tokens).
Uses Fernet symmetric encryption with the configured ENCRYPTION_KEY.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


def _get_fernet() -> Optional[Fernet]:
    from src.config import get_settings

    key = get_settings().encryption_key
    if not key:
        return None
    return Fernet(key.encode() if isinstance(key, str) else key)


def encrypt_token(plaintext: Optional[str]) -> Optional[str]:
    """
    Encrypt a credential for storage.
    Without an ENCRYPTION_KEY the value is stored as-is.
    """
    if not plaintext:
        return plaintext

    fernet = _get_fernet()
    if fernet is None:
        return plaintext
    return fernet.encrypt(plaintext.encode()).decode()


def decrypt_token(stored: Optional[str]) -> Optional[str]:
    """
    Decrypt a stored credential.
    Values that are not Fernet tokens (seeded before encryption was enabled)
    are returned unchanged.
    """
    if not stored:
        return stored

    fernet = _get_fernet()
    if fernet is None:
        return stored

    try:
        return fernet.decrypt(stored.encode()).decode()
    except InvalidToken:
        return stored
