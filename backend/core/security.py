"""
ShelfSync Security Utilities

Encryption for Square OAuth tokens stored on merchants.
"""

import base64
import hashlib

from cryptography.fernet import Fernet

from core.config import DEFAULT_ENCRYPTION_KEY, get_settings

settings = get_settings()

# Dev key must be deterministic so all processes (API, workers, beat) share the same key.
if settings.encryption_key == DEFAULT_ENCRYPTION_KEY:
    _dev_key = base64.urlsafe_b64encode(hashlib.sha256(b"shelfsync-dev-key-not-for-production").digest())
    _fernet = Fernet(_dev_key)
else:
    _fernet = Fernet(settings.encryption_key.encode())


def encrypt(plaintext: str) -> str:
    """Encrypt sensitive data (OAuth tokens, etc)."""
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    """Decrypt sensitive data."""
    return _fernet.decrypt(ciphertext.encode()).decode()
