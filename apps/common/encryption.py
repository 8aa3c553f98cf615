"""
Encryption utilities for the fiscal platform
Fernet encryption for credentials stored in the database (WSAA token and sign).
"""

import base64
import logging
import os

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)


def get_encryption_key() -> bytes:
    """
    Fernet key from settings.ENCRYPTION_KEY, falling back to DJANGO_ENCRYPTION_KEY.
    """
    encryption_key = getattr(settings, 'ENCRYPTION_KEY', None) or os.environ.get('DJANGO_ENCRYPTION_KEY')

    if not encryption_key:
        raise ImproperlyConfigured(
            "DJANGO_ENCRYPTION_KEY environment variable must be set. "
            "Generate one with: from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
        )

    if isinstance(encryption_key, str):
        encryption_key = encryption_key.encode()

    return encryption_key


def encrypt_sensitive_data(data: str) -> str:
    """
    Encrypt a credential for database storage.

    Returns a base64 string safe for a TextField; empty input stays empty.
    """
    if not data:
        return ''

    fernet = Fernet(get_encryption_key())
    encrypted_bytes = fernet.encrypt(data.encode('utf-8'))
    return base64.b64encode(encrypted_bytes).decode('utf-8')


def decrypt_sensitive_data(encrypted_data: str) -> str:
    """
    Decrypt a value written by ``encrypt_sensitive_data``.

    Returns '' when the value cannot be decrypted (rotated key, corrupted
    row); callers treat that as "no credential stored".
    """
    if not encrypted_data:
        return ''

    try:
        fernet = Fernet(get_encryption_key())
        encrypted_bytes = base64.b64decode(encrypted_data.encode('utf-8'))
        return fernet.decrypt(encrypted_bytes).decode('utf-8')
    except (InvalidToken, ValueError) as e:
        # Don't expose decryption details
        logger.error(f"🔥 [Encryption] Failed to decrypt sensitive data: {type(e).__name__}")
        return ''
