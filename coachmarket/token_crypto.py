"""Fernet encryption for third-party OAuth tokens at rest"""

import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from .config import TOKEN_ENCRYPTION_KEY

logger = logging.getLogger(__name__)

fernet = Fernet(TOKEN_ENCRYPTION_KEY) if TOKEN_ENCRYPTION_KEY else None


def encrypt_token(token: Optional[str]) -> Optional[str]:
    """Encrypt an access or refresh token for storage"""
    if not token:
        return token
    if not fernet:
        logger.warning("TOKEN_ENCRYPTION_KEY not set, storing token in plain text")
        return token
    return fernet.encrypt(token.encode()).decode()


def decrypt_token(encrypted: Optional[str]) -> Optional[str]:
    """Decrypt a stored token for use"""
    if not fernet or not encrypted:
        return encrypted
    try:
        return fernet.decrypt(encrypted.encode()).decode()
    except InvalidToken:
        # Rows written before encryption was enabled
        logger.warning("⚠️ Stored token is not Fernet encrypted, using raw value")
        return encrypted
