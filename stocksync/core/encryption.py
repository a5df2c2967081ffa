"""SQLAlchemy TypeDecorator for transparent Fernet encryption of OAuth tokens at rest."""

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import Text, TypeDecorator

from stocksync.core.config import get_settings

logger = logging.getLogger(__name__)

_SALT = b"stocksync-token-encryption-v1"


@lru_cache(maxsize=4)
def _fernet_for(secret_key: str) -> Fernet:
    """Derive a Fernet key from the app secret key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=100_000,
    )
    return Fernet(base64.urlsafe_b64encode(kdf.derive(secret_key.encode())))


def get_fernet() -> Fernet:
    return _fernet_for(get_settings().SECRET_KEY)


class EncryptedText(TypeDecorator):
    """Encrypts on write, decrypts on read."""
    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return get_fernet().encrypt(value.encode()).decode()

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return get_fernet().decrypt(value.encode()).decode()
        except InvalidToken:
            # Rows written before encryption was enabled
            logger.warning("Stored token is not Fernet-encrypted; returning raw value")
            return value
