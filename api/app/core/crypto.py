"""Symmetric encryption for OAuth tokens stored at rest."""

import base64
import hashlib
from functools import lru_cache

from cryptography.fernet import Fernet

from app.core.config import settings


@lru_cache(maxsize=1)
def _cipher() -> Fernet:
    # Fernet wants 32 url-safe base64 bytes; derive them from the app secret
    key = base64.urlsafe_b64encode(hashlib.sha256(settings.secret_key.encode()).digest())
    return Fernet(key)


def encrypt(value: str) -> str:
    return _cipher().encrypt(value.encode()).decode()


def decrypt(value: str) -> str:
    """Raises cryptography.fernet.InvalidToken if the secret changed since encryption."""
    return _cipher().decrypt(value.encode()).decode()
