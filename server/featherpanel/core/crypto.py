from __future__ import annotations

import base64
import hashlib
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from featherpanel.core.settings import get_settings

_FALLBACK_KEY = "featherpanel-change-me"


@lru_cache(maxsize=1)
def _get_fernet() -> Fernet:
    settings = get_settings()
    raw_key = settings.encryption_key or _FALLBACK_KEY
    digest = hashlib.sha256(raw_key.encode("utf-8")).digest()
    key = base64.urlsafe_b64encode(digest)
    return Fernet(key)


def generate_encryption_key() -> str:
    return Fernet.generate_key().decode("utf-8")


def reset_cipher() -> None:
    """Drop the cached cipher so the next call picks up a rotated key."""

    _get_fernet.cache_clear()


def encrypt_secret(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    token = _get_fernet().encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_secret(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        value = _get_fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        return None
    return value.decode("utf-8")


__all__ = ["encrypt_secret", "decrypt_secret", "generate_encryption_key", "reset_cipher"]
