from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import uuid
from typing import Optional

PBKDF2_ALGORITHM = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 260_000


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def hash_password(password: str, *, salt: Optional[str] = None, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"{PBKDF2_ALGORITHM}${iterations}${salt}${_b64encode(digest)}"


def verify_password(password: Optional[str], encoded: Optional[str]) -> bool:
    if not password or not encoded:
        return False
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != PBKDF2_ALGORITHM:
        return False
    candidate = hash_password(password, salt=salt, iterations=rounds).split("$", 3)[3]
    return hmac.compare_digest(candidate, expected)


def generate_remember_token() -> str:
    return secrets.token_hex(32)


def generate_uuid() -> str:
    return str(uuid.uuid4())
