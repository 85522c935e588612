from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from typing import Any, MutableMapping

import bcrypt

PASSWORD_SCHEME = "pbkdf2_sha256"
LEGACY_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
DEFAULT_ITERATIONS = 260_000
MIN_PASSWORD_LENGTH = 8

SESSION_USER_ID_KEY = "user_id"
SESSION_EMAIL_KEY = "user_email"


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def _b64d(s: str) -> bytes:
    pad = "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


def hash_password(password: str, *, iterations: int = DEFAULT_ITERATIONS) -> str:
    salt = secrets.token_bytes(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{PASSWORD_SCHEME}${iterations}${_b64e(salt)}${_b64e(dk)}"


def is_legacy_hash(encoded: str) -> bool:
    return str(encoded or "").startswith(LEGACY_BCRYPT_PREFIXES)


def needs_rehash(encoded: str) -> bool:
    return not str(encoded or "").startswith(f"{PASSWORD_SCHEME}$")


def _verify_bcrypt(password: str, encoded: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), encoded.encode("ascii"))
    except (ValueError, TypeError):
        return False


def verify_password(password: str, encoded: str) -> bool:
    if is_legacy_hash(encoded):
        # accounts carried over from the bcrypt-based store
        return _verify_bcrypt(password, encoded)
    try:
        scheme, iter_s, salt_s, hash_s = encoded.split("$", 3)
        if scheme != PASSWORD_SCHEME:
            return False
        iterations = int(iter_s)
        salt = _b64d(salt_s)
        expected = _b64d(hash_s)
    except (ValueError, TypeError, AttributeError):
        return False

    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(dk, expected)


def login_session(session: MutableMapping[str, Any], *, user_id: int, email: str) -> None:
    session[SESSION_USER_ID_KEY] = int(user_id)
    session[SESSION_EMAIL_KEY] = email


def logout_session(session: MutableMapping[str, Any]) -> None:
    session.pop(SESSION_USER_ID_KEY, None)
    session.pop(SESSION_EMAIL_KEY, None)


def get_user_id(session: MutableMapping[str, Any]) -> int | None:
    raw = session.get(SESSION_USER_ID_KEY)
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
