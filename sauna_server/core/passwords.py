"""
sauna_server/core/passwords.py - scrypt password hashing
Digest format: "<hex salt>:<hex scrypt key>".
"""
from __future__ import annotations

import hashlib
import secrets
from typing import Optional

_SCRYPT_N = 16384
_SCRYPT_R = 8
_SCRYPT_P = 1
_KEY_LENGTH = 64


def _scrypt(password: str, salt: str) -> bytes:
    return hashlib.scrypt(
        str(password).encode("utf-8"),
        salt=salt.encode("utf-8"),
        n=_SCRYPT_N,
        r=_SCRYPT_R,
        p=_SCRYPT_P,
        dklen=_KEY_LENGTH,
    )


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    return f"{salt}:{_scrypt(password, salt).hex()}"


def verify_password(password: str, digest: Optional[str]) -> bool:
    """Constant-time check. Malformed digests simply fail verification."""
    if not digest or not isinstance(digest, str) or ":" not in digest:
        return False
    salt, _, expected_hex = digest.partition(":")
    try:
        expected = bytes.fromhex(expected_hex)
    except ValueError:
        return False
    actual = _scrypt(password, salt)
    return len(expected) == len(actual) and secrets.compare_digest(expected, actual)
