# socialbank/infra/crypto.py
"""
PIN hashing for chat users.

PINs are never stored or compared in clear text. Each hash carries its
own salt and iteration count so the cost can be raised later without
invalidating existing users.

Encoded format:
    pbkdf2_sha256$<iterations>$<salt b64>$<digest b64>

Usage:
    encoded = hash_pin("1234")
    verify_pin("1234", encoded)  # True
"""
from __future__ import annotations

import base64
import os

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from socialbank.infra.logging_config import get_logger

logger = get_logger(__name__)

_ALGORITHM = "pbkdf2_sha256"
_SALT_BYTES = 16
_DIGEST_BYTES = 32
DEFAULT_ITERATIONS = 120_000


class CryptoError(Exception):
    """Raised when a stored PIN hash cannot be parsed."""


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=_DIGEST_BYTES,
        salt=salt,
        iterations=iterations,
    )


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii")


def hash_pin(pin: str, iterations: int = DEFAULT_ITERATIONS) -> str:
    salt = os.urandom(_SALT_BYTES)
    digest = _kdf(salt, iterations).derive(pin.encode("utf-8"))
    return f"{_ALGORITHM}${iterations}${_b64(salt)}${_b64(digest)}"


def _decode(encoded: str) -> tuple[int, bytes, bytes]:
    try:
        algorithm, iterations, salt, digest = encoded.split("$")
        if algorithm != _ALGORITHM:
            raise ValueError(f"unsupported algorithm {algorithm}")
        return (
            int(iterations),
            base64.urlsafe_b64decode(salt.encode("ascii")),
            base64.urlsafe_b64decode(digest.encode("ascii")),
        )
    except (ValueError, TypeError) as exc:
        raise CryptoError(f"Malformed PIN hash: {exc}") from exc


def verify_pin(pin: str, encoded: str) -> bool:
    """Constant-time check of ``pin`` against a value produced by ``hash_pin``."""
    iterations, salt, digest = _decode(encoded)
    try:
        _kdf(salt, iterations).verify(pin.encode("utf-8"), digest)
    except InvalidKey:
        return False
    return True
