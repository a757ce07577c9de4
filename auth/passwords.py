"""
auth/passwords.py -- Salted, keyed password digests.

Stored format (bit-exact, shared with previously stored credentials):

    v1:<base64url(salt)>:<base64url(digest)>     (unpadded base64url)

Construction, given a 16-byte random salt and the process HASH_SECRET:
  1. mixed = salt || secret || plain || salt
  2. round1 = FNV-1a-64(mixed)
  3. round2 = FNV-1a-64(interleave(round1, mixed))
  4. digest = FNV-1a-64(round1 || round2 || counter_le64) for counter = 0, 1, ...
     concatenated and truncated to 24 bytes.

Security note: FNV-1a is fast and non-cryptographic. This scheme is kept for
compatibility with existing stored credentials; it is cheap to brute-force
compared with bcrypt/argon2 and should not be chosen for a new deployment
without a migration plan.

If the OS random source fails, the salt falls back to empty bytes. The hash
still verifies but loses per-credential uniqueness; the event is logged.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import logging
import os
import re

logger = logging.getLogger("knowstack.auth")

HASH_VERSION = "v1"
SALT_BYTES = 16
DIGEST_BYTES = 24

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF

_B64URL_RE = re.compile(r"[A-Za-z0-9_-]*")


def _fnv1a64(data: bytes) -> bytes:
    """FNV-1a 64-bit hash, returned big-endian (8 bytes)."""
    h = _FNV64_OFFSET
    for byte in data:
        h ^= byte
        h = (h * _FNV64_PRIME) & _MASK64
    return h.to_bytes(8, "big")


def _interleave(a: bytes, b: bytes) -> bytes:
    out = bytearray()
    for i in range(max(len(a), len(b))):
        if i < len(a):
            out.append(a[i])
        if i < len(b):
            out.append(b[i])
    return bytes(out)


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(segment: str) -> bytes:
    """Strict unpadded base64url decode. Raises ValueError on bad input."""
    if not _B64URL_RE.fullmatch(segment) or len(segment) % 4 == 1:
        raise ValueError("not unpadded base64url")
    try:
        return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    except binascii.Error as exc:
        raise ValueError("not unpadded base64url") from exc


def compute_digest(plain: str, secret: str, salt: bytes) -> bytes:
    """Return the 24-byte digest for plain under the given secret and salt."""
    mixed = salt + secret.encode("utf-8") + plain.encode("utf-8") + salt
    round1 = _fnv1a64(mixed)
    round2 = _fnv1a64(_interleave(round1, mixed))
    seed = round1 + round2

    out = b""
    counter = 0
    while len(out) < DIGEST_BYTES:
        out += _fnv1a64(seed + counter.to_bytes(8, "little"))
        counter += 1
    return out[:DIGEST_BYTES]


class PasswordHasher:
    """Hash and verify plaintext credentials with a process-wide secret.

    Usage:
        hasher = PasswordHasher(config.hash_secret)
        stored = hasher.hash("correct horse")
        hasher.verify("correct horse", stored)  # True
    """

    def __init__(self, secret: str = "") -> None:
        self._secret = secret

    def hash(self, plain: str) -> str:
        try:
            salt = os.urandom(SALT_BYTES)
        except (NotImplementedError, OSError):
            logger.error("No OS randomness source available; hashing with an empty salt")
            salt = b""
        digest = compute_digest(plain, self._secret, salt)
        return ":".join((HASH_VERSION, _b64encode(salt), _b64encode(digest)))

    def verify(self, plain: str, stored: str) -> bool:
        """Return True if plain matches stored. Never raises on malformed input."""
        parts = stored.split(":")
        if len(parts) != 3 or parts[0] != HASH_VERSION:
            return False
        try:
            salt = _b64decode(parts[1])
            expected = _b64decode(parts[2])
        except ValueError:
            return False

        actual = compute_digest(plain, self._secret, salt)
        if len(actual) != len(expected):
            return False
        return hmac.compare_digest(actual, expected)
