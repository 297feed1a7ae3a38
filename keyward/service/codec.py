"""Encoding and randomness helpers shared by the credential services."""

from __future__ import annotations

import base64
import binascii
import hashlib
import re
import secrets

_BASE32_RE = re.compile(r"^[A-Z2-7]*=*$")


class CodecError(ValueError):
    """Raised when encoded input is malformed."""


def random_bytes(n: int) -> bytes:
    if n <= 0:
        raise ValueError("byte count must be positive")
    return secrets.token_bytes(n)


def random_token(n: int = 32) -> str:
    """Hex string carrying ``n`` bytes of CSPRNG output."""

    return random_bytes(n).hex()


def base32_encode(data: bytes) -> str:
    return base64.b32encode(data).decode("ascii").rstrip("=")


def base32_decode(value: str) -> bytes:
    """Decode RFC 4648 base32, tolerating missing padding and lower case.

    Characters outside ``A-Z2-7`` are rejected instead of skipped.
    """

    normalized = value.strip().replace(" ", "").upper()
    if not normalized or not _BASE32_RE.match(normalized):
        raise CodecError("invalid base32 input")
    normalized = normalized.rstrip("=")
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, casefold=False)
    except binascii.Error as exc:
        raise CodecError("invalid base32 input") from exc


def hash_token(raw: str) -> str:
    """sha256 hex digest used to store bearer tokens at rest."""

    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
