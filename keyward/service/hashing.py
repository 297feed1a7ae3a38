from __future__ import annotations

from typing import Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError


class SecretHasher(Protocol):
    """Adaptive one-way hashing for passwords and backup codes."""

    algorithm: str

    def hash(self, secret: str) -> str: ...

    def verify(self, digest: str, secret: str) -> bool: ...


class Argon2SecretHasher:
    algorithm = "argon2id"

    def __init__(
        self, *, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, digest: str, secret: str) -> bool:
        try:
            return self._hasher.verify(digest, secret)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False
