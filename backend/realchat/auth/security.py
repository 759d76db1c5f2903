"""Security helpers:
- Argon2 hashing for passwords and one-time codes (argon2-cffi)
- One-time code generation
"""
import secrets

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError

OTP_DIGITS = 6


class SecretHasher:
    """Hash and verify low-entropy secrets (passwords, OTP codes) with Argon2.

    Cost parameters are exposed so tests can run with a cheap hasher.
    """

    def __init__(self, time_cost: int = 3, memory_cost: int = 65536, parallelism: int = 4):
        self._ph = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, parallelism=parallelism
        )

    def hash(self, plaintext: str) -> str:
        return self._ph.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._ph.verify(hashed, plaintext)
        except (VerificationError, InvalidHashError):
            return False


def generate_code() -> str:
    """Return a uniformly random 6-digit numeric code (100000-999999)."""
    return str(100000 + secrets.randbelow(900000))
