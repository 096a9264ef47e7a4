"""
Driver password hashing.

Driver passwords are set by admins and checked by the driver sign-in flow
independently of the identity provider. Stored values are bcrypt hashes;
anything else is a legacy plaintext value, accepted once and replaced with a
hash on the next successful sign-in.
"""
from __future__ import annotations

import hmac

import bcrypt

MIN_PASSWORD_LENGTH = 6
# bcrypt only looks at the first 72 bytes.
MAX_PASSWORD_BYTES = 72

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


def is_bcrypt_hash(stored: str) -> bool:
    return isinstance(stored, str) and stored.startswith(_BCRYPT_PREFIXES) and len(stored) == 60


def _cost(stored: str) -> int:
    try:
        return int(stored.split("$")[2])
    except (IndexError, ValueError):
        return 0


class BcryptHasher:
    def __init__(self, rounds: int = 12):
        if not 4 <= rounds <= 31:
            raise ValueError("invalid_bcrypt_rounds")
        self.rounds = rounds

    def _encode(self, password: str) -> bytes:
        raw = password.encode("utf-8")
        if len(raw) > MAX_PASSWORD_BYTES:
            raise ValueError("password_too_long")
        return raw

    def hash(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(self._encode(password), salt).decode("ascii")

    def verify(self, password: str, stored: str) -> bool:
        if not stored:
            return False
        if is_bcrypt_hash(stored):
            try:
                return bcrypt.checkpw(self._encode(password), stored.encode("ascii"))
            except ValueError:
                return False
        # Legacy plaintext record.
        return hmac.compare_digest(password.encode("utf-8"), stored.encode("utf-8"))

    def needs_rehash(self, stored: str) -> bool:
        if not is_bcrypt_hash(stored):
            return True
        return _cost(stored) < self.rounds
