"""bcrypt-backed credential hashing."""

from __future__ import annotations

import bcrypt

from ..domain.errors import InvalidInput

# bcrypt ignores everything past 72 bytes, so longer input is refused
BCRYPT_MAX_BYTES = 72


class PasswordHasher:
    """Salted one-way password hashing with a tunable work factor."""

    def __init__(self, rounds: int = 12) -> None:
        self._rounds = rounds
        self._dummy_hash = self.hash("timing-equaliser")

    def _encode(self, plaintext: str) -> bytes:
        if not plaintext:
            raise InvalidInput("password must not be empty")
        return plaintext.encode("utf-8")

    def hash(self, plaintext: str) -> str:
        """Return a bcrypt hash embedding a fresh random salt.

        Raises ``InvalidInput`` for empty passwords and for passwords longer
        than 72 bytes once UTF-8 encoded.
        """
        password_bytes = self._encode(plaintext)
        if len(password_bytes) > BCRYPT_MAX_BYTES:
            raise InvalidInput(f"password must not exceed {BCRYPT_MAX_BYTES} bytes")
        return bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=self._rounds)).decode("utf-8")

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Return ``True`` when ``plaintext`` matches the stored hash.

        Comparison happens inside ``bcrypt.checkpw`` in constant time. A stored
        hash that bcrypt cannot parse counts as a mismatch. Input over the
        72-byte limit can never have been hashed, so it never matches; the
        check still runs to keep the timing uniform.
        """
        password_bytes = self._encode(plaintext)
        too_long = len(password_bytes) > BCRYPT_MAX_BYTES
        try:
            matched = bcrypt.checkpw(password_bytes[:BCRYPT_MAX_BYTES], password_hash.encode("utf-8"))
        except ValueError:
            return False
        return matched and not too_long

    def dummy_verify(self, plaintext: str) -> None:
        """Spend one verification worth of CPU for logins against unknown emails."""
        if plaintext:
            self.verify(plaintext, self._dummy_hash)
