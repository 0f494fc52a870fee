"""
auth/passwords.py -- Password hashing with per-hash scheme selection.

Two schemes coexist in one verification path:

  argon2id (argon2-cffi): memory-hard, used for every NEW hash. Parameters
      match the values the stored hashes were produced with: 64 MiB memory,
      3 iterations, parallelism 2, 16-byte salt, 32-byte key.

  bcrypt (bcrypt): legacy hashes from accounts created before argon2id was
      introduced. They keep verifying; nothing forces a synchronous migration.

The scheme is read from the stored hash itself ("$argon2id$..." vs
"$2a$/$2b$/$2y$..."), so the users table needs no extra column. Each hasher
is a small class with the same three methods; verify_password() dispatches on
the first hasher whose identifies() accepts the stored value.

verify_password() never raises: a malformed or unknown hash is simply a
failed verification.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError


class Argon2idHasher:
    scheme = "argon2id"
    prefix = "$argon2id$"

    def __init__(self) -> None:
        self._hasher = PasswordHasher(
            time_cost=3,
            memory_cost=64 * 1024,
            parallelism=2,
            hash_len=32,
            salt_len=16,
            type=Type.ID,
        )

    def identifies(self, hashed: str) -> bool:
        return hashed.startswith(self.prefix)

    def hash(self, plain: str) -> str:
        return self._hasher.hash(plain)

    def verify(self, plain: str, hashed: str) -> bool:
        # argon2-cffi compares digests in constant time.
        try:
            return self._hasher.verify(hashed, plain)
        except (VerificationError, InvalidHash):
            return False


class BcryptHasher:
    """Legacy scheme. Passwords past 72 bytes are truncated by bcrypt itself."""

    scheme = "bcrypt"
    prefixes = ("$2a$", "$2b$", "$2y$")
    rounds = 12

    def identifies(self, hashed: str) -> bool:
        return hashed.startswith(self.prefixes)

    def hash(self, plain: str) -> str:
        return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
        except ValueError:
            return False


_DEFAULT_HASHER = Argon2idHasher()
_HASHERS = (_DEFAULT_HASHER, BcryptHasher())


def hash_password(plain: str) -> str:
    """Return an argon2id hash of the given plaintext password."""
    return _DEFAULT_HASHER.hash(plain)


def hash_scheme(hashed: str | None) -> str | None:
    """Return the scheme tag of a stored hash, or None if unrecognised."""
    if not hashed:
        return None
    for hasher in _HASHERS:
        if hasher.identifies(hashed):
            return hasher.scheme
    return None


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if plain matches hashed under the hash's own scheme."""
    if not hashed:
        return False
    for hasher in _HASHERS:
        if hasher.identifies(hashed):
            return hasher.verify(plain, hashed)
    return False


# Timing equalization dummy hash [C1].
# Computed once at module load. authenticate-style callers verify against it
# when the account does not exist so the response time does not reveal
# whether an email is registered.
DUMMY_HASH: str = hash_password("backoffice_timing_dummy")
