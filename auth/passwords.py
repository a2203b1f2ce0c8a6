"""
auth/passwords.py -- Password hashing and constant-time credential checks.

Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
brute-force of low-entropy secrets expensive. The _DUMMY_HASH constant enables
timing equalization in authenticate_user() so response time does not reveal
whether a username exists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserDirectory


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps passwords at
    64 characters, which keeps ASCII inputs below the truncation threshold.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("inkwell_timing_dummy")


def authenticate_user(directory: UserDirectory, username: str, password: str) -> User | None:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure (including inactive
    accounts). Store failures propagate as AuthError(STORE_UNAVAILABLE).
    """
    user = directory.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user
