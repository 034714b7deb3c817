"""
auth/hashing.py -- One slow-hash primitive for every stored secret.

Passwords and email one-time codes are both low-entropy secrets, so both are
stored as bcrypt hashes and checked with bcrypt's own comparison. There is
deliberately a single pair of functions here; the credential store and the
code service call the same code.

Using bcrypt directly rather than passlib[bcrypt] because passlib's internal
wrap-bug detection creates a password longer than 72 bytes, which bcrypt 4.x
rejects with an explicit error.

The work factor comes from Settings.bcrypt_rounds (tests lower it to 4).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import secrets

import bcrypt

from core.config import get_settings

# bcrypt only looks at the first 72 bytes of input; newer releases reject
# anything longer outright.
MAX_SECRET_BYTES = 72


def hash_secret(plain: str) -> str:
    """Return a salted bcrypt hash of the given plaintext."""
    salt = bcrypt.gensalt(rounds=get_settings().bcrypt_rounds)
    return bcrypt.hashpw(plain.encode("utf-8"), salt).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the bcrypt hash.

    Malformed hashes and over-long inputs count as a mismatch.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def unusable_password_hash() -> str:
    """Hash of 256 random bits that are immediately discarded.

    Assigned to users created by the email-code flow so they have a
    syntactically valid password hash that no password will ever match.
    """
    return hash_secret(secrets.token_hex(32))


# Timing equalization dummy hash. Computed once at module load so the first
# login attempt is not measurably slower than subsequent ones. authenticate_user()
# checks the candidate against it when the username does not exist.
DUMMY_HASH: str = hash_secret("adminauth_timing_dummy")
