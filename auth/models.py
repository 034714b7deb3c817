"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these classes only own the domain shape.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class User:
    """An identity that can log in to the admin backend.

    username is case-sensitive. email is stored lowercase and is optional --
    users created by the email-code flow use their email as username.

    password_hash is always a bcrypt hash. Users created lazily by the
    email-code flow get a hash of a random value nobody knows, so password
    login is impossible for them until a password is set out-of-band.
    """

    username: str
    password_hash: str
    id: str | None = None
    email: str | None = None
    roles: set[str] = field(default_factory=lambda: {"user"})
    real_name: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class EmailVerificationCode:
    """A single issued one-time code.

    code_hash is bcrypt(code); the plaintext only ever exists in memory long
    enough to be mailed. used flips false -> true at most once, through
    UserStore.consume_code().
    """

    email: str
    code_hash: str
    purpose: str
    expires_at: datetime
    created_at: datetime
    used: bool = False
    id: int | None = None

    def is_valid(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at


@dataclass(frozen=True)
class Identity:
    """The caller resolved from a verified bearer token.

    Built from token claims only -- the gateway does not touch the store.
    """

    user_id: str
    username: str
    roles: frozenset[str] = frozenset()
