"""
auth/tokens.py -- Bearer token signing and password authentication.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry user_id, username, roles, iat and
       exp, signed with the server-held secret. Verification raises AuthError
       on any failure (bad signature, expiry, missing claims, garbage input),
       which the API layer renders as a 401.

  SECRET_KEY: injected into TokenIssuer at construction instead of being read
       from a module global. An empty key is not rejected at startup; the
       first sign or verify raises ConfigError so the misconfiguration shows
       up as a 500 on the request that needed it. Keys shorter than 32
       characters are treated the same way -- HS256 relies on key entropy.

  Passwords: authenticate_user() always runs bcrypt, against DUMMY_HASH when
       the username does not exist, so response time does not reveal whether
       a username exists. Both failure modes raise the same CredentialsError.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from jose import JWTError, jwt

from auth.hashing import DUMMY_HASH, verify_secret
from core.config import Settings
from core.errors import AuthError, ConfigError, CredentialsError

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("adminauth.auth")

_ALGORITHM = "HS256"
_MIN_SECRET_LENGTH = 32

# ---------------------------------------------------------------------------
# Token issuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Sign and verify bearer tokens with one server-held secret.

    Usage:
        issuer = TokenIssuer(settings.secret_key, settings.token_expire_seconds)
        token = issuer.issue_token(user.id, {"username": user.username, "roles": ["user"]})
        claims = issuer.verify_token(token)   # raises AuthError if invalid
    """

    def __init__(self, secret_key: str, expire_seconds: int = 3600) -> None:
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        return cls(settings.secret_key, settings.token_expire_seconds)

    def _require_secret(self) -> str:
        if not self._secret_key:
            raise ConfigError("Token signing secret is not configured.")
        if len(self._secret_key) < _MIN_SECRET_LENGTH:
            raise ConfigError("Token signing secret is too short.")
        return self._secret_key

    def issue_token(self, user_id: str, claims: dict[str, Any], now: datetime | None = None) -> str:
        """Encode a signed JWT for user_id.

        Args:
            user_id: Opaque user ID from the store.
            claims:  Extra claims; "username" is required and becomes "sub".
                     "roles" may be any iterable and is stored as a sorted list.
            now:     Issue time. Defaults to the current UTC time.
        """
        secret = self._require_secret()
        issued_at = now or datetime.now(timezone.utc)
        payload: dict[str, Any] = dict(claims)
        payload["roles"] = sorted(payload.get("roles") or [])
        payload.update(
            {
                "sub": claims["username"],
                "user_id": user_id,
                "iat": int(issued_at.timestamp()),
                "exp": int((issued_at + timedelta(seconds=self.expire_seconds)).timestamp()),
            }
        )
        return jwt.encode(payload, secret, algorithm=_ALGORITHM)

    def verify_token(self, token: str) -> dict[str, Any]:
        """Decode and verify a JWT. Returns the claims dict.

        Raises AuthError for any tampered, expired or malformed token.
        """
        secret = self._require_secret()
        try:
            payload = jwt.decode(token, secret, algorithms=[_ALGORITHM])
        except JWTError as exc:
            logger.debug("Token rejected: %s", exc)
            raise AuthError("Invalid token.") from exc
        if "user_id" not in payload or "username" not in payload:
            raise AuthError("Invalid token.")
        return payload

    def issue_for_user(self, user: User) -> str:
        return self.issue_token(user.id, {"username": user.username, "roles": user.roles})


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, username: str, password: str) -> User:
    """Authenticate a username/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown username: bcrypt runs against DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success; raises CredentialsError on any failure.
    """
    user = store.get_by_username(username)
    if user is None:
        verify_secret(password, DUMMY_HASH)
        raise CredentialsError()
    if not store.verify_password(user, password):
        raise CredentialsError()
    return user
