"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The gateway is stateless: the caller's identity comes from the bearer token
claims alone, verified by the TokenIssuer on app.state. No store lookup.

Accepted Authorization header forms:
  Authorization: Bearer <token>
  Authorization: <token>

get_current_identity() raises AuthError ("Token required." / "Invalid token.")
and stores the Identity on request.state.identity for downstream handlers.
require_role(role) builds a dependency that additionally raises
AuthorizationError when role is not in the identity's role set.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.models import Identity
from auth.tokens import TokenIssuer
from core.errors import AuthError, AuthorizationError


def extract_bearer_token(header_value: str | None) -> str | None:
    """Return the token from an Authorization header value, or None if empty."""
    if not header_value:
        return None
    value = header_value.strip()
    scheme, _, rest = value.partition(" ")
    if scheme.lower() == "bearer":
        value = rest.strip()
    return value or None


def get_current_identity(request: Request) -> Identity:
    """Require a valid bearer token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(identity: Identity = Depends(get_current_identity)): ...
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is None:
        raise AuthError("Token required.")

    issuer: TokenIssuer = request.app.state.token_issuer
    claims = issuer.verify_token(token)
    identity = Identity(
        user_id=str(claims["user_id"]),
        username=claims["username"],
        roles=frozenset(claims.get("roles") or ()),
    )
    request.state.identity = identity
    return identity


def require_role(role: str) -> Callable[..., Identity]:
    """Build a dependency that requires role on top of authentication.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        def route(identity: Identity = Depends(require_role("admin"))): ...
    """

    def _require(identity: Identity = Depends(get_current_identity)) -> Identity:
        if role not in identity.roles:
            raise AuthorizationError(f"Role '{role}' required.")
        return identity

    return _require
