"""
api/routes/v1/auth.py -- Credential REST endpoints.

Routes:
  POST /api/v1/auth/register          -- create a password user; 201
  POST /api/v1/auth/login             -- password login; returns token
  POST /api/v1/auth/send-email-code   -- mail a one-time login code
  POST /api/v1/auth/login/email-code  -- exchange a code for a token
  POST /api/v1/auth/logout            -- stateless acknowledgement
  GET  /api/v1/auth/profile           -- current user (requires auth)

Security:
  Login and both email-code routes are rate-limited per IP (Settings.login_rate_limit).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that carries a token.
  Failures are raised as core.errors exceptions and rendered by api/main.py.

Handlers are plain `def` so FastAPI runs them in its worker thread pool; a
slow store or SMTP call only holds up its own request.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    CodeSent,
    EmailCodeLoginRequest,
    LoginRequest,
    ProfileData,
    RegisterRequest,
    SendCodeRequest,
    TokenData,
    UserSummary,
    envelope,
)
from auth.codes import CodeService
from auth.dependencies import get_current_identity
from auth.models import Identity, User
from auth.store import UserStore
from auth.tokens import TokenIssuer, authenticate_user
from core.config import get_settings
from core.errors import NotFoundError

logger = logging.getLogger("adminauth.api")

_AUTH_LIMIT = get_settings().login_rate_limit

# Auth policy:
# - POST /api/v1/auth/register:         public
# - POST /api/v1/auth/login:            public, rate-limited
# - POST /api/v1/auth/send-email-code:  public, rate-limited
# - POST /api/v1/auth/login/email-code: public, rate-limited
# - POST /api/v1/auth/logout:           public -- the client discards its token
# - GET  /api/v1/auth/profile:          requires auth (get_current_identity)
router = APIRouter()


def _token_response(request: Request, user: User, message: str) -> JSONResponse:
    issuer: TokenIssuer = request.app.state.token_issuer
    token = issuer.issue_for_user(user)
    data = TokenData(token=token, expires_in=issuer.expire_seconds, user=UserSummary.from_user(user))
    resp = JSONResponse(status_code=200, content=envelope(data, message))
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
def register(request: Request, body: RegisterRequest) -> dict:
    """Create a user with a password. Duplicate username or email -> 400."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.register(
        username=body.username,
        password=body.password,
        email=str(body.email) if body.email else None,
        real_name=body.real_name,
    )
    logger.info("Registered user %s", user.id)
    return envelope(UserSummary.from_user(user), "Registered.")


@router.post("/auth/login")
@limiter.limit(_AUTH_LIMIT)  # must sit under @router so FastAPI registers the limited wrapper
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    Returns the same generic error for wrong username and wrong password so
    the response does not reveal whether a username exists.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.username, body.password)
    return _token_response(request, user, "Logged in.")


@router.post("/auth/send-email-code")
@limiter.limit(_AUTH_LIMIT)
def send_email_code(request: Request, body: SendCodeRequest) -> dict:
    """Mail a one-time login code. Repeat requests inside the cooldown -> 429."""
    service: CodeService = request.app.state.code_service
    issued = service.issue_code(body.email, body.purpose)
    return envelope(CodeSent(expires_in=issued.expires_in, code=issued.code), "Code sent.")


@router.post("/auth/login/email-code")
@limiter.limit(_AUTH_LIMIT)
def login_with_email_code(request: Request, body: EmailCodeLoginRequest) -> JSONResponse:
    """Exchange a valid one-time code for a bearer token. Codes work once."""
    service: CodeService = request.app.state.code_service
    user = service.verify_code(body.email, body.purpose, body.code)
    return _token_response(request, user, "Logged in.")


@router.post("/auth/logout")
async def logout() -> dict:
    """Acknowledge logout. Tokens are not tracked server-side."""
    return envelope(None, "Logged out.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile")
def profile(request: Request, identity: Identity = Depends(get_current_identity)) -> dict:
    """Return the stored profile of the authenticated user."""
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(identity.user_id)
    if user is None:
        raise NotFoundError("User not found.")
    return envelope(
        ProfileData(
            id=user.id,
            username=user.username,
            email=user.email,
            real_name=user.real_name,
            roles=sorted(user.roles),
        )
    )
