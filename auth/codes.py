"""
auth/codes.py -- Email one-time code issuing and verification.

issue_code():
  1. Validate the address (email-validator, syntax only -- no DNS lookups).
  2. Reject purposes other than "login".
  3. Create the user for this email if there is none yet. This is an explicit
     upsert here, not a store hook: the email-code flow doubles as signup.
  4. Refuse with RateLimitError while the newest valid code is younger than
     the resend cooldown. Nothing is written or sent in that case.
  5. Store bcrypt(code) with its expiry, then mail the plaintext.
  6. Return the TTL in seconds; the plaintext is echoed only in dev mode.

verify_code():
  Looks at the newest valid code only, compares with bcrypt, then consumes
  it through UserStore.consume_code() (conditional UPDATE). Every failure --
  no code, wrong code, lost race, missing user -- raises the same
  ValidationError so callers cannot tell them apart.

The clock is injectable so expiry and cooldown boundaries can be tested
without sleeping.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import secrets
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from email_validator import EmailNotValidError, validate_email
from sqlalchemy.exc import IntegrityError

from auth.hashing import hash_secret, unusable_password_hash, verify_secret
from auth.mailer import MailDispatcher, login_code_mail
from auth.models import EmailVerificationCode, User
from auth.store import UserStore, normalize_email
from core.config import Settings
from core.errors import AppError, InternalError, RateLimitError, ValidationError

logger = logging.getLogger("adminauth.codes")

SUPPORTED_PURPOSES = frozenset({"login"})

_INVALID_CODE = "Invalid or expired code."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_code() -> str:
    """Uniformly random 6-digit code in 100000-999999."""
    return str(secrets.randbelow(900000) + 100000)


@dataclass(frozen=True)
class IssuedCode:
    expires_in: int  # seconds
    code: str | None = None  # plaintext, dev mode only


class CodeService:
    """Issue and verify email one-time codes.

    Usage:
        service = CodeService.from_settings(store, mailer, get_settings())
        issued = service.issue_code("user@example.com")
        user = service.verify_code("user@example.com", "login", "482193")
    """

    def __init__(
        self,
        store: UserStore,
        mailer: MailDispatcher,
        ttl_minutes: int = 10,
        cooldown_seconds: int = 60,
        echo_codes: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.ttl = timedelta(minutes=ttl_minutes)
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self.echo_codes = echo_codes
        self._clock = clock

    @classmethod
    def from_settings(cls, store: UserStore, mailer: MailDispatcher, settings: Settings) -> "CodeService":
        return cls(
            store,
            mailer,
            ttl_minutes=settings.code_ttl_minutes,
            cooldown_seconds=settings.code_resend_cooldown_seconds,
            echo_codes=settings.debug,
        )

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue_code(self, email: str, purpose: str = "login") -> IssuedCode:
        try:
            validate_email(email, check_deliverability=False)
        except EmailNotValidError as exc:
            raise ValidationError("Invalid email address.") from exc
        email = normalize_email(email)
        if purpose not in SUPPORTED_PURPOSES:
            raise ValidationError(f"Unsupported purpose: {purpose!r}.")

        self._ensure_user(email)

        now = self._clock()
        latest = self.store.get_latest_valid_code(email, purpose, now)
        if latest is not None:
            age = now - latest.created_at
            if age < self.cooldown:
                wait = math.ceil((self.cooldown - age).total_seconds())
                raise RateLimitError(f"Please wait {wait} seconds before requesting another code.", retry_after=wait)

        plain = generate_code()
        code_id = self.store.create_code(
            EmailVerificationCode(
                email=email,
                code_hash=hash_secret(plain),
                purpose=purpose,
                created_at=now,
                expires_at=now + self.ttl,
            )
        )

        ttl_minutes = int(self.ttl.total_seconds() // 60)
        try:
            self.mailer.send(login_code_mail(email, plain, ttl_minutes))
        except Exception as exc:
            # An undelivered code must not hold the cooldown against the user.
            self.store.consume_code(code_id)
            if isinstance(exc, AppError):
                raise
            raise InternalError("Failed to send email.") from exc

        logger.info("Issued %s code %d", purpose, code_id)
        return IssuedCode(
            expires_in=int(self.ttl.total_seconds()),
            code=plain if self.echo_codes else None,
        )

    def _ensure_user(self, email: str) -> User:
        """Return the user for email, creating one with an unusable password if absent."""
        user = self.store.get_by_email(email)
        if user is not None:
            return user

        # The username normally equals the email; fall back to a suffixed
        # one if somebody already registered that exact username.
        for username in (email, f"{email}#{secrets.token_hex(4)}"):
            try:
                user_id = self.store.create_user(
                    User(username=username, email=email, password_hash=unusable_password_hash())
                )
            except IntegrityError:
                # Lost a race on the email, or the username is taken.
                user = self.store.get_by_email(email)
                if user is not None:
                    return user
                continue
            logger.info("Created user %s for email-code login", user_id)
            return self.store.get_by_id(user_id)
        raise InternalError("Could not create user for email.")

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    def verify_code(self, email: str, purpose: str, code: str) -> User:
        email = normalize_email(email)
        code = code.strip()
        if purpose not in SUPPORTED_PURPOSES or not (len(code) == 6 and code.isdigit()):
            raise ValidationError(_INVALID_CODE)

        record = self.store.get_latest_valid_code(email, purpose, self._clock())
        if record is None or not verify_secret(code, record.code_hash):
            raise ValidationError(_INVALID_CODE)

        if not self.store.consume_code(record.id):
            raise ValidationError(_INVALID_CODE)

        user = self.store.get_by_email(email)
        if user is None:
            logger.warning("Code %d verified but no user holds its email", record.id)
            raise ValidationError(_INVALID_CODE)
        return user
