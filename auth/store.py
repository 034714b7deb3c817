"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_code are the mappers.
Route and service code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Uniqueness of username and email is enforced by UNIQUE constraints. The
  lookups register() performs first only produce a friendlier error; a
  concurrent insert that slips past them still fails with IntegrityError,
  which register() reports as DuplicateError. email is nullable and both
  SQLite and PostgreSQL treat NULLs as distinct, so the constraint applies
  to non-null emails only.

  consume_code() is a conditional UPDATE (used = 0 in the WHERE clause), so
  two requests racing on the same code get exactly one rowcount of 1.

Timestamps: users carry ISO 8601 strings (display only). Code timestamps are
stored as epoch seconds (REAL) because the store compares them in SQL.

DB URL: Settings.database_url (SQLite file next to this module by default).

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.hashing import MAX_SECRET_BYTES, hash_secret, verify_secret
from auth.models import EmailVerificationCode, User
from core.config import get_settings
from core.errors import DuplicateError, ValidationError

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("email", String(255), unique=True),  # NULL allowed, many times
    Column("password_hash", Text, nullable=False),
    Column("roles", Text, nullable=False, server_default='["user"]'),  # JSON array
    Column("real_name", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_codes = Table(
    "email_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False),
    Column("code_hash", Text, nullable=False),
    Column("purpose", String(30), nullable=False),
    Column("expires_at", Float, nullable=False),  # epoch seconds
    Column("used", Integer, nullable=False, server_default="0"),
    Column("created_at", Float, nullable=False),  # epoch seconds
    Index("ix_email_codes_lookup", "email", "purpose", "created_at"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and EmailVerificationCode entities.

    Usage:
        store = UserStore()
        user = store.register("alice", "p@ss1234", email="alice@example.com")
        same = store.get_by_email("ALICE@example.com")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        # Opens the first connection; an unreachable database fails here.
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        password: str,
        email: str | None = None,
        real_name: str | None = None,
        roles: set[str] | None = None,
    ) -> User:
        """Create a password user and return it.

        Raises DuplicateError if the username, or the email when given, is
        already taken -- whether detected by the lookup or by the UNIQUE
        constraint during a concurrent insert.
        """
        if len(password.encode("utf-8")) > MAX_SECRET_BYTES:
            raise ValidationError(f"Password must be at most {MAX_SECRET_BYTES} bytes.")
        email = normalize_email(email) if email else None

        if self.get_by_username(username) is not None:
            raise DuplicateError()
        if email and self.get_by_email(email) is not None:
            raise DuplicateError()

        user = User(
            username=username,
            password_hash=hash_secret(password),
            email=email,
            real_name=real_name,
            roles=set(roles) if roles else {"user"},
        )
        try:
            user_id = self.create_user(user)
        except IntegrityError as exc:
            raise DuplicateError() from exc
        return self.get_by_id(user_id)

    def create_user(self, user: User) -> str:
        """Insert a new user and return its generated ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers decide what a conflict means for them.
        """
        user_id = uuid.uuid4().hex
        now = _now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    email=normalize_email(user.email) if user.email else None,
                    password_hash=user.password_hash,
                    roles=json.dumps(sorted(user.roles)),
                    real_name=user.real_name,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
        return user_id

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, matched after lowercasing."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def verify_password(self, user: User, candidate: str) -> bool:
        return verify_secret(candidate, user.password_hash)

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return result or 0

    def count_users_with_role(self, role: str) -> int:
        """Count users whose role set contains role.

        roles is a JSON array of plain tags, so a quoted-substring match is
        exact for any tag that does not itself contain a double quote.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_users).where(_users.c.roles.like(f'%"{role}"%'))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Email verification codes
    # ------------------------------------------------------------------

    def create_code(self, code: EmailVerificationCode) -> int:
        """Insert a freshly issued code and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.insert().values(
                    email=normalize_email(code.email),
                    code_hash=code.code_hash,
                    purpose=code.purpose,
                    expires_at=code.expires_at.timestamp(),
                    used=1 if code.used else 0,
                    created_at=code.created_at.timestamp(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_latest_valid_code(self, email: str, purpose: str, now: datetime) -> EmailVerificationCode | None:
        """Return the most recently created unused, unexpired code, or None.

        Older valid codes for the same (email, purpose) are ignored entirely.
        The id tiebreaker keeps the order total when two rows share a timestamp.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                _codes.select()
                .where(
                    (_codes.c.email == normalize_email(email))
                    & (_codes.c.purpose == purpose)
                    & (_codes.c.used == 0)
                    & (_codes.c.expires_at > now.timestamp())
                )
                .order_by(_codes.c.created_at.desc(), _codes.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_code(row) if row is not None else None

    def consume_code(self, code_id: int) -> bool:
        """Flip used 0 -> 1. Returns True only for the caller that won the flip."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _codes.update().where((_codes.c.id == code_id) & (_codes.c.used == 0)).values(used=1)
            )
            conn.commit()
        return result.rowcount == 1

    def count_codes(self, email: str, purpose: str) -> int:
        """Number of code rows ever stored for (email, purpose), used or not."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_codes)
                .where((_codes.c.email == normalize_email(email)) & (_codes.c.purpose == purpose))
            ).scalar()
        return result or 0

    def purge_expired_codes(self, now: datetime | None = None) -> int:
        """Delete codes whose expiry has passed. Returns number of rows removed.

        Expired rows are already invisible to every query above; this only
        reclaims space.
        """
        cutoff = (now or datetime.now(timezone.utc)).timestamp()
        with self.engine.connect() as conn:
            result = conn.execute(_codes.delete().where(_codes.c.expires_at <= cutoff))
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        roles=set(json.loads(row.roles or "[]")),
        real_name=row.real_name,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_code(row) -> EmailVerificationCode:
    return EmailVerificationCode(
        id=row.id,
        email=row.email,
        code_hash=row.code_hash,
        purpose=row.purpose,
        expires_at=datetime.fromtimestamp(row.expires_at, tz=timezone.utc),
        created_at=datetime.fromtimestamp(row.created_at, tz=timezone.utc),
        used=bool(row.used),
    )
