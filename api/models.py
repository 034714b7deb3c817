"""
API request and response models for the admin auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Every response body is an Envelope:
    {"code": 0, "data": {...}, "error": null, "message": "ok"}
code is 0 on success and the HTTP status otherwise; data is null on failure.
Response payload fields are camelCase on the wire (expiresIn, realName).

No model here has a password or hash field, so neither can leak into a
response by accident.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_serializer
from pydantic.alias_generators import to_camel

from auth.models import User

# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class Envelope(BaseModel):
    """Uniform response wrapper for success and failure alike."""

    code: int = 0
    data: Any = None
    error: Optional[str] = None
    message: str = "ok"


def envelope(data: Any = None, message: str = "ok") -> dict:
    """Build a success envelope dict; pydantic payloads are dumped camelCase."""
    if isinstance(data, BaseModel):
        data = data.model_dump(by_alias=True)
    return Envelope(data=data, message=message).model_dump()


def error_envelope(status_code: int, error: str, message: str) -> dict:
    return Envelope(code=status_code, data=None, error=error, message=message).model_dump()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


def _clean_username(value: str) -> str:
    """Usernames are stored and looked up without surrounding whitespace."""
    value = value.strip()
    if not value:
        raise ValueError("username must not be blank")
    return value


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    password max_length=72 matches bcrypt's input limit. The store checks the
    byte length as well, since multi-byte characters count more than once.
    """

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=6, max_length=72)
    email: Optional[EmailStr] = None
    real_name: Optional[str] = Field(default=None, max_length=255, alias="realName")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("username")
    @classmethod
    def strip_username(cls, value: str) -> str:
        return _clean_username(value)


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)

    @field_validator("username")
    @classmethod
    def strip_username(cls, value: str) -> str:
        return _clean_username(value)


class SendCodeRequest(BaseModel):
    """Request body for POST /api/v1/auth/send-email-code.

    email is a plain string here; the code service validates it so the same
    rule applies to API and programmatic callers.
    """

    email: str = Field(min_length=1, max_length=255)
    purpose: str = "login"


class EmailCodeLoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    code: str = Field(min_length=1, max_length=16)
    purpose: str = "login"


# ---------------------------------------------------------------------------
# Response payloads (the envelope's data field)
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class UserSummary(_CamelModel):
    id: str
    username: str
    email: Optional[str]
    real_name: Optional[str]
    roles: list[str]
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            real_name=user.real_name,
            roles=sorted(user.roles),
            created_at=user.created_at or "",
        )


class TokenData(_CamelModel):
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserSummary


class CodeSent(_CamelModel):
    expires_in: int
    code: Optional[str] = None  # dev mode only; omitted from the body otherwise

    @model_serializer(mode="wrap")
    def _omit_unechoed_code(self, handler):
        data = handler(self)
        if self.code is None:
            data.pop("code", None)
        return data


class ProfileData(_CamelModel):
    id: str
    username: str
    email: Optional[str]
    real_name: Optional[str]
    roles: list[str]


class StatsData(_CamelModel):
    total_users: int
    admin_count: int
