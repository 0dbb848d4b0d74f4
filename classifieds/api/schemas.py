from __future__ import annotations

import re
import unicodedata
from typing import Any, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

_ERROR_CODE_PATTERN = r"^[A-Z][A-Z0-9_]*$"


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is an upper-case machine code."""

    code: str = Field(..., pattern=_ERROR_CODE_PATTERN)
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Request bodies use camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")

MAX_EMAIL_LENGTH = 320


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > MAX_EMAIL_LENGTH:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_username(value: str) -> str:
    value = value.strip()
    if not 3 <= len(value) <= 20:
        raise ValueError("username must be 3-20 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError("username may only contain letters, numbers and underscores")
    return value.lower()


class RegisterRequest(CamelModel):
    email: str
    username: str
    first_name: str = Field(..., min_length=1, max_length=80)
    last_name: str = Field(..., min_length=1, max_length=80)
    password: str = Field(..., min_length=10, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip_names(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    password: str = Field(..., min_length=1, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class ReauthRequest(CamelModel):
    password: str = Field(..., min_length=1, max_length=200)


class ForgotPasswordRequest(CamelModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    email: str = Field(..., max_length=MAX_EMAIL_LENGTH)
    token: str = Field(..., min_length=16, max_length=512)
    new_password: str = Field(..., min_length=10, max_length=200)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        return value.strip()


class ModerationRequest(CamelModel):
    status: Literal["active", "suspended", "banned"]
    reason: Optional[str] = Field(default=None, max_length=500)
    # epoch milliseconds; omitted or null means an indefinite suspension
    suspended_until: Optional[int] = Field(default=None, ge=0)

    @field_validator("reason")
    @classmethod
    def _blank_reason_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None


class SetAdminRequest(CamelModel):
    is_admin: bool


class OkResponse(BaseModel):
    ok: bool = True


class ReauthResponse(CamelModel):
    ok: bool = True
    expires_in_sec: int


class ModerationResponse(CamelModel):
    user_id: str
    status: Literal["active", "suspended", "banned"]
    reason: Optional[str] = None
    suspended_until: Optional[int] = None


class RevokeSessionsResponse(CamelModel):
    ok: bool = True
    revoked: int
