from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from bookwave.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "code_expired",
    "attempts_exceeded",
    "duplicate_request",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code clients can branch on")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    # Drop zero-width characters that make visually identical emails differ
    cleaned = "".join(c for c in value if c not in "\u200b\u200c\u200d\ufeff")
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class LoginRequest(_Request):
    email: str
    password: str = Field(..., max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class IdTokenLoginRequest(_Request):
    provider: str = Field(..., min_length=1, max_length=32, pattern=r"^[a-z0-9_-]+$")
    id_token: str = Field(..., min_length=3, max_length=16384)


class PhoneStartRequest(_Request):
    phone: str = Field(..., min_length=6, max_length=32)
    machine_code: str = Field(..., min_length=1, max_length=256)
    language: Optional[str] = Field(default=None, max_length=16)
    accept_terms: bool = False


class PhoneCodeRequest(_Request):
    phone: str = Field(..., min_length=6, max_length=32)
    machine_code: str = Field(..., min_length=1, max_length=256)
    pending_token: Optional[str] = Field(default=None, max_length=512)


class PhoneVerifyRequest(_Request):
    code: str = Field(..., min_length=1, max_length=12)
    machine_code: str = Field(..., min_length=1, max_length=256)
    pending_token: Optional[str] = Field(default=None, max_length=512)


class EmailCodeRequest(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class PendingTokenRequest(_Request):
    pending_token: Optional[str] = Field(default=None, max_length=512)


class EmailVerifyRequest(_Request):
    code: str = Field(..., min_length=1, max_length=12)
    pending_token: Optional[str] = Field(default=None, max_length=512)


class EmailRegisterRequest(_Request):
    register_token: str = Field(..., min_length=1, max_length=512)
    password: str
    name: Optional[str] = Field(default=None, max_length=120)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetConfirmRequest(_Request):
    reset_token: str = Field(..., min_length=1, max_length=512)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class TermsAcceptRequest(_Request):
    pending_token: Optional[str] = Field(default=None, max_length=512)
    language: Optional[str] = Field(default=None, max_length=16)
    genre: Optional[str] = Field(default=None, max_length=64)
