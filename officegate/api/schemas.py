from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "account_locked",
    "invalid_refresh_token",
    "mfa_required",
    "mfa_invalid_code",
    "mfa_already_enabled",
    "mfa_not_enabled",
    "mfa_not_enrolled",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_TOTP_CODE = re.compile(r"^\d{6}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
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
    """At least 8 characters with one letter and one digit."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
        raise ValueError("password must contain a letter and a digit")
    return value


def _validate_totp_code(value: str) -> str:
    cleaned = value.strip()
    if not _TOTP_CODE.match(cleaned):
        raise ValueError("code must be 6 digits")
    return cleaned


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = Field(..., min_length=3, max_length=120)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 3:
            raise ValueError("name must be at least 3 characters")
        return stripped


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    # No strength rules on login; old passwords must still be accepted
    password: str = Field(..., min_length=1, max_length=128)
    mfa_code: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("mfa_code")
    @classmethod
    def _validate_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _validate_totp_code(value)


class MfaLoginRequest(BaseModel):
    mfa_token: str = Field(..., min_length=1, max_length=4096)
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_totp_code(value)


class MfaCodeRequest(BaseModel):
    code: str

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        return _validate_totp_code(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: Optional[str] = None
    role: str
    status: str
    mfa_enabled: bool = False
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    user: UserResponse
    session_id: str
    session_expires_at: datetime
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class LogoutResponse(BaseModel):
    terminated: int


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: str


class MfaStatusResponse(BaseModel):
    enabled: bool
    activated_at: Optional[datetime] = None
    pending: bool = False


class CompanyScopeResponse(BaseModel):
    all: bool
    company_ids: List[str] = Field(default_factory=list)


class CompanyAccessResponse(BaseModel):
    company_id: str
    allowed: bool
