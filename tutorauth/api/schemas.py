from __future__ import annotations

import re
import unicodedata
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tutorauth.logging import get_correlation_id
from tutorauth.storage.models import OtpPurpose

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

OTP_PATTERN = re.compile(r"^\d{6}$")


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
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


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    """Lowercase, NFKC-normalize and syntax-check an email address."""
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Invalid email format")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email format")
    return normalized


def _validate_otp(value: str) -> str:
    value = value.strip()
    if not OTP_PATTERN.match(value):
        raise ValueError("Invalid OTP format")
    return value


class LoginRequest(BaseModel):
    """Password login; ``username`` may hold either a username or an email.

    Presence and length are checked by the login flow so the error
    messages match the rest of the protocol.
    """

    model_config = ConfigDict(extra="ignore")

    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

    @property
    def identifier(self) -> Optional[str]:
        return self.username or self.email


class SendOtpRequest(BaseModel):
    email: str
    type: OtpPurpose

    @field_validator("email")
    @classmethod
    def _validate_send_email(cls, value: str) -> str:
        return _validate_email(value)


class VerifyOtpRequest(BaseModel):
    email: str
    code: Optional[str] = None
    otp: Optional[str] = None
    type: OtpPurpose
    username: Optional[str] = Field(default=None, max_length=64)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    password: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return _validate_email(value)

    @model_validator(mode="after")
    def _require_code(self):
        code = self.code or self.otp
        if not code:
            raise ValueError("Missing required fields")
        self.code = _validate_otp(code)
        return self


class ResetPasswordRequest(BaseModel):
    email: str
    otp: str
    new_password: str = Field(..., max_length=1000)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("otp")
    @classmethod
    def _validate_reset_otp(cls, value: str) -> str:
        return _validate_otp(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        if len(value) < 8:
            raise ValueError("Password must be at least 8 characters long")
        return value


class ChangePasswordRequest(BaseModel):
    current_password: Optional[str] = Field(default=None, max_length=1000)
    new_password: Optional[str] = Field(default=None, max_length=1000)

    @model_validator(mode="after")
    def _check_passwords(self):
        if not self.current_password or not self.new_password:
            raise ValueError("Current password and new password are required")
        if len(self.new_password) < 8:
            raise ValueError("New password must be at least 8 characters long")
        return self


class RevokeSessionsRequest(BaseModel):
    user_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_user_id(self):
        self.user_id = (self.user_id or "").strip()
        if not self.user_id:
            raise ValueError("User ID is required")
        try:
            self.user_id = str(UUID(self.user_id))
        except ValueError as exc:
            raise ValueError("Invalid user ID") from exc
        return self
