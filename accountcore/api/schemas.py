from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize ``value`` after stripping zero-width and bidi override characters."""
    zero_width = "​‌‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
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


_HANDLE_PATTERN = re.compile(r"^[a-z0-9_-]+$")


def _validate_handle(value: Optional[str]) -> Optional[str]:
    """Handles are lowercase alphanumerics, underscores and hyphens, 3 to 30 chars."""
    if value is None:
        return None
    normalized = _normalize_unicode(value.strip().lower())
    if not 3 <= len(normalized) <= 30:
        raise ValueError("handle must be between 3 and 30 characters")
    if not _HANDLE_PATTERN.match(normalized):
        raise ValueError("handle must contain only alphanumeric characters, underscores, and hyphens")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_full_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = _normalize_unicode(value).strip()
    if not normalized:
        raise ValueError("full_name must not be blank")
    return normalized


class RegisterRequest(BaseModel):
    handle: str
    email: str
    full_name: str = Field(..., max_length=100)
    password: str
    avatar: Optional[str] = Field(default=None, max_length=2048)
    cover_image: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("handle")
    @classmethod
    def _check_handle(cls, value: str) -> str:
        return _validate_handle(value)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("full_name")
    @classmethod
    def _check_full_name(cls, value: str) -> str:
        return _validate_full_name(value)

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(BaseModel):
    handle: Optional[str] = Field(default=None, max_length=30)
    email: Optional[str] = None
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("handle")
    @classmethod
    def _normalize_handle(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value.strip().lower()) if value is not None else None

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.handle or self.email):
            raise ValueError("handle or email is required")
        return self


class RefreshTokenRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class ChangePasswordRequest(BaseModel):
    old_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _check_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateAccountRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = None
    avatar: Optional[str] = Field(default=None, max_length=2048)
    cover_image: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("full_name")
    @classmethod
    def _check_full_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_full_name(value)

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_dump(exclude_none=True):
            raise ValueError("at least one field must be provided")
        return self


class NotificationPreferences(BaseModel):
    email: Optional[bool] = None
    push: Optional[bool] = None
    marketing: Optional[bool] = None


class PrivacyPreferences(BaseModel):
    profile_visibility: Optional[Literal["public", "private", "friends"]] = None
    show_email: Optional[bool] = None
    show_last_seen: Optional[bool] = None


class PreferencesUpdateRequest(BaseModel):
    theme: Optional[Literal["light", "dark", "auto"]] = None
    language: Optional[str] = Field(default=None, min_length=2, max_length=10)
    timezone: Optional[str] = Field(default=None, max_length=64)
    notifications: Optional[NotificationPreferences] = None
    privacy: Optional[PrivacyPreferences] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PasswordConfirmRequest(BaseModel):
    password: str = Field(..., min_length=1, max_length=128)


class DeactivateRequest(PasswordConfirmRequest):
    reason: Optional[str] = Field(default=None, max_length=500)


class ReactivateRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        return _validate_email(value)


class UpdateStatusRequest(BaseModel):
    is_active: Optional[bool] = None
    is_email_verified: Optional[bool] = None
    role: Optional[Literal["standard", "moderator", "admin"]] = None

    @model_validator(mode="after")
    def _require_change(self):
        if self.is_active is None and self.is_email_verified is None and self.role is None:
            raise ValueError("at least one of is_active, is_email_verified or role is required")
        return self


class BulkUpdateData(BaseModel):
    """Fields an administrator may set on many accounts at once."""

    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, max_length=100)
    role: Optional[Literal["standard", "moderator", "admin"]] = None
    is_email_verified: Optional[bool] = None
    avatar: Optional[str] = Field(default=None, max_length=2048)
    cover_image: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("full_name", "role", "is_email_verified")
    @classmethod
    def _not_null(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            raise ValueError(f"{info.field_name} cannot be null")
        if info.field_name == "full_name":
            return _validate_full_name(value)
        return value

    @model_validator(mode="after")
    def _require_change(self):
        if not self.model_fields_set:
            raise ValueError("at least one field must be provided")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BulkOperationRequest(BaseModel):
    operation: Literal["activate", "deactivate", "delete", "update"]
    account_ids: List[str] = Field(..., min_length=1, max_length=500)
    data: Optional[BulkUpdateData] = None

    @model_validator(mode="after")
    def _require_update_data(self):
        if self.operation == "update" and self.data is None:
            raise ValueError("data is required for the update operation")
        return self


class AccountResponse(BaseModel):
    id: str
    handle: str
    email: str
    full_name: str
    display_name: str
    role: str
    avatar: Optional[str] = None
    cover_image: Optional[str] = None
    is_email_verified: bool
    is_active: bool
    deactivation_reason: Optional[str] = None
    deactivated_at: Optional[datetime] = None
    login_count: int = 0
    last_login_at: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    preferences: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_in: int
    refresh_expires_in: int


class AuthResponse(BaseModel):
    account: AccountResponse
    tokens: TokenResponse


class ActivityResponse(BaseModel):
    account_id: str
    account_created: datetime
    last_login: Optional[datetime] = None
    last_activity: Optional[datetime] = None
    total_logins: int
