from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from storefront_auth.storage.models import Account


def _normalize_unicode(value: str) -> str:
    """Normalize Unicode input using NFKC.

    Zero-width and bidi override characters are dropped first so that
    visually identical emails and names cannot be registered twice.
    """
    # U+200B ZERO WIDTH SPACE, U+200C ZWNJ, U+200D ZWJ, U+FEFF ZERO WIDTH NO-BREAK SPACE
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    # U+202A-U+202E, U+2066-U+2069
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


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


def _validate_name(value: str) -> str:
    normalized = _normalize_unicode(value).strip()
    if len(normalized) < 1:
        raise ValueError("name is required")
    if len(normalized) > 100:
        raise ValueError("name must be at most 100 characters")
    return normalized


_PASSWORD_CLASSES = (
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"\d"), "a digit"),
    (re.compile(r"[^A-Za-z0-9]"), "a special character"),
)


def _validate_password_strength(value: str) -> str:
    """Validate password length and character classes."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    missing = [label for pattern, label in _PASSWORD_CLASSES if not pattern.search(value)]
    if missing:
        raise ValueError("password must contain " + ", ".join(missing))
    return value


class CamelModel(BaseModel):
    """JSON bodies use camelCase; Python attributes stay snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# requests
class RegisterRequest(CamelModel):
    name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=256)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class LoginRequest(CamelModel):
    email: str = Field(..., max_length=320)
    password: str = Field(..., min_length=1, max_length=256)
    two_factor_token: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("two_factor_token")
    @classmethod
    def _blank_token_is_absent(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return value.strip()


class RefreshRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TwoFactorVerifyRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=32)


class TwoFactorDisableRequest(CamelModel):
    password: str = Field(..., min_length=1, max_length=256)
    token: str = Field(..., min_length=1, max_length=32)


class ChangePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)
    confirm_password: Optional[str] = Field(default=None, max_length=256)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @model_validator(mode="after")
    def _confirmation_matches(self) -> "ChangePasswordRequest":
        if self.confirm_password is not None and self.confirm_password != self.new_password:
            raise ValueError("password confirmation does not match")
        return self


class GoogleLoginRequest(CamelModel):
    credential: str = Field(..., min_length=1, max_length=8192)


class AdminAccountUpdate(CamelModel):
    name: Optional[str] = Field(default=None, max_length=200)
    email: Optional[str] = Field(default=None, max_length=320)
    role: Optional[Literal["user", "admin"]] = None
    is_active: Optional[bool] = None

    @field_validator("name")
    @classmethod
    def _validate_update_name(cls, value: Optional[str]) -> Optional[str]:
        return _validate_name(value) if value is not None else None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None


# responses
class AccountSummary(CamelModel):
    id: str
    name: str
    email: str
    role: str
    two_factor_enabled: bool = False
    is_active: bool = True
    avatar: Optional[str] = None
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            name=account.name,
            email=account.email,
            role=account.role,
            two_factor_enabled=account.two_factor_enabled,
            is_active=account.is_active,
            avatar=account.avatar,
            created_at=account.created_at,
            last_login_at=account.last_login_at,
        )


class TokenPairResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthResponse(CamelModel):
    message: str
    user: AccountSummary
    tokens: TokenPairResponse


class TwoFactorChallengeResponse(CamelModel):
    message: str
    requires_two_factor: bool = True


class RefreshResponse(CamelModel):
    tokens: TokenPairResponse


class MeResponse(CamelModel):
    user: AccountSummary


class MessageResponse(CamelModel):
    message: str


class TwoFactorSetupResponse(CamelModel):
    message: str
    secret: str
    qr_code: str
    otpauth_url: str
    backup_codes: List[str]


class BackupCodesResponse(CamelModel):
    message: str
    backup_codes: List[str]


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    total_users: int
    has_next: bool
    has_prev: bool


class AccountStats(CamelModel):
    total: int
    active: int
    inactive: int
    by_role: Dict[str, int]


class AccountListResponse(CamelModel):
    users: List[AccountSummary]
    pagination: Pagination
    stats: AccountStats


class AccountDetailResponse(CamelModel):
    user: AccountSummary


class AccountMutationResponse(CamelModel):
    message: str
    user: AccountSummary


class ErrorBody(CamelModel):
    """Every error response carries a human-readable ``error`` and stable ``code``."""

    error: str
    code: str
    details: Optional[List[Dict[str, Any]]] = None
    retry_after: Optional[int] = None
    message: Optional[str] = None
