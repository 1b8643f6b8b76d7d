from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    """A customer or staff identity and its authentication state.

    ``backup_codes`` holds sha256 digests only; plaintext codes are shown to
    the holder once and never stored. ``two_factor_secret`` is plaintext in
    memory and encrypted by the store before it is persisted.
    """

    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    password_changed_at: Optional[datetime] = None
    role: str = ROLE_USER
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    backup_codes: List[str] = field(default_factory=list)
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    is_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


# Columns a caller may change through update_account
UPDATABLE_FIELDS = frozenset(
    {
        "email",
        "name",
        "password_hash",
        "password_changed_at",
        "role",
        "failed_login_attempts",
        "lock_until",
        "last_login_at",
        "two_factor_enabled",
        "two_factor_secret",
        "backup_codes",
        "google_id",
        "avatar",
        "is_verified",
        "is_active",
    }
)
