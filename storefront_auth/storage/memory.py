from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from storefront_auth.logging import get_logger
from storefront_auth.storage.common import (
    account_matches,
    build_secret_cipher,
    decrypt_secret,
    encrypt_secret,
    generate_uuid,
    validate_update_fields,
)
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.models import ROLE_USER, Account, utcnow


class MemoryStore:
    """In-process account store persisted to a JSON snapshot under ``fs_root``.

    Every public method runs under one re-entrant lock, so each call is an
    atomic read-modify-write. Records handed to callers are copies; changes
    only land through :meth:`update_account`.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/storefront",
        *,
        mfa_encryption_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._persist_enabled = persist
        self._cipher = build_secret_cipher(mfa_encryption_key, str(self.fs_root))
        if persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "accounts.json"

    # account CRUD
    def create_account(
        self,
        email: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        role: str = ROLE_USER,
        google_id: Optional[str] = None,
        avatar: Optional[str] = None,
        is_verified: bool = False,
        is_active: bool = True,
    ) -> Account:
        normalized = email.strip().lower()
        with self._data_lock:
            if self._find_by_email(normalized):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            account = Account(
                id=generate_uuid(),
                email=normalized,
                name=name,
                password_hash=password_hash,
                role=role,
                google_id=google_id,
                avatar=avatar,
                is_verified=is_verified,
                is_active=is_active,
                created_at=now,
                updated_at=now,
            )
            validate_update_fields({"role": role})
            self.accounts[account.id] = account
            self._persist_state()
            return self._public_copy(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._public_copy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = self._find_by_email(email.strip().lower())
            return self._public_copy(account) if account else None

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        fields = validate_update_fields(fields)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in fields:
                fields["email"] = fields["email"].strip().lower()
                existing = self._find_by_email(fields["email"])
                if existing and existing.id != account_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if "two_factor_secret" in fields:
                fields["two_factor_secret"] = encrypt_secret(
                    self._cipher, fields["two_factor_secret"]
                )
            updated = replace(account, **fields, updated_at=utcnow())
            self.accounts[account_id] = updated
            self._persist_state()
            return self._public_copy(updated)

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            removed = self.accounts.pop(account_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    def list_accounts(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Account], int]:
        with self._data_lock:
            matches = [
                a
                for a in self.accounts.values()
                if account_matches(a, search=search, role=role, is_active=is_active)
            ]
            matches.sort(key=lambda a: a.created_at, reverse=True)
            page = matches[offset : offset + limit]
            return [self._public_copy(a) for a in page], len(matches)

    def count_accounts(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for a in self.accounts.values()
                if account_matches(a, role=role, is_active=is_active)
            )

    def verify_connection(self) -> None:
        self._state_path()

    def close(self) -> None:
        return None

    def _find_by_email(self, email: str) -> Optional[Account]:
        return next((a for a in self.accounts.values() if a.email == email), None)

    def _public_copy(self, account: Account) -> Account:
        return replace(
            account,
            backup_codes=list(account.backup_codes),
            two_factor_secret=decrypt_secret(self._cipher, account.two_factor_secret),
        )

    # persistence
    def _persist_state(self) -> None:
        if not self._persist_enabled:
            return
        state = {"accounts": [self._serialize_account(a) for a in self.accounts.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.logger.info("memory_store_loaded", accounts=len(self.accounts))
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "email": account.email,
            "name": account.name,
            "password_hash": account.password_hash,
            "password_changed_at": self._serialize_datetime(account.password_changed_at),
            "role": account.role,
            "failed_login_attempts": account.failed_login_attempts,
            "lock_until": self._serialize_datetime(account.lock_until),
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "two_factor_enabled": account.two_factor_enabled,
            "two_factor_secret": account.two_factor_secret,
            "backup_codes": list(account.backup_codes),
            "google_id": account.google_id,
            "avatar": account.avatar,
            "is_verified": account.is_verified,
            "is_active": account.is_active,
            "created_at": self._serialize_datetime(account.created_at),
            "updated_at": self._serialize_datetime(account.updated_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash"),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            role=data.get("role", ROLE_USER),
            failed_login_attempts=int(data.get("failed_login_attempts", 0)),
            lock_until=self._deserialize_datetime(data.get("lock_until")),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_secret=data.get("two_factor_secret"),
            backup_codes=list(data.get("backup_codes") or []),
            google_id=data.get("google_id"),
            avatar=data.get("avatar"),
            is_verified=bool(data.get("is_verified", False)),
            is_active=bool(data.get("is_active", True)),
            created_at=self._deserialize_datetime(data["created_at"]) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
