"""Helpers shared by the memory and Postgres account stores."""

from __future__ import annotations

import base64
import hashlib
import uuid
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from storefront_auth.config import load_or_create_secret
from storefront_auth.logging import get_logger
from storefront_auth.storage.models import ROLES, UPDATABLE_FIELDS, Account

logger = get_logger(__name__)


# ============================================================================
# TWO-FACTOR SECRET ENCRYPTION
# ============================================================================

def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_secret_cipher(
    key_material: Optional[str] = None, fs_root: Optional[str] = None
) -> Fernet:
    """Build the Fernet cipher used to encrypt TOTP secrets at rest.

    Without key material a key persisted under ``fs_root`` is used, so
    encrypted secrets survive restarts.
    """
    material = key_material or load_or_create_secret(".mfa_secret_key", fs_root)
    try:
        return Fernet(derive_cipher_key(material))
    except (TypeError, ValueError) as exc:
        raise RuntimeError("Unable to initialize two-factor secret cipher") from exc


def encrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: Optional[str]) -> Optional[str]:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken:
        # Key rotated or value written unencrypted; verification will fail closed
        logger.warning("two_factor_secret_decrypt_failed")
        return secret


# ============================================================================
# ACCOUNT HELPERS
# ============================================================================

def validate_update_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Reject unknown columns and invalid roles before any write happens."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported account fields: {sorted(unknown)}")
    role = fields.get("role")
    if role is not None and role not in ROLES:
        raise ValueError(f"unknown role: {role}")
    if "backup_codes" in fields:
        fields = {**fields, "backup_codes": list(fields["backup_codes"] or [])}
    return fields


def account_matches(
    account: Account,
    *,
    search: Optional[str] = None,
    role: Optional[str] = None,
    is_active: Optional[bool] = None,
) -> bool:
    if role is not None and account.role != role:
        return False
    if is_active is not None and account.is_active != is_active:
        return False
    if search:
        needle = search.lower()
        if needle not in account.name.lower() and needle not in account.email.lower():
            return False
    return True


def generate_uuid() -> str:
    return str(uuid.uuid4())
