"""Time-based one-time passwords, backup codes and 2FA attempt throttling.

Codes follow RFC 6238 (6 digits, 30-second step, HMAC-SHA1), compatible
with Google Authenticator, Authy and Aegis. Backup codes are stored only as
sha256 digests and are single use.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import io
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional

import pyotp
import qrcode

from storefront_auth.logging import get_logger
from storefront_auth.storage.local_cache import EphemeralStore

logger = get_logger(__name__)

# 32 base32 characters carry 160 bits of entropy
SECRET_LENGTH = 32
BACKUP_CODE_BYTES = 4
_CODE_PATTERN = re.compile(r"^\d{6}$")
_WHITESPACE = re.compile(r"\s+")


def rate_limit_key(account_id: str) -> str:
    return f"2fa_{account_id}"


@dataclass(frozen=True)
class TwoFactorEnrollment:
    secret: str
    provisioning_uri: str
    backup_codes: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class BackupCodeResult:
    valid: bool
    remaining_hashes: List[str]


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining_attempts: int
    retry_after: int = 0


class TwoFactorService:
    def __init__(
        self,
        attempt_store: EphemeralStore,
        *,
        issuer: str = "Storefront Admin",
        valid_window: int = 2,
        backup_code_count: int = 10,
        max_attempts: int = 5,
        window_seconds: int = 15 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.attempt_store = attempt_store
        self.issuer = issuer
        self.valid_window = valid_window
        self.backup_code_count = backup_code_count
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._clock = clock

    # enrollment
    def generate_enrollment(self, account_email: str) -> TwoFactorEnrollment:
        secret = pyotp.random_base32(length=SECRET_LENGTH)
        return TwoFactorEnrollment(
            secret=secret,
            provisioning_uri=self.provisioning_uri(secret, account_email),
            backup_codes=self.generate_backup_codes(),
        )

    def provisioning_uri(self, secret: str, account_email: str) -> str:
        return pyotp.TOTP(secret).provisioning_uri(
            name=account_email, issuer_name=self.issuer
        )

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        return [
            secrets.token_hex(BACKUP_CODE_BYTES).upper()
            for _ in range(count or self.backup_code_count)
        ]

    @staticmethod
    def qr_code_data_url(provisioning_uri: str) -> str:
        """Render the provisioning URI as an inline PNG data URL."""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(provisioning_uri)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        encoded = base64.b64encode(buffer.getvalue()).decode("utf-8")
        return f"data:image/png;base64,{encoded}"

    # verification
    def verify_time_based_code(
        self, code: Optional[str], secret: Optional[str], *, at: Optional[float] = None
    ) -> bool:
        if not code or not secret:
            return False
        code = _WHITESPACE.sub("", str(code))
        if not _CODE_PATTERN.match(code):
            return False
        for_time = int(at if at is not None else self._clock())
        try:
            return pyotp.TOTP(secret).verify(
                code, for_time=for_time, valid_window=self.valid_window
            )
        except (binascii.Error, ValueError, TypeError):
            logger.warning("two_factor_secret_invalid")
            return False

    @staticmethod
    def normalize_backup_code(code: str) -> str:
        return _WHITESPACE.sub("", code).upper()

    def hash_backup_code(self, code: str) -> str:
        return hashlib.sha256(self.normalize_backup_code(code).encode()).hexdigest()

    def hash_backup_codes(self, codes: Iterable[str]) -> List[str]:
        return [self.hash_backup_code(c) for c in codes]

    def verify_backup_code(
        self, code: Optional[str], stored_hashes: Iterable[str]
    ) -> BackupCodeResult:
        """Check ``code`` against ``stored_hashes`` without mutating them.

        A match returns the stored list minus that one digest; persisting the
        remainder is what makes the code single use.
        """
        hashes = list(stored_hashes)
        if not code or not self.normalize_backup_code(str(code)):
            return BackupCodeResult(valid=False, remaining_hashes=hashes)
        candidate = self.hash_backup_code(str(code))
        for index, stored in enumerate(hashes):
            if secrets.compare_digest(stored, candidate):
                return BackupCodeResult(
                    valid=True, remaining_hashes=hashes[:index] + hashes[index + 1 :]
                )
        return BackupCodeResult(valid=False, remaining_hashes=hashes)

    # throttling
    async def check_rate_limit(self, identifier: str) -> RateLimitResult:
        """Record one attempt for ``identifier`` in the sliding window."""
        allowed, remaining, retry_after = await self.attempt_store.hit_window(
            identifier, self.max_attempts, self.window_seconds
        )
        if not allowed:
            logger.warning(
                "two_factor_rate_limited", identifier=identifier, retry_after=retry_after
            )
        return RateLimitResult(
            allowed=allowed, remaining_attempts=remaining, retry_after=retry_after
        )

    async def reset_rate_limit(self, identifier: str) -> None:
        await self.attempt_store.reset_window(identifier)
