from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict

from storefront_auth.storage.models import Account


class LockoutPolicy:
    """Consecutive-failure lockout for password logins.

    The guard is pure: it computes the field updates for an account and the
    caller persists them, usually together with other login-outcome fields.

    States::

        Unlocked --failure--> Unlocked (counter + 1)
        Unlocked --Nth failure--> Locked (lock_until = now + duration)
        Locked (expired) --failure--> Unlocked (counter = 1)
        any --success--> Unlocked (counter = 0, last_login_at = now)
    """

    def __init__(
        self, *, max_attempts: int = 5, lock_duration: timedelta = timedelta(hours=2)
    ) -> None:
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    def is_locked(self, account: Account, now: datetime) -> bool:
        return account.lock_until is not None and account.lock_until > now

    def retry_after_seconds(self, account: Account, now: datetime) -> int:
        if not self.is_locked(account, now):
            return 0
        # Whole minutes only; the exact unlock instant is not disclosed
        seconds = (account.lock_until - now).total_seconds()
        return 60 * max(1, math.ceil(seconds / 60))

    def record_failure(self, account: Account, now: datetime) -> Dict[str, Any]:
        if account.lock_until is not None and account.lock_until <= now:
            # Expired lock: this failure opens a fresh window
            return {"failed_login_attempts": 1, "lock_until": None}
        if self.is_locked(account, now):
            # Counter is frozen while locked
            return {}
        attempts = account.failed_login_attempts + 1
        updates: Dict[str, Any] = {"failed_login_attempts": attempts}
        if attempts >= self.max_attempts:
            updates["lock_until"] = now + self.lock_duration
        return updates

    def record_success(self, account: Account, now: datetime) -> Dict[str, Any]:
        return {"failed_login_attempts": 0, "lock_until": None, "last_login_at": now}
