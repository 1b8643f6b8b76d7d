from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Protocol, Tuple


class EphemeralStore(Protocol):
    """Expiring state shared by throttles and refresh-token revocation.

    ``hit_window`` records one attempt against ``key`` inside a sliding window
    and returns ``(allowed, remaining, retry_after_seconds)``. Rejected attempts
    are not recorded.
    """

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]: ...

    async def reset_window(self, key: str) -> None: ...

    async def revoke_token(self, jti: str, ttl_seconds: int) -> None: ...

    async def is_token_revoked(self, jti: str) -> bool: ...

    def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


# Expired entries are swept on write once this many keys are tracked
_SWEEP_THRESHOLD = 1024


class LocalCache:
    """Process-local ephemeral store for single-instance deployments and tests.

    State is not shared between processes; use :class:`RedisCache` when more
    than one instance serves traffic.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, Deque[float]] = {}
        self._window_expiry: Dict[str, float] = {}
        self._revoked: Dict[str, float] = {}

    async def hit_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        with self._lock:
            attempts = self._windows.setdefault(key, deque())
            cutoff = now - window_seconds
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()
            if len(attempts) >= limit:
                retry_after = attempts[0] + window_seconds - now
                return False, 0, max(1, int(retry_after + 0.999))
            attempts.append(now)
            self._window_expiry[key] = now + window_seconds
            self._maybe_sweep(now)
            return True, limit - len(attempts), 0

    async def reset_window(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)
            self._window_expiry.pop(key, None)

    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        now = self._clock()
        with self._lock:
            self._revoked[jti] = now + ttl_seconds
            self._maybe_sweep(now)

    async def is_token_revoked(self, jti: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._revoked.get(jti)
            if expires_at is None:
                return False
            if expires_at <= now:
                del self._revoked[jti]
                return False
            return True

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._windows.clear()
            self._window_expiry.clear()
            self._revoked.clear()

    def _maybe_sweep(self, now: float) -> None:
        if len(self._window_expiry) + len(self._revoked) < _SWEEP_THRESHOLD:
            return
        for key in [k for k, exp in self._window_expiry.items() if exp <= now]:
            self._window_expiry.pop(key, None)
            self._windows.pop(key, None)
        for jti in [j for j, exp in self._revoked.items() if exp <= now]:
            self._revoked.pop(jti, None)
