from __future__ import annotations

import asyncio
import contextlib
import math
import time
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.errors import (
    AuthenticationError,
    AuthorizationError,
    LockedAccountError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from storefront_auth.service.external_identity import GoogleIdentityVerifier
from storefront_auth.service.lockout import LockoutPolicy
from storefront_auth.service.order_history import InMemoryOrderHistory, OrderHistory
from storefront_auth.service.passwords import PasswordService
from storefront_auth.service.tokens import (
    ACCESS,
    REFRESH,
    InvalidTokenError,
    TokenIssuer,
    TokenPair,
)
from storefront_auth.service.two_factor import TwoFactorService, rate_limit_key
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.local_cache import EphemeralStore
from storefront_auth.storage.models import ROLE_ADMIN, ROLE_USER, ROLES, Account

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
LOCKED_MESSAGE = "Account is temporarily locked due to too many failed login attempts"

# Higher roles satisfy every requirement of the roles listed after them
_ROLE_GRANTS = {ROLE_ADMIN: {ROLE_ADMIN, ROLE_USER}, ROLE_USER: {ROLE_USER}}


class AccountStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def delete_account(self, account_id: str) -> bool: ...

    def list_accounts(
        self,
        *,
        search: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Account], int]: ...

    def count_accounts(
        self, *, role: Optional[str] = None, is_active: Optional[bool] = None
    ) -> int: ...


@dataclass
class AuthContext:
    account_id: str
    email: str
    role: str
    account: Account

    def has_role(self, required: str) -> bool:
        return required in _ROLE_GRANTS.get(self.role, set())


@dataclass
class AuthResult:
    account: Account
    tokens: TokenPair


@dataclass
class LoginResult:
    account: Account
    tokens: Optional[TokenPair] = None
    requires_two_factor: bool = False


@dataclass
class TwoFactorSetup:
    secret: str
    provisioning_uri: str
    qr_code: str
    backup_codes: List[str]


@dataclass
class AccountPage:
    accounts: List[Account]
    total: int
    page: int
    limit: int
    stats: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class RemovalOutcome:
    account: Account
    deactivated: bool


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


class AuthService:
    """Registration, login, token refresh, 2FA lifecycle and account administration.

    Store calls are synchronous; the service is async because the ephemeral
    store and the external identity check are. Mutations of one account's
    lockout or 2FA state are serialized per process by ``_account_lock``.
    """

    def __init__(
        self,
        store: AccountStore,
        cache: EphemeralStore,
        settings: Settings,
        *,
        passwords: Optional[PasswordService] = None,
        tokens: Optional[TokenIssuer] = None,
        lockout: Optional[LockoutPolicy] = None,
        two_factor: Optional[TwoFactorService] = None,
        order_history: Optional[OrderHistory] = None,
        identity_verifier: Optional[GoogleIdentityVerifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._clock = clock
        self.passwords = passwords or PasswordService(
            time_cost=settings.password_hash_time_cost,
            memory_cost_kib=settings.password_hash_memory_kib,
        )
        self.tokens = tokens or TokenIssuer(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_minutes * 60,
            refresh_ttl_seconds=settings.refresh_token_ttl_minutes * 60,
            clock=clock,
        )
        self.lockout = lockout or LockoutPolicy(
            max_attempts=settings.lockout_max_attempts,
            lock_duration=timedelta(minutes=settings.lockout_duration_minutes),
        )
        self.two_factor = two_factor or TwoFactorService(
            cache,
            issuer=settings.two_factor_issuer,
            valid_window=settings.two_factor_valid_window,
            backup_code_count=settings.backup_code_count,
            max_attempts=settings.two_factor_max_attempts,
            window_seconds=settings.two_factor_window_seconds,
            clock=clock,
        )
        self.order_history = order_history or InMemoryOrderHistory()
        self.identity_verifier = identity_verifier or GoogleIdentityVerifier(
            settings.google_tokeninfo_url, settings.oauth_google_client_id
        )
        self.logger = logger
        self._account_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _now(self) -> datetime:
        """Timezone-aware UTC helper driven by the injectable clock."""

        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @contextlib.asynccontextmanager
    async def _account_lock(self, account_id: str) -> AsyncIterator[None]:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account_id] = lock
        async with lock:
            yield

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("User not found")
        return account

    def _update(self, account_id: str, **fields: Any) -> Account:
        updated = self.store.update_account(account_id, **fields)
        if updated is None:
            raise NotFoundError("User not found")
        return updated

    # registration / login
    async def register(self, name: str, email: str, password: str) -> AuthResult:
        if not self.settings.allow_signup:
            raise AuthorizationError("Registration is currently disabled")
        duplicate = ValidationError(
            "Email already registered",
            details=[{"field": "email", "message": "Email already registered"}],
        )
        if self.store.get_account_by_email(email):
            raise duplicate
        password_hash = self.passwords.hash(password)
        try:
            account = self.store.create_account(
                email, name.strip(), password_hash=password_hash
            )
        except ConstraintViolation:
            raise duplicate from None
        self.logger.info("account_registered", account_id=account.id)
        return AuthResult(account=account, tokens=self.tokens.issue_pair(account))

    async def login(
        self, email: str, password: str, two_factor_token: Optional[str] = None
    ) -> LoginResult:
        """Authenticate with password and, when enrolled, a second factor.

        Raises:
            AuthenticationError: unknown or inactive account, wrong password,
                or rejected second factor
            LockedAccountError: lock_until is still in the future
            RateLimitedError: too many second-factor attempts
        """
        candidate = self.store.get_account_by_email(email)
        if not candidate or not candidate.is_active:
            self.logger.info("login_failed", reason="unknown_account")
            raise AuthenticationError(INVALID_CREDENTIALS)

        async with self._account_lock(candidate.id):
            account = self.store.get_account(candidate.id) or candidate
            now = self._now()
            if self.lockout.is_locked(account, now):
                retry_after = self.lockout.retry_after_seconds(account, now)
                self.logger.warning(
                    "login_rejected_locked", account_id=account.id, retry_after=retry_after
                )
                raise LockedAccountError(LOCKED_MESSAGE, retry_after=retry_after)

            if not self.passwords.verify(password, account.password_hash):
                updates = self.lockout.record_failure(account, now)
                if updates:
                    account = self._update(account.id, **updates)
                if updates.get("lock_until"):
                    self.logger.warning(
                        "account_locked",
                        account_id=account.id,
                        lock_until=account.lock_until.isoformat(),
                    )
                self.logger.info(
                    "login_failed",
                    reason="bad_password",
                    account_id=account.id,
                    failed_attempts=account.failed_login_attempts,
                )
                raise AuthenticationError(INVALID_CREDENTIALS)

            second_factor_updates: Dict[str, Any] = {}
            if account.two_factor_enabled:
                if not two_factor_token:
                    return LoginResult(account=account, requires_two_factor=True)
                second_factor_updates = await self._verify_second_factor(
                    account, two_factor_token
                )

            updates = {**self.lockout.record_success(account, now), **second_factor_updates}
            if self.passwords.needs_rehash(account.password_hash):
                updates["password_hash"] = self.passwords.hash(password)
            account = self._update(account.id, **updates)

        self.logger.info("login_succeeded", account_id=account.id)
        return LoginResult(account=account, tokens=self.tokens.issue_pair(account))

    async def _check_two_factor_throttle(self, account: Account) -> str:
        key = rate_limit_key(account.id)
        result = await self.two_factor.check_rate_limit(key)
        if not result.allowed:
            minutes = max(1, math.ceil(result.retry_after / 60))
            raise RateLimitedError(
                f"Too many 2FA attempts. Please try again in {minutes} minute(s).",
                retry_after=result.retry_after,
            )
        return key

    async def _verify_second_factor(self, account: Account, code: str) -> Dict[str, Any]:
        """Accept a TOTP code, falling back to a backup code.

        Returns the field updates to persist with the login outcome: the
        reduced backup-code list when a backup code was consumed.
        """
        key = await self._check_two_factor_throttle(account)
        if self.two_factor.verify_time_based_code(code, account.two_factor_secret):
            await self.two_factor.reset_rate_limit(key)
            return {}
        if account.backup_codes:
            result = self.two_factor.verify_backup_code(code, account.backup_codes)
            if result.valid:
                await self.two_factor.reset_rate_limit(key)
                self.logger.info(
                    "backup_code_consumed",
                    account_id=account.id,
                    remaining=len(result.remaining_hashes),
                )
                return {"backup_codes": result.remaining_hashes}
        self.logger.warning("two_factor_rejected", account_id=account.id)
        raise AuthenticationError("Invalid two-factor authentication code")

    async def refresh(self, refresh_token: str) -> AuthResult:
        """Exchange a refresh token for a new pair.

        With rotation enabled the presented token is revoked for the rest of
        its lifetime, so a replayed token is rejected.
        """
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except InvalidTokenError:
            raise AuthenticationError("Invalid refresh token") from None

        async with self._account_lock(claims.account_id):
            rotation = self.settings.refresh_token_rotation
            if rotation and await self.cache.is_token_revoked(claims.jti):
                self.logger.warning("refresh_token_replayed", account_id=claims.account_id)
                raise AuthenticationError("Invalid refresh token")
            account = self.store.get_account(claims.account_id)
            if not account or not account.is_active:
                raise AuthenticationError("Invalid refresh token")
            if account.password_changed_at and claims.issued_at < int(
                account.password_changed_at.timestamp()
            ):
                self.logger.info("refresh_token_predates_password", account_id=account.id)
                raise AuthenticationError("Invalid refresh token")
            if rotation:
                await self.cache.revoke_token(
                    claims.jti, self.tokens.remaining_lifetime(claims)
                )
        return AuthResult(account=account, tokens=self.tokens.issue_pair(account))

    async def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve a bearer header to an identity with exactly one store read."""
        token = _extract_bearer(authorization)
        if not token:
            return None
        try:
            claims = self.tokens.verify(token, ACCESS)
        except InvalidTokenError:
            return None
        account = self.store.get_account(claims.account_id)
        if not account or not account.is_active:
            return None
        return AuthContext(
            account_id=account.id, email=account.email, role=account.role, account=account
        )

    async def change_password(
        self, account: Account, current_password: str, new_password: str
    ) -> Account:
        async with self._account_lock(account.id):
            current = self._require_account(account.id)
            if not self.passwords.verify(current_password, current.password_hash):
                self.logger.info("password_change_rejected", account_id=account.id)
                raise ValidationError(
                    "Current password is incorrect",
                    details=[
                        {"field": "currentPassword", "message": "Current password is incorrect"}
                    ],
                )
            updated = self._update(
                account.id,
                password_hash=self.passwords.hash(new_password),
                password_changed_at=self._now(),
            )
        self.logger.info("password_changed", account_id=account.id)
        return updated

    async def login_with_google(self, credential: str) -> AuthResult:
        identity = await self.identity_verifier.verify(credential)
        if identity is None:
            raise AuthenticationError("Invalid Google credential")

        account = self.store.get_account_by_email(identity.email)
        if account is None:
            try:
                account = self.store.create_account(
                    identity.email,
                    identity.name,
                    google_id=identity.provider_uid,
                    avatar=identity.picture,
                    is_verified=True,
                )
            except ConstraintViolation:
                account = self.store.get_account_by_email(identity.email)
                if account is None:
                    raise AuthenticationError(INVALID_CREDENTIALS) from None
            else:
                self.logger.info("account_registered", account_id=account.id, provider="google")

        if not account.is_active:
            raise AuthenticationError(INVALID_CREDENTIALS)
        if account.google_id and account.google_id != identity.provider_uid:
            self.logger.warning("external_identity_conflict", account_id=account.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not account.google_id and not identity.email_verified:
            # Linking an unverified address would hand the account to its claimant
            raise AuthenticationError(INVALID_CREDENTIALS)

        async with self._account_lock(account.id):
            account = self._require_account(account.id)
            now = self._now()
            if self.lockout.is_locked(account, now):
                raise LockedAccountError(
                    LOCKED_MESSAGE, retry_after=self.lockout.retry_after_seconds(account, now)
                )
            if account.two_factor_enabled:
                raise AuthenticationError(
                    "Two-factor authentication is enabled; sign in with your password"
                )
            updates = self.lockout.record_success(account, now)
            if not account.google_id:
                updates["google_id"] = identity.provider_uid
            if not account.avatar and identity.picture:
                updates["avatar"] = identity.picture
            account = self._update(account.id, **updates)
        self.logger.info("login_succeeded", account_id=account.id, provider="google")
        return AuthResult(account=account, tokens=self.tokens.issue_pair(account))

    # two-factor lifecycle
    async def setup_two_factor(self, account: Account) -> TwoFactorSetup:
        """Move the account to PendingVerification with a fresh secret."""
        if not account.is_admin:
            raise AuthorizationError("Access denied")
        async with self._account_lock(account.id):
            current = self._require_account(account.id)
            if current.two_factor_enabled:
                raise ValidationError("Two-factor authentication is already enabled")
            enrollment = self.two_factor.generate_enrollment(current.email)
            self._update(
                current.id,
                two_factor_secret=enrollment.secret,
                two_factor_enabled=False,
                backup_codes=[],
            )
        self.logger.info("two_factor_setup_started", account_id=account.id)
        return TwoFactorSetup(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            qr_code=self.two_factor.qr_code_data_url(enrollment.provisioning_uri),
            backup_codes=enrollment.backup_codes,
        )

    async def verify_two_factor(self, account: Account, code: str) -> List[str]:
        """Confirm enrollment with a TOTP code and issue the stored backup codes."""
        if not account.is_admin:
            raise AuthorizationError("Access denied")
        async with self._account_lock(account.id):
            current = self._require_account(account.id)
            if current.two_factor_enabled:
                raise ValidationError("Two-factor authentication is already enabled")
            if not current.two_factor_secret:
                raise ValidationError("Two-factor setup not initiated")
            key = await self._check_two_factor_throttle(current)
            if not self.two_factor.verify_time_based_code(code, current.two_factor_secret):
                self.logger.warning("two_factor_rejected", account_id=current.id)
                raise AuthenticationError("Invalid token")
            await self.two_factor.reset_rate_limit(key)
            backup_codes = self.two_factor.generate_backup_codes()
            self._update(
                current.id,
                two_factor_enabled=True,
                backup_codes=self.two_factor.hash_backup_codes(backup_codes),
            )
        self.logger.info("two_factor_enabled", account_id=account.id)
        return backup_codes

    async def disable_two_factor(self, account: Account, password: str, code: str) -> None:
        if not account.is_admin:
            raise AuthorizationError("Access denied")
        async with self._account_lock(account.id):
            current = self._require_account(account.id)
            if not self.passwords.verify(password, current.password_hash):
                raise AuthenticationError("Invalid password")
            if not current.two_factor_enabled or not current.two_factor_secret:
                raise ValidationError("Two-factor authentication is not enabled")
            key = await self._check_two_factor_throttle(current)
            if not self.two_factor.verify_time_based_code(code, current.two_factor_secret):
                self.logger.warning("two_factor_rejected", account_id=current.id)
                raise AuthenticationError("Invalid token")
            await self.two_factor.reset_rate_limit(key)
            self._update(
                current.id,
                two_factor_enabled=False,
                two_factor_secret=None,
                backup_codes=[],
            )
        self.logger.info("two_factor_disabled", account_id=account.id)

    # administration
    def account_stats(self) -> Dict[str, Any]:
        total = self.store.count_accounts()
        active = self.store.count_accounts(is_active=True)
        return {
            "total": total,
            "active": active,
            "inactive": total - active,
            "by_role": {role: self.store.count_accounts(role=role) for role in ROLES},
        }

    def list_accounts(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        search: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> AccountPage:
        page = max(page, 1)
        accounts, total = self.store.list_accounts(
            search=search.strip() if search else None,
            role=role,
            is_active=is_active,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return AccountPage(
            accounts=accounts, total=total, page=page, limit=limit, stats=self.account_stats()
        )

    def get_account(self, account_id: str) -> Account:
        return self._require_account(account_id)

    async def admin_update_account(
        self,
        actor: AuthContext,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> Account:
        async with self._account_lock(account_id):
            target = self._require_account(account_id)
            is_self = target.id == actor.account_id
            if is_self and role is not None and role != target.role:
                raise ValidationError("Cannot change your own role")
            if is_self and is_active is False:
                raise ValidationError("Cannot deactivate your own account")
            updates: Dict[str, Any] = {}
            if name is not None:
                updates["name"] = name.strip()
            if email is not None and email != target.email:
                if self.store.get_account_by_email(email):
                    raise ValidationError(
                        "Email already in use",
                        details=[{"field": "email", "message": "Email already in use"}],
                    )
                updates["email"] = email
            if role is not None:
                updates["role"] = role
            if is_active is not None:
                updates["is_active"] = is_active
            if not updates:
                return target
            try:
                updated = self._update(account_id, **updates)
            except ConstraintViolation:
                raise ValidationError(
                    "Email already in use",
                    details=[{"field": "email", "message": "Email already in use"}],
                ) from None
        self.logger.info(
            "account_updated_by_admin",
            account_id=account_id,
            actor_id=actor.account_id,
            fields=sorted(updates),
        )
        return updated

    async def remove_account(self, actor: AuthContext, account_id: str) -> RemovalOutcome:
        """Delete an account, or deactivate it when it owns order history."""
        if account_id == actor.account_id:
            raise ValidationError("Cannot delete your own account")
        async with self._account_lock(account_id):
            target = self._require_account(account_id)
            if self.order_history.count_orders(target.id) > 0:
                updated = self._update(target.id, is_active=False)
                self.logger.info(
                    "account_deactivated", account_id=target.id, actor_id=actor.account_id
                )
                return RemovalOutcome(account=updated, deactivated=True)
            self.store.delete_account(target.id)
        self.logger.info("account_deleted", account_id=target.id, actor_id=actor.account_id)
        return RemovalOutcome(account=target, deactivated=False)
