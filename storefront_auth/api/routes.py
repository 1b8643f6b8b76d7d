from __future__ import annotations

from typing import Literal, Optional, Union

from fastapi import APIRouter, Depends, Path, Query, status

from storefront_auth.api.dependencies import require_admin, require_authenticated
from storefront_auth.api.schemas import (
    AccountDetailResponse,
    AccountListResponse,
    AccountMutationResponse,
    AccountStats,
    AccountSummary,
    AdminAccountUpdate,
    AuthResponse,
    BackupCodesResponse,
    ChangePasswordRequest,
    GoogleLoginRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    Pagination,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    TokenPairResponse,
    TwoFactorChallengeResponse,
    TwoFactorDisableRequest,
    TwoFactorSetupResponse,
    TwoFactorVerifyRequest,
)
from storefront_auth.service.auth import AuthContext, AuthResult
from storefront_auth.service.runtime import get_runtime
from storefront_auth.service.tokens import TokenPair

router = APIRouter(prefix="/api")


def _token_response(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
    )


def _auth_response(message: str, result: AuthResult) -> AuthResponse:
    return AuthResponse(
        message=message,
        user=AccountSummary.from_account(result.account),
        tokens=_token_response(result.tokens),
    )


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
async def register(body: RegisterRequest):
    """Create a customer account and sign it in.

    Raises:
        400: Missing or invalid fields, or the email is already registered
        403: Self-service registration is disabled
    """
    result = await get_runtime().auth.register(body.name, body.email, body.password)
    return _auth_response("Registration successful", result)


@router.post(
    "/auth/login",
    response_model=Union[AuthResponse, TwoFactorChallengeResponse],
    tags=["auth"],
)
async def login(body: LoginRequest):
    """Authenticate with email and password, plus a 2FA code when enrolled.

    Enrolled accounts that omit ``twoFactorToken`` get ``requiresTwoFactor``
    instead of tokens. The token may be a TOTP code or a backup code.

    Raises:
        401: Invalid credentials or two-factor code
        423: Account temporarily locked
        429: Too many two-factor attempts
    """
    result = await get_runtime().auth.login(
        body.email, body.password, two_factor_token=body.two_factor_token
    )
    if result.requires_two_factor:
        return TwoFactorChallengeResponse(
            message="Two-factor authentication required",
            requires_two_factor=True,
        )
    return AuthResponse(
        message="Login successful",
        user=AccountSummary.from_account(result.account),
        tokens=_token_response(result.tokens),
    )


@router.post("/auth/refresh", response_model=RefreshResponse, tags=["auth"])
async def refresh(body: RefreshRequest):
    """Exchange a refresh token for a new token pair.

    Raises:
        401: Token invalid, expired, or already used
    """
    result = await get_runtime().auth.refresh(body.refresh_token)
    return RefreshResponse(tokens=_token_response(result.tokens))


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(ctx: AuthContext = Depends(require_authenticated)):
    return MeResponse(user=AccountSummary.from_account(ctx.account))


@router.post("/auth/google", response_model=AuthResponse, tags=["auth"])
async def google_login(body: GoogleLoginRequest):
    """Sign in with a Google ID token, creating the account on first use.

    Raises:
        401: Credential rejected or account unavailable for external sign-in
        423: Account temporarily locked
    """
    result = await get_runtime().auth.login_with_google(body.credential)
    return _auth_response("Login successful", result)


@router.put("/auth/change-password", response_model=MessageResponse, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, ctx: AuthContext = Depends(require_authenticated)
):
    """Replace the password after re-checking the current one.

    Raises:
        400: Current password incorrect, or new password fails policy
        401: Not authenticated
    """
    await get_runtime().auth.change_password(
        ctx.account, body.current_password, body.new_password
    )
    return MessageResponse(message="Password changed successfully")


# ---------------------------------------------------------------------------
# Two-factor enrollment (admin accounts)
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse, tags=["2fa"])
async def two_factor_setup(ctx: AuthContext = Depends(require_admin)):
    """Start enrollment: returns the secret, a QR code and backup codes.

    Raises:
        400: Two-factor authentication already enabled
        403: Caller is not an admin
    """
    setup = await get_runtime().auth.setup_two_factor(ctx.account)
    return TwoFactorSetupResponse(
        message="Scan the QR code with your authenticator app, then verify a code",
        secret=setup.secret,
        qr_code=setup.qr_code,
        otpauth_url=setup.provisioning_uri,
        backup_codes=setup.backup_codes,
    )


@router.post("/auth/2fa/verify", response_model=BackupCodesResponse, tags=["2fa"])
async def two_factor_verify(
    body: TwoFactorVerifyRequest, ctx: AuthContext = Depends(require_admin)
):
    """Complete enrollment and return the backup codes to store offline.

    Raises:
        400: Setup not initiated or already enabled
        401: Invalid code
        429: Too many attempts
    """
    backup_codes = await get_runtime().auth.verify_two_factor(ctx.account, body.token)
    return BackupCodesResponse(
        message="Two-factor authentication enabled successfully",
        backup_codes=backup_codes,
    )


@router.post("/auth/2fa/disable", response_model=MessageResponse, tags=["2fa"])
async def two_factor_disable(
    body: TwoFactorDisableRequest, ctx: AuthContext = Depends(require_admin)
):
    """Turn off two-factor authentication with password and a current code.

    Raises:
        400: Two-factor authentication is not enabled
        401: Invalid password or code
        429: Too many attempts
    """
    await get_runtime().auth.disable_two_factor(ctx.account, body.password, body.token)
    return MessageResponse(message="Two-factor authentication disabled successfully")


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


@router.get("/users", response_model=AccountListResponse, tags=["admin"])
async def list_users(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None, max_length=200),
    role: Optional[Literal["user", "admin"]] = Query(default=None),
    is_active: Optional[bool] = Query(default=None, alias="isActive"),
    ctx: AuthContext = Depends(require_admin),
):
    result = get_runtime().auth.list_accounts(
        page=page, limit=limit, search=search, role=role, is_active=is_active
    )
    total_pages = result.total_pages
    return AccountListResponse(
        users=[AccountSummary.from_account(a) for a in result.accounts],
        pagination=Pagination(
            current_page=result.page,
            total_pages=total_pages,
            total_users=result.total,
            has_next=result.page < total_pages,
            has_prev=result.page > 1,
        ),
        stats=AccountStats(**result.stats),
    )


@router.get("/users/{account_id}", response_model=AccountDetailResponse, tags=["admin"])
async def get_user(
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_admin),
):
    """Return one account's summary; secrets and hashes are never included.

    Raises:
        404: Account not found
    """
    account = get_runtime().auth.get_account(account_id)
    return AccountDetailResponse(user=AccountSummary.from_account(account))


@router.put("/users/{account_id}", response_model=AccountMutationResponse, tags=["admin"])
async def update_user(
    body: AdminAccountUpdate,
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_admin),
):
    """Update another account's profile, role or active flag.

    Raises:
        400: Own-role change, self-deactivation or duplicate email
        404: Account not found
    """
    account = await get_runtime().auth.admin_update_account(
        ctx,
        account_id,
        name=body.name,
        email=body.email,
        role=body.role,
        is_active=body.is_active,
    )
    return AccountMutationResponse(
        message="User updated successfully", user=AccountSummary.from_account(account)
    )


@router.delete("/users/{account_id}", response_model=AccountMutationResponse, tags=["admin"])
async def delete_user(
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_admin),
):
    """Delete an account, or deactivate it when it has order history.

    Raises:
        400: Attempt to delete the caller's own account
        404: Account not found
    """
    outcome = await get_runtime().auth.remove_account(ctx, account_id)
    message = (
        "User deactivated successfully (has order history)"
        if outcome.deactivated
        else "User deleted successfully"
    )
    return AccountMutationResponse(
        message=message, user=AccountSummary.from_account(outcome.account)
    )
