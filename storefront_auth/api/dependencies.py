"""Request-scoped identity resolution.

``require_authenticated`` rejects with 401, ``require_role(role)`` adds a 403
check through :meth:`AuthContext.has_role`, and ``optional_authenticated``
resolves an identity when it can and proceeds anonymously otherwise. Each
performs exactly one account read; handlers reuse ``AuthContext.account``.
"""

from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header

from storefront_auth.service.auth import AuthContext
from storefront_auth.service.errors import AuthenticationError, AuthorizationError
from storefront_auth.service.runtime import get_runtime
from storefront_auth.storage.models import ROLE_ADMIN


async def optional_authenticated(
    authorization: Optional[str] = Header(default=None),
) -> Optional[AuthContext]:
    return await get_runtime().auth.authenticate(authorization)


async def require_authenticated(
    ctx: Optional[AuthContext] = Depends(optional_authenticated),
) -> AuthContext:
    if ctx is None:
        raise AuthenticationError("Authentication required")
    return ctx


def authorize(ctx: AuthContext, role: str) -> AuthContext:
    if not ctx.has_role(role):
        raise AuthorizationError("Access denied")
    return ctx


def require_role(role: str) -> Callable[..., AuthContext]:
    async def _dependency(ctx: AuthContext = Depends(require_authenticated)) -> AuthContext:
        return authorize(ctx, role)

    return _dependency


require_admin = require_role(ROLE_ADMIN)
