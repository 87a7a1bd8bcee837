"""FastAPI dependencies for authentication and authorization.

- get_current_user: Bearer JWT -> tenant-scoped User row (JIT provisioned)
- get_optional_user: same, but None when no Authorization header is sent
- require_role: assert the caller has one of the allowed roles

JIT-provisioned users always start with the plain ``user`` role; a role
claim in the token never elevates anyone.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

import structlog
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.auth.oidc import TokenClaims, TokenValidationError, validate_token
from imobibase.config import Settings, get_settings
from imobibase.core.timeutil import utcnow
from imobibase.database import get_db_session
from imobibase.models.user import User, UserRole
from imobibase.telemetry import bind_tenant_context, bind_user_context

log = structlog.get_logger(__name__)


class AuthenticatedUser:
    """The User row plus the token claims it was resolved from."""

    def __init__(self, user: User, claims: TokenClaims) -> None:
        self.user = user
        self.claims = claims

    @property
    def id(self) -> uuid.UUID:
        return self.user.id

    @property
    def tenant_id(self) -> uuid.UUID:
        return self.user.tenant_id

    @property
    def role(self) -> UserRole:
        return self.user.role

    @property
    def email(self) -> str:
        return self.user.email


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def _validated_claims(request: Request, settings: Settings) -> TokenClaims:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise _unauthorized("Autenticação necessária")

    token = auth_header.removeprefix("Bearer ").strip()
    try:
        return await validate_token(token, settings)
    except TokenValidationError as exc:
        log.info("auth.token_rejected", reason=str(exc))
        raise _unauthorized("Token de autenticação inválido ou expirado") from exc


async def _resolve_user(
    claims: TokenClaims, db: AsyncSession
) -> AuthenticatedUser:
    sub = claims.subject
    tenant_id = claims.tenant_id

    result = await db.execute(
        select(User).where(User.tenant_id == tenant_id, User.external_id == sub)
    )
    user = result.scalar_one_or_none()

    if user is None:
        if claims.role != UserRole.USER:
            log.warning(
                "auth.jit_role_claim_ignored",
                claimed=claims.role.value,
                tenant_id=str(tenant_id),
            )
        email = claims.email or f"{sub}@unknown"
        user = User(
            tenant_id=tenant_id,
            external_id=sub,
            email=email,
            name=claims.name or email,
            role=UserRole.USER,
        )
        db.add(user)
        await db.flush()
        log.info("auth.user_provisioned", user_id=str(user.id), tenant_id=str(tenant_id))

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Conta desativada",
        )

    user.last_login_at = utcnow()
    bind_tenant_context(user.tenant_id)
    bind_user_context(user.id)
    return AuthenticatedUser(user=user, claims=claims)


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    """Resolve the Bearer token to a User. 401 on a bad token, 403 when deactivated."""
    claims = await _validated_claims(request, settings)
    return await _resolve_user(claims, db)


async def get_optional_user(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser | None:
    """Like get_current_user, but anonymous callers get None.

    A token that is present but invalid is still rejected.
    """
    if not request.headers.get("Authorization"):
        return None
    claims = await _validated_claims(request, settings)
    return await _resolve_user(claims, db)


def require_role(*allowed_roles: UserRole) -> Callable[..., Any]:
    """Dependency factory asserting the current user has one of *allowed_roles*.

    Usage:
        @router.get("/data-inventory")
        async def inventory(
            current_user: AuthenticatedUser = Depends(require_role(UserRole.ADMIN))
        ):
            ...
    """

    async def _check_role(
        current_user: AuthenticatedUser = Depends(get_current_user),
    ) -> AuthenticatedUser:
        if current_user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Permissões insuficientes para esta ação",
            )
        return current_user

    return _check_role
