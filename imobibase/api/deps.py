"""Shared router dependencies: services built in the lifespan, read from app.state."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from imobibase.auth.dependencies import AuthenticatedUser, get_current_user
from imobibase.auth.oidc import TokenValidationError, validate_token
from imobibase.compliance.jobs import ComplianceJobs
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings, get_settings
from imobibase.core.rate_limit import (
    RateLimiter,
    admin_rate_limit_key,
    get_admin_rate_limiter,
    get_rate_limiter,
)


def get_storage(request: Request) -> ArtifactStorage:
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        storage = ArtifactStorage(get_settings().upload_dir)
        request.app.state.storage = storage
    return storage


def get_notifier(request: Request) -> ComplianceNotifier | None:
    return getattr(request.app.state, "notifier", None)


def get_jobs(request: Request) -> ComplianceJobs:
    jobs = getattr(request.app.state, "compliance_jobs", None)
    if jobs is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Processamento em segundo plano indisponível",
        )
    return jobs


async def user_rate_limit(
    current_user: AuthenticatedUser = Depends(get_current_user),
    limiter: RateLimiter = Depends(get_rate_limiter),
) -> None:
    await limiter.check(current_user.id)


async def admin_rate_limit(
    request: Request,
    limiter: RateLimiter = Depends(get_admin_rate_limiter),
    settings: Settings = Depends(get_settings),
) -> None:
    """Runs before authentication: keyed by the token's tenant, else client IP."""
    tenant_id = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        try:
            claims = await validate_token(auth_header.removeprefix("Bearer ").strip(), settings)
            tenant_id = claims.tenant_id
        except TokenValidationError:
            tenant_id = None
    await limiter.check(admin_rate_limit_key(request, tenant_id, settings.trusted_proxies))
