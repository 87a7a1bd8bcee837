"""Bearer token validation for ImobiBase users.

Agency staff and end users sign in through the agency's identity provider.
Production tokens are RS256/ES256 and verified against the provider's JWKS
(discovered from OIDC_ISSUER_URL, or read from JWKS_LOCAL_PATH when the
deployment cannot reach the provider). Dev and test tokens are HS256,
signed with DEV_JWT_SECRET.

Either way the result is a TokenClaims:
  subject    "sub", maps to users.external_id
  tenant_id  "tenant_id" (or "imobibase_tenant"), the agency UUID
  role       "role", else the first ImobiBase role in realm_access.roles.
             Informational only: JIT provisioning never grants it.
  email/name optional, used when the user row is first provisioned
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
import jwt
import structlog
from jwt.exceptions import DecodeError, InvalidTokenError

from imobibase.config import Settings
from imobibase.models.user import UserRole

log = structlog.get_logger(__name__)

_JWKS_TTL_SECONDS = 300
_ASYMMETRIC_ALGORITHMS = ["RS256", "ES256"]
_TENANT_CLAIMS = ("tenant_id", "imobibase_tenant")


class TokenValidationError(Exception):
    """Raised when a JWT cannot be validated."""


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    tenant_id: uuid.UUID
    role: UserRole
    email: str | None = None
    name: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)


def _claimed_role(claims: Mapping[str, Any]) -> str | None:
    if claims.get("role"):
        return str(claims["role"])
    realm_roles = (claims.get("realm_access") or {}).get("roles") or []
    known = {r.value for r in UserRole}
    return next((r for r in realm_roles if r in known), None)


def parse_claims(claims: Mapping[str, Any]) -> TokenClaims:
    """Map verified JWT claims to a TokenClaims, or raise TokenValidationError."""
    tenant_raw = next((claims[c] for c in _TENANT_CLAIMS if claims.get(c)), None)
    role_raw = _claimed_role(claims)

    missing = [
        name
        for name, value in (("sub", claims.get("sub")), ("tenant_id", tenant_raw), ("role", role_raw))
        if not value
    ]
    if missing:
        raise TokenValidationError(f"Missing required JWT claims: {missing}")

    try:
        tenant_id = uuid.UUID(str(tenant_raw))
    except ValueError:
        raise TokenValidationError("tenant_id claim is not a UUID") from None
    try:
        role = UserRole(role_raw)
    except ValueError:
        raise TokenValidationError(f"Unknown role claim: {role_raw!r}") from None

    return TokenClaims(
        subject=str(claims["sub"]),
        tenant_id=tenant_id,
        role=role,
        email=claims.get("email") or None,
        name=claims.get("name") or None,
        raw=dict(claims),
    )


# ------------------------------------------------------------------ #
# JWKS
# ------------------------------------------------------------------ #


class JwksCache:
    """Signing keys by kid, refreshed after a TTL or when an unknown kid shows up."""

    def __init__(self, ttl_seconds: float = _JWKS_TTL_SECONDS) -> None:
        self._ttl = ttl_seconds
        self._keys: dict[str, dict[str, Any]] = {}
        self._fetched_at = 0.0

    def clear(self) -> None:
        self._keys = {}
        self._fetched_at = 0.0

    async def get_key(self, kid: str | None, settings: Settings) -> dict[str, Any]:
        if self._stale():
            await self._refresh(settings)
        if kid and kid not in self._keys:
            # Provider rotated its keys since the last fetch
            await self._refresh(settings)

        if kid:
            if kid not in self._keys:
                raise TokenValidationError(f"Unknown signing key: {kid}")
            return self._keys[kid]
        if len(self._keys) == 1:
            return next(iter(self._keys.values()))
        raise TokenValidationError("Token has no kid and the key set is ambiguous")

    def _stale(self) -> bool:
        return not self._keys or (time.monotonic() - self._fetched_at) > self._ttl

    async def _refresh(self, settings: Settings) -> None:
        if settings.jwks_local_path:
            raw = _load_local_jwks(settings.jwks_local_path)
        else:
            try:
                raw = await _fetch_jwks(settings.oidc_issuer_url)
            except (httpx.HTTPError, KeyError, ValueError) as exc:
                log.error("oidc.jwks_fetch_failed", error_type=type(exc).__name__, error=str(exc))
                raise TokenValidationError("Identity provider keys unavailable") from exc
        self._keys = {key["kid"]: key for key in raw.get("keys", []) if key.get("kid")}
        self._fetched_at = time.monotonic()
        log.info("oidc.jwks_refreshed", key_count=len(self._keys))


async def _fetch_jwks(issuer_url: str) -> dict[str, Any]:
    discovery_url = f"{issuer_url.rstrip('/')}/.well-known/openid-configuration"
    async with httpx.AsyncClient(timeout=10.0) as client:
        discovery = await client.get(discovery_url)
        discovery.raise_for_status()
        jwks_response = await client.get(discovery.json()["jwks_uri"])
        jwks_response.raise_for_status()
        return jwks_response.json()  # type: ignore[no-any-return]


def _load_local_jwks(path: str) -> dict[str, Any]:
    jwks_path = Path(path)
    if not jwks_path.exists():
        raise TokenValidationError(f"JWKS local file not found: {path}")
    try:
        raw = json.loads(jwks_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise TokenValidationError(f"JWKS file at {path!r} is not valid JSON") from exc
    if "keys" not in raw:
        raise TokenValidationError(f"JWKS file at {path!r} is missing the 'keys' array")
    log.warning("oidc.local_jwks_mode_active", jwks_local_path=path)
    return raw  # type: ignore[no-any-return]


_jwks = JwksCache()


def reset_jwks_cache() -> None:
    _jwks.clear()


# ------------------------------------------------------------------ #
# Validation
# ------------------------------------------------------------------ #


async def validate_token(token: str, settings: Settings) -> TokenClaims:
    """Verify *token* and map its claims.

    Raises TokenValidationError for a bad signature, expiry, audience,
    issuer, or missing ImobiBase claims.
    """
    if settings.is_dev:
        return _validate_dev_token(token, settings)

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Cannot decode token header: {exc}") from exc

    key_data = await _jwks.get_key(kid, settings)
    try:
        signing_key = jwt.PyJWK(key_data)
        claims: dict[str, Any] = jwt.decode(
            token,
            signing_key.key,
            algorithms=_ASYMMETRIC_ALGORITHMS,
            audience=settings.oidc_audience,
            issuer=settings.oidc_issuer_url,
            options={"verify_exp": True, "verify_iat": True},
        )
    except (jwt.PyJWKError, DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Token validation failed: {exc}") from exc

    return parse_claims(claims)


def _validate_dev_token(token: str, settings: Settings) -> TokenClaims:
    try:
        claims: dict[str, Any] = jwt.decode(
            token,
            settings.dev_jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.oidc_audience,
            options={"verify_exp": True, "verify_aud": True},
        )
    except (DecodeError, InvalidTokenError) as exc:
        raise TokenValidationError(f"Dev token validation failed: {exc}") from exc
    return parse_claims(claims)


def create_dev_token(
    *,
    sub: str,
    tenant_id: str,
    secret: str,
    role: str = "user",
    email: str = "",
    name: str = "",
    audience: str = "imobibase-api",
    expires_in: int = 3600,
) -> str:
    """Mint an HS256 token for dev and tests. Never call this in production code."""
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": sub,
        "tenant_id": tenant_id,
        "role": role,
        "email": email,
        "name": name,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, secret, algorithm="HS256")
