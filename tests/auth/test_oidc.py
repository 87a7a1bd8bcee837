"""Tests for bearer token validation.

Coverage:
- Claim mapping: tenant UUID, role from ``role`` or realm_access, missing claims
- Dev HS256 tokens
- Prod RS256 tokens verified against a local JWKS file
- Key rotation: an unknown kid forces one refresh
- Broken JWKS files and an unreachable identity provider
"""

from __future__ import annotations

import json
import time
import uuid
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from imobibase.auth.oidc import (
    TokenValidationError,
    create_dev_token,
    parse_claims,
    reset_jwks_cache,
    validate_token,
)
from imobibase.config import Environment, Settings
from imobibase.models.user import UserRole

ISSUER = "https://sso.imobibase.com/realms/agencias"
AUDIENCE = "imobibase-api"
TENANT = str(uuid.uuid4())

SECURE_PROD = {
    "environment": Environment.PROD,
    "secret_key": "9f1c2e7a-prod-signing-material",
    "dev_jwt_secret": "4b8d0c6e-prod-jwt-material",
    "audit_signing_key": "e3a5f7b9-prod-audit-material",
    "clicksign_webhook_secret": "c1d2e3f4-clicksign-material",
    "database_url": "postgresql+asyncpg://imobibase:Xk29vQ7rLm@db:5432/imobibase",
    "oidc_issuer_url": ISSUER,
    "oidc_audience": AUDIENCE,
}


@pytest.fixture(autouse=True)
def _fresh_jwks_cache() -> None:
    reset_jwks_cache()


def _rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _jwk(private_key: rsa.RSAPrivateKey, kid: str) -> dict[str, Any]:
    jwk = json.loads(jwt.algorithms.RSAAlgorithm.to_jwk(private_key.public_key()))
    jwk.update({"kid": kid, "use": "sig", "alg": "RS256"})
    return jwk


def _write_jwks(path: Path, *jwks: dict[str, Any]) -> None:
    path.write_text(json.dumps({"keys": list(jwks)}), encoding="utf-8")


def _rs256_token(private_key: rsa.RSAPrivateKey, kid: str, **overrides: Any) -> str:
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": "kc-5521",
        "tenant_id": TENANT,
        "role": "broker",
        "email": "corretor@imobiliaria.com.br",
        "name": "Ana Corretora",
        "iss": ISSUER,
        "aud": AUDIENCE,
        "iat": now,
        "exp": now + 600,
    }
    payload.update(overrides)
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


@pytest.fixture
def signing_key() -> rsa.RSAPrivateKey:
    return _rsa_key()


@pytest.fixture
def jwks_file(tmp_path: Path, signing_key: rsa.RSAPrivateKey) -> Path:
    path = tmp_path / "jwks.json"
    _write_jwks(path, _jwk(signing_key, "key-2026"))
    return path


@pytest.fixture
def prod_settings(jwks_file: Path) -> Settings:
    return Settings(**SECURE_PROD, jwks_local_path=str(jwks_file))  # type: ignore[arg-type]


# ------------------------------------------------------------------ #
# Claim mapping
# ------------------------------------------------------------------ #


class TestParseClaims:
    def test_maps_imobibase_claims(self) -> None:
        claims = parse_claims(
            {"sub": "kc-1", "tenant_id": TENANT, "role": "manager", "email": "g@x.com", "name": "G"}
        )
        assert claims.subject == "kc-1"
        assert claims.tenant_id == uuid.UUID(TENANT)
        assert claims.role == UserRole.MANAGER
        assert claims.email == "g@x.com"
        assert claims.raw["role"] == "manager"

    def test_role_falls_back_to_realm_roles(self) -> None:
        claims = parse_claims(
            {
                "sub": "kc-1",
                "imobibase_tenant": TENANT,
                "realm_access": {"roles": ["offline_access", "admin"]},
            }
        )
        assert claims.role == UserRole.ADMIN
        assert claims.tenant_id == uuid.UUID(TENANT)

    def test_empty_email_becomes_none(self) -> None:
        claims = parse_claims({"sub": "kc-1", "tenant_id": TENANT, "role": "user", "email": ""})
        assert claims.email is None
        assert claims.name is None

    @pytest.mark.parametrize("missing", ["sub", "tenant_id", "role"])
    def test_missing_claim_is_rejected(self, missing: str) -> None:
        raw = {"sub": "kc-1", "tenant_id": TENANT, "role": "user"}
        del raw[missing]
        with pytest.raises(TokenValidationError, match=missing):
            parse_claims(raw)

    def test_tenant_must_be_uuid(self) -> None:
        with pytest.raises(TokenValidationError, match="UUID"):
            parse_claims({"sub": "kc-1", "tenant_id": "agencia-centro", "role": "user"})

    def test_unknown_role_is_rejected(self) -> None:
        with pytest.raises(TokenValidationError, match="superuser"):
            parse_claims({"sub": "kc-1", "tenant_id": TENANT, "role": "superuser"})


# ------------------------------------------------------------------ #
# Dev tokens
# ------------------------------------------------------------------ #


class TestDevTokens:
    async def test_valid_dev_token(self, settings: Settings) -> None:
        token = create_dev_token(
            sub="dev-1",
            tenant_id=TENANT,
            secret=settings.dev_jwt_secret.get_secret_value(),
            role="admin",
            audience=settings.oidc_audience,
        )
        claims = await validate_token(token, settings)
        assert claims.subject == "dev-1"
        assert claims.role == UserRole.ADMIN

    async def test_wrong_secret_is_rejected(self, settings: Settings) -> None:
        token = create_dev_token(sub="dev-1", tenant_id=TENANT, secret="someone-else")
        with pytest.raises(TokenValidationError, match="Dev token"):
            await validate_token(token, settings)

    async def test_expired_dev_token_is_rejected(self, settings: Settings) -> None:
        token = create_dev_token(
            sub="dev-1",
            tenant_id=TENANT,
            secret=settings.dev_jwt_secret.get_secret_value(),
            audience=settings.oidc_audience,
            expires_in=-60,
        )
        with pytest.raises(TokenValidationError):
            await validate_token(token, settings)


# ------------------------------------------------------------------ #
# Production tokens against a local JWKS
# ------------------------------------------------------------------ #


class TestProdTokens:
    async def test_valid_rs256_token(
        self, prod_settings: Settings, signing_key: rsa.RSAPrivateKey
    ) -> None:
        claims = await validate_token(_rs256_token(signing_key, "key-2026"), prod_settings)

        assert claims.subject == "kc-5521"
        assert claims.tenant_id == uuid.UUID(TENANT)
        assert claims.role == UserRole.BROKER
        assert claims.name == "Ana Corretora"

    async def test_hs256_token_is_rejected_in_prod(self, prod_settings: Settings) -> None:
        token = create_dev_token(
            sub="dev-1",
            tenant_id=TENANT,
            secret=prod_settings.dev_jwt_secret.get_secret_value(),
            audience=AUDIENCE,
        )
        with pytest.raises(TokenValidationError):
            await validate_token(token, prod_settings)

    async def test_wrong_audience(
        self, prod_settings: Settings, signing_key: rsa.RSAPrivateKey
    ) -> None:
        token = _rs256_token(signing_key, "key-2026", aud="another-api")
        with pytest.raises(TokenValidationError, match="validation failed"):
            await validate_token(token, prod_settings)

    async def test_wrong_issuer(
        self, prod_settings: Settings, signing_key: rsa.RSAPrivateKey
    ) -> None:
        token = _rs256_token(signing_key, "key-2026", iss="https://evil.example.com")
        with pytest.raises(TokenValidationError):
            await validate_token(token, prod_settings)

    async def test_signed_by_foreign_key(self, prod_settings: Settings) -> None:
        token = _rs256_token(_rsa_key(), "key-2026")
        with pytest.raises(TokenValidationError):
            await validate_token(token, prod_settings)

    async def test_garbage_token(self, prod_settings: Settings) -> None:
        with pytest.raises(TokenValidationError, match="header"):
            await validate_token("not-a-jwt", prod_settings)


class TestKeyRotation:
    async def test_unknown_kid_triggers_refresh(
        self,
        prod_settings: Settings,
        jwks_file: Path,
        signing_key: rsa.RSAPrivateKey,
    ) -> None:
        await validate_token(_rs256_token(signing_key, "key-2026"), prod_settings)

        rotated = _rsa_key()
        _write_jwks(jwks_file, _jwk(signing_key, "key-2026"), _jwk(rotated, "key-2027"))

        claims = await validate_token(_rs256_token(rotated, "key-2027"), prod_settings)
        assert claims.subject == "kc-5521"

    async def test_kid_never_published(
        self, prod_settings: Settings, signing_key: rsa.RSAPrivateKey
    ) -> None:
        with pytest.raises(TokenValidationError, match="Unknown signing key"):
            await validate_token(_rs256_token(signing_key, "key-1999"), prod_settings)

    async def test_cached_keys_are_reused(
        self,
        prod_settings: Settings,
        jwks_file: Path,
        signing_key: rsa.RSAPrivateKey,
    ) -> None:
        token = _rs256_token(signing_key, "key-2026")
        await validate_token(token, prod_settings)
        jwks_file.unlink()

        claims = await validate_token(token, prod_settings)
        assert claims.role == UserRole.BROKER


class TestJwksSources:
    async def test_missing_file(self, tmp_path: Path, signing_key: rsa.RSAPrivateKey) -> None:
        settings = Settings(**SECURE_PROD, jwks_local_path=str(tmp_path / "absent.json"))  # type: ignore[arg-type]
        with pytest.raises(TokenValidationError, match="not found"):
            await validate_token(_rs256_token(signing_key, "key-2026"), settings)

    async def test_file_without_keys(
        self, tmp_path: Path, signing_key: rsa.RSAPrivateKey
    ) -> None:
        path = tmp_path / "jwks.json"
        path.write_text(json.dumps({"issuer": ISSUER}), encoding="utf-8")
        settings = Settings(**SECURE_PROD, jwks_local_path=str(path))  # type: ignore[arg-type]
        with pytest.raises(TokenValidationError, match="'keys'"):
            await validate_token(_rs256_token(signing_key, "key-2026"), settings)

    async def test_file_not_json(self, tmp_path: Path, signing_key: rsa.RSAPrivateKey) -> None:
        path = tmp_path / "jwks.json"
        path.write_text("{not json", encoding="utf-8")
        settings = Settings(**SECURE_PROD, jwks_local_path=str(path))  # type: ignore[arg-type]
        with pytest.raises(TokenValidationError, match="not valid JSON"):
            await validate_token(_rs256_token(signing_key, "key-2026"), settings)

    async def test_provider_unreachable(self, signing_key: rsa.RSAPrivateKey) -> None:
        settings = Settings(**SECURE_PROD)  # type: ignore[arg-type]
        with patch(
            "imobibase.auth.oidc._fetch_jwks",
            new=AsyncMock(side_effect=httpx.ConnectError("connection refused")),
        ):
            with pytest.raises(TokenValidationError, match="unavailable"):
                await validate_token(_rs256_token(signing_key, "key-2026"), settings)

    async def test_discovery_fetch(self, signing_key: rsa.RSAPrivateKey) -> None:
        settings = Settings(**SECURE_PROD)  # type: ignore[arg-type]
        jwks = {"keys": [_jwk(signing_key, "key-2026")]}
        with patch("imobibase.auth.oidc._fetch_jwks", new=AsyncMock(return_value=jwks)) as fetch:
            claims = await validate_token(_rs256_token(signing_key, "key-2026"), settings)

        fetch.assert_awaited_once_with(ISSUER)
        assert claims.tenant_id == uuid.UUID(TENANT)
