"""
Shared test fixtures for pytest.

Runs the real ORM metadata against in-memory SQLite (aiosqlite) so services
are exercised with actual queries, savepoints and partial unique indexes:
- settings: Test environment configuration with a tmp upload dir
- engine / session_factory / db: one fresh database per test
- storage: ArtifactStorage rooted in tmp_path
- tenant, user, admin_user: persisted rows
- test_app / client: FastAPI app wired to the test database
- make_token / auth_headers / admin_headers: dev HS256 tokens
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

import imobibase.models  # noqa: F401  (populate metadata)
from imobibase import database
from imobibase.auth.oidc import create_dev_token
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Environment, Settings, get_settings
from imobibase.core import rate_limit
from imobibase.database import Base
from imobibase.models.tenant import Tenant
from imobibase.models.user import User, UserRole

TEST_JWT_SECRET = "dev-only-jwt-secret-not-for-production"
TEST_WEBHOOK_SECRET = "clicksign-test-secret"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_rate_limiters(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(rate_limit, "_rate_limiter", None)
    monkeypatch.setattr(rate_limit, "_admin_rate_limiter", None)


# ------------------------------------------------------------------ #
# Settings
# ------------------------------------------------------------------ #

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        secret_key="test-secret-key",
        database_url="sqlite+aiosqlite://",
        dev_jwt_secret=TEST_JWT_SECRET,
        audit_signing_key="test-audit-signing-key",
        clicksign_webhook_secret=TEST_WEBHOOK_SECRET,
        upload_dir=tmp_path / "uploads",
        public_base_url="https://app.imobibase.test",
        rate_limit_per_minute=100,
        admin_compliance_rate_limit_per_minute=100,
    )


@pytest.fixture
def storage(settings: Settings) -> ArtifactStorage:
    return ArtifactStorage(settings.upload_dir)


# ------------------------------------------------------------------ #
# Database
# ------------------------------------------------------------------ #

@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test.

    pysqlite's own transaction handling breaks SAVEPOINT, so BEGIN is
    emitted explicitly (the SQLAlchemy-documented recipe).
    """
    eng = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(eng.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _do_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


# ------------------------------------------------------------------ #
# Rows
# ------------------------------------------------------------------ #

@pytest.fixture
async def tenant(db: AsyncSession) -> Tenant:
    row = Tenant(name="Imobiliária Centro", slug=f"centro-{uuid.uuid4().hex[:8]}")
    db.add(row)
    await db.flush()
    return row


@pytest.fixture
async def other_tenant(db: AsyncSession) -> Tenant:
    row = Tenant(name="Imobiliária Norte", slug=f"norte-{uuid.uuid4().hex[:8]}")
    db.add(row)
    await db.flush()
    return row


async def make_user(
    db: AsyncSession,
    tenant: Tenant,
    *,
    name: str = "Maria Silva",
    email: str = "maria.silva@example.com",
    role: UserRole = UserRole.USER,
    external_id: str | None = None,
    **extra: object,
) -> User:
    user = User(
        tenant_id=tenant.id,
        external_id=external_id or f"sub-{uuid.uuid4().hex[:12]}",
        name=name,
        email=email,
        role=role,
        **extra,
    )
    db.add(user)
    await db.flush()
    return user


@pytest.fixture
async def user(db: AsyncSession, tenant: Tenant) -> User:
    return await make_user(
        db,
        tenant,
        external_id="user-sub",
        phone="+55 11 98765-4321",
        password="bcrypt$hash",
        bank_account="12345-6",
        pix_key="maria.silva@example.com",
    )


@pytest.fixture
async def admin_user(db: AsyncSession, tenant: Tenant) -> User:
    return await make_user(
        db,
        tenant,
        name="Ana Admin",
        email="ana.admin@example.com",
        role=UserRole.ADMIN,
        external_id="admin-sub",
    )


# ------------------------------------------------------------------ #
# Tokens
# ------------------------------------------------------------------ #

def make_token(sub: str, tenant_id: uuid.UUID | str, role: str = "user", email: str = "") -> str:
    return create_dev_token(
        sub=sub,
        tenant_id=str(tenant_id),
        secret=TEST_JWT_SECRET,
        role=role,
        email=email,
    )


@pytest.fixture
def auth_headers(user: User) -> dict[str, str]:
    token = make_token(user.external_id or "", user.tenant_id, email=user.email)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin_user: User) -> dict[str, str]:
    token = make_token(admin_user.external_id or "", admin_user.tenant_id, role="admin")
    return {"Authorization": f"Bearer {token}"}


# ------------------------------------------------------------------ #
# App & HTTP client
# ------------------------------------------------------------------ #

@pytest.fixture
def jobs() -> SimpleNamespace:
    """Stand-in for ComplianceJobs: records submissions, runs nothing."""
    return SimpleNamespace(
        submit_deletion=AsyncMock(return_value="task-deletion"),
        submit_export=AsyncMock(return_value="task-export"),
    )


@pytest.fixture
def test_app(
    settings: Settings,
    engine: AsyncEngine,
    session_factory: async_sessionmaker[AsyncSession],
    storage: ArtifactStorage,
    jobs: SimpleNamespace,
    monkeypatch: pytest.MonkeyPatch,
) -> FastAPI:
    """App bound to the per-test database; the lifespan is not run."""
    from imobibase.main import create_app

    monkeypatch.setattr(database, "_engine", engine)
    monkeypatch.setattr(database, "_session_factory", session_factory)

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: settings
    app.state.storage = storage
    app.state.notifier = None
    app.state.compliance_jobs = jobs
    return app


@pytest.fixture
async def client(
    test_app: FastAPI,
    db: AsyncSession,
    user: User,
    admin_user: User,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client; fixture rows are committed before the first request.

    Every session shares one in-memory connection, so tests read state back
    through a short-lived session between requests, never through db.
    """
    await db.commit()
    transport = httpx.ASGITransport(app=test_app)  # type: ignore[arg-type]
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac
