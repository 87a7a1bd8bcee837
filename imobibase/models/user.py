"""User and session models.

Users are created lazily on first JWT login (JIT provisioning) or by the
CRM itself. The row is never removed by the anonymize erasure path: only
its personal content is replaced, so foreign keys from contracts and
financial records stay valid.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imobibase.database import Base


class UserRole(StrEnum):
    ADMIN = "admin"
    MANAGER = "manager"
    BROKER = "broker"
    USER = "user"


# Roles whose export includes the leads and visits assigned to them
ELEVATED_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER, UserRole.BROKER})


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    external_id: Mapped[str | None] = mapped_column(
        String(512),
        nullable=True,
        comment="Identity provider 'sub' claim",
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, name="user_role", values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=UserRole.USER,
    )
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Credentials and provider tokens - never exported, cleared on erasure
    password_reset_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    verification_token: Mapped[str | None] = mapped_column(String(255), nullable=True)
    oauth_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    oauth_access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    oauth_refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Broker commission payout details
    bank_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bank_agency: Mapped[str | None] = mapped_column(String(32), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pix_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )
    last_login_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    tenant: Mapped[Tenant] = relationship("Tenant", back_populates="users")  # type: ignore[name-defined]  # noqa: F821

    __table_args__ = (
        Index("ix_users_tenant_external", "tenant_id", "external_id", unique=True),
        Index("ix_users_tenant_email", "tenant_id", "email"),
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} tenant={self.tenant_id} role={self.role}>"


class UserSession(Base):
    """Server-side login session. Ephemeral access state, not personal data."""

    __tablename__ = "sessions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
