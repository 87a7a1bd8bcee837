"""Consent records and cookie preference bundles.

A consent's subject is, in priority order, a platform user, an email
address (newsletter sign-ups) or an anonymous browser session (cookie
banner before login). Partial unique indexes keep at most one active
record per (subject, consent_type); rows are never deleted.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from imobibase.database import Base


class ConsentType(StrEnum):
    PRIVACY = "privacy"
    MARKETING = "marketing"
    ANALYTICS = "analytics"
    COOKIES = "cookies"
    NEWSLETTER = "newsletter"


class ConsentStatus(StrEnum):
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


_ACTIVE_USER = text("status = 'active' AND user_id IS NOT NULL")
_ACTIVE_EMAIL = text("status = 'active' AND user_id IS NULL AND email IS NOT NULL")
_ACTIVE_SESSION = text(
    "status = 'active' AND user_id IS NULL AND email IS NULL AND session_id IS NOT NULL"
)


class ConsentRecord(Base):
    __tablename__ = "consents"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # No FK to users.id - consents outlive the user row on hard delete paths
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=True, index=True
    )
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    consent_type: Mapped[str] = mapped_column(String(32), nullable=False)
    consent_version: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ConsentStatus.ACTIVE,
        comment="active | withdrawn | expired",
    )
    purpose: Mapped[str | None] = mapped_column(Text, nullable=True)

    accepted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    withdrawn_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    extra: Mapped[dict[str, Any] | None] = mapped_column("metadata", nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index(
            "uq_consents_user_type_active",
            "user_id",
            "consent_type",
            unique=True,
            postgresql_where=_ACTIVE_USER,
            sqlite_where=_ACTIVE_USER,
        ),
        Index(
            "uq_consents_email_type_active",
            "email",
            "consent_type",
            unique=True,
            postgresql_where=_ACTIVE_EMAIL,
            sqlite_where=_ACTIVE_EMAIL,
        ),
        Index(
            "uq_consents_session_type_active",
            "session_id",
            "consent_type",
            unique=True,
            postgresql_where=_ACTIVE_SESSION,
            sqlite_where=_ACTIVE_SESSION,
        ),
        Index("ix_consents_tenant_type_status", "tenant_id", "consent_type", "status"),
    )

    def __repr__(self) -> str:
        return f"<ConsentRecord id={self.id} type={self.consent_type} status={self.status}>"


class CookiePreference(Base):
    """One cookie-banner submission. New choices create a new row."""

    __tablename__ = "cookie_preferences"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    session_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    essential: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    analytics: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    marketing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    personalization: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    consent_version: Mapped[str] = mapped_column(String(32), nullable=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
