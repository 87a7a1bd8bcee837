"""DPO registry tables: data breach incidents and the record of processing
activities (ROPA, GDPR Art. 30 / LGPD Art. 37).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from imobibase.database import Base


def _now() -> datetime:
    return datetime.now(UTC)


class BreachSeverity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BreachStatus(StrEnum):
    REPORTED = "reported"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    RESOLVED = "resolved"
    CLOSED = "closed"


class DataBreachIncident(Base):
    __tablename__ = "data_breach_incidents"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    incident_number: Mapped[str] = mapped_column(
        String(32), nullable=False, comment="BR-<year>-<NNN>, sequential per tenant and year"
    )
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=BreachStatus.REPORTED
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    affected_data_types: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    affected_records_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    affected_user_ids: Mapped[list[Any] | None] = mapped_column(nullable=True)

    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # No FK to users.id - reporter row may be anonymised
    reported_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    assigned_to: Mapped[uuid.UUID | None] = mapped_column(nullable=True)

    root_cause: Mapped[str | None] = mapped_column(Text, nullable=True)
    mitigation_actions: Mapped[list[Any] | None] = mapped_column(nullable=True)
    preventive_actions: Mapped[list[Any] | None] = mapped_column(nullable=True)
    contained_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reported_to_authority_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    reported_to_users_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    authority_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "incident_number", name="uq_breach_tenant_number"),
    )


class DataProcessingActivity(Base):
    __tablename__ = "data_processing_activities"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    activity_name: Mapped[str] = mapped_column(String(255), nullable=False)
    purpose: Mapped[str] = mapped_column(Text, nullable=False)
    legal_basis: Mapped[str] = mapped_column(String(32), nullable=False)
    data_categories: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    data_subjects: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    recipients: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    data_transfers: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    retention_period: Mapped[str | None] = mapped_column(String(128), nullable=True)
    security_measures: Mapped[list[Any]] = mapped_column(nullable=False, default=list)
    dpo_reviewed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )
