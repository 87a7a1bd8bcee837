"""ComplianceAuditLog - append-only record of compliance-relevant events.

Design principles:
- Append-only: application code never updates or deletes rows
- Sensitive fields in changed_data are redacted before insert, never after
- No FKs to users: the subject row may be anonymised or hard-deleted while
  its audit trail must survive for the retention period (default 5 years)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from imobibase.database import Base


class ComplianceAuditLog(Base):
    __tablename__ = "compliance_audit_log"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    actor_type: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="user | admin | system | api"
    )

    # e.g. "data_access", "consent_given", "account_deletion_completed"
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    entity_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    changed_data: Mapped[dict[str, Any] | None] = mapped_column(
        nullable=True,
        comment="Before/after diff with sensitive fields redacted",
    )

    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    request_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    request_method: Mapped[str | None] = mapped_column(String(16), nullable=True)

    legal_basis: Mapped[str | None] = mapped_column(
        String(32),
        nullable=True,
        comment="consent | contract | legal_obligation | legitimate_interest | ...",
    )
    severity: Mapped[str] = mapped_column(
        String(16), nullable=False, default="info", comment="info | warning | critical"
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
        index=True,
    )

    __table_args__ = (
        Index("ix_compliance_audit_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_compliance_audit_user_timestamp", "user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<ComplianceAuditLog id={self.id} action={self.action!r} severity={self.severity}>"
