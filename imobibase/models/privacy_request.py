"""Data subject request models: account deletion and data export.

Both are driven by background jobs; clients observe progress only by
polling the row's status.

Deletion state machine:
    pending -> confirmed -> processing -> completed
    pending -> cancelled
    processing -> pending   (failure recovery, error in notes, fresh token)

Export lifecycle:
    pending -> processing -> completed | failed
    completed -> failed     (expiry cleanup)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from imobibase.database import Base


class DeletionStatus(StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


OPEN_DELETION_STATUSES: tuple[str, ...] = (
    DeletionStatus.PENDING,
    DeletionStatus.CONFIRMED,
    DeletionStatus.PROCESSING,
)


class DeletionType(StrEnum):
    ANONYMIZE = "anonymize"
    HARD_DELETE = "hard_delete"


class ExportStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportFormat(StrEnum):
    JSON = "json"
    CSV = "csv"


_OPEN_DELETION = text("status IN ('pending', 'confirmed', 'processing')")


class DeletionRequest(Base):
    __tablename__ = "account_deletion_requests"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # No FK to users.id - user row may be anonymised or deleted by this request
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    confirmation_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=DeletionStatus.PENDING,
        comment="pending | confirmed | processing | completed | cancelled",
    )
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    deletion_type: Mapped[str] = mapped_column(
        String(16), nullable=False, default=DeletionType.ANONYMIZE
    )
    data_retention: Mapped[dict[str, Any]] = mapped_column(
        nullable=False,
        comment="RetentionPolicy snapshot taken when the request was created",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    certificate_number: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True
    )
    certificate_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        # At most one open request per user
        Index(
            "uq_deletion_requests_user_open",
            "user_id",
            unique=True,
            postgresql_where=_OPEN_DELETION,
            sqlite_where=_OPEN_DELETION,
        ),
    )

    def __repr__(self) -> str:
        return f"<DeletionRequest id={self.id} status={self.status}>"


class ExportRequest(Base):
    __tablename__ = "data_export_requests"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    # No FK to users.id - user row may be anonymised
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    request_token: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ExportStatus.PENDING,
        comment="pending | processing | completed | failed",
    )
    format: Mapped[str] = mapped_column(String(8), nullable=False, default=ExportFormat.JSON)
    data_scope: Mapped[dict[str, Any]] = mapped_column(nullable=False)

    file_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    downloaded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    download_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_data_export_requests_status_expires", "status", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<ExportRequest id={self.id} status={self.status}>"
