"""E-signature audit events and ICP-Brasil digital certificates.

SignatureAuditEvent is append-only. digital_signature is an HMAC over the
event's semantic fields computed at write time; verification recomputes it
and flags any row whose stored value no longer matches.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from imobibase.database import Base


class SignatureEventType(StrEnum):
    DOCUMENT_CREATED = "document_created"
    DOCUMENT_UPLOADED = "document_uploaded"
    DOCUMENT_UPDATED = "document_updated"
    DOCUMENT_SIGNED = "document_signed"
    DOCUMENT_COMPLETED = "document_completed"
    DOCUMENT_VIEWED = "document_viewed"
    DOCUMENT_DOWNLOADED = "document_downloaded"
    DOCUMENT_CANCELLED = "document_cancelled"
    DOCUMENT_DELETED = "document_deleted"
    SIGNER_ADDED = "signer_added"
    SIGNER_INVITED = "signer_invited"
    SIGNER_REMINDED = "signer_reminded"
    SIGNER_VIEWED = "signer_viewed"
    SIGNER_SIGNED = "signer_signed"
    SIGNER_REFUSED = "signer_refused"
    SIGNER_REMOVED = "signer_removed"
    CERTIFICATE_UPLOADED = "certificate_uploaded"
    CERTIFICATE_VALIDATED = "certificate_validated"
    CERTIFICATE_EXPIRED = "certificate_expired"
    CERTIFICATE_REVOKED = "certificate_revoked"
    CONTRACT_CREATED = "contract_created"
    CONTRACT_ACTIVATED = "contract_activated"
    CONTRACT_COMPLETED = "contract_completed"
    CONTRACT_TERMINATED = "contract_terminated"
    COMPLIANCE_CHECK = "compliance_check"
    DATA_ACCESS = "data_access"
    DATA_EXPORT = "data_export"


class ComplianceLevel(StrEnum):
    STANDARD = "standard"
    ENHANCED = "enhanced"
    LEGAL = "legal"


class CertificateType(StrEnum):
    A1 = "A1"
    A3 = "A3"
    ICP_BRASIL = "ICP-Brasil"
    E_CPF = "e-CPF"
    E_CNPJ = "e-CNPJ"


class CertificateStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class SignatureAuditEvent(Base):
    __tablename__ = "esignature_audit_events"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="document | signer | contract | certificate"
    )
    entity_id: Mapped[str] = mapped_column(String(128), nullable=False)
    # No FK to users.id - user row may be anonymised
    user_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", nullable=False, default=dict
    )
    compliance_level: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ComplianceLevel.STANDARD
    )
    digital_signature: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_esignature_events_entity", "tenant_id", "entity_id", "timestamp"),
        Index("ix_esignature_events_tenant_timestamp", "tenant_id", "timestamp"),
    )


class DigitalCertificate(Base):
    __tablename__ = "digital_certificates"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(nullable=False, index=True)
    certificate_type: Mapped[str] = mapped_column(String(16), nullable=False)
    holder_name: Mapped[str] = mapped_column(String(255), nullable=False)
    holder_cpf: Mapped[str | None] = mapped_column(String(32), nullable=True)
    holder_cnpj: Mapped[str | None] = mapped_column(String(32), nullable=True)
    issuer: Mapped[str] = mapped_column(String(255), nullable=False)
    serial_number: Mapped[str] = mapped_column(String(128), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=CertificateStatus.ACTIVE
    )
    certificate_data: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Encrypted blob, 'ENC:' prefixed"
    )
    public_key: Mapped[str | None] = mapped_column(Text, nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
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

    __table_args__ = (
        Index("ix_digital_certificates_valid_until", "status", "valid_until"),
    )
