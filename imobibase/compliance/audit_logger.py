"""Compliance audit log service.

Provides a non-blocking interface for writing compliance audit entries and
the query helpers behind the DPO audit report.

Design:
- log() never raises. Each insert runs in a SAVEPOINT so a failed audit
  write rolls back only itself; the business operation it documents
  continues and the failure goes to structlog as
  ``compliance_audit.write_failed``.
- Sensitive fields are redacted by the typed helpers before the row is
  built. Nothing is redacted after the fact.
- The service does not commit. The calling code owns the transaction.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.core.sensitive_fields import redact_changes, redact_field_changes
from imobibase.core.timeutil import isoformat, utcnow
from imobibase.models.compliance_audit import ComplianceAuditLog

log = structlog.get_logger(__name__)

REPORT_DETAIL_LIMIT = 1000


class ActorType(StrEnum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"
    API = "api"


class Severity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class LegalBasis(StrEnum):
    CONSENT = "consent"
    CONTRACT = "contract"
    LEGAL_OBLIGATION = "legal_obligation"
    LEGITIMATE_INTEREST = "legitimate_interest"
    VITAL_INTEREST = "vital_interest"
    PUBLIC_INTEREST = "public_interest"


def serialize_audit_entry(entry: ComplianceAuditLog) -> dict[str, Any]:
    return {
        "id": str(entry.id),
        "tenantId": str(entry.tenant_id) if entry.tenant_id else None,
        "userId": str(entry.user_id) if entry.user_id else None,
        "actorId": entry.actor_id,
        "actorType": entry.actor_type,
        "action": entry.action,
        "entityType": entry.entity_type,
        "entityId": entry.entity_id,
        "details": entry.details,
        "changedData": entry.changed_data,
        "ipAddress": entry.ip_address,
        "requestPath": entry.request_path,
        "requestMethod": entry.request_method,
        "legalBasis": entry.legal_basis,
        "severity": entry.severity,
        "timestamp": isoformat(entry.timestamp),
    }


class ComplianceAuditLogger:
    """Append-only writer and reader for ``compliance_audit_log``.

    Usage:
        audit = ComplianceAuditLogger(db)
        await audit.log(
            tenant_id=tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            action="account_deletion_requested",
            severity=Severity.WARNING,
        )
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def log(
        self,
        *,
        action: str,
        actor_id: str,
        actor_type: ActorType | str = ActorType.USER,
        tenant_id: uuid.UUID | None = None,
        user_id: uuid.UUID | None = None,
        entity_type: str | None = None,
        entity_id: str | uuid.UUID | None = None,
        details: dict[str, Any] | None = None,
        changed_data: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        request_path: str | None = None,
        request_method: str | None = None,
        legal_basis: LegalBasis | str | None = None,
        severity: Severity | str = Severity.INFO,
    ) -> ComplianceAuditLog | None:
        """Insert one audit row. Returns None instead of raising on failure."""
        try:
            entry = ComplianceAuditLog(
                tenant_id=tenant_id,
                user_id=user_id,
                actor_id=actor_id,
                actor_type=str(actor_type),
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                details=details,
                changed_data=redact_changes(changed_data),
                ip_address=ip_address,
                user_agent=user_agent,
                request_path=request_path,
                request_method=request_method,
                legal_basis=str(legal_basis) if legal_basis else None,
                severity=str(severity),
                timestamp=utcnow(),
            )
            async with self._db.begin_nested():
                self._db.add(entry)
                await self._db.flush()
        except Exception as exc:
            log.error(
                "compliance_audit.write_failed",
                action=action,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        return entry

    # ------------------------------------------------------------------ #
    # Typed helpers
    # ------------------------------------------------------------------ #

    async def log_data_access(
        self,
        *,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        entity_type: str,
        entity_id: str | uuid.UUID,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ComplianceAuditLog | None:
        return await self.log(
            tenant_id=tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            actor_type=ActorType.USER,
            action="data_access",
            entity_type=entity_type,
            entity_id=entity_id,
            ip_address=ip_address,
            user_agent=user_agent,
            legal_basis=LegalBasis.LEGITIMATE_INTEREST,
            severity=Severity.INFO,
        )

    async def log_data_modification(
        self,
        *,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        entity_type: str,
        entity_id: str | uuid.UUID,
        changed_fields: dict[str, dict[str, Any]],
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ComplianceAuditLog | None:
        """Record a field-level diff; sensitive values never reach the table."""
        return await self.log(
            tenant_id=tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            actor_type=ActorType.USER,
            action="data_modification",
            entity_type=entity_type,
            entity_id=entity_id,
            changed_data=redact_field_changes(changed_fields),
            ip_address=ip_address,
            user_agent=user_agent,
            legal_basis=LegalBasis.CONTRACT,
            severity=Severity.INFO,
        )

    async def log_consent_event(
        self,
        *,
        user_id: uuid.UUID | None,
        tenant_id: uuid.UUID | None,
        consent_type: str,
        event: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> ComplianceAuditLog | None:
        """``event`` is "given" or "withdrawn"; withdrawals log at warning."""
        return await self.log(
            tenant_id=tenant_id,
            user_id=user_id,
            actor_id=str(user_id) if user_id else "anonymous",
            actor_type=ActorType.USER if user_id else ActorType.SYSTEM,
            action=f"consent_{event}",
            entity_type="consent",
            entity_id=consent_type,
            details={"consentType": consent_type, "action": event},
            ip_address=ip_address,
            user_agent=user_agent,
            legal_basis=LegalBasis.CONSENT,
            severity=Severity.WARNING if event == "withdrawn" else Severity.INFO,
        )

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    async def get_user_logs(
        self, user_id: uuid.UUID, limit: int = 100
    ) -> list[ComplianceAuditLog]:
        stmt = (
            select(ComplianceAuditLog)
            .where(ComplianceAuditLog.user_id == user_id)
            .order_by(ComplianceAuditLog.timestamp.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_tenant_logs(
        self, tenant_id: uuid.UUID, limit: int = 100
    ) -> list[ComplianceAuditLog]:
        stmt = (
            select(ComplianceAuditLog)
            .where(ComplianceAuditLog.tenant_id == tenant_id)
            .order_by(ComplianceAuditLog.timestamp.desc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def search_by_action(
        self,
        action: str,
        tenant_id: uuid.UUID | None = None,
        limit: int = 100,
    ) -> list[ComplianceAuditLog]:
        stmt = select(ComplianceAuditLog).where(ComplianceAuditLog.action == action)
        if tenant_id is not None:
            stmt = stmt.where(ComplianceAuditLog.tenant_id == tenant_id)
        stmt = stmt.order_by(ComplianceAuditLog.timestamp.desc()).limit(limit)
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def generate_report(
        self,
        tenant_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> dict[str, Any]:
        """Aggregate over the whole range; list at most REPORT_DETAIL_LIMIT rows."""
        in_range = (
            ComplianceAuditLog.tenant_id == tenant_id,
            ComplianceAuditLog.timestamp >= start,
            ComplianceAuditLog.timestamp <= end,
        )

        by_action_rows = await self._db.execute(
            select(ComplianceAuditLog.action, func.count())
            .where(*in_range)
            .group_by(ComplianceAuditLog.action)
        )
        by_action = {action: count for action, count in by_action_rows.all()}

        entity_col = func.coalesce(ComplianceAuditLog.entity_type, "unknown")
        by_entity_rows = await self._db.execute(
            select(entity_col, func.count()).where(*in_range).group_by(entity_col)
        )
        by_entity_type = {entity: count for entity, count in by_entity_rows.all()}

        detail_rows = await self._db.execute(
            select(ComplianceAuditLog)
            .where(*in_range)
            .order_by(ComplianceAuditLog.timestamp.desc())
            .limit(REPORT_DETAIL_LIMIT)
        )
        logs = [serialize_audit_entry(entry) for entry in detail_rows.scalars().all()]

        return {
            "period": {"startDate": isoformat(start), "endDate": isoformat(end)},
            "statistics": {
                "total": sum(by_action.values()),
                "byAction": by_action,
                "byEntityType": by_entity_type,
            },
            "logs": logs,
        }
