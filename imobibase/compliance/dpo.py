"""DPO (Encarregado) tooling: data inventory, consent and deletion reports,
breach registry, processing-activity registry and risk assessment.

All reads are tenant-scoped aggregates. Report shapes are camelCase JSON
consumed directly by the admin dashboard.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog
from sqlalchemy import and_, case, extract, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.audit_logger import ActorType, ComplianceAuditLogger, Severity
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.core.errors import NotFoundError
from imobibase.core.timeutil import isoformat, utcnow
from imobibase.models.consent import ConsentRecord, ConsentStatus
from imobibase.models.contracts import RentalContract
from imobibase.models.crm import Lead, Owner, Renter
from imobibase.models.dpo import (
    BreachSeverity,
    BreachStatus,
    DataBreachIncident,
    DataProcessingActivity,
)
from imobibase.models.privacy_request import DeletionRequest, DeletionStatus
from imobibase.models.user import User

log = structlog.get_logger(__name__)

HIGH_USER_VOLUME = 10_000
HIGH_WITHDRAWAL_RATE = 20.0
HIGH_PENDING_DELETIONS = 10
RECENT_WINDOW_DAYS = 30
USER_NOTIFICATION_THRESHOLD = 100
_INCIDENT_NUMBER_ATTEMPTS = 5

GENERAL_RECOMMENDATIONS = [
    "Realizar treinamento de LGPD para toda equipe",
    "Revisar políticas de segurança trimestralmente",
    "Implementar criptografia para dados sensíveis",
    "Manter logs de auditoria por pelo menos 5 anos",
    "Revisar e atualizar documentos legais anualmente",
]


class RiskLevel(StrEnum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


@dataclass(frozen=True)
class RiskFactor:
    factor: str
    level: RiskLevel
    description: str
    recommendation: str

    def to_dict(self) -> dict[str, str]:
        return {
            "factor": self.factor,
            "level": str(self.level),
            "description": self.description,
            "recommendation": self.recommendation,
        }


def calculate_overall_risk(factors: list[RiskFactor]) -> RiskLevel:
    levels = [f.level for f in factors]
    if RiskLevel.CRITICAL in levels:
        return RiskLevel.CRITICAL
    if RiskLevel.HIGH in levels:
        return RiskLevel.HIGH
    if levels.count(RiskLevel.MEDIUM) >= 3:
        return RiskLevel.HIGH
    if RiskLevel.MEDIUM in levels:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def breach_next_steps(severity: str, affected_records: int) -> list[str]:
    steps = ["Investigar a causa raiz"]
    if severity in (BreachSeverity.HIGH, BreachSeverity.CRITICAL):
        steps.append("Notificar ANPD em até 72 horas")
    if affected_records > USER_NOTIFICATION_THRESHOLD:
        steps.append("Notificar usuários afetados")
    steps += ["Implementar ações de contenção", "Documentar ações preventivas"]
    return steps


@dataclass
class BreachReport:
    tenant_id: uuid.UUID
    severity: BreachSeverity
    title: str
    description: str
    affected_data_types: list[str]
    affected_records_count: int
    discovered_at: datetime
    reported_by: uuid.UUID | None = None
    assigned_to: uuid.UUID | None = None
    affected_user_ids: list[str] | None = None


# Fields update_data_breach() may change
BREACH_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "root_cause",
        "mitigation_actions",
        "preventive_actions",
        "contained_at",
        "resolved_at",
        "reported_to_authority_at",
        "reported_to_users_at",
        "authority_reference",
        "notes",
    }
)


@dataclass
class ProcessingActivityInput:
    activity_name: str
    purpose: str
    legal_basis: str
    data_categories: list[str] = field(default_factory=list)
    data_subjects: list[str] = field(default_factory=list)
    recipients: list[str] = field(default_factory=list)
    data_transfers: list[str] = field(default_factory=list)
    retention_period: str | None = None
    security_measures: list[str] = field(default_factory=list)


def serialize_activity(activity: DataProcessingActivity) -> dict[str, Any]:
    return {
        "id": str(activity.id),
        "name": activity.activity_name,
        "purpose": activity.purpose,
        "legalBasis": activity.legal_basis,
        "dataCategories": activity.data_categories or [],
        "dataSubjects": activity.data_subjects or [],
        "recipients": activity.recipients or [],
        "dataTransfers": activity.data_transfers or [],
        "retentionPeriod": activity.retention_period,
        "securityMeasures": activity.security_measures or [],
        "dpoReviewed": activity.dpo_reviewed,
        "reviewedAt": isoformat(activity.reviewed_at),
        "isActive": activity.is_active,
    }


def serialize_breach(incident: DataBreachIncident) -> dict[str, Any]:
    return {
        "id": str(incident.id),
        "incidentNumber": incident.incident_number,
        "severity": incident.severity,
        "status": incident.status,
        "title": incident.title,
        "description": incident.description,
        "affectedDataTypes": incident.affected_data_types or [],
        "affectedRecordsCount": incident.affected_records_count,
        "discoveredAt": isoformat(incident.discovered_at),
        "rootCause": incident.root_cause,
        "mitigationActions": incident.mitigation_actions or [],
        "preventiveActions": incident.preventive_actions or [],
        "containedAt": isoformat(incident.contained_at),
        "resolvedAt": isoformat(incident.resolved_at),
        "reportedToAuthorityAt": isoformat(incident.reported_to_authority_at),
        "reportedToUsersAt": isoformat(incident.reported_to_users_at),
        "authorityReference": incident.authority_reference,
        "notes": incident.notes,
    }


class DPOReportingService:
    """Usage:
        service = DPOReportingService(db, notifier=notifier)
        dashboard = await service.get_compliance_dashboard(tenant_id)
    """

    def __init__(self, db: AsyncSession, *, notifier: ComplianceNotifier | None = None) -> None:
        self._db = db
        self._notifier = notifier
        self._audit = ComplianceAuditLogger(db)

    async def _count(self, model: Any, tenant_id: uuid.UUID, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(model).where(model.tenant_id == tenant_id, *criteria)
        return int((await self._db.execute(stmt)).scalar_one())

    # ------------------------------------------------------------------ #
    # Inventory (ROPA)
    # ------------------------------------------------------------------ #

    async def generate_data_inventory(self, tenant_id: uuid.UUID) -> dict[str, Any]:
        users = await self._count(User, tenant_id)
        leads = await self._count(Lead, tenant_id)
        owners = await self._count(Owner, tenant_id)
        renters = await self._count(Renter, tenant_id)
        contracts = await self._count(RentalContract, tenant_id)

        result = await self._db.execute(
            select(DataProcessingActivity)
            .where(DataProcessingActivity.tenant_id == tenant_id)
            .order_by(DataProcessingActivity.created_at)
        )
        activities = [serialize_activity(a) for a in result.scalars().all()]

        return {
            "tenantId": str(tenant_id),
            "generatedAt": isoformat(utcnow()),
            "summary": {
                "totalUsers": users,
                "totalLeads": leads,
                "totalOwners": owners,
                "totalRenters": renters,
                "totalContracts": contracts,
                "totalProcessingActivities": len(activities),
            },
            "processingActivities": activities,
            "dataCategories": {
                "personalData": {
                    "description": "Nome, email, telefone, endereço",
                    "count": users + leads + owners + renters,
                    "tables": ["users", "leads", "owners", "renters"],
                },
                "identificationData": {
                    "description": "CPF/CNPJ, RG",
                    "count": owners + renters,
                    "tables": ["owners", "renters"],
                },
                "financialData": {
                    "description": "Dados bancários, pagamentos, comissões",
                    "count": contracts,
                    "tables": ["rental_payments", "property_sales", "finance_entries"],
                },
                "contractualData": {
                    "description": "Contratos de locação e venda",
                    "count": contracts,
                    "tables": ["rental_contracts", "contracts"],
                },
            },
        }

    # ------------------------------------------------------------------ #
    # Consent report
    # ------------------------------------------------------------------ #

    async def generate_consent_report(
        self,
        tenant_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, Any]:
        criteria = [ConsentRecord.tenant_id == tenant_id]
        if start is not None and end is not None:
            criteria += [ConsentRecord.accepted_at >= start, ConsentRecord.accepted_at <= end]

        rows = await self._db.execute(
            select(ConsentRecord.consent_type, ConsentRecord.status, func.count())
            .where(*criteria)
            .group_by(ConsentRecord.consent_type, ConsentRecord.status)
        )
        by_status: dict[str, int] = {}
        by_type: dict[str, dict[str, Any]] = {}
        for consent_type, status, count in rows.all():
            by_status[status] = by_status.get(status, 0) + count
            bucket = by_type.setdefault(consent_type, {"total": 0, "active": 0, "withdrawn": 0})
            bucket["total"] += count
            if status in (ConsentStatus.ACTIVE, ConsentStatus.WITHDRAWN):
                bucket[str(status)] += count

        withdrawal_rate: dict[str, float] = {}
        for consent_type, bucket in by_type.items():
            rate = bucket["withdrawn"] / bucket["total"] * 100 if bucket["total"] else 0.0
            bucket["withdrawalRate"] = f"{rate:.2f}%"
            withdrawal_rate[consent_type] = rate

        since = utcnow() - timedelta(days=RECENT_WINDOW_DAYS)
        recent = await self._db.execute(
            select(ConsentRecord)
            .where(
                *criteria,
                ConsentRecord.status == ConsentStatus.WITHDRAWN,
                ConsentRecord.withdrawn_at >= since,
            )
            .order_by(ConsentRecord.withdrawn_at.desc())
        )

        return {
            "tenantId": str(tenant_id),
            "period": {"startDate": isoformat(start), "endDate": isoformat(end)},
            "generatedAt": isoformat(utcnow()),
            "summary": {
                "totalConsents": sum(by_status.values()),
                "activeConsents": by_status.get(ConsentStatus.ACTIVE, 0),
                "withdrawnConsents": by_status.get(ConsentStatus.WITHDRAWN, 0),
                "expiredConsents": by_status.get(ConsentStatus.EXPIRED, 0),
            },
            "byType": by_type,
            "withdrawalRate": withdrawal_rate,
            "recentWithdrawals": [
                {
                    "consentType": c.consent_type,
                    "withdrawnAt": isoformat(c.withdrawn_at),
                    "userId": str(c.user_id) if c.user_id else None,
                }
                for c in recent.scalars().all()
            ],
        }

    # ------------------------------------------------------------------ #
    # Deletion requests log
    # ------------------------------------------------------------------ #

    async def get_deletion_requests_log(
        self, tenant_id: uuid.UUID, status: str | None = None
    ) -> dict[str, Any]:
        stmt = select(DeletionRequest).where(DeletionRequest.tenant_id == tenant_id)
        if status:
            stmt = stmt.where(DeletionRequest.status == status)
        result = await self._db.execute(stmt.order_by(DeletionRequest.created_at.desc()))
        requests = list(result.scalars().all())

        summary: dict[str, int] = {"total": len(requests)}
        for state in DeletionStatus:
            summary[str(state)] = sum(1 for r in requests if r.status == state)

        return {
            "tenantId": str(tenant_id),
            "generatedAt": isoformat(utcnow()),
            "summary": summary,
            "requests": [
                {
                    "id": str(r.id),
                    "userId": str(r.user_id),
                    "status": r.status,
                    "deletionType": r.deletion_type,
                    "reason": r.reason,
                    "certificateNumber": r.certificate_number,
                    "createdAt": isoformat(r.created_at),
                    "confirmedAt": isoformat(r.confirmed_at),
                    "completedAt": isoformat(r.completed_at),
                }
                for r in requests
            ],
        }

    # ------------------------------------------------------------------ #
    # Breach registry (LGPD Art. 48 / GDPR Art. 33)
    # ------------------------------------------------------------------ #

    async def _next_incident_number(self, tenant_id: uuid.UUID, year: int) -> str:
        count = await self._count(
            DataBreachIncident,
            tenant_id,
            extract("year", DataBreachIncident.created_at) == year,
        )
        return f"BR-{year}-{count + 1:03d}"

    async def report_data_breach(self, report: BreachReport) -> dict[str, Any]:
        year = utcnow().year
        incident: DataBreachIncident | None = None
        for _ in range(_INCIDENT_NUMBER_ATTEMPTS):
            candidate = DataBreachIncident(
                tenant_id=report.tenant_id,
                incident_number=await self._next_incident_number(report.tenant_id, year),
                severity=str(report.severity),
                status=BreachStatus.REPORTED,
                title=report.title,
                description=report.description,
                affected_data_types=list(report.affected_data_types),
                affected_records_count=report.affected_records_count,
                affected_user_ids=report.affected_user_ids,
                discovered_at=report.discovered_at,
                reported_by=report.reported_by,
                assigned_to=report.assigned_to,
                created_at=utcnow(),
            )
            try:
                async with self._db.begin_nested():
                    self._db.add(candidate)
                    await self._db.flush()
            except IntegrityError:
                # Another report took the same number; count again
                continue
            incident = candidate
            break
        if incident is None:
            raise RuntimeError("Could not allocate a breach incident number")

        await self._audit.log(
            tenant_id=report.tenant_id,
            user_id=report.reported_by,
            actor_id=str(report.reported_by) if report.reported_by else "system",
            actor_type=ActorType.ADMIN if report.reported_by else ActorType.SYSTEM,
            action="data_breach_reported",
            entity_type="data_breach_incident",
            entity_id=incident.id,
            details={
                "incidentNumber": incident.incident_number,
                "severity": incident.severity,
                "affectedRecordsCount": incident.affected_records_count,
            },
            severity=Severity.CRITICAL,
        )

        if self._notifier is not None and report.severity in (
            BreachSeverity.HIGH,
            BreachSeverity.CRITICAL,
        ):
            await self._notifier.alert_dpo(
                f"Incidente de segurança {incident.incident_number} ({incident.severity})",
                f"{incident.title}\nRegistros afetados: {incident.affected_records_count}",
            )

        log.warning(
            "dpo.breach_reported",
            incident_number=incident.incident_number,
            severity=incident.severity,
        )
        return {
            "incidentNumber": incident.incident_number,
            "id": str(incident.id),
            "message": "Incidente de segurança registrado. Notificações serão enviadas conforme necessário.",
            "nextSteps": breach_next_steps(incident.severity, incident.affected_records_count),
        }

    async def update_data_breach(
        self,
        incident_id: uuid.UUID,
        tenant_id: uuid.UUID,
        updates: dict[str, Any],
        *,
        actor_id: uuid.UUID | None = None,
    ) -> dict[str, Any]:
        result = await self._db.execute(
            select(DataBreachIncident).where(
                DataBreachIncident.id == incident_id,
                DataBreachIncident.tenant_id == tenant_id,
            )
        )
        incident = result.scalar_one_or_none()
        if incident is None:
            raise NotFoundError("Incidente não encontrado", code="incident_not_found")

        applied = sorted(k for k in updates if k in BREACH_UPDATABLE_FIELDS)
        for key in applied:
            setattr(incident, key, updates[key])
        incident.updated_at = utcnow()
        await self._db.flush()

        await self._audit.log(
            tenant_id=tenant_id,
            user_id=actor_id,
            actor_id=str(actor_id) if actor_id else "system",
            actor_type=ActorType.ADMIN if actor_id else ActorType.SYSTEM,
            action="data_breach_updated",
            entity_type="data_breach_incident",
            entity_id=incident.id,
            details={"fields": applied, "status": incident.status},
            severity=Severity.WARNING,
        )
        return {"message": "Incidente atualizado com sucesso", "incident": serialize_breach(incident)}

    # ------------------------------------------------------------------ #
    # Processing activities
    # ------------------------------------------------------------------ #

    async def register_processing_activity(
        self, tenant_id: uuid.UUID, data: ProcessingActivityInput
    ) -> DataProcessingActivity:
        activity = DataProcessingActivity(
            tenant_id=tenant_id,
            activity_name=data.activity_name,
            purpose=data.purpose,
            legal_basis=data.legal_basis,
            data_categories=list(data.data_categories),
            data_subjects=list(data.data_subjects),
            recipients=list(data.recipients),
            data_transfers=list(data.data_transfers),
            retention_period=data.retention_period,
            security_measures=list(data.security_measures),
            dpo_reviewed=False,
            is_active=True,
        )
        self._db.add(activity)
        await self._db.flush()
        log.info("dpo.activity_registered", activity_id=str(activity.id))
        return activity

    async def mark_activity_reviewed(
        self, activity_id: uuid.UUID, tenant_id: uuid.UUID, reviewer_id: uuid.UUID
    ) -> DataProcessingActivity:
        result = await self._db.execute(
            select(DataProcessingActivity).where(
                DataProcessingActivity.id == activity_id,
                DataProcessingActivity.tenant_id == tenant_id,
            )
        )
        activity = result.scalar_one_or_none()
        if activity is None:
            raise NotFoundError("Atividade de tratamento não encontrada", code="activity_not_found")
        activity.dpo_reviewed = True
        activity.reviewed_at = utcnow()
        activity.reviewed_by = reviewer_id
        await self._db.flush()
        return activity

    # ------------------------------------------------------------------ #
    # Risk
    # ------------------------------------------------------------------ #

    async def generate_risk_assessment(self, tenant_id: uuid.UUID) -> dict[str, Any]:
        factors: list[RiskFactor] = []

        users = await self._count(User, tenant_id)
        if users > HIGH_USER_VOLUME:
            factors.append(
                RiskFactor(
                    "High Volume of Personal Data",
                    RiskLevel.MEDIUM,
                    f"Sistema possui {users} usuários cadastrados",
                    "Implementar controles de segurança adicionais",
                )
            )

        consent_totals = await self._db.execute(
            select(
                func.count(),
                func.sum(case((ConsentRecord.status == ConsentStatus.WITHDRAWN, 1), else_=0)),
            ).where(ConsentRecord.tenant_id == tenant_id)
        )
        total_consents, withdrawn = consent_totals.one()
        withdrawn_rate = (withdrawn or 0) / total_consents * 100 if total_consents else 0.0
        if withdrawn_rate > HIGH_WITHDRAWAL_RATE:
            factors.append(
                RiskFactor(
                    "High Consent Withdrawal Rate",
                    RiskLevel.HIGH,
                    f"{withdrawn_rate:.1f}% dos consentimentos foram retirados",
                    "Revisar políticas de privacidade e práticas de coleta de dados",
                )
            )

        pending = await self._count(
            DeletionRequest,
            tenant_id,
            DeletionRequest.status.in_((DeletionStatus.PENDING, DeletionStatus.CONFIRMED)),
        )
        if pending > HIGH_PENDING_DELETIONS:
            factors.append(
                RiskFactor(
                    "High Volume of Deletion Requests",
                    RiskLevel.MEDIUM,
                    f"{pending} solicitações de exclusão pendentes",
                    "Processar solicitações de exclusão dentro do prazo legal (15 dias)",
                )
            )

        recent_breaches = await self._count(
            DataBreachIncident,
            tenant_id,
            DataBreachIncident.discovered_at >= utcnow() - timedelta(days=RECENT_WINDOW_DAYS),
        )
        if recent_breaches:
            factors.append(
                RiskFactor(
                    "Recent Data Breaches",
                    RiskLevel.CRITICAL,
                    f"{recent_breaches} incidente(s) de segurança nos últimos 30 dias",
                    "Implementar ações corretivas urgentemente",
                )
            )

        unreviewed = await self._count(
            DataProcessingActivity,
            tenant_id,
            and_(
                DataProcessingActivity.dpo_reviewed.is_(False),
                DataProcessingActivity.is_active.is_(True),
            ),
        )
        if unreviewed:
            factors.append(
                RiskFactor(
                    "Unreviewed Processing Activities",
                    RiskLevel.MEDIUM,
                    f"{unreviewed} atividades de processamento sem revisão do DPO",
                    "DPO deve revisar e aprovar todas as atividades de processamento",
                )
            )

        return {
            "tenantId": str(tenant_id),
            "generatedAt": isoformat(utcnow()),
            "overallRiskLevel": str(calculate_overall_risk(factors)),
            "riskFactors": [f.to_dict() for f in factors],
            "recommendations": list(GENERAL_RECOMMENDATIONS),
        }

    async def get_compliance_dashboard(self, tenant_id: uuid.UUID) -> dict[str, Any]:
        inventory = await self.generate_data_inventory(tenant_id)
        consents = await self.generate_consent_report(tenant_id)
        deletions = await self.get_deletion_requests_log(tenant_id)
        risk = await self.generate_risk_assessment(tenant_id)

        return {
            "tenantId": str(tenant_id),
            "generatedAt": isoformat(utcnow()),
            "summary": {
                "totalDataSubjects": inventory["summary"]["totalUsers"]
                + inventory["summary"]["totalLeads"],
                "activeConsents": consents["summary"]["activeConsents"],
                "pendingDeletions": deletions["summary"]["pending"],
                "overallRisk": risk["overallRiskLevel"],
            },
            "quickStats": {
                "users": inventory["summary"]["totalUsers"],
                "leads": inventory["summary"]["totalLeads"],
                "contracts": inventory["summary"]["totalContracts"],
                "consents": consents["summary"]["totalConsents"],
                "deletionRequests": deletions["summary"]["total"],
            },
            "alerts": [
                f
                for f in risk["riskFactors"]
                if f["level"] in (RiskLevel.HIGH, RiskLevel.CRITICAL)
            ],
        }
