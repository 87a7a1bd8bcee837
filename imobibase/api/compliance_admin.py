"""DPO tooling endpoints (ADMIN only).

All routes sit behind a dedicated limiter: 100 requests per minute per
tenant (or per client IP when the caller has no valid token).

GET  /api/admin/compliance/data-inventory                  - ROPA (GDPR Art. 30)
GET  /api/admin/compliance/consent-report                  - consent totals and withdrawals
GET  /api/admin/compliance/consent-statistics              - active/withdrawn per type
GET  /api/admin/compliance/deletion-requests               - erasure request log
GET  /api/admin/compliance/risk-assessment                 - risk factors and overall level
GET  /api/admin/compliance/dashboard                       - summary, quick stats, alerts
GET  /api/admin/compliance/audit-report                    - compliance audit log report
POST /api/admin/compliance/data-breach                     - register an incident
PUT  /api/admin/compliance/data-breach/{id}                - update an incident
POST /api/admin/compliance/consent-policy                  - privacy policy version rollover
POST /api/admin/compliance/processing-activities           - register a processing activity
POST /api/admin/compliance/processing-activities/{id}/review
POST /api/admin/compliance/exports/cleanup                 - expire stale export archives

E-signature evidence:
GET  /api/admin/compliance/esignature/documents/{key}/report
GET  /api/admin/compliance/esignature/documents/{key}/integrity
GET  /api/admin/compliance/esignature/documents/{key}/proof/{signer_id}
GET  /api/admin/compliance/esignature/report
GET  /api/admin/compliance/esignature/audit-trail         - signed JSON export
POST /api/admin/compliance/esignature/certificates
GET  /api/admin/compliance/esignature/certificates/expiring
GET  /api/admin/compliance/esignature/users/{user_id}/certificates
GET  /api/admin/compliance/esignature/certificates/{id}/validate
GET  /api/admin/compliance/esignature/certificates/{id}/lgpd
POST /api/admin/compliance/esignature/certificates/{id}/revoke
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.api.deps import admin_rate_limit, get_notifier, get_storage
from imobibase.auth.dependencies import AuthenticatedUser, require_role
from imobibase.compliance.audit_logger import ComplianceAuditLogger
from imobibase.compliance.consent import ConsentService
from imobibase.compliance.dpo import (
    BreachReport,
    DPOReportingService,
    ProcessingActivityInput,
    serialize_activity,
)
from imobibase.compliance.export import DataExportService
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings, get_settings
from imobibase.core.rate_limit import client_ip
from imobibase.core.timeutil import utcnow
from imobibase.database import get_db_session
from imobibase.esignature.audit import SignatureAuditTrail
from imobibase.esignature.certificates import (
    CertificateInput,
    CertificateStore,
    serialize_certificate,
)
from imobibase.models.consent import ConsentType
from imobibase.models.dpo import BreachSeverity, BreachStatus
from imobibase.models.esignature import CertificateType
from imobibase.models.privacy_request import DeletionStatus
from imobibase.models.user import UserRole

log = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/api/admin/compliance",
    tags=["compliance-admin"],
    dependencies=[Depends(admin_rate_limit)],
)

require_admin = require_role(UserRole.ADMIN)


# ------------------------------------------------------------------ #
# Request bodies
# ------------------------------------------------------------------ #


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DataBreachCreate(_CamelModel):
    severity: BreachSeverity
    title: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    affected_data_types: list[str] = Field(default_factory=list, alias="affectedDataTypes")
    affected_records_count: int = Field(default=0, ge=0, alias="affectedRecordsCount")
    affected_users: list[str] | None = Field(default=None, alias="affectedUsers")
    discovered_at: datetime = Field(default_factory=utcnow, alias="discoveredAt")
    assigned_to: uuid.UUID | None = Field(default=None, alias="assignedTo")


class DataBreachUpdate(_CamelModel):
    status: BreachStatus | None = None
    root_cause: str | None = Field(default=None, alias="rootCause")
    mitigation_actions: list[str] | None = Field(default=None, alias="mitigationActions")
    preventive_actions: list[str] | None = Field(default=None, alias="preventiveActions")
    contained_at: datetime | None = Field(default=None, alias="containedAt")
    resolved_at: datetime | None = Field(default=None, alias="resolvedAt")
    reported_to_authority_at: datetime | None = Field(default=None, alias="reportedToAuthorityAt")
    reported_to_users_at: datetime | None = Field(default=None, alias="reportedToUsersAt")
    authority_reference: str | None = Field(default=None, alias="authorityReference")
    notes: str | None = None


class ConsentPolicyRollover(_CamelModel):
    consent_type: ConsentType = Field(..., alias="consentType")
    old_version: str = Field(..., min_length=1, max_length=32, alias="oldVersion")
    new_version: str = Field(..., min_length=1, max_length=32, alias="newVersion")


class ProcessingActivityCreate(_CamelModel):
    activity_name: str = Field(..., min_length=1, max_length=255, alias="activityName")
    purpose: str = Field(..., min_length=1)
    legal_basis: str = Field(..., min_length=1, max_length=64, alias="legalBasis")
    data_categories: list[str] = Field(default_factory=list, alias="dataCategories")
    data_subjects: list[str] = Field(default_factory=list, alias="dataSubjects")
    recipients: list[str] = Field(default_factory=list)
    data_transfers: list[str] = Field(default_factory=list, alias="dataTransfers")
    retention_period: str | None = Field(default=None, alias="retentionPeriod")
    security_measures: list[str] = Field(default_factory=list, alias="securityMeasures")


class CertificateCreate(_CamelModel):
    user_id: uuid.UUID = Field(..., alias="userId")
    certificate_type: CertificateType = Field(..., alias="certificateType")
    holder_name: str = Field(..., min_length=1, max_length=255, alias="holderName")
    holder_cpf: str | None = Field(default=None, alias="holderCpf")
    holder_cnpj: str | None = Field(default=None, alias="holderCnpj")
    issuer: str = Field(..., min_length=1, max_length=255)
    serial_number: str = Field(..., min_length=1, max_length=128, alias="serialNumber")
    valid_from: datetime = Field(..., alias="validFrom")
    valid_until: datetime = Field(..., alias="validUntil")
    certificate_data: str | None = Field(default=None, alias="certificateData")
    public_key: str | None = Field(default=None, alias="publicKey")


class CertificateRevoke(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


def _default_range(
    start: datetime | None, end: datetime | None, days: int = 30
) -> tuple[datetime, datetime]:
    end = end or utcnow()
    return start or end - timedelta(days=days), end


def _trail(db: AsyncSession, settings: Settings, storage: ArtifactStorage) -> SignatureAuditTrail:
    return SignatureAuditTrail(
        db,
        signing_key=settings.audit_signing_key.get_secret_value().encode("utf-8"),
        storage=storage,
    )


# ------------------------------------------------------------------ #
# Reports
# ------------------------------------------------------------------ #


@router.get("/data-inventory")
async def data_inventory(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await DPOReportingService(db).generate_data_inventory(current_user.tenant_id)


@router.get("/consent-report")
async def consent_report(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await DPOReportingService(db).generate_consent_report(
        current_user.tenant_id, start_date, end_date
    )


@router.get("/consent-statistics")
async def consent_statistics(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await ConsentService(db).get_consent_statistics(current_user.tenant_id)


@router.get("/deletion-requests")
async def deletion_requests(
    status: DeletionStatus | None = Query(default=None),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await DPOReportingService(db).get_deletion_requests_log(
        current_user.tenant_id, str(status) if status else None
    )


@router.get("/risk-assessment")
async def risk_assessment(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await DPOReportingService(db).generate_risk_assessment(current_user.tenant_id)


@router.get("/dashboard")
async def compliance_dashboard(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await DPOReportingService(db).get_compliance_dashboard(current_user.tenant_id)


@router.get("/audit-report")
async def audit_report(
    request: Request,
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    start, end = _default_range(start_date, end_date)
    audit = ComplianceAuditLogger(db)
    report = await audit.generate_report(current_user.tenant_id, start, end)
    # Reading the audit log is itself an access to personal data
    await audit.log_data_access(
        user_id=current_user.id,
        tenant_id=current_user.tenant_id,
        entity_type="audit_report",
        entity_id=current_user.tenant_id,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return report


# ------------------------------------------------------------------ #
# Breach registry, policy and processing activities
# ------------------------------------------------------------------ #


@router.post("/data-breach")
async def report_data_breach(
    body: DataBreachCreate,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    notifier: ComplianceNotifier | None = Depends(get_notifier),
) -> dict[str, Any]:
    report = BreachReport(
        tenant_id=current_user.tenant_id,
        severity=body.severity,
        title=body.title,
        description=body.description,
        affected_data_types=body.affected_data_types,
        affected_records_count=body.affected_records_count,
        discovered_at=body.discovered_at,
        reported_by=current_user.id,
        assigned_to=body.assigned_to,
        affected_user_ids=body.affected_users,
    )
    return await DPOReportingService(db, notifier=notifier).report_data_breach(report)


@router.put("/data-breach/{incident_id}")
async def update_data_breach(
    incident_id: uuid.UUID,
    body: DataBreachUpdate,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    return await DPOReportingService(db).update_data_breach(
        incident_id,
        current_user.tenant_id,
        body.model_dump(exclude_unset=True, by_alias=False, mode="python"),
        actor_id=current_user.id,
    )


@router.post("/consent-policy")
async def rollover_consent_policy(
    body: ConsentPolicyRollover,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    expired, message = await ConsentService(db).update_consents_for_new_policy(
        body.consent_type,
        body.old_version,
        body.new_version,
        tenant_id=current_user.tenant_id,
        actor_id=str(current_user.id),
    )
    return {"expiredCount": expired, "message": message}


@router.post("/processing-activities", status_code=201)
async def register_processing_activity(
    body: ProcessingActivityCreate,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    activity = await DPOReportingService(db).register_processing_activity(
        current_user.tenant_id, ProcessingActivityInput(**body.model_dump(by_alias=False))
    )
    return serialize_activity(activity)


@router.post("/processing-activities/{activity_id}/review")
async def review_processing_activity(
    activity_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    activity = await DPOReportingService(db).mark_activity_reviewed(
        activity_id, current_user.tenant_id, current_user.id
    )
    return serialize_activity(activity)


@router.post("/exports/cleanup")
async def cleanup_exports(
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, int]:
    expired = await DataExportService(db, storage=storage).cleanup_expired_exports()
    log.info("admin.exports_cleanup", expired=expired, actor_id=str(current_user.id))
    return {"expired": expired}


# ------------------------------------------------------------------ #
# E-signature evidence
# ------------------------------------------------------------------ #


@router.get("/esignature/documents/{document_key}/report")
async def document_audit_report(
    document_key: str,
    request: Request,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    trail = _trail(db, settings, storage)
    report = await trail.generate_document_audit_report(current_user.tenant_id, document_key)
    await trail.log_document_access(
        tenant_id=current_user.tenant_id,
        document_id=document_key,
        user_id=current_user.id,
        user_name=current_user.user.name,
        action="view",
        ip_address=client_ip(request),
    )
    return report


@router.get("/esignature/documents/{document_key}/integrity")
async def document_integrity(
    document_key: str,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    return await _trail(db, settings, storage).verify_audit_trail_integrity(
        current_user.tenant_id, document_key
    )


@router.get("/esignature/documents/{document_key}/proof/{signer_id}")
async def signature_proof(
    document_key: str,
    signer_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    return await _trail(db, settings, storage).get_signature_proof(
        current_user.tenant_id, document_key, signer_id
    )


@router.get("/esignature/report")
async def esignature_compliance_report(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    start, end = _default_range(start_date, end_date)
    return await _trail(db, settings, storage).generate_compliance_report(
        current_user.tenant_id, start, end
    )


@router.get("/esignature/audit-trail")
async def export_esignature_audit_trail(
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    entity_type: str | None = Query(default=None, alias="entityType"),
    user_id: uuid.UUID | None = Query(default=None, alias="userId"),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> Response:
    start, end = _default_range(start_date, end_date)
    export = await _trail(db, settings, storage).export_audit_trail(
        current_user.tenant_id, start, end, entity_type=entity_type, user_id=user_id
    )
    return Response(
        content=export.data,
        media_type="application/json",
        headers={
            "Content-Disposition": 'attachment; filename="esignature-audit-trail.json"',
            "X-Audit-Signature": export.signature,
        },
    )


def _certificate_store(
    db: AsyncSession, settings: Settings, storage: ArtifactStorage
) -> CertificateStore:
    return CertificateStore(
        db,
        _trail(db, settings, storage),
        warning_days=settings.certificate_expiry_warning_days,
    )


@router.post("/esignature/certificates", status_code=201)
async def store_certificate(
    body: CertificateCreate,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    cert = await _certificate_store(db, settings, storage).store_certificate(
        current_user.tenant_id, CertificateInput(**body.model_dump(by_alias=False))
    )
    return serialize_certificate(cert)


@router.get("/esignature/certificates/expiring")
async def expiring_certificates(
    days: int | None = Query(default=None, ge=1, le=365),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> list[dict[str, Any]]:
    certs = await _certificate_store(db, settings, storage).get_expiring_certificates(
        days, tenant_id=current_user.tenant_id
    )
    return [serialize_certificate(c) for c in certs]


@router.get("/esignature/users/{user_id}/certificates")
async def user_certificates(
    user_id: uuid.UUID,
    active_only: bool = Query(default=False, alias="activeOnly"),
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> list[dict[str, Any]]:
    store = _certificate_store(db, settings, storage)
    if active_only:
        certs = await store.get_active_certificates(user_id, current_user.tenant_id)
    else:
        certs = await store.get_user_certificates(user_id, current_user.tenant_id)
    return [serialize_certificate(c) for c in certs]


@router.get("/esignature/certificates/{certificate_id}/validate")
async def validate_certificate(
    certificate_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    validation = await _certificate_store(db, settings, storage).validate_certificate(
        certificate_id, current_user.tenant_id
    )
    return validation.to_dict()


@router.get("/esignature/certificates/{certificate_id}/lgpd")
async def certificate_lgpd_check(
    certificate_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    return await _certificate_store(db, settings, storage).check_lgpd_compliance(
        certificate_id, current_user.tenant_id
    )


@router.post("/esignature/certificates/{certificate_id}/revoke")
async def revoke_certificate(
    certificate_id: uuid.UUID,
    body: CertificateRevoke,
    current_user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    cert = await _certificate_store(db, settings, storage).revoke_certificate(
        certificate_id, current_user.tenant_id, body.reason, actor_id=current_user.id
    )
    return serialize_certificate(cert)
