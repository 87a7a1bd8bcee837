"""ICP-Brasil digital certificate store."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.core.errors import NotFoundError
from imobibase.core.timeutil import ensure_utc, isoformat, utcnow
from imobibase.esignature.audit import SignatureAuditTrail
from imobibase.models.esignature import (
    CertificateStatus,
    CertificateType,
    ComplianceLevel,
    DigitalCertificate,
    SignatureEventType,
)

log = structlog.get_logger(__name__)

ENCRYPTED_PREFIX = "ENC:"
EXPIRED_PURGE_DAYS = 90

MSG_CERT_NOT_FOUND = "Certificado não encontrado"


@dataclass
class CertificateValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": self.errors, "warnings": self.warnings}


def days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / 86400)


def evaluate_certificate(
    cert: DigitalCertificate | None,
    *,
    now: datetime | None = None,
    warning_days: int = 30,
) -> CertificateValidation:
    if cert is None:
        return CertificateValidation(False, [MSG_CERT_NOT_FOUND])

    now = now or utcnow()
    valid_from = ensure_utc(cert.valid_from)
    valid_until = ensure_utc(cert.valid_until)
    errors: list[str] = []
    warnings: list[str] = []

    if valid_until < now:
        errors.append("Certificado expirado")
    if valid_from > now:
        errors.append("Certificado ainda não é válido")
    if cert.status == CertificateStatus.REVOKED:
        errors.append("Certificado revogado")
    if now < valid_until < now + timedelta(days=warning_days):
        warnings.append(f"Certificado expira em {days_until(valid_until, now)} dias")

    return CertificateValidation(not errors, errors, warnings)


def serialize_certificate(cert: DigitalCertificate) -> dict[str, Any]:
    # certificate_data and public_key never leave the store
    return {
        "id": str(cert.id),
        "userId": str(cert.user_id),
        "certificateType": cert.certificate_type,
        "holderName": cert.holder_name,
        "issuer": cert.issuer,
        "serialNumber": cert.serial_number,
        "validFrom": isoformat(cert.valid_from),
        "validUntil": isoformat(cert.valid_until),
        "status": cert.status,
    }


@dataclass
class CertificateInput:
    user_id: uuid.UUID
    certificate_type: CertificateType
    holder_name: str
    issuer: str
    serial_number: str
    valid_from: datetime
    valid_until: datetime
    holder_cpf: str | None = None
    holder_cnpj: str | None = None
    certificate_data: str | None = None
    public_key: str | None = None


class CertificateStore:
    def __init__(
        self,
        db: AsyncSession,
        trail: SignatureAuditTrail,
        *,
        warning_days: int = 30,
    ) -> None:
        self._db = db
        self._trail = trail
        self._warning_days = warning_days

    async def store_certificate(
        self, tenant_id: uuid.UUID, data: CertificateInput
    ) -> DigitalCertificate:
        cert = DigitalCertificate(
            tenant_id=tenant_id,
            user_id=data.user_id,
            certificate_type=str(data.certificate_type),
            holder_name=data.holder_name,
            holder_cpf=data.holder_cpf,
            holder_cnpj=data.holder_cnpj,
            issuer=data.issuer,
            serial_number=data.serial_number,
            valid_from=data.valid_from,
            valid_until=data.valid_until,
            status=CertificateStatus.ACTIVE,
            certificate_data=data.certificate_data,
            public_key=data.public_key,
        )
        self._db.add(cert)
        await self._db.flush()

        await self._trail.log_event(
            tenant_id=tenant_id,
            event_type=SignatureEventType.CERTIFICATE_UPLOADED,
            entity_type="certificate",
            entity_id=cert.id,
            user_id=data.user_id,
            action="UPLOAD",
            description=f"Certificate {cert.certificate_type} stored",
            metadata={"certificateType": cert.certificate_type, "serialNumber": cert.serial_number},
            compliance_level=ComplianceLevel.ENHANCED,
        )
        log.info("certificate.stored", certificate_id=str(cert.id))
        return cert

    async def get_certificate(
        self, cert_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> DigitalCertificate | None:
        result = await self._db.execute(
            select(DigitalCertificate).where(
                DigitalCertificate.id == cert_id,
                DigitalCertificate.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def _require(self, cert_id: uuid.UUID, tenant_id: uuid.UUID) -> DigitalCertificate:
        cert = await self.get_certificate(cert_id, tenant_id)
        if cert is None:
            raise NotFoundError(MSG_CERT_NOT_FOUND, code="certificate_not_found")
        return cert

    async def get_user_certificates(
        self, user_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> list[DigitalCertificate]:
        result = await self._db.execute(
            select(DigitalCertificate)
            .where(
                DigitalCertificate.user_id == user_id,
                DigitalCertificate.tenant_id == tenant_id,
            )
            .order_by(DigitalCertificate.valid_until.desc())
        )
        return list(result.scalars().all())

    async def get_active_certificates(
        self, user_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> list[DigitalCertificate]:
        now = utcnow()
        return [
            cert
            for cert in await self.get_user_certificates(user_id, tenant_id)
            if cert.status == CertificateStatus.ACTIVE
            and ensure_utc(cert.valid_from) <= now < ensure_utc(cert.valid_until)
        ]

    async def validate_certificate(
        self, cert_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> CertificateValidation:
        cert = await self.get_certificate(cert_id, tenant_id)
        validation = evaluate_certificate(cert, warning_days=self._warning_days)
        if cert is not None:
            await self._trail.log_event(
                tenant_id=tenant_id,
                event_type=SignatureEventType.CERTIFICATE_VALIDATED,
                entity_type="certificate",
                entity_id=cert.id,
                user_id=cert.user_id,
                action="VALIDATE",
                description=f"Certificate validation: {'valid' if validation.valid else 'invalid'}",
                metadata=validation.to_dict(),
            )
        return validation

    async def expire_certificate(self, cert_id: uuid.UUID, tenant_id: uuid.UUID) -> None:
        cert = await self._require(cert_id, tenant_id)
        await self._expire(cert)

    async def _expire(self, cert: DigitalCertificate) -> None:
        cert.status = CertificateStatus.EXPIRED
        cert.updated_at = utcnow()
        await self._db.flush()
        await self._trail.log_event(
            tenant_id=cert.tenant_id,
            event_type=SignatureEventType.CERTIFICATE_EXPIRED,
            entity_type="certificate",
            entity_id=cert.id,
            user_id=cert.user_id,
            action="EXPIRE",
            description="Certificate marked as expired",
            metadata={"validUntil": isoformat(cert.valid_until)},
        )

    async def revoke_certificate(
        self,
        cert_id: uuid.UUID,
        tenant_id: uuid.UUID,
        reason: str,
        *,
        actor_id: uuid.UUID | None = None,
    ) -> DigitalCertificate:
        cert = await self._require(cert_id, tenant_id)
        cert.status = CertificateStatus.REVOKED
        cert.revocation_reason = reason
        cert.updated_at = utcnow()
        await self._db.flush()

        await self._trail.log_event(
            tenant_id=tenant_id,
            event_type=SignatureEventType.CERTIFICATE_REVOKED,
            entity_type="certificate",
            entity_id=cert.id,
            user_id=actor_id,
            action="REVOKE",
            description="Certificate revoked",
            metadata={"reason": reason},
            compliance_level=ComplianceLevel.LEGAL,
        )
        log.warning("certificate.revoked", certificate_id=str(cert.id))
        return cert

    async def get_expiring_certificates(
        self, days: int | None = None, *, tenant_id: uuid.UUID | None = None
    ) -> list[DigitalCertificate]:
        now = utcnow()
        threshold = now + timedelta(days=days if days is not None else self._warning_days)
        stmt = select(DigitalCertificate).where(
            DigitalCertificate.status == CertificateStatus.ACTIVE,
            DigitalCertificate.valid_until > now,
            DigitalCertificate.valid_until <= threshold,
        )
        if tenant_id is not None:
            stmt = stmt.where(DigitalCertificate.tenant_id == tenant_id)
        result = await self._db.execute(stmt.order_by(DigitalCertificate.valid_until))
        return list(result.scalars().all())

    async def expire_overdue_certificates(self) -> int:
        """Flip active certificates past valid_until to expired. Idempotent."""
        result = await self._db.execute(
            select(DigitalCertificate).where(
                DigitalCertificate.status == CertificateStatus.ACTIVE,
                DigitalCertificate.valid_until <= utcnow(),
            )
        )
        overdue = list(result.scalars().all())
        for cert in overdue:
            await self._expire(cert)
        return len(overdue)

    async def check_lgpd_compliance(
        self, cert_id: uuid.UUID, tenant_id: uuid.UUID
    ) -> dict[str, Any]:
        cert = await self.get_certificate(cert_id, tenant_id)
        if cert is None:
            return {"compliant": False, "issues": [MSG_CERT_NOT_FOUND]}

        issues: list[str] = []
        if cert.certificate_data and not cert.certificate_data.startswith(ENCRYPTED_PREFIX):
            issues.append("Dados do certificado devem ser armazenados criptografados (LGPD)")
        if cert.status == CertificateStatus.EXPIRED:
            days_expired = (utcnow() - ensure_utc(cert.valid_until)).days
            if days_expired > EXPIRED_PURGE_DAYS:
                issues.append(
                    "Certificado expirado há mais de 90 dias deve ser eliminado (LGPD Art. 16)"
                )
        return {"compliant": not issues, "issues": issues}
