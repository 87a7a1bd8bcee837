"""E-signature audit trail (MP 2.200-2/2001, ICP-Brasil, LGPD).

Every event carries an HMAC-SHA256 ``digital_signature`` over the canonical
JSON of {eventType, entityId, action, metadata}. Verification recomputes it,
so an edited row is detected as long as the signing key stays secret.

Events at compliance level ``legal`` are also written as standalone JSON
documents to the audit archive for long-term evidence retention.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.storage import ArtifactStorage
from imobibase.core.errors import NotFoundError
from imobibase.core.timeutil import ensure_utc, isoformat, utcnow
from imobibase.models.esignature import (
    CertificateStatus,
    ComplianceLevel,
    DigitalCertificate,
    SignatureAuditEvent,
    SignatureEventType,
)
from imobibase.models.user import User

log = structlog.get_logger(__name__)

LEGAL_FRAMEWORK = "MP 2.200-2/2001"
TOP_USERS_LIMIT = 10

# Lifecycle predecessors: an event of the key type implies the listed ones exist
_REQUIRED_PREDECESSORS: dict[str, tuple[str, ...]] = {
    SignatureEventType.DOCUMENT_SIGNED: (SignatureEventType.DOCUMENT_CREATED,),
    SignatureEventType.DOCUMENT_COMPLETED: (
        SignatureEventType.DOCUMENT_CREATED,
        SignatureEventType.DOCUMENT_SIGNED,
    ),
}


def canonical_event_payload(
    event_type: str, entity_id: str, action: str, metadata: dict[str, Any] | None
) -> bytes:
    return json.dumps(
        {
            "eventType": str(event_type),
            "entityId": str(entity_id),
            "action": action,
            "metadata": metadata or {},
        },
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def compute_event_signature(
    key: bytes,
    event_type: str,
    entity_id: str,
    action: str,
    metadata: dict[str, Any] | None,
) -> str:
    payload = canonical_event_payload(event_type, entity_id, action, metadata)
    return hmac.new(key, payload, hashlib.sha256).hexdigest()


def serialize_event(event: SignatureAuditEvent) -> dict[str, Any]:
    return {
        "id": str(event.id),
        "tenantId": str(event.tenant_id),
        "eventType": event.event_type,
        "entityType": event.entity_type,
        "entityId": event.entity_id,
        "userId": str(event.user_id) if event.user_id else None,
        "action": event.action,
        "description": event.description,
        "timestamp": isoformat(event.timestamp),
        "ipAddress": event.ip_address,
        "userAgent": event.user_agent,
        "metadata": event.event_metadata,
        "complianceLevel": event.compliance_level,
        "digitalSignature": event.digital_signature,
    }


@dataclass(frozen=True)
class AuditTrailExport:
    format: str
    data: bytes
    signature: str


class SignatureAuditTrail:
    def __init__(
        self,
        db: AsyncSession,
        *,
        signing_key: bytes,
        storage: ArtifactStorage | None = None,
    ) -> None:
        self._db = db
        self._key = signing_key
        self._storage = storage

    def sign(self, event_type: str, entity_id: str, action: str, metadata: dict[str, Any] | None) -> str:
        return compute_event_signature(self._key, event_type, entity_id, action, metadata)

    def is_authentic(self, event: SignatureAuditEvent) -> bool:
        expected = self.sign(event.event_type, event.entity_id, event.action, event.event_metadata)
        return hmac.compare_digest(expected, event.digital_signature or "")

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def log_event(
        self,
        *,
        tenant_id: uuid.UUID,
        event_type: SignatureEventType | str,
        entity_type: str,
        entity_id: str | uuid.UUID,
        action: str,
        description: str,
        user_id: uuid.UUID | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        metadata: dict[str, Any] | None = None,
        compliance_level: ComplianceLevel | str = ComplianceLevel.STANDARD,
    ) -> SignatureAuditEvent | None:
        """Append one signed event. Returns None instead of raising on failure."""
        metadata = dict(metadata or {})
        entity_id = str(entity_id)
        try:
            event = SignatureAuditEvent(
                tenant_id=tenant_id,
                event_type=str(event_type),
                entity_type=entity_type,
                entity_id=entity_id,
                user_id=user_id,
                action=action,
                description=description,
                timestamp=utcnow(),
                ip_address=ip_address,
                user_agent=user_agent,
                event_metadata=metadata,
                compliance_level=str(compliance_level),
                digital_signature=self.sign(str(event_type), entity_id, action, metadata),
            )
            async with self._db.begin_nested():
                self._db.add(event)
                await self._db.flush()
        except Exception as exc:
            log.error(
                "esignature_audit.write_failed",
                event_type=str(event_type),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

        if event.compliance_level == ComplianceLevel.LEGAL:
            await self._archive(event)
        return event

    async def _archive(self, event: SignatureAuditEvent) -> None:
        if self._storage is None:
            log.warning("esignature_audit.archive_unavailable", event_id=str(event.id))
            return
        try:
            await asyncio.to_thread(
                self._storage.archive_event,
                str(event.tenant_id),
                str(event.id),
                serialize_event(event),
            )
        except OSError as exc:
            # The database row is the primary record; the archive is a copy
            log.error("esignature_audit.archive_failed", event_id=str(event.id), error=str(exc))

    async def log_document_signed(
        self,
        *,
        tenant_id: uuid.UUID,
        document_id: str,
        signer_id: uuid.UUID,
        signer_name: str,
        signer_email: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        certificate_id: uuid.UUID | None = None,
    ) -> SignatureAuditEvent | None:
        return await self.log_event(
            tenant_id=tenant_id,
            event_type=SignatureEventType.DOCUMENT_SIGNED,
            entity_type="document",
            entity_id=document_id,
            user_id=signer_id,
            action="SIGN",
            description=f"Document signed by {signer_name} ({signer_email})",
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={
                "signerId": str(signer_id),
                "signerName": signer_name,
                "signerEmail": signer_email,
                "certificateId": str(certificate_id) if certificate_id else None,
                "signatureMethod": "certificate" if certificate_id else "electronic",
            },
            compliance_level=ComplianceLevel.LEGAL,
        )

    async def log_document_access(
        self,
        *,
        tenant_id: uuid.UUID,
        document_id: str,
        user_id: uuid.UUID,
        user_name: str,
        action: str,
        ip_address: str | None = None,
    ) -> SignatureAuditEvent | None:
        """``action`` is one of view, download, print."""
        return await self.log_event(
            tenant_id=tenant_id,
            event_type=SignatureEventType.DATA_ACCESS,
            entity_type="document",
            entity_id=document_id,
            user_id=user_id,
            action=action.upper(),
            description=f"Document {action} by {user_name}",
            ip_address=ip_address,
            metadata={"userId": str(user_id), "userName": user_name, "action": action},
            compliance_level=ComplianceLevel.STANDARD,
        )

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def get_document_events(
        self, tenant_id: uuid.UUID, document_id: str
    ) -> list[SignatureAuditEvent]:
        result = await self._db.execute(
            select(SignatureAuditEvent)
            .where(
                SignatureAuditEvent.tenant_id == tenant_id,
                SignatureAuditEvent.entity_id == document_id,
            )
            .order_by(SignatureAuditEvent.timestamp)
        )
        return list(result.scalars().all())

    def _check_events(self, events: list[SignatureAuditEvent]) -> dict[str, Any]:
        tampered = [str(e.id) for e in events if not self.is_authentic(e)]
        present = {e.event_type for e in events}
        missing: list[str] = []
        for event_type, predecessors in _REQUIRED_PREDECESSORS.items():
            if event_type not in present:
                continue
            for predecessor in predecessors:
                if predecessor not in present and predecessor not in missing:
                    missing.append(str(predecessor))
        return {
            "valid": not tampered and not missing,
            "tamperedEvents": tampered,
            "missingEvents": missing,
        }

    async def verify_audit_trail_integrity(
        self, tenant_id: uuid.UUID, document_id: str
    ) -> dict[str, Any]:
        events = await self.get_document_events(tenant_id, document_id)
        result = self._check_events(events)
        if not result["valid"]:
            log.warning(
                "esignature_audit.integrity_failed",
                document_id=document_id,
                tampered=len(result["tamperedEvents"]),
                missing=result["missingEvents"],
            )
        return result

    async def generate_document_audit_report(
        self, tenant_id: uuid.UUID, document_id: str
    ) -> dict[str, Any]:
        events = await self.get_document_events(tenant_id, document_id)
        integrity = self._check_events(events)

        def first(event_type: str) -> datetime | None:
            return next((e.timestamp for e in events if e.event_type == event_type), None)

        signed_events = [e for e in events if e.event_type == SignatureEventType.DOCUMENT_SIGNED]
        signers = [
            {
                "name": e.event_metadata.get("signerName"),
                "email": e.event_metadata.get("signerEmail"),
                "signedAt": isoformat(e.timestamp),
                "ipAddress": e.ip_address,
            }
            for e in signed_events
        ]

        issues: list[str] = []
        if integrity["tamperedEvents"]:
            issues.append(f"{len(integrity['tamperedEvents'])} evento(s) com assinatura inválida")
        if integrity["missingEvents"]:
            issues.append("Eventos ausentes: " + ", ".join(integrity["missingEvents"]))
        icp_compliant = bool(signed_events) and all(
            e.event_metadata.get("signatureMethod") == "certificate" for e in signed_events
        )
        if signed_events and not icp_compliant:
            issues.append("Assinatura sem certificado ICP-Brasil")

        return {
            "documentId": document_id,
            "events": [serialize_event(e) for e in events],
            "summary": {
                "totalEvents": len(events),
                "createdAt": isoformat(first(SignatureEventType.DOCUMENT_CREATED)),
                "signedAt": isoformat(first(SignatureEventType.DOCUMENT_SIGNED)),
                "completedAt": isoformat(first(SignatureEventType.DOCUMENT_COMPLETED)),
                "signers": signers,
            },
            "complianceStatus": {
                "lgpdCompliant": integrity["valid"],
                "icpBrasilCompliant": icp_compliant,
                "issues": issues,
            },
        }

    async def get_signature_proof(
        self, tenant_id: uuid.UUID, document_id: str, signer_id: uuid.UUID
    ) -> dict[str, Any]:
        """Evidence package for one signer's signature on one document."""
        events = await self.get_document_events(tenant_id, document_id)
        signing = next(
            (
                e
                for e in events
                if e.event_type == SignatureEventType.DOCUMENT_SIGNED
                and e.event_metadata.get("signerId") == str(signer_id)
            ),
            None,
        )
        if signing is None:
            raise NotFoundError("Assinatura não encontrada", code="signature_not_found")

        certificate: DigitalCertificate | None = None
        certificate_id = signing.event_metadata.get("certificateId")
        if certificate_id:
            certificate = await self._db.get(DigitalCertificate, uuid.UUID(certificate_id))
            if certificate is not None and certificate.tenant_id != tenant_id:
                certificate = None

        integrity = self._check_events(events)
        qualified = certificate is not None and certificate.status == CertificateStatus.ACTIVE
        trail_digest = hashlib.sha256(
            "".join(e.digital_signature for e in events).encode("ascii")
        ).hexdigest()

        return {
            "document": {"id": document_id, "hash": trail_digest},
            "signer": {
                "id": str(signer_id),
                "name": signing.event_metadata.get("signerName"),
                "email": signing.event_metadata.get("signerEmail"),
                "cpf": certificate.holder_cpf if certificate else None,
            },
            "signature": {
                "timestamp": isoformat(signing.timestamp),
                "ipAddress": signing.ip_address,
                "userAgent": signing.user_agent,
                "method": signing.event_metadata.get("signatureMethod", "electronic"),
                "certificateId": certificate_id,
            },
            "auditTrail": [serialize_event(e) for e in events],
            "legalValidity": {
                "compliant": integrity["valid"],
                "framework": f"{LEGAL_FRAMEWORK}, ICP-Brasil" if qualified else LEGAL_FRAMEWORK,
                "certificationLevel": "qualified" if qualified else "advanced",
            },
        }

    async def _events_in_range(
        self,
        tenant_id: uuid.UUID,
        start: datetime,
        end: datetime,
        *,
        entity_type: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> list[SignatureAuditEvent]:
        stmt = select(SignatureAuditEvent).where(
            SignatureAuditEvent.tenant_id == tenant_id,
            SignatureAuditEvent.timestamp >= start,
            SignatureAuditEvent.timestamp <= end,
        )
        if entity_type:
            stmt = stmt.where(SignatureAuditEvent.entity_type == entity_type)
        if user_id:
            stmt = stmt.where(SignatureAuditEvent.user_id == user_id)
        result = await self._db.execute(stmt.order_by(SignatureAuditEvent.timestamp))
        return list(result.scalars().all())

    async def export_audit_trail(
        self,
        tenant_id: uuid.UUID,
        start: datetime,
        end: datetime,
        *,
        entity_type: str | None = None,
        user_id: uuid.UUID | None = None,
    ) -> AuditTrailExport:
        events = await self._events_in_range(
            tenant_id, start, end, entity_type=entity_type, user_id=user_id
        )
        document = {
            "exportDate": isoformat(utcnow()),
            "parameters": {
                "tenantId": str(tenant_id),
                "startDate": isoformat(start),
                "endDate": isoformat(end),
                "entityType": entity_type,
                "userId": str(user_id) if user_id else None,
            },
            "events": [serialize_event(e) for e in events],
        }
        data = json.dumps(document, ensure_ascii=False, sort_keys=True).encode("utf-8")
        signature = hmac.new(self._key, data, hashlib.sha256).hexdigest()
        log.info("esignature_audit.exported", events=len(events))
        return AuditTrailExport(format="json", data=data, signature=signature)

    async def generate_compliance_report(
        self, tenant_id: uuid.UUID, start: datetime, end: datetime
    ) -> dict[str, Any]:
        events = await self._events_in_range(tenant_id, start, end)

        created: dict[str, datetime] = {}
        signed: dict[str, datetime] = {}
        for e in events:
            ts = ensure_utc(e.timestamp)
            if e.event_type == SignatureEventType.DOCUMENT_CREATED:
                created.setdefault(e.entity_id, ts)
            elif e.event_type == SignatureEventType.DOCUMENT_SIGNED:
                signed.setdefault(e.entity_id, ts)

        signing_hours = [
            (signed[doc] - created[doc]).total_seconds() / 3600
            for doc in signed
            if doc in created and signed[doc] >= created[doc]
        ]
        counts = Counter(e.event_type for e in events)
        total_signatures = counts[SignatureEventType.DOCUMENT_SIGNED]
        refusals = counts[SignatureEventType.SIGNER_REFUSED]
        decisions = counts[SignatureEventType.SIGNER_SIGNED] + refusals
        tampered = sum(1 for e in events if not self.is_authentic(e))

        per_user: dict[uuid.UUID, Counter[str]] = defaultdict(Counter)
        for e in events:
            if e.user_id is not None:
                per_user[e.user_id][e.event_type] += 1
        ranked = sorted(per_user.items(), key=lambda item: -sum(item[1].values()))[:TOP_USERS_LIMIT]
        names: dict[uuid.UUID, str] = {}
        if ranked:
            result = await self._db.execute(
                select(User.id, User.name).where(User.id.in_([uid for uid, _ in ranked]))
            )
            names = {uid: name for uid, name in result.all()}

        issues: list[str] = []
        recommendations: list[str] = []
        if tampered:
            issues.append(f"{tampered} evento(s) com assinatura inválida no período")
            recommendations.append("Investigar alterações na trilha de auditoria")
        if decisions and refusals / decisions > 0.2:
            recommendations.append("Revisar contratos com alta taxa de recusa")

        return {
            "period": {"startDate": isoformat(start), "endDate": isoformat(end)},
            "statistics": {
                "totalDocuments": len(
                    {e.entity_id for e in events if e.event_type == SignatureEventType.DOCUMENT_CREATED}
                ),
                "totalSignatures": total_signatures,
                "averageSigningTime": (
                    round(sum(signing_hours) / len(signing_hours), 2) if signing_hours else 0
                ),
                "refusalRate": round(refusals / decisions * 100, 2) if decisions else 0,
            },
            "compliance": {
                "lgpdCompliant": tampered == 0,
                "icpBrasilCompliant": tampered == 0,
                "issues": issues,
                "recommendations": recommendations,
            },
            "topUsers": [
                {
                    "userId": str(uid),
                    "userName": names.get(uid),
                    "documentsCreated": counter[SignatureEventType.DOCUMENT_CREATED],
                    "documentsSigned": counter[SignatureEventType.DOCUMENT_SIGNED],
                }
                for uid, counter in ranked
            ],
        }
