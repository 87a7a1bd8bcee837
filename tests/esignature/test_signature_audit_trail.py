"""Tests for SignatureAuditTrail.

Covers:
- HMAC signing and tamper detection
- Lifecycle predecessor checks (signed needs created, completed needs both)
- Legal-level events archived to storage
- Signature proof certification level (advanced vs qualified)
- Document report, export and period compliance report
"""

from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.storage import ArtifactStorage
from imobibase.core.errors import NotFoundError
from imobibase.core.timeutil import utcnow
from imobibase.esignature.audit import SignatureAuditTrail, canonical_event_payload
from imobibase.esignature.certificates import CertificateInput, CertificateStore
from imobibase.models.esignature import CertificateType, ComplianceLevel, SignatureEventType
from imobibase.models.tenant import Tenant
from imobibase.models.user import User

SIGNING_KEY = b"test-audit-signing-key"
DOC = "doc-0001"


@pytest.fixture
def trail(db: AsyncSession, storage: ArtifactStorage) -> SignatureAuditTrail:
    return SignatureAuditTrail(db, signing_key=SIGNING_KEY, storage=storage)


async def _created(trail: SignatureAuditTrail, tenant: Tenant, user: User, doc: str = DOC):
    return await trail.log_event(
        tenant_id=tenant.id,
        event_type=SignatureEventType.DOCUMENT_CREATED,
        entity_type="document",
        entity_id=doc,
        user_id=user.id,
        action="CREATE",
        description="Contrato de locação criado",
        metadata={"contractType": "rental"},
    )


async def _signed(
    trail: SignatureAuditTrail,
    tenant: Tenant,
    user: User,
    doc: str = DOC,
    certificate_id: uuid.UUID | None = None,
):
    return await trail.log_document_signed(
        tenant_id=tenant.id,
        document_id=doc,
        signer_id=user.id,
        signer_name=user.name,
        signer_email=user.email,
        ip_address="203.0.113.9",
        certificate_id=certificate_id,
    )


class TestSigning:
    def test_canonical_payload_is_key_order_independent(self) -> None:
        a = canonical_event_payload("document_signed", "d1", "SIGN", {"b": 1, "a": 2})
        b = canonical_event_payload("document_signed", "d1", "SIGN", {"a": 2, "b": 1})
        assert a == b

    async def test_event_signature_is_hmac_sha256(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        event = await _created(trail, tenant, user)
        assert event is not None

        payload = canonical_event_payload(
            "document_created", DOC, "CREATE", {"contractType": "rental"}
        )
        expected = hmac.new(SIGNING_KEY, payload, hashlib.sha256).hexdigest()
        assert event.digital_signature == expected
        assert trail.is_authentic(event)

    async def test_other_key_does_not_verify(
        self, db: AsyncSession, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        event = await _created(trail, tenant, user)
        assert event is not None
        impostor = SignatureAuditTrail(db, signing_key=b"another-key")
        assert not impostor.is_authentic(event)

    async def test_write_failure_returns_none(self, tenant: Tenant) -> None:
        session = MagicMock()
        session.begin_nested.side_effect = RuntimeError("db down")
        broken = SignatureAuditTrail(session, signing_key=SIGNING_KEY)

        result = await broken.log_event(
            tenant_id=tenant.id,
            event_type=SignatureEventType.DOCUMENT_CREATED,
            entity_type="document",
            entity_id=DOC,
            action="CREATE",
            description="x",
        )
        assert result is None


class TestIntegrity:
    async def test_complete_lifecycle_is_valid(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user)
        await _signed(trail, tenant, user)
        await trail.log_event(
            tenant_id=tenant.id,
            event_type=SignatureEventType.DOCUMENT_COMPLETED,
            entity_type="document",
            entity_id=DOC,
            action="COMPLETE",
            description="Todas as assinaturas coletadas",
        )

        result = await trail.verify_audit_trail_integrity(tenant.id, DOC)

        assert result == {"valid": True, "tamperedEvents": [], "missingEvents": []}

    async def test_edited_metadata_is_detected(
        self, db: AsyncSession, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user)
        signed = await _signed(trail, tenant, user)
        assert signed is not None

        signed.event_metadata = {**signed.event_metadata, "signerEmail": "attacker@example.com"}
        await db.flush()

        result = await trail.verify_audit_trail_integrity(tenant.id, DOC)

        assert result["valid"] is False
        assert result["tamperedEvents"] == [str(signed.id)]
        assert result["missingEvents"] == []

    async def test_signed_without_created(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _signed(trail, tenant, user)
        result = await trail.verify_audit_trail_integrity(tenant.id, DOC)
        assert result["valid"] is False
        assert result["missingEvents"] == ["document_created"]

    async def test_completed_without_predecessors(
        self, trail: SignatureAuditTrail, tenant: Tenant
    ) -> None:
        await trail.log_event(
            tenant_id=tenant.id,
            event_type=SignatureEventType.DOCUMENT_COMPLETED,
            entity_type="document",
            entity_id=DOC,
            action="COMPLETE",
            description="x",
        )
        result = await trail.verify_audit_trail_integrity(tenant.id, DOC)
        assert sorted(result["missingEvents"]) == ["document_created", "document_signed"]

    async def test_events_are_tenant_scoped(
        self, trail: SignatureAuditTrail, tenant: Tenant, other_tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user)
        assert await trail.get_document_events(other_tenant.id, DOC) == []


class TestLegalArchive:
    async def test_signed_event_is_archived(
        self, trail: SignatureAuditTrail, storage: ArtifactStorage, tenant: Tenant, user: User
    ) -> None:
        event = await _signed(trail, tenant, user)
        assert event is not None
        assert event.compliance_level == ComplianceLevel.LEGAL

        archived = storage.audit_archive_dir / str(tenant.id) / f"{event.id}.json"
        document = json.loads(archived.read_text("utf-8"))
        assert document["eventType"] == "document_signed"
        assert document["digitalSignature"] == event.digital_signature

    async def test_standard_event_is_not_archived(
        self, trail: SignatureAuditTrail, storage: ArtifactStorage, tenant: Tenant, user: User
    ) -> None:
        event = await _created(trail, tenant, user)
        assert event is not None
        assert not (storage.audit_archive_dir / str(tenant.id) / f"{event.id}.json").exists()


class TestSignatureProof:
    async def test_electronic_signature_is_advanced(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user)
        await _signed(trail, tenant, user)

        proof = await trail.get_signature_proof(tenant.id, DOC, user.id)

        assert proof["legalValidity"]["certificationLevel"] == "advanced"
        assert proof["legalValidity"]["compliant"] is True
        assert proof["signature"]["method"] == "electronic"
        assert proof["signer"]["email"] == user.email
        assert len(proof["auditTrail"]) == 2

    async def test_active_certificate_is_qualified(
        self, db: AsyncSession, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        store = CertificateStore(db, trail)
        now = utcnow()
        cert = await store.store_certificate(
            tenant.id,
            CertificateInput(
                user_id=user.id,
                certificate_type=CertificateType.A1,
                holder_name=user.name,
                holder_cpf="123.456.789-09",
                issuer="AC Certisign",
                serial_number="0A1B2C",
                valid_from=now - timedelta(days=10),
                valid_until=now + timedelta(days=300),
            ),
        )
        await _created(trail, tenant, user)
        await _signed(trail, tenant, user, certificate_id=cert.id)

        proof = await trail.get_signature_proof(tenant.id, DOC, user.id)

        assert proof["legalValidity"]["certificationLevel"] == "qualified"
        assert "ICP-Brasil" in proof["legalValidity"]["framework"]
        assert proof["signer"]["cpf"] == "123.456.789-09"

    async def test_revoked_certificate_is_advanced(
        self, db: AsyncSession, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        store = CertificateStore(db, trail)
        now = utcnow()
        cert = await store.store_certificate(
            tenant.id,
            CertificateInput(
                user_id=user.id,
                certificate_type=CertificateType.A3,
                holder_name=user.name,
                issuer="AC Serasa",
                serial_number="FF00",
                valid_from=now - timedelta(days=10),
                valid_until=now + timedelta(days=300),
            ),
        )
        await _signed(trail, tenant, user, certificate_id=cert.id)
        await store.revoke_certificate(cert.id, tenant.id, "Chave comprometida")

        proof = await trail.get_signature_proof(tenant.id, DOC, user.id)
        assert proof["legalValidity"]["certificationLevel"] == "advanced"

    async def test_unknown_signer(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _signed(trail, tenant, user)
        with pytest.raises(NotFoundError) as exc_info:
            await trail.get_signature_proof(tenant.id, DOC, uuid.uuid4())
        assert exc_info.value.code == "signature_not_found"


class TestReports:
    async def test_document_report_flags_missing_certificate(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user)
        await _signed(trail, tenant, user)

        report = await trail.generate_document_audit_report(tenant.id, DOC)

        assert report["summary"]["totalEvents"] == 2
        assert report["summary"]["signers"][0]["email"] == user.email
        assert report["complianceStatus"]["lgpdCompliant"] is True
        assert report["complianceStatus"]["icpBrasilCompliant"] is False
        assert "Assinatura sem certificado ICP-Brasil" in report["complianceStatus"]["issues"]

    async def test_export_is_signed(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user)
        now = utcnow()

        export = await trail.export_audit_trail(
            tenant.id, now - timedelta(hours=1), now + timedelta(hours=1)
        )

        assert export.format == "json"
        assert export.signature == hmac.new(SIGNING_KEY, export.data, hashlib.sha256).hexdigest()
        assert len(json.loads(export.data)["events"]) == 1

    async def test_compliance_report_statistics(
        self, trail: SignatureAuditTrail, tenant: Tenant, user: User
    ) -> None:
        await _created(trail, tenant, user, doc="doc-a")
        await _signed(trail, tenant, user, doc="doc-a")
        await _created(trail, tenant, user, doc="doc-b")
        now = utcnow()

        report = await trail.generate_compliance_report(
            tenant.id, now - timedelta(hours=1), now + timedelta(hours=1)
        )

        assert report["statistics"]["totalDocuments"] == 2
        assert report["statistics"]["totalSignatures"] == 1
        assert report["statistics"]["refusalRate"] == 0
        assert report["compliance"]["lgpdCompliant"] is True
        top = report["topUsers"][0]
        assert top["userName"] == user.name
        assert top["documentsCreated"] == 2
        assert top["documentsSigned"] == 1
