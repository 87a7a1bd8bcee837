"""Tests for the ClickSign webhook handler.

Covers:
- Signature verification (missing secret, missing/invalid signature)
- Timestamp window (missing, malformed, stale, future)
- Rejected requests never touch contracts
- document.signed / document.closed / document.cancelled / signer.* dispatch
"""

from __future__ import annotations

import json
import time
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.storage import ArtifactStorage
from imobibase.core.errors import (
    SecurityRejectionError,
    ValidationFailedError,
    WebhookConfigurationError,
)
from imobibase.esignature.audit import SignatureAuditTrail
from imobibase.esignature.webhook import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    ClickSignWebhookHandler,
    compute_webhook_signature,
    webhook_url,
)
from imobibase.models.contracts import Contract
from imobibase.models.esignature import SignatureAuditEvent
from imobibase.models.tenant import Tenant

SECRET = "clicksign-test-secret"
DOC_KEY = "2f6b7c1e-clicksign-doc"


@pytest.fixture
def trail(db: AsyncSession, storage: ArtifactStorage) -> SignatureAuditTrail:
    return SignatureAuditTrail(db, signing_key=b"test-audit-signing-key", storage=storage)


@pytest.fixture
def handler(db: AsyncSession, trail: SignatureAuditTrail) -> ClickSignWebhookHandler:
    return ClickSignWebhookHandler(db, trail, secret=SECRET)


@pytest.fixture
async def contract(db: AsyncSession, tenant: Tenant) -> Contract:
    row = Contract(
        tenant_id=tenant.id,
        type="sale",
        status="sent",
        value=Decimal("650000.00"),
        clicksign_document_key=DOC_KEY,
    )
    db.add(row)
    await db.flush()
    return row


def _body(event: str, data: dict | None = None, **extra) -> bytes:
    payload = {"event": event, "data": data or {"document": {"key": DOC_KEY}}, **extra}
    return json.dumps(payload).encode("utf-8")


def _headers(body: bytes, *, timestamp: int | None = None) -> dict[str, str]:
    headers = {SIGNATURE_HEADER: compute_webhook_signature(SECRET, body)}
    headers[TIMESTAMP_HEADER] = str(timestamp if timestamp is not None else int(time.time()))
    return headers


async def _events(db: AsyncSession) -> list[SignatureAuditEvent]:
    return list((await db.execute(select(SignatureAuditEvent))).scalars().all())


class TestSignatureVerification:
    def test_unset_secret_rejects_everything(self, db: AsyncSession, trail) -> None:
        handler = ClickSignWebhookHandler(db, trail, secret=None)
        body = _body("document.signed")
        with pytest.raises(WebhookConfigurationError) as exc_info:
            handler.verify_signature(body, compute_webhook_signature(SECRET, body))
        assert exc_info.value.status_code == 401

    def test_missing_signature(self, handler: ClickSignWebhookHandler) -> None:
        with pytest.raises(SecurityRejectionError) as exc_info:
            handler.verify_signature(b"{}", None)
        assert exc_info.value.code == "missing_signature"

    def test_invalid_signature(self, handler: ClickSignWebhookHandler) -> None:
        body = _body("document.signed")
        with pytest.raises(SecurityRejectionError) as exc_info:
            handler.verify_signature(body, compute_webhook_signature("wrong-secret", body))
        assert exc_info.value.code == "invalid_signature"

    def test_body_change_breaks_signature(self, handler: ClickSignWebhookHandler) -> None:
        signature = compute_webhook_signature(SECRET, _body("document.signed"))
        with pytest.raises(SecurityRejectionError):
            handler.verify_signature(_body("document.cancelled"), signature)

    def test_valid_signature(self, handler: ClickSignWebhookHandler) -> None:
        body = _body("document.signed")
        handler.verify_signature(body, compute_webhook_signature(SECRET, body))

    def test_webhook_url(self) -> None:
        assert webhook_url("https://app.example.com/") == "https://app.example.com/api/webhooks/clicksign"


class TestTimestampWindow:
    NOW = 1_760_000_000

    def test_missing_timestamp_is_accepted(self, handler: ClickSignWebhookHandler) -> None:
        handler.verify_timestamp(None, now=self.NOW)
        handler.verify_timestamp("", now=self.NOW)

    @pytest.mark.parametrize("offset", [0, -299, 29])
    def test_within_window(self, handler: ClickSignWebhookHandler, offset: int) -> None:
        handler.verify_timestamp(str(self.NOW + offset), now=self.NOW)

    @pytest.mark.parametrize(
        ("timestamp", "code"),
        [
            ("yesterday", "invalid_timestamp"),
            (str(NOW - 301), "stale_timestamp"),
            (str(NOW + 31), "future_timestamp"),
        ],
    )
    def test_rejected(self, handler: ClickSignWebhookHandler, timestamp: str, code: str) -> None:
        with pytest.raises(SecurityRejectionError) as exc_info:
            handler.verify_timestamp(timestamp, now=self.NOW)
        assert exc_info.value.code == code


class TestDispatch:
    async def test_rejected_request_does_not_touch_contract(
        self, db: AsyncSession, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body("document.signed")
        headers = _headers(body, timestamp=int(time.time()) - 3600)

        with pytest.raises(SecurityRejectionError):
            await handler.handle(body, headers)

        assert contract.status == "sent"
        assert contract.signed_at is None
        assert await _events(db) == []

    async def test_document_signed(
        self, db: AsyncSession, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body("document.signed", occurred_at="2026-10-17T12:30:00Z")

        result = await handler.handle(body, _headers(body))

        assert result == {"success": True}
        assert contract.status == "signed"
        assert contract.signed_at is not None
        assert contract.signed_at.isoformat().startswith("2026-10-17T12:30:00")
        (event,) = await _events(db)
        assert event.event_type == "document_signed"
        assert event.entity_id == DOC_KEY
        assert event.compliance_level == "legal"

    async def test_document_closed_logs_completion(
        self, db: AsyncSession, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body("document.closed")
        await handler.handle(body, _headers(body))
        assert contract.status == "signed"
        assert [e.event_type for e in await _events(db)] == ["document_completed"]

    async def test_document_cancelled(
        self, db: AsyncSession, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body("document.cancelled")
        await handler.handle(body, _headers(body))
        assert contract.status == "cancelled"
        assert [e.event_type for e in await _events(db)] == ["document_cancelled"]

    async def test_signer_signed(
        self, db: AsyncSession, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body(
            "signer.signed",
            {
                "document": {"key": DOC_KEY},
                "signer": {
                    "key": "signer-1",
                    "email": "comprador@example.com",
                    "signed_at": "2026-10-17T12:00:00Z",
                },
            },
        )
        await handler.handle(body, _headers(body))

        (event,) = await _events(db)
        assert event.event_type == "signer_signed"
        assert event.entity_type == "signer"
        assert event.entity_id == "signer-1"
        assert event.event_metadata["documentKey"] == DOC_KEY
        assert contract.status == "sent"

    async def test_incomplete_signer_event_is_ignored(
        self, db: AsyncSession, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body(
            "signer.viewed",
            {"document": {"key": DOC_KEY}, "signer": {"email": "comprador@example.com"}},
        )
        assert await handler.handle(body, _headers(body)) == {"success": True}
        assert await _events(db) == []

    async def test_unknown_document_is_acknowledged(
        self, db: AsyncSession, handler: ClickSignWebhookHandler
    ) -> None:
        body = _body("document.signed", {"document": {"key": "unknown"}})
        assert await handler.handle(body, _headers(body)) == {"success": True}
        assert await _events(db) == []

    async def test_unhandled_event(
        self, handler: ClickSignWebhookHandler, contract: Contract
    ) -> None:
        body = _body("document.deadline")
        assert await handler.handle(body, _headers(body)) == {"success": True}
        assert contract.status == "sent"

    async def test_malformed_json(self, handler: ClickSignWebhookHandler) -> None:
        body = b"not json"
        with pytest.raises(ValidationFailedError):
            await handler.handle(body, _headers(body))
