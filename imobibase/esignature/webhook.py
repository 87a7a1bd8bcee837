"""ClickSign webhook ingestion.

Trust boundary. Nothing in the payload is read until:
  1. ``x-clicksign-signature`` matches HMAC-SHA256(secret, raw body) as hex,
     compared in constant time. An unset secret rejects every request.
  2. ``x-clicksign-timestamp`` (unix seconds), when present, is no older
     than max_age_seconds and no further than max_future_skew_seconds ahead.
     A missing header is accepted with a warning: the provider does not
     always send it.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.core.errors import (
    SecurityRejectionError,
    ValidationFailedError,
    WebhookConfigurationError,
)
from imobibase.core.timeutil import utcnow
from imobibase.esignature.audit import SignatureAuditTrail
from imobibase.models.contracts import Contract
from imobibase.models.esignature import ComplianceLevel, SignatureEventType

log = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-clicksign-signature"
TIMESTAMP_HEADER = "x-clicksign-timestamp"

# signer.* event -> (audit event type, signer timestamp field)
_SIGNER_EVENTS: dict[str, tuple[SignatureEventType, str]] = {
    "signer.signed": (SignatureEventType.SIGNER_SIGNED, "signed_at"),
    "signer.viewed": (SignatureEventType.SIGNER_VIEWED, "viewed_at"),
    "signer.refused": (SignatureEventType.SIGNER_REFUSED, "refused_at"),
}


def compute_webhook_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def webhook_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/api/webhooks/clicksign"


def _parse_occurred_at(value: Any) -> datetime:
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            log.warning("clicksign.bad_occurred_at")
        else:
            if parsed.tzinfo is not None:
                return parsed
    return utcnow()


class ClickSignWebhookHandler:
    def __init__(
        self,
        db: AsyncSession,
        trail: SignatureAuditTrail,
        *,
        secret: str | None,
        max_age_seconds: int = 300,
        max_future_skew_seconds: int = 30,
    ) -> None:
        self._db = db
        self._trail = trail
        self._secret = secret
        self._max_age = max_age_seconds
        self._max_skew = max_future_skew_seconds

    # ------------------------------------------------------------------ #
    # Verification
    # ------------------------------------------------------------------ #

    def verify_signature(self, raw_body: bytes, signature: str | None) -> None:
        if not self._secret:
            log.critical("clicksign.webhook_secret_missing")
            raise WebhookConfigurationError()
        if not signature:
            log.warning("clicksign.webhook_rejected", reason="missing_signature")
            raise SecurityRejectionError(code="missing_signature")

        expected = compute_webhook_signature(self._secret, raw_body)
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
            log.warning(
                "clicksign.webhook_rejected",
                reason="invalid_signature",
                received_prefix=signature[:10],
            )
            raise SecurityRejectionError(code="invalid_signature")

    def verify_timestamp(self, timestamp: str | None, *, now: float | None = None) -> None:
        if timestamp is None or timestamp == "":
            log.warning("clicksign.webhook_without_timestamp")
            return
        try:
            sent_at = int(timestamp)
        except ValueError:
            log.warning("clicksign.webhook_rejected", reason="malformed_timestamp")
            raise SecurityRejectionError("Timestamp do webhook inválido", code="invalid_timestamp") from None

        age = int(now if now is not None else time.time()) - sent_at
        if age > self._max_age:
            log.warning("clicksign.webhook_rejected", reason="stale", age=age)
            raise SecurityRejectionError("Timestamp do webhook inválido", code="stale_timestamp")
        if age < -self._max_skew:
            log.warning("clicksign.webhook_rejected", reason="future", age=age)
            raise SecurityRejectionError("Timestamp do webhook inválido", code="future_timestamp")

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> dict[str, bool]:
        self.verify_signature(raw_body, headers.get(SIGNATURE_HEADER))
        self.verify_timestamp(headers.get(TIMESTAMP_HEADER))

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationFailedError("Payload do webhook inválido") from None
        if not isinstance(event, dict):
            raise ValidationFailedError("Payload do webhook inválido")

        name = event.get("event")
        data = event.get("data") or {}
        occurred_at = _parse_occurred_at(event.get("occurred_at"))
        log.info("clicksign.webhook_received", event=name)

        if name in ("document.signed", "document.closed"):
            await self._document_signed(name, data, occurred_at)
        elif name == "document.cancelled":
            await self._document_cancelled(data)
        elif name in _SIGNER_EVENTS:
            await self._signer_event(name, data)
        else:
            log.info("clicksign.webhook_unhandled", event=name)

        return {"success": True}

    async def _find_contract(self, data: dict[str, Any]) -> Contract | None:
        key = (data.get("document") or {}).get("key")
        if not key:
            return None
        result = await self._db.execute(
            select(Contract).where(Contract.clicksign_document_key == key).limit(1)
        )
        contract = result.scalar_one_or_none()
        if contract is None:
            log.info("clicksign.contract_not_found", document_key=key)
        return contract

    async def _document_signed(
        self, name: str, data: dict[str, Any], occurred_at: datetime
    ) -> None:
        contract = await self._find_contract(data)
        if contract is None:
            return
        contract.status = "signed"
        contract.signed_at = occurred_at
        await self._db.flush()

        event_type = (
            SignatureEventType.DOCUMENT_COMPLETED
            if name == "document.closed"
            else SignatureEventType.DOCUMENT_SIGNED
        )
        await self._trail.log_event(
            tenant_id=contract.tenant_id,
            event_type=event_type,
            entity_type="document",
            entity_id=contract.clicksign_document_key,
            action="WEBHOOK",
            description=f"ClickSign {name}",
            metadata={"contractId": str(contract.id), "event": name, "data": data},
            compliance_level=ComplianceLevel.LEGAL,
        )
        log.info("clicksign.contract_signed", contract_id=str(contract.id))

    async def _document_cancelled(self, data: dict[str, Any]) -> None:
        contract = await self._find_contract(data)
        if contract is None:
            return
        contract.status = "cancelled"
        await self._db.flush()

        await self._trail.log_event(
            tenant_id=contract.tenant_id,
            event_type=SignatureEventType.DOCUMENT_CANCELLED,
            entity_type="document",
            entity_id=contract.clicksign_document_key,
            action="WEBHOOK",
            description="ClickSign document.cancelled",
            metadata={"contractId": str(contract.id), "event": "document.cancelled", "data": data},
            compliance_level=ComplianceLevel.ENHANCED,
        )
        log.info("clicksign.contract_cancelled", contract_id=str(contract.id))

    async def _signer_event(self, name: str, data: dict[str, Any]) -> None:
        event_type, time_field = _SIGNER_EVENTS[name]
        signer = data.get("signer") or {}
        if not signer.get("email") or not signer.get(time_field):
            log.info("clicksign.signer_event_incomplete", event=name)
            return

        contract = await self._find_contract(data)
        if contract is None:
            return

        await self._trail.log_event(
            tenant_id=contract.tenant_id,
            event_type=event_type,
            entity_type="signer",
            entity_id=signer.get("key") or signer["email"],
            action="WEBHOOK",
            description=f"ClickSign {name}",
            metadata={
                "contractId": str(contract.id),
                "documentKey": contract.clicksign_document_key,
                "email": signer["email"],
                "signerKey": signer.get("key"),
                time_field: signer[time_field],
            },
            compliance_level=(
                ComplianceLevel.LEGAL
                if event_type == SignatureEventType.SIGNER_SIGNED
                else ComplianceLevel.STANDARD
            ),
        )
