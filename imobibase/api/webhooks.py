"""Inbound provider webhooks.

POST /api/webhooks/clicksign - ClickSign document and signer events

No bearer auth: the body is authenticated by HMAC, so it is read raw and
verified before any JSON parsing.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.api.deps import get_storage
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings, get_settings
from imobibase.database import get_db_session
from imobibase.esignature.audit import SignatureAuditTrail
from imobibase.esignature.webhook import ClickSignWebhookHandler

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/clicksign")
async def clicksign_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, bool]:
    raw_body = await request.body()
    secret = settings.clicksign_webhook_secret
    trail = SignatureAuditTrail(
        db,
        signing_key=settings.audit_signing_key.get_secret_value().encode("utf-8"),
        storage=storage,
    )
    handler = ClickSignWebhookHandler(
        db,
        trail,
        secret=secret.get_secret_value() if secret else None,
        max_age_seconds=settings.clicksign_webhook_max_age_seconds,
        max_future_skew_seconds=settings.clicksign_webhook_max_future_skew_seconds,
    )
    return await handler.handle(raw_body, request.headers)
