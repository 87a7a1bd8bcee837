"""Data-subject rights endpoints (LGPD Art. 18 / GDPR Arts. 15-20).

Public:
  POST /api/compliance/cookie-consent                        - store cookie banner choices
  GET  /api/compliance/cookie-preferences                    - read them back
  POST /api/compliance/confirm-deletion/{token}              - confirm an erasure request
  GET  /api/compliance/deletion-certificate/{number}         - download the certificate PDF

Authenticated:
  POST/DELETE /api/compliance/consents/{type}                - give / withdraw consent
  GET  /api/compliance/consents, /consent-history            - own consent state
  POST /api/compliance/export-data                           - request a portability export
  GET  /api/compliance/export-data/status/{id}, /download/{id}
  POST /api/compliance/delete-account                        - start an erasure request
  GET  /api/compliance/deletion-status
  POST /api/compliance/cancel-deletion/{id}

Requests that hand work to the background pool commit first, so the
worker always finds the row it was given.
"""

from __future__ import annotations

import secrets
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.api.deps import get_jobs, get_notifier, get_storage, user_rate_limit
from imobibase.auth.dependencies import AuthenticatedUser, get_current_user, get_optional_user
from imobibase.compliance.consent import (
    MSG_COOKIES_SAVED,
    ConsentService,
    ConsentSubject,
    CookieChoices,
    serialize_consent,
    serialize_cookie_preference,
)
from imobibase.compliance.deletion import AccountDeletionService, serialize_deletion_request
from imobibase.compliance.export import DataExportService, serialize_export_request
from imobibase.compliance.jobs import ComplianceJobs
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings, get_settings
from imobibase.core.rate_limit import client_ip
from imobibase.core.timeutil import isoformat
from imobibase.database import get_db_session
from imobibase.models.consent import ConsentType
from imobibase.models.privacy_request import DeletionType, ExportFormat

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/compliance", tags=["compliance"])


# ------------------------------------------------------------------ #
# Request bodies
# ------------------------------------------------------------------ #


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CookiePreferencesBody(_CamelModel):
    essential: bool = True
    analytics: bool = False
    marketing: bool = False
    personalization: bool = False


class CookieConsentRequest(_CamelModel):
    preferences: CookiePreferencesBody = Field(default_factory=CookiePreferencesBody)
    session_id: str | None = Field(default=None, alias="sessionId", max_length=255)
    consent_version: str | None = Field(default=None, alias="consentVersion", max_length=32)


class GiveConsentRequest(_CamelModel):
    purpose: str | None = Field(default=None, max_length=500)
    metadata: dict[str, Any] | None = None


class ExportDataRequest(_CamelModel):
    format: ExportFormat = ExportFormat.JSON
    include_related: bool = Field(default=True, alias="includeRelated")


class DeleteAccountRequest(_CamelModel):
    reason: str | None = Field(default=None, max_length=2000)
    deletion_type: DeletionType = Field(default=DeletionType.ANONYMIZE, alias="deletionType")


def _user_agent(request: Request) -> str | None:
    return request.headers.get("user-agent")


# ------------------------------------------------------------------ #
# Public routes
# ------------------------------------------------------------------ #


@router.post("/cookie-consent")
async def set_cookie_consent(
    body: CookieConsentRequest,
    request: Request,
    current_user: AuthenticatedUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    # Each anonymous banner gets its own session so visitors never share a subject
    session_id = body.session_id or secrets.token_urlsafe(24)
    service = ConsentService(db)
    preference_id = await service.set_cookie_consent(
        session_id,
        CookieChoices(**body.preferences.model_dump()),
        body.consent_version or settings.consent_policy_version,
        user_id=current_user.id if current_user else None,
        tenant_id=current_user.tenant_id if current_user else None,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )
    return {
        "success": True,
        "preferenceId": str(preference_id),
        "sessionId": session_id,
        "message": MSG_COOKIES_SAVED,
    }


@router.get("/cookie-preferences")
async def get_cookie_preferences(
    session_id: str | None = Query(default=None, alias="sessionId"),
    current_user: AuthenticatedUser | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db_session),
) -> list[dict[str, Any]] | None:
    preferences = await ConsentService(db).get_cookie_preferences(
        user_id=current_user.id if current_user else None,
        session_id=session_id,
    )
    if preferences is None:
        return None
    return [serialize_cookie_preference(p) for p in preferences]


@router.post("/confirm-deletion/{token}")
async def confirm_deletion(
    token: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
    jobs: ComplianceJobs = Depends(get_jobs),
) -> dict[str, Any]:
    service = AccountDeletionService(db, settings=settings, storage=storage)
    deletion = await service.confirm_account_deletion(token, ip_address=client_ip(request))
    await db.commit()

    await jobs.submit_deletion(deletion.id)
    return {
        "message": "Confirmação recebida. Sua conta será deletada em breve.",
        "requestId": str(deletion.id),
    }


@router.get("/deletion-certificate/{certificate_number}")
async def download_deletion_certificate(
    certificate_number: str,
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
) -> Response:
    service = AccountDeletionService(db, settings=settings, storage=storage)
    pdf, download_name = await service.get_deletion_certificate(certificate_number)
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{download_name}"'},
    )


# ------------------------------------------------------------------ #
# Consents
# ------------------------------------------------------------------ #


@router.post("/consents/{consent_type}", dependencies=[Depends(user_rate_limit)])
async def give_consent(
    consent_type: ConsentType,
    request: Request,
    body: GiveConsentRequest | None = None,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    body = body or GiveConsentRequest()
    result = await ConsentService(db).give_consent(
        ConsentSubject(user_id=current_user.id, tenant_id=current_user.tenant_id),
        consent_type,
        settings.consent_policy_version,
        purpose=body.purpose,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
        metadata=body.metadata,
    )
    return {"consentId": str(result.consent_id), "message": result.message}


@router.delete("/consents/{consent_type}", dependencies=[Depends(user_rate_limit)])
async def withdraw_consent(
    consent_type: ConsentType,
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> dict[str, Any]:
    message = await ConsentService(db).withdraw_consent(
        current_user.id,
        current_user.tenant_id,
        consent_type,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )
    return {"message": message}


@router.get("/consents", dependencies=[Depends(user_rate_limit)])
async def list_consents(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> list[dict[str, Any]]:
    records = await ConsentService(db).get_user_consents(current_user.id)
    return [serialize_consent(r) for r in records]


@router.get("/consent-history", dependencies=[Depends(user_rate_limit)])
async def consent_history(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
) -> list[dict[str, Any]]:
    return await ConsentService(db).get_consent_history(current_user.id)


# ------------------------------------------------------------------ #
# Data export
# ------------------------------------------------------------------ #


@router.post("/export-data", dependencies=[Depends(user_rate_limit)])
async def request_export(
    request: Request,
    body: ExportDataRequest | None = None,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
    jobs: ComplianceJobs = Depends(get_jobs),
) -> dict[str, Any]:
    body = body or ExportDataRequest()
    service = DataExportService(db, settings=settings, storage=storage)
    export = await service.request_data_export(
        current_user.id,
        current_user.tenant_id,
        export_format=body.format,
        include_related=body.include_related,
        ip_address=client_ip(request),
    )
    await db.commit()

    await jobs.submit_export(export.id)
    return {
        "requestId": str(export.id),
        "requestToken": export.request_token,
        "status": export.status,
        "expiresAt": isoformat(export.expires_at),
        "message": (
            "Sua solicitação de exportação foi recebida. "
            "Você receberá um e-mail quando estiver pronta."
        ),
    }


@router.get("/export-data/status/{export_id}", dependencies=[Depends(user_rate_limit)])
async def export_status(
    export_id: uuid.UUID,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    export = await DataExportService(db, storage=storage).get_export_status(
        export_id, current_user.id
    )
    return serialize_export_request(export)


@router.get("/export-data/download/{export_id}", dependencies=[Depends(user_rate_limit)])
async def download_export(
    export_id: uuid.UUID,
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: ArtifactStorage = Depends(get_storage),
) -> Response:
    archive, file_name = await DataExportService(db, storage=storage).download_export(
        export_id,
        current_user.id,
        ip_address=client_ip(request),
        user_agent=_user_agent(request),
    )
    return Response(
        content=archive,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


# ------------------------------------------------------------------ #
# Account deletion
# ------------------------------------------------------------------ #


@router.post("/delete-account", dependencies=[Depends(user_rate_limit)])
async def delete_account(
    request: Request,
    body: DeleteAccountRequest | None = None,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings),
    storage: ArtifactStorage = Depends(get_storage),
    notifier: ComplianceNotifier | None = Depends(get_notifier),
) -> dict[str, Any]:
    body = body or DeleteAccountRequest()
    service = AccountDeletionService(db, settings=settings, storage=storage, notifier=notifier)
    receipt = await service.request_account_deletion(
        current_user.id,
        current_user.tenant_id,
        reason=body.reason,
        deletion_type=body.deletion_type,
        ip_address=client_ip(request),
    )
    await db.commit()

    await service.send_confirmation_email(receipt)
    return {
        "requestId": str(receipt.request_id),
        "status": "pending",
        "confirmationUrl": receipt.confirmation_url,
        "message": (
            "Solicitação de exclusão recebida. "
            "Por favor, confirme através do link enviado para seu e-mail."
        ),
    }


@router.get("/deletion-status", dependencies=[Depends(user_rate_limit)])
async def deletion_status(
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any] | None:
    deletion = await AccountDeletionService(db, storage=storage).get_deletion_status(
        current_user.id
    )
    return serialize_deletion_request(deletion) if deletion else None


@router.post("/cancel-deletion/{request_id}", dependencies=[Depends(user_rate_limit)])
async def cancel_deletion(
    request_id: uuid.UUID,
    request: Request,
    current_user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    storage: ArtifactStorage = Depends(get_storage),
) -> dict[str, Any]:
    await AccountDeletionService(db, storage=storage).cancel_deletion_request(
        request_id, current_user.id, ip_address=client_ip(request)
    )
    return {"message": "Solicitação de exclusão cancelada com sucesso"}
