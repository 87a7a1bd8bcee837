"""Account deletion workflow (LGPD Art. 18 VI / GDPR Art. 17).

    pending --confirm--> confirmed --worker--> processing --> completed
    pending --cancel--> cancelled
    processing --failure after retries--> pending (fresh token, error in notes)

Nothing is mutated until the subject confirms through the emailed link.
The "one open request per user" rule is enforced by the partial unique
index ``uq_deletion_requests_user_open``; the application check in front
of it only produces a friendlier error on the common path.

The service never commits. Routes commit before handing work to the
background pool, and the pool runs each attempt in its own session_scope().
"""

from __future__ import annotations

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import delete, inspect, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.anonymizer import (
    DEFAULT_RETENTION_POLICY,
    anonymize_lead,
    anonymize_owner,
    anonymize_renter,
    anonymize_user,
)
from imobibase.compliance.audit_logger import (
    ActorType,
    ComplianceAuditLogger,
    LegalBasis,
    Severity,
)
from imobibase.compliance.certificates import (
    CertificateContent,
    certificate_download_name,
    certificate_file_name,
    certificate_url,
    generate_certificate_number,
    is_valid_certificate_number,
    render_deletion_certificate,
)
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings, get_settings
from imobibase.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    ExternalFailureError,
    ForbiddenError,
    InvalidTokenError,
    NotFoundError,
)
from imobibase.core.timeutil import ensure_utc, isoformat, utcnow
from imobibase.models.consent import ConsentRecord, ConsentStatus
from imobibase.models.crm import Interaction, Lead, Owner, Renter, Visit
from imobibase.models.privacy_request import (
    OPEN_DELETION_STATUSES,
    DeletionRequest,
    DeletionStatus,
    DeletionType,
)
from imobibase.models.user import User, UserSession

log = structlog.get_logger(__name__)

MSG_PENDING_EXISTS = "Já existe uma solicitação de exclusão pendente para esta conta"
MSG_USER_NOT_FOUND = "Usuário não encontrado"
MSG_REQUEST_NOT_FOUND = "Solicitação de exclusão não encontrada"
MSG_CERTIFICATE_NOT_FOUND = "Certificado não encontrado"
MSG_ONLY_PENDING_CANCEL = "Somente solicitações pendentes podem ser canceladas"

# Rows removed outright by the hard-delete path, keyed by owning user column.
# Retention-protected tables (contracts, payments, sales, finance entries,
# audit log) must never appear here.
_HARD_DELETE_TARGETS: tuple[tuple[type[Any], Any], ...] = (
    (ConsentRecord, ConsentRecord.user_id),
    (Interaction, Interaction.user_id),
    (UserSession, UserSession.user_id),
)
HARD_DELETE_TABLES: frozenset[str] = frozenset(
    {model.__tablename__ for model, _ in _HARD_DELETE_TARGETS} | {User.__tablename__}
)
# Assignment references nulled (not deleted) before the user row goes away
HARD_DELETE_NULLIFIED: tuple[tuple[type[Any], Any], ...] = (
    (Lead, Lead.assigned_to),
    (Visit, Visit.assigned_to),
)

_RETAINED_CATEGORY_LABELS = {
    "keepFinancialRecords": "Registros financeiros (5 anos, legislação tributária)",
    "keepContractRecords": "Contratos (10 anos, Código Civil Art. 205)",
    "keepAuditLogs": "Registros de auditoria (5 anos, LGPD)",
}


def confirmation_path(token: str) -> str:
    return f"/api/compliance/confirm-deletion/{token}"


def _new_token() -> str:
    return secrets.token_hex(32)


def _column_values(obj: Any) -> dict[str, Any]:
    return {attr.key: getattr(obj, attr.key) for attr in inspect(obj).mapper.column_attrs}


def _apply_values(obj: Any, values: dict[str, Any]) -> None:
    """Write back only the mapped columns whose value changed."""
    for attr in inspect(obj).mapper.column_attrs:
        key = attr.key
        if key in values and getattr(obj, key) != values[key]:
            setattr(obj, key, values[key])


def serialize_deletion_request(request: DeletionRequest) -> dict[str, Any]:
    return {
        "id": str(request.id),
        "status": request.status,
        "deletionType": request.deletion_type,
        "reason": request.reason,
        "createdAt": isoformat(request.created_at),
        "confirmedAt": isoformat(request.confirmed_at),
        "processedAt": isoformat(request.processed_at),
        "completedAt": isoformat(request.completed_at),
        "cancelledAt": isoformat(request.cancelled_at),
        "certificateNumber": request.certificate_number,
        "certificateUrl": request.certificate_url,
    }


@dataclass(frozen=True)
class DeletionReceipt:
    """A pending request and the link that confirms it.

    The link is only emailed (``send_confirmation_email``) once the caller
    has committed, so a user never receives a token that was rolled back.
    """

    request_id: uuid.UUID
    confirmation_token: str
    confirmation_url: str
    email: str | None = None


class AccountDeletionService:
    def __init__(
        self,
        db: AsyncSession,
        *,
        settings: Settings | None = None,
        storage: ArtifactStorage | None = None,
        notifier: ComplianceNotifier | None = None,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._storage = storage or ArtifactStorage(self._settings.upload_dir)
        self._notifier = notifier
        self._audit = ComplianceAuditLogger(db)

    # ------------------------------------------------------------------ #
    # Lookups
    # ------------------------------------------------------------------ #

    async def _get_user(self, user_id: uuid.UUID, tenant_id: uuid.UUID) -> User | None:
        result = await self._db.execute(
            select(User).where(User.id == user_id, User.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def _get_request(self, request_id: uuid.UUID) -> DeletionRequest | None:
        return await self._db.get(DeletionRequest, request_id)

    async def _get_open_request(self, user_id: uuid.UUID) -> DeletionRequest | None:
        result = await self._db.execute(
            select(DeletionRequest).where(
                DeletionRequest.user_id == user_id,
                DeletionRequest.status.in_(OPEN_DELETION_STATUSES),
            )
        )
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------ #
    # Request / confirm / cancel
    # ------------------------------------------------------------------ #

    async def request_account_deletion(
        self,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        reason: str | None = None,
        deletion_type: DeletionType | str = DeletionType.ANONYMIZE,
        ip_address: str | None = None,
    ) -> DeletionReceipt:
        user = await self._get_user(user_id, tenant_id)
        if user is None:
            raise NotFoundError(MSG_USER_NOT_FOUND, code="user_not_found")

        if await self._get_open_request(user_id) is not None:
            raise ConflictError(MSG_PENDING_EXISTS, code="deletion_pending")

        token = _new_token()
        request = DeletionRequest(
            user_id=user_id,
            tenant_id=tenant_id,
            confirmation_token=token,
            status=DeletionStatus.PENDING,
            reason=reason,
            deletion_type=str(deletion_type),
            data_retention=DEFAULT_RETENTION_POLICY.to_snapshot(),
            created_at=utcnow(),
            ip_address=ip_address,
        )
        try:
            async with self._db.begin_nested():
                self._db.add(request)
                await self._db.flush()
        except IntegrityError:
            log.info("deletion.request_race", user_id=str(user_id))
            raise ConflictError(MSG_PENDING_EXISTS, code="deletion_pending") from None

        await self._audit.log(
            tenant_id=tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            actor_type=ActorType.USER,
            action="account_deletion_requested",
            entity_type="user",
            entity_id=user_id,
            details={"requestId": str(request.id), "deletionType": request.deletion_type},
            ip_address=ip_address,
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
            severity=Severity.WARNING,
        )

        url = self._settings.absolute_url(confirmation_path(token))
        log.info("deletion.request_created", request_id=str(request.id), deletion_type=request.deletion_type)
        return DeletionReceipt(request.id, token, url, user.email)

    async def send_confirmation_email(self, receipt: DeletionReceipt) -> bool:
        """Email the confirmation link. Call after the request row is committed."""
        if self._notifier is None or not receipt.email:
            return False
        return await self._notifier.send_deletion_confirmation(
            receipt.email, receipt.confirmation_url
        )

    async def confirm_account_deletion(
        self, token: str, *, ip_address: str | None = None
    ) -> DeletionRequest:
        """Mark the request confirmed. The caller commits, then enqueues processing."""
        result = await self._db.execute(
            select(DeletionRequest).where(DeletionRequest.confirmation_token == token)
        )
        request = result.scalar_one_or_none()
        if request is None:
            raise InvalidTokenError()
        if request.status != DeletionStatus.PENDING:
            raise AlreadyProcessedError()

        request.status = DeletionStatus.CONFIRMED
        request.confirmed_at = utcnow()
        await self._db.flush()

        await self._audit.log(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            actor_id=str(request.user_id),
            actor_type=ActorType.USER,
            action="account_deletion_confirmed",
            entity_type="account_deletion_request",
            entity_id=request.id,
            ip_address=ip_address,
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
            severity=Severity.WARNING,
        )
        log.info("deletion.confirmed", request_id=str(request.id))
        return request

    async def cancel_deletion_request(
        self,
        request_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        ip_address: str | None = None,
    ) -> DeletionRequest:
        request = await self._get_request(request_id)
        if request is None:
            raise NotFoundError(MSG_REQUEST_NOT_FOUND, code="deletion_request_not_found")
        if request.user_id != user_id:
            raise ForbiddenError()
        if request.status != DeletionStatus.PENDING:
            raise ConflictError(MSG_ONLY_PENDING_CANCEL, code="deletion_not_cancellable")

        request.status = DeletionStatus.CANCELLED
        request.cancelled_at = utcnow()
        await self._db.flush()

        await self._audit.log(
            tenant_id=request.tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            actor_type=ActorType.USER,
            action="account_deletion_cancelled",
            entity_type="account_deletion_request",
            entity_id=request.id,
            ip_address=ip_address,
            severity=Severity.INFO,
        )
        log.info("deletion.cancelled", request_id=str(request.id))
        return request

    async def get_deletion_status(self, user_id: uuid.UUID) -> DeletionRequest | None:
        return await self._get_open_request(user_id)

    # ------------------------------------------------------------------ #
    # Processing (background)
    # ------------------------------------------------------------------ #

    async def mark_processing(self, request_id: uuid.UUID) -> bool:
        """Flip confirmed -> processing. False when the request is not runnable."""
        request = await self._get_request(request_id)
        if request is None:
            return False
        if request.status == DeletionStatus.PROCESSING:
            return True
        if request.status != DeletionStatus.CONFIRMED:
            return False
        request.status = DeletionStatus.PROCESSING
        request.processed_at = utcnow()
        await self._db.flush()
        return True

    async def process_account_deletion(self, request_id: uuid.UUID) -> DeletionRequest | None:
        """Run the erasure. Safe to call again for a request that already completed."""
        request = await self._get_request(request_id)
        if request is None:
            log.warning("deletion.process_missing_request", request_id=str(request_id))
            return None
        if request.status == DeletionStatus.COMPLETED:
            log.info("deletion.already_completed", request_id=str(request_id))
            return request
        if request.status not in (DeletionStatus.CONFIRMED, DeletionStatus.PROCESSING):
            log.warning("deletion.not_runnable", request_id=str(request_id), status=request.status)
            return None

        if request.status == DeletionStatus.CONFIRMED:
            request.status = DeletionStatus.PROCESSING
            request.processed_at = utcnow()

        user = await self._get_user(request.user_id, request.tenant_id)
        if user is None:
            raise NotFoundError(MSG_USER_NOT_FOUND, code="user_not_found")
        contact_email = user.email

        if request.deletion_type == DeletionType.HARD_DELETE:
            await self._hard_delete(user)
        else:
            await self._anonymize(user)

        number = generate_certificate_number()
        completed_at = utcnow()
        await self._write_certificate(request, number, completed_at)

        request.status = DeletionStatus.COMPLETED
        request.completed_at = completed_at
        request.certificate_number = number
        request.certificate_url = certificate_url(number)
        await self._db.flush()

        await self._audit.log(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            actor_id="system",
            actor_type=ActorType.SYSTEM,
            action="account_deletion_completed",
            entity_type="user",
            entity_id=request.user_id,
            details={
                "requestId": str(request.id),
                "deletionType": request.deletion_type,
                "certificateNumber": number,
            },
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
            severity=Severity.CRITICAL,
        )

        if self._notifier is not None:
            await self._notifier.send_deletion_completed(
                contact_email, number, self._settings.absolute_url(request.certificate_url)
            )

        log.info("deletion.completed", request_id=str(request.id), deletion_type=request.deletion_type)
        return request

    async def handle_processing_failure(
        self, request_id: uuid.UUID, error: BaseException | str
    ) -> DeletionReceipt | None:
        """Revert a failed request to pending with a fresh token.

        The consumed token stays dead. The returned receipt carries the new
        link; the caller emails it after committing.
        """
        request = await self._get_request(request_id)
        if request is None or request.status == DeletionStatus.COMPLETED:
            return None

        message = str(error) or type(error).__name__
        token = _new_token()
        request.status = DeletionStatus.PENDING
        request.confirmation_token = token
        request.notes = f"Falha no processamento em {isoformat(utcnow())}: {message}"
        await self._db.flush()

        await self._audit.log(
            tenant_id=request.tenant_id,
            user_id=request.user_id,
            actor_id="system",
            actor_type=ActorType.SYSTEM,
            action="account_deletion_failed",
            entity_type="account_deletion_request",
            entity_id=request.id,
            details={"error": message},
            severity=Severity.WARNING,
        )

        user = await self._get_user(request.user_id, request.tenant_id)
        url = self._settings.absolute_url(confirmation_path(token))
        log.warning("deletion.reverted_to_pending", request_id=str(request.id), error=message)
        return DeletionReceipt(request.id, token, url, user.email if user is not None else None)

    # ------------------------------------------------------------------ #
    # Erasure strategies
    # ------------------------------------------------------------------ #

    async def _hard_delete(self, user: User) -> None:
        for model, column in HARD_DELETE_NULLIFIED:
            await self._db.execute(
                update(model).where(column == user.id).values({column.key: None})
            )
        for model, column in _HARD_DELETE_TARGETS:
            await self._db.execute(delete(model).where(column == user.id))
        await self._db.delete(user)
        await self._db.flush()
        log.info("deletion.hard_deleted", tables=sorted(HARD_DELETE_TABLES))

    async def _anonymize(self, user: User) -> None:
        original_email = user.email
        _apply_values(user, anonymize_user(_column_values(user)))
        user.is_active = False

        related: dict[str, int] = {}
        for model, composer in (
            (Lead, anonymize_lead),
            (Owner, anonymize_owner),
            (Renter, anonymize_renter),
        ):
            result = await self._db.execute(
                select(model).where(
                    model.tenant_id == user.tenant_id, model.email == original_email
                )
            )
            rows = result.scalars().all()
            for row in rows:
                _apply_values(row, composer(_column_values(row)))
            related[model.__tablename__] = len(rows)

        await self._db.execute(
            update(ConsentRecord)
            .where(
                ConsentRecord.user_id == user.id,
                ConsentRecord.status == ConsentStatus.ACTIVE,
            )
            .values(status=ConsentStatus.WITHDRAWN, withdrawn_at=utcnow())
        )
        await self._db.execute(delete(UserSession).where(UserSession.user_id == user.id))
        await self._db.flush()
        log.info("deletion.anonymized", **related)

    # ------------------------------------------------------------------ #
    # Certificates
    # ------------------------------------------------------------------ #

    async def _write_certificate(
        self, request: DeletionRequest, number: str, completed_at: datetime
    ) -> None:
        retained = tuple(
            label
            for key, label in _RETAINED_CATEGORY_LABELS.items()
            if (request.data_retention or {}).get(key)
        )
        content = CertificateContent(
            number=number,
            request_id=str(request.id),
            deletion_type=request.deletion_type,
            requested_at=ensure_utc(request.created_at) or completed_at,
            completed_at=completed_at,
            dpo_email=self._settings.dpo_email,
            retained_categories=retained,
        )
        path = self._storage.certificate_path(certificate_file_name(number))
        try:
            pdf = await asyncio.to_thread(render_deletion_certificate, content)
            await asyncio.to_thread(self._storage.write_bytes, path, pdf)
        except Exception as exc:
            log.error("deletion.certificate_failed", error_type=type(exc).__name__, error=str(exc))
            raise ExternalFailureError("Falha ao gerar o certificado de exclusão") from exc

    async def get_deletion_certificate(self, number: str) -> tuple[bytes, str]:
        """Return (pdf bytes, download file name) for a completed request."""
        if not is_valid_certificate_number(number):
            raise NotFoundError(MSG_CERTIFICATE_NOT_FOUND, code="certificate_not_found")

        result = await self._db.execute(
            select(DeletionRequest).where(DeletionRequest.certificate_number == number)
        )
        if result.scalar_one_or_none() is None:
            raise NotFoundError(MSG_CERTIFICATE_NOT_FOUND, code="certificate_not_found")

        path = self._storage.certificate_path(certificate_file_name(number))
        try:
            data = await asyncio.to_thread(self._storage.read_bytes, path)
        except FileNotFoundError:
            log.error("deletion.certificate_file_missing", certificate_number=number)
            raise NotFoundError(MSG_CERTIFICATE_NOT_FOUND, code="certificate_not_found") from None
        return data, certificate_download_name(number)
