"""Data portability exports (LGPD Art. 18 V / GDPR Art. 20).

Lifecycle: pending -> processing -> completed | failed. A completed export
stays downloadable for ``export_expiry_days``. cleanup_expired_exports()
removes the archive afterwards and marks the row failed ("Export expired").

Export failures are final: the worker runs them once and the subject
requests a new export.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import secrets
import uuid
import zipfile
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.audit_logger import (
    ActorType,
    ComplianceAuditLogger,
    LegalBasis,
    Severity,
)
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings, get_settings
from imobibase.core.errors import (
    ExportExpiredError,
    ExportNotReadyError,
    ExternalFailureError,
    ForbiddenError,
    NotFoundError,
)
from imobibase.core.sensitive_fields import strip_credentials
from imobibase.core.timeutil import ensure_utc, epoch_ms, isoformat, utcnow
from imobibase.models.compliance_audit import ComplianceAuditLog
from imobibase.models.consent import ConsentRecord, CookiePreference
from imobibase.models.crm import Interaction, Lead, Visit
from imobibase.models.privacy_request import ExportFormat, ExportRequest, ExportStatus
from imobibase.models.tenant import Tenant
from imobibase.models.user import ELEVATED_ROLES, User

log = structlog.get_logger(__name__)

DATA_VERSION = "1.0.0"
AUDIT_ENTRY_LIMIT = 1000
EXPIRED_MESSAGE = "Export expired"
DOWNLOAD_FILE_NAME = "my-data-export.zip"

MSG_EXPORT_NOT_FOUND = "Exportação não encontrada"

_README = """\
EXPORTAÇÃO DE DADOS PESSOAIS - ImobiBase
=========================================

Este arquivo contém os dados pessoais associados à sua conta, exportados
em {export_date} no formato {format}.

Seus direitos (LGPD - Lei nº 13.709/2018, Art. 18):
  - Confirmação da existência de tratamento
  - Acesso aos dados
  - Correção de dados incompletos, inexatos ou desatualizados
  - Anonimização, bloqueio ou eliminação de dados desnecessários
  - Portabilidade dos dados a outro fornecedor
  - Eliminação dos dados tratados com consentimento
  - Informação sobre compartilhamento com terceiros
  - Revogação do consentimento

Este link de download expira em {expiry_days} dias.

Encarregado de Dados (DPO): {dpo_email}
"""


def export_download_path(export_id: uuid.UUID | str) -> str:
    return f"/api/compliance/export-data/download/{export_id}"


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return isoformat(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(v) for v in value]
    return value


def _row(obj: Any) -> dict[str, Any]:
    return {
        attr.key: _jsonable(getattr(obj, attr.key))
        for attr in inspect(obj).mapper.column_attrs
    }


def _csv_bytes(rows: list[dict[str, Any]]) -> bytes:
    buf = io.StringIO()
    if rows:
        fieldnames = list(rows[0].keys())
        writer = csv.DictWriter(buf, fieldnames=fieldnames, extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow(
                {k: json.dumps(v, ensure_ascii=False) if isinstance(v, dict | list) else v for k, v in row.items()}
            )
    return buf.getvalue().encode("utf-8")


def build_export_archive(
    payload: dict[str, Any], export_format: str, readme: str
) -> bytes:
    """Zip the collected data. CPU-bound; run via ``asyncio.to_thread``."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        if export_format == ExportFormat.CSV:
            archive.writestr("metadata.json", json.dumps(payload["metadata"], ensure_ascii=False, indent=2))
            for section, content in payload["data"].items():
                rows = content if isinstance(content, list) else [content]
                archive.writestr(f"{section}.csv", _csv_bytes(rows))
        else:
            archive.writestr("my-data.json", json.dumps(payload, ensure_ascii=False, indent=2))
        archive.writestr("README.txt", readme)
    return buf.getvalue()


def serialize_export_request(export: ExportRequest) -> dict[str, Any]:
    return {
        "id": str(export.id),
        "status": export.status,
        "format": export.format,
        "fileName": export.file_name,
        "fileSize": export.file_size,
        "fileUrl": export.file_url,
        "createdAt": isoformat(export.created_at),
        "completedAt": isoformat(export.completed_at),
        "expiresAt": isoformat(export.expires_at),
        "downloadCount": export.download_count,
        "errorMessage": export.error_message,
    }


class DataExportService:
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

    async def request_data_export(
        self,
        user_id: uuid.UUID,
        tenant_id: uuid.UUID,
        *,
        export_format: ExportFormat | str = ExportFormat.JSON,
        include_related: bool = True,
        ip_address: str | None = None,
    ) -> ExportRequest:
        now = utcnow()
        export = ExportRequest(
            user_id=user_id,
            tenant_id=tenant_id,
            request_token=secrets.token_hex(32),
            status=ExportStatus.PENDING,
            format=str(export_format),
            data_scope={"includeRelated": include_related},
            created_at=now,
            expires_at=now + timedelta(days=self._settings.export_expiry_days),
            ip_address=ip_address,
        )
        self._db.add(export)
        await self._db.flush()

        await self._audit.log(
            tenant_id=tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            action="data_export_requested",
            entity_type="data_export_request",
            entity_id=export.id,
            details={"format": export.format, "includeRelated": include_related},
            ip_address=ip_address,
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
        )
        log.info("export.requested", export_id=str(export.id), format=export.format)
        return export

    async def _get_owned(self, export_id: uuid.UUID, user_id: uuid.UUID) -> ExportRequest:
        export = await self._db.get(ExportRequest, export_id)
        if export is None:
            raise NotFoundError(MSG_EXPORT_NOT_FOUND, code="export_not_found")
        if export.user_id != user_id:
            raise ForbiddenError()
        return export

    async def get_export_status(
        self, export_id: uuid.UUID, user_id: uuid.UUID
    ) -> ExportRequest:
        return await self._get_owned(export_id, user_id)

    async def download_export(
        self,
        export_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[bytes, str]:
        export = await self._get_owned(export_id, user_id)
        if export.status != ExportStatus.COMPLETED or not export.file_name:
            raise ExportNotReadyError()
        if ensure_utc(export.expires_at) <= utcnow():
            raise ExportExpiredError()

        path = self._storage.export_path(export.file_name)
        try:
            data = await asyncio.to_thread(self._storage.read_bytes, path)
        except FileNotFoundError:
            log.error("export.file_missing", export_id=str(export.id))
            raise ExportExpiredError() from None

        export.download_count += 1
        export.downloaded_at = utcnow()
        await self._db.flush()

        await self._audit.log(
            tenant_id=export.tenant_id,
            user_id=user_id,
            actor_id=str(user_id),
            action="data_export_downloaded",
            entity_type="data_export_request",
            entity_id=export.id,
            ip_address=ip_address,
            user_agent=user_agent,
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
        )
        return data, DOWNLOAD_FILE_NAME

    # ------------------------------------------------------------------ #
    # Processing (background)
    # ------------------------------------------------------------------ #

    async def mark_processing(self, export_id: uuid.UUID) -> bool:
        export = await self._db.get(ExportRequest, export_id)
        if export is None:
            return False
        if export.status == ExportStatus.PROCESSING:
            return True
        if export.status != ExportStatus.PENDING:
            return False
        export.status = ExportStatus.PROCESSING
        await self._db.flush()
        return True

    async def process_data_export(self, export_id: uuid.UUID) -> ExportRequest | None:
        export = await self._db.get(ExportRequest, export_id)
        if export is None:
            log.warning("export.process_missing_request", export_id=str(export_id))
            return None
        if export.status == ExportStatus.COMPLETED:
            return export
        if export.status not in (ExportStatus.PENDING, ExportStatus.PROCESSING):
            log.warning("export.not_runnable", export_id=str(export_id), status=export.status)
            return None
        export.status = ExportStatus.PROCESSING

        user = await self._db.get(User, export.user_id)
        if user is None or user.tenant_id != export.tenant_id:
            raise NotFoundError("Usuário não encontrado", code="user_not_found")

        include_related = bool((export.data_scope or {}).get("includeRelated", True))
        payload = await self._collect(user, export.format, include_related)

        now = utcnow()
        readme = _README.format(
            export_date=now.strftime("%d/%m/%Y %H:%M UTC"),
            format=export.format.upper(),
            expiry_days=self._settings.export_expiry_days,
            dpo_email=self._settings.dpo_email,
        )
        file_name = f"data-export-{user.id}-{epoch_ms(now)}.zip"
        path = self._storage.export_path(file_name)
        try:
            archive = await asyncio.to_thread(build_export_archive, payload, export.format, readme)
            size = await asyncio.to_thread(self._storage.write_bytes, path, archive)
        except Exception as exc:
            log.error("export.archive_failed", error_type=type(exc).__name__, error=str(exc))
            raise ExternalFailureError("Falha ao gerar o arquivo de exportação") from exc

        export.status = ExportStatus.COMPLETED
        export.file_name = file_name
        export.file_size = size
        export.file_url = export_download_path(export.id)
        export.completed_at = now
        await self._db.flush()

        await self._audit.log(
            tenant_id=export.tenant_id,
            user_id=export.user_id,
            actor_id="system",
            actor_type=ActorType.SYSTEM,
            action="data_export_completed",
            entity_type="data_export_request",
            entity_id=export.id,
            details={"fileSize": size, "sections": sorted(payload["data"].keys())},
            legal_basis=LegalBasis.LEGAL_OBLIGATION,
        )

        if self._notifier is not None:
            await self._notifier.send_export_ready(
                user.email,
                self._settings.absolute_url(export.file_url),
                self._settings.export_expiry_days,
            )

        log.info("export.completed", export_id=str(export.id), file_size=size)
        return export

    async def mark_export_failed(
        self, export_id: uuid.UUID, error: BaseException | str
    ) -> None:
        export = await self._db.get(ExportRequest, export_id)
        if export is None or export.status == ExportStatus.COMPLETED:
            return
        message = str(error) or type(error).__name__
        export.status = ExportStatus.FAILED
        export.error_message = message
        await self._db.flush()

        await self._audit.log(
            tenant_id=export.tenant_id,
            user_id=export.user_id,
            actor_id="system",
            actor_type=ActorType.SYSTEM,
            action="data_export_failed",
            entity_type="data_export_request",
            entity_id=export.id,
            details={"error": message},
            severity=Severity.WARNING,
        )
        log.warning("export.failed", export_id=str(export.id), error=message)

    async def _collect(
        self, user: User, export_format: str, include_related: bool
    ) -> dict[str, Any]:
        tenant = await self._db.get(Tenant, user.tenant_id)
        data: dict[str, Any] = {"user": strip_credentials(_row(user))}

        if include_related:
            data["consents"] = await self._rows(
                select(ConsentRecord)
                .where(ConsentRecord.user_id == user.id)
                .order_by(ConsentRecord.accepted_at.desc())
            )
            data["cookiePreferences"] = await self._rows(
                select(CookiePreference).where(CookiePreference.user_id == user.id)
            )
            data["interactions"] = await self._rows(
                select(Interaction)
                .where(Interaction.user_id == user.id)
                .order_by(Interaction.created_at.desc())
            )
            data["auditLogs"] = await self._rows(
                select(ComplianceAuditLog)
                .where(ComplianceAuditLog.user_id == user.id)
                .order_by(ComplianceAuditLog.timestamp.desc())
                .limit(AUDIT_ENTRY_LIMIT)
            )
            if user.role in ELEVATED_ROLES:
                data["assignedLeads"] = await self._rows(
                    select(Lead).where(
                        Lead.tenant_id == user.tenant_id, Lead.assigned_to == user.id
                    )
                )
                data["assignedVisits"] = await self._rows(
                    select(Visit).where(
                        Visit.tenant_id == user.tenant_id, Visit.assigned_to == user.id
                    )
                )

        return {
            "metadata": {
                "exportDate": isoformat(utcnow()),
                "dataVersion": DATA_VERSION,
                "format": export_format,
                "tenant": {
                    "id": str(user.tenant_id),
                    "name": tenant.name if tenant else None,
                },
            },
            "data": data,
        }

    async def _rows(self, stmt: Any) -> list[dict[str, Any]]:
        result = await self._db.execute(stmt)
        return [_row(obj) for obj in result.scalars().all()]

    # ------------------------------------------------------------------ #
    # Periodic maintenance
    # ------------------------------------------------------------------ #

    async def cleanup_expired_exports(self) -> int:
        """Reclaim completed exports past expiry. Idempotent; returns rows touched."""
        result = await self._db.execute(
            select(ExportRequest).where(
                ExportRequest.status == ExportStatus.COMPLETED,
                ExportRequest.expires_at < utcnow(),
            )
        )
        expired = list(result.scalars().all())
        for export in expired:
            if export.file_name:
                path = self._storage.export_path(export.file_name)
                await asyncio.to_thread(self._storage.delete, path)
            export.status = ExportStatus.FAILED
            export.error_message = EXPIRED_MESSAGE
            await self._audit.log(
                tenant_id=export.tenant_id,
                user_id=export.user_id,
                actor_id="system",
                actor_type=ActorType.SYSTEM,
                action="data_export_expired",
                entity_type="data_export_request",
                entity_id=export.id,
            )
        await self._db.flush()
        log.info("export.cleanup_complete", expired=len(expired))
        return len(expired)
