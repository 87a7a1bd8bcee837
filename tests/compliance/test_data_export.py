"""Tests for DataExportService.

Covers:
- Request creation and ownership checks
- Download gating: not ready (409), expired (410), download counting
- Archive contents for JSON and CSV formats
- Credential stripping in the exported user record
- Expiry cleanup and its idempotence
"""

from __future__ import annotations

import io
import json
import uuid
import zipfile
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from imobibase.compliance.consent import ConsentService, ConsentSubject
from imobibase.compliance.export import (
    DOWNLOAD_FILE_NAME,
    EXPIRED_MESSAGE,
    DataExportService,
    build_export_archive,
)
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings
from imobibase.core.errors import (
    ExportExpiredError,
    ExportNotReadyError,
    ForbiddenError,
    NotFoundError,
)
from imobibase.core.timeutil import ensure_utc, utcnow
from imobibase.models.consent import ConsentType
from imobibase.models.privacy_request import ExportFormat, ExportStatus
from imobibase.models.tenant import Tenant
from imobibase.models.user import User
from tests.conftest import make_user


@pytest.fixture
def service(db: AsyncSession, settings: Settings, storage: ArtifactStorage) -> DataExportService:
    return DataExportService(db, settings=settings, storage=storage, notifier=None)


def _unzip(data: bytes) -> dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        return {name: archive.read(name) for name in archive.namelist()}


class TestRequestExport:
    async def test_creates_pending_request(
        self, service: DataExportService, settings: Settings, user: User
    ) -> None:
        export = await service.request_data_export(user.id, user.tenant_id)

        assert export.status == ExportStatus.PENDING
        assert export.format == "json"
        assert export.data_scope == {"includeRelated": True}
        window = ensure_utc(export.expires_at) - ensure_utc(export.created_at)
        assert window == timedelta(days=settings.export_expiry_days)

    async def test_status_for_owner(self, service: DataExportService, user: User) -> None:
        export = await service.request_data_export(user.id, user.tenant_id)
        status = await service.get_export_status(export.id, user.id)
        assert status.id == export.id

    async def test_status_for_other_user(
        self, db: AsyncSession, service: DataExportService, tenant: Tenant, user: User
    ) -> None:
        other = await make_user(db, tenant, name="Carlos", email="carlos@example.com")
        export = await service.request_data_export(user.id, user.tenant_id)
        with pytest.raises(ForbiddenError):
            await service.get_export_status(export.id, other.id)

    async def test_unknown_export(self, service: DataExportService, user: User) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await service.get_export_status(uuid.uuid4(), user.id)
        assert exc_info.value.code == "export_not_found"


class TestDownload:
    async def test_not_ready_before_processing(
        self, service: DataExportService, user: User
    ) -> None:
        export = await service.request_data_export(user.id, user.tenant_id)
        with pytest.raises(ExportNotReadyError) as exc_info:
            await service.download_export(export.id, user.id)
        assert exc_info.value.status_code == 409

    async def test_process_then_download(
        self, db: AsyncSession, service: DataExportService, user: User
    ) -> None:
        """A processed export downloads as a zip and counts the download."""
        await ConsentService(db).give_consent(
            ConsentSubject(user_id=user.id, tenant_id=user.tenant_id), ConsentType.PRIVACY, "1.0"
        )
        export = await service.request_data_export(user.id, user.tenant_id)
        assert await service.mark_processing(export.id) is True
        processed = await service.process_data_export(export.id)

        assert processed is not None
        assert processed.status == ExportStatus.COMPLETED
        assert processed.file_url == f"/api/compliance/export-data/download/{export.id}"
        assert processed.file_size and processed.file_size > 0

        data, filename = await service.download_export(export.id, user.id)

        assert filename == DOWNLOAD_FILE_NAME
        assert processed.download_count == 1
        assert processed.downloaded_at is not None

        files = _unzip(data)
        assert set(files) == {"my-data.json", "README.txt"}
        payload = json.loads(files["my-data.json"])
        assert payload["metadata"]["dataVersion"] == "1.0.0"
        assert payload["metadata"]["tenant"]["id"] == str(user.tenant_id)
        exported_user = payload["data"]["user"]
        assert exported_user["email"] == "maria.silva@example.com"
        assert "password" not in exported_user
        assert [c["consent_type"] for c in payload["data"]["consents"]] == ["privacy"]
        assert "assignedLeads" not in payload["data"]
        assert "LGPD" in files["README.txt"].decode("utf-8")

    async def test_expired_download(self, service: DataExportService, user: User) -> None:
        export = await service.request_data_export(user.id, user.tenant_id)
        await service.process_data_export(export.id)
        export.expires_at = utcnow() - timedelta(minutes=1)

        with pytest.raises(ExportExpiredError) as exc_info:
            await service.download_export(export.id, user.id)
        assert exc_info.value.status_code == 410

    async def test_download_by_other_user(
        self, db: AsyncSession, service: DataExportService, tenant: Tenant, user: User
    ) -> None:
        other = await make_user(db, tenant, name="Carlos", email="carlos@example.com")
        export = await service.request_data_export(user.id, user.tenant_id)
        await service.process_data_export(export.id)
        with pytest.raises(ForbiddenError):
            await service.download_export(export.id, other.id)

    async def test_admin_export_includes_assignments(
        self, service: DataExportService, admin_user: User
    ) -> None:
        export = await service.request_data_export(admin_user.id, admin_user.tenant_id)
        await service.process_data_export(export.id)
        data, _ = await service.download_export(export.id, admin_user.id)
        payload = json.loads(_unzip(data)["my-data.json"])
        assert payload["data"]["assignedLeads"] == []
        assert payload["data"]["assignedVisits"] == []

    async def test_without_related_data(self, service: DataExportService, user: User) -> None:
        export = await service.request_data_export(user.id, user.tenant_id, include_related=False)
        await service.process_data_export(export.id)
        data, _ = await service.download_export(export.id, user.id)
        payload = json.loads(_unzip(data)["my-data.json"])
        assert list(payload["data"]) == ["user"]


class TestCsvFormat:
    async def test_one_csv_per_section(self, service: DataExportService, user: User) -> None:
        export = await service.request_data_export(
            user.id, user.tenant_id, export_format=ExportFormat.CSV
        )
        await service.process_data_export(export.id)
        data, _ = await service.download_export(export.id, user.id)

        files = _unzip(data)
        assert {"metadata.json", "README.txt", "user.csv", "consents.csv"} <= set(files)
        header = files["user.csv"].decode("utf-8").splitlines()[0].split(",")
        assert "email" in header
        assert "password" not in header

    def test_archive_builder_nests_dicts_as_json(self) -> None:
        payload = {
            "metadata": {"format": "csv"},
            "data": {"user": {"id": "u1", "extra": {"a": 1}}, "consents": []},
        }
        files = _unzip(build_export_archive(payload, "csv", "readme"))
        lines = files["user.csv"].decode("utf-8").splitlines()
        assert lines[0] == "id,extra"
        assert lines[1] == 'u1,"{""a"": 1}"'
        assert files["consents.csv"] == b""


class TestFailureAndCleanup:
    async def test_mark_failed(self, service: DataExportService, user: User) -> None:
        export = await service.request_data_export(user.id, user.tenant_id)
        await service.mark_export_failed(export.id, RuntimeError("disk full"))
        assert export.status == ExportStatus.FAILED
        assert export.error_message == "disk full"

    async def test_cleanup_removes_expired_archives(
        self, service: DataExportService, storage: ArtifactStorage, user: User
    ) -> None:
        fresh = await service.request_data_export(user.id, user.tenant_id)
        stale = await service.request_data_export(user.id, user.tenant_id)
        await service.process_data_export(fresh.id)
        await service.process_data_export(stale.id)
        assert stale.file_name is not None
        stale_path = storage.export_path(stale.file_name)
        assert storage.exists(stale_path)
        stale.expires_at = utcnow() - timedelta(days=1)

        assert await service.cleanup_expired_exports() == 1

        assert stale.status == ExportStatus.FAILED
        assert stale.error_message == EXPIRED_MESSAGE
        assert not storage.exists(stale_path)
        assert fresh.status == ExportStatus.COMPLETED

    async def test_cleanup_is_idempotent(self, service: DataExportService, user: User) -> None:
        export = await service.request_data_export(user.id, user.tenant_id)
        await service.process_data_export(export.id)
        export.expires_at = utcnow() - timedelta(days=1)

        assert await service.cleanup_expired_exports() == 1
        assert await service.cleanup_expired_exports() == 0
