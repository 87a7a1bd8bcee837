"""Background job wiring for data subject requests.

Routes commit the request row, then call submit_deletion()/submit_export().
Each attempt runs in its own transaction. The "processing" transition is
committed first in a short transaction so polling clients observe it even
while the long part is still running.

Deletion attempts are retried; after the last one the request is reverted
to pending with a fresh confirmation token. Export failures are final.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imobibase.compliance.deletion import AccountDeletionService
from imobibase.compliance.export import DataExportService
from imobibase.compliance.notifier import ComplianceNotifier
from imobibase.compliance.storage import ArtifactStorage
from imobibase.config import Settings
from imobibase.database import session_scope
from imobibase.infra.background_worker import BackgroundWorkerPool, Task, TaskType
from imobibase.models.privacy_request import (
    DeletionRequest,
    DeletionStatus,
    ExportRequest,
    ExportStatus,
)

log = structlog.get_logger(__name__)


class ComplianceJobs:
    def __init__(
        self,
        pool: BackgroundWorkerPool,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        *,
        storage: ArtifactStorage | None = None,
        notifier: ComplianceNotifier | None = None,
    ) -> None:
        self.pool = pool
        self._session_factory = session_factory
        self._settings = settings
        self._storage = storage or ArtifactStorage(settings.upload_dir)
        self._notifier = notifier

    def register(self) -> None:
        self.pool.register_handler(
            TaskType.ACCOUNT_DELETION, self._run_deletion, on_failure=self._deletion_failed
        )
        self.pool.register_handler(
            TaskType.DATA_EXPORT, self._run_export, on_failure=self._export_failed
        )

    def _deletion_service(self, db: AsyncSession) -> AccountDeletionService:
        return AccountDeletionService(
            db, settings=self._settings, storage=self._storage, notifier=self._notifier
        )

    def _export_service(self, db: AsyncSession) -> DataExportService:
        return DataExportService(
            db, settings=self._settings, storage=self._storage, notifier=self._notifier
        )

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #

    async def submit_deletion(self, request_id: uuid.UUID) -> str:
        return await self.pool.submit_task(
            task_type=TaskType.ACCOUNT_DELETION,
            payload={"request_id": str(request_id)},
            max_retries=self._settings.background_worker_max_retries,
        )

    async def submit_export(self, export_id: uuid.UUID) -> str:
        return await self.pool.submit_task(
            task_type=TaskType.DATA_EXPORT,
            payload={"export_id": str(export_id)},
            max_retries=1,
        )

    async def recover_inflight(self) -> dict[str, int]:
        """Re-enqueue work a previous process accepted but never finished."""
        async with session_scope(self._session_factory) as db:
            deletions = (
                await db.execute(
                    select(DeletionRequest.id).where(
                        DeletionRequest.status.in_(
                            (DeletionStatus.CONFIRMED, DeletionStatus.PROCESSING)
                        )
                    )
                )
            ).scalars().all()
            exports = (
                await db.execute(
                    select(ExportRequest.id).where(
                        ExportRequest.status.in_((ExportStatus.PENDING, ExportStatus.PROCESSING))
                    )
                )
            ).scalars().all()

        for request_id in deletions:
            await self.submit_deletion(request_id)
        for export_id in exports:
            await self.submit_export(export_id)

        recovered = {"deletions": len(deletions), "exports": len(exports)}
        if deletions or exports:
            log.info("jobs.recovered_inflight", **recovered)
        return recovered

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    async def _run_deletion(self, task: Task) -> None:
        request_id = uuid.UUID(task.payload["request_id"])
        async with session_scope(self._session_factory) as db:
            runnable = await self._deletion_service(db).mark_processing(request_id)
        if not runnable:
            log.info("jobs.deletion_skipped", request_id=str(request_id))
            return
        async with session_scope(self._session_factory) as db:
            await self._deletion_service(db).process_account_deletion(request_id)

    async def _deletion_failed(self, task: Task, exc: BaseException) -> None:
        request_id = uuid.UUID(task.payload["request_id"])
        async with session_scope(self._session_factory) as db:
            service = self._deletion_service(db)
            receipt = await service.handle_processing_failure(request_id, exc)
        if receipt is not None:
            await service.send_confirmation_email(receipt)

    async def _run_export(self, task: Task) -> None:
        export_id = uuid.UUID(task.payload["export_id"])
        async with session_scope(self._session_factory) as db:
            runnable = await self._export_service(db).mark_processing(export_id)
        if not runnable:
            log.info("jobs.export_skipped", export_id=str(export_id))
            return
        async with session_scope(self._session_factory) as db:
            await self._export_service(db).process_data_export(export_id)

    async def _export_failed(self, task: Task, exc: BaseException) -> None:
        export_id = uuid.UUID(task.payload["export_id"])
        async with session_scope(self._session_factory) as db:
            await self._export_service(db).mark_export_failed(export_id, exc)
