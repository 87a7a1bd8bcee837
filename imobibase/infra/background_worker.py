"""
Background worker pool for data subject request processing.

Account erasure and data export packaging can take a long time, so the
HTTP layer only records the request and hands the work to this pool.
Clients learn the outcome by polling the request row, never through the
task object itself.

Key features:
- Configurable concurrency (max_workers)
- Handler registry keyed by TaskType
- Retries up to max_retries, then dead letter plus an on_failure callback
- Graceful shutdown with task draining
- Task status tracking

Design:
- Uses asyncio.Queue for work distribution
- Each worker is a long-running coroutine
- Task state is in-memory; durability comes from the request rows, which
  ComplianceJobs.recover_inflight() re-enqueues after a restart
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from imobibase.telemetry.logging import bind_job_context, clear_context

log = structlog.get_logger(__name__)


class TaskStatus(StrEnum):
    """Task lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskType(StrEnum):
    """Known background task types."""
    ACCOUNT_DELETION = "account_deletion"
    DATA_EXPORT = "data_export"


@dataclass
class Task:
    """Represents a background task with full lifecycle tracking."""
    type: TaskType
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    payload: dict[str, Any] = field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    retry_count: int = 0
    max_retries: int = 3


TaskHandler = Callable[[Task], Awaitable[None]]
FailureHandler = Callable[[Task, BaseException], Awaitable[None]]


@dataclass
class _Registration:
    handler: TaskHandler
    on_failure: FailureHandler | None = None


class BackgroundWorkerPool:
    """
    Asyncio-based background task processor with concurrency control.

    Example usage:
        pool = BackgroundWorkerPool(max_workers=4)
        pool.register_handler(TaskType.DATA_EXPORT, process_export, on_failure=mark_failed)
        await pool.start()

        task_id = await pool.submit_task(
            task_type=TaskType.DATA_EXPORT,
            payload={"export_id": "..."},
            max_retries=1,
        )

        await pool.shutdown()
    """

    def __init__(
        self,
        *,
        max_workers: int = 4,
        max_retries: int = 3,
    ) -> None:
        """
        Initialize the worker pool.

        Args:
            max_workers: Maximum number of concurrent worker coroutines
            max_retries: Default number of attempts for a task
        """
        self._max_workers = max_workers
        self._max_retries = max_retries
        self._queue: asyncio.Queue[Task] = asyncio.Queue()
        self._tasks: dict[str, Task] = {}
        self._handlers: dict[TaskType, _Registration] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._dead_letter: list[Task] = []
        self._shutdown_event = asyncio.Event()
        self._running = False

        log.info(
            "worker_pool.initialized",
            max_workers=max_workers,
            max_retries=max_retries,
        )

    @property
    def running(self) -> bool:
        return self._running

    def register_handler(
        self,
        task_type: TaskType,
        handler: TaskHandler,
        *,
        on_failure: FailureHandler | None = None,
    ) -> None:
        """Route tasks of *task_type* to *handler*; *on_failure* runs once on dead letter."""
        self._handlers[task_type] = _Registration(handler=handler, on_failure=on_failure)

    async def start(self) -> None:
        """Start worker coroutines."""
        if self._running:
            log.warning("worker_pool.already_running")
            return

        self._running = True
        self._shutdown_event.clear()

        for i in range(self._max_workers):
            worker = asyncio.create_task(self._worker_loop(worker_id=i))
            self._workers.append(worker)

        log.info("worker_pool.started", worker_count=self._max_workers)

    async def shutdown(self, *, drain: bool = True) -> None:
        """
        Shutdown the worker pool.

        Args:
            drain: If True, wait for in-flight tasks to complete.
                   If False, cancel all workers immediately.
        """
        if not self._running:
            return

        log.info("worker_pool.shutdown_initiated", drain=drain)
        if drain:
            await self._queue.join()

        self._running = False
        self._shutdown_event.set()

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers.clear()
        log.info(
            "worker_pool.shutdown_complete",
            tasks_completed=len([t for t in self._tasks.values() if t.status == TaskStatus.COMPLETED]),
            tasks_failed=len([t for t in self._tasks.values() if t.status == TaskStatus.FAILED]),
            dead_letter_count=len(self._dead_letter),
        )

    async def join(self) -> None:
        """Wait until every queued task (including retries) has been handled."""
        await self._queue.join()

    async def submit_task(
        self,
        *,
        task_type: TaskType,
        payload: dict[str, Any],
        max_retries: int | None = None,
    ) -> str:
        """
        Submit a task to the background queue.

        Args:
            task_type: Type of task to execute
            payload: Task-specific data (ids only, never personal data)
            max_retries: Override default max_retries for this task

        Returns:
            Task ID for status tracking
        """
        if task_type not in self._handlers:
            raise ValueError(f"No handler registered for task type: {task_type}")

        task = Task(
            type=task_type,
            payload=payload,
            max_retries=max_retries if max_retries is not None else self._max_retries,
        )

        self._tasks[task.id] = task
        await self._queue.put(task)

        log.info(
            "worker_pool.task_submitted",
            task_id=task.id,
            task_type=task_type,
            queue_size=self._queue.qsize(),
        )
        return task.id

    def get_task_status(self, task_id: str) -> Task | None:
        """Return the task, or None if the ID is unknown."""
        return self._tasks.get(task_id)

    async def cancel_task(self, task_id: str) -> bool:
        """
        Cancel a pending task.

        Returns True if task was cancelled, False if not found or already finished.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return False

        if task.status in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED):
            return False

        task.status = TaskStatus.CANCELLED
        task.completed_at = datetime.now(UTC)

        log.info("worker_pool.task_cancelled", task_id=task_id)
        return True

    def get_dead_letter_queue(self) -> list[Task]:
        """Return tasks that exceeded max_retries."""
        return list(self._dead_letter)

    async def _worker_loop(self, worker_id: int) -> None:
        log.info("worker.started", worker_id=worker_id)

        while not self._shutdown_event.is_set():
            try:
                # Wait with timeout to check shutdown periodically
                task = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except TimeoutError:
                continue

            try:
                await self._execute_task(task, worker_id=worker_id)
            finally:
                self._queue.task_done()

        log.info("worker.stopped", worker_id=worker_id)

    async def _execute_task(self, task: Task, worker_id: int) -> None:
        """Execute a single task with error handling and retry logic."""
        if task.status == TaskStatus.CANCELLED:
            return

        registration = self._handlers[task.type]
        task.status = TaskStatus.RUNNING
        task.started_at = datetime.now(UTC)
        bind_job_context(task.id, task.type)

        log.info(
            "worker.task_started",
            worker_id=worker_id,
            task_type=task.type,
            retry_count=task.retry_count,
        )

        try:
            await registration.handler(task)

            task.status = TaskStatus.COMPLETED
            task.completed_at = datetime.now(UTC)
            log.info(
                "worker.task_completed",
                worker_id=worker_id,
                duration_seconds=(task.completed_at - task.started_at).total_seconds(),
            )

        except Exception as exc:
            task.error = str(exc)
            task.retry_count += 1

            log.error(
                "worker.task_failed",
                worker_id=worker_id,
                error_type=type(exc).__name__,
                error=str(exc),
                retry_count=task.retry_count,
                max_retries=task.max_retries,
            )

            if task.retry_count < task.max_retries:
                task.status = TaskStatus.PENDING
                await self._queue.put(task)
                log.info("worker.task_requeued")
            else:
                task.status = TaskStatus.FAILED
                task.completed_at = datetime.now(UTC)
                self._dead_letter.append(task)
                log.error("worker.task_dead_letter", error=task.error)
                await self._run_failure_hook(registration, task, exc)
        finally:
            clear_context()

    async def _run_failure_hook(
        self, registration: _Registration, task: Task, exc: BaseException
    ) -> None:
        if registration.on_failure is None:
            return
        try:
            await registration.on_failure(task, exc)
        except Exception as hook_exc:
            # The request row may now be stuck; recover_inflight() picks it up on restart
            log.critical(
                "worker.failure_hook_failed",
                error_type=type(hook_exc).__name__,
                error=str(hook_exc),
            )
