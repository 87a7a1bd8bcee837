"""Tests for BackgroundWorkerPool.

Covers:
- Handler dispatch and task status tracking
- Retry until max_retries, then dead letter
- on_failure hook runs exactly once, and its own failure is contained
- Cancellation of queued tasks
- Submitting an unregistered task type
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest

from imobibase.infra.background_worker import (
    BackgroundWorkerPool,
    Task,
    TaskStatus,
    TaskType,
)


@pytest.fixture
async def pool() -> AsyncGenerator[BackgroundWorkerPool, None]:
    worker_pool = BackgroundWorkerPool(max_workers=2, max_retries=3)
    yield worker_pool
    await worker_pool.shutdown(drain=False)


class TestDispatch:
    async def test_completed_task(self, pool: BackgroundWorkerPool) -> None:
        seen: list[dict] = []

        async def handler(task: Task) -> None:
            seen.append(task.payload)

        pool.register_handler(TaskType.DATA_EXPORT, handler)
        await pool.start()

        task_id = await pool.submit_task(
            task_type=TaskType.DATA_EXPORT, payload={"export_id": "e-1"}
        )
        await pool.join()

        assert seen == [{"export_id": "e-1"}]
        task = pool.get_task_status(task_id)
        assert task is not None
        assert task.status == TaskStatus.COMPLETED
        assert task.started_at is not None
        assert task.completed_at is not None
        assert pool.get_dead_letter_queue() == []

    async def test_unregistered_type(self, pool: BackgroundWorkerPool) -> None:
        with pytest.raises(ValueError):
            await pool.submit_task(task_type=TaskType.ACCOUNT_DELETION, payload={})

    def test_unknown_task_id(self, pool: BackgroundWorkerPool) -> None:
        assert pool.get_task_status("missing") is None

    async def test_start_twice_is_harmless(self, pool: BackgroundWorkerPool) -> None:
        await pool.start()
        await pool.start()
        assert pool.running


class TestRetries:
    async def test_transient_failure_is_retried(self, pool: BackgroundWorkerPool) -> None:
        attempts = 0

        async def flaky(task: Task) -> None:
            nonlocal attempts
            attempts += 1
            if attempts < 2:
                raise RuntimeError("temporary")

        pool.register_handler(TaskType.ACCOUNT_DELETION, flaky)
        await pool.start()

        task_id = await pool.submit_task(
            task_type=TaskType.ACCOUNT_DELETION, payload={"request_id": "r-1"}
        )
        await pool.join()

        task = pool.get_task_status(task_id)
        assert task is not None
        assert attempts == 2
        assert task.status == TaskStatus.COMPLETED
        assert task.retry_count == 1

    async def test_exhausted_retries_dead_letter_and_hook(
        self, pool: BackgroundWorkerPool
    ) -> None:
        attempts = 0
        failures: list[tuple[str, str]] = []

        async def broken(task: Task) -> None:
            nonlocal attempts
            attempts += 1
            raise RuntimeError("storage offline")

        async def on_failure(task: Task, exc: BaseException) -> None:
            failures.append((task.payload["request_id"], str(exc)))

        pool.register_handler(TaskType.ACCOUNT_DELETION, broken, on_failure=on_failure)
        await pool.start()

        task_id = await pool.submit_task(
            task_type=TaskType.ACCOUNT_DELETION, payload={"request_id": "r-1"}
        )
        await pool.join()

        task = pool.get_task_status(task_id)
        assert task is not None
        assert attempts == 3
        assert task.status == TaskStatus.FAILED
        assert task.error == "storage offline"
        assert failures == [("r-1", "storage offline")]
        assert [t.id for t in pool.get_dead_letter_queue()] == [task_id]

    async def test_per_task_retry_override(self, pool: BackgroundWorkerPool) -> None:
        attempts = 0

        async def broken(task: Task) -> None:
            nonlocal attempts
            attempts += 1
            raise RuntimeError("zip failed")

        pool.register_handler(TaskType.DATA_EXPORT, broken)
        await pool.start()

        await pool.submit_task(task_type=TaskType.DATA_EXPORT, payload={}, max_retries=1)
        await pool.join()

        assert attempts == 1

    async def test_failing_hook_is_contained(self, pool: BackgroundWorkerPool) -> None:
        async def broken(task: Task) -> None:
            raise RuntimeError("boom")

        async def bad_hook(task: Task, exc: BaseException) -> None:
            raise RuntimeError("hook boom")

        pool.register_handler(TaskType.DATA_EXPORT, broken, on_failure=bad_hook)
        await pool.start()

        task_id = await pool.submit_task(
            task_type=TaskType.DATA_EXPORT, payload={}, max_retries=1
        )
        await pool.join()

        task = pool.get_task_status(task_id)
        assert task is not None
        assert task.status == TaskStatus.FAILED
        assert pool.running


class TestCancellation:
    async def test_cancelled_task_never_runs(self, pool: BackgroundWorkerPool) -> None:
        calls = 0

        async def handler(task: Task) -> None:
            nonlocal calls
            calls += 1

        pool.register_handler(TaskType.DATA_EXPORT, handler)
        task_id = await pool.submit_task(task_type=TaskType.DATA_EXPORT, payload={})

        assert await pool.cancel_task(task_id) is True
        await pool.start()
        await pool.join()

        assert calls == 0
        task = pool.get_task_status(task_id)
        assert task is not None
        assert task.status == TaskStatus.CANCELLED

    async def test_cannot_cancel_finished_or_unknown(self, pool: BackgroundWorkerPool) -> None:
        async def handler(task: Task) -> None:
            return None

        pool.register_handler(TaskType.DATA_EXPORT, handler)
        await pool.start()
        task_id = await pool.submit_task(task_type=TaskType.DATA_EXPORT, payload={})
        await pool.join()

        assert await pool.cancel_task(task_id) is False
        assert await pool.cancel_task("missing") is False
