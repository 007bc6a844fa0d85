"""Task lifecycle and asynchronous processing.

    pending -> processing -> completed | failed | cancelled
    pending -> cancelled
    failed | cancelled -> pending   (explicit retry only)

Every status change goes through update(). Work runs on a bounded pool of
asyncio tasks; each run is capped by a timeout so a stuck handler surfaces as
a failed task instead of hanging.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable

from config import settings
from errors import InvalidTransition, NotFound
from models import Task, TaskOutcome, TaskStatus, TaskType, utcnow
from storage import TaskStore

logger = logging.getLogger(__name__)

TaskHandler = Callable[[Task], Awaitable[TaskOutcome]]

ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.PROCESSING, TaskStatus.CANCELLED},
    TaskStatus.PROCESSING: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.CANCELLED: {TaskStatus.PENDING},
    TaskStatus.COMPLETED: set(),
}


class TaskOrchestrator:
    def __init__(
        self,
        store: TaskStore,
        handlers: dict[TaskType, TaskHandler] | None = None,
        max_workers: int | None = None,
        task_timeout: float | None = None,
    ):
        self._store = store
        self._handlers: dict[TaskType, TaskHandler] = dict(handlers or {})
        self._workers = asyncio.Semaphore(max_workers or settings.WORKER_POOL_SIZE)
        self._timeout = task_timeout if task_timeout is not None else settings.TASK_TIMEOUT_SECONDS
        self._running: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    def register(self, task_type: TaskType, handler: TaskHandler):
        self._handlers[task_type] = handler

    async def create(self, owner_id: str, task_type: TaskType, input: dict[str, Any]) -> Task:
        """Persist a pending task and schedule it."""
        task = Task(owner_id=owner_id, type=task_type, input=input)
        await self._store.insert(task)
        logger.info("Created task %s (type=%s owner=%s)", task.id, task_type.value, owner_id)
        self._schedule(task.id)
        return task

    async def get(self, task_id: str) -> Task:
        task = await self._store.get(task_id)
        if task is None:
            raise NotFound(f"Task not found: {task_id}")
        return task

    async def update(
        self,
        task_id: str,
        status: TaskStatus,
        output: dict[str, Any] | None = None,
        error: str | None = None,
        confidence: float | None = None,
    ) -> Task:
        """Apply a status transition, rejecting any the lifecycle does not allow."""
        async with self._lock:
            task = await self.get(task_id)
            if status not in ALLOWED_TRANSITIONS[task.status]:
                raise InvalidTransition(
                    f"Task {task_id} cannot move from {task.status.value} to {status.value}"
                )

            now = utcnow()
            changes: dict[str, Any] = {"status": status, "updated_at": now}
            if status == TaskStatus.PENDING:
                changes.update(error=None, output=None, confidence=None, attempts=task.attempts + 1)
            if output is not None:
                changes["output"] = output
            if error is not None:
                changes["error"] = error
            if confidence is not None:
                changes["confidence"] = confidence
            if status in (TaskStatus.COMPLETED, TaskStatus.FAILED) and task.processed_at is None:
                changes["processed_at"] = now

            task = task.model_copy(update=changes)
            await self._store.save(task)
            return task

    async def cancel(self, task_id: str) -> Task:
        """Cancel a pending or processing task; a terminal task is returned unchanged."""
        task = await self.get(task_id)
        if task.status.is_terminal:
            return task

        task = await self.update(task_id, TaskStatus.CANCELLED)
        runner = self._running.get(task_id)
        if runner is not None and not runner.done():
            runner.cancel()
        logger.info("Cancelled task %s", task_id)
        return task

    async def retry(self, task_id: str) -> Task:
        """Re-enqueue a failed or cancelled task."""
        task = await self.get(task_id)
        if task.status not in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            raise InvalidTransition(f"Only failed or cancelled tasks can be retried (task {task_id} is {task.status.value})")
        task = await self.update(task_id, TaskStatus.PENDING)
        logger.info("Retrying task %s (attempt %d)", task_id, task.attempts)
        self._schedule(task_id)
        return task

    async def list_tasks(
        self,
        owner_id: str | None = None,
        task_type: TaskType | None = None,
        status: TaskStatus | None = None,
        limit: int | None = None,
    ) -> list[Task]:
        """Matching tasks, newest first."""
        tasks = [
            t for t in await self._store.all()
            if (owner_id is None or t.owner_id == owner_id)
            and (task_type is None or t.type == task_type)
            and (status is None or t.status == status)
        ]
        tasks.sort(key=lambda t: t.created_at, reverse=True)
        return tasks[:limit] if limit else tasks

    async def pending_tasks(self, limit: int = 10) -> list[Task]:
        """Pending tasks, oldest first."""
        tasks = [t for t in await self._store.all() if t.status == TaskStatus.PENDING]
        tasks.sort(key=lambda t: t.created_at)
        return tasks[:limit]

    async def stats(self, owner_id: str | None = None) -> dict[str, int]:
        tasks = await self.list_tasks(owner_id=owner_id)
        counts = {"total": len(tasks)}
        for status in TaskStatus:
            counts[status.value] = sum(1 for t in tasks if t.status == status)
        return counts

    async def join(self):
        """Wait until no task is queued or running."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def shutdown(self):
        for runner in list(self._running.values()):
            runner.cancel()
        await self.join()

    def _schedule(self, task_id: str):
        runner = asyncio.create_task(self._run(task_id))
        self._running[task_id] = runner
        runner.add_done_callback(lambda r: self._forget(task_id, r))

    def _forget(self, task_id: str, runner: asyncio.Task):
        # A retry may already have replaced this runner.
        if self._running.get(task_id) is runner:
            del self._running[task_id]

    async def _run(self, task_id: str):
        async with self._workers:
            task = await self._store.get(task_id)
            if task is None or task.status != TaskStatus.PENDING:
                # Cancelled while queued.
                return

            task = await self.update(task_id, TaskStatus.PROCESSING)
            handler = self._handlers.get(task.type)
            if handler is None:
                await self._finish(task_id, TaskStatus.FAILED, error=f"No handler registered for task type: {task.type.value}")
                return

            try:
                outcome = await asyncio.wait_for(handler(task), timeout=self._timeout)
            except asyncio.TimeoutError:
                logger.error("Task %s timed out after %.0fs", task_id, self._timeout)
                await self._finish(task_id, TaskStatus.FAILED, error=f"Task timed out after {self._timeout:.0f}s")
            except asyncio.CancelledError:
                logger.info("Task %s stopped by cancellation", task_id)
                raise
            except Exception as e:
                logger.warning("Task %s failed: %s", task_id, e)
                await self._finish(task_id, TaskStatus.FAILED, error=describe_error(e))
            else:
                await self._finish(
                    task_id,
                    TaskStatus.COMPLETED,
                    output=outcome.output,
                    confidence=outcome.confidence,
                )

    async def _finish(self, task_id: str, status: TaskStatus, **fields):
        try:
            await self.update(task_id, status, **fields)
        except InvalidTransition:
            # Cancelled between the handler returning and this update.
            logger.info("Task %s already left processing, dropping %s result", task_id, status.value)


def describe_error(error: Exception) -> str:
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__
