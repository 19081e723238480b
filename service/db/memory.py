import asyncio
import copy
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .base import TaskLedger
from .models import TaskQueueEntry, TaskStatus

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTaskLedger(TaskLedger):
    """
    In-process task ledger with the same semantics as the PostgreSQL one.

    Used by tests and single-process development runs. A single asyncio
    lock serializes all operations, which stands in for row locking.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._tasks: dict[str, TaskQueueEntry] = {}
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        pass

    async def create_tables(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def ping(self) -> bool:
        return True

    def _update(self, task: TaskQueueEntry, **changes: Any) -> TaskQueueEntry:
        updated = replace(task, updated_at=self.clock(), **changes)
        self._tasks[task.id] = updated
        return updated

    async def schedule(
        self,
        task_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        scheduled_for: datetime | None = None,
        max_retries: int = 3,
    ) -> str:
        if not 0 <= priority <= 10:
            raise ValueError(f"Priority must be between 0 and 10, got {priority}")

        async with self._lock:
            now = self.clock()
            task = TaskQueueEntry(
                id=str(uuid.uuid4()),
                task_type=task_type,
                payload=copy.deepcopy(payload),
                priority=priority,
                scheduled_for=scheduled_for or now,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
            )
            self._tasks[task.id] = task
            return task.id

    async def claim(
        self,
        worker_id: str,
        task_types: list[str] | None = None,
        max_tasks: int = 1,
        lease_minutes: int = 5,
    ) -> list[TaskQueueEntry]:
        async with self._lock:
            now = self.clock()
            due = [
                t
                for t in self._tasks.values()
                if t.status == TaskStatus.PENDING
                and t.scheduled_for <= now
                and (task_types is None or t.task_type in task_types)
            ]
            due.sort(key=lambda t: (-t.priority, t.scheduled_for))

            return [
                self._update(
                    t,
                    status=TaskStatus.PROCESSING,
                    worker_id=worker_id,
                    started_at=now,
                    leased_until=now + timedelta(minutes=lease_minutes),
                )
                for t in due[:max_tasks]
            ]

    @staticmethod
    def _held(task: TaskQueueEntry | None, worker_id: str | None) -> bool:
        if task is None or task.status != TaskStatus.PROCESSING:
            return False
        return worker_id is None or task.worker_id == worker_id

    async def complete(
        self,
        task_id: str,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not self._held(task, worker_id):
                return False
            self._update(
                task,
                status=TaskStatus.COMPLETED,
                completed_at=self.clock(),
                leased_until=None,
                result=copy.deepcopy(result),
            )
            return True

    async def fail(
        self,
        task_id: str,
        message: str,
        retry: bool = True,
        worker_id: str | None = None,
    ) -> bool:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not self._held(task, worker_id):
                return False

            now = self.clock()
            if retry and task.retry_count < task.max_retries:
                self._update(
                    task,
                    status=TaskStatus.PENDING,
                    retry_count=task.retry_count + 1,
                    scheduled_for=now + timedelta(seconds=task.retry_count * 60),
                    worker_id=None,
                    leased_until=None,
                    error_message=message,
                )
                return True

            self._update(
                task,
                status=TaskStatus.FAILED,
                failed_at=now,
                leased_until=None,
                error_message=message,
            )
            return False

    async def recover_orphans(self) -> tuple[int, int]:
        async with self._lock:
            now = self.clock()
            recovered = failed = 0
            for task in list(self._tasks.values()):
                if task.status != TaskStatus.PROCESSING:
                    continue
                if task.leased_until is None or task.leased_until >= now:
                    continue

                if task.retry_count < task.max_retries:
                    self._update(
                        task,
                        status=TaskStatus.PENDING,
                        retry_count=task.retry_count + 1,
                        scheduled_for=now,
                        worker_id=None,
                        leased_until=None,
                        error_message="Lease expired",
                    )
                    recovered += 1
                else:
                    self._update(
                        task,
                        status=TaskStatus.FAILED,
                        failed_at=now,
                        leased_until=None,
                        error_message="Lease expired, retries exhausted",
                    )
                    failed += 1

            return recovered, failed

    async def cleanup(self, days_to_keep: int = 7) -> int:
        async with self._lock:
            cutoff = self.clock() - timedelta(days=days_to_keep)
            expired = [
                t.id
                for t in self._tasks.values()
                if t.status == TaskStatus.COMPLETED
                and t.completed_at is not None
                and t.completed_at < cutoff
            ]
            for task_id in expired:
                del self._tasks[task_id]
            return len(expired)

    async def cancel(self, task_id: str) -> bool:
        async with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.status not in (
                TaskStatus.PENDING,
                TaskStatus.PROCESSING,
            ):
                return False
            self._update(task, status=TaskStatus.CANCELLED, leased_until=None)
            return True

    async def get(self, task_id: str) -> TaskQueueEntry | None:
        async with self._lock:
            return self._tasks.get(task_id)

    async def run_cancelled(self, run_id: str, chain_slug: str) -> bool:
        async with self._lock:
            tasks = [
                t
                for t in self._tasks.values()
                if t.payload.get("chain") == chain_slug
                and (t.payload.get("run_id") or f"run_{t.id}") == run_id
            ]
            if not tasks:
                return False
            # Stable sort: ties keep scheduling order
            latest = sorted(tasks, key=lambda t: t.created_at)[-1]
            return latest.status == TaskStatus.CANCELLED

    async def renew_lease(self, task_id: str, worker_id: str, lease_minutes: int = 5) -> bool:
        async with self._lock:
            task = self._tasks.get(task_id)
            if not self._held(task, worker_id):
                return False
            self._update(
                task,
                leased_until=self.clock() + timedelta(minutes=lease_minutes),
            )
            return True
