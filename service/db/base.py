from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from .models import TaskQueueEntry


class TaskLedger(ABC):
    """
    Base abstract class for task ledger implementations.

    The ledger is a persisted, lease-based job queue shared by any number
    of worker processes. Every operation is safe to call concurrently;
    two workers never hold the same task at the same time.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Initialize the database connection."""
        pass

    @abstractmethod
    async def create_tables(self) -> None:
        """Create all necessary tables and indices if they don't exist."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close all database connections."""
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """Check that the backing store is reachable."""
        pass

    @abstractmethod
    async def schedule(
        self,
        task_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        scheduled_for: datetime | None = None,
        max_retries: int = 3,
    ) -> str:
        """
        Add a new pending task.

        Args:
            task_type: Type of the task, used to pick a handler.
            payload: JSON-serializable task arguments.
            priority: 0 (lowest) to 10 (highest).
            scheduled_for: Earliest time the task may run (default: now).
            max_retries: How many times a failed task is re-queued.

        Returns:
            The ID of the created task.

        Raises:
            ValueError: If priority is outside 0..10.
        """
        pass

    @abstractmethod
    async def claim(
        self,
        worker_id: str,
        task_types: list[str] | None = None,
        max_tasks: int = 1,
        lease_minutes: int = 5,
    ) -> list[TaskQueueEntry]:
        """
        Claim up to `max_tasks` due pending tasks for a worker.

        Tasks are taken by priority (highest first), then by schedule
        (oldest first). Claimed tasks move to `processing` with a lease
        of `lease_minutes`.

        Args:
            worker_id: Identity of the claiming worker.
            task_types: Only claim these task types (default: any).
            max_tasks: Maximum number of tasks to claim.
            lease_minutes: Lease duration.

        Returns:
            The claimed tasks, possibly empty.
        """
        pass

    @abstractmethod
    async def complete(
        self,
        task_id: str,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """
        Mark a processing task as completed.

        With `worker_id`, only the worker currently holding the task may
        complete it; a task that was recovered and re-claimed elsewhere is
        left alone.

        Returns:
            True if the task was completed, False if it wasn't processing
            (or is held by another worker).
        """
        pass

    @abstractmethod
    async def fail(
        self,
        task_id: str,
        message: str,
        retry: bool = True,
        worker_id: str | None = None,
    ) -> bool:
        """
        Record a task failure.

        If `retry` is set and the task has retries left, it goes back to
        `pending` with `retry_count` incremented and is scheduled
        `retry_count * 60` seconds from now (using the count before the
        increment). Otherwise it's marked `failed`. With `worker_id`, a
        task held by another worker is not touched.

        Returns:
            True if the task was re-queued, False if it was marked failed,
            doesn't exist or isn't held by `worker_id`.
        """
        pass

    @abstractmethod
    async def recover_orphans(self) -> tuple[int, int]:
        """
        Recover processing tasks whose lease has expired.

        Tasks with retries left are re-queued with `retry_count`
        incremented; the rest are marked failed.

        Returns:
            Tuple of (recovered, failed) counts.
        """
        pass

    @abstractmethod
    async def cleanup(self, days_to_keep: int = 7) -> int:
        """
        Delete completed tasks older than `days_to_keep` days.

        Returns:
            The number of deleted tasks.
        """
        pass

    @abstractmethod
    async def cancel(self, task_id: str) -> bool:
        """
        Cancel a pending or processing task.

        A processing task keeps running; its worker sees the cancellation
        before enqueueing follow-up work, and `complete()` reports False.

        Returns:
            True if the task was cancelled, False if it had already finished.
        """
        pass

    @abstractmethod
    async def get(self, task_id: str) -> TaskQueueEntry | None:
        """Get a task by ID."""
        pass

    @abstractmethod
    async def run_cancelled(self, run_id: str, chain_slug: str) -> bool:
        """
        Check whether the latest task for a run and chain was cancelled.

        Tasks are matched on their `run_id` and `chain` payload fields; a
        task without a `run_id` belongs to run `run_{task id}`.
        """
        pass

    @abstractmethod
    async def renew_lease(self, task_id: str, worker_id: str, lease_minutes: int = 5) -> bool:
        """
        Extend the lease on a task held by `worker_id`.

        Returns:
            True if the lease was extended, False if the worker no longer
            holds the task.
        """
        pass

    @staticmethod
    def from_url(url: str, **kwargs: Any) -> "TaskLedger":
        """
        Get the task ledger for the given URL.

        Returns:
            An instance of the TaskLedger subclass based on the DSN.

        Raises:
            ValueError: If the database type is not supported.
        """

        if url.startswith("memory"):
            from service.db.memory import MemoryTaskLedger

            return MemoryTaskLedger()

        from service.db.psql import PostgresTaskLedger

        if url.startswith("postgresql"):
            return PostgresTaskLedger(
                dsn=url,
                **kwargs,
            )
        else:
            raise ValueError(f"Unsupported database: {url}")
