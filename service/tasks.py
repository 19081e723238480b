import asyncio
import logging
from typing import Any, Awaitable, Callable

from service.db.base import TaskLedger
from service.db.models import TaskQueueEntry

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskQueueEntry], Awaitable[Any]]


class TaskRunner:
    """
    Claims tasks from the ledger and runs them.

    A task whose handler returns is completed (a dict return value is
    stored as the task result); a task whose handler raises is failed
    with retry. Tasks of an unknown type are failed without retry.
    """

    def __init__(
        self,
        ledger: TaskLedger,
        handlers: dict[str, TaskHandler],
        worker_id: str,
        task_types: list[str] | None = None,
        max_tasks: int = 1,
        lease_minutes: int = 5,
    ):
        self.ledger = ledger
        self.handlers = handlers
        self.worker_id = worker_id
        self.task_types = task_types
        self.max_tasks = max_tasks
        self.lease_minutes = lease_minutes

    async def execute(self, task: TaskQueueEntry) -> bool:
        """
        Run one claimed task and record the outcome in the ledger.

        Returns:
            True if the task completed.
        """
        handler = self.handlers.get(task.task_type)
        if handler is None:
            logger.error(f"No handler for task type: {task.task_type}")
            await self.ledger.fail(
                task.id,
                f"No handler for task type: {task.task_type}",
                retry=False,
                worker_id=self.worker_id,
            )
            return False

        logger.info(f"Processing task {task.id} (type: {task.task_type})")
        try:
            result = await handler(task)
        except Exception as e:
            logger.error(f"Task {task.id} failed: {e}", exc_info=True)
            requeued = await self.ledger.fail(
                task.id, str(e) or e.__class__.__name__, worker_id=self.worker_id
            )
            if requeued:
                logger.info(f"Task {task.id} re-queued for retry")
            return False

        completed = await self.ledger.complete(
            task.id,
            result if isinstance(result, dict) else None,
            worker_id=self.worker_id,
        )
        if completed:
            logger.info(f"Completed task {task.id}")
        else:
            logger.warning(f"Task {task.id} finished but was cancelled or lost its lease")
        return completed

    async def run_once(self) -> int:
        """
        Claim and run one batch of tasks.

        Returns:
            Number of tasks claimed.
        """
        tasks = await self.ledger.claim(
            self.worker_id,
            task_types=self.task_types,
            max_tasks=self.max_tasks,
            lease_minutes=self.lease_minutes,
        )
        if tasks:
            logger.info(f"Worker {self.worker_id} claimed {len(tasks)} tasks")
        for task in tasks:
            await self.execute(task)
        return len(tasks)

    async def run(
        self,
        poll_interval: float = 5.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Task runner {self.worker_id} started")

        while not stop_event.is_set():
            try:
                claimed = await self.run_once()
            except Exception as e:
                logger.error(f"Error polling tasks: {e}", exc_info=True)
                claimed = 0

            if claimed == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info(f"Task runner {self.worker_id} stopped")
