import asyncio
import logging

from service.db.base import TaskLedger

logger = logging.getLogger(__name__)


class OrphanSweeper:
    """Periodically recovers tasks whose worker died or stalled."""

    def __init__(self, ledger: TaskLedger, interval: float = 60):
        self.ledger = ledger
        self.interval = interval

    async def sweep_once(self) -> tuple[int, int]:
        logger.debug("Running orphaned task recovery")
        recovered, failed = await self.ledger.recover_orphans()
        if recovered or failed:
            logger.info(f"Recovered orphaned tasks: {recovered} re-queued, {failed} failed")
        return recovered, failed

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Starting task queue sweeper (interval {self.interval}s)")

        while not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Failed to recover orphaned tasks: {e}", exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Task queue sweeper stopped")
