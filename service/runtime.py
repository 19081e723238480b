import asyncio
import logging
from typing import Any, Awaitable, Callable

from service.messages import ParseMessage
from service.queue.base import Delivery, Message, QueueTransport

logger = logging.getLogger(__name__)

MAX_REDELIVERY_DELAY = 3600

MessageHandler = Callable[[Message], Awaitable[Any]]
ExhaustedCallback = Callable[[ParseMessage, str], Awaitable[None]]


def redelivery_delay(attempt: int) -> int:
    """
    Seconds to wait before redelivering a message that failed.

    Doubles from one minute on each attempt, capped at one hour:
    60, 120, 240, 480, 960, 1920, 3600, 3600, ...

    Args:
        attempt: The 1-based delivery attempt that just failed.
    """
    return min(60 * 2 ** (attempt - 1), MAX_REDELIVERY_DELAY)


class QueueWorker:
    """
    Consumes ingestion messages and dispatches them to handlers by type.

    Deliveries in a batch run concurrently, at most `concurrency` at a
    time, and each one is settled on its own:

    * success: the message is acked
    * failure with attempts left: redelivered after `redelivery_delay()`
    * failure on the last attempt: dead-lettered, then acked; for parse
      messages `on_exhausted` is also called (e.g. to mark the run failed)
    """

    def __init__(
        self,
        transport: QueueTransport,
        handlers: dict[str, MessageHandler],
        concurrency: int = 5,
        max_retries: int = 3,
        on_exhausted: ExhaustedCallback | None = None,
        visibility_timeout: int = 300,
    ):
        self.transport = transport
        self.handlers = handlers
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.on_exhausted = on_exhausted
        self.visibility_timeout = visibility_timeout
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _handle(self, msg: Message) -> None:
        handler = self.handlers.get(msg.type)
        if handler is None:
            raise ValueError(f"Unknown message type: {msg.type}")
        await handler(msg)

    async def _settle_failure(self, delivery: Delivery, error: Exception) -> None:
        msg = delivery.message
        error_message = str(error) or error.__class__.__name__
        logger.error(
            f"Failed {msg.type} message {msg.id} "
            f"(attempt {delivery.attempts}/{self.max_retries}): {error_message}",
            exc_info=error,
        )

        if delivery.attempts < self.max_retries:
            delay = redelivery_delay(delivery.attempts)
            await self.transport.retry(delivery, delay)
            logger.info(f"Retrying in {delay}s: {msg.id}")
            return

        if self.on_exhausted is not None and isinstance(msg, ParseMessage):
            try:
                await self.on_exhausted(
                    msg, f"Failed after {delivery.attempts} attempts: {error_message}"
                )
            except Exception as e:
                logger.error(f"Failed to mark run {msg.run_id} as failed: {e}", exc_info=True)

        await self.transport.dead_letter(delivery, error_message)
        await self.transport.ack(delivery)
        logger.warning(f"Sent to DLQ: {msg.id}")

    async def process_delivery(self, delivery: Delivery) -> bool:
        """
        Run the handler for one delivery and settle it.

        Never raises; problems talking to the transport are logged and the
        message is left to reappear after its visibility timeout.

        Returns:
            True if the handler succeeded.
        """
        msg = delivery.message
        async with self._semaphore:
            logger.debug(f"Processing {msg.type} message: {msg.id}")
            try:
                await self._handle(msg)
            except Exception as e:
                try:
                    await self._settle_failure(delivery, e)
                except Exception as settle_error:
                    logger.error(
                        f"Could not settle message {msg.id}: {settle_error}",
                        exc_info=True,
                    )
                return False

            try:
                await self.transport.ack(delivery)
            except Exception as e:
                logger.error(f"Could not ack message {msg.id}: {e}", exc_info=True)
            logger.debug(f"Completed {msg.type} message: {msg.id}")
            return True

    async def process_batch(self, deliveries: list[Delivery]) -> list[bool]:
        """Process deliveries concurrently; returns per-delivery success."""
        return await asyncio.gather(*(self.process_delivery(d) for d in deliveries))

    async def run_once(self) -> int:
        """
        Receive and process one batch.

        Returns:
            Number of deliveries processed.
        """
        deliveries = await self.transport.receive(
            max_messages=self.concurrency * 2,
            visibility_timeout=self.visibility_timeout,
        )
        if deliveries:
            logger.info(f"Processing batch of {len(deliveries)} messages")
            await self.process_batch(deliveries)
        return len(deliveries)

    async def run(
        self,
        poll_interval: float = 5.0,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Poll the transport until `stop_event` is set."""
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Queue worker started (concurrency {self.concurrency})")

        while not stop_event.is_set():
            try:
                processed = await self.run_once()
            except Exception as e:
                logger.error(f"Error receiving messages: {e}", exc_info=True)
                processed = 0

            if processed == 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=poll_interval)
                except asyncio.TimeoutError:
                    pass

        logger.info("Queue worker stopped")
