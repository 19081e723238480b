from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

from service.messages import ExpandMessage, ParseMessage

Message = ExpandMessage | ParseMessage

BATCH_LIMIT = 100


@dataclass(frozen=True, slots=True, kw_only=True)
class Delivery:
    """A received message together with its delivery bookkeeping."""

    id: str
    message: Message
    attempts: int  # 1 on first delivery


class QueueTransport(ABC):
    """Base abstract class for ingestion queue implementations."""

    async def connect(self) -> None:
        """Initialize the transport."""
        pass

    async def create_tables(self) -> None:
        """Create backing storage if it doesn't exist."""
        pass

    async def close(self) -> None:
        """Release any resources held by the transport."""
        pass

    @abstractmethod
    async def send(self, msg: Message, delay: int = 0) -> None:
        """
        Enqueue a single message.

        Args:
            msg: Message to send.
            delay: Seconds before the message becomes visible.
        """
        pass

    @abstractmethod
    async def _send_chunk(self, msgs: Sequence[Message]) -> None:
        pass

    async def send_batch(self, msgs: Sequence[Message]) -> None:
        """
        Enqueue many messages, in chunks of at most BATCH_LIMIT.
        """
        for i in range(0, len(msgs), BATCH_LIMIT):
            await self._send_chunk(msgs[i : i + BATCH_LIMIT])

    @abstractmethod
    async def receive(
        self,
        max_messages: int = 10,
        visibility_timeout: int = 300,
    ) -> list[Delivery]:
        """
        Receive up to `max_messages` visible messages.

        Received messages stay hidden from other consumers for
        `visibility_timeout` seconds, after which they are redelivered
        unless acked or retried.

        Returns:
            List of deliveries, with `attempts` incremented.
        """
        pass

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        """Remove a delivered message from the queue."""
        pass

    @abstractmethod
    async def retry(self, delivery: Delivery, delay_seconds: int) -> None:
        """Make a delivered message visible again after a delay."""
        pass

    @abstractmethod
    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        """Copy a delivered message to the dead-letter queue."""
        pass

    @staticmethod
    def from_url(url: str, queue_name: str = "ingestion", **kwargs: Any) -> "QueueTransport":
        """
        Get a queue transport for the given URL.

        Raises:
            ValueError: If the queue type is not supported.
        """
        if url.startswith("memory"):
            from service.queue.memory import MemoryQueue

            return MemoryQueue(queue_name=queue_name)

        if url.startswith("postgresql"):
            from service.queue.psql import PostgresQueue

            return PostgresQueue(dsn=url, queue_name=queue_name, **kwargs)

        raise ValueError(f"Unsupported queue: {url}")
