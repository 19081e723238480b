import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Sequence

from .base import Delivery, Message, QueueTransport


@dataclass(slots=True, kw_only=True)
class _Entry:
    id: str
    message: Message
    visible_at: float
    attempts: int = 0
    error: str | None = None


class MemoryQueue(QueueTransport):
    """
    In-process queue for tests and single-process runs.

    Ordering and visibility mirror the PostgreSQL transport; nothing is
    persisted across restarts.
    """

    def __init__(self, queue_name: str = "ingestion", clock=time.monotonic):
        self.queue_name = queue_name
        self.clock = clock
        self._entries: dict[str, _Entry] = {}
        self.dead_letters: list[tuple[Message, str]] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def _add(self, msg: Message, delay: int):
        entry_id = uuid.uuid4().hex
        self._entries[entry_id] = _Entry(
            id=entry_id,
            message=msg,
            visible_at=self.clock() + delay,
        )

    async def send(self, msg: Message, delay: int = 0) -> None:
        async with self._lock:
            self._add(msg, delay)

    async def _send_chunk(self, msgs: Sequence[Message]) -> None:
        async with self._lock:
            for msg in msgs:
                self._add(msg, 0)

    async def receive(
        self,
        max_messages: int = 10,
        visibility_timeout: int = 300,
    ) -> list[Delivery]:
        async with self._lock:
            now = self.clock()
            visible = [e for e in self._entries.values() if e.visible_at <= now]
            visible.sort(key=lambda e: e.visible_at)

            deliveries = []
            for entry in visible[:max_messages]:
                entry.attempts += 1
                entry.visible_at = now + visibility_timeout
                deliveries.append(
                    Delivery(id=entry.id, message=entry.message, attempts=entry.attempts)
                )
            return deliveries

    async def ack(self, delivery: Delivery) -> None:
        async with self._lock:
            self._entries.pop(delivery.id, None)

    async def retry(self, delivery: Delivery, delay_seconds: int) -> None:
        async with self._lock:
            entry = self._entries.get(delivery.id)
            if entry is not None:
                entry.visible_at = self.clock() + delay_seconds

    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        async with self._lock:
            self.dead_letters.append((delivery.message, error))
