from typing import Sequence

from service.db.psql import PostgresConnection
from service.messages import decode_message, encode_message

from .base import Delivery, Message, QueueTransport


class PostgresQueue(PostgresConnection, QueueTransport):
    """
    Ingestion queue stored in the `queue_messages` table.

    Consumers claim visible rows with FOR UPDATE SKIP LOCKED and hide them
    for the visibility timeout, so concurrent workers never receive the
    same message at the same time. Dead letters are copied to the
    `<queue_name>_dlq` queue in the same table.
    """

    def __init__(
        self,
        dsn: str,
        queue_name: str = "ingestion",
        min_size: int = 2,
        max_size: int = 10,
    ):
        super().__init__(dsn, min_size=min_size, max_size=max_size)
        self.queue_name = queue_name
        self.dlq_name = f"{queue_name}_dlq"

    async def send(self, msg: Message, delay: int = 0) -> None:
        async with self._get_conn() as conn:
            await conn.execute(
                """
                INSERT INTO queue_messages (queue, body, visible_at)
                VALUES ($1, $2::jsonb, NOW() + make_interval(secs => $3))
                """,
                self.queue_name,
                encode_message(msg),
                delay,
            )

    async def _send_chunk(self, msgs: Sequence[Message]) -> None:
        async with self._atomic() as conn:
            await conn.executemany(
                """
                INSERT INTO queue_messages (queue, body)
                VALUES ($1, $2::jsonb)
                """,
                [(self.queue_name, encode_message(msg)) for msg in msgs],
            )

    async def receive(
        self,
        max_messages: int = 10,
        visibility_timeout: int = 300,
    ) -> list[Delivery]:
        async with self._atomic() as conn:
            candidates = await conn.fetch(
                """
                SELECT id FROM queue_messages
                WHERE queue = $1 AND visible_at <= NOW()
                ORDER BY visible_at
                LIMIT $2
                FOR UPDATE SKIP LOCKED
                """,
                self.queue_name,
                max_messages,
            )
            if not candidates:
                return []

            rows = await conn.fetch(
                """
                UPDATE queue_messages
                SET attempts = attempts + 1,
                    visible_at = NOW() + make_interval(secs => $2)
                WHERE id = ANY($1::text[])
                RETURNING id, body, attempts
                """,
                [row["id"] for row in candidates],
                visibility_timeout,
            )

        deliveries = []
        for row in rows:
            try:
                message = decode_message(row["body"])
            except ValueError as e:
                # Malformed bodies go straight to the DLQ
                self.logger.error(f"Dropping malformed message {row['id']}: {e}")
                await self._move_to_dlq(row["id"], f"Malformed message: {e}")
                continue
            deliveries.append(
                Delivery(id=row["id"], message=message, attempts=row["attempts"])
            )
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        async with self._get_conn() as conn:
            await conn.execute("DELETE FROM queue_messages WHERE id = $1", delivery.id)

    async def retry(self, delivery: Delivery, delay_seconds: int) -> None:
        async with self._get_conn() as conn:
            await conn.execute(
                """
                UPDATE queue_messages
                SET visible_at = NOW() + make_interval(secs => $2)
                WHERE id = $1
                """,
                delivery.id,
                delay_seconds,
            )

    async def dead_letter(self, delivery: Delivery, error: str) -> None:
        async with self._get_conn() as conn:
            await conn.execute(
                """
                INSERT INTO queue_messages (queue, body, attempts, visible_at, error)
                VALUES ($1, $2::jsonb, $3, 'infinity', $4)
                """,
                self.dlq_name,
                encode_message(delivery.message),
                delivery.attempts,
                error,
            )

    async def _move_to_dlq(self, message_id: str, error: str) -> None:
        async with self._get_conn() as conn:
            await conn.execute(
                """
                UPDATE queue_messages
                SET queue = $2, visible_at = 'infinity', error = $3
                WHERE id = $1
                """,
                message_id,
                self.dlq_name,
                error,
            )
