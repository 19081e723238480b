from contextlib import asynccontextmanager
import asyncpg
from typing import AsyncIterator, Any
import json
import logging
import os
from datetime import datetime
from .base import TaskLedger
from .models import TaskQueueEntry, TaskStatus

SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "psql.sql")


class PostgresConnection:
    """Shared asyncpg pool handling for PostgreSQL-backed components."""

    def __init__(self, dsn: str, min_size: int = 10, max_size: int = 30):
        """Initialize the PostgreSQL database connection pool.

        Args:
            dsn: Database connection string
            min_size: Minimum number of connections in the pool
            max_size: Maximum number of connections in the pool
        """
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.pool = None
        self.logger = logging.getLogger(__name__)

    async def connect(self) -> None:
        self.pool = await asyncpg.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
        )

    @asynccontextmanager
    async def _get_conn(self) -> AsyncIterator[asyncpg.Connection]:
        """Context manager to acquire a connection from the pool."""
        if not self.pool:
            raise RuntimeError("Database pool is not initialized")
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def _atomic(self) -> AsyncIterator[asyncpg.Connection]:
        """Context manager for atomic transactions."""
        async with self._get_conn() as conn:
            async with conn.transaction():
                yield conn

    async def close(self) -> None:
        """Close all database connections."""
        if self.pool:
            await self.pool.close()

    async def create_tables(self) -> None:
        try:
            with open(SCHEMA_PATH, "r") as f:
                schema_sql = f.read()

            async with self._get_conn() as conn:
                await conn.execute(schema_sql)
                self.logger.info("Database tables created successfully")
        except Exception as e:
            self.logger.error(f"Error creating tables: {e}")
            raise

    @staticmethod
    def _rowcount(result: str) -> int:
        # Command tags look like "UPDATE 3" or "DELETE 0"
        _, rowcount = result.split(" ")
        return int(rowcount)


def _json_or_none(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    return json.loads(value)


class PostgresTaskLedger(PostgresConnection, TaskLedger):
    """PostgreSQL implementation of the task ledger using asyncpg."""

    def _to_entry(self, row: Any) -> TaskQueueEntry:
        data = dict(row)
        data["payload"] = _json_or_none(data["payload"])
        data["result"] = _json_or_none(data.get("result"))
        data["status"] = TaskStatus(data["status"])
        return TaskQueueEntry(**data)

    async def ping(self) -> bool:
        async with self._get_conn() as conn:
            return await conn.fetchval("SELECT 1") == 1

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

        async with self._get_conn() as conn:
            task_id = await conn.fetchval(
                """
                INSERT INTO task_queue (task_type, payload, priority, scheduled_for, max_retries)
                VALUES ($1, $2::jsonb, $3, COALESCE($4, NOW()), $5)
                RETURNING id
                """,
                task_type,
                json.dumps(payload),
                priority,
                scheduled_for,
                max_retries,
            )
            self.logger.debug(f"Scheduled {task_type} task {task_id}")
            return task_id

    async def claim(
        self,
        worker_id: str,
        task_types: list[str] | None = None,
        max_tasks: int = 1,
        lease_minutes: int = 5,
    ) -> list[TaskQueueEntry]:
        async with self._atomic() as conn:
            candidates = await conn.fetch(
                """
                SELECT id FROM task_queue
                WHERE status = 'pending'
                    AND scheduled_for <= NOW()
                    AND ($1::text[] IS NULL OR task_type = ANY($1::text[]))
                ORDER BY priority DESC, scheduled_for ASC
                LIMIT $2
                FOR UPDATE SKIP LOCKED
                """,
                task_types,
                max_tasks,
            )
            if not candidates:
                return []

            rows = await conn.fetch(
                """
                UPDATE task_queue
                SET status = 'processing',
                    worker_id = $2,
                    started_at = NOW(),
                    leased_until = NOW() + make_interval(mins => $3),
                    updated_at = NOW()
                WHERE id = ANY($1::text[])
                RETURNING *
                """,
                [row["id"] for row in candidates],
                worker_id,
                lease_minutes,
            )

        tasks = [self._to_entry(row) for row in rows]
        tasks.sort(key=lambda t: (-t.priority, t.scheduled_for))
        return tasks

    async def complete(
        self,
        task_id: str,
        result: dict[str, Any] | None = None,
        worker_id: str | None = None,
    ) -> bool:
        async with self._get_conn() as conn:
            status = await conn.execute(
                """
                UPDATE task_queue
                SET status = 'completed',
                    completed_at = NOW(),
                    leased_until = NULL,
                    result = $2::jsonb,
                    updated_at = NOW()
                WHERE id = $1
                    AND status = 'processing'
                    AND ($3::text IS NULL OR worker_id = $3)
                """,
                task_id,
                json.dumps(result) if result is not None else None,
                worker_id,
            )
            return self._rowcount(status) == 1

    async def fail(
        self,
        task_id: str,
        message: str,
        retry: bool = True,
        worker_id: str | None = None,
    ) -> bool:
        async with self._atomic() as conn:
            row = await conn.fetchrow(
                """
                SELECT retry_count, max_retries FROM task_queue
                WHERE id = $1
                    AND status = 'processing'
                    AND ($2::text IS NULL OR worker_id = $2)
                FOR UPDATE
                """,
                task_id,
                worker_id,
            )
            if row is None:
                return False

            if retry and row["retry_count"] < row["max_retries"]:
                # SET expressions see the pre-increment retry_count
                await conn.execute(
                    """
                    UPDATE task_queue
                    SET status = 'pending',
                        retry_count = retry_count + 1,
                        scheduled_for = NOW() + make_interval(secs => retry_count * 60),
                        worker_id = NULL,
                        leased_until = NULL,
                        error_message = $2,
                        updated_at = NOW()
                    WHERE id = $1
                    """,
                    task_id,
                    message,
                )
                return True

            await conn.execute(
                """
                UPDATE task_queue
                SET status = 'failed',
                    failed_at = NOW(),
                    leased_until = NULL,
                    error_message = $2,
                    updated_at = NOW()
                WHERE id = $1
                """,
                task_id,
                message,
            )
            return False

    async def recover_orphans(self) -> tuple[int, int]:
        async with self._atomic() as conn:
            rows = await conn.fetch(
                """
                SELECT id, retry_count, max_retries FROM task_queue
                WHERE status = 'processing' AND leased_until < NOW()
                FOR UPDATE SKIP LOCKED
                """
            )
            recover_ids = [r["id"] for r in rows if r["retry_count"] < r["max_retries"]]
            fail_ids = [r["id"] for r in rows if r["retry_count"] >= r["max_retries"]]

            if recover_ids:
                await conn.execute(
                    """
                    UPDATE task_queue
                    SET status = 'pending',
                        retry_count = retry_count + 1,
                        scheduled_for = NOW(),
                        worker_id = NULL,
                        leased_until = NULL,
                        error_message = 'Lease expired',
                        updated_at = NOW()
                    WHERE id = ANY($1::text[])
                    """,
                    recover_ids,
                )
            if fail_ids:
                await conn.execute(
                    """
                    UPDATE task_queue
                    SET status = 'failed',
                        failed_at = NOW(),
                        leased_until = NULL,
                        error_message = 'Lease expired, retries exhausted',
                        updated_at = NOW()
                    WHERE id = ANY($1::text[])
                    """,
                    fail_ids,
                )

        return len(recover_ids), len(fail_ids)

    async def cleanup(self, days_to_keep: int = 7) -> int:
        async with self._get_conn() as conn:
            status = await conn.execute(
                """
                DELETE FROM task_queue
                WHERE status = 'completed'
                    AND completed_at < NOW() - make_interval(days => $1)
                """,
                days_to_keep,
            )
            return self._rowcount(status)

    async def cancel(self, task_id: str) -> bool:
        async with self._get_conn() as conn:
            status = await conn.execute(
                """
                UPDATE task_queue
                SET status = 'cancelled',
                    leased_until = NULL,
                    updated_at = NOW()
                WHERE id = $1 AND status IN ('pending', 'processing')
                """,
                task_id,
            )
            return self._rowcount(status) == 1

    async def get(self, task_id: str) -> TaskQueueEntry | None:
        async with self._get_conn() as conn:
            row = await conn.fetchrow("SELECT * FROM task_queue WHERE id = $1", task_id)
            return self._to_entry(row) if row else None

    async def run_cancelled(self, run_id: str, chain_slug: str) -> bool:
        async with self._get_conn() as conn:
            status = await conn.fetchval(
                """
                SELECT status FROM task_queue
                WHERE payload->>'chain' = $2
                    AND COALESCE(payload->>'run_id', 'run_' || id) = $1
                ORDER BY created_at DESC
                LIMIT 1
                """,
                run_id,
                chain_slug,
            )
            return status == TaskStatus.CANCELLED.value

    async def renew_lease(self, task_id: str, worker_id: str, lease_minutes: int = 5) -> bool:
        async with self._get_conn() as conn:
            status = await conn.execute(
                """
                UPDATE task_queue
                SET leased_until = NOW() + make_interval(mins => $3),
                    updated_at = NOW()
                WHERE id = $1 AND worker_id = $2 AND status = 'processing'
                """,
                task_id,
                worker_id,
                lease_minutes,
            )
            return self._rowcount(status) == 1
