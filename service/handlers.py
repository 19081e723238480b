import asyncio
import datetime
import logging
from pathlib import PurePosixPath
from typing import Any, Callable

import httpx

from ingest.chains.adapter import ChainAdapter
from ingest.chains.registry import get_adapter
from ingest.fetch import FetchRetryError
from ingest.models import ParseResult
from ingest.output import RowSink
from service.db.base import TaskLedger
from service.db.models import TaskQueueEntry
from service.dispatcher import ArchiveDispatcher
from service.messages import ExpandMessage, ParseMessage
from service.storage import ContentStore

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str], ChainAdapter]

INGEST_CHAIN_TASK = "ingest_chain"


class ParseHandler:
    """Parse a stored file and write the rows to the sink."""

    def __init__(
        self,
        store: ContentStore,
        sink: RowSink,
        adapter_factory: AdapterFactory = get_adapter,
    ):
        self.store = store
        self.sink = sink
        self.adapter_factory = adapter_factory

    async def __call__(self, msg: ParseMessage) -> ParseResult:
        loaded = await self.store.get(msg.storage_key)
        if loaded is None:
            raise FileNotFoundError(f"File not found in storage: {msg.storage_key}")
        content, _ = loaded

        filename = PurePosixPath(msg.filename).name
        adapter = self.adapter_factory(msg.chain_slug)
        try:
            store = adapter.extract_store_identifier(msg.file)
            parsed = await asyncio.to_thread(adapter.parse, content, filename)
            result = adapter.validate_result(parsed)
        finally:
            adapter.close()

        logger.info(
            f"Parsed {filename} for {msg.chain_slug}: "
            f"{result.valid_rows}/{result.total_rows} valid rows"
        )
        if result.errors:
            logger.warning(f"{len(result.errors)} parse errors in {filename}")

        written = await asyncio.to_thread(
            self.sink.write,
            msg.run_id,
            msg.chain_slug,
            msg.storage_key,
            result,
            file_hash=msg.hash,
            dedup_key="|".join(msg.dedup_key),
            store=store,
        )
        if not written:
            logger.info(f"{filename} was already written for run {msg.run_id}")
        return result


class ExpandHandler:
    def __init__(self, dispatcher: ArchiveDispatcher):
        self.dispatcher = dispatcher

    async def __call__(self, msg: ExpandMessage) -> list[ParseMessage]:
        return await self.dispatcher.handle_expand(msg)


class IngestChainHandler:
    """
    Task handler that discovers and downloads a chain's price files.

    Each downloaded file is stored and handed to the queue as an `expand`
    or `parse` message. The lease is renewed after every file; once the
    task is no longer held (cancelled, or the lease was lost) no further
    work is enqueued for the run.

    Task payload: `{"chain": slug, "date": "YYYY-MM-DD" | None, "run_id": str}`
    """

    def __init__(
        self,
        ledger: TaskLedger,
        dispatcher: ArchiveDispatcher,
        adapter_factory: AdapterFactory = get_adapter,
        lease_minutes: int = 5,
    ):
        self.ledger = ledger
        self.dispatcher = dispatcher
        self.adapter_factory = adapter_factory
        self.lease_minutes = lease_minutes

    async def _still_held(self, task: TaskQueueEntry) -> bool:
        if task.worker_id is None:
            return True
        return await self.ledger.renew_lease(task.id, task.worker_id, self.lease_minutes)

    async def __call__(self, task: TaskQueueEntry) -> dict[str, Any]:
        chain = task.payload["chain"]
        run_id = task.payload.get("run_id") or f"run_{task.id}"
        date = None
        if task.payload.get("date"):
            date = datetime.date.fromisoformat(task.payload["date"])

        stats = {
            "run_id": run_id,
            "files": 0,
            "enqueued": 0,
            "skipped": 0,
            "failed": 0,
            "cancelled": False,
        }

        adapter = self.adapter_factory(chain)
        try:
            files = await asyncio.to_thread(adapter.discover, date)
            stats["files"] = len(files)
            logger.info(f"Found {len(files)} files for {adapter.name}")

            for file in files:
                try:
                    fetched = await asyncio.to_thread(adapter.fetch, file)
                except (FetchRetryError, httpx.HTTPError, OSError) as e:
                    logger.error(f"Error downloading {file.url}: {e}", exc_info=True)
                    stats["failed"] += 1
                    continue

                if not await self._still_held(task):
                    logger.info(f"Task {task.id} is no longer held, not enqueueing more work")
                    stats["cancelled"] = True
                    break

                msg = await self.dispatcher.handle_fetched(run_id, chain, fetched)
                if msg is None:
                    stats["skipped"] += 1
                else:
                    stats["enqueued"] += 1
        finally:
            adapter.close()

        if stats["failed"] and not (stats["enqueued"] or stats["skipped"] or stats["cancelled"]):
            raise RuntimeError(f"All {stats['failed']} downloads failed for {chain}")

        return stats
