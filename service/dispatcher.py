import asyncio
import logging

from ingest.archive import ArchiveEntry, expand_archive
from ingest.chains.discovery import detect_file_type
from ingest.models import FetchedFile
from service.db.base import TaskLedger
from service.messages import ExpandMessage, ParseMessage
from service.queue.base import QueueTransport
from service.storage import ContentStore, compute_sha256, storage_key

logger = logging.getLogger(__name__)


class ArchiveDispatcher:
    """
    Turns fetched files into queue work.

    Plain files become a single `parse` message. ZIP archives become an
    `expand` message, and expanding one fans it out into one `parse`
    message per archive entry, enqueued as a single batch. With a task
    ledger, archives of cancelled runs are not fanned out.
    """

    def __init__(
        self,
        store: ContentStore,
        queue: QueueTransport,
        ledger: TaskLedger | None = None,
    ):
        self.store = store
        self.queue = queue
        self.ledger = ledger

    async def run_cancelled(self, run_id: str, chain_slug: str) -> bool:
        if self.ledger is None:
            return False
        return await self.ledger.run_cancelled(run_id, chain_slug)

    async def handle_fetched(
        self,
        run_id: str,
        chain_slug: str,
        fetched: FetchedFile,
    ) -> ExpandMessage | ParseMessage | None:
        """
        Store a downloaded file and enqueue the next step for it.

        Returns:
            The enqueued message, or None if identical content was already
            stored under the same key for this run.
        """
        file = fetched.discovered
        key = storage_key(run_id, chain_slug, file.filename)

        existing = await self.store.head(key)
        if existing and existing.sha256 == fetched.hash:
            logger.info(f"Skipped duplicate: {file.filename}")
            return None

        await self.store.put(
            key,
            fetched.content,
            sha256=fetched.hash,
            custom_metadata={
                "filename": file.filename,
                "type": file.type,
                "url": file.url,
            },
        )
        logger.info(f"Stored {file.filename} ({len(fetched.content)} bytes)")

        if file.type == "zip":
            msg = ExpandMessage(
                run_id=run_id,
                chain_slug=chain_slug,
                storage_key=key,
                file=file,
            )
        else:
            msg = ParseMessage(
                run_id=run_id,
                chain_slug=chain_slug,
                storage_key=key,
                file=file,
                hash=fetched.hash,
            )

        await self.queue.send(msg)
        logger.debug(f"Enqueued {msg.type} message for {file.filename}")
        return msg

    async def _store_entry(self, msg: ExpandMessage, entry: ArchiveEntry) -> ParseMessage:
        inner_type = detect_file_type(entry.basename)
        inner_hash = compute_sha256(entry.content)
        key = storage_key(
            msg.run_id,
            msg.chain_slug,
            f"expanded/{msg.file.filename}/{entry.name}",
        )

        await self.store.put(
            key,
            entry.content,
            sha256=inner_hash,
            custom_metadata={
                "parentFilename": msg.file.filename,
                "innerFilename": entry.name,
                "type": inner_type,
            },
        )

        return ParseMessage(
            run_id=msg.run_id,
            chain_slug=msg.chain_slug,
            storage_key=key,
            file=msg.file.model_copy(
                update={
                    "filename": entry.name,
                    "type": inner_type,
                    "size": len(entry.content),
                }
            ),
            inner_filename=entry.name,
            hash=inner_hash,
        )

    async def handle_expand(self, msg: ExpandMessage) -> list[ParseMessage]:
        """
        Expand a stored ZIP archive into parse messages.

        Every meaningful entry is written back to the content store under
        `ingestion/{run}/{chain}/expanded/{archive}/{entry}` and gets one
        parse message; all messages are sent with one `send_batch` call.
        Nothing is sent if the run has been cancelled in the meantime.

        Raises:
            FileNotFoundError: If the archive is missing from the store.
            ArchiveError: If the archive can't be opened.
        """
        loaded = await self.store.get(msg.storage_key)
        if loaded is None:
            raise FileNotFoundError(f"Archive not found in storage: {msg.storage_key}")
        content, _ = loaded

        logger.info(f"Expanding {msg.file.filename}")
        entries = await asyncio.to_thread(expand_archive, content)

        messages = []
        for entry in entries:
            if detect_file_type(entry.basename) == "zip":
                logger.warning(f"Skipping nested archive {entry.name} in {msg.file.filename}")
                continue
            messages.append(await self._store_entry(msg, entry))

        if messages and await self.run_cancelled(msg.run_id, msg.chain_slug):
            logger.info(
                f"Run {msg.run_id} for {msg.chain_slug} was cancelled, "
                f"dropping {len(messages)} parse messages from {msg.file.filename}"
            )
            return []

        if messages:
            await self.queue.send_batch(messages)

        logger.info(
            f"Expanded {msg.file.filename}: {len(entries)} entries, "
            f"enqueued {len(messages)} parse messages"
        )
        return messages
