"""Tests for task and message handlers, the task runner and the sweeper."""

import csv
import datetime

import httpx
import pytest

from ingest.chains.registry import get_adapter
from ingest.fetch import FetchRetryError, compute_sha256
from ingest.models import DiscoveredFile, FetchedFile, StoreIdentifier
from ingest.output import CsvRowSink, RowSink
from service.db.models import TaskStatus
from service.dispatcher import ArchiveDispatcher
from service.handlers import (
    INGEST_CHAIN_TASK,
    ExpandHandler,
    IngestChainHandler,
    ParseHandler,
)
from service.messages import ParseMessage
from service.runtime import QueueWorker
from service.sweeper import OrphanSweeper
from service.tasks import TaskRunner

KONZUM_CSV = (
    "NAZIV PROIZVODA,MALOPRODAJNA CIJENA,BARKOD\n"
    'Mlijeko,"1,29",3850102\n'
    'Kruh,"0,99",3850103\n'
).encode("utf-8")


class RecordingSink(RowSink):
    def __init__(self):
        self.writes = []
        self.write_kwargs = []
        self.failures = []

    def write(self, run_id, chain_slug, file_key, result, **kwargs):
        self.writes.append((run_id, chain_slug, file_key, result))
        self.write_kwargs.append(kwargs)
        return True

    def write_failure(self, run_id, chain_slug, file_key, message):
        self.failures.append((run_id, chain_slug, file_key, message))


class FakeAdapter:
    """Stands in for a chain adapter with canned files and downloads."""

    def __init__(self, files: dict[str, bytes | Exception]):
        self.slug = "konzum"
        self.name = "Konzum"
        self.files = files
        self.discover_dates = []
        self.closed = False

    def discover(self, date=None):
        self.discover_dates.append(date)
        return [
            DiscoveredFile(
                url=f"https://example.com/{name}",
                filename=name,
                type="zip" if name.endswith(".zip") else "csv",
            )
            for name in self.files
        ]

    def fetch(self, file):
        content = self.files[file.filename]
        if isinstance(content, Exception):
            raise content
        return FetchedFile(discovered=file, content=content, hash=compute_sha256(content))

    def close(self):
        self.closed = True


class TestParseHandler:
    """Tests for ParseHandler."""

    @pytest.mark.asyncio
    async def test_parses_stored_file(self, store) -> None:
        """Test that a stored file is parsed and written to the sink."""
        key = "ingestion/run_1/konzum/Konzum_0604.csv"
        await store.put(key, KONZUM_CSV)
        sink = RecordingSink()
        handler = ParseHandler(store, sink)

        msg = ParseMessage(
            run_id="run_1",
            chain_slug="konzum",
            storage_key=key,
            file=DiscoveredFile(
                url="https://example.com/Konzum_0604.csv",
                filename="Konzum_0604.csv",
                type="csv",
            ),
            hash=compute_sha256(KONZUM_CSV),
        )
        result = await handler(msg)

        assert result.valid_rows == 2
        assert result.rows[0].price_cents == 129
        assert len(sink.writes) == 1
        run_id, chain_slug, file_key, written = sink.writes[0]
        assert (run_id, chain_slug, file_key) == ("run_1", "konzum", key)
        assert written is result
        assert sink.write_kwargs[0] == {
            "file_hash": compute_sha256(KONZUM_CSV),
            "dedup_key": f"run_1|{key}",
            "store": StoreIdentifier(type="filename_code", value="0604"),
        }

    @pytest.mark.asyncio
    async def test_redelivered_message_is_written_once(self, store, tmp_path) -> None:
        """Test that parsing the same message twice doesn't duplicate prices."""
        key = "ingestion/run_1/konzum/expanded/cijene.zip/Konzum_0604.csv"
        await store.put(key, KONZUM_CSV)
        sink = CsvRowSink(tmp_path / "output")
        handler = ParseHandler(store, sink)
        msg = ParseMessage(
            run_id="run_1",
            chain_slug="konzum",
            storage_key=key,
            file=DiscoveredFile(
                url="https://example.com/cijene.zip",
                filename="Konzum_0604.csv",
                type="csv",
            ),
            inner_filename="Konzum_0604.csv",
            hash=compute_sha256(KONZUM_CSV),
        )

        await handler(msg)
        await handler(msg)

        path = sink.chain_path("run_1", "konzum")
        with open(path / "prices.csv", newline="", encoding="utf-8") as f:
            prices = list(csv.DictReader(f))
        assert [p["price"] for p in prices] == ["1.29", "0.99"]
        assert {p["store_id"] for p in prices} == {"0604"}

        with open(path / "files.csv", newline="", encoding="utf-8") as f:
            files = list(csv.DictReader(f))
        assert len(files) == 1
        assert files[0]["dedup_key"] == f"run_1|Konzum_0604.csv|{msg.hash}"
        assert files[0]["hash"] == msg.hash
        assert files[0]["store_id"] == "0604"
        assert files[0]["store_id_type"] == "filename_code"
        assert files[0]["rows"] == "2"

    @pytest.mark.asyncio
    async def test_invalid_rows_are_not_written(self, store) -> None:
        """Test that rows failing validation are dropped before the sink."""
        content = (
            "NAZIV PROIZVODA,MALOPRODAJNA CIJENA,BARKOD\n"
            'Mlijeko,"1,29",3850102\n'
            'Kruh,"0,00",3850103\n'
        ).encode("utf-8")
        key = "ingestion/run_1/konzum/Konzum_0604.csv"
        await store.put(key, content)
        sink = RecordingSink()

        msg = ParseMessage(
            run_id="run_1",
            chain_slug="konzum",
            storage_key=key,
            file=DiscoveredFile(
                url="https://example.com/Konzum_0604.csv",
                filename="Konzum_0604.csv",
                type="csv",
            ),
            hash=compute_sha256(content),
        )
        result = await ParseHandler(store, sink)(msg)

        assert [r.name for r in result.rows] == ["Mlijeko"]
        assert result.total_rows == 2
        assert result.valid_rows == 1
        assert [(e.row_number, e.message) for e in result.errors] == [
            (3, "Price must be positive")
        ]
        assert sink.writes[0][3] is result

    @pytest.mark.asyncio
    async def test_missing_file(self, store) -> None:
        """Test that a missing stored file raises for redelivery."""
        handler = ParseHandler(store, RecordingSink())
        msg = ParseMessage(
            run_id="run_1",
            chain_slug="konzum",
            storage_key="ingestion/run_1/konzum/missing.csv",
            file=DiscoveredFile(url="https://example.com/x", filename="missing.csv", type="csv"),
            hash="abc",
        )
        with pytest.raises(FileNotFoundError):
            await handler(msg)


class TestIngestChainHandler:
    """Tests for IngestChainHandler."""

    async def claimed_task(self, ledger, payload):
        await ledger.schedule(INGEST_CHAIN_TASK, payload)
        return (await ledger.claim("worker-1"))[0]

    @pytest.mark.asyncio
    async def test_downloads_and_enqueues(self, ledger, queue, store, make_zip) -> None:
        """Test that every downloaded file is stored and enqueued."""
        adapter = FakeAdapter(
            {
                "Konzum_0604.csv": KONZUM_CSV,
                "cijene.zip": make_zip({"a.csv": KONZUM_CSV}),
                "broken.csv": FetchRetryError("https://example.com/broken.csv", 4, 503),
            }
        )
        handler = IngestChainHandler(
            ledger, ArchiveDispatcher(store, queue), adapter_factory=lambda slug: adapter
        )
        task = await self.claimed_task(
            ledger, {"chain": "konzum", "date": "2025-05-15", "run_id": "run_1"}
        )

        stats = await handler(task)

        assert stats == {
            "run_id": "run_1",
            "files": 3,
            "enqueued": 2,
            "skipped": 0,
            "failed": 1,
            "cancelled": False,
        }
        assert adapter.discover_dates == [datetime.date(2025, 5, 15)]
        assert adapter.closed
        assert len(queue) == 2
        assert await store.exists("ingestion/run_1/konzum/Konzum_0604.csv")

    @pytest.mark.asyncio
    async def test_rerun_skips_duplicates(self, ledger, queue, store) -> None:
        """Test that the same content in the same run is not enqueued again."""
        adapter = FakeAdapter({"Konzum_0604.csv": KONZUM_CSV})
        handler = IngestChainHandler(
            ledger, ArchiveDispatcher(store, queue), adapter_factory=lambda slug: adapter
        )
        payload = {"chain": "konzum", "run_id": "run_1"}

        await handler(await self.claimed_task(ledger, payload))
        stats = await handler(await self.claimed_task(ledger, payload))

        assert stats["skipped"] == 1
        assert stats["enqueued"] == 0
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_all_downloads_failed(self, ledger, queue, store) -> None:
        """Test that a run where nothing could be downloaded fails the task."""
        request = httpx.Request("GET", "https://example.com/a.csv")
        adapter = FakeAdapter(
            {
                "a.csv": httpx.HTTPStatusError(
                    "forbidden", request=request, response=httpx.Response(403)
                ),
                "b.csv": OSError("disk"),
            }
        )
        handler = IngestChainHandler(
            ledger, ArchiveDispatcher(store, queue), adapter_factory=lambda slug: adapter
        )
        task = await self.claimed_task(ledger, {"chain": "konzum"})

        with pytest.raises(RuntimeError, match="All 2 downloads failed"):
            await handler(task)
        assert adapter.closed

    @pytest.mark.asyncio
    async def test_cancelled_task_stops_enqueueing(self, ledger, queue, store) -> None:
        """Test that a cancelled task enqueues no further work."""
        adapter = FakeAdapter({"a.csv": b"a", "b.csv": b"b"})
        handler = IngestChainHandler(
            ledger, ArchiveDispatcher(store, queue), adapter_factory=lambda slug: adapter
        )
        task = await self.claimed_task(ledger, {"chain": "konzum", "run_id": "run_1"})
        await ledger.cancel(task.id)

        stats = await handler(task)

        assert stats["cancelled"] is True
        assert stats["enqueued"] == 0
        assert len(queue) == 0


class TestTaskRunner:
    """Tests for TaskRunner."""

    @pytest.mark.asyncio
    async def test_completes_with_result(self, ledger) -> None:
        """Test that a handler's dict result is stored on completion."""

        async def handler(task):
            return {"chain": task.payload["chain"]}

        runner = TaskRunner(ledger, {INGEST_CHAIN_TASK: handler}, worker_id="worker-1")
        task_id = await ledger.schedule(INGEST_CHAIN_TASK, {"chain": "lidl"})

        assert await runner.run_once() == 1
        task = await ledger.get(task_id)
        assert task.status == TaskStatus.COMPLETED
        assert task.result == {"chain": "lidl"}
        assert await runner.run_once() == 0

    @pytest.mark.asyncio
    async def test_failure_is_requeued(self, ledger) -> None:
        """Test that a raising handler fails the task with retry."""

        async def handler(task):
            raise RuntimeError("site down")

        runner = TaskRunner(ledger, {INGEST_CHAIN_TASK: handler}, worker_id="worker-1")
        task_id = await ledger.schedule(INGEST_CHAIN_TASK, {})

        await runner.run_once()

        task = await ledger.get(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1
        assert task.error_message == "site down"

    @pytest.mark.asyncio
    async def test_lost_lease_leaves_new_owner_alone(self, ledger, clock) -> None:
        """Test that a runner whose task was re-claimed can't complete it."""

        async def slow_handler(task):
            clock.advance(minutes=6)
            await ledger.recover_orphans()
            await ledger.claim("worker-2")
            return {"done": True}

        runner = TaskRunner(
            ledger, {INGEST_CHAIN_TASK: slow_handler}, worker_id="worker-1", lease_minutes=5
        )
        task_id = await ledger.schedule(INGEST_CHAIN_TASK, {})

        await runner.run_once()

        task = await ledger.get(task_id)
        assert task.status == TaskStatus.PROCESSING
        assert task.worker_id == "worker-2"
        assert task.result is None

    @pytest.mark.asyncio
    async def test_unknown_task_type(self, ledger) -> None:
        """Test that tasks without a handler fail without retry."""
        runner = TaskRunner(ledger, {}, worker_id="worker-1")
        task_id = await ledger.schedule("mystery", {})

        await runner.run_once()

        task = await ledger.get(task_id)
        assert task.status == TaskStatus.FAILED
        assert "mystery" in task.error_message

    @pytest.mark.asyncio
    async def test_task_type_filter(self, ledger) -> None:
        """Test that a runner only claims its own task types."""
        runner = TaskRunner(
            ledger, {}, worker_id="worker-1", task_types=[INGEST_CHAIN_TASK]
        )
        await ledger.schedule("mystery", {})
        assert await runner.run_once() == 0


class TestOrphanSweeper:
    """Tests for OrphanSweeper."""

    @pytest.mark.asyncio
    async def test_sweep_once(self, ledger, clock) -> None:
        """Test that an expired lease is recovered."""
        task_id = await ledger.schedule(INGEST_CHAIN_TASK, {})
        await ledger.claim("worker-1", lease_minutes=5)
        clock.advance(minutes=6)

        assert await OrphanSweeper(ledger).sweep_once() == (1, 0)
        assert (await ledger.get(task_id)).status == TaskStatus.PENDING


class TestPipeline:
    """End-to-end run through the task ledger, queue and parser."""

    @pytest.mark.asyncio
    async def test_chain_to_sink(self, ledger, queue, store, make_zip) -> None:
        """Test that a scheduled chain ends up as parsed rows in the sink."""
        adapter = FakeAdapter(
            {
                "Konzum_0604.csv": KONZUM_CSV,
                "paket.zip": make_zip(
                    {"Konzum_0605.csv": KONZUM_CSV, "__MACOSX/._x.csv": b"junk"}
                ),
            }
        )
        sink = RecordingSink()
        dispatcher = ArchiveDispatcher(store, queue)
        runner = TaskRunner(
            ledger,
            {
                INGEST_CHAIN_TASK: IngestChainHandler(
                    ledger, dispatcher, adapter_factory=lambda slug: adapter
                )
            },
            worker_id="worker-1",
        )
        worker = QueueWorker(
            queue,
            {
                "expand": ExpandHandler(dispatcher),
                "parse": ParseHandler(store, sink, adapter_factory=get_adapter),
            },
        )
        task_id = await ledger.schedule(
            INGEST_CHAIN_TASK, {"chain": "konzum", "run_id": "run_1"}
        )

        await runner.run_once()
        while await worker.run_once():
            pass

        assert (await ledger.get(task_id)).status == TaskStatus.COMPLETED
        assert len(queue) == 0
        assert sorted(w[2] for w in sink.writes) == [
            "ingestion/run_1/konzum/Konzum_0604.csv",
            "ingestion/run_1/konzum/expanded/paket.zip/Konzum_0605.csv",
        ]
        stores = sorted(w[3].rows[0].store_identifier for w in sink.writes)
        assert stores == ["0604", "0605"]
