"""Shared fixtures for the ingestion test suite."""

import datetime
from io import BytesIO
from zipfile import ZipFile

import httpx
import openpyxl
import pytest

from ingest.chains.registry import get_adapter
from ingest.models import DiscoveredFile, FetchedFile
from ingest.fetch import compute_sha256
from service.db.memory import MemoryTaskLedger
from service.queue.memory import MemoryQueue
from service.storage import LocalContentStore


class FakeClock:
    """Manually advanced UTC clock for the task ledger."""

    def __init__(self, start: datetime.datetime):
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


class FakeMonotonic:
    """Manually advanced monotonic clock for the memory queue."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """A ledger clock starting on a fixed morning."""
    return FakeClock(datetime.datetime(2025, 5, 15, 8, 0, tzinfo=datetime.timezone.utc))


@pytest.fixture
def ledger(clock: FakeClock) -> MemoryTaskLedger:
    """An in-memory task ledger driven by the fake clock."""
    return MemoryTaskLedger(clock=clock)


@pytest.fixture
def queue_clock() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def queue(queue_clock: FakeMonotonic) -> MemoryQueue:
    """An in-memory queue driven by the fake monotonic clock."""
    return MemoryQueue(clock=queue_clock)


@pytest.fixture
def store(tmp_path) -> LocalContentStore:
    """A content store in a temporary directory."""
    return LocalContentStore(tmp_path / "storage")


@pytest.fixture
def make_zip():
    """Build a ZIP archive from a {name: content} mapping."""

    def build(entries: dict[str, bytes]) -> bytes:
        buf = BytesIO()
        with ZipFile(buf, "w") as zf:
            for name, content in entries.items():
                zf.writestr(name, content)
        return buf.getvalue()

    return build


@pytest.fixture
def make_workbook():
    """Build an XLSX workbook in memory from a list of rows."""

    def build(rows: list[list], title: str = "Cjenik") -> bytes:
        wb = openpyxl.Workbook()
        ws = wb.active
        ws.title = title
        for row in rows:
            ws.append(row)
        buf = BytesIO()
        wb.save(buf)
        return buf.getvalue()

    return build


@pytest.fixture
def make_fetched():
    """Build a fetched file as the adapters would return it."""

    def build(
        filename: str,
        content: bytes,
        file_type: str = "csv",
        url: str | None = None,
    ) -> FetchedFile:
        return FetchedFile(
            discovered=DiscoveredFile(
                url=url or f"https://example.com/{filename}",
                filename=filename,
                type=file_type,
            ),
            content=content,
            hash=compute_sha256(content),
        )

    return build


@pytest.fixture
def offline_adapter():
    """
    Build a chain adapter whose HTTP client never touches the network.

    Requests are answered by `handler`, or with 404 if none is given.
    """
    adapters = []

    def build(slug: str, handler=None):
        transport = httpx.MockTransport(handler or (lambda request: httpx.Response(404)))
        adapter = get_adapter(slug, client=httpx.Client(transport=transport))
        adapters.append(adapter)
        return adapter

    yield build

    for adapter in adapters:
        adapter.close()
