"""Tests for ZIP expansion and the archive dispatcher."""

from zipfile import ZipFile

import pytest

from ingest.archive import ArchiveError, expand_archive, is_ignored
from service.dispatcher import ArchiveDispatcher
from service.messages import ExpandMessage, ParseMessage
from service.queue.memory import MemoryQueue
from service.storage import compute_sha256


class RecordingQueue(MemoryQueue):
    """Memory queue that remembers every batch it was sent."""

    def __init__(self):
        super().__init__()
        self.batches: list[list] = []

    async def send_batch(self, msgs):
        self.batches.append(list(msgs))
        await super().send_batch(msgs)


class TestExpandArchive:
    """Tests for expand_archive."""

    def test_skips_metadata_entries(self, make_zip) -> None:
        """Test that directories and OS metadata are skipped."""
        data = make_zip(
            {
                "a.csv": b"a",
                "__MACOSX/._a.csv": b"junk",
                "sub/": b"",
                "sub/b.csv": b"b",
                "sub/.DS_Store": b"junk",
                "Thumbs.db": b"junk",
            }
        )
        entries = expand_archive(data)

        assert [e.name for e in entries] == ["a.csv", "sub/b.csv"]
        assert entries[1].basename == "b.csv"
        assert entries[1].content == b"b"

    def test_encrypted_entries_are_skipped(self, make_zip) -> None:
        """Test that entries flagged as encrypted are skipped, not fatal."""
        data = bytearray(make_zip({"a.csv": b"a", "secret.csv": b"s", "b.csv": b"b"}))
        # Set the encryption bit in the central directory record of secret.csv
        header = data.index(b"PK\x01\x02")
        while data[header + 46 : header + 56] != b"secret.csv":
            header = data.index(b"PK\x01\x02", header + 4)
        data[header + 8] |= 0x1

        entries = expand_archive(bytes(data))

        assert [e.name for e in entries] == ["a.csv", "b.csv"]

    def test_entry_needing_password_is_skipped(self, make_zip, monkeypatch) -> None:
        """Test that a RuntimeError from zipfile skips only that entry."""
        original_read = ZipFile.read

        def read(self, name, pwd=None):
            filename = getattr(name, "filename", name)
            if filename == "secret.csv":
                raise RuntimeError("File 'secret.csv' is encrypted, password required")
            return original_read(self, name, pwd)

        monkeypatch.setattr(ZipFile, "read", read)

        entries = expand_archive(make_zip({"secret.csv": b"s", "b.csv": b"b"}))

        assert [e.name for e in entries] == ["b.csv"]

    def test_invalid_archive(self) -> None:
        """Test that unreadable archives raise ArchiveError."""
        with pytest.raises(ArchiveError):
            expand_archive(b"this is not a zip file")

    @pytest.mark.parametrize(
        "name,ignored",
        [
            ("dir/", True),
            ("__MACOSX/a.csv", True),
            ("x/__MACOSX/a.csv", True),
            ("x/._a.csv", True),
            (".DS_Store", True),
            ("Thumbs.db", True),
            ("a.csv", False),
            ("x/a.xml", False),
        ],
    )
    def test_is_ignored(self, name: str, ignored: bool) -> None:
        """Test the ignore rules for archive members."""
        assert is_ignored(name) is ignored


class TestArchiveDispatcher:
    """Tests for ArchiveDispatcher."""

    @pytest.fixture
    def recording_queue(self) -> RecordingQueue:
        return RecordingQueue()

    @pytest.fixture
    def dispatcher(self, store, recording_queue) -> ArchiveDispatcher:
        return ArchiveDispatcher(store, recording_queue)

    @pytest.mark.asyncio
    async def test_plain_file_becomes_parse_message(
        self, dispatcher, store, recording_queue, make_fetched
    ) -> None:
        """Test that a CSV is stored and enqueued for parsing."""
        fetched = make_fetched("Konzum_0604.csv", b"name,price\nKruh,1.00\n")

        msg = await dispatcher.handle_fetched("run_1", "konzum", fetched)

        assert isinstance(msg, ParseMessage)
        assert msg.storage_key == "ingestion/run_1/konzum/Konzum_0604.csv"
        assert msg.hash == fetched.hash
        assert msg.inner_filename is None
        assert len(recording_queue) == 1

        stored = await store.head(msg.storage_key)
        assert stored.sha256 == fetched.hash
        assert stored.custom_metadata["url"] == "https://example.com/Konzum_0604.csv"

    @pytest.mark.asyncio
    async def test_duplicate_content_is_skipped(
        self, dispatcher, recording_queue, make_fetched
    ) -> None:
        """Test that identical content under the same key is not enqueued twice."""
        fetched = make_fetched("Konzum_0604.csv", b"same")

        assert await dispatcher.handle_fetched("run_1", "konzum", fetched) is not None
        assert await dispatcher.handle_fetched("run_1", "konzum", fetched) is None
        assert len(recording_queue) == 1

        changed = make_fetched("Konzum_0604.csv", b"changed")
        assert await dispatcher.handle_fetched("run_1", "konzum", changed) is not None
        assert len(recording_queue) == 2

    @pytest.mark.asyncio
    async def test_zip_becomes_expand_message(
        self, dispatcher, make_zip, make_fetched
    ) -> None:
        """Test that archives are enqueued for expansion."""
        fetched = make_fetched("cijene.zip", make_zip({"a.csv": b"a"}), file_type="zip")
        msg = await dispatcher.handle_fetched("run_1", "lidl", fetched)
        assert isinstance(msg, ExpandMessage)

    @pytest.mark.asyncio
    async def test_expand_fans_out_in_one_batch(
        self, dispatcher, store, recording_queue, make_zip, make_fetched
    ) -> None:
        """Test that a 3-entry archive with a __MACOSX entry gives 2 parse messages."""
        archive = make_zip(
            {
                "Lidl_Poslovnica_Split.csv": b"NAZIV,MALOPRODAJNA_CIJENA\nKruh,1.00\n",
                "Lidl_Poslovnica_Zadar.csv": b"NAZIV,MALOPRODAJNA_CIJENA\nSol,0.59\n",
                "__MACOSX/._Lidl_Poslovnica_Split.csv": b"junk",
            }
        )
        fetched = make_fetched("cijene_15_05_2025.zip", archive, file_type="zip")
        expand = await dispatcher.handle_fetched("run_1", "lidl", fetched)
        recording_queue.batches.clear()

        messages = await dispatcher.handle_expand(expand)

        assert len(messages) == 2
        assert len(recording_queue.batches) == 1
        assert recording_queue.batches[0] == messages

        first = messages[0]
        assert first.inner_filename == "Lidl_Poslovnica_Split.csv"
        assert first.filename == "Lidl_Poslovnica_Split.csv"
        assert first.file.type == "csv"
        assert first.storage_key == (
            "ingestion/run_1/lidl/expanded/cijene_15_05_2025.zip/Lidl_Poslovnica_Split.csv"
        )
        assert first.hash == compute_sha256(b"NAZIV,MALOPRODAJNA_CIJENA\nKruh,1.00\n")
        assert first.dedup_key == ("run_1", "Lidl_Poslovnica_Split.csv", first.hash)

        loaded = await store.get(first.storage_key)
        content, meta = loaded
        assert content.startswith(b"NAZIV")
        assert meta.custom_metadata["parentFilename"] == "cijene_15_05_2025.zip"

    @pytest.mark.asyncio
    async def test_nested_archives_are_skipped(
        self, dispatcher, recording_queue, make_zip, make_fetched
    ) -> None:
        """Test that ZIPs inside ZIPs are not expanded further."""
        archive = make_zip({"inner.zip": make_zip({"a.csv": b"a"}), "b.csv": b"b"})
        expand = await dispatcher.handle_fetched(
            "run_1", "lidl", make_fetched("outer.zip", archive, file_type="zip")
        )

        messages = await dispatcher.handle_expand(expand)

        assert [m.inner_filename for m in messages] == ["b.csv"]

    @pytest.mark.asyncio
    async def test_cancelled_run_is_not_fanned_out(
        self, ledger, store, recording_queue, make_zip, make_fetched
    ) -> None:
        """Test that expanding an archive of a cancelled run enqueues nothing."""
        dispatcher = ArchiveDispatcher(store, recording_queue, ledger)
        task_id = await ledger.schedule("ingest_chain", {"chain": "lidl", "run_id": "run_1"})
        other = await ledger.schedule("ingest_chain", {"chain": "lidl", "run_id": "run_2"})
        archive = make_zip({"a.csv": b"a", "b.csv": b"b"})
        expand = await dispatcher.handle_fetched(
            "run_1", "lidl", make_fetched("cijene.zip", archive, file_type="zip")
        )
        await ledger.cancel(task_id)
        recording_queue.batches.clear()

        assert await dispatcher.handle_expand(expand) == []
        assert recording_queue.batches == []

        expand = await dispatcher.handle_fetched(
            "run_2", "lidl", make_fetched("cijene.zip", archive, file_type="zip")
        )
        assert len(await dispatcher.handle_expand(expand)) == 2
        assert (await ledger.get(other)).status.value == "pending"

    @pytest.mark.asyncio
    async def test_missing_archive(self, dispatcher, make_fetched) -> None:
        """Test that expanding a missing archive raises."""
        fetched = make_fetched("gone.zip", b"", file_type="zip")
        msg = ExpandMessage(
            run_id="run_1",
            chain_slug="lidl",
            storage_key="ingestion/run_1/lidl/gone.zip",
            file=fetched.discovered,
        )
        with pytest.raises(FileNotFoundError):
            await dispatcher.handle_expand(msg)

    @pytest.mark.asyncio
    async def test_invalid_archive_raises(self, dispatcher, make_fetched) -> None:
        """Test that a corrupt archive raises ArchiveError for redelivery."""
        fetched = make_fetched("bad.zip", b"not a zip", file_type="zip")
        expand = await dispatcher.handle_fetched("run_1", "lidl", fetched)
        with pytest.raises(ArchiveError):
            await dispatcher.handle_expand(expand)
