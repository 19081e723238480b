import asyncio
import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


@dataclass(frozen=True, slots=True, kw_only=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime
    sha256: str | None = None
    custom_metadata: dict[str, str] = field(default_factory=dict)


def compute_sha256(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def storage_key(
    run_id: str,
    chain_slug: str,
    filename: str,
    suffix: str | None = None,
) -> str:
    """
    Build the content store key for an ingestion file.

    Args:
        run_id: Ingestion run ID
        chain_slug: Chain identifier
        filename: Original filename (may contain slashes)
        suffix: Optional suffix appended as the last path component

    Returns:
        Key in the form `ingestion/{run_id}/{chain_slug}/{filename}[/{suffix}]`
    """
    parts = ["ingestion", run_id, chain_slug, filename]
    if suffix:
        parts.append(suffix)
    return "/".join(parts)


class ContentStore(ABC):
    """Write-once object store for fetched and expanded files."""

    @abstractmethod
    async def get(self, key: str) -> tuple[bytes, StoredObject] | None:
        """
        Get an object by key.

        Returns:
            Object content and metadata, or None if not found.
        """
        pass

    @abstractmethod
    async def put(
        self,
        key: str,
        content: bytes,
        *,
        sha256: str | None = None,
        custom_metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        """
        Store an object, replacing any existing object with the same key.

        Returns:
            Metadata of the stored object.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete an object.

        Returns:
            True if deleted, False if not found.
        """
        pass

    @abstractmethod
    async def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    async def head(self, key: str) -> StoredObject | None:
        """Get object metadata without fetching the content."""
        pass

    @abstractmethod
    async def list(self, prefix: str) -> list[StoredObject]:
        """List objects whose key starts with `prefix`."""
        pass


class LocalContentStore(ContentStore):
    """
    Content store backed by a local directory.

    Each object is a plain file; sha256 and custom metadata go into a
    `<file>.meta.json` sidecar next to it. Blocking file I/O runs in a
    worker thread.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if not path.is_relative_to(self.base_path.resolve()):
            raise ValueError(f"Invalid storage key: {key}")
        return path

    def _stat(self, key: str, path: Path) -> StoredObject:
        stat = path.stat()
        sha256 = None
        custom_metadata = {}

        meta_path = path.with_name(path.name + META_SUFFIX)
        if meta_path.exists():
            with open(meta_path, "r", encoding="utf-8") as f:
                meta = json.load(f)
            sha256 = meta.get("sha256")
            custom_metadata = meta.get("customMetadata") or {}

        return StoredObject(
            key=key,
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            sha256=sha256,
            custom_metadata=custom_metadata,
        )

    def _get(self, key: str) -> tuple[bytes, StoredObject] | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return path.read_bytes(), self._stat(key, path)

    def _put(
        self,
        key: str,
        content: bytes,
        sha256: str | None,
        custom_metadata: dict[str, str] | None,
    ) -> StoredObject:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

        if sha256 or custom_metadata:
            meta_path = path.with_name(path.name + META_SUFFIX)
            with open(meta_path, "w", encoding="utf-8") as f:
                json.dump({"sha256": sha256, "customMetadata": custom_metadata}, f)

        logger.debug(f"Stored {key} ({len(content)} bytes)")
        return self._stat(key, path)

    def _delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.is_file():
            return False
        path.unlink()
        path.with_name(path.name + META_SUFFIX).unlink(missing_ok=True)
        return True

    def _head(self, key: str) -> StoredObject | None:
        path = self._path(key)
        if not path.is_file():
            return None
        return self._stat(key, path)

    def _list(self, prefix: str) -> list[StoredObject]:
        if not self.base_path.is_dir():
            return []

        results = []
        for dirpath, _, filenames in os.walk(self.base_path):
            for name in sorted(filenames):
                if name.endswith(META_SUFFIX):
                    continue
                path = Path(dirpath) / name
                key = path.relative_to(self.base_path).as_posix()
                if key.startswith(prefix):
                    results.append(self._stat(key, path))
        return sorted(results, key=lambda obj: obj.key)

    async def get(self, key: str) -> tuple[bytes, StoredObject] | None:
        return await asyncio.to_thread(self._get, key)

    async def put(
        self,
        key: str,
        content: bytes,
        *,
        sha256: str | None = None,
        custom_metadata: dict[str, str] | None = None,
    ) -> StoredObject:
        return await asyncio.to_thread(self._put, key, content, sha256, custom_metadata)

    async def delete(self, key: str) -> bool:
        return await asyncio.to_thread(self._delete, key)

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(lambda: self._path(key).is_file())

    async def head(self, key: str) -> StoredObject | None:
        return await asyncio.to_thread(self._head, key)

    async def list(self, prefix: str) -> list[StoredObject]:
        return await asyncio.to_thread(self._list, prefix)


async def find_by_hash(
    store: ContentStore,
    prefix: str,
    sha256: str,
) -> StoredObject | None:
    """
    Find an existing object under `prefix` with the given content hash.
    """
    for obj in await store.list(prefix):
        metadata = await store.head(obj.key)
        if metadata and metadata.sha256 == sha256:
            return metadata
    return None
