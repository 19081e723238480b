import subprocess
import zlib
from dataclasses import dataclass
from io import BytesIO
from logging import getLogger
from pathlib import PurePosixPath
from tempfile import NamedTemporaryFile
from zipfile import BadZipfile, LargeZipFile, ZipFile

logger = getLogger(__name__)

IGNORED_NAMES = {".DS_Store", "Thumbs.db"}

# General purpose flag bit 0
ENCRYPTED_FLAG = 0x1


class ArchiveError(Exception):
    """The archive itself can't be read."""


@dataclass(frozen=True)
class ArchiveEntry:
    name: str  # Path within the archive
    content: bytes

    @property
    def basename(self) -> str:
        return PurePosixPath(self.name).name


def is_ignored(name: str) -> bool:
    """
    Whether an archive member is a directory marker or OS metadata.
    """
    if name.endswith("/"):
        return True
    if name.startswith("__MACOSX/") or "/__MACOSX/" in name:
        return True
    basename = PurePosixPath(name).name
    return basename in IGNORED_NAMES or basename.startswith("._")


def _fallback_unzip(zf_name: str, member: str) -> bytes | None:
    try:
        result = subprocess.run(
            ["unzip", "-x", "-p", zf_name, member],
            capture_output=True,
        )
        return result.stdout or None
    except FileNotFoundError:
        return None


def _read_with_unzip(data: bytes, member: str) -> bytes | None:
    with NamedTemporaryFile(mode="w+b", suffix=".zip") as temp_zip:
        temp_zip.write(data)
        temp_zip.flush()
        return _fallback_unzip(temp_zip.name, member)


def expand_archive(data: bytes) -> list[ArchiveEntry]:
    """
    Extract all meaningful files from a ZIP archive.

    Directory markers, __MACOSX resources, .DS_Store, Thumbs.db and
    AppleDouble (._*) files are skipped. Encrypted entries are logged
    and skipped. Entries Python's zipfile can't decompress are retried
    with the unzip tool; entries that still can't be read are logged
    and skipped.

    Args:
        data: Raw archive content

    Returns:
        List of archive entries, in archive order

    Raises:
        ArchiveError: If the archive can't be opened at all
    """
    try:
        zf = ZipFile(BytesIO(data), "r")
    except (BadZipfile, LargeZipFile, OSError) as e:
        raise ArchiveError(f"Invalid ZIP archive: {e}") from e

    entries = []
    with zf:
        for info in zf.infolist():
            if info.is_dir() or is_ignored(info.filename):
                continue

            if info.flag_bits & ENCRYPTED_FLAG:
                logger.warning(f"Skipping encrypted ZIP entry {info.filename}")
                continue

            logger.debug(f"Extracting {info.filename}")
            try:
                content = zf.read(info)
            except RuntimeError as e:
                # zipfile raises RuntimeError for entries it needs a password for
                logger.warning(f"Skipping unreadable ZIP entry {info.filename}: {e}")
                continue
            except (BadZipfile, NotImplementedError, zlib.error):
                logger.debug(f"Bad ZIP entry {info.filename}, trying fallback")
                content = _read_with_unzip(data, info.filename)
                if content is None:
                    logger.error(f"Error extracting {info.filename} from ZIP file")
                    continue

            entries.append(ArchiveEntry(name=info.filename, content=content))

    return entries
