import datetime
import logging
import re
from abc import ABC, abstractmethod
from email.utils import parsedate_to_datetime
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup

from ingest.fetch import USER_AGENT, RateLimiter
from ingest.models import DiscoveredFile, FileType

from .profile import DiscoveryConfig

logger = logging.getLogger(__name__)

EXTENSIONS_BY_TYPE: dict[str, list[str]] = {
    "csv": ["csv"],
    "xml": ["xml"],
    "xlsx": ["xlsx"],
    "zip": ["zip"],
}

HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


def detect_file_type(filename: str, default: FileType = "csv") -> FileType:
    name = filename.lower()
    if name.endswith(".csv"):
        return "csv"
    if name.endswith(".xlsx"):
        return "xlsx"
    if name.endswith(".xml"):
        return "xml"
    if name.endswith(".zip"):
        return "zip"
    return default


def filename_from_url(url: str, default: str) -> str:
    name = PurePosixPath(urlparse(url).path).name
    return unquote(name) or default


def extract_date(text: str, pattern: str | None, order: str = "dmy") -> datetime.date | None:
    """Extract a date from text using a regex with day, month, year groups."""
    if not pattern:
        return None
    m = re.search(pattern, text)
    if not m:
        return None
    a, b, c = (int(g) for g in m.groups()[:3])
    day, month, year = (a, b, c) if order == "dmy" else (c, b, a)
    try:
        return datetime.date(year, month, day)
    except ValueError:
        return None


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _as_datetime(date: datetime.date) -> datetime.datetime:
    return datetime.datetime(date.year, date.month, date.day, tzinfo=datetime.timezone.utc)


class DiscoveryStrategy(ABC):
    """
    Lists the price list files a chain publishes.

    Network and HTTP failures never propagate out of discover(): they
    are logged and result in an empty list.
    """

    source_suffix = "portal"

    def __init__(
        self,
        slug: str,
        config: DiscoveryConfig,
        client: httpx.Client,
        limiter: RateLimiter | None = None,
        default_type: FileType = "csv",
        supported_types: list[FileType] | None = None,
    ):
        self.slug = slug
        self.config = config
        self.client = client
        self.limiter = limiter
        self.default_type = default_type
        self.supported_types = supported_types or [default_type]

    def discover(self, date: datetime.date | None = None) -> list[DiscoveredFile]:
        try:
            files = self.find_files(date)
        except (httpx.HTTPError, ValueError, OSError) as e:
            logger.error(f"Error discovering {self.slug} files: {e}", exc_info=True)
            return []

        logger.debug(f"Discovered {len(files)} {self.slug} files")
        return files

    @abstractmethod
    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        pass

    def get(self, url: str, accept: str = HTML_ACCEPT) -> httpx.Response:
        if self.limiter:
            self.limiter.wait()
        logger.debug(f"Fetching {url}")
        response = self.client.get(
            url, headers={"User-Agent": USER_AGENT, "Accept": accept}
        )
        response.raise_for_status()
        return response

    def make_file(
        self,
        url: str,
        filename: str,
        last_modified: datetime.datetime | None = None,
        size: int | None = None,
        **metadata: str,
    ) -> DiscoveredFile:
        return DiscoveredFile(
            url=url,
            filename=filename,
            type=detect_file_type(filename, self.default_type),
            size=size,
            last_modified=last_modified,
            metadata={
                "source": f"{self.slug}_{self.source_suffix}",
                "discoveredAt": _now(),
                **metadata,
            },
        )

    def link_pattern(self) -> re.Pattern:
        if self.config.href_pattern:
            return re.compile(self.config.href_pattern, re.IGNORECASE)

        extensions = []
        for file_type in self.supported_types:
            extensions.extend(EXTENSIONS_BY_TYPE.get(file_type, []))
        return re.compile(
            rf"\.({'|'.join(extensions)})(?:\?.*)?$",
            re.IGNORECASE,
        )

    def extract_links(self, html: str, base_url: str) -> list[tuple[str, str]]:
        """
        Find file links in an HTML page.

        Returns:
            List of (absolute URL, filename) pairs, in page order
        """
        pattern = self.link_pattern()
        soup = BeautifulSoup(html, "html.parser")
        links = []

        for link in soup.find_all("a", href=True):
            href = str(link["href"]).strip()
            m = pattern.search(href)
            if not m:
                continue

            url = urljoin(base_url, href)
            if self.config.href_pattern and m.groups():
                filename = unquote(m.group(1))
            else:
                filename = filename_from_url(url, f"unknown.{self.default_type}")

            ext = self.config.default_extension
            if ext and not filename.lower().endswith(ext.lower()):
                filename = f"{filename}{ext}"

            links.append((url, filename))

        return links


class PortalLinksDiscovery(DiscoveryStrategy):
    """Links to price files on a single portal page."""

    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        url = self.config.url
        if not url:
            raise ValueError(f"No portal URL configured for {self.slug}")

        html = self.get(url).text
        files = []
        seen = set()

        for file_url, filename in self.extract_links(html, url):
            if file_url in seen:
                continue
            seen.add(file_url)

            file_date = extract_date(
                filename, self.config.date_pattern, self.config.date_order
            )
            if date and self.config.date_pattern and file_date != date:
                continue

            metadata = {}
            if file_date:
                metadata["portalDate"] = file_date.isoformat()

            files.append(
                self.make_file(
                    file_url,
                    filename,
                    last_modified=_as_datetime(file_date) if file_date else None,
                    **metadata,
                )
            )

        return files


class PaginatedPortalDiscovery(DiscoveryStrategy):
    """
    Portal listing files for a date across numbered pages.

    Pages are fetched until one yields no new links, up to max_pages.
    """

    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        date = date or datetime.date.today()
        files = []
        seen = set()

        for page in range(1, self.config.max_pages + 1):
            page_url = f"{self.config.url}?date={date:%Y-%m-%d}&page={page}"
            try:
                html = self.get(page_url).text
            except httpx.HTTPError as e:
                logger.error(f"Failed to fetch {self.slug} page {page} ({page_url}): {e}")
                break

            found_new = False
            for file_url, filename in self.extract_links(html, page_url):
                if file_url in seen:
                    continue
                seen.add(file_url)
                found_new = True
                files.append(
                    self.make_file(
                        file_url,
                        filename,
                        last_modified=_as_datetime(date),
                        portalDate=date.isoformat(),
                        page=str(page),
                    )
                )

            if not found_new:
                break

        return files


class JsonListingDiscovery(DiscoveryStrategy):
    """
    JSON index of the day's files: {"files": [{"name", "URL", "SHA"}]}.

    The configured URL is a template formatted with the date,
    e.g. "https://example.com/Cjenik{date:%Y%m%d}.json".
    """

    source_suffix = "json_api"

    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        date = date or datetime.date.today()
        url = (self.config.url or "").format(date=date)

        data = self.get(url, accept="application/json").json()
        entries = (data.get("files") or []) if isinstance(data, dict) else []
        if not isinstance(entries, list):
            logger.warning(f"Unexpected {self.slug} file listing: {type(entries).__name__}")
            return []
        if not entries:
            logger.info(f"No {self.slug} files listed for {date}")
            return []

        files = []
        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning(f"Skipping malformed {self.slug} listing entry: {entry!r}")
                continue
            name = entry.get("name")
            file_url = entry.get("URL")
            if not isinstance(name, str) or not isinstance(file_url, str):
                continue
            if not name or not file_url:
                continue
            files.append(
                self.make_file(
                    file_url,
                    name,
                    last_modified=_as_datetime(date),
                    portalDate=date.isoformat(),
                    sha=str(entry.get("SHA") or ""),
                )
            )
        return files


class OptionListDiscovery(DiscoveryStrategy):
    """Archive URLs offered as <option> entries of a select box."""

    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        url = self.config.url
        if not url:
            raise ValueError(f"No portal URL configured for {self.slug}")

        soup = BeautifulSoup(self.get(url).text, "html.parser")
        pattern = re.compile(self.config.value_pattern or r"\.zip$", re.IGNORECASE)
        files = []
        seen = set()

        for option in soup.find_all("option"):
            value = str(option.get("value") or "").strip()
            if not value or not pattern.search(value):
                continue

            file_url = urljoin(url, value)
            if file_url in seen:
                continue
            seen.add(file_url)

            label = option.get_text(strip=True)
            filename = label or filename_from_url(file_url, "unknown.zip")
            file_date = extract_date(
                label, self.config.date_pattern, self.config.date_order
            ) or extract_date(value, self.config.date_pattern, self.config.date_order)

            if date and file_date != date:
                continue

            metadata = {}
            if file_date:
                metadata["portalDate"] = file_date.isoformat()

            files.append(
                self.make_file(
                    file_url,
                    filename,
                    last_modified=_as_datetime(file_date) if file_date else None,
                    **metadata,
                )
            )

        return files


class LocalMirrorDiscovery(DiscoveryStrategy):
    """Files dropped into a local directory, named with their date."""

    source_suffix = "local"

    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        date = date or datetime.date.today()
        directory = Path(self.config.directory or ".").resolve()
        if not directory.is_dir():
            logger.error(f"{self.slug} data directory not found: {directory}")
            return []

        pattern = re.compile(self.config.filename_pattern or r"(\d{4}-\d{2}-\d{2})")
        files = []

        for path in sorted(directory.iterdir()):
            m = pattern.match(path.name)
            if not m or not path.is_file():
                continue

            try:
                file_date = datetime.date.fromisoformat(m.group(1))
            except ValueError:
                continue
            if file_date != date:
                continue

            files.append(
                self.make_file(
                    path.as_uri(),
                    path.name,
                    last_modified=_as_datetime(file_date),
                    size=path.stat().st_size,
                    portalDate=file_date.isoformat(),
                )
            )

        return files


class DirectUrlDiscovery(DiscoveryStrategy):
    """
    A single file at a fixed URL, checked with a HEAD request.

    Falls back to the configured fallback strategy if the URL is not
    reachable.
    """

    source_suffix = "web"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fallback = None
        if self.config.fallback:
            self.fallback = create_strategy(
                self.slug,
                self.config.fallback,
                self.client,
                self.limiter,
                self.default_type,
                self.supported_types,
            )

    def find_files(self, date: datetime.date | None) -> list[DiscoveredFile]:
        date = date or datetime.date.today()
        url = self.config.url or ""

        try:
            if self.limiter:
                self.limiter.wait()
            response = self.client.head(url, headers={"User-Agent": USER_AGENT})
        except httpx.HTTPError as e:
            logger.warning(f"Failed to access {self.slug} file at {url}: {e}")
            return self._fall_back(date)

        if not response.is_success:
            logger.warning(
                f"{self.slug} file URL returned {response.status_code}, "
                "falling back"
            )
            return self._fall_back(date)

        size = response.headers.get("content-length")
        last_modified = response.headers.get("last-modified")
        try:
            modified = parsedate_to_datetime(last_modified) if last_modified else None
        except (TypeError, ValueError):
            modified = None

        metadata = {"portalDate": date.isoformat()}
        if self.config.portal_url:
            metadata["portalUrl"] = self.config.portal_url

        filename = filename_from_url(url, f"{self.slug}-cjenik.{self.default_type}")
        logger.info(f"Found {self.slug} price list: {filename}")
        return [
            self.make_file(
                url,
                filename,
                last_modified=modified or datetime.datetime.now(datetime.timezone.utc),
                size=int(size) if size and size.isdigit() else None,
                **metadata,
            )
        ]

    def _fall_back(self, date: datetime.date) -> list[DiscoveredFile]:
        if self.fallback is None:
            return []
        return self.fallback.discover(date)


STRATEGIES: dict[str, type[DiscoveryStrategy]] = {
    "portal_links": PortalLinksDiscovery,
    "paginated_portal": PaginatedPortalDiscovery,
    "json_listing": JsonListingDiscovery,
    "option_list": OptionListDiscovery,
    "direct_url": DirectUrlDiscovery,
    "local_mirror": LocalMirrorDiscovery,
}


def create_strategy(
    slug: str,
    config: DiscoveryConfig,
    client: httpx.Client,
    limiter: RateLimiter | None = None,
    default_type: FileType = "csv",
    supported_types: list[FileType] | None = None,
) -> DiscoveryStrategy:
    strategy_class = STRATEGIES.get(config.strategy)
    if strategy_class is None:
        raise ValueError(f"Unknown discovery strategy: {config.strategy}")
    return strategy_class(
        slug, config, client, limiter, default_type, supported_types
    )
