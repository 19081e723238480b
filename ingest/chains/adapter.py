import datetime
import logging
import re
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from ingest.fetch import (
    RateLimitConfig,
    RateLimiter,
    compute_sha256,
    fetch_with_retry,
)
from ingest.models import (
    DiscoveredFile,
    FetchedFile,
    NormalizedRow,
    ParseError,
    ParseResult,
    ParseWarning,
    RowValidation,
    StoreIdentifier,
)
from ingest.parsers.base import ParseOptions
from ingest.parsers.csv_parser import CsvParser, CsvParserOptions
from ingest.parsers.xlsx_parser import XlsxParser, XlsxParserOptions
from ingest.parsers.xml_parser import (
    FieldMapping,
    StaticPath,
    XmlParser,
    XmlParserOptions,
    first_of,
)

from .discovery import DiscoveryStrategy, create_strategy
from .hooks import get_postprocess_hook, get_preprocess_hook
from .profile import ChainProfile, MappingValue, XlsxLayout

logger = logging.getLogger(__name__)

EXTENSION_PATTERN = re.compile(r"\.(csv|xml|xlsx|xls|zip)$", re.IGNORECASE)
PORTAL_STORE_PATTERN = re.compile(r"(?:store|poslovnica|trgovina)[_-]?(\d+)", re.IGNORECASE)
BARCODE_PATTERN = re.compile(r"^\d{8,14}$")
GTIN_PATTERN = re.compile(r"^\d{8}$|^\d{13}$|^\d{14}$")

MAX_REASONABLE_PRICE_CENTS = 100_000_000


def to_field_mapping(mapping: dict[str, MappingValue]) -> FieldMapping:
    """Turn a profile mapping into a tagged XML field mapping."""
    result: FieldMapping = {}
    for name, source in mapping.items():
        if isinstance(source, dict):
            paths = source.get("first_of")
            if not paths:
                raise ValueError(f"Unsupported derived field for {name}: {source}")
            result[name] = first_of(*paths)
        elif isinstance(source, str):
            result[name] = StaticPath(source)
        else:
            raise ValueError(f"XML field {name} must be a path, got {source!r}")
    return result


def to_column_mapping(mapping: dict[str, MappingValue]) -> dict[str, str | int]:
    result: dict[str, str | int] = {}
    for name, source in mapping.items():
        if isinstance(source, dict):
            raise ValueError(f"Column {name} must be a header or index, got {source!r}")
        result[name] = source
    return result


class ChainAdapter:
    """
    Ingestion adapter for one retail chain.

    All chain specifics (discovery, file format, column names, store
    resolution and fix-ups) come from the chain profile; the adapter
    composes the matching discovery strategy and format parser.
    """

    def __init__(
        self,
        slug: str,
        profile: ChainProfile,
        client: httpx.Client | None = None,
    ):
        self.slug = slug
        self.profile = profile
        self.name = profile.name
        self.client = client or httpx.Client(timeout=30.0, follow_redirects=True)
        self.rate_limit = RateLimitConfig(**profile.rate_limit.model_dump())
        self.limiter = RateLimiter(self.rate_limit)
        self.preprocess = get_preprocess_hook(profile.preprocess)
        self.postprocess = get_postprocess_hook(profile.postprocess)
        self.prefix_patterns = [
            re.compile(p, re.IGNORECASE) for p in profile.filename_prefixes
        ] or [
            re.compile(rf"^{re.escape(profile.name)}[_-]?", re.IGNORECASE),
            re.compile(r"^cjenik[_-]?", re.IGNORECASE),
        ]
        self.store_id_patterns = [
            re.compile(p, re.IGNORECASE) for p in profile.store_id_patterns
        ]
        self.strategy: DiscoveryStrategy = create_strategy(
            slug,
            profile.discovery,
            self.client,
            self.limiter,
            profile.file_type,
            profile.supported_types,
        )

    def __repr__(self):
        return f"<ChainAdapter {self.slug}>"

    def close(self):
        self.client.close()

    def discover(self, date: datetime.date | None = None) -> list[DiscoveredFile]:
        """
        List available price files, optionally only those for a date.
        """
        logger.info(f"Discovering {self.name} price files")
        return self.strategy.discover(date)

    def fetch(self, file: DiscoveredFile) -> FetchedFile:
        """
        Download a discovered file (or read it, for file:// URLs).

        Raises:
            FetchRetryError: If the download keeps failing
            httpx.HTTPStatusError: On a non-retryable HTTP error
        """
        if file.url.startswith("file://"):
            path = Path(url2pathname(urlparse(file.url).path))
            content = path.read_bytes()
        else:
            response = fetch_with_retry(
                file.url, self.limiter, self.rate_limit, client=self.client
            )
            content = response.content

        logger.debug(f"Fetched {file.filename} ({len(content)} bytes)")
        return FetchedFile(
            discovered=file,
            content=content,
            hash=compute_sha256(content),
        )

    def parse(
        self,
        content: bytes,
        filename: str,
        options: ParseOptions | None = None,
    ) -> ParseResult:
        """
        Parse a price file into normalized rows.

        The primary mapping is tried first. If it yields no valid rows and
        reports errors, the alternative mapping (if any) is tried instead.
        """
        encoding = self.profile.csv.encoding if self.profile.csv else None
        if self.preprocess:
            content, encoding = self.preprocess(content, encoding)

        default_store = self.default_store_identifier(filename)

        if self.profile.file_type == "xml":
            result = self._parse_xml(content, filename, options, default_store)
        elif self.profile.file_type == "xlsx":
            result = self._parse_xlsx(content, filename, options, default_store)
        else:
            result = self._parse_csv(content, filename, options, default_store, encoding)

        if self.postprocess:
            result = self.postprocess(result)
        return result

    def _parse_csv(
        self,
        content: bytes,
        filename: str,
        options: ParseOptions | None,
        default_store: str,
        encoding: str | None,
    ) -> ParseResult:
        settings = self.profile.csv
        parser = CsvParser(
            CsvParserOptions(
                delimiter=settings.delimiter if settings else ",",
                encoding=encoding or "utf-8",
                has_header=settings.has_header if settings else True,
                column_mapping=to_column_mapping(self.profile.column_mapping),
                default_store_identifier=default_store,
            )
        )
        return self._with_fallback(
            parser, content, filename, options, self.profile.alternative_mapping
        )

    def select_layout(self, filename: str) -> XlsxLayout | None:
        for layout in self.profile.layouts:
            if any(marker in filename for marker in layout.filename_contains):
                return layout
        return None

    def _parse_xlsx(
        self,
        content: bytes,
        filename: str,
        options: ParseOptions | None,
        default_store: str,
    ) -> ParseResult:
        layout = self.select_layout(filename)
        if layout is not None:
            has_header = layout.has_header
            header_row_count = layout.header_row_count
            mapping = layout.column_mapping
            alternative = layout.alternative_mapping
        else:
            settings = self.profile.xlsx
            has_header = settings.has_header if settings else True
            header_row_count = settings.header_row_count if settings else 0
            mapping = self.profile.column_mapping
            alternative = self.profile.alternative_mapping

        parser = XlsxParser(
            XlsxParserOptions(
                sheet_name_or_index=self.profile.xlsx.sheet if self.profile.xlsx else None,
                has_header=has_header,
                header_row_count=header_row_count,
                column_mapping=to_column_mapping(mapping),
                default_store_identifier=default_store,
            )
        )
        return self._with_fallback(parser, content, filename, options, alternative)

    @staticmethod
    def _with_fallback(
        parser: CsvParser | XlsxParser,
        content: bytes,
        filename: str,
        options: ParseOptions | None,
        alternative: dict[str, MappingValue] | None,
    ) -> ParseResult:
        result = parser.parse(content, filename, options)

        if result.valid_rows == 0 and result.errors and alternative:
            logger.debug(f"No valid rows in {filename}, trying alternative mapping")
            parser = parser.with_options(column_mapping=to_column_mapping(alternative))
            result = parser.parse(content, filename, options)

        return result

    def _parse_xml(
        self,
        content: bytes,
        filename: str,
        options: ParseOptions | None,
        default_store: str,
    ) -> ParseResult:
        item_paths = (
            self.profile.xml.item_paths if self.profile.xml else ["products.product"]
        )
        mappings = [self.profile.column_mapping]
        if self.profile.alternative_mapping:
            mappings.append(self.profile.alternative_mapping)

        result = ParseResult()
        for mapping in mappings:
            field_mapping = to_field_mapping(mapping)
            for items_path in item_paths:
                parser = XmlParser(
                    XmlParserOptions(
                        items_path=items_path,
                        field_mapping=field_mapping,
                        default_store_identifier=default_store,
                    )
                )
                result = parser.parse(content, filename, options)
                if result.valid_rows > 0:
                    return result

        return result

    def default_store_identifier(self, filename: str) -> str:
        if self.profile.store_resolution == "national" and self.profile.national_store_id:
            return self.profile.national_store_id
        return self.store_identifier_from_filename(filename)

    def store_identifier_from_filename(self, filename: str) -> str:
        """
        Derive a store identifier from a price file name.

        Chain specific patterns (first capture group) take precedence;
        otherwise known prefixes are stripped from the base name.
        """
        base_name = EXTENSION_PATTERN.sub("", filename)

        for pattern in self.store_id_patterns:
            m = pattern.search(base_name)
            if m:
                return m.group(1)

        clean_name = base_name
        for pattern in self.prefix_patterns:
            clean_name = pattern.sub("", clean_name)
        clean_name = clean_name.strip()

        if self.profile.store_resolution == "portal_id":
            m = PORTAL_STORE_PATTERN.search(clean_name)
            if m:
                return m.group(1)

        return clean_name or base_name

    def extract_store_identifier(self, file: DiscoveredFile) -> StoreIdentifier | None:
        resolution = self.profile.store_resolution

        if resolution == "national" and self.profile.national_store_id:
            return StoreIdentifier(type="national", value=self.profile.national_store_id)

        if resolution == "portal_id" and file.metadata.get("storeId"):
            return StoreIdentifier(type="portal_id", value=file.metadata["storeId"])

        identifier = self.store_identifier_from_filename(file.filename)
        if not identifier:
            return None
        return StoreIdentifier(type="filename_code", value=identifier)

    def extract_store_metadata(self, file: DiscoveredFile) -> dict[str, str] | None:
        identifier = self.store_identifier_from_filename(file.filename)
        if not identifier:
            return None
        return {"name": f"{self.name} {identifier}"}

    def validate_row(self, row: NormalizedRow) -> RowValidation:
        errors = []
        warnings = []

        if not row.name or not row.name.strip():
            errors.append("Missing product name")

        if row.price_cents <= 0:
            errors.append("Price must be positive")

        if row.price_cents > MAX_REASONABLE_PRICE_CENTS:
            warnings.append("Price seems unusually high")

        if (
            row.discount_price_cents is not None
            and row.discount_price_cents >= row.price_cents
        ):
            warnings.append("Discount price is not less than regular price")

        if self.profile.strict_gtin:
            for barcode in row.barcodes:
                if not GTIN_PATTERN.match(barcode):
                    warnings.append(
                        f"Invalid GTIN format: {barcode} "
                        "(expected EAN-8, EAN-13, or GTIN-14)"
                    )
            if not row.barcodes:
                warnings.append("No GTIN/barcode found for product")
        else:
            for barcode in row.barcodes:
                if not BARCODE_PATTERN.match(barcode):
                    warnings.append(f"Invalid barcode format: {barcode}")

        return RowValidation(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
        )

    def validate_result(self, result: ParseResult) -> ParseResult:
        """
        Run `validate_row` over parsed rows before they are persisted.

        Rows that fail validation are dropped. Their problems are added as
        errors unless the parser already reported an error for that row.
        Validation warnings are added as warnings.
        """
        flagged = {e.row_number for e in result.errors if e.row_number is not None}
        rows = []
        errors = list(result.errors)
        warnings = list(result.warnings)

        for row in result.rows:
            validation = self.validate_row(row)
            warnings.extend(
                ParseWarning(row_number=row.row_number, message=message)
                for message in validation.warnings
            )
            if validation.is_valid:
                rows.append(row)
            elif row.row_number not in flagged:
                errors.extend(
                    ParseError(
                        row_number=row.row_number,
                        message=message,
                        original_value=row.raw_data or None,
                    )
                    for message in validation.errors
                )

        if len(rows) < len(result.rows):
            logger.debug(f"Dropped {len(result.rows) - len(rows)} rows failing validation")

        return ParseResult(
            rows=rows,
            errors=errors,
            warnings=warnings,
            total_rows=result.total_rows,
            valid_rows=len(rows),
        )
