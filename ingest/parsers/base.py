import datetime
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from ingest.models import (
    FileType,
    NormalizedRow,
    ParseError,
    ParseResult,
    ParseWarning,
)
from ingest.normalize import (
    clean_string,
    decimal_to_cents,
    excel_serial_to_date,
    parse_date,
    parse_price_cents,
)

logger = logging.getLogger(__name__)

ColumnMapping = dict[str, str | int]
"""Mapping from normalized field name to a column header or 0-based index."""

TEXT_FIELDS = [
    "external_id",
    "name",
    "description",
    "category",
    "subcategory",
    "brand",
    "unit",
    "unit_quantity",
    "image_url",
    "unit_price_base_quantity",
    "unit_price_base_unit",
]

# Secondary price fields: invalid values are dropped with a warning.
OPTIONAL_PRICE_FIELDS = {
    "discount_price": "discount_price_cents",
    "unit_price": "unit_price_cents",
    "lowest_price_30d": "lowest_price_30d_cents",
    "anchor_price": "anchor_price_cents",
}

DATE_FIELDS = ["discount_start", "discount_end", "anchor_price_as_of"]

MAPPABLE_FIELDS = (
    ["store_identifier", "price", "barcodes"]
    + TEXT_FIELDS
    + list(OPTIONAL_PRICE_FIELDS)
    + DATE_FIELDS
)

REQUIRED_FIELDS = ["name", "price"]


@dataclass
class ParseOptions:
    limit: int | None = None
    skip_invalid: bool = False


@dataclass
class ParseContext:
    """
    Per-parse state: the raw input plus collected errors and warnings.
    """

    content: bytes
    filename: str
    options: ParseOptions
    errors: list[ParseError] = field(default_factory=list)
    warnings: list[ParseWarning] = field(default_factory=list)

    def add_error(
        self,
        message: str,
        row_number: int | None = None,
        field: str | None = None,
        original_value: str | None = None,
    ):
        self.errors.append(
            ParseError(
                row_number=row_number,
                field=field,
                message=message,
                original_value=original_value,
            )
        )

    def add_warning(
        self,
        message: str,
        row_number: int | None = None,
        field: str | None = None,
    ):
        self.warnings.append(
            ParseWarning(row_number=row_number, field=field, message=message)
        )


def cell_to_cents(value: Any) -> int | None:
    """Convert a price cell (text or typed number) into cents."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        if not amount.is_finite():
            return None
        return decimal_to_cents(amount)
    return parse_price_cents(str(value))


def cell_to_date(value: Any) -> datetime.date | None:
    """Convert a date cell (text, datetime or spreadsheet serial) into a date."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return excel_serial_to_date(value)
    return parse_date(str(value))


def cell_to_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        # Spreadsheets store codes and barcodes as floats
        value = int(value)
    return clean_string(str(value))


def split_barcodes(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        parts = [cell_to_text(v) for v in value]
    else:
        text = cell_to_text(value) or ""
        parts = [p.strip() for p in text.split(",")]
    return [p for p in parts if p]


class Parser(ABC):
    """
    Base class for format parsers.

    A parser turns raw file content plus a field mapping into a
    ParseResult. Parsers never raise: structural problems become a
    single file-level error, per-row problems become row-scoped errors
    or warnings.
    """

    FILE_TYPE: FileType
    EXTENSIONS: tuple[str, ...]

    def can_parse(self, filename: str) -> bool:
        return filename.lower().endswith(self.EXTENSIONS)

    def parse(
        self,
        content: bytes,
        filename: str,
        options: ParseOptions | None = None,
    ) -> ParseResult:
        """
        Parse the file content into normalized rows.

        Args:
            content: Raw file content
            filename: Name of the file (used for logging and diagnostics)
            options: Row limit and skip-invalid behaviour

        Returns:
            ParseResult with rows, errors and warnings
        """
        ctx = ParseContext(
            content=content,
            filename=filename,
            options=options or ParseOptions(),
        )

        try:
            rows, total_rows = self.parse_rows(ctx)
        except Exception as e:
            logger.error(f"Error parsing {filename}: {e}", exc_info=True)
            ctx.add_error(f"Parser error: {e}")
            return ParseResult(
                rows=[],
                errors=ctx.errors,
                warnings=ctx.warnings,
                total_rows=0,
                valid_rows=0,
            )

        if ctx.options.limit is not None:
            rows = rows[: ctx.options.limit]

        logger.debug(
            f"Parsed {len(rows)}/{total_rows} rows from {filename} "
            f"({len(ctx.errors)} errors, {len(ctx.warnings)} warnings)"
        )

        return ParseResult(
            rows=rows,
            errors=ctx.errors,
            warnings=ctx.warnings,
            total_rows=total_rows,
            valid_rows=len(rows),
        )

    @abstractmethod
    def parse_rows(self, ctx: ParseContext) -> tuple[list[NormalizedRow], int]:
        """
        Parse all rows.

        Returns:
            Tuple of (rows, total number of source rows seen)
        """
        pass

    @staticmethod
    def decode_content(content: bytes, encoding: str | None = None) -> str:
        if encoding is None:
            if content.startswith(b"\xff\xfe") or content.startswith(b"\xfe\xff"):
                encoding = "utf-16"
            else:
                encoding = "utf-8-sig"
        elif encoding.lower().replace("_", "-") in ("utf-8", "utf8"):
            encoding = "utf-8-sig"
        return content.decode(encoding, errors="replace")

    @staticmethod
    def validate_required_fields(row: NormalizedRow) -> list[str]:
        errors = []
        if not row.name or not row.name.strip():
            errors.append("Missing required field: name")
        if row.price_cents < 0:
            errors.append("Invalid or missing price")
        if not row.store_identifier or not row.store_identifier.strip():
            errors.append("Missing required field: storeIdentifier")
        return errors

    def process_row(
        self,
        ctx: ParseContext,
        get: Callable[[str], Any],
        row_number: int,
        default_store_identifier: str,
        raw_data: str,
    ) -> NormalizedRow | None:
        """
        Build a normalized row from field values and validate it.

        Args:
            ctx: Parse context for error reporting
            get: Returns the raw value for a normalized field name, or None
            row_number: 1-based row number for diagnostics
            default_store_identifier: Used when the row has no store column
            raw_data: JSON encoded source row

        Returns:
            The row, or None if it is invalid and skip_invalid is set
        """
        errors_before = len(ctx.errors)
        data: dict[str, Any] = {}

        for name in TEXT_FIELDS:
            data[name] = cell_to_text(get(name))

        price_value = get("price")
        price_cents = cell_to_cents(price_value)
        if price_cents is None:
            if price_value is None or price_value == "":
                ctx.add_error(
                    "Invalid or missing price",
                    row_number=row_number,
                    field="price",
                    original_value=raw_data,
                )
            else:
                ctx.add_error(
                    "Invalid price value",
                    row_number=row_number,
                    field="price",
                    original_value=str(price_value),
                )
        data["price_cents"] = price_cents if price_cents is not None else 0

        for name, target in OPTIONAL_PRICE_FIELDS.items():
            value = get(name)
            cents = cell_to_cents(value)
            if cents is None and value is not None and value != "":
                ctx.add_warning(
                    f"Invalid {name.replace('_', ' ')} value, ignoring",
                    row_number=row_number,
                    field=name,
                )
            data[target] = cents

        for name in DATE_FIELDS:
            data[name] = cell_to_date(get(name))

        data["barcodes"] = split_barcodes(get("barcodes"))
        data["store_identifier"] = (
            cell_to_text(get("store_identifier")) or default_store_identifier
        )

        row = NormalizedRow(
            name=data.pop("name") or "",
            row_number=row_number,
            raw_data=raw_data,
            **data,
        )

        for message in self.validate_required_fields(row):
            ctx.add_error(message, row_number=row_number, original_value=raw_data)

        if len(ctx.errors) > errors_before and ctx.options.skip_invalid:
            return None
        return row

    @staticmethod
    def dump_raw(value: Any) -> str:
        return json.dumps(value, ensure_ascii=False, default=str)


def resolve_columns(
    headers: list[str],
    mapping: ColumnMapping | None,
    ctx: ParseContext,
) -> dict[str, int] | None:
    """
    Resolve a column mapping against a header row.

    Header names are matched case-insensitively. Returns None (and records
    a single structural error) if a required field can't be resolved.
    """
    if not mapping:
        ctx.add_error("No column mapping provided, cannot map columns to fields")
        return None

    lookup = {}
    for idx, header in enumerate(headers):
        lookup.setdefault(str(header).strip().lower(), idx)

    indices = {}
    for name in MAPPABLE_FIELDS:
        column = mapping.get(name)
        if column is None:
            continue
        if isinstance(column, int):
            indices[name] = column
            continue
        idx = lookup.get(column.strip().lower())
        if idx is None:
            ctx.add_warning(f'Column "{column}" for field "{name}" not found in headers')
            continue
        indices[name] = idx

    missing = [name for name in REQUIRED_FIELDS if name not in indices]
    if missing:
        ctx.add_error(
            f"Column mapping missing required field: {', '.join(missing)}",
            field=missing[0],
        )
        return None

    return indices
