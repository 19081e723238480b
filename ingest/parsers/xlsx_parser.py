import logging
from dataclasses import dataclass, replace
from io import BytesIO
from typing import Any
from zipfile import BadZipfile

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from ingest.models import NormalizedRow

from .base import ColumnMapping, ParseContext, Parser, resolve_columns

logger = logging.getLogger(__name__)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def load_workbook(content: bytes) -> Any:
    return openpyxl.load_workbook(BytesIO(content), read_only=True, data_only=True)


def read_sheet(worksheet: Any, skip_blank: bool = True) -> list[tuple[int, list[Any]]]:
    """Read the rows of a worksheet as (sheet row number, cell values) pairs."""
    rows = []
    for row_number, row in enumerate(worksheet.iter_rows(values_only=True), start=1):
        values = list(row)
        if skip_blank and all(_is_blank(v) for v in values):
            continue
        rows.append((row_number, values))
    return rows


@dataclass(frozen=True)
class XlsxParserOptions:
    sheet_name_or_index: str | int | None = None
    has_header: bool = True
    header_row_count: int = 0
    skip_empty_rows: bool = True
    column_mapping: ColumnMapping | None = None
    default_store_identifier: str = ""


class XlsxParser(Parser):
    """
    Spreadsheet parser.

    Numeric and date cells are used as typed values; text cells go
    through the same price and date parsing as the text formats.
    """

    FILE_TYPE = "xlsx"
    EXTENSIONS = (".xlsx",)

    def __init__(self, options: XlsxParserOptions | None = None):
        self.options = options or XlsxParserOptions()

    def with_options(self, **changes) -> "XlsxParser":
        return XlsxParser(replace(self.options, **changes))

    def parse_rows(self, ctx: ParseContext) -> tuple[list[NormalizedRow], int]:
        opts = self.options

        try:
            workbook = load_workbook(ctx.content)
        except (BadZipfile, InvalidFileException, KeyError, OSError) as e:
            ctx.add_error(f"Failed to parse Excel file: {e}")
            return [], 0

        try:
            worksheet = self._select_sheet(workbook, opts.sheet_name_or_index, ctx)
            if worksheet is None:
                return [], 0
            raw_rows = read_sheet(worksheet, opts.skip_empty_rows)
        finally:
            workbook.close()

        if not raw_rows:
            ctx.add_warning("Excel file is empty")
            return [], 0

        headers: list[str] = []
        start = opts.header_row_count
        if opts.has_header:
            header_idx = max(opts.header_row_count, 1) - 1
            if header_idx < len(raw_rows):
                _, header = raw_rows[header_idx]
                headers = ["" if v is None else str(v).strip() for v in header]
            start = max(start, 1)

        total_rows = max(len(raw_rows) - start, 0)

        columns = resolve_columns(headers, opts.column_mapping, ctx)
        if columns is None:
            return [], total_rows

        rows = []
        for i in range(start, len(raw_rows)):
            row_number, raw = raw_rows[i]

            def get(name: str, raw=raw) -> Any:
                idx = columns.get(name)
                if idx is None or idx >= len(raw) or _is_blank(raw[idx]):
                    return None
                return raw[idx]

            row = self.process_row(
                ctx,
                get,
                row_number,
                opts.default_store_identifier,
                self.dump_raw(raw),
            )
            if row is not None:
                rows.append(row)

        return rows, total_rows

    @staticmethod
    def _select_sheet(workbook: Any, sheet: str | int | None, ctx: ParseContext) -> Any:
        names = workbook.sheetnames

        if sheet is None:
            return workbook[names[0]] if names else None

        if isinstance(sheet, int):
            if sheet < 0 or sheet >= len(names):
                ctx.add_error(
                    f"Sheet index {sheet} not found. Workbook has {len(names)} sheets."
                )
                return None
            return workbook[names[sheet]]

        if sheet not in names:
            ctx.add_error(
                f'Sheet "{sheet}" not found. Available sheets: {", ".join(names)}'
            )
            return None
        return workbook[sheet]


def get_sheet_names(content: bytes) -> list[str]:
    workbook = load_workbook(content)
    try:
        return list(workbook.sheetnames)
    finally:
        workbook.close()


def detect_xlsx_headers(content: bytes, sheet: str | int = 0) -> list[str]:
    """
    Return the first non-empty row of a sheet, as header strings.

    Useful for building a column mapping for a new spreadsheet layout.
    """
    workbook = load_workbook(content)
    try:
        names = workbook.sheetnames
        name = names[sheet] if isinstance(sheet, int) else sheet
        for row in workbook[name].iter_rows(values_only=True):
            if any(not _is_blank(v) for v in row):
                return ["" if v is None else str(v).strip() for v in row]
        return []
    finally:
        workbook.close()
