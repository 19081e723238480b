import logging
from dataclasses import dataclass, replace

from ingest.models import NormalizedRow

from .base import ColumnMapping, ParseContext, Parser, resolve_columns

logger = logging.getLogger(__name__)

DELIMITERS = [",", ";", "\t"]
ENCODINGS = ["utf-8", "windows-1250", "iso-8859-2"]

# Windows-1250 bytes for Š š Đ đ Č č Ž ž Ć ć
WINDOWS_1250_LETTERS = {0x8A, 0x9A, 0xD0, 0xF0, 0xC8, 0xE8, 0x8E, 0x9E, 0xC6, 0xE6}


@dataclass(frozen=True)
class CsvParserOptions:
    delimiter: str = ","
    encoding: str = "utf-8"
    has_header: bool = True
    skip_empty_rows: bool = True
    quote_char: str = '"'
    column_mapping: ColumnMapping | None = None
    default_store_identifier: str = ""


class CsvParser(Parser):
    """
    Delimited text parser with a configurable delimiter, quote character
    and encoding. Columns are addressed by header name or 0-based index.
    """

    FILE_TYPE = "csv"
    EXTENSIONS = (".csv",)

    def __init__(self, options: CsvParserOptions | None = None):
        self.options = options or CsvParserOptions()

    def with_options(self, **changes) -> "CsvParser":
        return CsvParser(replace(self.options, **changes))

    def parse_rows(self, ctx: ParseContext) -> tuple[list[NormalizedRow], int]:
        opts = self.options

        text = self.decode_content(ctx.content, opts.encoding)
        raw_rows = split_rows(text, opts.delimiter, opts.quote_char)

        if not raw_rows:
            ctx.add_warning("CSV file is empty")
            return [], 0

        headers: list[str] = []
        start = 0
        if opts.has_header:
            headers = raw_rows[0]
            start = 1

        total_rows = len(raw_rows) - start

        columns = resolve_columns(headers, opts.column_mapping, ctx)
        if columns is None:
            return [], total_rows

        rows = []
        for i in range(start, len(raw_rows)):
            raw = raw_rows[i]
            row_number = i + 1

            if opts.skip_empty_rows and all(cell == "" for cell in raw):
                continue

            def get(name: str, raw=raw) -> str | None:
                idx = columns.get(name)
                if idx is None or idx >= len(raw):
                    return None
                return raw[idx] or None

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


def split_line(line: str, delimiter: str = ",", quote_char: str = '"') -> list[str]:
    """
    Split a single CSV line into trimmed fields.

    Quoted fields may contain the delimiter, and a doubled quote
    character inside a quoted field stands for a literal quote.
    """
    fields = []
    current: list[str] = []
    in_quotes = False
    i = 0
    n = len(line)

    while i < n:
        char = line[i]
        if in_quotes:
            if char == quote_char:
                if i + 1 < n and line[i + 1] == quote_char:
                    current.append(quote_char)
                    i += 2
                    continue
                in_quotes = False
            else:
                current.append(char)
        elif char == quote_char:
            in_quotes = True
        elif char == delimiter:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1

    fields.append("".join(current).strip())
    return fields


def split_rows(text: str, delimiter: str = ",", quote_char: str = '"') -> list[list[str]]:
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    if text.endswith("\n"):
        text = text[:-1]
    if not text:
        return []

    rows = []
    for line in text.split("\n"):
        if not line.strip():
            rows.append([])
            continue
        rows.append(split_line(line, delimiter, quote_char))
    return rows


def detect_delimiter(text: str) -> str:
    """
    Guess the delimiter from the first few lines.

    The winner is the delimiter whose per-line count is high and
    consistent across lines.
    """
    lines = [line for line in text.split("\n")[:5] if line.strip()]
    best = ","
    best_score = 0.0

    for delimiter in DELIMITERS:
        counts = [line.count(delimiter) for line in lines]
        if not counts:
            continue
        avg = sum(counts) / len(counts)
        variance = sum((c - avg) ** 2 for c in counts) / len(counts)
        score = avg / (1 + variance) if avg > 0 else 0.0
        if score > best_score:
            best_score = score
            best = delimiter

    return best


def detect_encoding(content: bytes) -> str:
    """
    Guess between UTF-8 and Windows-1250.

    A UTF-8 BOM wins outright. Otherwise, more than two bytes in the
    first 1000 that are Croatian letters in Windows-1250 mean the file
    is Windows-1250.
    """
    if content.startswith(b"\xef\xbb\xbf"):
        return "utf-8"

    score = sum(1 for byte in content[:1000] if byte in WINDOWS_1250_LETTERS)
    if score > 2:
        return "windows-1250"

    return "utf-8"
