import datetime
import math
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

CROATIAN_DECIMAL = re.compile(r"^-?[\d.]*,\d+$")
QUANTITY_PATTERN = re.compile(r"^(-?[\d.,]+)\s*([a-zA-Z]+)$")
PACK_PATTERN = re.compile(r"^(\d+)\s*[xX]\s*([\d.,]+)\s*([a-zA-Z]+)$")
BARCODE_SEPARATORS = re.compile(r"[,;|]")

ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")
EU_DATE = re.compile(r"^(\d{1,2})[./](\d{1,2})[./](\d{4})")

EXCEL_EPOCH = datetime.date(1899, 12, 31)

UNIT_ALIASES = {
    "g": "G",
    "gr": "G",
    "gram": "G",
    "grama": "G",
    "kg": "KG",
    "kilogram": "KG",
    "kilograma": "KG",
    "ml": "ML",
    "l": "L",
    "lit": "L",
    "litra": "L",
    "litre": "L",
    "liter": "L",
    "kom": "KOM",
    "komad": "KOM",
    "komada": "KOM",
    "pcs": "KOM",
    "pc": "KOM",
    "piece": "KOM",
    "pieces": "KOM",
    "pak": "PAK",
    "pack": "PAK",
    "m": "M",
    "cm": "CM",
    "mm": "MM",
}


@dataclass(frozen=True, slots=True)
class ParsedQuantity:
    value: float
    unit: str


@dataclass(frozen=True, slots=True)
class ParsedPack:
    pack_count: int
    pack_unit_value: float
    pack_unit_unit: str


def _decimal_text(value: str | None) -> str | None:
    """
    Rewrite a locale-formatted number into plain dot-decimal text.

    Croatian exports use "," as the decimal separator and "." for
    thousands ("1.234,56"), and often drop the leading zero (",69").
    Anything that doesn't look Croatian is passed through unchanged.
    """
    if value is None:
        return None

    text = value.strip()
    if not text:
        return None

    if text.startswith(","):
        text = "0" + text

    if CROATIAN_DECIMAL.match(text):
        text = text.replace(".", "").replace(",", ".")

    return text


def _to_decimal(text: str) -> Decimal | None:
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def decimal_to_cents(amount: Decimal) -> int | None:
    """Round an amount to whole cents (half-up), None if it can't be represented."""
    try:
        return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except InvalidOperation:
        # quantize() fails once the result needs more digits than the context has
        return None


def normalize_decimal(value: str | None) -> float | None:
    """
    Parse a decimal number in either Croatian or dot-decimal notation.

    Examples:
        "12,99" -> 12.99
        "1.234,56" -> 1234.56
        ",69" -> 0.69
        "12.99" -> 12.99

    Returns:
        The parsed value, or None if the input is empty or not a number.
    """
    text = _decimal_text(value)
    if text is None:
        return None

    amount = _to_decimal(text)
    return float(amount) if amount is not None else None


def price_to_cents(value: str | None) -> int | None:
    """
    Convert a price string to integer cents (half-up rounding).

    Returns None if the value can't be parsed.
    """
    text = _decimal_text(value)
    if text is None:
        return None

    amount = _to_decimal(text)
    if amount is None:
        return None

    return decimal_to_cents(amount)


def normalize_unit(unit: str) -> str:
    lower = unit.strip().lower()
    return UNIT_ALIASES.get(lower, unit.strip().upper())


def parse_quantity(value: str | None) -> ParsedQuantity | None:
    """
    Parse a quantity with a unit, e.g. "500g", "1,5 L" or "10 kom".
    """
    if not value:
        return None

    m = QUANTITY_PATTERN.match(value.strip())
    if not m:
        return None

    number = normalize_decimal(m.group(1))
    if number is None:
        return None

    return ParsedQuantity(value=number, unit=normalize_unit(m.group(2)))


def parse_pack_notation(value: str | None) -> ParsedPack | None:
    """
    Parse multipack notation such as "6x500ml" or "4 x 1,5L".
    """
    if not value:
        return None

    m = PACK_PATTERN.match(value.strip())
    if not m:
        return None

    count = int(m.group(1))
    unit_value = normalize_decimal(m.group(2))
    if count <= 0 or unit_value is None:
        return None

    return ParsedPack(
        pack_count=count,
        pack_unit_value=unit_value,
        pack_unit_unit=normalize_unit(m.group(3)),
    )


def clean_barcode(value: str | None) -> str | None:
    """
    Clean up a single barcode value.

    Removes spreadsheet formula quoting (="123"), surrounding quotes and
    whitespace. Returns None unless what's left is all digits.
    """
    if not value:
        return None

    cleaned = value.strip()

    if cleaned.startswith('="') and cleaned.endswith('"'):
        cleaned = cleaned[2:-1]

    if len(cleaned) >= 2 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1]

    cleaned = re.sub(r"\s", "", cleaned)
    cleaned = cleaned.replace('"', "").replace("'", "")

    if not cleaned.isdigit() or not cleaned.isascii():
        return None

    return cleaned


def parse_barcodes(value: str | None) -> list[str]:
    """Split a barcode list on , ; or | and keep only the valid entries."""
    if not value:
        return []

    barcodes = []
    for part in BARCODE_SEPARATORS.split(value):
        cleaned = clean_barcode(part)
        if cleaned is not None:
            barcodes.append(cleaned)
    return barcodes


def clean_string(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = " ".join(value.split())
    return cleaned or None


def parse_price_cents(value: str | None) -> int | None:
    """
    Parse a price as it appears in a price list into cents.

    Currency symbols and whitespace are ignored. Whichever of "," or "."
    occurs last is taken as the decimal separator, the other one as the
    thousands separator ("1.234,56" and "1,234.56" are both 123456).

    Returns:
        Price in cents, or None if the value is not a valid price.
    """
    if value is None:
        return None

    cleaned = re.sub(r"[€$£\s]", "", value)
    if not cleaned:
        return None

    last_dot = cleaned.rfind(".")
    last_comma = cleaned.rfind(",")

    if last_comma > last_dot:
        cleaned = cleaned.replace(".", "").replace(",", ".", 1)
    elif last_dot > last_comma:
        cleaned = cleaned.replace(",", "")

    if cleaned.startswith("."):
        cleaned = "0" + cleaned

    amount = _to_decimal(cleaned)
    if amount is None:
        return None

    return decimal_to_cents(amount)


def parse_date(value: str | None) -> datetime.date | None:
    """
    Parse a date in ISO (YYYY-MM-DD) or Croatian (D.M.YYYY, D/M/YYYY) format.
    """
    if not value:
        return None

    text = value.strip()

    m = ISO_DATE.match(text)
    if m:
        year, month, day = m.groups()
    else:
        m = EU_DATE.match(text)
        if not m:
            return None
        day, month, year = m.groups()

    try:
        return datetime.date(int(year), int(month), int(day))
    except ValueError:
        return None


def excel_serial_to_date(serial: float) -> datetime.date | None:
    """
    Convert an Excel date serial number to a date.

    Excel counts days from 1899-12-31 and wrongly treats 1900 as a leap
    year, so serials after 59 (1900-02-28) are one day ahead.
    """
    if not math.isfinite(serial) or serial < 1:
        return None

    days = int(serial)
    if days > 59:
        days -= 1

    try:
        return EXCEL_EPOCH + datetime.timedelta(days=days)
    except OverflowError:
        return None
