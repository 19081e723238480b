import threading
from abc import ABC, abstractmethod
from csv import DictReader, DictWriter
from decimal import Decimal
from logging import getLogger
from os import makedirs
from pathlib import Path

from ingest.models import ParseResult, StoreIdentifier
from ingest.normalize import parse_barcodes, parse_quantity

logger = getLogger(__name__)

STORE_COLUMNS = [
    "store_id",
    "source_file",
]

PRODUCT_COLUMNS = [
    "product_id",
    "barcode",
    "name",
    "brand",
    "category",
    "unit",
    "quantity",
    "quantity_value",
    "quantity_unit",
]

PRICE_COLUMNS = [
    "store_id",
    "product_id",
    "price",
    "unit_price",
    "best_price_30",
    "anchor_price",
    "special_price",
    "special_price_start",
    "special_price_end",
]

ERROR_COLUMNS = [
    "source_file",
    "level",
    "row_number",
    "field",
    "message",
    "original_value",
]

FILE_COLUMNS = [
    "dedup_key",
    "source_file",
    "hash",
    "store_id",
    "store_id_type",
    "rows",
    "errors",
]


def cents_to_decimal(cents: int | None) -> Decimal | str:
    if cents is None:
        return ""
    return (Decimal(cents) / 100).quantize(Decimal("0.01"))


def transform_rows(
    chain: str,
    file_key: str,
    result: ParseResult,
) -> tuple[list[dict], list[dict], list[dict]]:
    """
    Transform parsed rows into a structured format for CSV export.

    Args:
        chain: Chain slug, used to build fallback product keys.
        file_key: Storage key (or name) of the source file.
        result: Parse result to transform.

    Returns:
        Tuple containing:
            - List of store dictionaries with STORE_COLUMNS
            - List of product dictionaries with PRODUCT_COLUMNS
            - List of price dictionaries with PRICE_COLUMNS
    """
    store_map = {}
    product_map = {}
    price_list = []

    def maybe(val) -> str:
        return val if val is not None else ""

    for row in result.rows:
        if row.store_identifier not in store_map:
            store_map[row.store_identifier] = {
                "store_id": row.store_identifier,
                "source_file": file_key,
            }

        barcodes = parse_barcodes(",".join(row.barcodes))
        product_id = row.external_id or (barcodes[0] if barcodes else None)
        if not product_id:
            product_id = f"{file_key}#{row.row_number}"

        key = f"{chain}:{product_id}"
        if key not in product_map:
            quantity = parse_quantity(row.unit_quantity)
            product_map[key] = {
                "product_id": product_id,
                "barcode": ",".join(barcodes) or key,
                "name": row.name,
                "brand": maybe(row.brand),
                "category": maybe(row.category),
                "unit": maybe(row.unit),
                "quantity": maybe(row.unit_quantity),
                "quantity_value": quantity.value if quantity else "",
                "quantity_unit": quantity.unit if quantity else "",
            }

        price_list.append(
            {
                "store_id": row.store_identifier,
                "product_id": product_id,
                "price": cents_to_decimal(row.price_cents),
                "unit_price": cents_to_decimal(row.unit_price_cents),
                "best_price_30": cents_to_decimal(row.lowest_price_30d_cents),
                "anchor_price": cents_to_decimal(row.anchor_price_cents),
                "special_price": cents_to_decimal(row.discount_price_cents),
                "special_price_start": maybe(row.discount_start),
                "special_price_end": maybe(row.discount_end),
            }
        )

    return list(store_map.values()), list(product_map.values()), price_list


def transform_errors(file_key: str, result: ParseResult) -> list[dict]:
    def maybe(val) -> str:
        return val if val is not None else ""

    entries = []
    for error in result.errors:
        entries.append(
            {
                "source_file": file_key,
                "level": "error",
                "row_number": maybe(error.row_number),
                "field": maybe(error.field),
                "message": error.message,
                "original_value": maybe(error.original_value),
            }
        )
    for warning in result.warnings:
        entries.append(
            {
                "source_file": file_key,
                "level": "warning",
                "row_number": maybe(warning.row_number),
                "field": maybe(warning.field),
                "message": warning.message,
                "original_value": "",
            }
        )
    return entries


def append_csv(path: Path, data: list[dict], columns: list[str]):
    """
    Append rows to a CSV file, writing the header if the file is new.

    Args:
        path: Path to the CSV file.
        data: List of dictionaries containing the data to save.
        columns: List of column names for the CSV file.
    """
    if not data:
        return

    if set(columns) != set(data[0].keys()):
        raise ValueError(
            f"Column mismatch: expected {columns}, got {list(data[0].keys())}"
        )

    is_new = not path.exists() or path.stat().st_size == 0
    with open(path, "a", newline="", encoding="utf-8") as f:
        writer = DictWriter(f, fieldnames=columns)
        if is_new:
            writer.writeheader()
        for row in data:
            writer.writerow({k: str(v) for k, v in row.items()})


class RowSink(ABC):
    """
    Destination for parsed rows, errors and warnings.
    """

    @abstractmethod
    def write(
        self,
        run_id: str,
        chain_slug: str,
        file_key: str,
        result: ParseResult,
        file_hash: str | None = None,
        dedup_key: str | None = None,
        store: StoreIdentifier | None = None,
    ) -> bool:
        """
        Persist the result of parsing one file.

        Args:
            run_id: Run the file belongs to.
            chain_slug: Chain the file belongs to.
            file_key: Storage key (or name) of the source file.
            result: Parse result to persist.
            file_hash: SHA-256 of the file content.
            dedup_key: Identity of the parse; a result with a key that was
                already written is not written again.
            store: Store the whole file belongs to, if known.

        Returns:
            True if the result was written, False if it was skipped as a
            duplicate.
        """

    def write_failure(self, run_id: str, chain_slug: str, file_key: str, message: str):
        """Record a file that could not be processed at all."""
        logger.error(f"Run {run_id} ({chain_slug}) failed on {file_key}: {message}")


class CsvRowSink(RowSink):
    """
    Writes parsed rows as CSV files, one directory per run and chain:

    * stores.csv - stores seen, with STORE_COLUMNS
    * products.csv - products, with PRODUCT_COLUMNS
    * prices.csv - prices per store, with PRICE_COLUMNS
    * errors.csv - parse errors and warnings, with ERROR_COLUMNS
    * files.csv - one entry per written file, with FILE_COLUMNS

    Stores and products are written once per run and chain. Results with a
    dedup key already listed in files.csv are skipped, so a redelivered
    parse message doesn't duplicate prices.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.Lock()
        self._seen_stores: dict[tuple[str, str], set[str]] = {}
        self._seen_products: dict[tuple[str, str], set[str]] = {}
        self._processed: dict[tuple[str, str], set[str]] = {}

    def chain_path(self, run_id: str, chain_slug: str) -> Path:
        return self.root / run_id / chain_slug

    def _processed_keys(self, run_id: str, chain_slug: str) -> set[str]:
        # Must be called with the lock held
        keys = self._processed.get((run_id, chain_slug))
        if keys is None:
            keys = set()
            manifest = self.chain_path(run_id, chain_slug) / "files.csv"
            if manifest.exists():
                with open(manifest, newline="", encoding="utf-8") as f:
                    keys.update(row["dedup_key"] for row in DictReader(f))
            self._processed[(run_id, chain_slug)] = keys
        return keys

    def write(
        self,
        run_id: str,
        chain_slug: str,
        file_key: str,
        result: ParseResult,
        file_hash: str | None = None,
        dedup_key: str | None = None,
        store: StoreIdentifier | None = None,
    ) -> bool:
        path = self.chain_path(run_id, chain_slug)
        stores, products, prices = transform_rows(chain_slug, file_key, result)
        errors = transform_errors(file_key, result)
        key = dedup_key or file_key
        manifest_entry = {
            "dedup_key": key,
            "source_file": file_key,
            "hash": file_hash or "",
            "store_id": store.value if store else "",
            "store_id_type": store.type if store else "",
            "rows": len(result.rows),
            "errors": len(result.errors),
        }

        with self._lock:
            processed = self._processed_keys(run_id, chain_slug)
            if dedup_key is not None and dedup_key in processed:
                logger.info(f"Skipped {file_key}: already written as {dedup_key}")
                return False

            makedirs(path, exist_ok=True)

            seen_stores = self._seen_stores.setdefault((run_id, chain_slug), set())
            new_stores = [s for s in stores if s["store_id"] not in seen_stores]
            seen_stores.update(s["store_id"] for s in new_stores)

            seen_products = self._seen_products.setdefault((run_id, chain_slug), set())
            new_products = [p for p in products if p["product_id"] not in seen_products]
            seen_products.update(p["product_id"] for p in new_products)

            append_csv(path / "stores.csv", new_stores, STORE_COLUMNS)
            append_csv(path / "products.csv", new_products, PRODUCT_COLUMNS)
            append_csv(path / "prices.csv", prices, PRICE_COLUMNS)
            append_csv(path / "errors.csv", errors, ERROR_COLUMNS)
            append_csv(path / "files.csv", [manifest_entry], FILE_COLUMNS)
            processed.add(key)

        logger.info(
            f"Saved {len(prices)} prices from {file_key} to {path} "
            f"({len(result.errors)} errors, {len(result.warnings)} warnings)"
        )
        return True

    def write_failure(self, run_id: str, chain_slug: str, file_key: str, message: str):
        super().write_failure(run_id, chain_slug, file_key, message)
        path = self.chain_path(run_id, chain_slug)
        entry = {
            "source_file": file_key,
            "level": "failed",
            "row_number": "",
            "field": "",
            "message": message,
            "original_value": "",
        }
        with self._lock:
            makedirs(path, exist_ok=True)
            append_csv(path / "errors.csv", [entry], ERROR_COLUMNS)
