import datetime
import gc
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError, as_completed
from dataclasses import dataclass
from pathlib import Path
from time import time

import httpx

from ingest.archive import ArchiveError, expand_archive
from ingest.chains.adapter import ChainAdapter
from ingest.chains.discovery import detect_file_type
from ingest.chains.registry import get_adapter, get_chains
from ingest.fetch import FetchRetryError, compute_sha256
from ingest.models import StoreIdentifier
from ingest.output import CsvRowSink, RowSink
from ingest.parsers.base import ParseOptions

logger = logging.getLogger(__name__)

OVERALL_TIMEOUT_SECONDS = 1200
MAX_PARALLEL_CHAINS = 4


@dataclass
class IngestResult:
    elapsed_time: float = 0
    n_files: int = 0
    n_rows: int = 0
    n_errors: int = 0


def parse_into_sink(
    adapter: ChainAdapter,
    sink: RowSink,
    run_id: str,
    file_key: str,
    filename: str,
    content: bytes,
    options: ParseOptions | None = None,
    store: StoreIdentifier | None = None,
) -> IngestResult:
    result = adapter.validate_result(adapter.parse(content, filename, options))
    sink.write(
        run_id,
        adapter.slug,
        file_key,
        result,
        file_hash=compute_sha256(content),
        store=store,
    )
    return IngestResult(
        n_files=1,
        n_rows=result.valid_rows,
        n_errors=len(result.errors),
    )


def ingest_chain(
    chain: str,
    date: datetime.date | None,
    sink: RowSink,
    run_id: str,
    options: ParseOptions | None = None,
) -> IngestResult:
    """
    Discover, download and parse one chain's price files in-process.

    Args:
        chain: The retail chain slug.
        date: The date for which to fetch price lists (None for latest).
        sink: Where parsed rows are written.
        run_id: Identifier grouping the output of this run.
        options: Parse options.

    Raises:
        ValueError: If the chain is unknown.
    """
    adapter = get_adapter(chain)
    total = IngestResult()
    t0 = time()

    try:
        files = adapter.discover(date)
        if not files:
            logger.warning(f"No {chain} price files found for {date or 'today'}")

        for file in files:
            try:
                fetched = adapter.fetch(file)
            except (FetchRetryError, httpx.HTTPError, OSError) as e:
                logger.error(f"Error downloading {file.url}: {e}", exc_info=True)
                continue

            if file.type == "zip":
                try:
                    entries = expand_archive(fetched.content)
                except ArchiveError as e:
                    logger.error(f"Error expanding {file.filename}: {e}")
                    continue
                parts = [
                    (f"{file.filename}/{e.name}", e.basename, e.content)
                    for e in entries
                    if detect_file_type(e.basename, adapter.profile.file_type)
                    != "zip"
                ]
            else:
                parts = [(file.filename, file.filename, fetched.content)]

            for file_key, filename, content in parts:
                r = parse_into_sink(
                    adapter,
                    sink,
                    run_id,
                    file_key,
                    filename,
                    content,
                    options,
                    store=adapter.extract_store_identifier(file),
                )
                total.n_files += r.n_files
                total.n_rows += r.n_rows
                total.n_errors += r.n_errors
    finally:
        adapter.close()

    total.elapsed_time = time() - t0
    return total


def ingest_chain_with_cleanup(
    chain: str,
    date: datetime.date | None,
    sink: RowSink,
    run_id: str,
) -> IngestResult:
    try:
        logger.info(f"Starting ingestion for {chain}")
        result = ingest_chain(chain, date, sink, run_id)
        logger.info(
            f"Completed ingestion for {chain}: {result.n_files} files, "
            f"{result.n_rows} rows, {result.n_errors} errors "
            f"in {result.elapsed_time:.2f}s"
        )
        return result
    except Exception as e:
        logger.error(f"Failed to ingest {chain}: {e}", exc_info=True)
        return IngestResult()
    finally:
        gc.collect()


def ingest(
    root: Path,
    date: datetime.date | None = None,
    chains: list[str] | None = None,
) -> dict[str, IngestResult]:
    """
    Ingest multiple retail chains in parallel and save the rows as CSV.

    Args:
        root: The base directory path where the data will be saved.
        date: The date for which to fetch price lists. If None, uses today's date.
        chains: Chain slugs to ingest. If None, ingests all supported chains.

    Returns:
        Results per chain.
    """
    if chains is None:
        chains = get_chains()

    if date is None:
        date = datetime.date.today()

    run_id = f"{date:%Y-%m-%d}"
    sink = CsvRowSink(root)
    results: dict[str, IngestResult] = {}

    logger.info(f"Starting parallel ingestion of {len(chains)} chains")
    t0 = time()

    with ThreadPoolExecutor(max_workers=min(len(chains), MAX_PARALLEL_CHAINS) or 1) as executor:
        future_to_chain = {
            executor.submit(ingest_chain_with_cleanup, chain, date, sink, run_id): chain
            for chain in chains
        }
        try:
            for future in as_completed(future_to_chain, timeout=OVERALL_TIMEOUT_SECONDS):
                results[future_to_chain[future]] = future.result()
        except TimeoutError:
            logger.error(
                f"Ingestion timed out after {OVERALL_TIMEOUT_SECONDS // 60} minutes"
            )
            for chain in chains:
                results.setdefault(chain, IngestResult())

    t1 = time()
    logger.info(f"Ingested {','.join(chains)} for {date:%Y-%m-%d} in {t1 - t0:.2f}s")
    for chain, r in results.items():
        logger.info(
            f"  * {chain}: {r.n_files} files, {r.n_rows} rows, {r.n_errors} errors "
            f"in {r.elapsed_time:.2f}s"
        )

    return results
