#!/usr/bin/env python3
import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from ingest.chains.registry import get_adapter, get_chains
from ingest.crawl import ingest
from ingest.fetch import compute_sha256
from ingest.output import CsvRowSink
from ingest.parsers.base import ParseOptions


def parse_date(date_str):
    """Parse a date string in YYYY-MM-DD format."""
    if not date_str:
        return None
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError("Date must be in YYYY-MM-DD format")


def setup_logging(log_level):
    """Configure logging for the ingest package."""
    level_map = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    level = level_map.get(log_level.lower(), logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s:%(name)s:%(levelname)s:%(message)s",
        stream=sys.stderr,
    )

    # Only enable logs from the ingest package
    for handler in logging.root.handlers:
        handler.addFilter(lambda record: record.name.startswith("ingest"))

    for logger_name in logging.root.manager.loggerDict:
        if not logger_name.startswith("ingest"):
            logging.getLogger(logger_name).setLevel(logging.ERROR)


def check_chain(parser: argparse.ArgumentParser, chain: str):
    available_chains = get_chains()
    if chain not in available_chains:
        parser.error(
            f"Unknown chain '{chain}'. Available chains: {', '.join(available_chains)}"
        )


def cmd_list(args, parser):
    print("Supported retail chains:")
    for chain_name in get_chains():
        print(f"  - {chain_name}")
    return 0


def cmd_discover(args, parser):
    check_chain(parser, args.chain)
    adapter = get_adapter(args.chain)
    try:
        files = adapter.discover(args.date)
    finally:
        adapter.close()

    for file in files:
        print(f"{file.type}\t{file.filename}\t{file.url}")
    print(f"Found {len(files)} files", file=sys.stderr)
    return 0


def cmd_parse(args, parser):
    check_chain(parser, args.chain)
    if not args.file.is_file():
        parser.error(f"File '{args.file}' not found")

    adapter = get_adapter(args.chain)
    try:
        content = args.file.read_bytes()
        result = adapter.parse(
            content,
            args.file.name,
            ParseOptions(limit=args.limit, skip_invalid=args.skip_invalid),
        )
    finally:
        adapter.close()

    if args.output:
        CsvRowSink(args.output).write(
            "local",
            args.chain,
            args.file.name,
            result,
            file_hash=compute_sha256(content),
        )

    summary = {
        "total_rows": result.total_rows,
        "valid_rows": result.valid_rows,
        "errors": len(result.errors),
        "warnings": len(result.warnings),
    }
    if args.show_errors:
        summary["error_messages"] = [e.message for e in result.errors[:20]]
    print(json.dumps(summary, indent=2, ensure_ascii=False))
    return 0 if result.valid_rows else 1


def cmd_run(args, parser):
    chains_to_ingest = None
    if args.chain:
        chains_to_ingest = [chain.strip() for chain in args.chain.split(",")]
        for chain_name in chains_to_ingest:
            check_chain(parser, chain_name)

    if args.output_path.is_file():
        parser.error(f"Output path '{args.output_path}' is a file.")
    args.output_path.mkdir(parents=True, exist_ok=True)

    chains_txt = ", ".join(chains_to_ingest) if chains_to_ingest else "all retail chains"
    date_txt = args.date.strftime("%Y-%m-%d") if args.date else "today"
    print(f"Fetching price data from {chains_txt} for {date_txt} ...", flush=True)

    try:
        results = ingest(args.output_path, args.date, chains_to_ingest)
    except Exception as e:
        print(f"Error during ingestion: {e}")
        return 1

    for chain, r in results.items():
        print(f"  {chain}: {r.n_files} files, {r.n_rows} rows, {r.n_errors} errors")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Ingest retail chain price lists",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        choices=["debug", "info", "warning", "error", "critical"],
        default="warning",
        help="Set verbosity level (default: warning)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("list", help="List supported retail chains")

    discover_parser = subparsers.add_parser("discover", help="List a chain's price files")
    discover_parser.add_argument("chain", help="Retail chain")
    discover_parser.add_argument(
        "-d",
        "--date",
        type=parse_date,
        help="Only files for this date (format: YYYY-MM-DD)",
    )

    parse_parser = subparsers.add_parser("parse", help="Parse a local price file")
    parse_parser.add_argument("chain", help="Retail chain whose format to use")
    parse_parser.add_argument("file", type=Path, help="Price file to parse")
    parse_parser.add_argument("-l", "--limit", type=int, help="Max rows to keep")
    parse_parser.add_argument(
        "--skip-invalid", action="store_true", help="Drop rows with errors"
    )
    parse_parser.add_argument(
        "-o", "--output", type=Path, help="Also write the rows as CSV to this directory"
    )
    parse_parser.add_argument(
        "--show-errors", action="store_true", help="Include the first 20 errors"
    )

    run_parser = subparsers.add_parser("run", help="Ingest chains into CSV files")
    run_parser.add_argument("output_path", type=Path, help="Output directory path")
    run_parser.add_argument(
        "-d",
        "--date",
        type=parse_date,
        help="Date for which to ingest (format: YYYY-MM-DD, defaults to today)",
    )
    run_parser.add_argument(
        "-c",
        "--chain",
        help="Comma-separated list of retail chains to ingest (defaults to all)",
    )

    args = parser.parse_args()
    setup_logging(args.verbose)

    commands = {
        "list": cmd_list,
        "discover": cmd_discover,
        "parse": cmd_parse,
        "run": cmd_run,
    }
    return commands[args.command](args, parser)


if __name__ == "__main__":
    sys.exit(main())
