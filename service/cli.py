#!/usr/bin/env python3
import argparse
import asyncio
import json
import logging
import os
import signal
import socket
import sys
import uuid
from datetime import datetime

from ingest.chains.registry import get_chains
from ingest.output import CsvRowSink
from service.config import settings
from service.db.base import TaskLedger
from service.dispatcher import ArchiveDispatcher
from service.handlers import (
    INGEST_CHAIN_TASK,
    ExpandHandler,
    IngestChainHandler,
    ParseHandler,
)
from service.messages import ParseMessage
from service.queue.base import QueueTransport
from service.runtime import QueueWorker
from service.sweeper import OrphanSweeper
from service.tasks import TaskRunner

logger = logging.getLogger("service.cli")


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def parse_date(date_str):
    try:
        return datetime.strptime(date_str, "%Y-%m-%d").date()
    except ValueError:
        raise argparse.ArgumentTypeError("Date must be in YYYY-MM-DD format")


def build_workers(
    ledger: TaskLedger,
    queue: QueueTransport,
    worker_id: str,
) -> tuple[TaskRunner, QueueWorker]:
    """Wire the task runner and queue worker to their handlers."""
    store = settings.get_storage()
    sink = CsvRowSink(settings.output_path)
    dispatcher = ArchiveDispatcher(store, queue, ledger)

    runner = TaskRunner(
        ledger,
        {
            INGEST_CHAIN_TASK: IngestChainHandler(
                ledger, dispatcher, lease_minutes=settings.lease_minutes
            ),
        },
        worker_id=worker_id,
        lease_minutes=settings.lease_minutes,
    )

    async def mark_run_failed(msg: ParseMessage, error: str):
        await asyncio.to_thread(
            sink.write_failure, msg.run_id, msg.chain_slug, msg.storage_key, error
        )

    worker = QueueWorker(
        queue,
        {
            "expand": ExpandHandler(dispatcher),
            "parse": ParseHandler(store, sink),
        },
        concurrency=settings.worker_concurrency,
        max_retries=settings.max_retries,
        on_exhausted=mark_run_failed,
    )
    return runner, worker


async def schedule_chains(ledger: TaskLedger, chains: list[str], date=None) -> list[str]:
    run_id = f"run_{uuid.uuid4().hex}"
    task_ids = []
    for chain in chains:
        task_id = await ledger.schedule(
            INGEST_CHAIN_TASK,
            {
                "chain": chain,
                "date": date.isoformat() if date else None,
                "run_id": run_id,
            },
        )
        logger.info(f"Scheduled {chain} ingestion as task {task_id} (run {run_id})")
        task_ids.append(task_id)
    return task_ids


async def drain(runner: TaskRunner, worker: QueueWorker) -> None:
    """Run tasks and queue messages until both are idle."""
    while True:
        claimed = await runner.run_once()
        processed = await worker.run_once()
        if not claimed and not processed:
            return


async def cmd_worker(args, ledger: TaskLedger, queue: QueueTransport) -> int:
    runner, worker = build_workers(ledger, queue, args.worker_id)

    if args.chain:
        await schedule_chains(ledger, args.chain, args.date)

    if args.drain:
        await drain(runner, worker)
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    jobs = [
        runner.run(args.poll_interval, stop_event),
        worker.run(args.poll_interval, stop_event),
    ]
    if not args.no_sweep:
        jobs.append(OrphanSweeper(ledger, settings.sweep_interval).run(stop_event))

    await asyncio.gather(*jobs)
    return 0


async def cmd_schedule(args, ledger: TaskLedger, queue: QueueTransport) -> int:
    chains = args.chain or settings.ingestion_chains or get_chains()
    unknown = sorted(set(chains) - set(get_chains()))
    if unknown:
        print(f"Unknown chains: {', '.join(unknown)}", file=sys.stderr)
        return 1

    task_ids = await schedule_chains(ledger, chains, args.date)
    for chain, task_id in zip(chains, task_ids):
        print(f"{chain}\t{task_id}")
    return 0


async def cmd_status(args, ledger: TaskLedger, queue: QueueTransport) -> int:
    task = await ledger.get(args.task_id)
    if task is None:
        print(f"No task {args.task_id}", file=sys.stderr)
        return 1
    print(json.dumps(task.to_dict(), indent=2, default=str))
    return 0


async def cmd_sweep(args, ledger: TaskLedger, queue: QueueTransport) -> int:
    recovered, failed = await OrphanSweeper(ledger).sweep_once()
    print(f"Recovered {recovered} tasks, failed {failed}")
    return 0


async def cmd_cleanup(args, ledger: TaskLedger, queue: QueueTransport) -> int:
    deleted = await ledger.cleanup(args.days)
    print(f"Deleted {deleted} completed tasks older than {args.days} days")
    return 0


async def run_command(args) -> int:
    ledger = settings.get_ledger(memory=args.memory)
    queue = settings.get_queue(memory=args.memory)

    await ledger.connect()
    await queue.connect()
    try:
        await ledger.create_tables()
        return await args.func(args, ledger, queue)
    finally:
        await queue.close()
        await ledger.close()


def main():
    """
    Price ingestion service.

    Database, storage and queue settings are loaded from the service
    configuration, see `service/config.py` for details.
    """
    parser = argparse.ArgumentParser(
        description=main.__doc__,
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable info logging",
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "-m",
        "--memory",
        action="store_true",
        help="Use an in-process task ledger and queue (for development)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run task and queue workers")
    worker_parser.add_argument(
        "-c",
        "--chain",
        action="append",
        choices=get_chains(),
        help="Schedule ingestion for this chain before starting (repeatable)",
    )
    worker_parser.add_argument("-D", "--date", type=parse_date, help="Price list date")
    worker_parser.add_argument("--worker-id", default=default_worker_id())
    worker_parser.add_argument("--poll-interval", type=float, default=5.0)
    worker_parser.add_argument(
        "--no-sweep", action="store_true", help="Don't run the orphan sweeper"
    )
    worker_parser.add_argument(
        "--drain",
        action="store_true",
        help="Exit once there are no more tasks or messages",
    )
    worker_parser.set_defaults(func=cmd_worker)

    schedule_parser = subparsers.add_parser("schedule", help="Schedule chain ingestion")
    schedule_parser.add_argument(
        "chain",
        nargs="*",
        help="Chains to ingest (default: INGESTION_CHAINS or all)",
    )
    schedule_parser.add_argument("-D", "--date", type=parse_date, help="Price list date")
    schedule_parser.set_defaults(func=cmd_schedule)

    status_parser = subparsers.add_parser("status", help="Show a task")
    status_parser.add_argument("task_id")
    status_parser.set_defaults(func=cmd_status)

    sweep_parser = subparsers.add_parser("sweep", help="Recover orphaned tasks once")
    sweep_parser.set_defaults(func=cmd_sweep)

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old completed tasks")
    cleanup_parser.add_argument("--days", type=int, default=settings.cleanup_days)
    cleanup_parser.set_defaults(func=cmd_cleanup)

    subparsers.add_parser("serve", help="Run the operations API")

    args = parser.parse_args()

    if args.debug:
        level = logging.DEBUG
    elif args.verbose:
        level = logging.INFO
    else:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s:%(name)s:%(levelname)s:%(message)s",
    )

    if args.command == "serve":
        from service.main import main as serve

        serve()
        return 0

    return asyncio.run(run_command(args))


if __name__ == "__main__":
    sys.exit(main())
