"""
Command-line interface for the Credit Batcher.

Provides commands for managing account balances and processing batches.
"""

import argparse
import asyncio
import json
import logging
import mimetypes
import signal
import sys
from pathlib import Path
from typing import List, Optional

import structlog

from credit_batcher import __version__
from credit_batcher.config import BatcherConfig, set_config
from credit_batcher.core.item import WorkItem, build_items
from credit_batcher.core.orchestrator import BatchOrchestrator
from credit_batcher.errors import BatcherError, InsufficientCreditsError
from credit_batcher.ledger.database import Database
from credit_batcher.ledger.entry import LedgerEntryKind
from credit_batcher.ledger.ledger import BalanceLedger
from credit_batcher.worker.http import HttpClassifierAdapter


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper()),
        stream=sys.stderr,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="credit-batcher",
        description="Credit-metered batch classification",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--database-url",
        help="SQLAlchemy database URL (default: from environment)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs in JSON format",
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create ledger tables")

    open_parser = subparsers.add_parser("open-account", help="Open a new account")
    open_parser.add_argument("account_id", help="Account identifier")
    open_parser.add_argument(
        "--balance",
        type=int,
        default=0,
        help="Opening balance in credits (default: 0)",
    )

    balance_parser = subparsers.add_parser("balance", help="Show an account balance")
    balance_parser.add_argument("account_id", help="Account identifier")

    add_parser = subparsers.add_parser("add-credits", help="Credit an account")
    add_parser.add_argument("account_id", help="Account identifier")
    add_parser.add_argument("amount", type=int, help="Credits to add")
    add_parser.add_argument(
        "--kind",
        choices=[LedgerEntryKind.ADMIN_ADJUSTMENT.value, LedgerEntryKind.REFUND.value],
        default=LedgerEntryKind.ADMIN_ADJUSTMENT.value,
        help="Ledger entry kind (default: admin_adjustment)",
    )
    add_parser.add_argument("--description", help="Ledger entry description")

    history_parser = subparsers.add_parser("history", help="Show ledger history")
    history_parser.add_argument("account_id", help="Account identifier")
    history_parser.add_argument(
        "--limit",
        type=int,
        default=50,
        help="Number of entries to show (default: 50)",
    )

    process_parser = subparsers.add_parser("process", help="Classify a batch of files")
    process_parser.add_argument("account_id", help="Account charged for the batch")
    process_parser.add_argument("files", nargs="+", help="Files to classify")
    process_parser.add_argument(
        "--cost",
        type=int,
        help="Credits per successful item (default: from config)",
    )
    process_parser.add_argument(
        "--concurrency",
        type=int,
        help="Items processed concurrently (default: from config)",
    )
    process_parser.add_argument(
        "--stream",
        action="store_true",
        help="Print progress events as JSON lines",
    )

    return parser


def load_items(paths: List[str]) -> List[WorkItem]:
    """Read files from disk into work items."""
    files = []
    for raw in paths:
        path = Path(raw)
        media_type, _ = mimetypes.guess_type(path.name)
        files.append((path.read_bytes(), media_type or "application/octet-stream", path.name))
    return build_items(files)


async def _open_ledger(config: BatcherConfig) -> BalanceLedger:
    database = Database(config)
    await database.connect()
    return BalanceLedger(database, config=config)


async def init_db(args: argparse.Namespace, config: BatcherConfig) -> int:
    ledger = await _open_ledger(config)
    await ledger.database.disconnect()
    print("Ledger tables ready.")
    return 0


async def open_account(args: argparse.Namespace, config: BatcherConfig) -> int:
    ledger = await _open_ledger(config)
    try:
        account = await ledger.open_account(args.account_id, initial_balance=args.balance)
        print(f"Opened {account.account_id} with {account.balance} credit(s).")
    finally:
        await ledger.database.disconnect()
    return 0


async def show_balance(args: argparse.Namespace, config: BatcherConfig) -> int:
    ledger = await _open_ledger(config)
    try:
        balance = await ledger.get_balance(args.account_id, force_refresh=True)
        print(f"{args.account_id}: {balance} credit(s)")
    finally:
        await ledger.database.disconnect()
    return 0


async def add_credits(args: argparse.Namespace, config: BatcherConfig) -> int:
    ledger = await _open_ledger(config)
    try:
        result = await ledger.add(
            args.account_id,
            args.amount,
            description=args.description,
            kind=LedgerEntryKind(args.kind),
        )
        print(f"New balance: {result.new_balance} (transaction {result.transaction_id})")
    finally:
        await ledger.database.disconnect()
    return 0


async def show_history(args: argparse.Namespace, config: BatcherConfig) -> int:
    ledger = await _open_ledger(config)
    try:
        entries = await ledger.get_history(args.account_id, limit=args.limit)
    finally:
        await ledger.database.disconnect()

    if not entries:
        print("No ledger entries.")
        return 0

    for entry in entries:
        print(
            f"{entry.created_at.isoformat()}  {entry.amount:+6d}  "
            f"{entry.kind.value:<16}  {entry.description}"
        )
    return 0


async def process_batch(args: argparse.Namespace, config: BatcherConfig) -> int:
    """Run one batch and print its summary."""
    items = load_items(args.files)
    ledger = await _open_ledger(config)
    worker = HttpClassifierAdapter(config)
    orchestrator = BatchOrchestrator(ledger, worker, args.account_id, config=config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        print("\nStopping after the current window...", file=sys.stderr)
        orchestrator.stop()

    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        pass  # Signals not available on Windows

    try:
        await worker.connect()

        if args.stream:
            exit_code = 0
            async for event in orchestrator.stream(
                items,
                per_item_cost=args.cost,
                concurrency_limit=args.concurrency,
            ):
                print(json.dumps(event))
                if event["type"] == "error":
                    exit_code = 2
                elif event["type"] == "complete" and event["summary"]["settlement_error"]:
                    exit_code = 1
            return exit_code

        try:
            outcome = await orchestrator.run(
                items,
                per_item_cost=args.cost,
                concurrency_limit=args.concurrency,
            )
        except InsufficientCreditsError as e:
            print(
                f"Batch not started: insufficient credits "
                f"(required {e.required}, available {e.available})."
            )
            return 2

        for result in outcome.results:
            if result is None:
                continue
            if result.success:
                print(f"  [{result.index}] {result.filename}: {result.output}")
            else:
                print(f"  [{result.index}] {result.filename}: FAILED ({result.error_kind}) {result.error_message}")
        print()
        print(outcome.summary.message)
        print(f"Remaining balance: {outcome.summary.remaining_balance}")
        return 1 if outcome.summary.settlement_error else 0
    finally:
        await worker.disconnect()
        await ledger.database.disconnect()


COMMANDS = {
    "init-db": init_db,
    "open-account": open_account,
    "balance": show_balance,
    "add-credits": add_credits,
    "history": show_history,
    "process": process_batch,
}


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.log_level, args.log_json)

    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    config = BatcherConfig(**overrides)
    set_config(config)

    try:
        exit_code = asyncio.run(COMMANDS[args.command](args, config))
    except BatcherError as e:
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
