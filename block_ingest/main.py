"""
Main entry point for block time ingestion.
"""

import argparse
import signal
import sys
import threading
from typing import Callable, Dict, List, Optional

import structlog

from block_ingest.config import Settings, get_settings
from block_ingest.models import ChainId
from block_ingest.services.backfill import BackfillWalker
from block_ingest.services.error_handler import ErrorHandler
from block_ingest.services.offline_backfill import OfflineOperatorWalker
from block_ingest.services.storage import ParquetStorage
from block_ingest.services.stream import run_streams
from block_ingest.services.substrate_rpc import SubstrateRPCService
from block_ingest.utils.exceptions import ConfigurationError
from block_ingest.utils.logging import setup_logging

logger = structlog.get_logger()


class IngestArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors with exit status 1"""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_chains(value: str) -> List[ChainId]:
    try:
        chains = [ChainId.parse(part.strip()) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    if not chains:
        raise argparse.ArgumentTypeError("at least one chain is required")
    return list(dict.fromkeys(chains))


def parse_chain(value: str) -> ChainId:
    try:
        return ChainId.parse(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def non_negative_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: '{value}'")
    if number < 0:
        raise argparse.ArgumentTypeError(f"must be non-negative: {number}")
    return number


def build_error_handler(settings: Settings) -> ErrorHandler:
    return ErrorHandler(
        base_delay=settings.RPC_BASE_DELAY,
        max_delay=settings.RPC_MAX_DELAY,
        max_retries=settings.RPC_MAX_RETRIES,
    )


def build_source(settings: Settings, chain: ChainId, stop_event: threading.Event) -> SubstrateRPCService:
    return SubstrateRPCService(
        url=settings.rpc_url(chain),
        chain=chain,
        error_handler=build_error_handler(settings),
        stop_event=stop_event,
    )


def run_stream(args, settings: Settings, stop_event: threading.Event) -> None:
    sources: List[SubstrateRPCService] = []

    def source_factory(chain: ChainId) -> SubstrateRPCService:
        source = build_source(settings, chain, stop_event)
        sources.append(source)
        return source

    try:
        run_streams(
            args.chains,
            settings,
            source_factory=source_factory,
            storage_factory=lambda: ParquetStorage(settings.DATA_DIR),
            stop_event=stop_event,
        )
    finally:
        for source in sources:
            source.close()


def run_backfill(args, settings: Settings, stop_event: threading.Event) -> None:
    if not settings.has_endpoint(args.chain):
        logger.warning("No RPC endpoint configured; skipping backfill", chain=args.chain.value)
        return

    source = build_source(settings, args.chain, stop_event)
    try:
        walker = BackfillWalker(
            args.chain,
            source,
            ParquetStorage(settings.DATA_DIR),
            settings,
            stop_event=stop_event,
        )
        walker.run(start=args.start, end=args.end, confirm_depth=args.k)
    finally:
        source.close()


def run_backfill_offline(args, settings: Settings, stop_event: threading.Event) -> None:
    source = build_source(settings, ChainId.CONSENSUS, stop_event)
    try:
        walker = OfflineOperatorWalker(
            source,
            ParquetStorage(settings.DATA_DIR),
            settings,
            stop_event=stop_event,
        )
        walker.run(start=args.start, end=args.end)
    finally:
        source.close()


def build_parser() -> IngestArgumentParser:
    parser = IngestArgumentParser(prog="ingest", description="Block time ingestion for Substrate chains")
    subparsers = parser.add_subparsers(dest="command", metavar="command")
    subparsers.required = True

    stream = subparsers.add_parser("stream", help="Follow new heads and record block times")
    stream.add_argument(
        "--chains",
        type=parse_chains,
        default=[ChainId.CONSENSUS, ChainId.AUTO_EVM],
        help="Comma separated chains to stream (default: consensus,auto-evm)",
    )
    stream.set_defaults(handler=run_stream)

    backfill = subparsers.add_parser("backfill", help="Backfill block times for a confirmed range")
    backfill.add_argument("--chain", type=parse_chain, default=ChainId.CONSENSUS, help="Chain to backfill")
    backfill.add_argument("--start", type=non_negative_int, help="First block number (disables resume)")
    backfill.add_argument("--end", type=non_negative_int, help="Last block number (default: tip - K)")
    backfill.add_argument("--K", dest="k", type=non_negative_int, help="Confirmation depth override")
    backfill.set_defaults(handler=run_backfill)

    offline = subparsers.add_parser("backfill-offline", help="Backfill offline operator events")
    offline.add_argument("--start", type=non_negative_int, help="First block number (disables resume)")
    offline.add_argument("--end", type=non_negative_int, help="Last block number (default: tip - K)")
    offline.set_defaults(handler=run_backfill_offline)

    return parser


def install_signal_handlers(stop_event: threading.Event) -> Dict[int, Callable]:
    """Set stop_event on SIGINT/SIGTERM; returns the handlers replaced."""

    def handle_signal(signum, frame):
        logger.info("Shutdown requested", signal=signal.Signals(signum).name)
        stop_event.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handle_signal)
    return previous


def restore_signal_handlers(previous: Dict[int, Callable]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def cli(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the selected command and return the exit status."""
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info("Starting block time ingestion", command=args.command, data_dir=settings.DATA_DIR)

    stop_event = threading.Event()
    previous = install_signal_handlers(stop_event)
    try:
        args.handler(args, settings, stop_event)
    except Exception as e:
        logger.error("Unhandled exception", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return 1
    finally:
        restore_signal_handlers(previous)

    logger.info("Ingestion finished", command=args.command, interrupted=stop_event.is_set())
    return 0


def main():
    sys.exit(cli())


if __name__ == "__main__":
    main()
