"""Poll worker entry point with CLI."""
import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.config import config, Config
from src.logging_conf import setup_logging
from src.fetch.client import VendorClient
from src.jobs.orchestrator import OrderOrchestrator
from src.jobs.runner import PollRunner
from src.store.ledger import BalanceLedger
from src.store.state import StateDB

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Stock order poll worker")

    # Mode flags
    parser.add_argument(
        "--once",
        action="store_true",
        help="Sweep active orders once and exit",
    )
    parser.add_argument(
        "--task",
        type=str,
        default=None,
        help="Poll a single order until it finishes",
    )
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Development mode (low concurrency, verbose logs)",
    )

    # Run control flags
    parser.add_argument(
        "--stop-after-minutes",
        type=float,
        default=None,
        help="Stop after M minutes",
    )
    parser.add_argument(
        "--max-errors",
        type=int,
        default=None,
        help="Stop if total errors >= N",
    )
    parser.add_argument(
        "--max-consecutive-errors",
        type=int,
        default=None,
        help="Stop if N consecutive errors",
    )

    # Performance arguments
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help=f"Concurrent polls per sweep (default: {config.CONCURRENCY})",
    )

    # Local setup
    parser.add_argument(
        "--grant-user",
        type=str,
        default=None,
        help="Credit points to this user and exit (requires --grant-points)",
    )
    parser.add_argument(
        "--grant-points",
        type=int,
        default=None,
        help="Points to credit with --grant-user",
    )

    return parser.parse_args(argv)


async def grant_points(user_id: str, points: int) -> int:
    """Credit points to a user. Returns the new balance."""
    state = StateDB()
    await state.initialize()
    entry = await BalanceLedger(state).credit(user_id, points, note="Manual grant")
    return entry.balance_after


async def run_worker(args: argparse.Namespace) -> None:
    state = StateDB()
    await state.initialize()
    async with VendorClient() as vendor:
        orchestrator = OrderOrchestrator(vendor, state)
        runner = PollRunner(
            orchestrator,
            concurrency=args.concurrency,
            once=args.once,
            stop_after_minutes=args.stop_after_minutes,
            max_errors=args.max_errors,
            max_consecutive_errors=args.max_consecutive_errors,
        )
        if args.task:
            await runner.run_task(args.task)
        else:
            await runner.run()


def main(argv=None) -> None:
    """Main entry point."""
    # Setup logging
    setup_logging()

    # Parse args
    args = parse_args(argv)

    if args.dev:
        if args.concurrency is None:
            args.concurrency = 2
        config.VENDOR_RATE_PER_SECOND = 1.0
        logging.getLogger().setLevel(logging.DEBUG)

    if args.grant_user or args.grant_points is not None:
        if not args.grant_user or not args.grant_points or args.grant_points <= 0:
            logger.error("--grant-user and a positive --grant-points must be used together")
            sys.exit(1)
        balance = asyncio.run(grant_points(args.grant_user, args.grant_points))
        logger.info(f"Granted {args.grant_points} pts to {args.grant_user}; balance is now {balance} pts")
        return

    # Validate config
    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    logger.info("=" * 60)
    logger.info("Stock order poll worker starting")
    logger.info(f"Mode: {'DEV' if args.dev else 'PROD'}")
    logger.info(f"Target: {args.task or ('single sweep' if args.once else 'continuous')}")
    logger.info(f"Concurrency: {args.concurrency or config.CONCURRENCY}")
    logger.info(f"Poll interval: {config.POLL_INTERVAL}s, max attempts: {config.POLL_MAX_ATTEMPTS}")
    logger.info("=" * 60)

    try:
        asyncio.run(run_worker(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
