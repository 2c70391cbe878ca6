"""CLI command for running one pass of the claim retry batch processor.

Usage:
    python -m qrclaim.cli.process_queue [OPTIONS]

Examples:
    # Process due failures
    python -m qrclaim.cli.process_queue

    # Validate and group without sending transactions
    python -m qrclaim.cli.process_queue --dry-run

    # Verbose logging
    python -m qrclaim.cli.process_queue -v
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog
from web3 import Web3

from qrclaim.core import timezone  # noqa: F401
from qrclaim.core.config import Settings, configure_logging
from qrclaim.core.database import close_db_session, setup_db_session
from qrclaim.core.redis import create_redis_client
from qrclaim.services.batch_processor import BatchProcessor
from qrclaim.services.blockchain.airdrop import AirdropExecutor
from qrclaim.services.locks import LockManager
from qrclaim.services.qstash import QStashPublisher
from qrclaim.services.retry_queue import RetryQueue
from qrclaim.services.wallet_pool import WalletPool
from qrclaim.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Pay queued claim failures in grouped airdrops",
        epilog="Skips the run when another batch pass holds the run lock",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate and group due failures without sending transactions",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


def print_summary(summary: dict, dry_run: bool) -> None:
    print("\n" + "=" * 60)
    print("Batch Processor Summary")
    print("=" * 60)
    if summary.get("skipped"):
        print(summary.get("message", "Run skipped"))
    else:
        print(f"Claims processed: {summary['totalProcessed']}")
        print(f"Successful: {summary['successful']}")
        print(f"Failed: {summary['failed']}")
        for batch in summary["batches"]:
            outcome = batch.get("tx_hash") or batch.get("error", "")
            print(f"  - {batch['source']} x{batch['size']}: {outcome}")
    if dry_run:
        print("\n[DRY RUN] No transactions were sent")
    print("=" * 60 + "\n")


async def async_main(argv: list[str] | None = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (some sub-batches failed)
    """
    args = parse_args(argv)

    if args.verbose:
        settings = Settings(log_level="DEBUG")  # type: ignore[call-arg]
    else:
        settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    logger.info("cli.started", dry_run=args.dry_run, batch_size=settings.batch_size)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis_client = create_redis_client(settings.redis_url)
    w3 = Web3(Web3.HTTPProvider(settings.rpc_url))

    locks = LockManager(redis_client)
    processor = BatchProcessor(
        settings,
        uow_factory,
        locks,
        RetryQueue(
            redis_client,
            publisher=QStashPublisher(settings.qstash_token),
            public_base_url=settings.public_base_url,
        ),
        WalletPool(settings, locks),
        AirdropExecutor(
            w3, settings.qr_token_address, transaction_timeout=settings.transaction_timeout_seconds
        ),
    )

    try:
        result = await processor.run(dry_run=args.dry_run)
        print_summary(result.to_dict(), args.dry_run)

        if result.skipped or result.failed == 0:
            return 0
        if result.successful > 0:
            logger.warning("cli.partial_success", failed=result.failed)
            return 2
        logger.error("cli.failure", failed=result.failed)
        return 1

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nBatch run interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await redis_client.aclose()
        await close_db_session(session_factory)


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
