"""CLI command for deleting failed claim rows.

A failed row has ``claimed_at`` set but no ``tx_hash``. The claim flow clears
them per identity before each attempt; this command clears them in bulk.

Usage:
    python -m qrclaim.cli.cleanup_failed_claims [--auction-id N]
"""

import asyncio
import sys
from argparse import ArgumentParser, Namespace

import structlog

from qrclaim.core import timezone  # noqa: F401
from qrclaim.core.config import Settings, configure_logging
from qrclaim.core.database import close_db_session, setup_db_session
from qrclaim.uow import create_uow_factory

logger = structlog.get_logger()


def parse_args(argv: list[str] | None = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(description="Delete claim rows that never got a transaction")
    parser.add_argument(
        "--auction-id",
        type=int,
        help="Only clean up this auction (default: all auctions)",
    )
    return parser.parse_args(argv)


async def cleanup_failed_claims(uow_factory, auction_id: int | None = None) -> int:
    """Delete failed claim rows and return how many were removed."""
    async with await uow_factory() as uow:
        deleted = await uow.claims.delete_incomplete(auction_id)
    logger.info("cli.cleanup_completed", auction_id=auction_id, deleted=deleted)
    return deleted


async def async_main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)

    try:
        deleted = await cleanup_failed_claims(uow_factory, args.auction_id)
    except Exception as e:
        logger.error("cli.unexpected_error", error=str(e), error_type=type(e).__name__)
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1
    finally:
        await close_db_session(session_factory)

    scope = f"auction {args.auction_id}" if args.auction_id is not None else "all auctions"
    print(f"Deleted {deleted} failed claim row(s) for {scope}")
    return 0


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
