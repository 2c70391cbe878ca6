"""Unit of Work pattern for the claim backend.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qrclaim.repositories.banned_user import BannedUserRepository
from qrclaim.repositories.claim import ClaimRepository
from qrclaim.repositories.claim_amount_config import ClaimAmountConfigRepository
from qrclaim.repositories.claim_failure import ClaimFailureRepository
from qrclaim.repositories.spam_label import SpamLabelRepository
from qrclaim.repositories.winner import WinnerRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            existing = await uow.claims.get_claimed_by_address(address, auction_id)
            await uow.failures.delete_by_id(failure_id)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        self.claims = ClaimRepository(session)
        self.failures = ClaimFailureRepository(session)
        self.bans = BannedUserRepository(session)
        self.winners = WinnerRepository(session)
        self.spam_labels = SpamLabelRepository(session)
        self.amount_configs = ClaimAmountConfigRepository(session)

    async def __aenter__(self):
        """Enter async context manager.

        Returns:
            self: UnitOfWork instance with all repositories available
        """
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        The session is closed either way so its connection returns to the pool.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url, pool_size=50)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.claims.add(claim)
    """

    async def _create_uow():
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
