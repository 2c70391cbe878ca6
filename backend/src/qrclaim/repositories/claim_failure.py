"""ClaimFailure repository.

Provides the four anti-duplicate existence checks used before a failure is
logged, plus lookup and deletion for the retry processors.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from qrclaim.core.timezone import utc_now
from qrclaim.models.claim_failure import ClaimFailure


class ClaimFailureRepository:
    """Repository for ClaimFailure entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, failure: ClaimFailure) -> ClaimFailure:
        """Persist a failure row.

        Returns:
            Persisted failure with generated ID
        """
        self.session.add(failure)
        await self.session.flush()
        return failure

    async def get_by_id(self, failure_id: UUID) -> ClaimFailure | None:
        result = await self.session.execute(
            select(ClaimFailure).where(ClaimFailure.id == failure_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_ids(self, failure_ids: list[UUID]) -> list[ClaimFailure]:
        """Retrieve failures by ID, oldest first. Missing IDs are skipped."""
        if not failure_ids:
            return []
        result = await self.session.execute(
            select(ClaimFailure)
            .where(ClaimFailure.id.in_(failure_ids))  # type: ignore[attr-defined]
            .order_by(ClaimFailure.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def exists_for_username_and_auction(self, username: str, auction_id: int) -> bool:
        return await self._exists(
            func.lower(ClaimFailure.username) == username.lower(),  # type: ignore[arg-type]
            ClaimFailure.auction_id == auction_id,  # type: ignore[arg-type]
        )

    async def exists_for_username_since(self, username: str, since: datetime) -> bool:
        return await self._exists(
            func.lower(ClaimFailure.username) == username.lower(),  # type: ignore[arg-type]
            ClaimFailure.created_at >= since,  # type: ignore[arg-type]
        )

    async def exists_for_address_and_auction(self, address: str, auction_id: int) -> bool:
        return await self._exists(
            func.lower(ClaimFailure.eth_address) == address.lower(),  # type: ignore[arg-type]
            ClaimFailure.auction_id == auction_id,  # type: ignore[arg-type]
        )

    async def exists_for_ip_and_auction_since(
        self, client_ip: str, auction_id: int, since: datetime
    ) -> bool:
        return await self._exists(
            ClaimFailure.client_ip == client_ip,  # type: ignore[arg-type]
            ClaimFailure.auction_id == auction_id,  # type: ignore[arg-type]
            ClaimFailure.created_at >= since,  # type: ignore[arg-type]
        )

    async def _exists(self, *conditions) -> bool:
        result = await self.session.execute(
            select(ClaimFailure.id).where(*conditions).limit(1)  # type: ignore[call-overload]
        )
        return result.first() is not None

    async def mark_retried(self, failure_id: UUID) -> None:
        """Increment retry_count and stamp last_retry_at."""
        await self.session.execute(
            update(ClaimFailure)
            .where(ClaimFailure.id == failure_id)  # type: ignore[arg-type]
            .values(
                retry_count=ClaimFailure.retry_count + 1,
                last_retry_at=utc_now(),
            )
        )

    async def delete_by_id(self, failure_id: UUID) -> bool:
        """Delete one failure row.

        Returns:
            True if a row was deleted
        """
        result = await self.session.execute(
            delete(ClaimFailure).where(ClaimFailure.id == failure_id)  # type: ignore[arg-type]
        )
        return result.rowcount > 0  # type: ignore[attr-defined]

    async def delete_by_ids(self, failure_ids: list[UUID]) -> int:
        if not failure_ids:
            return 0
        result = await self.session.execute(
            delete(ClaimFailure).where(ClaimFailure.id.in_(failure_ids))  # type: ignore[attr-defined]
        )
        return result.rowcount  # type: ignore[attr-defined]
