"""Winner repository."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from qrclaim.models.winner import Winner


class WinnerRepository:
    """Repository for Winner entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_latest_auction_id(self) -> int | None:
        """Return the highest won auction id, or None when no auction has settled."""
        result = await self.session.execute(select(func.max(Winner.auction_id)))
        return result.scalar_one_or_none()

    async def add(self, winner: Winner) -> Winner:
        self.session.add(winner)
        await self.session.flush()
        return winner
