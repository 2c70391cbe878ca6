"""ClaimAmountConfig repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrclaim.models.claim_amount_config import AmountCategory, ClaimAmountConfig


class ClaimAmountConfigRepository:
    """Repository for ClaimAmountConfig entities (active rows only)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_amount(self, category: AmountCategory) -> int | None:
        """Return the active amount for a single-row category, or None if unset."""
        result = await self.session.execute(
            select(ClaimAmountConfig.amount)
            .where(
                ClaimAmountConfig.category == category.value,  # type: ignore[arg-type]
                ClaimAmountConfig.is_active.is_(True),  # type: ignore[attr-defined]
            )
            .order_by(ClaimAmountConfig.id.desc())  # type: ignore[union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_amount_for_score(self, score: float) -> int | None:
        """Return the neynar_score tier amount whose [min_score, max_score] contains score."""
        result = await self.session.execute(
            select(ClaimAmountConfig.amount)
            .where(
                ClaimAmountConfig.category == AmountCategory.NEYNAR_SCORE.value,  # type: ignore[arg-type]
                ClaimAmountConfig.is_active.is_(True),  # type: ignore[attr-defined]
                ClaimAmountConfig.min_score <= score,  # type: ignore[operator]
                ClaimAmountConfig.max_score >= score,  # type: ignore[operator]
            )
            .order_by(ClaimAmountConfig.min_score.desc())  # type: ignore[union-attr]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add(self, config: ClaimAmountConfig) -> ClaimAmountConfig:
        self.session.add(config)
        await self.session.flush()
        return config
