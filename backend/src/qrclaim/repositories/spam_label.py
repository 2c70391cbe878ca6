"""SpamLabel repository."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from qrclaim.models.spam_label import SPAM_LABEL_TYPE, SpamLabel


class SpamLabelRepository:
    """Repository for SpamLabel entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_label_value(self, fid: int) -> int | None:
        """Return the most recent spam label value for a fid, or None if unlabeled."""
        result = await self.session.execute(
            select(SpamLabel.label_value)
            .where(
                SpamLabel.fid == fid,  # type: ignore[arg-type]
                SpamLabel.label_type == SPAM_LABEL_TYPE,  # type: ignore[arg-type]
            )
            .order_by(SpamLabel.created_at.desc())  # type: ignore[attr-defined]
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add(self, label: SpamLabel) -> SpamLabel:
        self.session.add(label)
        await self.session.flush()
        return label
