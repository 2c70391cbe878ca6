"""LinkVisitClaim repository.

Provides data access for link-visit claims: duplicate checks, IP quotas,
grouped upserts for the batch processor and cleanup of failed rows.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from qrclaim.models.claim import LinkVisitClaim


class ClaimRepository:
    """Repository for LinkVisitClaim entities.

    Addresses are compared with LOWER() on both sides; stored values are
    checksummed but older rows and batch inserts may differ in case.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, claim: LinkVisitClaim) -> LinkVisitClaim:
        """Persist a new claim row.

        Raises:
            sqlalchemy.exc.IntegrityError: On (eth_address, auction_id) or
                (fid, auction_id) uniqueness violation
        """
        self.session.add(claim)
        await self.session.flush()
        return claim

    async def get_by_address_and_auction(
        self, address: str, auction_id: int
    ) -> LinkVisitClaim | None:
        """Retrieve the row for an address and auction (case-insensitive)."""
        result = await self.session.execute(
            select(LinkVisitClaim).where(
                func.lower(LinkVisitClaim.eth_address) == address.lower(),  # type: ignore[arg-type]
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
            )
        )
        return result.scalars().first()

    async def get_by_fid_and_auction(self, fid: int, auction_id: int) -> LinkVisitClaim | None:
        result = await self.session.execute(
            select(LinkVisitClaim).where(
                LinkVisitClaim.fid == fid,  # type: ignore[arg-type]
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
            )
        )
        return result.scalars().first()

    async def get_claimed_by_address(self, address: str, auction_id: int) -> LinkVisitClaim | None:
        """Retrieve a completed claim (claimed_at set) for an address and auction."""
        result = await self.session.execute(
            select(LinkVisitClaim).where(
                func.lower(LinkVisitClaim.eth_address) == address.lower(),  # type: ignore[arg-type]
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
                LinkVisitClaim.claimed_at.is_not(None),  # type: ignore[union-attr]
            )
        )
        return result.scalars().first()

    async def get_claimed_by_username(self, username: str, auction_id: int) -> LinkVisitClaim | None:
        """Retrieve a completed claim for a username (case-insensitive, without @) and auction."""
        result = await self.session.execute(
            select(LinkVisitClaim).where(
                func.lower(func.ltrim(LinkVisitClaim.username, "@"))  # type: ignore[arg-type]
                == username.lower().lstrip("@"),
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
                LinkVisitClaim.claimed_at.is_not(None),  # type: ignore[union-attr]
            )
        )
        return result.scalars().first()

    async def get_claimed_for_identity(
        self, auction_id: int, address: str, fid: int | None = None
    ) -> LinkVisitClaim | None:
        """Retrieve a completed claim matching the address or (when positive) the fid.

        Used by the in-lock duplicate check and the batch re-validation step.
        """
        identity = func.lower(LinkVisitClaim.eth_address) == address.lower()
        if fid is not None and fid > 0:
            identity = or_(identity, LinkVisitClaim.fid == fid)  # type: ignore[arg-type]

        result = await self.session.execute(
            select(LinkVisitClaim)
            .where(
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
                LinkVisitClaim.claimed_at.is_not(None),  # type: ignore[union-attr]
                identity,
            )
            .order_by(LinkVisitClaim.claimed_at.asc())  # type: ignore[union-attr]
        )
        return result.scalars().first()

    async def count_ip_claims_for_auction(self, client_ip: str, auction_id: int) -> int:
        """Count successful claims from one IP for one auction."""
        result = await self.session.execute(
            select(func.count())
            .select_from(LinkVisitClaim)
            .where(
                LinkVisitClaim.client_ip == client_ip,  # type: ignore[arg-type]
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
                LinkVisitClaim.success.is_(True),  # type: ignore[attr-defined]
                LinkVisitClaim.claimed_at.is_not(None),  # type: ignore[union-attr]
            )
        )
        return result.scalar_one()

    async def count_ip_claims_since(self, client_ip: str, since: datetime) -> int:
        """Count successful claims from one IP since a point in time (any auction)."""
        result = await self.session.execute(
            select(func.count())
            .select_from(LinkVisitClaim)
            .where(
                LinkVisitClaim.client_ip == client_ip,  # type: ignore[arg-type]
                LinkVisitClaim.success.is_(True),  # type: ignore[attr-defined]
                LinkVisitClaim.claimed_at >= since,  # type: ignore[operator]
            )
        )
        return result.scalar_one()

    async def delete_incomplete_for_identity(
        self, auction_id: int, address: str, fid: int | None = None
    ) -> int:
        """Delete rows with claimed_at set but no tx_hash (failed earlier attempts).

        Returns:
            Number of rows deleted
        """
        identity = func.lower(LinkVisitClaim.eth_address) == address.lower()
        if fid is not None:
            identity = or_(identity, LinkVisitClaim.fid == fid)  # type: ignore[arg-type]

        result = await self.session.execute(
            delete(LinkVisitClaim).where(
                LinkVisitClaim.auction_id == auction_id,  # type: ignore[arg-type]
                LinkVisitClaim.claimed_at.is_not(None),  # type: ignore[union-attr]
                LinkVisitClaim.tx_hash.is_(None),  # type: ignore[union-attr]
                identity,
            )
        )
        return result.rowcount  # type: ignore[attr-defined]

    async def delete_incomplete(self, auction_id: int | None = None) -> int:
        """Delete every failed claim row (claimed_at set, tx_hash NULL).

        Args:
            auction_id: Restrict cleanup to one auction (all auctions if None)

        Returns:
            Number of rows deleted
        """
        conditions = [
            LinkVisitClaim.claimed_at.is_not(None),  # type: ignore[union-attr]
            LinkVisitClaim.tx_hash.is_(None),  # type: ignore[union-attr]
        ]
        if auction_id is not None:
            conditions.append(LinkVisitClaim.auction_id == auction_id)  # type: ignore[arg-type]

        result = await self.session.execute(delete(LinkVisitClaim).where(and_(*conditions)))
        return result.rowcount  # type: ignore[attr-defined]

    async def upsert_many(self, rows: list[dict[str, Any]]) -> int:
        """Insert claim rows in one statement, updating on (fid, auction_id) conflicts.

        Query explanation:
        - INSERT: One multi-row insert for the whole sub-batch
        - ON CONFLICT (fid, auction_id): A link-visit-only row already exists
        - DO UPDATE: Overwrite it with the claim result

        Args:
            rows: Column dicts, one per claim

        Returns:
            Number of rows written
        """
        if not rows:
            return 0

        stmt = insert(LinkVisitClaim).values(rows)
        update_columns = {
            column: stmt.excluded[column]
            for column in rows[0]
            if column not in ("fid", "auction_id")
        }
        stmt = stmt.on_conflict_do_update(
            index_elements=["fid", "auction_id"],
            set_=update_columns,
        )
        result = await self.session.execute(stmt)
        return result.rowcount  # type: ignore[attr-defined]
