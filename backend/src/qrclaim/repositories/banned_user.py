"""BannedUser repository.

Ban lookups fan out over fid, username and eth_address. Every blocked attempt
bumps the attempt counter and appends the caller's IP through the
add_ip_to_banned_user stored procedure.
"""

from typing import Any

from sqlalchemy import func, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from qrclaim.core.timezone import utc_now
from qrclaim.models.banned_user import BannedUser


def username_variants(username: str) -> list[str]:
    """Return the lookup variants of a username: as given, lowercased, with and without '@'."""
    bare = username.lstrip("@")
    variants = [username, username.lower(), f"@{bare}", bare]
    # Preserve order, drop repeats
    return list(dict.fromkeys(variants))


class BannedUserRepository:
    """Repository for BannedUser entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_fid(self, fid: int) -> BannedUser | None:
        result = await self.session.execute(
            select(BannedUser).where(BannedUser.fid == fid)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_username(self, username: str) -> BannedUser | None:
        """Retrieve a ban matching any username variant (case-insensitive)."""
        lowered = [v.lower() for v in username_variants(username)]
        result = await self.session.execute(
            select(BannedUser)
            .where(func.lower(BannedUser.username).in_(lowered))  # type: ignore[arg-type]
            .limit(1)
        )
        return result.scalars().first()

    async def get_by_address(self, address: str) -> BannedUser | None:
        result = await self.session.execute(
            select(BannedUser)
            .where(func.lower(BannedUser.eth_address) == address.lower())  # type: ignore[arg-type]
            .limit(1)
        )
        return result.scalars().first()

    async def find_ban(
        self, fid: int | None, username: str | None, address: str | None
    ) -> BannedUser | None:
        """First matching ban by fid (positive only), then username, then address."""
        if fid is not None and fid > 0:
            ban = await self.get_by_fid(fid)
            if ban:
                return ban
        if username:
            ban = await self.get_by_username(username)
            if ban:
                return ban
        if address:
            return await self.get_by_address(address)
        return None

    async def record_blocked_attempt(self, ban: BannedUser, client_ip: str | None) -> None:
        """Increment the attempt counter and track the IP via the stored procedure."""
        await self.session.execute(
            update(BannedUser)
            .where(BannedUser.fid == ban.fid)  # type: ignore[arg-type]
            .values(
                total_claims_attempted=BannedUser.total_claims_attempted + 1,
                updated_at=utc_now(),
            )
        )
        if client_ip:
            await self.session.execute(
                text("SELECT add_ip_to_banned_user(:fid, :ip)"),
                {"fid": ban.fid, "ip": client_ip},
            )

    async def upsert_auto_ban(
        self,
        fid: int,
        username: str | None,
        eth_address: str,
        reason: str,
        banned_by: str,
        duplicate_transactions: list[dict[str, Any]],
        total_tokens_received: int,
    ) -> None:
        """Create or refresh an automatic ban.

        Query explanation:
        - INSERT: New ban keyed by fid
        - ON CONFLICT (fid): Already banned (manual or earlier race)
        - DO UPDATE: Refresh evidence and attribution, keep the counters
        """
        now = utc_now()
        stmt = insert(BannedUser).values(
            fid=fid,
            username=username,
            eth_address=eth_address,
            reason=reason,
            auto_banned=True,
            banned_by=banned_by,
            total_claims_attempted=0,
            duplicate_transactions=duplicate_transactions,
            total_tokens_received=total_tokens_received,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["fid"],
            set_={
                "reason": reason,
                "auto_banned": True,
                "banned_by": banned_by,
                "duplicate_transactions": duplicate_transactions,
                "total_tokens_received": total_tokens_received,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)

    async def add(self, ban: BannedUser) -> BannedUser:
        self.session.add(ban)
        await self.session.flush()
        return ban
