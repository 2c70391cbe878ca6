"""LinkVisitClaim entity - one row per link visit and (eventually) token claim."""

import hashlib
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, Column, UniqueConstraint
from sqlmodel import Field, SQLModel


class ClaimSource(str, Enum):
    """Client channel a claim originated from."""

    WEB = "web"
    MOBILE = "mobile"
    MINI_APP = "mini_app"


def synthetic_fid(address: str) -> int:
    """Derive the negative pseudo-fid used for users without a Farcaster identity.

    Stable per address (case-insensitive) and always <= -1, so it can never
    collide with a real fid.
    """
    digest = hashlib.sha256(address.lower().encode()).hexdigest()
    return -((int(digest[:8], 16) % 2_000_000_000) + 1)


class LinkVisitClaim(SQLModel, table=True):
    """A visit to the winning link and, once claimed, the airdrop that paid for it.

    A row with only ``link_visited_at`` set is a visit that has not been claimed
    yet. The claim path upgrades it in place.
    """

    __tablename__ = "link_visit_claims"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("eth_address", "auction_id", name="uq_link_visit_claims_address_auction"),
        UniqueConstraint("fid", "auction_id", name="uq_link_visit_claims_fid_auction"),
        CheckConstraint(
            "claim_source IN ('web', 'mobile', 'mini_app')",
            name="ck_link_visit_claims_claim_source",
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    fid: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    eth_address: str = Field(max_length=42, index=True)
    auction_id: int = Field(index=True)
    username: Optional[str] = Field(default=None, max_length=255)
    user_id: Optional[str] = Field(default=None, max_length=255)
    winning_url: Optional[str] = Field(default=None)
    claim_source: str = Field(default=ClaimSource.WEB.value, max_length=16)
    amount: int = Field(default=0, ge=0)
    tx_hash: Optional[str] = Field(default=None, max_length=66)
    success: bool = Field(default=False)
    claimed_at: Optional[datetime] = Field(default=None, index=True)
    link_visited_at: Optional[datetime] = Field(default=None)
    client_ip: Optional[str] = Field(default=None, max_length=64, index=True)
    neynar_user_score: Optional[float] = Field(default=None)
    spam_label: Optional[bool] = Field(default=None)
    mini_app_client: Optional[str] = Field(default=None, max_length=64)

    @property
    def is_claimed(self) -> bool:
        return self.claimed_at is not None
