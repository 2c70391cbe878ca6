"""Winner entity - settled auctions whose winning link can be claimed against."""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from qrclaim.core.timezone import utc_now


class Winner(SQLModel, table=True):
    """Winning bid of a settled auction. The latest claimable auction is max(auction_id)."""

    __tablename__ = "winners"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    auction_id: int = Field(unique=True, index=True)
    winner_address: Optional[str] = Field(default=None, max_length=42)
    url: Optional[str] = Field(default=None)
    created_at: datetime = Field(default_factory=utc_now)
