"""ClaimAmountConfig entity - admin-managed claim amount tiers."""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel

from qrclaim.core.timezone import utc_now


class AmountCategory(str, Enum):
    """Tier categories read by the claim amount resolver."""

    WALLET_EMPTY = "wallet_empty"
    WALLET_HAS_BALANCE = "wallet_has_balance"
    DEFAULT = "default"
    NEYNAR_SCORE = "neynar_score"
    SPAM = "spam"


class ClaimAmountConfig(SQLModel, table=True):
    """One amount tier.

    ``neynar_score`` rows apply to scores in [min_score, max_score]; the other
    categories are single rows.
    """

    __tablename__ = "claim_amount_configs"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    category: str = Field(max_length=32, index=True)
    amount: int = Field(ge=0)
    min_score: Optional[float] = Field(default=None)
    max_score: Optional[float] = Field(default=None)
    description: Optional[str] = Field(default=None)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utc_now)
