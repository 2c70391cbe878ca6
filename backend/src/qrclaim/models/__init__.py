"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from qrclaim.models.banned_user import ADD_IP_TO_BANNED_USER_DDL, BannedUser
from qrclaim.models.claim import ClaimSource, LinkVisitClaim, synthetic_fid
from qrclaim.models.claim_amount_config import AmountCategory, ClaimAmountConfig
from qrclaim.models.claim_failure import ClaimFailure
from qrclaim.models.spam_label import SpamLabel
from qrclaim.models.winner import Winner

__all__ = [
    "ADD_IP_TO_BANNED_USER_DDL",
    "AmountCategory",
    "BannedUser",
    "ClaimAmountConfig",
    "ClaimFailure",
    "ClaimSource",
    "LinkVisitClaim",
    "SpamLabel",
    "Winner",
    "synthetic_fid",
]
