"""Repository layer for the claim backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from qrclaim.repositories.banned_user import BannedUserRepository
from qrclaim.repositories.claim import ClaimRepository
from qrclaim.repositories.claim_amount_config import ClaimAmountConfigRepository
from qrclaim.repositories.claim_failure import ClaimFailureRepository
from qrclaim.repositories.spam_label import SpamLabelRepository
from qrclaim.repositories.winner import WinnerRepository

__all__ = [
    "BannedUserRepository",
    "ClaimAmountConfigRepository",
    "ClaimFailureRepository",
    "ClaimRepository",
    "SpamLabelRepository",
    "WinnerRepository",
]
