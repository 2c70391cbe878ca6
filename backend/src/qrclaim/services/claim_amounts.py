"""Claim amount resolution.

Tier amounts live in the claim_amount_configs table. The amount a claimant
receives depends on the claim source, Farcaster reputation (spam labels and
Neynar score) and, for web users, the wallet's 90-day ETH balance history.
Whatever the source, the final amount never exceeds the configured ceiling.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from web3 import Web3

from qrclaim.core.config import Settings
from qrclaim.models.claim import ClaimSource
from qrclaim.models.claim_amount_config import AmountCategory
from qrclaim.models.spam_label import SPAM_LABEL_NOT_SPAM, SPAM_LABEL_SPAM
from qrclaim.services.exceptions import PermanentError
from qrclaim.services.identity import NeynarClient

logger = structlog.get_logger()

COINGECKO_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"

SPAM_OVERRIDE_AMOUNT = 1000
WEB_FALLBACK_AMOUNT = 500

# Base produces ~2 blocks per second
BLOCKS_PER_DAY = 2 * 60 * 60 * 24
MAX_HISTORY_CHECKPOINTS = 12


class ClaimAmountConfigError(PermanentError):
    """A required claim_amount_configs row is missing."""

    pass


@dataclass
class ClaimAmount:
    amount: int
    neynar_score: Optional[float] = None
    has_spam_label_override: bool = False
    spam_label: Optional[bool] = None
    clamped_from: Optional[int] = None


@dataclass
class HistoricalBalance:
    meets_requirement: bool
    lowest_balance: float
    lowest_balance_usd: float
    samples: int


class ClaimAmountService:
    """Compute claim amounts from tier configuration and on-chain history."""

    def __init__(self, settings: Settings, uow_factory, w3: Web3, neynar: NeynarClient):
        self.settings = settings
        self.uow_factory = uow_factory
        self.w3 = w3
        self.neynar = neynar
        self.qr_token_address = settings.qr_token_address.lower()

    async def get_wallet_claim_amounts(self) -> tuple[int, int]:
        """Return (empty_amount, value_amount).

        Raises:
            ClaimAmountConfigError: wallet_empty or wallet_has_balance is not configured
        """
        async with await self.uow_factory() as uow:
            empty_amount = await uow.amount_configs.get_amount(AmountCategory.WALLET_EMPTY)
            value_amount = await uow.amount_configs.get_amount(AmountCategory.WALLET_HAS_BALANCE)

        if empty_amount is None:
            raise ClaimAmountConfigError("Missing wallet_empty configuration in database")
        if value_amount is None:
            raise ClaimAmountConfigError("Missing wallet_has_balance configuration in database")
        return empty_amount, value_amount

    async def get_claim_amount_for_address(
        self, address: str, source: ClaimSource, fid: int | None = None
    ) -> ClaimAmount:
        """Initial amount for a claimant, before the web history check and the ceiling.

        Order:
        1. fid > 0 with spam label 2 -> top tier regardless of score
        2. fid > 0 with spam label 0 -> spam tier (if configured)
        3. fid > 0 with a Neynar score -> score tier
        4. web -> wallet_has_balance tier (history check adjusts it later)
        5. mobile -> wallet holdings tier
        6. mini_app -> default tier
        """
        spam_label: Optional[bool] = None

        if fid is not None and fid > 0:
            async with await self.uow_factory() as uow:
                label_value = await uow.spam_labels.get_label_value(fid)

            if label_value == SPAM_LABEL_NOT_SPAM:
                user = await self.neynar.fetch_user(fid)
                logger.info(
                    "claim_amount.spam_label_override",
                    fid=fid,
                    amount=SPAM_OVERRIDE_AMOUNT,
                    neynar_score=user.score if user else None,
                )
                return ClaimAmount(
                    amount=SPAM_OVERRIDE_AMOUNT,
                    neynar_score=user.score if user else None,
                    has_spam_label_override=True,
                    spam_label=False,
                )

            if label_value == SPAM_LABEL_SPAM:
                spam_label = True
                async with await self.uow_factory() as uow:
                    spam_amount = await uow.amount_configs.get_amount(AmountCategory.SPAM)
                if spam_amount is not None:
                    logger.info("claim_amount.spam_tier", fid=fid, amount=spam_amount)
                    return ClaimAmount(amount=spam_amount, spam_label=True)

            user = await self.neynar.fetch_user(fid)
            if user is not None and user.score is not None:
                async with await self.uow_factory() as uow:
                    score_amount = await uow.amount_configs.get_amount_for_score(user.score)
                if score_amount is not None:
                    logger.info(
                        "claim_amount.neynar_tier",
                        fid=fid,
                        neynar_score=user.score,
                        amount=score_amount,
                    )
                    return ClaimAmount(
                        amount=score_amount, neynar_score=user.score, spam_label=spam_label
                    )

        if source == ClaimSource.WEB:
            try:
                _, value_amount = await self.get_wallet_claim_amounts()
            except ClaimAmountConfigError as e:
                logger.error("claim_amount.web_config_missing", error=str(e))
                return ClaimAmount(amount=WEB_FALLBACK_AMOUNT, spam_label=spam_label)
            return ClaimAmount(amount=value_amount, spam_label=spam_label)

        if source == ClaimSource.MOBILE:
            return ClaimAmount(
                amount=await self.determine_claim_amount(address), spam_label=spam_label
            )

        async with await self.uow_factory() as uow:
            default_amount = await uow.amount_configs.get_amount(AmountCategory.DEFAULT)
        if default_amount is None:
            raise ClaimAmountConfigError("Missing default configuration in database")
        return ClaimAmount(amount=default_amount, spam_label=spam_label)

    async def determine_claim_amount(self, address: str) -> int:
        """Holdings tier: wallet_has_balance if the wallet holds ETH or any non-QR token."""
        checksum = Web3.to_checksum_address(address)
        has_value = False

        try:
            native_balance = self.w3.eth.get_balance(checksum)
            has_value = native_balance > 0
            if not has_value:
                has_value = self._has_non_qr_tokens(checksum)
        except Exception as e:
            logger.error("claim_amount.balance_check_failed", address=address, error=str(e))

        empty_amount, value_amount = await self.get_wallet_claim_amounts()
        amount = value_amount if has_value else empty_amount
        logger.info("claim_amount.holdings_tier", address=address, has_value=has_value, amount=amount)
        return amount

    def _has_non_qr_tokens(self, address: str) -> bool:
        response = self.w3.provider.make_request(  # type: ignore[attr-defined]
            "alchemy_getTokenBalances", [address, "erc20"]
        )
        if response.get("error"):
            logger.warning("claim_amount.token_balances_unavailable", error=response["error"])
            return False

        balances = (response.get("result") or {}).get("tokenBalances") or []
        for token in balances:
            raw = token.get("tokenBalance") or "0x0"
            if int(raw, 16) == 0:
                continue
            if token.get("contractAddress", "").lower() != self.qr_token_address:
                return True
        return False

    async def get_eth_price_usd(self) -> float:
        """ETH price from CoinGecko, or the configured fallback."""
        fallback = self.settings.eth_price_fallback_usd
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.get(
                    COINGECKO_PRICE_URL, params={"ids": "ethereum", "vs_currencies": "usd"}
                )
            price = (response.json().get("ethereum") or {}).get("usd")
            return float(price) if price else fallback
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("claim_amount.eth_price_fallback", error=str(e), fallback=fallback)
            return fallback

    async def check_historical_eth_balance(
        self, address: str, min_usd: float, days: int
    ) -> HistoricalBalance:
        """Sample the ETH balance at weekly checkpoints over ``days`` and keep the lowest.

        Checkpoints are ceil(days / 7) capped at 12, plus the current block.
        A wallet with no readable samples does not meet the requirement.
        """
        checksum = Web3.to_checksum_address(address)
        eth_price = await self.get_eth_price_usd()
        current_block = self.w3.eth.block_number

        total_blocks = BLOCKS_PER_DAY * days
        checkpoints = min(math.ceil(days / 7), MAX_HISTORY_CHECKPOINTS)
        interval = total_blocks // checkpoints

        lowest_balance = math.inf
        samples = 0
        for i in range(checkpoints + 1):
            block = max(current_block - i * interval, 0)
            try:
                balance_wei = self.w3.eth.get_balance(checksum, block_identifier=block)
            except Exception as e:
                logger.warning("claim_amount.history_sample_failed", block=block, error=str(e))
                continue
            samples += 1
            lowest_balance = min(lowest_balance, float(Web3.from_wei(balance_wei, "ether")))

        if samples == 0:
            lowest_balance = 0.0

        lowest_usd = lowest_balance * eth_price
        result = HistoricalBalance(
            meets_requirement=samples > 0 and lowest_usd >= min_usd,
            lowest_balance=lowest_balance,
            lowest_balance_usd=lowest_usd,
            samples=samples,
        )
        logger.info(
            "claim_amount.historical_balance",
            address=address,
            days=days,
            samples=samples,
            lowest_balance_eth=round(lowest_balance, 6),
            lowest_balance_usd=round(lowest_usd, 2),
            min_usd=min_usd,
            meets_requirement=result.meets_requirement,
        )
        return result

    async def resolve_claim_amount(
        self, address: str, source: ClaimSource, fid: int | None = None
    ) -> ClaimAmount:
        """Final amount for a claim.

        Web claims compute the initial amount and then let the 90-day history
        decide between the empty and value tiers; both figures are logged.
        """
        claim_amount = await self.get_claim_amount_for_address(address, source, fid)

        if source == ClaimSource.WEB:
            initial = claim_amount.amount
            history, (empty_amount, value_amount) = await asyncio.gather(
                self.check_historical_eth_balance(
                    address, self.settings.historical_min_usd, self.settings.historical_days
                ),
                self.get_wallet_claim_amounts(),
            )
            claim_amount.amount = value_amount if history.meets_requirement else empty_amount
            logger.info(
                "claim_amount.web_tier",
                address=address,
                initial_amount=initial,
                final_amount=claim_amount.amount,
                lowest_balance_usd=round(history.lowest_balance_usd, 2),
            )

        return self.apply_ceiling(claim_amount, address)

    def apply_ceiling(self, claim_amount: ClaimAmount, address: str) -> ClaimAmount:
        ceiling = self.settings.max_claim_amount
        if claim_amount.amount > ceiling:
            logger.error(
                "security.claim_amount_clamped",
                address=address,
                computed_amount=claim_amount.amount,
                clamped_to=ceiling,
            )
            claim_amount.clamped_from = claim_amount.amount
            claim_amount.amount = ceiling
        return claim_amount
