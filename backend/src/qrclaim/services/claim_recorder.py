"""Persist successful claims and catch double-spends at the database."""

from dataclasses import dataclass
from typing import Optional

import structlog
from sqlalchemy.exc import IntegrityError

from qrclaim.core.timezone import utc_now
from qrclaim.models.claim import LinkVisitClaim
from qrclaim.services.claim_amounts import ClaimAmount
from qrclaim.services.fraud import ClaimContext

logger = structlog.get_logger()

RACE_CONDITION_BANNER = "race_condition_detector"


@dataclass
class RecordResult:
    success: bool
    is_duplicate: bool = False
    original_tx: Optional[str] = None
    warning: Optional[str] = None


class ClaimRecorder:
    """Write the claim row after a confirmed airdrop.

    The airdrop has already landed when this runs, so the outcome is always a
    success from the claimant's point of view. A uniqueness violation means a
    concurrent request paid the same identity first: the claimant is auto-banned
    with both transactions as evidence.
    """

    def __init__(self, uow_factory):
        self.uow_factory = uow_factory

    async def record_claim(
        self, ctx: ClaimContext, claim_amount: ClaimAmount, tx_hash: str
    ) -> RecordResult:
        now = utc_now()
        try:
            async with await self.uow_factory() as uow:
                row = await uow.claims.get_by_address_and_auction(ctx.address, ctx.auction_id)
                if row is None:
                    row = await uow.claims.get_by_fid_and_auction(ctx.fid, ctx.auction_id)

                if row is not None and row.claimed_at is None:
                    logger.info(
                        "claim_recorder.upgrading_visit",
                        claim_id=row.id,
                        address=ctx.address,
                        auction_id=ctx.auction_id,
                    )
                    self._apply(row, ctx, claim_amount, tx_hash, now)
                    uow.session.add(row)
                    await uow.session.flush()
                else:
                    row = LinkVisitClaim(
                        fid=ctx.fid,
                        eth_address=ctx.address,
                        auction_id=ctx.auction_id,
                        link_visited_at=now,
                    )
                    self._apply(row, ctx, claim_amount, tx_hash, now)
                    await uow.claims.add(row)

            logger.info(
                "claim_recorder.recorded",
                address=ctx.address,
                fid=ctx.fid,
                auction_id=ctx.auction_id,
                amount=claim_amount.amount,
                tx_hash=tx_hash,
            )
            return RecordResult(success=True)

        except IntegrityError:
            return await self._handle_double_spend(ctx, claim_amount, tx_hash, now)
        except Exception as e:
            logger.error(
                "claim_recorder.write_failed",
                address=ctx.address,
                auction_id=ctx.auction_id,
                tx_hash=tx_hash,
                error=str(e),
                exc_info=True,
            )
            return RecordResult(
                success=True,
                warning="Tokens were sent but the claim could not be recorded",
            )

    @staticmethod
    def _apply(
        row: LinkVisitClaim,
        ctx: ClaimContext,
        claim_amount: ClaimAmount,
        tx_hash: str,
        now,
    ) -> None:
        row.fid = ctx.fid
        row.eth_address = ctx.address
        row.username = ctx.username
        row.user_id = ctx.user_id
        row.winning_url = ctx.winning_url
        row.claim_source = ctx.source.value
        row.amount = claim_amount.amount
        row.tx_hash = tx_hash
        row.success = True
        row.claimed_at = now
        row.client_ip = ctx.client_ip
        row.neynar_user_score = claim_amount.neynar_score
        row.spam_label = claim_amount.spam_label
        row.mini_app_client = ctx.mini_app_client

    async def _handle_double_spend(
        self, ctx: ClaimContext, claim_amount: ClaimAmount, tx_hash: str, now
    ) -> RecordResult:
        original_tx = None
        try:
            original_tx = await self._auto_ban(ctx, claim_amount, tx_hash, now)
        except Exception as e:
            logger.error(
                "claim_recorder.auto_ban_failed", fid=ctx.fid, error=str(e), exc_info=True
            )

        logger.error(
            "security.double_spend_detected",
            fid=ctx.fid,
            username=ctx.username,
            address=ctx.address,
            auction_id=ctx.auction_id,
            original_tx=original_tx,
            duplicate_tx=tx_hash,
            double_spend_amount=claim_amount.amount,
            client_ip=ctx.client_ip,
        )
        return RecordResult(success=True, is_duplicate=True, original_tx=original_tx)

    async def _auto_ban(
        self, ctx: ClaimContext, claim_amount: ClaimAmount, tx_hash: str, now
    ) -> str | None:
        async with await self.uow_factory() as uow:
            original = await uow.claims.get_claimed_for_identity(
                ctx.auction_id, ctx.address, ctx.fid
            )
            original_tx = original.tx_hash if original else None
            original_amount = original.amount if original else 0

            evidence = [
                {
                    "tx_hash": original_tx,
                    "claimed_at": original.claimed_at.isoformat()
                    if original and original.claimed_at
                    else None,
                    "amount": original_amount,
                },
                {
                    "tx_hash": tx_hash,
                    "claimed_at": now.isoformat(),
                    "amount": claim_amount.amount,
                },
            ]
            await uow.bans.upsert_auto_ban(
                fid=ctx.fid,
                username=ctx.username,
                eth_address=ctx.address,
                reason=(
                    f"Race condition exploit: received {claim_amount.amount} extra tokens "
                    f"for auction {ctx.auction_id}"
                ),
                banned_by=RACE_CONDITION_BANNER,
                duplicate_transactions=evidence,
                total_tokens_received=original_amount + claim_amount.amount,
            )
        return original_tx
