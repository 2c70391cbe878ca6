"""Individual retry of one queued failure, delivered by QStash."""

from typing import Any
from uuid import UUID

import structlog

from qrclaim.core.config import Settings
from qrclaim.models.claim import ClaimSource
from qrclaim.models.claim_failure import ClaimFailure
from qrclaim.services.blockchain.airdrop import AirdropExecutor, individual_policy
from qrclaim.services.claim_amounts import ClaimAmount
from qrclaim.services.claim_recorder import ClaimRecorder
from qrclaim.services.exceptions import WalletPoolExhaustedError
from qrclaim.services.fraud import DEFAULT_WINNING_URL, ClaimContext
from qrclaim.services.retry_queue import JobStatus, RetryQueue
from qrclaim.services.wallet_pool import WalletPool, purpose_for_source

logger = structlog.get_logger()

# Delay before the next attempt, indexed by the attempt that just failed
RETRY_DELAYS_MINUTES = (20, 40, 60, 120)
WALLET_BUSY_DELAY_MINUTES = 1


def _context_from_failure(failure: ClaimFailure) -> ClaimContext:
    return ClaimContext(
        source=ClaimSource(failure.claim_source),
        address=failure.eth_address,
        auction_id=failure.auction_id,
        fid=failure.fid,
        client_ip=failure.client_ip or "retry_queue",
        username=failure.username,
        user_id=failure.user_id,
        winning_url=failure.winning_url
        or DEFAULT_WINNING_URL.format(auction_id=failure.auction_id),
    )


class RetryProcessor:
    """Pay one failed claim under a wallet checkout, or reschedule it."""

    def __init__(
        self,
        settings: Settings,
        uow_factory,
        retry_queue: RetryQueue,
        wallet_pool: WalletPool,
        executor: AirdropExecutor,
        recorder: ClaimRecorder,
    ):
        self.settings = settings
        self.uow_factory = uow_factory
        self.retry_queue = retry_queue
        self.wallet_pool = wallet_pool
        self.executor = executor
        self.recorder = recorder
        self.claim_amount = settings.batch_claim_amount

    async def process(self, failure_id: UUID, attempt: int) -> dict[str, Any]:
        """Handle one delivery for ``failure_id``.

        Returns:
            JSON body with ``status`` in success, already_claimed, banned_user,
            retry_scheduled or max_retries_exceeded
        """
        log = logger.bind(failure_id=str(failure_id), attempt=attempt)

        async with await self.uow_factory() as uow:
            failure = await uow.failures.get_by_id(failure_id)
            if failure is None:
                ban = existing = None
            else:
                ban = await uow.bans.find_ban(failure.fid, failure.username, failure.eth_address)
                existing = await uow.claims.get_claimed_for_identity(
                    failure.auction_id, failure.eth_address, failure.fid
                )
                if ban is not None or existing is not None:
                    await uow.failures.delete_by_id(failure_id)

        if failure is None:
            log.warning("retry.failure_missing")
            await self.retry_queue.update_status(
                failure_id, JobStatus.FAILED, error="Failure record not found"
            )
            return {"success": False, "error": "Failure record not found"}

        if ban is not None:
            log.warning("retry.skipped_banned", fid=failure.fid, reason=ban.reason)
            await self.retry_queue.update_status(failure_id, JobStatus.BANNED_USER)
            return {"success": True, "status": JobStatus.BANNED_USER.value}

        if existing is not None:
            log.info("retry.already_claimed", tx_hash=existing.tx_hash)
            await self.retry_queue.update_status(
                failure_id, JobStatus.ALREADY_CLAIMED, tx_hash=existing.tx_hash
            )
            return {"success": True, "status": JobStatus.ALREADY_CLAIMED.value}

        try:
            purpose = purpose_for_source(ClaimSource(failure.claim_source))
            lease = await self.wallet_pool.acquire(purpose)
        except WalletPoolExhaustedError:
            log.info("retry.wallet_busy")
            await self.retry_queue.schedule_retry(
                failure_id,
                attempt,
                WALLET_BUSY_DELAY_MINUTES,
                "Wallet busy with another transaction",
                direct=True,
            )
            return {
                "success": False,
                "status": JobStatus.RETRY_SCHEDULED.value,
                "error": "Wallet busy with another transaction",
                "retryAfter": WALLET_BUSY_DELAY_MINUTES * 60,
            }

        await self.retry_queue.update_status(failure_id, JobStatus.PROCESSING)
        try:
            airdrop = await self.executor.execute_claim(
                lease.wallet,
                failure.eth_address,
                self.claim_amount,
                individual_policy(self.settings.retry_initial_delay_seconds),
            )
        except Exception as e:
            log.warning("retry.attempt_failed", error=str(e))
            return await self._reschedule_or_give_up(failure_id, attempt, str(e))
        finally:
            await self.wallet_pool.release_wallet(lease)

        record = await self.recorder.record_claim(
            _context_from_failure(failure), ClaimAmount(amount=self.claim_amount), airdrop.tx_hash
        )
        async with await self.uow_factory() as uow:
            await uow.failures.delete_by_id(failure_id)
        await self.retry_queue.update_status(
            failure_id, JobStatus.SUCCESS, tx_hash=airdrop.tx_hash
        )

        log.info("retry.completed", tx_hash=airdrop.tx_hash, is_duplicate=record.is_duplicate)
        body: dict[str, Any] = {
            "success": True,
            "status": JobStatus.SUCCESS.value,
            "tx_hash": airdrop.tx_hash,
        }
        if record.warning:
            body["warning"] = record.warning
        return body

    async def _reschedule_or_give_up(
        self, failure_id: UUID, attempt: int, error: str
    ) -> dict[str, Any]:
        if attempt < len(RETRY_DELAYS_MINUTES):
            delay = RETRY_DELAYS_MINUTES[attempt]
            await self.retry_queue.schedule_retry(
                failure_id, attempt + 1, delay, error, direct=True
            )
            async with await self.uow_factory() as uow:
                await uow.failures.mark_retried(failure_id)
            return {
                "success": False,
                "status": JobStatus.RETRY_SCHEDULED.value,
                "nextRetry": delay,
                "attempt": attempt + 1,
            }

        await self.retry_queue.update_status(
            failure_id, JobStatus.MAX_RETRIES_EXCEEDED, error=error
        )
        async with await self.uow_factory() as uow:
            await uow.failures.delete_by_id(failure_id)
        logger.warning("retry.max_retries_exceeded", failure_id=str(failure_id), error=error)
        return {
            "success": False,
            "status": JobStatus.MAX_RETRIES_EXCEEDED.value,
            "error": error,
        }
