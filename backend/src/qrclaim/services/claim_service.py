"""Individual claim orchestration.

Request flow:
    gate -> locks (fid, address, username) -> in-lock duplicate check
    -> amount -> lock refresh -> wallet checkout -> airdrop -> record -> release

The amount is resolved before the wallet is checked out, so the wallet lease
only spans the transaction itself. Both lease lengths are validated in
Settings against the transaction timeout.

Locks are released only after the claim row is written, so a concurrent
request cannot slip past the duplicate check between the airdrop landing and
the row existing. Every failure ends as a JSON outcome; retryable ones are
handed to the failure logger first.
"""

from dataclasses import dataclass, field
from typing import Any

import structlog
from eth_utils.address import is_address

from qrclaim.core.config import Settings
from qrclaim.models.claim import ClaimSource
from qrclaim.services.blockchain.airdrop import AirdropExecutor, individual_policy
from qrclaim.services.claim_amounts import ClaimAmountConfigError, ClaimAmountService
from qrclaim.services.claim_recorder import ClaimRecorder
from qrclaim.services.exceptions import (
    ClaimError,
    ClaimErrorCode,
    InsufficientGasError,
    InsufficientTokensError,
    TokenApprovalError,
    TransactionError,
    TransactionTimeoutError,
    WalletPoolExhaustedError,
)
from qrclaim.services.failure_logger import FailureLogger, FailureParams
from qrclaim.services.fraud import ClaimContext, ClaimRequest, FraudGate
from qrclaim.services.locks import (
    LockHandle,
    LockManager,
    address_lock_key,
    fid_lock_key,
    username_lock_key,
)
from qrclaim.services.rate_limit import IPRateLimiter
from qrclaim.services.retry_queue import RetryQueue
from qrclaim.services.wallet_pool import WalletLease, WalletPool, purpose_for_source

logger = structlog.get_logger()

CHECK_AMOUNT_RATE_LIMIT = 10
CHECK_AMOUNT_FALLBACK = 500


@dataclass
class ClaimOutcome:
    """HTTP status plus JSON body for a claim request."""

    status_code: int
    body: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_error(cls, error: ClaimError) -> "ClaimOutcome":
        body: dict[str, Any] = {
            "success": False,
            "error": error.message,
            "code": error.code.value,
        }
        if error.tx_hash:
            body["tx_hash"] = error.tx_hash
        return cls(status_code=error.status_code, body=body)


class ClaimService:
    """Process claim requests end to end."""

    def __init__(
        self,
        settings: Settings,
        uow_factory,
        gate: FraudGate,
        locks: LockManager,
        wallet_pool: WalletPool,
        amounts: ClaimAmountService,
        executor: AirdropExecutor,
        recorder: ClaimRecorder,
        failure_logger: FailureLogger,
        retry_queue: RetryQueue,
        check_amount_limiter: IPRateLimiter,
    ):
        self.settings = settings
        self.uow_factory = uow_factory
        self.gate = gate
        self.locks = locks
        self.wallet_pool = wallet_pool
        self.amounts = amounts
        self.executor = executor
        self.recorder = recorder
        self.failure_logger = failure_logger
        self.retry_queue = retry_queue
        self.check_amount_limiter = check_amount_limiter

    async def process_claim(
        self, request: ClaimRequest, client_ip: str, privy_token: str | None = None
    ) -> ClaimOutcome:
        ctx: ClaimContext | None = None
        handles: list[LockHandle | None] = []
        lease: WalletLease | None = None
        tx_hash: str | None = None

        try:
            ctx = await self.gate.run(request, client_ip, privy_token)
            log = logger.bind(
                address=ctx.address,
                fid=ctx.fid,
                auction_id=ctx.auction_id,
                claim_source=ctx.source.value,
            )

            await self._acquire_locks(ctx, handles)
            await self._check_duplicates(ctx)

            claim_amount = await self._resolve_amount(ctx)
            await self._refresh_locks(handles)

            lease = await self._checkout_wallet(ctx)

            result = await self._execute(ctx, lease, claim_amount.amount)
            tx_hash = result.tx_hash

            record = await self.recorder.record_claim(ctx, claim_amount, result.tx_hash)
            log.info(
                "claim.completed",
                tx_hash=result.tx_hash,
                amount=claim_amount.amount,
                is_duplicate=record.is_duplicate,
            )

            body: dict[str, Any] = {
                "success": True,
                "tx_hash": result.tx_hash,
                "amount": claim_amount.amount,
            }
            if record.warning:
                body["warning"] = record.warning
            if record.is_duplicate:
                body["is_duplicate"] = True
                body["original_tx"] = record.original_tx
            return ClaimOutcome(status_code=200, body=body)

        except ClaimError as e:
            logger.info(
                "claim.rejected",
                code=e.code.value,
                error=e.message,
                address=ctx.address if ctx else request.address,
                client_ip=client_ip,
            )
            await self._log_failure(ctx, e)
            return ClaimOutcome.from_error(e)

        except Exception as e:
            logger.error(
                "claim.unexpected_error",
                error=str(e),
                address=ctx.address if ctx else request.address,
                exc_info=True,
            )
            error = ClaimError(
                ClaimErrorCode.UNEXPECTED_ERROR,
                "An unexpected error occurred. Your claim has been queued for retry.",
                status_code=500,
                tx_hash=tx_hash,
            )
            await self._log_failure(ctx, error)
            return ClaimOutcome.from_error(error)

        finally:
            await self.wallet_pool.release_wallet(lease)
            await self.locks.release_all(handles)

    async def _acquire_locks(self, ctx: ClaimContext, handles: list[LockHandle | None]) -> None:
        """Take the identity locks in order, failing fast on the first busy one."""
        ttl = self.settings.claim_lock_ttl_seconds
        keys = []
        if ctx.source == ClaimSource.MINI_APP:
            keys.append(fid_lock_key(ctx.fid, ctx.auction_id))
        keys.append(address_lock_key(ctx.address, ctx.auction_id))
        if ctx.source == ClaimSource.WEB and ctx.username:
            keys.append(username_lock_key(ctx.username, ctx.auction_id))

        for key in keys:
            handle = await self.locks.acquire(key, ttl=ttl)
            if handle is None:
                logger.warning("claim.lock_busy", key=key, address=ctx.address)
                raise ClaimError(
                    ClaimErrorCode.CLAIM_IN_PROGRESS,
                    "A claim is already in progress. Please wait.",
                    status_code=429,
                )
            handles.append(handle)

    async def _refresh_locks(self, handles: list[LockHandle | None]) -> None:
        """Renew the identity locks for the payout; a lost lock aborts the claim."""
        ttl = self.settings.claim_lock_ttl_seconds
        for handle in handles:
            if handle is not None and not await self.locks.extend(handle, ttl=ttl):
                raise ClaimError(
                    ClaimErrorCode.CLAIM_IN_PROGRESS,
                    "Claim lock expired before payout. Please try again.",
                    status_code=429,
                )

    async def _check_duplicates(self, ctx: ClaimContext) -> None:
        """Authoritative duplicate check under the locks; clears earlier failed rows."""
        async with await self.uow_factory() as uow:
            existing = await uow.claims.get_claimed_for_identity(
                ctx.auction_id, ctx.address, ctx.fid
            )
            if existing is None and ctx.source == ClaimSource.WEB and ctx.username:
                existing = await uow.claims.get_claimed_by_username(ctx.username, ctx.auction_id)

            if existing is not None and existing.tx_hash:
                raise ClaimError(
                    ClaimErrorCode.ALREADY_CLAIMED,
                    "Tokens have already been claimed for this auction",
                    status_code=400,
                    tx_hash=existing.tx_hash,
                )

            deleted = await uow.claims.delete_incomplete_for_identity(
                ctx.auction_id, ctx.address, ctx.fid if ctx.fid > 0 else None
            )
            if deleted:
                logger.info(
                    "claim.cleared_failed_rows",
                    address=ctx.address,
                    auction_id=ctx.auction_id,
                    deleted=deleted,
                )

    async def _checkout_wallet(self, ctx: ClaimContext) -> WalletLease:
        try:
            return await self.wallet_pool.acquire(purpose_for_source(ctx.source))
        except WalletPoolExhaustedError:
            raise ClaimError(
                ClaimErrorCode.WALLETS_BUSY,
                "All wallets are busy. Please try again in a moment.",
                status_code=503,
            )

    async def _resolve_amount(self, ctx: ClaimContext):
        fid = ctx.fid if ctx.source == ClaimSource.MINI_APP else None
        try:
            return await self.amounts.resolve_claim_amount(ctx.address, ctx.source, fid)
        except ClaimAmountConfigError as e:
            raise ClaimError(ClaimErrorCode.UNEXPECTED_ERROR, str(e), status_code=500)

    async def _execute(self, ctx: ClaimContext, lease: WalletLease, amount: int):
        """Run the airdrop, translating executor errors into claim error codes."""
        policy = individual_policy(self.settings.retry_initial_delay_seconds)
        try:
            return await self.executor.execute_claim(lease.wallet, ctx.address, amount, policy)
        except InsufficientGasError as e:
            raise ClaimError(ClaimErrorCode.ADMIN_INSUFFICIENT_GAS, str(e), status_code=500)
        except InsufficientTokensError as e:
            raise ClaimError(ClaimErrorCode.ADMIN_INSUFFICIENT_TOKENS, str(e), status_code=500)
        except TokenApprovalError as e:
            raise ClaimError(ClaimErrorCode.TOKEN_APPROVAL_FAILED, str(e), status_code=500)
        except TransactionTimeoutError as e:
            raise ClaimError(
                ClaimErrorCode.TRANSACTION_TIMEOUT, str(e), status_code=500, tx_hash=e.tx_hash
            )
        except TransactionError as e:
            raise ClaimError(
                ClaimErrorCode.TRANSACTION_FAILED, str(e), status_code=500, tx_hash=e.tx_hash
            )

    async def _log_failure(self, ctx: ClaimContext | None, error: ClaimError) -> None:
        if ctx is None or not error.retryable:
            return
        try:
            await self.failure_logger.log_failed_transaction(
                FailureParams.from_context(
                    ctx,
                    error.code,
                    error.message,
                    tx_hash=error.tx_hash,
                    network_status=error.code.value.lower(),
                )
            )
        except Exception as e:
            logger.error("claim.failure_log_failed", error=str(e), code=error.code.value)

    async def check_amount(
        self,
        client_ip: str,
        address: str | None,
        claim_source: str | None = None,
        fid: int | None = None,
    ) -> ClaimOutcome:
        """Preview the amount a claim would receive, without the web history check."""
        if not await self.check_amount_limiter.hit(client_ip, CHECK_AMOUNT_RATE_LIMIT):
            return ClaimOutcome(429, {"success": False, "error": "Rate Limited"})
        if not address:
            return ClaimOutcome(400, {"success": False, "error": "Missing address"})

        if not is_address(address):
            return ClaimOutcome(400, {"success": False, "error": "Invalid address format"})

        try:
            source = ClaimSource(claim_source or ClaimSource.WEB.value)
            claim_amount = await self.amounts.get_claim_amount_for_address(address, source, fid)
            claim_amount = self.amounts.apply_ceiling(claim_amount, address)
        except Exception as e:
            logger.error("claim.check_amount_failed", address=address, error=str(e))
            return ClaimOutcome(
                200,
                {
                    "success": True,
                    "amount": CHECK_AMOUNT_FALLBACK,
                    "source": ClaimSource.WEB.value,
                    "defaulted": True,
                },
            )

        return ClaimOutcome(
            200, {"success": True, "amount": claim_amount.amount, "source": source.value}
        )

    async def check_pending(
        self,
        auction_id: int | None,
        address: str | None = None,
        fid: int | None = None,
        username: str | None = None,
    ) -> ClaimOutcome:
        """Report whether a queued retry exists for the identity and auction."""
        if auction_id is None:
            return ClaimOutcome(400, {"success": False, "error": "Missing auction_id"})

        try:
            job = await self.retry_queue.find_pending(auction_id, address, fid, username)
        except Exception as e:
            logger.error("claim.check_pending_failed", auction_id=auction_id, error=str(e))
            return ClaimOutcome(
                500, {"success": False, "error": "Failed to check pending claims"}
            )

        if job is None:
            return ClaimOutcome(200, {"success": True, "hasPendingClaim": False})
        return ClaimOutcome(
            200, {"success": True, "hasPendingClaim": True, "source": job.claimSource}
        )
