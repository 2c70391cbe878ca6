"""Batch processor for queued claim failures.

Drains due jobs from the retry queue, re-validates each failure (bans and
claims recorded since it failed), groups survivors by claim source and pays
each sub-batch with one multi-recipient airdrop.

Only one run may be active at a time; the run lock lives in the same lock
manager as the claim locks.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional
from uuid import UUID

import structlog

from qrclaim.core.config import Settings
from qrclaim.core.timezone import utc_now
from qrclaim.models.claim import ClaimSource
from qrclaim.models.claim_failure import ClaimFailure
from qrclaim.services.blockchain.airdrop import (
    BATCH_APPROVAL_AMOUNT,
    BATCH_MIN_GAS_WEI,
    AirdropExecutor,
    batch_gas_limit,
    batch_policy,
    to_token_units,
)
from qrclaim.services.fraud import DEFAULT_WINNING_URL
from qrclaim.services.locks import BATCH_PROCESSOR_LOCK_KEY, LockHandle, LockManager
from qrclaim.services.retry_queue import JobStatus, RetryQueue
from qrclaim.services.wallet_pool import WalletPool, purpose_for_source

logger = structlog.get_logger()

BATCH_CLIENT_IP = "batch_queue"

# Delay before the individual fallback retry, indexed by the failed attempt
FALLBACK_DELAYS_MINUTES = (2, 5, 10, 20)


@dataclass
class SubBatchResult:
    source: str
    size: int
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    warning: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"source": self.source, "size": self.size, "success": self.success}
        if self.tx_hash:
            data["tx_hash"] = self.tx_hash
        if self.error:
            data["error"] = self.error
        if self.warning:
            data["warning"] = self.warning
        return data


@dataclass
class BatchRunResult:
    success: bool = True
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: bool = False
    message: Optional[str] = None
    batches: list[SubBatchResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "totalProcessed": self.total_processed,
            "successful": self.successful,
            "failed": self.failed,
            "batches": [b.to_dict() for b in self.batches],
        }
        if self.skipped:
            data["skipped"] = True
        if self.message:
            data["message"] = self.message
        return data


class BatchProcessor:
    """Pay queued failures in grouped airdrops.

    Example:
        result = await processor.run()
        print(result.to_dict())
    """

    def __init__(
        self,
        settings: Settings,
        uow_factory,
        locks: LockManager,
        retry_queue: RetryQueue,
        wallet_pool: WalletPool,
        executor: AirdropExecutor,
    ):
        self.settings = settings
        self.uow_factory = uow_factory
        self.locks = locks
        self.retry_queue = retry_queue
        self.wallet_pool = wallet_pool
        self.executor = executor
        self.batch_size = settings.batch_size
        self.max_batches = settings.max_batches_per_run
        self.claim_amount = settings.batch_claim_amount

    async def run(self, dry_run: bool = False) -> BatchRunResult:
        """Process one pass over the due queue.

        Args:
            dry_run: Validate and group without sending transactions

        Returns:
            Run summary; ``skipped`` when another run holds the run lock
        """
        run_lock = await self.locks.acquire(
            BATCH_PROCESSOR_LOCK_KEY, ttl=self.settings.batch_run_lock_ttl_seconds
        )
        if run_lock is None:
            logger.info("batch.run_skipped", reason="already_running")
            return BatchRunResult(skipped=True, message="Batch processor already running")

        try:
            return await self._run(run_lock, dry_run)
        finally:
            await self.locks.release(run_lock)

    async def _run(self, run_lock: LockHandle, dry_run: bool) -> BatchRunResult:
        jobs = await self.retry_queue.get_due(self.batch_size * self.max_batches)
        if not jobs:
            logger.info("batch.queue_empty")
            return BatchRunResult(message="No failures to process")

        attempts = {job.failureId: job.currentAttempt for job in jobs}
        async with await self.uow_factory() as uow:
            failures = await uow.failures.get_by_ids([UUID(job.failureId) for job in jobs])

        missing = set(attempts) - {str(f.id) for f in failures}
        for failure_id in missing:
            await self.retry_queue.update_status(
                failure_id, JobStatus.FAILED, error="Failure record not found"
            )

        valid = await self._filter_valid(failures)
        if not valid:
            logger.info("batch.nothing_valid", queued=len(jobs))
            return BatchRunResult(message="No valid failures after filtering")

        groups = self._group_by_source(valid)
        logger.info(
            "batch.run_started",
            queued=len(jobs),
            valid=len(valid),
            groups={source: len(items) for source, items in groups.items()},
            dry_run=dry_run,
        )

        if not dry_run:
            # Claimed up front so a later run never picks up jobs still held here
            for failure in valid:
                await self.retry_queue.update_status(failure.id, JobStatus.PROCESSING)

        result = BatchRunResult()
        for source, items in groups.items():
            for start in range(0, len(items), self.batch_size):
                sub_batch = items[start : start + self.batch_size]

                if dry_run:
                    result.batches.append(
                        SubBatchResult(source=source, size=len(sub_batch), success=True)
                    )
                    continue

                await self._renew_run_lock(run_lock)
                sub_result = await self._process_isolated(sub_batch, source, attempts)
                result.batches.append(sub_result)
                result.total_processed += sub_result.size
                if sub_result.success:
                    result.successful += sub_result.size
                else:
                    result.failed += sub_result.size

                if start + self.batch_size < len(items):
                    await asyncio.sleep(self.settings.batch_delay_seconds)

        logger.info(
            "batch.run_completed",
            total_processed=result.total_processed,
            successful=result.successful,
            failed=result.failed,
            batches=len(result.batches),
        )
        return result

    async def _renew_run_lock(self, run_lock: LockHandle) -> None:
        """Extend the run lock before each sub-batch; every job is already PROCESSING."""
        ttl = self.settings.batch_run_lock_ttl_seconds
        if not await self.locks.extend(run_lock, ttl=ttl):
            logger.warning("batch.run_lock_lost", key=run_lock.key)

    async def _filter_valid(self, failures: list[ClaimFailure]) -> list[ClaimFailure]:
        """Drop banned and already-claimed failures, cleaning up their state.

        Failures that collide on (fid, auction) or (address, auction) with an
        earlier one in this run stay queued for the next run.
        """
        valid: list[ClaimFailure] = []
        seen: set[tuple[Any, int]] = set()

        for failure in failures:
            async with await self.uow_factory() as uow:
                ban = await uow.bans.find_ban(failure.fid, failure.username, failure.eth_address)
                existing = None
                if ban is None:
                    existing = await uow.claims.get_claimed_for_identity(
                        failure.auction_id, failure.eth_address, failure.fid
                    )
                if ban is not None or existing is not None:
                    await uow.failures.delete_by_id(failure.id)

            if ban is not None:
                logger.warning(
                    "batch.skipped_banned",
                    failure_id=str(failure.id),
                    fid=failure.fid,
                    username=failure.username,
                    reason=ban.reason,
                )
                await self.retry_queue.update_status(failure.id, JobStatus.BANNED_USER)
                continue
            if existing is not None:
                logger.info(
                    "batch.skipped_already_claimed",
                    failure_id=str(failure.id),
                    address=failure.eth_address,
                    auction_id=failure.auction_id,
                )
                await self.retry_queue.update_status(
                    failure.id, JobStatus.ALREADY_CLAIMED, tx_hash=existing.tx_hash
                )
                continue

            fid_key = (failure.fid, failure.auction_id)
            address_key = (failure.eth_address.lower(), failure.auction_id)
            if fid_key in seen or address_key in seen:
                logger.info("batch.deferred_duplicate", failure_id=str(failure.id))
                continue
            seen.update({fid_key, address_key})
            valid.append(failure)

        return valid

    @staticmethod
    def _group_by_source(failures: list[ClaimFailure]) -> dict[str, list[ClaimFailure]]:
        groups: dict[str, list[ClaimFailure]] = {}
        for failure in failures:
            source = failure.claim_source or ClaimSource.MINI_APP.value
            groups.setdefault(source, []).append(failure)
        return groups

    async def _process_isolated(
        self, sub_batch: list[ClaimFailure], source: str, attempts: dict[str, int]
    ) -> SubBatchResult:
        """Run one sub-batch; its failure never aborts the rest of the run."""
        try:
            return await self._process_sub_batch(sub_batch, source)
        except Exception as e:
            error = str(e)
            logger.error(
                "batch.sub_batch_failed",
                source=source,
                size=len(sub_batch),
                error=error,
            )
            await self._schedule_fallback(sub_batch, attempts, error)
            return SubBatchResult(source=source, size=len(sub_batch), success=False, error=error)

    async def _process_sub_batch(
        self, sub_batch: list[ClaimFailure], source: str
    ) -> SubBatchResult:
        lease = await self.wallet_pool.acquire(purpose_for_source(ClaimSource(source)))
        try:
            wallet = lease.wallet
            units = to_token_units(self.claim_amount)
            required = units * len(sub_batch)

            await self.executor.check_gas_balance(wallet.address, BATCH_MIN_GAS_WEI)
            await self.executor.check_token_balance(wallet.address, required)
            await self.executor.ensure_allowance(
                wallet, required, approve_units=to_token_units(BATCH_APPROVAL_AMOUNT)
            )

            airdrop = await self.executor.send_airdrop(
                wallet,
                [(failure.eth_address, units) for failure in sub_batch],
                batch_gas_limit(len(sub_batch)),
                batch_policy(),
            )
        finally:
            await self.wallet_pool.release_wallet(lease)

        try:
            await self._record(sub_batch, airdrop.tx_hash)
        except Exception as e:
            # Tokens already moved: never retry these, leave the rows for inspection
            logger.error(
                "batch.record_failed",
                source=source,
                tx_hash=airdrop.tx_hash,
                failure_ids=[str(f.id) for f in sub_batch],
                error=str(e),
            )
            for failure in sub_batch:
                await self.retry_queue.update_status(
                    failure.id,
                    JobStatus.FAILED,
                    error=f"Paid in {airdrop.tx_hash} but not recorded: {e}",
                    tx_hash=airdrop.tx_hash,
                )
            return SubBatchResult(
                source=source,
                size=len(sub_batch),
                success=True,
                tx_hash=airdrop.tx_hash,
                warning="Airdrop succeeded but claims could not be recorded",
            )

        for failure in sub_batch:
            await self.retry_queue.update_status(
                failure.id, JobStatus.SUCCESS, tx_hash=airdrop.tx_hash
            )

        logger.info(
            "batch.sub_batch_completed",
            source=source,
            size=len(sub_batch),
            tx_hash=airdrop.tx_hash,
        )
        return SubBatchResult(
            source=source, size=len(sub_batch), success=True, tx_hash=airdrop.tx_hash
        )

    async def _record(self, sub_batch: list[ClaimFailure], tx_hash: str) -> None:
        """Upsert every claim in one statement and delete the consumed failures."""
        now = utc_now()
        rows = [
            {
                "fid": failure.fid,
                "auction_id": failure.auction_id,
                "eth_address": failure.eth_address,
                "link_visited_at": now,
                "claimed_at": now,
                "amount": self.claim_amount,
                "tx_hash": tx_hash,
                "success": True,
                "username": failure.username,
                "user_id": failure.user_id,
                "winning_url": failure.winning_url
                or DEFAULT_WINNING_URL.format(auction_id=failure.auction_id),
                "claim_source": failure.claim_source or ClaimSource.MINI_APP.value,
                "client_ip": BATCH_CLIENT_IP,
            }
            for failure in sub_batch
        ]
        async with await self.uow_factory() as uow:
            await uow.claims.upsert_many(rows)
            await uow.failures.delete_by_ids([failure.id for failure in sub_batch])

    async def _schedule_fallback(
        self, sub_batch: list[ClaimFailure], attempts: dict[str, int], error: str
    ) -> None:
        """Hand each failed claim to the individual retry path, or give up on it."""
        for failure in sub_batch:
            attempt = attempts.get(str(failure.id), 0)
            try:
                if attempt < len(FALLBACK_DELAYS_MINUTES):
                    await self.retry_queue.schedule_retry(
                        failure.id,
                        attempt + 1,
                        FALLBACK_DELAYS_MINUTES[attempt],
                        f"Batch failed: {error}",
                        direct=True,
                    )
                    async with await self.uow_factory() as uow:
                        await uow.failures.mark_retried(failure.id)
                else:
                    await self.retry_queue.update_status(
                        failure.id,
                        JobStatus.MAX_RETRIES_EXCEEDED,
                        error=f"Batch failed: {error}",
                    )
                    async with await self.uow_factory() as uow:
                        await uow.failures.delete_by_id(failure.id)
                    logger.warning(
                        "batch.max_retries_exceeded",
                        failure_id=str(failure.id),
                        address=failure.eth_address,
                    )
            except Exception as e:
                logger.error(
                    "batch.fallback_schedule_failed", failure_id=str(failure.id), error=str(e)
                )
