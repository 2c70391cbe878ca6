"""Persist retryable claim failures and queue them for the retry processors."""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import structlog

from qrclaim.core.timezone import utc_now
from qrclaim.models.claim_failure import ClaimFailure
from qrclaim.services.exceptions import ClaimErrorCode, is_retryable
from qrclaim.services.fraud import ClaimContext
from qrclaim.services.retry_queue import RetryQueue

logger = structlog.get_logger()

USERNAME_RECENT_WINDOW = timedelta(seconds=60)
IP_RECENT_WINDOW = timedelta(seconds=30)


@dataclass
class FailureParams:
    fid: int
    eth_address: str
    auction_id: int
    error_message: str
    error_code: ClaimErrorCode
    claim_source: str
    username: Optional[str] = None
    user_id: Optional[str] = None
    winning_url: Optional[str] = None
    tx_hash: Optional[str] = None
    request_data: Optional[dict[str, Any]] = None
    gas_price: Optional[str] = None
    gas_limit: Optional[int] = None
    network_status: Optional[str] = None
    client_ip: Optional[str] = None

    @classmethod
    def from_context(
        cls,
        ctx: ClaimContext,
        error_code: ClaimErrorCode,
        error_message: str,
        **extra: Any,
    ) -> "FailureParams":
        return cls(
            fid=ctx.fid,
            eth_address=ctx.address,
            auction_id=ctx.auction_id,
            error_message=error_message,
            error_code=error_code,
            claim_source=ctx.source.value,
            username=ctx.username,
            user_id=ctx.user_id,
            winning_url=ctx.winning_url,
            request_data=ctx.request_data(),
            client_ip=ctx.client_ip,
            **extra,
        )


class FailureLogger:
    """Record a failed claim once and hand it to the retry queue.

    User and gaming errors are never recorded. A failure is also dropped when
    any of the duplicate checks hits, so one identity cannot flood the queue
    by retrying from several clients.
    """

    def __init__(self, uow_factory, retry_queue: RetryQueue):
        self.uow_factory = uow_factory
        self.retry_queue = retry_queue

    async def log_failed_transaction(self, params: FailureParams) -> ClaimFailure | None:
        """Returns the new failure row, or None when it was skipped."""
        if not is_retryable(params.error_code):
            logger.info(
                "failure_logger.skipped_non_retryable",
                error_code=params.error_code.value,
                address=params.eth_address,
            )
            return None

        duplicate = await self._find_duplicate(params)
        if duplicate:
            logger.info(
                "failure_logger.skipped_duplicate",
                check=duplicate,
                address=params.eth_address,
                username=params.username,
                auction_id=params.auction_id,
            )
            return None

        async with await self.uow_factory() as uow:
            failure = await uow.failures.add(
                ClaimFailure(
                    fid=params.fid,
                    eth_address=params.eth_address,
                    auction_id=params.auction_id,
                    username=params.username,
                    user_id=params.user_id,
                    winning_url=params.winning_url,
                    error_message=params.error_message,
                    error_code=params.error_code.value,
                    tx_hash=params.tx_hash,
                    request_data=params.request_data,
                    gas_price=params.gas_price,
                    gas_limit=params.gas_limit,
                    network_status=params.network_status,
                    client_ip=params.client_ip,
                    claim_source=params.claim_source,
                )
            )

        logger.warning(
            "failure_logger.recorded",
            failure_id=str(failure.id),
            error_code=params.error_code.value,
            address=params.eth_address,
            auction_id=params.auction_id,
        )

        try:
            await self.retry_queue.enqueue(failure)
        except Exception as e:
            logger.error("failure_logger.enqueue_failed", failure_id=str(failure.id), error=str(e))

        return failure

    async def _find_duplicate(self, params: FailureParams) -> str | None:
        """Run the duplicate checks concurrently and name the first one that hit."""
        now = utc_now()
        checks: dict[str, Any] = {}

        if params.username:
            checks["username_auction"] = self._check(
                "exists_for_username_and_auction", params.username, params.auction_id
            )
            checks["username_recent"] = self._check(
                "exists_for_username_since", params.username, now - USERNAME_RECENT_WINDOW
            )
        checks["address_auction"] = self._check(
            "exists_for_address_and_auction", params.eth_address, params.auction_id
        )
        if params.client_ip:
            checks["ip_recent"] = self._check(
                "exists_for_ip_and_auction_since",
                params.client_ip,
                params.auction_id,
                now - IP_RECENT_WINDOW,
            )

        results = await asyncio.gather(*checks.values())
        for name, hit in zip(checks, results):
            if hit:
                return name
        return None

    async def _check(self, method: str, *args: Any) -> bool:
        async with await self.uow_factory() as uow:
            return await getattr(uow.failures, method)(*args)
