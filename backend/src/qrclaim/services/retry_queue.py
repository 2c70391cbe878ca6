"""Redis-backed retry queue for failed claims.

Each job is a JSON document at ``claim:{failure_id}`` that expires after seven
days. Jobs waiting for the batch processor are also indexed in the sorted set
``claim-queue:due`` scored by their due time in milliseconds, so finding due
work never scans the keyspace.

Jobs retried individually through QStash (``retry_scheduled``) live in the set
``claim-queue:scheduled`` instead; the scheduler delivers them to the
process-claim endpoint.
"""

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID

import redis.asyncio as redis
import structlog

from qrclaim.models.claim_failure import ClaimFailure
from qrclaim.services.exceptions import TransientError
from qrclaim.services.qstash import QStashPublisher

logger = structlog.get_logger()

JOB_KEY_PREFIX = "claim:"
DUE_INDEX_KEY = "claim-queue:due"
SCHEDULED_INDEX_KEY = "claim-queue:scheduled"
JOB_TTL_SECONDS = 7 * 24 * 60 * 60

PROCESS_CLAIM_PATH = "/api/queue/process-claim"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCESS = "success"
    FAILED = "failed"
    ALREADY_CLAIMED = "already_claimed"
    BANNED_USER = "banned_user"
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"


TERMINAL_STATUSES = frozenset(
    {
        JobStatus.SUCCESS,
        JobStatus.FAILED,
        JobStatus.ALREADY_CLAIMED,
        JobStatus.BANNED_USER,
        JobStatus.MAX_RETRIES_EXCEEDED,
    }
)

PENDING_STATUSES = frozenset(
    {JobStatus.QUEUED, JobStatus.PROCESSING, JobStatus.RETRY_SCHEDULED}
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()


@dataclass
class ClaimJob:
    """Queue entry for one failure. Field names match the stored JSON."""

    failureId: str
    status: str
    claimSource: str
    currentAttempt: int = 0
    scheduledTime: int = 0
    nextRetryAt: Optional[str] = None
    fid: Optional[int] = None
    address: Optional[str] = None
    auctionId: Optional[int] = None
    username: Optional[str] = None
    lastError: Optional[str] = None
    txHash: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    completedAt: Optional[str] = None
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in {s.value for s in TERMINAL_STATUSES}

    @property
    def is_pending(self) -> bool:
        return self.status in {s.value for s in PENDING_STATUSES}

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str) -> "ClaimJob":
        data = json.loads(raw)
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def job_key(failure_id: UUID | str) -> str:
    return f"{JOB_KEY_PREFIX}{failure_id}"


class RetryQueue:
    """Store, index and reschedule failed-claim jobs."""

    def __init__(
        self,
        redis_client: redis.Redis,
        publisher: QStashPublisher | None = None,
        public_base_url: str = "",
    ):
        self.redis = redis_client
        self.publisher = publisher
        self.public_base_url = public_base_url.rstrip("/")

    async def _save(self, job: ClaimJob) -> None:
        job.updatedAt = _iso(_now_ms())
        await self.redis.set(job_key(job.failureId), job.to_json(), ex=JOB_TTL_SECONDS)

    async def enqueue(self, failure: ClaimFailure, delay_seconds: int = 0) -> ClaimJob:
        """Queue a freshly logged failure for the batch processor."""
        now = _now_ms()
        due = now + delay_seconds * 1000
        job = ClaimJob(
            failureId=str(failure.id),
            status=JobStatus.QUEUED.value,
            claimSource=failure.claim_source,
            currentAttempt=0,
            scheduledTime=now,
            nextRetryAt=_iso(due) if delay_seconds else None,
            fid=failure.fid,
            address=failure.eth_address,
            auctionId=failure.auction_id,
            username=failure.username,
            lastError=failure.error_message,
            createdAt=_iso(now),
        )
        await self._save(job)
        await self.redis.zadd(DUE_INDEX_KEY, {job.failureId: due})

        logger.info(
            "retry_queue.enqueued",
            failure_id=job.failureId,
            claim_source=job.claimSource,
            delay_seconds=delay_seconds,
        )
        return job

    async def get_job(self, failure_id: UUID | str) -> ClaimJob | None:
        raw = await self.redis.get(job_key(failure_id))
        if raw is None:
            return None
        return ClaimJob.from_json(raw)

    async def update_status(
        self,
        failure_id: UUID | str,
        status: JobStatus,
        error: str | None = None,
        tx_hash: str | None = None,
    ) -> ClaimJob | None:
        """Move a job to a new status. Terminal statuses drop it from both indexes.

        Returns:
            Updated job, or None if it expired or never existed
        """
        job = await self.get_job(failure_id)
        if job is None:
            logger.warning("retry_queue.job_missing", failure_id=str(failure_id), status=status.value)
            await self.redis.zrem(DUE_INDEX_KEY, str(failure_id))
            return None

        now = _now_ms()
        job.status = status.value
        if error is not None:
            job.lastError = error
        if tx_hash is not None:
            job.txHash = tx_hash
        job.history.append(
            {"status": status.value, "attempt": job.currentAttempt, "at": _iso(now), "error": error}
        )
        if status in TERMINAL_STATUSES:
            job.completedAt = _iso(now)

        await self._save(job)
        if status in TERMINAL_STATUSES or status == JobStatus.RETRY_SCHEDULED:
            await self.redis.zrem(DUE_INDEX_KEY, job.failureId)
        if status != JobStatus.RETRY_SCHEDULED:
            await self.redis.srem(SCHEDULED_INDEX_KEY, job.failureId)

        logger.info(
            "retry_queue.status_updated",
            failure_id=job.failureId,
            status=status.value,
            attempt=job.currentAttempt,
        )
        return job

    async def get_due(self, limit: int, now_ms: int | None = None) -> list[ClaimJob]:
        """Queued jobs whose due time has passed, oldest scheduledTime first.

        Index entries whose job document expired are pruned on the way.
        """
        now_ms = now_ms if now_ms is not None else _now_ms()
        failure_ids = await self.redis.zrangebyscore(DUE_INDEX_KEY, "-inf", now_ms)

        jobs: list[ClaimJob] = []
        for failure_id in failure_ids:
            job = await self.get_job(failure_id)
            if job is None:
                await self.redis.zrem(DUE_INDEX_KEY, failure_id)
                continue
            if job.status != JobStatus.QUEUED.value:
                continue
            jobs.append(job)

        jobs.sort(key=lambda j: j.scheduledTime)
        return jobs[:limit]

    async def schedule_retry(
        self,
        failure_id: UUID | str,
        attempt: int,
        delay_minutes: int,
        error: str,
        direct: bool = False,
    ) -> ClaimJob | None:
        """Reschedule a job for another attempt after ``delay_minutes``.

        Args:
            failure_id: Failure row ID
            attempt: Attempt number the next run will carry
            delay_minutes: Delay before the next run
            error: Error that caused the reschedule
            direct: Deliver the retry to the process-claim endpoint through
                QStash instead of the batch processor's due index. Falls back
                to the index when QStash is not configured or unreachable.
        """
        job = await self.get_job(failure_id)
        if job is None:
            logger.warning("retry_queue.job_missing", failure_id=str(failure_id), status="reschedule")
            return None

        now = _now_ms()
        due = now + delay_minutes * 60 * 1000
        job.currentAttempt = attempt
        job.nextRetryAt = _iso(due)
        job.lastError = error
        job.history.append(
            {"status": "rescheduled", "attempt": attempt, "at": _iso(now), "error": error}
        )

        if direct and self.publisher is not None and self.publisher.enabled:
            try:
                await self.publisher.publish(
                    f"{self.public_base_url}{PROCESS_CLAIM_PATH}",
                    {"failureId": job.failureId, "attempt": attempt},
                    delay_seconds=delay_minutes * 60,
                )
                job.status = JobStatus.RETRY_SCHEDULED.value
                await self._save(job)
                await self.redis.zrem(DUE_INDEX_KEY, job.failureId)
                await self.redis.sadd(SCHEDULED_INDEX_KEY, job.failureId)
                logger.info(
                    "retry_queue.retry_published",
                    failure_id=job.failureId,
                    attempt=attempt,
                    delay_minutes=delay_minutes,
                )
                return job
            except TransientError as e:
                logger.warning(
                    "retry_queue.publish_fallback", failure_id=job.failureId, error=str(e)
                )

        job.status = JobStatus.QUEUED.value
        await self._save(job)
        await self.redis.zadd(DUE_INDEX_KEY, {job.failureId: due})
        await self.redis.srem(SCHEDULED_INDEX_KEY, job.failureId)
        logger.info(
            "retry_queue.retry_queued",
            failure_id=job.failureId,
            attempt=attempt,
            delay_minutes=delay_minutes,
        )
        return job

    async def find_pending(
        self,
        auction_id: int,
        address: str | None = None,
        fid: int | None = None,
        username: str | None = None,
    ) -> ClaimJob | None:
        """Find a pending job for an auction matching the address, fid or username.

        Pending jobs are always in one of the two indexes.
        """
        address = address.lower() if address else None
        username = username.lower().lstrip("@") if username else None

        failure_ids = list(await self.redis.zrange(DUE_INDEX_KEY, 0, -1))
        failure_ids.extend(sorted(await self.redis.smembers(SCHEDULED_INDEX_KEY)))
        for failure_id in failure_ids:
            job = await self.get_job(failure_id)
            if job is None or not job.is_pending or job.auctionId != auction_id:
                continue
            if address and (job.address or "").lower() == address:
                return job
            if fid is not None and fid > 0 and job.fid == fid:
                return job
            if username and (job.username or "").lower().lstrip("@") == username:
                return job
        return None
