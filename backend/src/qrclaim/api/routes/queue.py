"""QStash-triggered queue endpoints.

Endpoints:
- POST /api/queue/process-claims-batch - One batch processor pass (cron trigger)
- POST /api/queue/process-claim - Retry one failure (delayed QStash delivery)

Both endpoints validate the QStash signature on the raw body first. Only the
batch trigger accepts unsigned loopback calls, and only when configured to.
"""

import json
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from qrclaim.api.dependencies import (
    get_batch_processor,
    get_retry_processor,
    validate_batch_trigger,
    validate_qstash_signature,
)
from qrclaim.services.batch_processor import BatchProcessor
from qrclaim.services.retry_processor import RetryProcessor

logger = structlog.get_logger()
router = APIRouter(prefix="/api/queue", tags=["queue"])


class ProcessClaimMessage(BaseModel):
    """Body QStash delivers for an individual retry."""

    failureId: UUID = Field(..., description="Failure row ID")
    attempt: int = Field(0, ge=0, description="Attempt number carried by this delivery")


@router.post("/process-claims-batch")
async def process_claims_batch(
    raw_body: bytes = Depends(validate_batch_trigger),
    processor: BatchProcessor = Depends(get_batch_processor),
) -> JSONResponse:
    """Run one pass of the batch processor over the due queue.

    Responses:
        200: run summary (totalProcessed, successful, failed, batches)
        500: {"success": false, "error": "..."} if the run itself crashed
    """
    try:
        result = await processor.run()
    except Exception as e:
        logger.error("queue.batch_run_failed", error=str(e), exc_info=True)
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return JSONResponse(status_code=200, content=result.to_dict())


@router.post("/process-claim")
async def process_claim(
    raw_body: bytes = Depends(validate_qstash_signature),
    processor: RetryProcessor = Depends(get_retry_processor),
) -> JSONResponse:
    """Retry one failed claim.

    A 200 response acknowledges the delivery even when the retry was
    rescheduled, so QStash does not redeliver it on top of the new schedule.
    """
    try:
        message = ProcessClaimMessage.model_validate(json.loads(raw_body or b"{}"))
    except (ValueError, ValidationError) as e:
        logger.warning("queue.invalid_message", error=str(e))
        return JSONResponse(
            status_code=400, content={"success": False, "error": "Missing failureId"}
        )

    try:
        body = await processor.process(message.failureId, message.attempt)
    except Exception as e:
        logger.error(
            "queue.retry_failed",
            failure_id=str(message.failureId),
            error=str(e),
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    return JSONResponse(status_code=200, content=body)
