"""Link-visit claim API endpoints.

Endpoints:
- POST /api/link-visit/claim - Claim tokens for visiting the winning link
- POST /api/link-visit/check-amount - Preview the amount an address would receive
- POST /api/link-visit/check-pending - Whether a queued retry exists for an identity
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from qrclaim.api.dependencies import (
    get_claim_service,
    get_client_ip,
    get_privy_token,
    require_api_key,
)
from qrclaim.services.claim_service import ClaimService
from qrclaim.services.fraud import ClaimRequest

logger = structlog.get_logger()
router = APIRouter(prefix="/api/link-visit", tags=["claims"])


class CheckAmountRequest(BaseModel):
    """Request model for previewing a claim amount."""

    model_config = ConfigDict(populate_by_name=True)

    address: Optional[str] = Field(None, description="Recipient Ethereum address")
    claim_source: Optional[str] = Field(
        None,
        alias="claimSource",
        description="web, mobile or mini_app (defaults to web)",
    )
    fid: Optional[int] = Field(None, description="Farcaster ID for mini-app previews")


class CheckPendingRequest(BaseModel):
    """Request model for the pending-retry lookup."""

    model_config = ConfigDict(populate_by_name=True)

    auction_id: Optional[int] = Field(None, alias="auctionId", description="Auction ID")
    address: Optional[str] = Field(None, description="Recipient Ethereum address")
    fid: Optional[int] = Field(None, description="Farcaster ID")
    username: Optional[str] = Field(None, description="Twitter or Farcaster username")


@router.post("/claim", dependencies=[Depends(require_api_key)])
async def claim(
    request: ClaimRequest,
    client_ip: str = Depends(get_client_ip),
    privy_token: str | None = Depends(get_privy_token),
    service: ClaimService = Depends(get_claim_service),
) -> JSONResponse:
    """Claim tokens for an auction's winning link.

    The request passes the fraud gate (parameters, rate limits, IP quotas,
    identity, bans, auction freshness, Farcaster validation), then takes the
    identity locks and pays out through a pool wallet.

    Responses:
        200: {"success": true, "tx_hash": "0x...", "amount": 420}
        4xx: {"success": false, "error": "...", "code": "ALREADY_CLAIMED", ...}
        5xx: infrastructure failure; the claim is queued for retry
    """
    outcome = await service.process_claim(request, client_ip, privy_token)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/check-amount")
async def check_amount(
    request: CheckAmountRequest,
    client_ip: str = Depends(get_client_ip),
    service: ClaimService = Depends(get_claim_service),
) -> JSONResponse:
    """Preview the claim amount for an address.

    Falls back to a default amount instead of failing when the amount cannot
    be determined.
    """
    outcome = await service.check_amount(
        client_ip, request.address, request.claim_source, request.fid
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.post("/check-pending")
async def check_pending(
    request: CheckPendingRequest,
    service: ClaimService = Depends(get_claim_service),
) -> JSONResponse:
    outcome = await service.check_pending(
        request.auction_id, request.address, request.fid, request.username
    )
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)
