"""Mini-app session token endpoint.

The Farcaster mini-app signs in with Sign In With Farcaster (SIWF). The SIWF
signature only proves control of the signing address, so the fid named in the
message is checked against Neynar: the signer must be the fid's custody
address, and the address the token is issued for must belong to the same fid.
The claim endpoint later requires that token for ``mini_app`` claims.

Endpoints:
- POST /api/miniapp/token - Exchange a verified SIWF signature for a session token
"""

from typing import Optional

import structlog
from eth_utils.address import is_address
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from qrclaim.api.dependencies import get_miniapp_tokens, get_neynar, get_settings
from qrclaim.core.config import Settings
from qrclaim.services.farcaster_signature import verify_farcaster_signature
from qrclaim.services.identity import MiniAppTokenService, NeynarClient

logger = structlog.get_logger()
router = APIRouter(prefix="/api/miniapp", tags=["miniapp"])


class MiniAppTokenRequest(BaseModel):
    """Request model for issuing a mini-app session token."""

    message: str = Field(..., description="SIWF message (EIP-4361 format)", min_length=1)
    signature: str = Field(..., description="SIWF signature hex string", min_length=1)
    address: str = Field(
        ...,
        description="Address the claim will be paid to (0x + 40 hex characters)",
        min_length=42,
        max_length=42,
    )
    nonce: Optional[str] = Field(None, description="Nonce the SIWF message must carry")
    client_fid: Optional[int] = Field(None, description="Farcaster client the app runs in")


class MiniAppTokenResponse(BaseModel):
    """Response model for an issued session token."""

    success: bool
    token: str
    fid: int
    expires_in: int


@router.post("/token", response_model=MiniAppTokenResponse)
async def issue_miniapp_token(
    request: MiniAppTokenRequest,
    settings: Settings = Depends(get_settings),
    tokens: MiniAppTokenService = Depends(get_miniapp_tokens),
    neynar: NeynarClient = Depends(get_neynar),
) -> MiniAppTokenResponse:
    """Verify a SIWF signature and issue a session token for the fid it names.

    Raises:
        HTTPException: 400 if the address is malformed, 401 if the SIWF
            signature, domain or nonce does not verify or the signer is not the
            fid's custody address, 403 if the address does not belong to the fid
    """
    if not is_address(request.address):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid address")

    siwf = verify_farcaster_signature(
        message=request.message,
        signature=request.signature,
        expected_domain=settings.miniapp_domain,
        nonce=request.nonce,
    )
    if siwf is None or siwf.fid is None:
        logger.warning("miniapp.token_rejected", address=request.address)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid Farcaster signature"
        )

    user = await neynar.fetch_user(siwf.fid)
    if user is None or not user.owns(siwf.address, "custody"):
        logger.warning(
            "miniapp.signer_not_custody",
            fid=siwf.fid,
            signer=siwf.address,
            user_found=user is not None,
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Signer is not the custody address of this fid",
        )

    if not user.owns(request.address):
        logger.warning("miniapp.address_not_owned", fid=siwf.fid, address=request.address)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Address does not belong to this fid"
        )

    token = tokens.issue(siwf.fid, request.address, request.client_fid)
    logger.info("miniapp.token_issued", fid=siwf.fid, address=request.address)

    return MiniAppTokenResponse(
        success=True, token=token, fid=siwf.fid, expires_in=tokens.ttl_seconds
    )
