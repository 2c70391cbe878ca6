"""FastAPI dependencies for request validation and common operations.

This module provides reusable FastAPI dependencies for:
- Shared-secret and QStash signature validation
- Client IP resolution behind proxies
- Access to the services built in the application lifespan
"""

import hmac
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from qrclaim.core.config import Settings
from qrclaim.services.batch_processor import BatchProcessor
from qrclaim.services.claim_service import ClaimService
from qrclaim.services.exceptions import ClaimError, ClaimErrorCode
from qrclaim.services.identity import MiniAppTokenService, NeynarClient
from qrclaim.services.qstash import verify_qstash_signature
from qrclaim.services.retry_processor import RetryProcessor

logger = structlog.get_logger()

LOCAL_HOSTS = frozenset({"127.0.0.1", "::1"})


def get_settings() -> Settings:
    """Get application settings instance.

    Returns:
        Settings instance loaded from environment variables.
    """
    return Settings()  # type: ignore[call-arg]  # Pydantic loads from env vars


async def require_api_key(
    x_api_key: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> None:
    """Reject requests that do not carry the shared claim API key.

    Raises:
        ClaimError: 401 UNAUTHORIZED, rendered by the application error handler
    """
    expected = settings.link_visit_api_key
    if not x_api_key or not expected or not hmac.compare_digest(x_api_key, expected):
        logger.warning("api.unauthorized", has_key=bool(x_api_key))
        raise ClaimError(ClaimErrorCode.UNAUTHORIZED, "Unauthorized", status_code=401)


def get_client_ip(request: Request, settings: Settings = Depends(get_settings)) -> str:
    """Resolve the caller IP as seen by the outermost trusted proxy.

    Each trusted proxy appends the address it received the request from, so the
    client is the hop ``trusted_proxy_count`` places from the right; hops to the
    left of it are client-supplied. With no trusted proxies the forwarding
    headers are ignored.
    """
    proxies = settings.trusted_proxy_count
    if proxies > 0:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
            if hops:
                return hops[-proxies] if len(hops) >= proxies else hops[0]

        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip()

    return request.client.host if request.client else "unknown"


def get_privy_token(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
    x_privy_id_token: Annotated[str | None, Header()] = None,
) -> str | None:
    """Privy identity token from the dedicated header, a bearer token or the cookie."""
    if x_privy_id_token:
        return x_privy_id_token
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return request.cookies.get("privy-id-token")


async def _verify_qstash_request(
    request: Request, upstash_signature: str | None, settings: Settings
) -> bytes:
    raw_body = await request.body()

    if not upstash_signature:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Upstash-Signature header"
        )

    url = None
    if settings.public_base_url:
        url = f"{settings.public_base_url.rstrip('/')}{request.url.path}"

    is_valid = verify_qstash_signature(
        upstash_signature,
        raw_body,
        settings.qstash_current_signing_key,
        settings.qstash_next_signing_key,
        url=url,
    )
    if not is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid QStash signature"
        )

    return raw_body


async def validate_qstash_signature(
    request: Request,
    upstash_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Validate the QStash delivery signature before processing the request.

    Returns:
        Raw request body bytes (for further processing by the endpoint)

    Raises:
        HTTPException: 401 Unauthorized if the signature is missing or invalid
    """
    return await _verify_qstash_request(request, upstash_signature, settings)


async def validate_batch_trigger(
    request: Request,
    upstash_signature: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> bytes:
    """Signature check for the batch trigger, with an opt-in loopback bypass.

    With QSTASH_ALLOW_LOCAL set, callers on the loopback interface may run a
    batch pass unsigned during development.

    Only the socket peer address counts; the Host header is client-controlled.
    """
    client_host = request.client.host if request.client else ""
    if settings.qstash_allow_local and client_host in LOCAL_HOSTS:
        logger.debug("qstash.signature_bypassed_local", client_host=client_host)
        return await request.body()

    return await _verify_qstash_request(request, upstash_signature, settings)


def get_claim_service(request: Request) -> ClaimService:
    return request.app.state.claim_service


def get_batch_processor(request: Request) -> BatchProcessor:
    return request.app.state.batch_processor


def get_retry_processor(request: Request) -> RetryProcessor:
    return request.app.state.retry_processor


def get_miniapp_tokens(request: Request) -> MiniAppTokenService:
    return request.app.state.miniapp_tokens


def get_neynar(request: Request) -> NeynarClient:
    return request.app.state.neynar
