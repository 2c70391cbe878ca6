"""Anti-fraud gate for link-visit claims.

Checks run in a fixed order and stop at the first failure, which is raised as
a ClaimError carrying the response code and HTTP status:

1. Parameter and claim_source validation
2. IP rate limit (fixed window)
3. IP quotas per auction and per rolling 24 hours (web/mobile)
4. Pre-authentication duplicate check by address
5. Authentication (mini-app token or Privy)
6. Hard username denylist
7. Ban table lookup by fid, username variants and address
8. Auction freshness (latest won auction only)
9. Neynar ownership validation (mini-app)

The API key check runs earlier as a FastAPI dependency, and the web
historical-balance check lives in claim amount resolution since it decides the
tier rather than rejecting.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from eth_utils.address import is_address, to_checksum_address
from pydantic import BaseModel

from qrclaim.core.config import Settings
from qrclaim.core.timezone import utc_now
from qrclaim.models.claim import ClaimSource, synthetic_fid
from qrclaim.services.exceptions import ClaimError, ClaimErrorCode
from qrclaim.services.identity import MiniAppTokenService, NeynarClient, PrivyClient
from qrclaim.services.rate_limit import IPRateLimiter

logger = structlog.get_logger()

DEFAULT_WINNING_URL = "https://qrcoin.fun/auction/{auction_id}"


class ClaimRequest(BaseModel):
    """Claim request body as sent by the front-end. Validation happens in the gate."""

    fid: Optional[int] = None
    address: Optional[str] = None
    auction_id: Optional[int] = None
    username: Optional[str] = None
    winning_url: Optional[str] = None
    claim_source: Optional[str] = None
    captcha_token: Optional[str] = None
    client_fid: Optional[int] = None
    miniapp_token: Optional[str] = None
    wallet_type: Optional[str] = None
    mini_app_client: Optional[str] = None


@dataclass
class ClaimContext:
    """Validated claim parameters, enriched as the gate authenticates the caller."""

    source: ClaimSource
    address: str
    auction_id: int
    fid: int
    client_ip: str
    username: Optional[str] = None
    user_id: Optional[str] = None
    winning_url: Optional[str] = None
    client_fid: Optional[int] = None
    wallet_type: Optional[str] = None
    mini_app_client: Optional[str] = None

    def request_data(self) -> dict:
        """Serializable snapshot stored with failure records."""
        return {
            "fid": self.fid,
            "address": self.address,
            "auction_id": self.auction_id,
            "username": self.username,
            "user_id": self.user_id,
            "winning_url": self.winning_url,
            "claim_source": self.source.value,
            "client_fid": self.client_fid,
            "wallet_type": self.wallet_type,
            "mini_app_client": self.mini_app_client,
        }


def _error(code: ClaimErrorCode, message: str, status_code: int, tx_hash: str | None = None):
    return ClaimError(code=code, message=message, status_code=status_code, tx_hash=tx_hash)


class FraudGate:
    """Sequential, short-circuiting claim checks."""

    def __init__(
        self,
        settings: Settings,
        uow_factory,
        rate_limiter: IPRateLimiter,
        privy: PrivyClient,
        miniapp_tokens: MiniAppTokenService,
        neynar: NeynarClient,
    ):
        self.settings = settings
        self.uow_factory = uow_factory
        self.rate_limiter = rate_limiter
        self.privy = privy
        self.miniapp_tokens = miniapp_tokens
        self.neynar = neynar

    async def run(
        self, request: ClaimRequest, client_ip: str, privy_token: str | None
    ) -> ClaimContext:
        """Run every check in order and return the authenticated claim context.

        Raises:
            ClaimError: First failing check
        """
        ctx = self.validate_parameters(request, client_ip)
        await self.check_rate_limit(ctx)
        await self.check_ip_quotas(ctx)
        await self.check_existing_claim(ctx)
        await self.authenticate(ctx, request, privy_token)
        self.check_hard_ban(ctx)
        await self.check_ban_table(ctx)
        await self.check_auction_freshness(ctx)
        await self.check_neynar(ctx)
        return ctx

    def validate_parameters(self, request: ClaimRequest, client_ip: str) -> ClaimContext:
        if not request.claim_source:
            raise _error(
                ClaimErrorCode.INVALID_CLAIM_SOURCE, "Missing claim_source", 400
            )
        try:
            source = ClaimSource(request.claim_source)
        except ValueError:
            raise _error(
                ClaimErrorCode.INVALID_CLAIM_SOURCE,
                f"Invalid claim_source: {request.claim_source}",
                400,
            )

        if not request.address or request.auction_id is None:
            raise _error(ClaimErrorCode.MISSING_PARAMETERS, "Missing required parameters", 400)
        if source == ClaimSource.MINI_APP and not request.fid:
            raise _error(ClaimErrorCode.MISSING_PARAMETERS, "Missing fid for mini-app claim", 400)
        if not is_address(request.address):
            raise _error(ClaimErrorCode.INVALID_ADDRESS, "Invalid address format", 400)

        address = to_checksum_address(request.address)
        fid = request.fid if source == ClaimSource.MINI_APP else synthetic_fid(address)

        return ClaimContext(
            source=source,
            address=address,
            auction_id=request.auction_id,
            fid=fid,  # type: ignore[arg-type]
            client_ip=client_ip,
            username=request.username,
            winning_url=request.winning_url
            or DEFAULT_WINNING_URL.format(auction_id=request.auction_id),
            client_fid=request.client_fid,
            wallet_type=request.wallet_type,
            mini_app_client=request.mini_app_client,
        )

    async def check_rate_limit(self, ctx: ClaimContext) -> None:
        limit = (
            self.settings.ip_rate_limit_miniapp
            if ctx.source == ClaimSource.MINI_APP
            else self.settings.ip_rate_limit_web
        )
        if not await self.rate_limiter.hit(ctx.client_ip, limit):
            raise _error(
                ClaimErrorCode.RATE_LIMITED, "Too many requests. Please try again later.", 429
            )

    async def check_ip_quotas(self, ctx: ClaimContext) -> None:
        if ctx.source == ClaimSource.MINI_APP:
            return

        async with await self.uow_factory() as uow:
            auction_count = await uow.claims.count_ip_claims_for_auction(
                ctx.client_ip, ctx.auction_id
            )
            if auction_count >= self.settings.ip_claims_per_auction:
                logger.warning(
                    "fraud.ip_auction_limit",
                    client_ip=ctx.client_ip,
                    auction_id=ctx.auction_id,
                    count=auction_count,
                )
                raise _error(
                    ClaimErrorCode.IP_AUCTION_LIMIT_EXCEEDED,
                    "Too many claims from this network for this auction",
                    429,
                )

            daily_count = await uow.claims.count_ip_claims_since(
                ctx.client_ip, utc_now() - timedelta(hours=24)
            )
            if daily_count >= self.settings.ip_claims_per_day:
                logger.warning(
                    "fraud.ip_daily_limit",
                    client_ip=ctx.client_ip,
                    count=daily_count,
                )
                raise _error(
                    ClaimErrorCode.IP_DAILY_LIMIT_EXCEEDED,
                    "Too many claims from this network today",
                    429,
                )

    async def check_existing_claim(self, ctx: ClaimContext) -> None:
        async with await self.uow_factory() as uow:
            existing = await uow.claims.get_claimed_by_address(ctx.address, ctx.auction_id)

        if existing is not None and existing.tx_hash:
            raise _error(
                ClaimErrorCode.ALREADY_CLAIMED,
                "This wallet has already claimed tokens for this auction",
                400,
                tx_hash=existing.tx_hash,
            )

    async def authenticate(
        self, ctx: ClaimContext, request: ClaimRequest, privy_token: str | None
    ) -> None:
        if ctx.source == ClaimSource.MINI_APP:
            result = self.miniapp_tokens.verify(request.miniapp_token)
            if not result.is_valid:
                raise _error(
                    ClaimErrorCode.INVALID_MINIAPP_TOKEN,
                    result.error or "Invalid mini-app token",
                    401,
                )
            if result.fid != ctx.fid or (result.address or "").lower() != ctx.address.lower():
                logger.warning(
                    "fraud.token_mismatch",
                    token_fid=result.fid,
                    request_fid=ctx.fid,
                    token_address=result.address,
                    request_address=ctx.address,
                )
                raise _error(
                    ClaimErrorCode.TOKEN_MISMATCH, "Token does not match claim identity", 403
                )
            if result.client_fid is not None:
                ctx.client_fid = result.client_fid
            return

        user = await self.privy.verify_token(privy_token) if privy_token else None
        if user is None:
            raise _error(
                ClaimErrorCode.AUTHENTICATION_REQUIRED, "Authentication required", 401
            )
        ctx.user_id = user.user_id

        if ctx.source == ClaimSource.WEB:
            twitter_username = user.twitter_username
            if not twitter_username:
                raise _error(
                    ClaimErrorCode.WEB_USERNAME_REQUIRED,
                    "A verified X (Twitter) account is required to claim",
                    400,
                )
            ctx.username = twitter_username
        elif user.twitter_username:
            ctx.username = user.twitter_username

    def check_hard_ban(self, ctx: ClaimContext) -> None:
        if ctx.username and ctx.username.lower().lstrip("@") in self.settings.hard_banned_username_set:
            logger.warning("fraud.hard_banned_username", username=ctx.username, address=ctx.address)
            raise _error(ClaimErrorCode.USER_BANNED, "This account is banned", 403)

    async def check_ban_table(self, ctx: ClaimContext) -> None:
        async with await self.uow_factory() as uow:
            ban = await uow.bans.find_ban(ctx.fid, ctx.username, ctx.address)
            if ban is None:
                return
            await uow.bans.record_blocked_attempt(ban, ctx.client_ip)

        logger.warning(
            "fraud.banned_user_attempt",
            banned_fid=ban.fid,
            fid=ctx.fid,
            username=ctx.username,
            address=ctx.address,
            client_ip=ctx.client_ip,
            reason=ban.reason,
        )
        raise _error(ClaimErrorCode.USER_BANNED, "This account is banned", 403)

    async def check_auction_freshness(self, ctx: ClaimContext) -> None:
        async with await self.uow_factory() as uow:
            latest = await uow.winners.get_latest_auction_id()

        if latest is None or ctx.auction_id != latest:
            logger.warning(
                "fraud.invalid_auction",
                auction_id=ctx.auction_id,
                latest_auction_id=latest,
                address=ctx.address,
            )
            raise _error(
                ClaimErrorCode.INVALID_AUCTION_ID,
                "Claims are only open for the latest auction",
                400,
            )

    async def check_neynar(self, ctx: ClaimContext) -> None:
        if ctx.source != ClaimSource.MINI_APP:
            return
        if not await self.neynar.validate_miniapp_user(ctx.fid, ctx.address, ctx.wallet_type):
            raise _error(
                ClaimErrorCode.NEYNAR_VALIDATION_FAILED,
                "Could not verify this address belongs to your Farcaster account",
                403,
            )
