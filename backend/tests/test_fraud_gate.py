"""Tests for the claim fraud gate."""

from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from eth_utils.address import to_checksum_address

from qrclaim.core.timezone import utc_now
from qrclaim.models.banned_user import BannedUser
from qrclaim.models.claim import ClaimSource, LinkVisitClaim, synthetic_fid
from qrclaim.models.winner import Winner
from qrclaim.services.exceptions import ClaimError, ClaimErrorCode
from qrclaim.services.fraud import ClaimRequest, FraudGate
from qrclaim.services.identity import MiniAppTokenService, PrivyUser

ADDRESS = "0x5b38da6a701c568545dcfcb03fcb875f56beddc4"
CLIENT_IP = "203.0.113.7"
TWITTER_USER = PrivyUser(
    user_id="did:privy:abc",
    linked_accounts=[{"type": "twitter_oauth", "username": "alice"}],
)


@pytest_asyncio.fixture
async def latest_auction(uow_factory):
    async with await uow_factory() as uow:
        await uow.winners.add(Winner(auction_id=42, url="https://example.com"))
    return 42


@pytest.fixture
def tokens(settings):
    return MiniAppTokenService(settings.miniapp_token_secret, ttl_seconds=600)


@pytest.fixture
def gate(settings, uow_factory, tokens):
    rate_limiter = Mock()
    rate_limiter.hit = AsyncMock(return_value=True)
    privy = Mock()
    privy.verify_token = AsyncMock(return_value=TWITTER_USER)
    neynar = Mock()
    neynar.validate_miniapp_user = AsyncMock(return_value=True)
    return FraudGate(
        settings,
        uow_factory,
        rate_limiter=rate_limiter,
        privy=privy,
        miniapp_tokens=tokens,
        neynar=neynar,
    )


def web_request(**overrides) -> ClaimRequest:
    data = {"address": ADDRESS, "auction_id": 42, "claim_source": "web"}
    data.update(overrides)
    return ClaimRequest(**data)


def miniapp_request(tokens: MiniAppTokenService, **overrides) -> ClaimRequest:
    data = {
        "fid": 1234,
        "address": ADDRESS,
        "auction_id": 42,
        "claim_source": "mini_app",
        "miniapp_token": tokens.issue(1234, ADDRESS, client_fid=9152),
    }
    data.update(overrides)
    return ClaimRequest(**data)


async def expect_code(gate: FraudGate, request: ClaimRequest, token: str | None = "privy"):
    with pytest.raises(ClaimError) as exc_info:
        await gate.run(request, CLIENT_IP, token)
    return exc_info.value


@pytest.mark.asyncio
class TestParameterValidation:
    async def test_missing_claim_source(self, gate):
        error = await expect_code(gate, web_request(claim_source=None))

        assert error.code == ClaimErrorCode.INVALID_CLAIM_SOURCE
        assert error.status_code == 400

    async def test_unknown_claim_source(self, gate):
        error = await expect_code(gate, web_request(claim_source="desktop"))

        assert error.code == ClaimErrorCode.INVALID_CLAIM_SOURCE

    async def test_missing_address(self, gate):
        error = await expect_code(gate, web_request(address=None))

        assert error.code == ClaimErrorCode.MISSING_PARAMETERS

    async def test_mini_app_requires_fid(self, gate, tokens):
        error = await expect_code(gate, miniapp_request(tokens, fid=None))

        assert error.code == ClaimErrorCode.MISSING_PARAMETERS

    async def test_invalid_address(self, gate):
        error = await expect_code(gate, web_request(address="0x1234"))

        assert error.code == ClaimErrorCode.INVALID_ADDRESS


class TestClaimContext:
    def test_web_claims_use_synthetic_fid(self, settings):
        gate = FraudGate(settings, Mock(), Mock(), Mock(), Mock(), Mock())

        ctx = gate.validate_parameters(web_request(fid=99), CLIENT_IP)

        assert ctx.fid == synthetic_fid(ADDRESS)
        assert ctx.address == to_checksum_address(ADDRESS)
        assert ctx.winning_url == "https://qrcoin.fun/auction/42"


@pytest.mark.asyncio
class TestRateAndQuotaChecks:
    async def test_rate_limited(self, gate, settings):
        gate.rate_limiter.hit.return_value = False

        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.RATE_LIMITED
        assert error.status_code == 429
        gate.rate_limiter.hit.assert_awaited_once_with(CLIENT_IP, settings.ip_rate_limit_web)

    async def test_mini_app_uses_its_own_limit(self, gate, settings, tokens):
        gate.rate_limiter.hit.return_value = False

        await expect_code(gate, miniapp_request(tokens))

        gate.rate_limiter.hit.assert_awaited_once_with(CLIENT_IP, settings.ip_rate_limit_miniapp)

    async def test_ip_auction_quota(self, gate, uow_factory):
        async with await uow_factory() as uow:
            for i in range(3):
                await uow.claims.add(
                    LinkVisitClaim(
                        fid=-(i + 1),
                        eth_address=f"0x{i + 1:040x}",
                        auction_id=42,
                        tx_hash=f"0x{i:064x}",
                        success=True,
                        claimed_at=utc_now(),
                        client_ip=CLIENT_IP,
                    )
                )

        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.IP_AUCTION_LIMIT_EXCEEDED
        assert error.status_code == 429

    async def test_already_claimed_before_authentication(self, gate, uow_factory):
        async with await uow_factory() as uow:
            await uow.claims.add(
                LinkVisitClaim(
                    fid=-1,
                    eth_address=to_checksum_address(ADDRESS),
                    auction_id=42,
                    tx_hash="0x" + "ab" * 32,
                    success=True,
                    claimed_at=utc_now(),
                    client_ip="198.51.100.1",
                )
            )

        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.ALREADY_CLAIMED
        assert error.tx_hash == "0x" + "ab" * 32
        gate.privy.verify_token.assert_not_awaited()


@pytest.mark.asyncio
class TestAuthentication:
    async def test_web_without_privy_token(self, gate):
        error = await expect_code(gate, web_request(), token=None)

        assert error.code == ClaimErrorCode.AUTHENTICATION_REQUIRED
        assert error.status_code == 401

    async def test_web_requires_twitter_account(self, gate):
        gate.privy.verify_token.return_value = PrivyUser(user_id="did:privy:abc")

        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.WEB_USERNAME_REQUIRED

    async def test_invalid_miniapp_token(self, gate, tokens):
        error = await expect_code(gate, miniapp_request(tokens, miniapp_token="garbage"))

        assert error.code == ClaimErrorCode.INVALID_MINIAPP_TOKEN
        assert error.status_code == 401

    async def test_miniapp_token_for_other_fid(self, gate, tokens):
        request = miniapp_request(tokens, miniapp_token=tokens.issue(999, ADDRESS))

        error = await expect_code(gate, request)

        assert error.code == ClaimErrorCode.TOKEN_MISMATCH
        assert error.status_code == 403


@pytest.mark.asyncio
class TestBans:
    async def test_hard_banned_username(self, gate):
        gate.privy.verify_token.return_value = PrivyUser(
            user_id="did:privy:abc",
            linked_accounts=[{"type": "twitter_oauth", "username": "KnownFarmer"}],
        )

        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.USER_BANNED
        assert error.status_code == 403

    async def test_ban_table_records_attempt(self, gate, uow_factory, latest_auction):
        async with await uow_factory() as uow:
            await uow.bans.add(BannedUser(fid=555, eth_address=to_checksum_address(ADDRESS)))

        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.USER_BANNED
        async with await uow_factory() as uow:
            ban = await uow.bans.get_by_fid(555)
        assert ban.total_claims_attempted == 1
        assert ban.ip_addresses == [CLIENT_IP]


@pytest.mark.asyncio
class TestAuctionAndNeynar:
    async def test_stale_auction_rejected(self, gate, latest_auction):
        error = await expect_code(gate, web_request(auction_id=41))

        assert error.code == ClaimErrorCode.INVALID_AUCTION_ID

    async def test_no_winners_rejected(self, gate):
        error = await expect_code(gate, web_request())

        assert error.code == ClaimErrorCode.INVALID_AUCTION_ID

    async def test_neynar_ownership_failure(self, gate, tokens, latest_auction):
        gate.neynar.validate_miniapp_user.return_value = False

        error = await expect_code(gate, miniapp_request(tokens))

        assert error.code == ClaimErrorCode.NEYNAR_VALIDATION_FAILED


@pytest.mark.asyncio
class TestPassingClaims:
    async def test_web_claim_context(self, gate, latest_auction):
        ctx = await gate.run(web_request(), CLIENT_IP, "privy")

        assert ctx.source == ClaimSource.WEB
        assert ctx.username == "alice"
        assert ctx.user_id == "did:privy:abc"
        gate.neynar.validate_miniapp_user.assert_not_awaited()

    async def test_miniapp_claim_context(self, gate, tokens, latest_auction):
        ctx = await gate.run(miniapp_request(tokens), CLIENT_IP, None)

        assert ctx.source == ClaimSource.MINI_APP
        assert ctx.fid == 1234
        assert ctx.client_fid == 9152
        gate.privy.verify_token.assert_not_awaited()
