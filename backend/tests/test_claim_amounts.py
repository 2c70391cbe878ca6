"""Tests for claim amount tiers, the web history check and the amount ceiling."""

from unittest.mock import AsyncMock, Mock

import pytest
import pytest_asyncio
from web3 import Web3

from qrclaim.models.claim import ClaimSource
from qrclaim.models.claim_amount_config import AmountCategory, ClaimAmountConfig
from qrclaim.models.spam_label import SpamLabel
from qrclaim.services.claim_amounts import (
    SPAM_OVERRIDE_AMOUNT,
    WEB_FALLBACK_AMOUNT,
    ClaimAmountConfigError,
    ClaimAmountService,
)
from qrclaim.services.identity import NeynarUser

ADDRESS = "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4"


@pytest_asyncio.fixture
async def amount_tiers(uow_factory):
    async with await uow_factory() as uow:
        for category, amount in (
            (AmountCategory.WALLET_EMPTY, 100),
            (AmountCategory.WALLET_HAS_BALANCE, 500),
            (AmountCategory.DEFAULT, 300),
            (AmountCategory.SPAM, 50),
        ):
            await uow.amount_configs.add(ClaimAmountConfig(category=category.value, amount=amount))
        await uow.amount_configs.add(
            ClaimAmountConfig(
                category=AmountCategory.NEYNAR_SCORE.value, amount=200, min_score=0, max_score=0.5
            )
        )
        await uow.amount_configs.add(
            ClaimAmountConfig(
                category=AmountCategory.NEYNAR_SCORE.value, amount=800, min_score=0.5, max_score=1
            )
        )


@pytest.fixture
def w3():
    w3 = Mock()
    w3.eth.get_balance = Mock(return_value=0)
    w3.eth.block_number = 10_000_000
    w3.provider.make_request = Mock(return_value={"result": {"tokenBalances": []}})
    return w3


@pytest.fixture
def neynar():
    neynar = Mock()
    neynar.fetch_user = AsyncMock(return_value=None)
    return neynar


@pytest.fixture
def service(settings, uow_factory, w3, neynar):
    service = ClaimAmountService(settings, uow_factory, w3, neynar)
    service.get_eth_price_usd = AsyncMock(return_value=2500.0)
    return service


def neynar_user(score: float | None) -> NeynarUser:
    return NeynarUser(fid=1234, username="alice", score=score, custody_address=ADDRESS)


@pytest.mark.asyncio
class TestFarcasterTiers:
    async def test_high_quality_label_overrides_score(
        self, service, neynar, uow_factory, amount_tiers
    ):
        async with await uow_factory() as uow:
            await uow.spam_labels.add(SpamLabel(fid=1234, label_value=2))
        neynar.fetch_user.return_value = neynar_user(0.1)

        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MINI_APP, 1234)

        assert result.amount == SPAM_OVERRIDE_AMOUNT
        assert result.has_spam_label_override is True
        assert result.neynar_score == 0.1

    async def test_spam_label_uses_spam_tier(self, service, uow_factory, amount_tiers):
        async with await uow_factory() as uow:
            await uow.spam_labels.add(SpamLabel(fid=1234, label_value=0))

        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MINI_APP, 1234)

        assert result.amount == 50
        assert result.spam_label is True

    async def test_neynar_score_tier(self, service, neynar, amount_tiers):
        neynar.fetch_user.return_value = neynar_user(0.9)

        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MINI_APP, 1234)

        assert result.amount == 800
        assert result.neynar_score == 0.9

    async def test_mini_app_without_score_gets_default(self, service, amount_tiers):
        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MINI_APP, 1234)

        assert result.amount == 300

    async def test_synthetic_fid_skips_farcaster_lookups(self, service, neynar, amount_tiers):
        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.WEB, -77)

        neynar.fetch_user.assert_not_awaited()
        assert result.amount == 500


@pytest.mark.asyncio
class TestHoldingsTier:
    async def test_wallet_with_eth_gets_value_tier(self, service, w3, amount_tiers):
        w3.eth.get_balance.return_value = Web3.to_wei(0.01, "ether")

        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MOBILE)

        assert result.amount == 500

    async def test_empty_wallet_gets_empty_tier(self, service, amount_tiers):
        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MOBILE)

        assert result.amount == 100

    async def test_only_qr_tokens_count_as_empty(self, service, w3, settings, amount_tiers):
        w3.provider.make_request.return_value = {
            "result": {
                "tokenBalances": [
                    {"contractAddress": settings.qr_token_address, "tokenBalance": "0x10"}
                ]
            }
        }

        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MOBILE)

        assert result.amount == 100

    async def test_other_tokens_count_as_value(self, service, w3, amount_tiers):
        w3.provider.make_request.return_value = {
            "result": {
                "tokenBalances": [{"contractAddress": "0x" + "12" * 20, "tokenBalance": "0x1"}]
            }
        }

        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MOBILE)

        assert result.amount == 500


@pytest.mark.asyncio
class TestWebHistory:
    async def test_steady_balance_meets_requirement(self, service, w3, amount_tiers):
        # 0.01 ETH at $2500 = $25 at every checkpoint
        w3.eth.get_balance.return_value = Web3.to_wei(0.01, "ether")

        result = await service.resolve_claim_amount(ADDRESS, ClaimSource.WEB)

        assert result.amount == 500

    async def test_one_low_checkpoint_fails_requirement(self, service, w3, amount_tiers):
        balances = [Web3.to_wei(0.01, "ether")] * 13
        balances[5] = Web3.to_wei(0.001, "ether")
        w3.eth.get_balance.side_effect = balances

        result = await service.resolve_claim_amount(ADDRESS, ClaimSource.WEB)

        assert result.amount == 100

    async def test_samples_cover_thirteen_checkpoints(self, service, w3):
        w3.eth.get_balance.return_value = Web3.to_wei(1, "ether")

        history = await service.check_historical_eth_balance(ADDRESS, 5.0, 90)

        assert history.samples == 13
        assert history.meets_requirement is True

    async def test_no_readable_samples_fails(self, service, w3):
        w3.eth.get_balance.side_effect = RuntimeError("archive node unavailable")

        history = await service.check_historical_eth_balance(ADDRESS, 5.0, 90)

        assert history.samples == 0
        assert history.meets_requirement is False

    async def test_missing_web_config_falls_back(self, service):
        result = await service.get_claim_amount_for_address(ADDRESS, ClaimSource.WEB)

        assert result.amount == WEB_FALLBACK_AMOUNT

    async def test_missing_default_config_raises(self, service):
        with pytest.raises(ClaimAmountConfigError):
            await service.get_claim_amount_for_address(ADDRESS, ClaimSource.MINI_APP)


@pytest.mark.asyncio
class TestCeiling:
    async def test_amount_above_ceiling_is_clamped(
        self, settings, uow_factory, w3, neynar, amount_tiers
    ):
        capped = settings.model_copy(update={"max_claim_amount": 600})
        service = ClaimAmountService(capped, uow_factory, w3, neynar)
        neynar.fetch_user.return_value = neynar_user(0.9)

        result = await service.resolve_claim_amount(ADDRESS, ClaimSource.MINI_APP, 1234)

        assert result.amount == 600
        assert result.clamped_from == 800

    async def test_amount_at_ceiling_is_untouched(self, service, uow_factory, amount_tiers):
        async with await uow_factory() as uow:
            await uow.spam_labels.add(SpamLabel(fid=1234, label_value=2))

        result = await service.resolve_claim_amount(ADDRESS, ClaimSource.MINI_APP, 1234)

        assert result.amount == 1000
        assert result.clamped_from is None
