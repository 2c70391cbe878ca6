"""Tests for UnitOfWork transaction handling."""

import pytest

from qrclaim.models.claim_failure import ClaimFailure

ADDRESS = "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4"


def failure() -> ClaimFailure:
    return ClaimFailure(fid=1, eth_address=ADDRESS, auction_id=42, error_message="timeout")


@pytest.mark.asyncio
class TestUnitOfWork:
    async def test_commits_on_success(self, uow_factory):
        async with await uow_factory() as uow:
            created = await uow.failures.add(failure())

        async with await uow_factory() as uow:
            assert await uow.failures.get_by_id(created.id) is not None

    async def test_rolls_back_on_exception(self, uow_factory):
        created = None
        with pytest.raises(RuntimeError):
            async with await uow_factory() as uow:
                created = await uow.failures.add(failure())
                raise RuntimeError("boom")

        async with await uow_factory() as uow:
            assert await uow.failures.get_by_id(created.id) is None

    async def test_exposes_every_repository(self, uow_factory):
        async with await uow_factory() as uow:
            for name in ("claims", "failures", "bans", "winners", "spam_labels", "amount_configs"):
                assert getattr(uow, name) is not None
