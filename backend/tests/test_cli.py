"""Tests for the command-line tools."""

import pytest

from qrclaim.cli.cleanup_failed_claims import cleanup_failed_claims
from qrclaim.cli.process_queue import parse_args, print_summary
from qrclaim.core.timezone import utc_now
from qrclaim.models.claim import LinkVisitClaim


class TestProcessQueueArgs:
    def test_defaults(self):
        args = parse_args([])

        assert args.dry_run is False
        assert args.verbose is False

    def test_flags(self):
        args = parse_args(["--dry-run", "-v"])

        assert args.dry_run is True
        assert args.verbose is True

    def test_summary_lists_batches(self, capsys):
        print_summary(
            {
                "totalProcessed": 2,
                "successful": 1,
                "failed": 1,
                "batches": [
                    {"source": "web", "size": 1, "tx_hash": "0xabc"},
                    {"source": "mini_app", "size": 1, "error": "reverted"},
                ],
            },
            dry_run=False,
        )

        out = capsys.readouterr().out
        assert "Claims processed: 2" in out
        assert "web x1: 0xabc" in out
        assert "mini_app x1: reverted" in out


@pytest.mark.asyncio
class TestCleanupFailedClaims:
    async def test_deletes_only_rows_without_transaction(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.claims.add(
                LinkVisitClaim(
                    fid=1, eth_address=f"0x{1:040x}", auction_id=42, claimed_at=utc_now()
                )
            )
            await uow.claims.add(
                LinkVisitClaim(
                    fid=2,
                    eth_address=f"0x{2:040x}",
                    auction_id=42,
                    claimed_at=utc_now(),
                    tx_hash="0x" + "ab" * 32,
                    success=True,
                )
            )
            await uow.claims.add(
                LinkVisitClaim(fid=3, eth_address=f"0x{3:040x}", auction_id=42)
            )

        deleted = await cleanup_failed_claims(uow_factory)

        assert deleted == 1
        async with await uow_factory() as uow:
            assert await uow.claims.get_by_fid_and_auction(2, 42) is not None
            assert await uow.claims.get_by_fid_and_auction(3, 42) is not None

    async def test_scoped_to_auction(self, uow_factory):
        async with await uow_factory() as uow:
            await uow.claims.add(
                LinkVisitClaim(
                    fid=1, eth_address=f"0x{1:040x}", auction_id=41, claimed_at=utc_now()
                )
            )

        assert await cleanup_failed_claims(uow_factory, auction_id=42) == 0
        assert await cleanup_failed_claims(uow_factory, auction_id=41) == 1
