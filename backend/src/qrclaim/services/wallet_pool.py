"""Hot wallet pool for signing airdrop transactions.

Each claim source has its own airdrop contract ("purpose"). A wallet is checked
out under a Redis lock for the duration of one transaction, so two requests can
never sign with the same wallet (and race on its nonce) at once. In direct mode
a single statically configured wallet is used without checkout.
"""

from dataclasses import dataclass

import structlog
from eth_account import Account

from qrclaim.core.config import Settings
from qrclaim.models.claim import ClaimSource
from qrclaim.services.exceptions import WalletPoolExhaustedError
from qrclaim.services.locks import LockHandle, LockManager

logger = structlog.get_logger()

PURPOSE_BY_SOURCE = {
    ClaimSource.WEB: "link-web",
    ClaimSource.MOBILE: "link-mobile",
    ClaimSource.MINI_APP: "link-miniapp",
}


def purpose_for_source(source: ClaimSource) -> str:
    return PURPOSE_BY_SOURCE[source]


def wallet_lock_key(address: str) -> str:
    return f"wallet-pool-lock:{address.lower()}"


@dataclass(frozen=True)
class WalletConfig:
    """A signing wallet bound to the airdrop contract it pays out through."""

    private_key: str
    address: str
    airdrop_contract: str

    def __repr__(self) -> str:
        return f"WalletConfig(address={self.address!r}, airdrop_contract={self.airdrop_contract!r})"


@dataclass(frozen=True)
class WalletLease:
    """A checked-out wallet. ``lock`` is None for the direct wallet."""

    wallet: WalletConfig
    purpose: str
    lock: LockHandle | None = None


class WalletPool:
    """Check wallets out of the pool and back in.

    Example:
        lease = await pool.acquire("link-web")
        try:
            ...  # sign with lease.wallet
        finally:
            await pool.release_wallet(lease)
    """

    def __init__(self, settings: Settings, locks: LockManager):
        self.settings = settings
        self.locks = locks
        self.lock_ttl = settings.wallet_lock_ttl_seconds
        self.contracts = {
            "link-web": settings.airdrop_contract_web,
            "link-mobile": settings.airdrop_contract_mobile,
            "link-miniapp": settings.airdrop_contract_miniapp,
        }
        self._pool_accounts = [
            (key, Account.from_key(key).address) for key in settings.pool_private_keys
        ]

    def _contract_for(self, purpose: str) -> str:
        contract = self.contracts.get(purpose)
        if not contract:
            raise ValueError(f"No airdrop contract configured for purpose {purpose!r}")
        return contract

    def get_direct_wallet(self, purpose: str) -> WalletConfig | None:
        """Return the statically configured wallet when direct mode is on, else None."""
        if not self.settings.use_direct_wallet or not self.settings.direct_wallet_private_key:
            return None

        key = self.settings.direct_wallet_private_key
        return WalletConfig(
            private_key=key,
            address=Account.from_key(key).address,
            airdrop_contract=self._contract_for(purpose),
        )

    async def get_available_wallet(self, purpose: str) -> WalletLease:
        """Check out the first pool wallet nobody else holds.

        Raises:
            WalletPoolExhaustedError: Every pool wallet is checked out
        """
        contract = self._contract_for(purpose)

        for key, address in self._pool_accounts:
            handle = await self.locks.acquire(wallet_lock_key(address), ttl=self.lock_ttl)
            if handle is None:
                continue

            logger.info("wallet_pool.checked_out", purpose=purpose, address=address)
            return WalletLease(
                wallet=WalletConfig(private_key=key, address=address, airdrop_contract=contract),
                purpose=purpose,
                lock=handle,
            )

        logger.warning("wallet_pool.exhausted", purpose=purpose, pool_size=len(self._pool_accounts))
        raise WalletPoolExhaustedError(f"All {len(self._pool_accounts)} wallets are busy")

    async def acquire(self, purpose: str) -> WalletLease:
        """Direct wallet if configured, otherwise a pool checkout."""
        direct = self.get_direct_wallet(purpose)
        if direct is not None:
            return WalletLease(wallet=direct, purpose=purpose)
        return await self.get_available_wallet(purpose)

    async def release_wallet(self, lease: WalletLease | None) -> None:
        if lease is None or lease.lock is None:
            return
        await self.locks.release(lease.lock)
        logger.info("wallet_pool.released", purpose=lease.purpose, address=lease.wallet.address)
