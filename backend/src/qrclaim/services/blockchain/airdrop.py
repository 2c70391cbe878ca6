"""Airdrop executor: balance checks, allowance management and airdrop submission."""

import asyncio
from dataclasses import dataclass

import structlog
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from qrclaim.abi import AIRDROP, ERC20, get_contract_abi
from qrclaim.services.exceptions import (
    TRANSIENT_TX_ERROR_KINDS,
    InsufficientGasError,
    InsufficientTokensError,
    TokenApprovalError,
    TransactionError,
    TransactionRevertError,
    TransactionTimeoutError,
    TxErrorKind,
    classify_provider_error,
)
from qrclaim.services.wallet_pool import WalletConfig

logger = structlog.get_logger()

TOKEN_DECIMALS = 18

INDIVIDUAL_MIN_GAS_WEI = Web3.to_wei(0.001, "ether")
INDIVIDUAL_GAS_LIMIT = 5_000_000

BATCH_MIN_GAS_WEI = Web3.to_wei(0.005, "ether")
BATCH_BASE_GAS_LIMIT = 2_000_000
BATCH_GAS_PER_RECIPIENT = 100_000
BATCH_APPROVAL_AMOUNT = 1_000_000


def to_token_units(amount: int) -> int:
    """Convert whole tokens to base units (18 decimals)."""
    return amount * 10**TOKEN_DECIMALS


def batch_gas_limit(recipient_count: int) -> int:
    return BATCH_BASE_GAS_LIMIT + recipient_count * BATCH_GAS_PER_RECIPIENT


@dataclass(frozen=True)
class RetryPolicy:
    """How an airdrop submission is retried.

    Attributes:
        max_attempts: Total submissions, including the first
        gas_base_pct: Gas price multiplier (percent of the network price) on attempt 0
        gas_step_pct: Added to the multiplier on every further attempt
        retry_all: Retry every failure, not only transient provider errors
        base_delay: Seconds to wait before the second attempt
        exponential: Double the delay each attempt (otherwise grow linearly)
    """

    max_attempts: int
    gas_base_pct: int
    gas_step_pct: int
    retry_all: bool
    base_delay: float
    exponential: bool

    def gas_price(self, network_price: int, attempt: int) -> int:
        return network_price * (self.gas_base_pct + self.gas_step_pct * attempt) // 100

    def delay_for(self, attempt: int) -> float:
        if self.exponential:
            return self.base_delay * 2**attempt
        return self.base_delay * (attempt + 1)


def individual_policy(base_delay: float = 1.0) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        gas_base_pct=130,
        gas_step_pct=20,
        retry_all=False,
        base_delay=base_delay,
        exponential=True,
    )


def batch_policy(base_delay: float = 2.0) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        gas_base_pct=120,
        gas_step_pct=20,
        retry_all=True,
        base_delay=base_delay,
        exponential=False,
    )


@dataclass
class AirdropResult:
    tx_hash: str
    block_number: int
    gas_used: int
    attempts: int
    reconciled: bool = False


class AirdropExecutor:
    """Sign and submit airdropERC20 transactions from pool wallets."""

    def __init__(
        self,
        w3: Web3,
        token_address: str,
        transaction_timeout: int = 45,
    ):
        """
        Initialize airdrop executor.

        Args:
            w3: Web3 instance (connected to Base)
            token_address: ERC-20 token being distributed
            transaction_timeout: Seconds to wait for a receipt before reconciling (default: 45)
        """
        self.w3 = w3
        self.token_address = Web3.to_checksum_address(token_address)
        self.transaction_timeout = transaction_timeout
        self.token = self.w3.eth.contract(
            address=self.token_address, abi=get_contract_abi(ERC20)
        )
        self.airdrop_abi = get_contract_abi(AIRDROP)

    async def check_gas_balance(self, address: str, min_wei: int) -> int:
        """Verify the wallet can pay for gas.

        Raises:
            InsufficientGasError: Balance below min_wei
        """
        balance = self.w3.eth.get_balance(address)  # type: ignore[arg-type]
        logger.debug("airdrop.gas_balance", address=address, balance_wei=balance)
        if balance < min_wei:
            logger.error(
                "airdrop.insufficient_gas",
                address=address,
                balance_eth=str(Web3.from_wei(balance, "ether")),
                required_eth=str(Web3.from_wei(min_wei, "ether")),
            )
            raise InsufficientGasError(
                f"Admin wallet {address} has {Web3.from_wei(balance, 'ether')} ETH, "
                f"needs {Web3.from_wei(min_wei, 'ether')}"
            )
        return balance

    async def check_token_balance(self, address: str, required_units: int) -> int:
        """Verify the wallet holds enough tokens.

        Raises:
            InsufficientTokensError: Balance below required_units
        """
        balance = self.token.functions.balanceOf(address).call()
        if balance < required_units:
            logger.error(
                "airdrop.insufficient_tokens",
                address=address,
                balance=balance,
                required=required_units,
            )
            raise InsufficientTokensError(
                f"Admin wallet {address} holds {balance} token units, needs {required_units}"
            )
        return balance

    async def ensure_allowance(
        self,
        wallet: WalletConfig,
        required_units: int,
        approve_units: int | None = None,
    ) -> str | None:
        """Approve the airdrop contract if its allowance is short.

        If the approval receipt does not arrive in time, the allowance is read
        again on-chain before giving up, since the approval may have landed.

        Args:
            wallet: Signing wallet (owner) and airdrop contract (spender)
            required_units: Allowance needed for this airdrop
            approve_units: Amount to approve (defaults to required_units)

        Returns:
            Approval tx hash, or None if the allowance was already sufficient

        Raises:
            TokenApprovalError: Approval reverted, failed, or never took effect
        """
        spender = Web3.to_checksum_address(wallet.airdrop_contract)
        allowance = self.token.functions.allowance(wallet.address, spender).call()
        if allowance >= required_units:
            return None

        approve_units = approve_units or required_units
        logger.info(
            "airdrop.approving",
            owner=wallet.address,
            spender=spender,
            current_allowance=allowance,
            approve_units=approve_units,
        )

        tx_hash_hex = None
        try:
            nonce = self.w3.eth.get_transaction_count(wallet.address, "latest")  # type: ignore[arg-type]
            transaction = self.token.functions.approve(spender, approve_units).build_transaction(
                {
                    "from": wallet.address,
                    "nonce": nonce,
                    "gasPrice": self.w3.eth.gas_price,
                    "chainId": self.w3.eth.chain_id,
                }  # type: ignore[arg-type]
            )
            signed = self.w3.eth.account.sign_transaction(transaction, private_key=wallet.private_key)
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            tx_hash_hex = Web3.to_hex(tx_hash)

            try:
                receipt = await asyncio.to_thread(
                    self.w3.eth.wait_for_transaction_receipt,
                    tx_hash,
                    timeout=self.transaction_timeout,
                )
            except TimeExhausted:
                allowance = self.token.functions.allowance(wallet.address, spender).call()
                if allowance >= required_units:
                    logger.info("airdrop.approval_confirmed_after_timeout", tx_hash=tx_hash_hex)
                    return tx_hash_hex
                raise TokenApprovalError(f"Approval {tx_hash_hex} not confirmed in time")

            if receipt["status"] != 1:
                raise TokenApprovalError(f"Approval {tx_hash_hex} reverted")

        except TokenApprovalError:
            logger.error("airdrop.approval_failed", tx_hash=tx_hash_hex, owner=wallet.address)
            raise
        except Exception as e:
            logger.error("airdrop.approval_failed", tx_hash=tx_hash_hex, error=str(e))
            raise TokenApprovalError(f"Approval failed: {e}") from e

        logger.info("airdrop.approval_confirmed", tx_hash=tx_hash_hex)
        return tx_hash_hex

    async def send_airdrop(
        self,
        wallet: WalletConfig,
        recipients: list[tuple[str, int]],
        gas_limit: int,
        policy: RetryPolicy,
    ) -> AirdropResult:
        """Submit one airdropERC20 transaction, retrying per policy.

        Every attempt fetches a fresh nonce and raises the gas price. A receipt
        wait that times out is reconciled against the chain before the attempt
        counts as failed.

        Args:
            wallet: Signing wallet and airdrop contract
            recipients: (address, token units) pairs
            gas_limit: Gas limit for the transaction
            policy: Attempts, gas escalation and backoff

        Raises:
            TransactionError: Every permitted attempt failed
        """
        contents = [(Web3.to_checksum_address(addr), units) for addr, units in recipients]
        last_error: Exception | None = None

        for attempt in range(policy.max_attempts):
            try:
                result = await self._submit_once(wallet, contents, gas_limit, policy, attempt)
                result.attempts = attempt + 1
                return result
            except Exception as e:
                last_error = e
                kind = classify_provider_error(e)
                retryable = policy.retry_all or kind in TRANSIENT_TX_ERROR_KINDS
                is_last = attempt + 1 >= policy.max_attempts

                logger.warning(
                    "airdrop.attempt_failed",
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    kind=kind.value,
                    retryable=retryable,
                    error=str(e),
                )
                if not retryable or is_last:
                    break

                await asyncio.sleep(policy.delay_for(attempt))

        if last_error is None:
            raise TransactionError(
                f"Airdrop not attempted: policy allows {policy.max_attempts} attempts",
                TxErrorKind.UNKNOWN,
            )
        if isinstance(last_error, TransactionError):
            raise last_error
        raise TransactionError(
            f"Airdrop failed: {last_error}", classify_provider_error(last_error)
        ) from last_error

    async def _submit_once(
        self,
        wallet: WalletConfig,
        contents: list[tuple[str, int]],
        gas_limit: int,
        policy: RetryPolicy,
        attempt: int,
    ) -> AirdropResult:
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(wallet.airdrop_contract), abi=self.airdrop_abi
        )

        nonce = self.w3.eth.get_transaction_count(wallet.address, "latest")  # type: ignore[arg-type]
        gas_price = policy.gas_price(self.w3.eth.gas_price, attempt)

        transaction = contract.functions.airdropERC20(self.token_address, contents).build_transaction(
            {
                "from": wallet.address,
                "nonce": nonce,
                "gas": gas_limit,
                "gasPrice": gas_price,
                "chainId": self.w3.eth.chain_id,
            }  # type: ignore[arg-type]
        )
        signed = self.w3.eth.account.sign_transaction(transaction, private_key=wallet.private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hash_hex = Web3.to_hex(tx_hash)

        logger.info(
            "airdrop.transaction_submitted",
            tx_hash=tx_hash_hex,
            recipients=len(contents),
            nonce=nonce,
            gas_price=gas_price,
            attempt=attempt + 1,
        )

        reconciled = False
        try:
            receipt = await asyncio.to_thread(
                self.w3.eth.wait_for_transaction_receipt,
                tx_hash,
                timeout=self.transaction_timeout,
            )
        except TimeExhausted:
            # The wait gave up, the transaction did not; ask the chain directly
            logger.warning(
                "airdrop.receipt_timeout",
                tx_hash=tx_hash_hex,
                timeout=self.transaction_timeout,
            )
            try:
                receipt = self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound as e:
                raise TransactionTimeoutError(
                    f"Transaction {tx_hash_hex} not mined after {self.transaction_timeout}s",
                    tx_hash=tx_hash_hex,
                ) from e
            reconciled = True

        if receipt["status"] != 1:
            logger.error(
                "airdrop.transaction_reverted",
                tx_hash=tx_hash_hex,
                block_number=receipt["blockNumber"],
            )
            raise TransactionRevertError(
                f"Transaction execution reverted: {tx_hash_hex}", tx_hash=tx_hash_hex
            )

        logger.info(
            "airdrop.transaction_confirmed",
            tx_hash=tx_hash_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            reconciled=reconciled,
        )
        return AirdropResult(
            tx_hash=tx_hash_hex,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
            attempts=attempt + 1,
            reconciled=reconciled,
        )

    async def execute_claim(
        self,
        wallet: WalletConfig,
        recipient: str,
        amount: int,
        policy: RetryPolicy,
    ) -> AirdropResult:
        """Pay one claimant: gas check, token check, allowance, airdrop."""
        units = to_token_units(amount)
        await self.check_gas_balance(wallet.address, INDIVIDUAL_MIN_GAS_WEI)
        await self.check_token_balance(wallet.address, units)
        await self.ensure_allowance(wallet, units)
        return await self.send_airdrop(
            wallet, [(recipient, units)], INDIVIDUAL_GAS_LIMIT, policy
        )
