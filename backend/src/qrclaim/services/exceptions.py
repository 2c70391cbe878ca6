"""Service error hierarchy for claim processing and blockchain operations.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation)
- ClaimError: Claim-path outcome carrying a stable error code and HTTP status
"""

from enum import Enum


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    - Transaction submission failures
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Configuration errors
    """

    pass


class ClaimErrorCode(str, Enum):
    """Stable error codes returned in the ``code`` field of claim responses."""

    # Request and identity errors
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CLAIM_SOURCE = "INVALID_CLAIM_SOURCE"
    MISSING_PARAMETERS = "MISSING_PARAMETERS"
    INVALID_ADDRESS = "INVALID_ADDRESS"
    RATE_LIMITED = "RATE_LIMITED"
    IP_AUCTION_LIMIT_EXCEEDED = "IP_AUCTION_LIMIT_EXCEEDED"
    IP_DAILY_LIMIT_EXCEEDED = "IP_DAILY_LIMIT_EXCEEDED"
    ALREADY_CLAIMED = "ALREADY_CLAIMED"
    CLAIM_IN_PROGRESS = "CLAIM_IN_PROGRESS"
    INVALID_MINIAPP_TOKEN = "INVALID_MINIAPP_TOKEN"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    WEB_USERNAME_REQUIRED = "WEB_USERNAME_REQUIRED"
    USER_BANNED = "USER_BANNED"
    INVALID_AUCTION_ID = "INVALID_AUCTION_ID"
    NEYNAR_VALIDATION_FAILED = "NEYNAR_VALIDATION_FAILED"
    HISTORICAL_BALANCE_REQUIRED = "HISTORICAL_BALANCE_REQUIRED"

    # Infrastructure errors (retried through the queue)
    WALLETS_BUSY = "WALLETS_BUSY"
    ADMIN_INSUFFICIENT_GAS = "ADMIN_INSUFFICIENT_GAS"
    ADMIN_INSUFFICIENT_TOKENS = "ADMIN_INSUFFICIENT_TOKENS"
    TOKEN_APPROVAL_FAILED = "TOKEN_APPROVAL_FAILED"
    TRANSACTION_FAILED = "TRANSACTION_FAILED"
    TRANSACTION_TIMEOUT = "TRANSACTION_TIMEOUT"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


# User and gaming errors: rejected, never persisted or queued
NON_RETRYABLE_ERROR_CODES: frozenset[ClaimErrorCode] = frozenset(
    {
        ClaimErrorCode.UNAUTHORIZED,
        ClaimErrorCode.INVALID_CLAIM_SOURCE,
        ClaimErrorCode.MISSING_PARAMETERS,
        ClaimErrorCode.INVALID_ADDRESS,
        ClaimErrorCode.RATE_LIMITED,
        ClaimErrorCode.IP_AUCTION_LIMIT_EXCEEDED,
        ClaimErrorCode.IP_DAILY_LIMIT_EXCEEDED,
        ClaimErrorCode.ALREADY_CLAIMED,
        ClaimErrorCode.CLAIM_IN_PROGRESS,
        ClaimErrorCode.INVALID_MINIAPP_TOKEN,
        ClaimErrorCode.TOKEN_MISMATCH,
        ClaimErrorCode.AUTHENTICATION_REQUIRED,
        ClaimErrorCode.WEB_USERNAME_REQUIRED,
        ClaimErrorCode.USER_BANNED,
        ClaimErrorCode.INVALID_AUCTION_ID,
        ClaimErrorCode.NEYNAR_VALIDATION_FAILED,
        ClaimErrorCode.HISTORICAL_BALANCE_REQUIRED,
    }
)


def is_retryable(code: ClaimErrorCode) -> bool:
    return code not in NON_RETRYABLE_ERROR_CODES


class ClaimError(ServiceError):
    """A claim outcome that ends the request with a JSON error body.

    Attributes:
        code: Stable error code for clients and the failure logger
        status_code: HTTP status returned to the caller
        message: Human-readable error
        tx_hash: Original transaction hash when the claim already exists
    """

    def __init__(
        self,
        code: ClaimErrorCode,
        message: str,
        status_code: int = 400,
        tx_hash: str | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.tx_hash = tx_hash

    @property
    def retryable(self) -> bool:
        return is_retryable(self.code)


class WalletPoolExhaustedError(TransientError):
    """Every pool wallet for the purpose is checked out."""

    pass


# Blockchain-specific errors
class TxErrorKind(str, Enum):
    """Classification of provider errors raised while sending a transaction."""

    REPLACEMENT_UNDERPRICED = "replacement_underpriced"
    NONCE_REUSED = "nonce_reused"
    UNDERPRICED = "underpriced"
    TIMEOUT = "timeout"
    NETWORK = "network"
    REVERTED = "reverted"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNKNOWN = "unknown"


# Kinds worth resubmitting with a fresh nonce and a higher gas price
TRANSIENT_TX_ERROR_KINDS: frozenset[TxErrorKind] = frozenset(
    {
        TxErrorKind.REPLACEMENT_UNDERPRICED,
        TxErrorKind.NONCE_REUSED,
        TxErrorKind.UNDERPRICED,
        TxErrorKind.TIMEOUT,
        TxErrorKind.NETWORK,
        TxErrorKind.REVERTED,
    }
)


class BlockchainError(ServiceError):
    """Base exception for blockchain errors."""

    pass


class TransactionError(BlockchainError):
    """Airdrop or approval transaction failed.

    Attributes:
        kind: Classified provider error
        tx_hash: Hash of the submitted transaction, if it got that far
    """

    def __init__(self, message: str, kind: TxErrorKind, tx_hash: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.tx_hash = tx_hash


class TransactionTimeoutError(TransactionError):
    """Receipt did not arrive in time and the chain has no receipt either."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message, TxErrorKind.TIMEOUT, tx_hash)


class TransactionRevertError(TransactionError):
    """Transaction was mined with status 0."""

    def __init__(self, message: str, tx_hash: str | None = None):
        super().__init__(message, TxErrorKind.REVERTED, tx_hash)


class InsufficientGasError(BlockchainError):
    """Admin wallet ETH balance is below the gas buffer."""

    pass


class InsufficientTokensError(BlockchainError):
    """Admin wallet token balance is below the amount to distribute."""

    pass


class TokenApprovalError(BlockchainError):
    """Allowance approval failed or never confirmed."""

    pass


class QStashSignatureError(PermanentError):
    """Scheduler webhook signature missing or invalid."""

    pass


def classify_provider_error(error: BaseException) -> TxErrorKind:
    """Translate an opaque provider exception into a TxErrorKind.

    Substring matching on provider messages happens here and nowhere else.
    """
    if isinstance(error, TransactionError):
        return error.kind

    message = str(error).lower()
    if "replacement fee too low" in message or "replacement transaction underpriced" in message:
        return TxErrorKind.REPLACEMENT_UNDERPRICED
    if "nonce has already been used" in message or "nonce too low" in message:
        return TxErrorKind.NONCE_REUSED
    if "transaction underpriced" in message:
        return TxErrorKind.UNDERPRICED
    if "insufficient funds" in message:
        return TxErrorKind.INSUFFICIENT_FUNDS
    if "timeout" in message or "timed out" in message or isinstance(error, TimeoutError):
        return TxErrorKind.TIMEOUT
    if "network error" in message or isinstance(error, ConnectionError):
        return TxErrorKind.NETWORK
    if "execution reverted" in message:
        return TxErrorKind.REVERTED
    return TxErrorKind.UNKNOWN
