"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from eth_utils.address import is_address, to_checksum_address
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# One paid claim waits for at most an approval receipt plus three airdrop
# receipts, with backoff in between; every lease covering it must outlast that.
TRANSACTION_WAITS_PER_LEASE = 5


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The instance is frozen: components receive it at construction and never
    mutate it.
    """

    model_config = SettingsConfigDict(
        env_file="../.env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # Application Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=50, alias="DB_POOL_SIZE")

    # Redis (locks, rate limits, retry queue, wallet pool checkout)
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # CORS Configuration
    cors_origins: str = Field(default="http://localhost:3000", alias="CORS_ORIGINS")

    # Server Configuration
    host: str = Field(default="0.0.0.0", alias="HOST")
    port: int = Field(default=8000, alias="PORT")

    # Chain access
    alchemy_api_key: str = Field(default="", alias="ALCHEMY_API_KEY")
    qr_token_address: str = Field(default="", alias="QR_TOKEN_ADDRESS")

    # Claim endpoint shared secret (x-api-key header)
    link_visit_api_key: str = Field(default="", alias="LINK_VISIT_API_KEY")

    # Wallets: direct mode bypasses the pool entirely
    use_direct_wallet: bool = Field(default=False, alias="USE_DIRECT_WALLET")
    direct_wallet_private_key: str = Field(default="", alias="DIRECT_WALLET_PRIVATE_KEY")
    wallet_pool_private_keys: str = Field(default="", alias="WALLET_POOL_PRIVATE_KEYS")
    wallet_lock_ttl_seconds: int = Field(default=300, alias="WALLET_LOCK_TTL_SECONDS")
    airdrop_contract_web: str = Field(default="", alias="AIRDROP_CONTRACT_WEB")
    airdrop_contract_mobile: str = Field(default="", alias="AIRDROP_CONTRACT_MOBILE")
    airdrop_contract_miniapp: str = Field(default="", alias="AIRDROP_CONTRACT_MINIAPP")

    # Identity providers
    privy_app_id: str = Field(default="", alias="PRIVY_APP_ID")
    neynar_api_key: str = Field(default="", alias="NEYNAR_API_KEY")
    miniapp_token_secret: str = Field(default="", alias="MINIAPP_TOKEN_SECRET")
    miniapp_token_ttl_seconds: int = Field(default=86400, alias="MINIAPP_TOKEN_TTL_SECONDS")
    miniapp_domain: str = Field(default="qrcoin.fun", alias="MINIAPP_DOMAIN")

    # QStash scheduler (batch trigger + individual retries)
    qstash_current_signing_key: str = Field(default="", alias="QSTASH_CURRENT_SIGNING_KEY")
    qstash_next_signing_key: str = Field(default="", alias="QSTASH_NEXT_SIGNING_KEY")
    qstash_token: str = Field(default="", alias="QSTASH_TOKEN")
    public_base_url: str = Field(default="http://localhost:8000", alias="PUBLIC_BASE_URL")
    # Loopback callers may trigger the batch run unsigned (development only)
    qstash_allow_local: bool = Field(default=False, alias="QSTASH_ALLOW_LOCAL")

    # Reverse proxies in front of the app; each appends one X-Forwarded-For hop
    trusted_proxy_count: int = Field(default=1, ge=0, alias="TRUSTED_PROXY_COUNT")

    # Anti-fraud
    hard_banned_usernames: str = Field(default="", alias="HARD_BANNED_USERNAMES")
    claim_lock_ttl_seconds: int = Field(default=300, alias="CLAIM_LOCK_TTL_SECONDS")
    ip_rate_limit_window_seconds: int = Field(default=60, alias="IP_RATE_LIMIT_WINDOW_SECONDS")
    ip_rate_limit_web: int = Field(default=2, alias="IP_RATE_LIMIT_WEB")
    ip_rate_limit_miniapp: int = Field(default=3, alias="IP_RATE_LIMIT_MINIAPP")
    ip_claims_per_auction: int = Field(default=3, alias="IP_CLAIMS_PER_AUCTION")
    ip_claims_per_day: int = Field(default=5, alias="IP_CLAIMS_PER_DAY")
    historical_min_usd: float = Field(default=5.0, alias="HISTORICAL_MIN_USD")
    historical_days: int = Field(default=90, ge=1, alias="HISTORICAL_DAYS")
    eth_price_fallback_usd: float = Field(default=2500.0, alias="ETH_PRICE_FALLBACK_USD")

    # Claim execution
    max_claim_amount: int = Field(default=1000, alias="MAX_CLAIM_AMOUNT")
    transaction_timeout_seconds: int = Field(default=45, alias="TRANSACTION_TIMEOUT_SECONDS")
    retry_initial_delay_seconds: float = Field(default=1.0, alias="RETRY_INITIAL_DELAY_SECONDS")

    # Batch processor
    batch_size: int = Field(default=20, alias="BATCH_SIZE")
    max_batches_per_run: int = Field(default=5, alias="MAX_BATCHES_PER_RUN")
    batch_claim_amount: int = Field(default=420, alias="BATCH_CLAIM_AMOUNT")
    batch_delay_seconds: float = Field(default=3.0, alias="BATCH_DELAY_SECONDS")
    batch_run_lock_ttl_seconds: int = Field(default=600, alias="BATCH_RUN_LOCK_TTL_SECONDS")

    @field_validator(
        "qr_token_address",
        "airdrop_contract_web",
        "airdrop_contract_mobile",
        "airdrop_contract_miniapp",
    )
    @classmethod
    def validate_contract_address(cls, v: str) -> str:
        """Checksum configured contract addresses (empty means unset)."""
        if not v:
            return v
        if not is_address(v):
            raise ValueError(f"Invalid contract address: {v}")
        return to_checksum_address(v)

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def rpc_url(self) -> str:
        """Base mainnet RPC endpoint (Alchemy when a key is configured)."""
        if self.alchemy_api_key:
            return f"https://base-mainnet.g.alchemy.com/v2/{self.alchemy_api_key}"
        return "https://mainnet.base.org"

    @property
    def pool_private_keys(self) -> list[str]:
        return [k.strip() for k in self.wallet_pool_private_keys.split(",") if k.strip()]

    @property
    def hard_banned_username_set(self) -> frozenset[str]:
        return frozenset(
            u.strip().lower().lstrip("@")
            for u in self.hard_banned_usernames.split(",")
            if u.strip()
        )

    @model_validator(mode="after")
    def validate_lease_ttls(self) -> "Settings":
        """Locks held across a transaction must not expire before it settles."""
        minimum = self.transaction_timeout_seconds * TRANSACTION_WAITS_PER_LEASE
        for name in (
            "wallet_lock_ttl_seconds",
            "claim_lock_ttl_seconds",
            "batch_run_lock_ttl_seconds",
        ):
            if getattr(self, name) < minimum:
                raise ValueError(
                    f"{name.upper()} must be at least {minimum}s "
                    f"({TRANSACTION_WAITS_PER_LEASE} x TRANSACTION_TIMEOUT_SECONDS)"
                )
        return self

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.link_visit_api_key:
            missing.append("LINK_VISIT_API_KEY: Shared secret expected in the x-api-key header")

        if not self.qr_token_address:
            missing.append("QR_TOKEN_ADDRESS: ERC-20 token distributed by the airdrop contracts")

        if self.use_direct_wallet and not self.direct_wallet_private_key:
            missing.append("DIRECT_WALLET_PRIVATE_KEY: Required when USE_DIRECT_WALLET=true")

        if not self.use_direct_wallet and not self.wallet_pool_private_keys:
            missing.append("WALLET_POOL_PRIVATE_KEYS: Comma-separated hot wallet keys")

        if not (
            self.airdrop_contract_web
            and self.airdrop_contract_mobile
            and self.airdrop_contract_miniapp
        ):
            missing.append("AIRDROP_CONTRACT_WEB/MOBILE/MINIAPP: Airdrop contract per claim source")

        if not self.miniapp_token_secret:
            missing.append("MINIAPP_TOKEN_SECRET: HMAC secret for mini-app session tokens")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if settings.app_env == "production":
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
    else:
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(level),
            context_class=dict,
            logger_factory=structlog.PrintLoggerFactory(),
            cache_logger_on_first_use=True,
        )
