"""FastAPI application factory."""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from web3 import Web3

from qrclaim.api.routes import claims, miniapp, queue
from qrclaim.core import timezone  # noqa: F401
from qrclaim.core.config import Settings, configure_logging
from qrclaim.core.database import close_db_session, setup_db_session
from qrclaim.core.redis import create_redis_client
from qrclaim.services.batch_processor import BatchProcessor
from qrclaim.services.blockchain.airdrop import AirdropExecutor
from qrclaim.services.claim_amounts import ClaimAmountService
from qrclaim.services.claim_recorder import ClaimRecorder
from qrclaim.services.claim_service import ClaimOutcome, ClaimService
from qrclaim.services.exceptions import ClaimError, ClaimErrorCode
from qrclaim.services.failure_logger import FailureLogger
from qrclaim.services.fraud import FraudGate
from qrclaim.services.identity import MiniAppTokenService, NeynarClient, PrivyClient
from qrclaim.services.locks import LockManager
from qrclaim.services.qstash import QStashPublisher
from qrclaim.services.rate_limit import IPRateLimiter
from qrclaim.services.retry_processor import RetryProcessor
from qrclaim.services.retry_queue import RetryQueue
from qrclaim.services.wallet_pool import WalletPool
from qrclaim.uow import create_uow_factory

logger = structlog.get_logger()


def build_services(app: FastAPI, settings: Settings, uow_factory, redis_client, w3: Web3) -> None:
    """Construct the claim services and store them in app.state for the routes."""
    locks = LockManager(redis_client)
    wallet_pool = WalletPool(settings, locks)
    executor = AirdropExecutor(
        w3, settings.qr_token_address, transaction_timeout=settings.transaction_timeout_seconds
    )
    neynar = NeynarClient(settings.neynar_api_key)
    miniapp_tokens = MiniAppTokenService(
        settings.miniapp_token_secret, ttl_seconds=settings.miniapp_token_ttl_seconds
    )
    retry_queue = RetryQueue(
        redis_client,
        publisher=QStashPublisher(settings.qstash_token),
        public_base_url=settings.public_base_url,
    )
    recorder = ClaimRecorder(uow_factory)

    gate = FraudGate(
        settings,
        uow_factory,
        rate_limiter=IPRateLimiter(
            redis_client, "rate-limit:claim", settings.ip_rate_limit_window_seconds
        ),
        privy=PrivyClient(settings.privy_app_id),
        miniapp_tokens=miniapp_tokens,
        neynar=neynar,
    )

    app.state.miniapp_tokens = miniapp_tokens
    app.state.neynar = neynar
    app.state.claim_service = ClaimService(
        settings,
        uow_factory,
        gate=gate,
        locks=locks,
        wallet_pool=wallet_pool,
        amounts=ClaimAmountService(settings, uow_factory, w3, neynar),
        executor=executor,
        recorder=recorder,
        failure_logger=FailureLogger(uow_factory, retry_queue),
        retry_queue=retry_queue,
        check_amount_limiter=IPRateLimiter(redis_client, "rate-limit:check-amount", 60),
    )
    app.state.batch_processor = BatchProcessor(
        settings, uow_factory, locks, retry_queue, wallet_pool, executor
    )
    app.state.retry_processor = RetryProcessor(
        settings, uow_factory, retry_queue, wallet_pool, executor, recorder
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan context manager.

    Handles startup and shutdown tasks:
    - Startup: Configure logging, create the database, Redis and Web3 clients, build services
    - Shutdown: Close the Redis connection pool and dispose of the database engine
    """
    settings = Settings()  # type: ignore[call-arg]

    configure_logging(settings)

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    uow_factory = create_uow_factory(session_factory)
    redis_client = create_redis_client(settings.redis_url)
    w3 = Web3(Web3.HTTPProvider(settings.rpc_url))

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.redis = redis_client
    app.state.w3 = w3

    build_services(app, settings, uow_factory, redis_client, w3)

    logger.info(
        "application.startup",
        db_url=settings.database_url.split("@")[-1],
        direct_wallet=settings.use_direct_wallet,
        pool_size=len(settings.pool_private_keys),
    )

    yield

    logger.info("application.shutdown")
    await redis_client.aclose()
    await close_db_session(session_factory)


async def claim_error_handler(request: Request, exc: ClaimError) -> JSONResponse:
    outcome = ClaimOutcome.from_error(exc)
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies get the claim API's error shape instead of FastAPI's 422."""
    logger.info("api.invalid_request", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "Missing or invalid parameters",
            "code": ClaimErrorCode.MISSING_PARAMETERS.value,
        },
    )


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    settings = Settings()  # type: ignore[call-arg]

    app = FastAPI(
        title="QR Claim API",
        description="Link-visit token claims for QR auctions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(ClaimError, claim_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(claims.router)
    app.include_router(miniapp.router)
    app.include_router(queue.router)

    @app.get("/health")
    async def health_check(response: Response):
        """Health check endpoint with database and Redis connectivity tests.

        Returns:
            200: {"status": "healthy"} if both dependencies respond
            503: {"status": "unhealthy", "error": {...}} otherwise
        """
        try:
            async with app.state.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
            await app.state.redis.ping()

            logger.debug("health_check.success")
            return {"status": "healthy"}

        except Exception as e:
            logger.error(
                "health_check.failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return {
                "status": "unhealthy",
                "error": {
                    "type": type(e).__name__,
                    "message": str(e),
                },
            }

    return app


# Create app instance for uvicorn
app = create_app()
