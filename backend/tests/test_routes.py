"""Integration tests for the HTTP surface.

Services are replaced with mocks on app.state; the tests cover routing,
authentication, request parsing and response shapes.
"""

import base64
import hashlib
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock
from uuid import uuid4

import pytest
import pytest_asyncio
from eth_account import Account
from eth_account.messages import encode_defunct
from httpx import ASGITransport, AsyncClient
from jose import jwt

from qrclaim.api.dependencies import get_settings
from qrclaim.app import app
from qrclaim.services.batch_processor import BatchRunResult
from qrclaim.services.claim_service import ClaimOutcome
from qrclaim.services.identity import MiniAppTokenService, NeynarUser

ADDRESS = "0x5B38Da6a701c568545dCfcB03FcB875f56beddC4"
REMOTE_CLIENT = ("203.0.113.9", 4444)


@pytest.fixture
def services(settings):
    claim_service = Mock()
    claim_service.process_claim = AsyncMock(
        return_value=ClaimOutcome(200, {"success": True, "tx_hash": "0xabc", "amount": 420})
    )
    claim_service.check_amount = AsyncMock(
        return_value=ClaimOutcome(200, {"success": True, "amount": 800, "source": "web"})
    )
    claim_service.check_pending = AsyncMock(
        return_value=ClaimOutcome(200, {"success": True, "hasPendingClaim": False})
    )
    batch_processor = Mock()
    batch_processor.run = AsyncMock(return_value=BatchRunResult(message="No failures to process"))
    retry_processor = Mock()
    retry_processor.process = AsyncMock(return_value={"success": True, "status": "success"})

    app.state.claim_service = claim_service
    app.state.batch_processor = batch_processor
    app.state.retry_processor = retry_processor
    app.state.miniapp_tokens = MiniAppTokenService(settings.miniapp_token_secret, 600)
    app.state.neynar = Mock()
    app.state.neynar.fetch_user = AsyncMock(return_value=None)
    app.dependency_overrides[get_settings] = lambda: settings
    yield app.state
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def test_client(services):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest_asyncio.fixture
async def remote_client(services):
    """Client whose requests arrive from a non-loopback address."""
    transport = ASGITransport(app=app, client=REMOTE_CLIENT)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def qstash_token(body: bytes, url: str, key: str) -> str:
    now = int(time.time())
    claims = {
        "iss": "Upstash",
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + 300,
        "body": base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode(),
    }
    return jwt.encode(claims, key, algorithm="HS256")


def siwf_message(address: str, fid: int, domain: str = "qrcoin.fun") -> str:
    expiration = (datetime.now(timezone.utc) + timedelta(minutes=10)).strftime(
        "%Y-%m-%dT%H:%M:%SZ"
    )
    return (
        f"{domain} wants you to sign in with your Ethereum account:\n"
        f"{address}\n"
        "\n"
        "Farcaster Auth\n"
        "\n"
        f"URI: https://{domain}/login\n"
        "Version: 1\n"
        "Chain ID: 10\n"
        "Nonce: abc123XYZ\n"
        "Issued At: 2025-11-01T12:00:00Z\n"
        f"Expiration Time: {expiration}\n"
        "Resources:\n"
        f"- farcaster://fid/{fid}"
    )


@pytest.mark.asyncio
class TestClaimEndpoint:
    async def test_requires_api_key(self, test_client, services):
        response = await test_client.post(
            "/api/link-visit/claim", json={"address": ADDRESS, "auction_id": 42}
        )

        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"
        services.claim_service.process_claim.assert_not_awaited()

    async def test_rejects_wrong_api_key(self, test_client):
        response = await test_client.post(
            "/api/link-visit/claim",
            json={"address": ADDRESS},
            headers={"X-API-Key": "nope"},
        )

        assert response.status_code == 401

    async def test_passes_ip_and_privy_token(self, test_client, services):
        response = await test_client.post(
            "/api/link-visit/claim",
            json={"address": ADDRESS, "auction_id": 42, "claim_source": "web"},
            headers={
                "X-API-Key": "test-api-key",
                "X-Forwarded-For": "192.0.2.66, 198.51.100.4",
                "Authorization": "Bearer privy-id-token",
            },
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "tx_hash": "0xabc", "amount": 420}
        request, client_ip, privy_token = services.claim_service.process_claim.await_args.args
        assert request.auction_id == 42
        assert client_ip == "198.51.100.4"
        assert privy_token == "privy-id-token"

    async def test_outcome_status_is_forwarded(self, test_client, services):
        services.claim_service.process_claim.return_value = ClaimOutcome(
            400, {"success": False, "error": "Already claimed", "code": "ALREADY_CLAIMED"}
        )

        response = await test_client.post(
            "/api/link-visit/claim",
            json={"address": ADDRESS, "auction_id": 42},
            headers={"X-API-Key": "test-api-key"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "ALREADY_CLAIMED"

    async def test_malformed_body(self, test_client):
        response = await test_client.post(
            "/api/link-visit/claim",
            json={"address": ADDRESS, "auction_id": "not-a-number"},
            headers={"X-API-Key": "test-api-key"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "MISSING_PARAMETERS"

    @pytest.mark.parametrize(
        ("proxies", "expected_ip"),
        [(0, "127.0.0.1"), (1, "198.51.100.4"), (2, "10.0.0.7")],
    )
    async def test_client_ip_taken_from_trusted_hop(
        self, test_client, services, settings, proxies, expected_ip
    ):
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(
            update={"trusted_proxy_count": proxies}
        )

        await test_client.post(
            "/api/link-visit/claim",
            json={"address": ADDRESS, "auction_id": 42},
            headers={
                "X-API-Key": "test-api-key",
                "X-Forwarded-For": "192.0.2.66, 10.0.0.7, 198.51.100.4",
                "X-Real-IP": "192.0.2.67",
            },
        )

        _, client_ip, _ = services.claim_service.process_claim.await_args.args
        assert client_ip == expected_ip


@pytest.mark.asyncio
class TestPreviewEndpoints:
    async def test_check_amount_uses_camel_case_source(self, test_client, services):
        response = await test_client.post(
            "/api/link-visit/check-amount",
            json={"address": ADDRESS, "claimSource": "mini_app", "fid": 1234},
            headers={"X-Real-IP": "198.51.100.4"},
        )

        assert response.status_code == 200
        services.claim_service.check_amount.assert_awaited_once_with(
            "198.51.100.4", ADDRESS, "mini_app", 1234
        )

    async def test_check_pending(self, test_client, services):
        response = await test_client.post(
            "/api/link-visit/check-pending",
            json={"auctionId": 42, "username": "alice"},
        )

        assert response.json() == {"success": True, "hasPendingClaim": False}
        services.claim_service.check_pending.assert_awaited_once_with(42, None, None, "alice")


@pytest.mark.asyncio
class TestQueueEndpoints:
    async def test_local_requests_skip_signature(self, test_client, services):
        response = await test_client.post("/api/queue/process-claims-batch", content=b"{}")

        assert response.status_code == 200
        assert response.json()["totalProcessed"] == 0
        services.batch_processor.run.assert_awaited_once()

    async def test_remote_request_without_signature(self, remote_client, services):
        response = await remote_client.post("/api/queue/process-claims-batch", content=b"{}")

        assert response.status_code == 401
        services.batch_processor.run.assert_not_awaited()

    async def test_remote_request_with_valid_signature(self, remote_client, services):
        failure_id = uuid4()
        body = f'{{"failureId": "{failure_id}", "attempt": 2}}'.encode()
        token = qstash_token(
            body,
            "https://claims.example.com/api/queue/process-claim",
            "current-signing-key",
        )

        response = await remote_client.post(
            "/api/queue/process-claim", content=body, headers={"Upstash-Signature": token}
        )

        assert response.status_code == 200
        services.retry_processor.process.assert_awaited_once_with(failure_id, 2)

    async def test_remote_request_with_forged_signature(self, remote_client, services):
        body = b"{}"
        token = qstash_token(
            body, "https://claims.example.com/api/queue/process-claims-batch", "wrong-key"
        )

        response = await remote_client.post(
            "/api/queue/process-claims-batch", content=body, headers={"Upstash-Signature": token}
        )

        assert response.status_code == 401

    async def test_process_claim_requires_failure_id(self, remote_client, services):
        body = b'{"attempt": 1}'
        token = qstash_token(
            body, "https://claims.example.com/api/queue/process-claim", "current-signing-key"
        )

        response = await remote_client.post(
            "/api/queue/process-claim", content=body, headers={"Upstash-Signature": token}
        )

        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Missing failureId"}
        services.retry_processor.process.assert_not_awaited()

    async def test_batch_crash_returns_500(self, test_client, services):
        services.batch_processor.run.side_effect = RuntimeError("redis down")

        response = await test_client.post("/api/queue/process-claims-batch")

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "redis down"}

    async def test_spoofed_host_header_does_not_skip_signature(self, remote_client, services):
        for path in ("/api/queue/process-claims-batch", "/api/queue/process-claim"):
            response = await remote_client.post(
                path, content=b"{}", headers={"Host": "localhost"}
            )

            assert response.status_code == 401

        services.batch_processor.run.assert_not_awaited()
        services.retry_processor.process.assert_not_awaited()

    async def test_local_process_claim_requires_signature(self, test_client, services):
        body = f'{{"failureId": "{uuid4()}"}}'.encode()

        response = await test_client.post("/api/queue/process-claim", content=body)

        assert response.status_code == 401
        services.retry_processor.process.assert_not_awaited()

    async def test_local_batch_requires_signature_unless_allowed(
        self, test_client, services, settings
    ):
        app.dependency_overrides[get_settings] = lambda: settings.model_copy(
            update={"qstash_allow_local": False}
        )

        response = await test_client.post("/api/queue/process-claims-batch", content=b"{}")

        assert response.status_code == 401
        services.batch_processor.run.assert_not_awaited()


@pytest.mark.asyncio
class TestMiniAppTokenEndpoint:
    @pytest.fixture
    def account(self):
        return Account.from_key("0x" + "22" * 32)

    def sign(self, account, message: str) -> str:
        signature = account.sign_message(encode_defunct(text=message)).signature.hex()
        return signature if signature.startswith("0x") else "0x" + signature

    def farcaster_user(self, fid: int, custody: str) -> NeynarUser:
        return NeynarUser(
            fid=fid,
            username="alice",
            score=0.9,
            custody_address=custody,
            verified_addresses=[ADDRESS.lower()],
        )

    async def test_issues_token(self, test_client, services, account):
        message = siwf_message(account.address, 1234)
        services.neynar.fetch_user.return_value = self.farcaster_user(1234, account.address)

        response = await test_client.post(
            "/api/miniapp/token",
            json={
                "message": message,
                "signature": self.sign(account, message),
                "address": ADDRESS,
                "client_fid": 9152,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["fid"] == 1234
        assert data["expires_in"] == 600
        verified = services.miniapp_tokens.verify(data["token"])
        assert verified.fid == 1234
        assert verified.address == ADDRESS
        assert verified.client_fid == 9152
        services.neynar.fetch_user.assert_awaited_once_with(1234)

    async def test_rejects_bad_signature(self, test_client, account):
        message = siwf_message(account.address, 1234)
        other = Account.from_key("0x" + "33" * 32)

        response = await test_client.post(
            "/api/miniapp/token",
            json={"message": message, "signature": self.sign(other, message), "address": ADDRESS},
        )

        assert response.status_code == 401

    async def test_rejects_signature_for_someone_elses_fid(self, test_client, services, account):
        victim_custody = Account.from_key("0x" + "44" * 32).address
        services.neynar.fetch_user.return_value = self.farcaster_user(1234, victim_custody)
        message = siwf_message(account.address, 1234)

        response = await test_client.post(
            "/api/miniapp/token",
            json={"message": message, "signature": self.sign(account, message), "address": ADDRESS},
        )

        assert response.status_code == 401
        assert "token" not in response.json()

    async def test_rejects_address_not_owned_by_fid(self, test_client, services, account):
        services.neynar.fetch_user.return_value = self.farcaster_user(1234, account.address)
        message = siwf_message(account.address, 1234)
        stranger = Account.from_key("0x" + "55" * 32).address

        response = await test_client.post(
            "/api/miniapp/token",
            json={
                "message": message,
                "signature": self.sign(account, message),
                "address": stranger,
            },
        )

        assert response.status_code == 403

    async def test_rejects_unknown_fid(self, test_client, services, account):
        message = siwf_message(account.address, 1234)

        response = await test_client.post(
            "/api/miniapp/token",
            json={"message": message, "signature": self.sign(account, message), "address": ADDRESS},
        )

        assert response.status_code == 401

    async def test_rejects_invalid_address(self, test_client, account):
        message = siwf_message(account.address, 1234)

        response = await test_client.post(
            "/api/miniapp/token",
            json={
                "message": message,
                "signature": self.sign(account, message),
                "address": "0x" + "zz" * 20,
            },
        )

        assert response.status_code == 400


@pytest.mark.asyncio
class TestHealthEndpoint:
    async def test_unhealthy_when_database_unreachable(self, test_client):
        app.state.session_factory = Mock(side_effect=ConnectionError("db down"))
        app.state.redis = Mock()

        response = await test_client.get("/health")

        assert response.status_code == 503
        assert response.json()["error"]["type"] == "ConnectionError"
