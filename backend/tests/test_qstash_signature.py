"""Unit tests for QStash delivery signature validation."""

import base64
import hashlib
import time

import pytest
from jose import jwt

from qrclaim.services.qstash import verify_qstash_signature

URL = "https://claims.example.com/api/queue/process-claims-batch"


def sign(body: bytes, key: str, url: str = URL, exp_offset: int = 300, issuer: str = "Upstash"):
    now = int(time.time())
    claims = {
        "iss": issuer,
        "sub": url,
        "iat": now,
        "nbf": now,
        "exp": now + exp_offset,
        "jti": "msg_test",
        "body": base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode(),
    }
    return jwt.encode(claims, key, algorithm="HS256")


class TestQStashSignatureValidation:
    @pytest.fixture
    def body(self) -> bytes:
        return b'{"trigger":"cron"}'

    def test_current_key_accepted(self, body):
        token = sign(body, "current")

        assert verify_qstash_signature(token, body, "current", "next", url=URL) is True

    def test_next_key_accepted_during_rotation(self, body):
        token = sign(body, "next")

        assert verify_qstash_signature(token, body, "current", "next", url=URL) is True

    def test_wrong_key_rejected(self, body):
        token = sign(body, "attacker")

        assert verify_qstash_signature(token, body, "current", "next", url=URL) is False

    def test_tampered_body_rejected(self, body):
        token = sign(body, "current")

        assert verify_qstash_signature(token, b'{"trigger":"x"}', "current", "next") is False

    def test_expired_token_rejected(self, body):
        token = sign(body, "current", exp_offset=-60)

        assert verify_qstash_signature(token, body, "current", "next", url=URL) is False

    def test_wrong_issuer_rejected(self, body):
        token = sign(body, "current", issuer="Someone")

        assert verify_qstash_signature(token, body, "current", "next", url=URL) is False

    def test_wrong_destination_rejected(self, body):
        token = sign(body, "current", url="https://elsewhere.example.com/hook")

        assert verify_qstash_signature(token, body, "current", "next", url=URL) is False

    def test_missing_token_rejected(self, body):
        assert verify_qstash_signature(None, body, "current", "next") is False
        assert verify_qstash_signature("", body, "current", "next") is False
