"""QStash scheduler integration.

QStash signs every delivery with an HS256 JWT in the ``Upstash-Signature``
header. The ``body`` claim is the base64url SHA-256 of the raw request body, and
two signing keys (current and next) are valid during key rotation.

Security Note:
    verify_qstash_signature MUST be called before processing any queue
    webhook. Return 401 Unauthorized immediately if validation fails.
"""

import base64
import hashlib
import hmac
import json
from typing import Any

import httpx
import structlog
from jose import JWTError, jwt

from qrclaim.services.exceptions import QStashSignatureError, TransientError

logger = structlog.get_logger()

QSTASH_ISSUER = "Upstash"
QSTASH_PUBLISH_URL = "https://qstash.upstash.io/v2/publish/"


def _body_hash(raw_body: bytes) -> str:
    digest = hashlib.sha256(raw_body).digest()
    return base64.urlsafe_b64encode(digest).decode().rstrip("=")


def _verify_with_key(token: str, raw_body: bytes, url: str | None, signing_key: str) -> None:
    claims = jwt.decode(
        token,
        signing_key,
        algorithms=["HS256"],
        issuer=QSTASH_ISSUER,
        options={"verify_aud": False, "verify_sub": False, "require_exp": True},
    )

    if url is not None and claims.get("sub") != url:
        raise QStashSignatureError(f"Signature subject {claims.get('sub')!r} does not match {url!r}")

    claimed_hash = str(claims.get("body", "")).rstrip("=")
    if not hmac.compare_digest(claimed_hash, _body_hash(raw_body)):
        raise QStashSignatureError("Body hash mismatch")


def verify_qstash_signature(
    token: str | None,
    raw_body: bytes,
    current_key: str,
    next_key: str,
    url: str | None = None,
) -> bool:
    """Validate a QStash delivery signature.

    Args:
        token: Value of the Upstash-Signature header
        raw_body: Raw request body bytes (NOT parsed JSON)
        current_key: Current signing key
        next_key: Next signing key (tried when the current key fails)
        url: Expected destination URL (``sub`` claim); skipped when None

    Returns:
        True if the signature verifies under either key, False otherwise
    """
    if not token:
        return False

    for signing_key in (current_key, next_key):
        if not signing_key:
            continue
        try:
            _verify_with_key(token, raw_body, url, signing_key)
            return True
        except (JWTError, QStashSignatureError) as e:
            logger.debug("qstash.signature_key_rejected", error=str(e))

    logger.warning("qstash.signature_invalid")
    return False


class QStashPublisher:
    """Publish delayed HTTP callbacks through QStash."""

    def __init__(self, token: str, timeout: float = 10.0):
        self.token = token
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.token)

    async def publish(self, url: str, body: dict[str, Any], delay_seconds: int = 0) -> str:
        """Schedule a POST of ``body`` to ``url`` after ``delay_seconds``.

        Returns:
            QStash message id

        Raises:
            TransientError: QStash unreachable or rejected the request
        """
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }
        if delay_seconds > 0:
            headers["Upstash-Delay"] = f"{delay_seconds}s"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{QSTASH_PUBLISH_URL}{url}",
                    content=json.dumps(body),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error("qstash.publish_failed", url=url, error=str(e))
            raise TransientError(f"QStash publish failed: {e}") from e

        if response.status_code >= 300:
            logger.error(
                "qstash.publish_rejected",
                url=url,
                status_code=response.status_code,
                detail=response.text[:200],
            )
            raise TransientError(f"QStash publish rejected with status {response.status_code}")

        message_id = response.json().get("messageId", "")
        logger.info("qstash.published", url=url, delay_seconds=delay_seconds, message_id=message_id)
        return message_id
