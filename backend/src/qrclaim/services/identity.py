"""Identity verification for claimants.

- Web/mobile users: Privy access token introspection (verified Twitter username)
- Mini-app users: short-lived HS256 session tokens issued by this backend
- Farcaster profile data (custody/verified addresses, Neynar score) via Neynar
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
import structlog
from eth_utils.address import is_address, to_checksum_address
from jose import JWTError, jwt

logger = structlog.get_logger()

PRIVY_USER_URL = "https://auth.privy.io/api/v1/users/me"
NEYNAR_USER_BULK_URL = "https://api.neynar.com/v2/farcaster/user/bulk"

MINIAPP_TOKEN_ALGORITHM = "HS256"
MINIAPP_TOKEN_ISSUER = "qrclaim-miniapp"


@dataclass
class PrivyUser:
    """Verified Privy user.

    Attributes:
        user_id: Privy DID (did:privy:...)
        linked_accounts: Raw linked account objects from Privy
    """

    user_id: str
    linked_accounts: list[dict[str, Any]] = field(default_factory=list)

    @property
    def twitter_username(self) -> Optional[str]:
        """Username of the linked twitter_oauth account, if any."""
        for account in self.linked_accounts:
            if account.get("type") == "twitter_oauth" and account.get("username"):
                return account["username"]
        return None


class PrivyClient:
    """Resolve Privy access tokens to users through the Privy API."""

    def __init__(self, app_id: str, timeout: float = 10.0):
        self.app_id = app_id
        self.timeout = timeout

    async def verify_token(self, token: str) -> PrivyUser | None:
        """Introspect a Privy access token.

        Args:
            token: Bearer token issued by Privy to the front-end

        Returns:
            PrivyUser if the token is valid, None otherwise (invalid, expired,
            or Privy unreachable)
        """
        if not token or not self.app_id:
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    PRIVY_USER_URL,
                    headers={
                        "Authorization": f"Bearer {token}",
                        "privy-app-id": self.app_id,
                    },
                )
        except httpx.HTTPError as e:
            logger.error("privy.request_failed", error=str(e), error_type=type(e).__name__)
            return None

        if response.status_code != 200:
            logger.warning(
                "privy.token_rejected",
                status_code=response.status_code,
                detail=response.text[:200],
            )
            return None

        data = response.json()
        user = data.get("user", data)
        user_id = user.get("id")
        if not user_id:
            logger.warning("privy.missing_user_id", response_keys=list(user.keys()))
            return None

        return PrivyUser(user_id=user_id, linked_accounts=user.get("linked_accounts") or [])


@dataclass
class MiniAppTokenResult:
    is_valid: bool
    fid: Optional[int] = None
    address: Optional[str] = None
    client_fid: Optional[int] = None
    error: Optional[str] = None


class MiniAppTokenService:
    """Issue and verify mini-app session tokens.

    Tokens are HS256 JWTs binding a fid to the address it authenticated with
    (and the Farcaster client it came from).
    """

    def __init__(self, secret: str, ttl_seconds: int = 86400):
        self.secret = secret
        self.ttl_seconds = ttl_seconds

    def issue(self, fid: int, address: str, client_fid: int | None = None) -> str:
        now = int(time.time())
        claims = {
            "iss": MINIAPP_TOKEN_ISSUER,
            "sub": str(fid),
            "fid": fid,
            "address": to_checksum_address(address),
            "client_fid": client_fid,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return jwt.encode(claims, self.secret, algorithm=MINIAPP_TOKEN_ALGORITHM)

    def verify(self, token: str | None) -> MiniAppTokenResult:
        """Verify signature, issuer and expiry, then extract the identity claims."""
        if not token:
            return MiniAppTokenResult(is_valid=False, error="Missing mini-app token")

        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[MINIAPP_TOKEN_ALGORITHM],
                issuer=MINIAPP_TOKEN_ISSUER,
            )
        except JWTError as e:
            logger.warning("miniapp_token.invalid", error=str(e))
            return MiniAppTokenResult(is_valid=False, error=str(e))

        fid = claims.get("fid")
        address = claims.get("address")
        if not isinstance(fid, int) or not address or not is_address(address):
            return MiniAppTokenResult(is_valid=False, error="Malformed token claims")

        return MiniAppTokenResult(
            is_valid=True,
            fid=fid,
            address=to_checksum_address(address),
            client_fid=claims.get("client_fid"),
        )


@dataclass
class NeynarUser:
    fid: int
    username: Optional[str]
    score: Optional[float]
    custody_address: Optional[str]
    verified_addresses: list[str] = field(default_factory=list)

    def owns(self, address: str, wallet_type: str | None = None) -> bool:
        """Check whether an address belongs to this user.

        Args:
            address: Claimed address
            wallet_type: Optional hint, "custody" or "verified", narrowing the check
        """
        target = address.lower()
        custody = [self.custody_address.lower()] if self.custody_address else []
        verified = [a.lower() for a in self.verified_addresses]

        if wallet_type == "custody":
            return target in custody
        if wallet_type == "verified":
            return target in verified
        return target in custody or target in verified


class NeynarClient:
    """Fetch Farcaster users from the Neynar API."""

    def __init__(self, api_key: str, timeout: float = 10.0):
        self.api_key = api_key
        self.timeout = timeout

    async def fetch_user(self, fid: int) -> NeynarUser | None:
        """Fetch one user by fid.

        Returns:
            NeynarUser, or None if the user does not exist or Neynar is unreachable
        """
        if not self.api_key:
            logger.warning("neynar.api_key_missing", fid=fid)
            return None

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(
                    NEYNAR_USER_BULK_URL,
                    params={"fids": str(fid)},
                    headers={"x-api-key": self.api_key, "accept": "application/json"},
                )
        except httpx.HTTPError as e:
            logger.error("neynar.request_failed", fid=fid, error=str(e))
            return None

        if response.status_code != 200:
            logger.warning("neynar.bad_status", fid=fid, status_code=response.status_code)
            return None

        users = response.json().get("users") or []
        if not users:
            return None

        user = users[0]
        score = user.get("score")
        if score is None:
            score = (user.get("experimental") or {}).get("neynar_user_score")

        return NeynarUser(
            fid=user.get("fid", fid),
            username=user.get("username"),
            score=float(score) if score is not None else None,
            custody_address=user.get("custody_address"),
            verified_addresses=(user.get("verified_addresses") or {}).get("eth_addresses") or [],
        )

    async def validate_miniapp_user(
        self, fid: int, address: str, wallet_type: str | None = None
    ) -> bool:
        """Confirm the address is a custody or verified address of the fid."""
        user = await self.fetch_user(fid)
        if user is None:
            logger.warning("neynar.validation_user_not_found", fid=fid)
            return False

        if not user.owns(address, wallet_type):
            logger.warning(
                "neynar.validation_address_mismatch",
                fid=fid,
                address=address,
                wallet_type=wallet_type,
            )
            return False
        return True
