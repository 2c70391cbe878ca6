"""Farcaster SIWF signature verification.

Sign In With Farcaster (SIWF) messages follow the Sign In With Ethereum format
(EIP-4361). The mini-app signs one when it opens; this module verifies it and
extracts the fid from the ``farcaster://fid/<fid>`` resource so the backend
can issue a mini-app session token.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import structlog
from eth_account import Account
from eth_account.messages import encode_defunct
from eth_utils.address import is_address, to_checksum_address

logger = structlog.get_logger()

_DOMAIN_RE = re.compile(r"^(?P<domain>\S+) wants you to sign in with your Ethereum account:$")
_FID_RESOURCE_RE = re.compile(r"farcaster://fid/(?P<fid>\d+)")
_FIELD_RE = re.compile(r"^(?P<name>[A-Za-z ]+): (?P<value>.+)$")


@dataclass
class SiwfMessage:
    domain: str
    address: str
    fid: Optional[int]
    nonce: Optional[str]
    expiration_time: Optional[datetime]


def parse_siwf_message(message: str) -> SiwfMessage | None:
    """Parse the fields of a SIWF message. Returns None if the header is malformed."""
    lines = message.strip().split("\n")
    if len(lines) < 2:
        return None

    domain_match = _DOMAIN_RE.match(lines[0].strip())
    address = lines[1].strip()
    if not domain_match or not is_address(address):
        return None

    fields: dict[str, str] = {}
    for line in lines[2:]:
        field_match = _FIELD_RE.match(line.strip())
        if field_match:
            fields[field_match.group("name")] = field_match.group("value").strip()

    fid_match = _FID_RESOURCE_RE.search(message)
    expiration = None
    if "Expiration Time" in fields:
        expiration = datetime.fromisoformat(fields["Expiration Time"].replace("Z", "+00:00"))

    return SiwfMessage(
        domain=domain_match.group("domain"),
        address=to_checksum_address(address),
        fid=int(fid_match.group("fid")) if fid_match else None,
        nonce=fields.get("Nonce"),
        expiration_time=expiration,
    )


def verify_farcaster_signature(
    message: str,
    signature: str,
    expected_domain: str,
    expected_address: str | None = None,
    nonce: str | None = None,
) -> SiwfMessage | None:
    """Verify a Sign In With Farcaster (SIWF) signature.

    Args:
        message: SIWF message string (EIP-4361 format)
        signature: Hex signature from the Farcaster wallet (0x-prefixed)
        expected_domain: Domain that must match the message's domain field
        expected_address: Optional address the message must be signed for
        nonce: Optional nonce that must match the message's nonce

    Returns:
        Parsed message if the signature and every check pass, None otherwise.
        Errors are logged, never raised.
    """
    try:
        parsed = parse_siwf_message(message)
        if parsed is None:
            logger.warning("farcaster.malformed_message", message_preview=message[:100])
            return None

        if parsed.domain != expected_domain:
            logger.warning(
                "farcaster.domain_mismatch",
                message_domain=parsed.domain,
                expected_domain=expected_domain,
            )
            return None

        if nonce is not None and parsed.nonce != nonce:
            logger.warning("farcaster.nonce_mismatch", address=parsed.address)
            return None

        if parsed.expiration_time and parsed.expiration_time < datetime.now(timezone.utc):
            logger.warning("farcaster.message_expired", address=parsed.address)
            return None

        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
        if to_checksum_address(recovered) != parsed.address:
            logger.warning(
                "farcaster.signature_mismatch",
                signer_address=parsed.address,
                recovered_address=recovered,
            )
            return None

        if expected_address and to_checksum_address(expected_address) != parsed.address:
            logger.warning(
                "farcaster.address_mismatch",
                message_address=parsed.address,
                expected_address=expected_address,
            )
            return None

        logger.info("farcaster.signature_verified", address=parsed.address, fid=parsed.fid)
        return parsed

    except Exception as e:
        logger.error(
            "farcaster.verification_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        return None
