"""BannedUser entity - fid-keyed ban records."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, BigInteger, Column, Text
from sqlalchemy.dialects.postgresql import ARRAY
from sqlmodel import Field, SQLModel

from qrclaim.core.timezone import utc_now

# Appends an IP to a ban record's ip_addresses unless already present.
ADD_IP_TO_BANNED_USER_DDL = """
CREATE OR REPLACE FUNCTION add_ip_to_banned_user(banned_fid bigint, new_ip text)
RETURNS void AS $$
BEGIN
    UPDATE banned_users
    SET ip_addresses = array_append(COALESCE(ip_addresses, ARRAY[]::text[]), new_ip)
    WHERE fid = banned_fid
      AND NOT (new_ip = ANY(COALESCE(ip_addresses, ARRAY[]::text[])));
END;
$$ LANGUAGE plpgsql;
"""

DROP_ADD_IP_TO_BANNED_USER_DDL = "DROP FUNCTION IF EXISTS add_ip_to_banned_user(bigint, text);"


class BannedUser(SQLModel, table=True):
    """A banned claimant.

    ``fid`` is the canonical key. Lookups also fan out over username and
    eth_address because web users only carry a synthetic fid.
    """

    __tablename__ = "banned_users"  # type: ignore[assignment]

    fid: int = Field(sa_column=Column(BigInteger, primary_key=True, autoincrement=False))
    username: Optional[str] = Field(default=None, max_length=255, index=True)
    eth_address: Optional[str] = Field(default=None, max_length=42, index=True)
    reason: Optional[str] = Field(default=None)
    auto_banned: bool = Field(default=False)
    banned_by: Optional[str] = Field(default=None, max_length=64)
    total_claims_attempted: int = Field(default=0, ge=0)
    ip_addresses: Optional[list[str]] = Field(default=None, sa_column=Column(ARRAY(Text)))
    duplicate_transactions: Optional[list] = Field(default=None, sa_column=Column(JSON))
    total_tokens_received: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
