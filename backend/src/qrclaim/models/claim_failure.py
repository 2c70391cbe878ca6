"""ClaimFailure entity - retryable claim failures awaiting the retry queue."""

from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Column, Text
from sqlmodel import Field, SQLModel

from qrclaim.core.timezone import utc_now


class ClaimFailure(SQLModel, table=True):
    """A logged claim failure eligible for retry.

    Created by the failure logger, consumed (deleted) by the batch processor
    once a grouped airdrop lands, or deleted after reaching a terminal status.
    """

    __tablename__ = "link_visit_claim_failures"  # type: ignore[assignment]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    fid: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    eth_address: str = Field(max_length=42, index=True)
    auction_id: int = Field(index=True)
    username: Optional[str] = Field(default=None, max_length=255, index=True)
    user_id: Optional[str] = Field(default=None, max_length=255)
    winning_url: Optional[str] = Field(default=None)
    error_message: str = Field(sa_column=Column(Text, nullable=False))
    error_code: Optional[str] = Field(default=None, max_length=64)
    tx_hash: Optional[str] = Field(default=None, max_length=66)
    request_data: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    gas_price: Optional[str] = Field(default=None, max_length=78)
    gas_limit: Optional[int] = Field(default=None)
    network_status: Optional[str] = Field(default=None, max_length=64)
    retry_count: int = Field(default=0, ge=0)
    client_ip: Optional[str] = Field(default=None, max_length=64, index=True)
    claim_source: str = Field(default="web", max_length=16)
    created_at: datetime = Field(default_factory=utc_now, index=True)
    last_retry_at: Optional[datetime] = Field(default=None)
