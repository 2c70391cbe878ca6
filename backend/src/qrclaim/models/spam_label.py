"""SpamLabel entity - per-fid spam classification."""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Column
from sqlmodel import Field, SQLModel

from qrclaim.core.timezone import utc_now

SPAM_LABEL_TYPE = "spam"
SPAM_LABEL_SPAM = 0
SPAM_LABEL_NOT_SPAM = 2


class SpamLabel(SQLModel, table=True):
    """Spam label for a fid: label_value 0 marks spam, 2 marks a high-quality account."""

    __tablename__ = "spam_labels"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    fid: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    label_type: str = Field(default=SPAM_LABEL_TYPE, max_length=32)
    label_value: int
    created_at: datetime = Field(default_factory=utc_now)
