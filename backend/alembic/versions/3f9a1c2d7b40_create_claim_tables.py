"""create_claim_tables

Revision ID: 3f9a1c2d7b40
Revises:
Create Date: 2025-11-03 10:12:41.118203

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op
from qrclaim.models.banned_user import (
    ADD_IP_TO_BANNED_USER_DDL,
    DROP_ADD_IP_TO_BANNED_USER_DDL,
)

# revision identifiers, used by Alembic.
revision: str = "3f9a1c2d7b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create claim, failure, ban, winner, spam label and amount tier tables."""
    op.create_table(
        "link_visit_claims",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fid", sa.BigInteger(), nullable=False),
        sa.Column("eth_address", sa.String(length=42), nullable=False),
        sa.Column("auction_id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("winning_url", sa.String(), nullable=True),
        sa.Column("claim_source", sa.String(length=16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("link_visited_at", sa.DateTime(), nullable=True),
        sa.Column("client_ip", sa.String(length=64), nullable=True),
        sa.Column("neynar_user_score", sa.Float(), nullable=True),
        sa.Column("spam_label", sa.Boolean(), nullable=True),
        sa.Column("mini_app_client", sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "eth_address", "auction_id", name="uq_link_visit_claims_address_auction"
        ),
        sa.UniqueConstraint("fid", "auction_id", name="uq_link_visit_claims_fid_auction"),
        sa.CheckConstraint(
            "claim_source IN ('web', 'mobile', 'mini_app')",
            name="ck_link_visit_claims_claim_source",
        ),
    )
    op.create_index("ix_link_visit_claims_fid", "link_visit_claims", ["fid"])
    op.create_index("ix_link_visit_claims_eth_address", "link_visit_claims", ["eth_address"])
    op.create_index("ix_link_visit_claims_auction_id", "link_visit_claims", ["auction_id"])
    op.create_index("ix_link_visit_claims_claimed_at", "link_visit_claims", ["claimed_at"])
    op.create_index("ix_link_visit_claims_client_ip", "link_visit_claims", ["client_ip"])

    op.create_table(
        "link_visit_claim_failures",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("fid", sa.BigInteger(), nullable=False),
        sa.Column("eth_address", sa.String(length=42), nullable=False),
        sa.Column("auction_id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("user_id", sa.String(length=255), nullable=True),
        sa.Column("winning_url", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("request_data", sa.JSON(), nullable=True),
        sa.Column("gas_price", sa.String(length=78), nullable=True),
        sa.Column("gas_limit", sa.Integer(), nullable=True),
        sa.Column("network_status", sa.String(length=64), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("client_ip", sa.String(length=64), nullable=True),
        sa.Column("claim_source", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("last_retry_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("fid", "eth_address", "auction_id", "username", "client_ip", "created_at"):
        op.create_index(
            f"ix_link_visit_claim_failures_{column}", "link_visit_claim_failures", [column]
        )

    op.create_table(
        "banned_users",
        sa.Column("fid", sa.BigInteger(), autoincrement=False, nullable=False),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("eth_address", sa.String(length=42), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("auto_banned", sa.Boolean(), nullable=False),
        sa.Column("banned_by", sa.String(length=64), nullable=True),
        sa.Column("total_claims_attempted", sa.Integer(), nullable=False),
        sa.Column("ip_addresses", postgresql.ARRAY(sa.Text()), nullable=True),
        sa.Column("duplicate_transactions", sa.JSON(), nullable=True),
        sa.Column("total_tokens_received", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("fid"),
    )
    op.create_index("ix_banned_users_username", "banned_users", ["username"])
    op.create_index("ix_banned_users_eth_address", "banned_users", ["eth_address"])

    op.create_table(
        "winners",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("auction_id", sa.Integer(), nullable=False),
        sa.Column("winner_address", sa.String(length=42), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_winners_auction_id", "winners", ["auction_id"], unique=True)

    op.create_table(
        "spam_labels",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fid", sa.BigInteger(), nullable=False),
        sa.Column("label_type", sa.String(length=32), nullable=False),
        sa.Column("label_value", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_spam_labels_fid", "spam_labels", ["fid"])

    op.create_table(
        "claim_amount_configs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("min_score", sa.Float(), nullable=True),
        sa.Column("max_score", sa.Float(), nullable=True),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_claim_amount_configs_category", "claim_amount_configs", ["category"])

    # Ban records accumulate the IPs of blocked attempts
    op.execute(ADD_IP_TO_BANNED_USER_DDL)


def downgrade() -> None:
    """Drop all claim tables and the ban IP function."""
    op.execute(DROP_ADD_IP_TO_BANNED_USER_DDL)
    op.drop_table("claim_amount_configs")
    op.drop_table("spam_labels")
    op.drop_table("winners")
    op.drop_table("banned_users")
    op.drop_table("link_visit_claim_failures")
    op.drop_table("link_visit_claims")
