"""Create marketplace schema

Revision ID: 001
Revises: None
Create Date: 2025-01-20 00:00:00.000000+00:00

What:  Creates users, notes, reviews, purchases, subscriptions, payouts,
       ai_jobs and referrals.
How:   PostgreSQL-specific defaults (gen_random_uuid(), CURRENT_TIMESTAMP)
       so rows inserted outside the ORM are still complete, plus a trigger
       that bumps notes.updated_at on every UPDATE.

Rollback: downgrade() drops everything (destructive).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        server_default=None if nullable else sa.text("CURRENT_TIMESTAMP"),
        nullable=nullable,
    )


def _user_fk(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    op.create_table(
        "users",
        _id(),
        sa.Column("telegram_id", sa.BigInteger(), nullable=False),
        sa.Column("username", sa.String(255)),
        sa.Column("first_name", sa.String(255)),
        sa.Column("email", sa.String(255)),
        sa.Column("plan", sa.String(20), nullable=False, server_default=sa.text("'free'")),
        sa.Column("credits", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("wallet_balance", sa.Numeric(10, 2), nullable=False, server_default=sa.text("0.00")),
        _timestamp("premium_until", nullable=True),
        sa.Column("session_token", sa.String(64)),
        _timestamp("session_expires_at", nullable=True),
        sa.Column("referral_code", sa.String(20)),
        sa.Column("referrals_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("last_login", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        sa.CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_non_negative"),
    )
    op.create_index("ix_users_telegram_id", "users", ["telegram_id"], unique=True)
    op.create_index("ix_users_session_token", "users", ["session_token"], unique=True)
    op.create_index("ix_users_referral_code", "users", ["referral_code"], unique=True)

    op.create_table(
        "notes",
        _id(),
        _user_fk("seller_id"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("subject", sa.String(100), nullable=False),
        sa.Column("level", sa.String(50), nullable=False, server_default=sa.text("'undergraduate'")),
        sa.Column("country", sa.String(100)),
        sa.Column("tags", postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column("price_usd", sa.Numeric(10, 2), nullable=False),
        sa.Column("file_path", sa.String(500), nullable=False),
        sa.Column("original_filename", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("views", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("price_usd >= 0.99 AND price_usd <= 99.99", name="ck_notes_price_range"),
    )
    op.create_index("ix_notes_seller_id", "notes", ["seller_id"])
    op.create_index("idx_notes_status_created_at", "notes", ["status", "created_at"])
    op.create_index("idx_notes_subject", "notes", ["subject"])

    # updated_at follows every UPDATE, including ones issued outside the ORM
    op.execute(
        """
        CREATE OR REPLACE FUNCTION set_updated_at() RETURNS trigger AS $$
        BEGIN
            NEW.updated_at = CURRENT_TIMESTAMP;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_notes_updated_at
        BEFORE UPDATE ON notes
        FOR EACH ROW EXECUTE FUNCTION set_updated_at();
        """
    )

    op.create_table(
        "reviews",
        _id(),
        sa.Column(
            "note_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("notes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _user_fk("user_id"),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("comment", sa.Text()),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("note_id", "user_id", name="uq_reviews_note_user"),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
    )
    op.create_index("ix_reviews_note_id", "reviews", ["note_id"])

    op.create_table(
        "purchases",
        _id(),
        _user_fk("buyer_id"),
        sa.Column(
            "note_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("notes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount_usd", sa.Numeric(10, 2), nullable=False),
        sa.Column("fee_usd", sa.Numeric(10, 2), nullable=False),
        sa.Column("stripe_session_id", sa.String(255), nullable=False),
        sa.Column("payment_reference", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        _timestamp("created_at"),
        _timestamp("completed_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("stripe_session_id", name="uq_purchases_stripe_session_id"),
    )
    op.create_index("ix_purchases_buyer_id", "purchases", ["buyer_id"])
    op.create_index("ix_purchases_note_id", "purchases", ["note_id"])
    op.create_index("idx_purchases_buyer_note", "purchases", ["buyer_id", "note_id"])

    op.create_table(
        "subscriptions",
        _id(),
        _user_fk("user_id"),
        sa.Column("stripe_subscription_id", sa.String(255)),
        sa.Column("tier", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'active'")),
        _timestamp("started_at"),
        _timestamp("canceled_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", name="uq_subscriptions_user_id"),
        sa.UniqueConstraint("stripe_subscription_id", name="uq_subscriptions_stripe_subscription_id"),
    )

    op.create_table(
        "payouts",
        _id(),
        _user_fk("seller_id"),
        sa.Column("amount_usd", sa.Numeric(10, 2), nullable=False),
        sa.Column("method", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'pending'")),
        _timestamp("processed_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payouts_seller_id", "payouts", ["seller_id"])

    op.create_table(
        "ai_jobs",
        _id(),
        _user_fk("user_id"),
        sa.Column("job_type", sa.String(30), nullable=False),
        sa.Column("input_hash", sa.String(64)),
        sa.Column("output", postgresql.JSONB()),
        sa.Column("cost_units", sa.Integer(), nullable=False, server_default=sa.text("1")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_ai_jobs_user_type_created", "ai_jobs", ["user_id", "job_type", "created_at"])

    op.create_table(
        "referrals",
        _id(),
        _user_fk("referrer_id"),
        _user_fk("referred_id"),
        sa.Column("reward_credits", sa.Integer(), nullable=False, server_default=sa.text("5")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("referrer_id", "referred_id", name="uq_referrals_pair"),
        sa.UniqueConstraint("referred_id", name="uq_referrals_referred"),
    )
    op.create_index("ix_referrals_referrer_id", "referrals", ["referrer_id"])


def downgrade() -> None:
    op.drop_table("referrals")
    op.drop_table("ai_jobs")
    op.drop_table("payouts")
    op.drop_table("subscriptions")
    op.drop_table("purchases")
    op.drop_table("reviews")
    op.execute("DROP TRIGGER IF EXISTS trg_notes_updated_at ON notes")
    op.drop_table("notes")
    op.execute("DROP FUNCTION IF EXISTS set_updated_at()")
    op.drop_table("users")
