"""
NoteX Backend — User SQLAlchemy Model
=======================================

What:  ORM model for the `users` table.
Why:   A user is created on first Telegram login and is the anchor for every
       balance the ledger touches: AI credits, seller wallet, referrals.

Table Design Rationale:
    - telegram_id: unique external identity; the only key used at login
    - credits: integer AI-usage balance (free plan starts with 10)
    - wallet_balance: seller earnings in USD, NUMERIC(10,2)
    - session_token / session_expires_at: single active bearer session
    - referral_code: 8-char code, unique, never changed once assigned
    - premium_until: set only for a referral-earned plan; NULL for Stripe
      subscribers, whose plan lasts until the subscription is canceled
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Integer, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from notex.database import Base, utcnow

PLAN_FREE = "free"
PLAN_PRO = "pro"
PLAN_ELITE = "elite"
PAID_PLANS = (PLAN_PRO, PLAN_ELITE)

# Credits handed to a new (or downgraded) free-plan user
DEFAULT_FREE_CREDITS = 10
# Sentinel balance for subscribers; paid plans are never charged per job
UNLIMITED_CREDITS = 9999


class User(Base):
    """
    A NoteX account (buyer, seller, or both).

    Lifecycle:
        1. Created on first Telegram login with plan=free, credits=10
        2. Mutated only through relative SQL updates by the ledger and the
           webhook reconciler (never read-modify-write in Python)
        3. Never hard-deleted; dependent rows cascade if an operator removes one
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
        CheckConstraint("wallet_balance >= 0", name="ck_users_wallet_non_negative"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False, index=True)
    username: Mapped[Optional[str]] = mapped_column(String(255))
    first_name: Mapped[Optional[str]] = mapped_column(String(255))
    email: Mapped[Optional[str]] = mapped_column(String(255))

    # ── Plan & Balances ───────────────────────────────────────────────────
    plan: Mapped[str] = mapped_column(String(20), nullable=False, default=PLAN_FREE)
    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_FREE_CREDITS)
    wallet_balance: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0.00")
    )
    premium_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # ── Session ───────────────────────────────────────────────────────────
    session_token: Mapped[Optional[str]] = mapped_column(String(64), unique=True, index=True)
    session_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # ── Referrals ─────────────────────────────────────────────────────────
    referral_code: Mapped[Optional[str]] = mapped_column(String(20), unique=True, index=True)
    referrals_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ── Timestamps ────────────────────────────────────────────────────────
    last_login: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def has_referral_premium(self) -> bool:
        if self.premium_until is None:
            return False
        premium_until = self.premium_until
        # SQLite hands back naive datetimes
        if premium_until.tzinfo is None:
            premium_until = premium_until.replace(tzinfo=timezone.utc)
        return premium_until > utcnow()

    @property
    def is_subscriber(self) -> bool:
        """
        Whether AI jobs are free for this user.

        A paid plan counts unless it was earned through referrals and its
        premium_until has passed.
        """
        if self.plan not in PAID_PLANS:
            return False
        return self.premium_until is None or self.has_referral_premium

    @property
    def effective_plan(self) -> str:
        return self.plan if self.is_subscriber else PLAN_FREE

    def __repr__(self) -> str:
        return f"<User(id={self.id}, telegram_id={self.telegram_id}, plan='{self.plan}')>"
