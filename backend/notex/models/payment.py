"""
NoteX Backend — Payment SQLAlchemy Models
===========================================

What:  ORM models for `purchases`, `subscriptions` and `payouts`.
Why:   These rows mirror money movements that happen at Stripe (purchases,
       subscriptions) or are owed by the platform (payouts).

Idempotency:
    purchases.stripe_session_id is UNIQUE and is the idempotency key for the
    webhook reconciler: the pending → completed transition is a conditional
    UPDATE on (stripe_session_id, status='pending'), so a redelivered event
    changes zero rows and credits nothing.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from notex.database import Base, utcnow

PURCHASE_PENDING = "pending"
PURCHASE_COMPLETED = "completed"
PURCHASE_REFUNDED = "refunded"

SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_PAST_DUE = "past_due"
SUBSCRIPTION_CANCELED = "canceled"

PAYOUT_PENDING = "pending"
PAYOUT_PROCESSING = "processing"
PAYOUT_COMPLETED = "completed"
PAYOUT_FAILED = "failed"


class Purchase(Base):
    """
    A buyer's purchase of one note.

    Lifecycle:
        pending   (created at checkout, keyed by the Stripe session id)
        → completed  (checkout.session.completed webhook, exactly once)
        → refunded   (operator action)
    """

    __tablename__ = "purchases"
    __table_args__ = (
        Index("idx_purchases_buyer_note", "buyer_id", "note_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    buyer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    note_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True
    )

    amount_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # Platform + processor fee withheld from the seller
    fee_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    stripe_session_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    # Payment intent id stamped on completion
    payment_reference: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PURCHASE_PENDING)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Subscription(Base):
    """One recurring plan per user, upserted by Stripe webhook events."""

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    tier: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=SUBSCRIPTION_ACTIVE)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


class Payout(Base):
    """
    A seller's withdrawal request.

    The wallet is debited when the request is created; a payout that later
    fails is released back to the wallet exactly once.
    """

    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    amount_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PAYOUT_PENDING)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
