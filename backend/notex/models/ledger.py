"""
NoteX Backend — Ledger SQLAlchemy Models
==========================================

What:  ORM models for the append-only `ai_jobs` usage log and the
       `referrals` table.
Why:   ai_jobs doubles as the audit trail of every credit movement that is
       not a balance column itself: AI usage, rewarded ads (which the daily
       cap counts) and completed purchases.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from notex.database import Base, utcnow

JOB_SUMMARY = "summary"
JOB_FLASHCARDS = "flashcards"
JOB_QUIZ = "quiz"
JOB_EXPLAIN = "explain"
JOB_REWARDED_AD = "rewarded_ad"
JOB_PURCHASE_COMPLETED = "purchase_completed"

AI_JOB_TYPES = (JOB_SUMMARY, JOB_FLASHCARDS, JOB_QUIZ, JOB_EXPLAIN)


class AIJob(Base):
    """
    Usage/audit record. Rows are inserted, never updated or deleted.

    Index on (user_id, job_type, created_at):
        Serves the daily rewarded-ad count and per-user usage stats.
    """

    __tablename__ = "ai_jobs"
    __table_args__ = (
        Index("idx_ai_jobs_user_type_created", "user_id", "job_type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    job_type: Mapped[str] = mapped_column(String(30), nullable=False)
    # MD5 of the first 1000 characters of the input text
    input_hash: Mapped[Optional[str]] = mapped_column(String(64))
    output: Mapped[Optional[Any]] = mapped_column(JSON().with_variant(JSONB(), "postgresql"))
    cost_units: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class Referral(Base):
    """
    One redeemed referral code.

    referred_id is unique on its own: a user can redeem exactly one code ever.
    """

    __tablename__ = "referrals"
    __table_args__ = (
        UniqueConstraint("referrer_id", "referred_id", name="uq_referrals_pair"),
        UniqueConstraint("referred_id", name="uq_referrals_referred"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    referrer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referred_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    reward_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
