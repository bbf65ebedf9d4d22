"""
NoteX Backend — Note SQLAlchemy Models
========================================

What:  ORM models for marketplace listings (`notes`) and buyer reviews
       (`reviews`).
Why:   The catalog lists published notes with derived aggregates
       (purchase_count from completed purchases, avg_rating from reviews),
       so neither aggregate is stored on the note row.

Table Design Rationale:
    - price_usd: NUMERIC(10,2), CHECK between 0.99 and 99.99
    - file_path: relative path under FILES_DIR (portable across environments)
    - status: pending → published | rejected (moderation happens elsewhere)
    - updated_at: bumped on every UPDATE (ORM onupdate + a trigger in
      PostgreSQL for writes that bypass the ORM)

    Index on (status, created_at):
        The catalog always filters on status='published' and its default
        ordering is newest first.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from notex.database import Base, utcnow

NOTE_PENDING = "pending"
NOTE_PUBLISHED = "published"
NOTE_REJECTED = "rejected"

MIN_NOTE_PRICE = Decimal("0.99")
MAX_NOTE_PRICE = Decimal("99.99")

# JSONB in PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Note(Base):
    """
    A study note offered for sale.

    Lifecycle:
        1. Created by a seller upload with status='pending'
        2. Moved to 'published' or 'rejected' by moderation
        3. Only 'published' notes are visible or purchasable
    """

    __tablename__ = "notes"
    __table_args__ = (
        CheckConstraint("price_usd >= 0.99 AND price_usd <= 99.99", name="ck_notes_price_range"),
        Index("idx_notes_status_created_at", "status", "created_at"),
        Index("idx_notes_subject", "subject"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    seller_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    subject: Mapped[str] = mapped_column(String(100), nullable=False)
    level: Mapped[str] = mapped_column(String(50), nullable=False, default="undergraduate")
    country: Mapped[Optional[str]] = mapped_column(String(100))
    tags: Mapped[List[str]] = mapped_column(JSONType, nullable=False, default=list)

    price_usd: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    # What: Relative path from FILES_DIR to the stored upload
    # Format: YYYY/MM/DD/<uuid>.<ext>
    file_path: Mapped[str] = mapped_column(String(500), nullable=False)
    original_filename: Mapped[Optional[str]] = mapped_column(String(255))

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=NOTE_PENDING)
    views: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<Note(id={self.id}, title='{self.title[:30]}', status='{self.status}')>"


class Review(Base):
    """A buyer's rating (1-5) of a note they purchased; one per buyer per note."""

    __tablename__ = "reviews"
    __table_args__ = (
        UniqueConstraint("note_id", "user_id", name="uq_reviews_note_user"),
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_reviews_rating_range"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    note_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("notes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
