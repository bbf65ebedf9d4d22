"""
NoteX Backend — Marketplace Catalog
=====================================

What:  Listing, detail, upload, download, seller inventory and reviews for
       marketplace notes.
Why:   The catalog is the read/write surface over note listings. Buyers only
       ever see `published` notes; sellers' uploads start `pending`.
How:   Queries are built with SQLAlchemy expressions. Sorting goes through
       the NoteSort allow-list (unknown keys fall back to created_at), so a
       client-supplied string never becomes a column name. Aggregates
       (purchase_count, avg_rating) are correlated scalar subqueries.
"""

import json
import logging
import math
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import ColumnElement, and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from notex.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from notex.models.note import (
    MAX_NOTE_PRICE,
    MIN_NOTE_PRICE,
    NOTE_PENDING,
    NOTE_PUBLISHED,
    Note,
    Review,
)
from notex.models.payment import PURCHASE_COMPLETED, Purchase
from notex.models.user import User
from notex.services.file_service import FileService

logger = logging.getLogger(__name__)


class NoteSort(str, Enum):
    """Allow-listed sort keys for the public catalog."""

    CREATED_AT = "created_at"
    PRICE = "price"
    PURCHASE_COUNT = "purchase_count"
    AVG_RATING = "avg_rating"

    @classmethod
    def parse(cls, value: Optional[str]) -> "NoteSort":
        try:
            return cls(value)
        except ValueError:
            return cls.CREATED_AT


def _purchase_count_expr():
    return (
        select(func.count(Purchase.id))
        .where(Purchase.note_id == Note.id, Purchase.status == PURCHASE_COMPLETED)
        .correlate(Note)
        .scalar_subquery()
    )


def _avg_rating_expr():
    return (
        select(func.coalesce(func.avg(Review.rating), 0))
        .where(Review.note_id == Note.id)
        .correlate(Note)
        .scalar_subquery()
    )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def parse_price(value: Any) -> Decimal:
    """Parse and range-check a listing price."""
    try:
        price = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError("Price must be a number", field="price_usd") from e
    if price < MIN_NOTE_PRICE:
        raise ValidationError("Minimum price is $0.99", field="price_usd")
    if price > MAX_NOTE_PRICE:
        raise ValidationError("Maximum price is $99.99", field="price_usd")
    return price


def parse_tags(value: Optional[str]) -> List[str]:
    """Tags arrive either as a JSON array or a comma-separated string."""
    if not value:
        return []
    if value.strip().startswith("["):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as e:
            raise ValidationError("Tags must be a JSON array or comma-separated", field="tags") from e
        return [str(tag).strip() for tag in parsed if str(tag).strip()]
    return [tag.strip() for tag in value.split(",") if tag.strip()]


def _money(value: Any) -> float:
    return float(value or 0)


def note_summary(note: Note, seller_name: Optional[str], purchase_count: Any, avg_rating: Any) -> Dict[str, Any]:
    return {
        "id": note.id,
        "seller_id": note.seller_id,
        "seller_name": seller_name,
        "title": note.title,
        "description": note.description,
        "subject": note.subject,
        "level": note.level,
        "country": note.country,
        "tags": note.tags or [],
        "price_usd": _money(note.price_usd),
        "status": note.status,
        "views": note.views,
        "purchase_count": int(purchase_count or 0),
        "avg_rating": round(float(avg_rating or 0), 2),
        "created_at": note.created_at,
    }


class CatalogService:
    """Marketplace catalog operations; the file store is injected."""

    def __init__(self, files: Optional[FileService] = None):
        self.files = files

    # ── Public listing ────────────────────────────────────────────────────

    async def list_notes(
        self,
        db: AsyncSession,
        search: Optional[str] = None,
        subject: Optional[str] = None,
        level: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        sort: Optional[str] = None,
        order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> Dict[str, Any]:
        """
        Filtered, sorted, offset-paginated list of published notes.

        Returns:
            {"notes": [...], "pagination": {"page", "limit", "total", "pages"}}
        """
        page = max(page, 1)
        limit = min(max(limit, 1), 100)

        conditions: List[ColumnElement[bool]] = [Note.status == NOTE_PUBLISHED]
        if search:
            pattern = f"%{_escape_like(search.strip())}%"
            conditions.append(
                or_(Note.title.ilike(pattern, escape="\\"), Note.description.ilike(pattern, escape="\\"))
            )
        if subject:
            conditions.append(Note.subject == subject)
        if level:
            conditions.append(Note.level == level)
        if min_price is not None:
            conditions.append(Note.price_usd >= min_price)
        if max_price is not None:
            conditions.append(Note.price_usd <= max_price)

        purchase_count = _purchase_count_expr()
        avg_rating = _avg_rating_expr()
        sort_columns = {
            NoteSort.CREATED_AT: Note.created_at,
            NoteSort.PRICE: Note.price_usd,
            NoteSort.PURCHASE_COUNT: purchase_count,
            NoteSort.AVG_RATING: avg_rating,
        }
        sort_column = sort_columns[NoteSort.parse(sort)]
        direction = sort_column.asc() if (order or "").lower() == "asc" else sort_column.desc()

        stmt = (
            select(
                Note,
                User.username.label("seller_name"),
                purchase_count.label("purchase_count"),
                avg_rating.label("avg_rating"),
            )
            .join(User, User.id == Note.seller_id)
            .where(and_(*conditions))
            .order_by(direction, Note.id)
            .limit(limit)
            .offset((page - 1) * limit)
        )
        rows = (await db.execute(stmt)).all()
        total = await db.scalar(select(func.count(Note.id)).where(and_(*conditions)))

        return {
            "notes": [note_summary(*row) for row in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }

    async def get_note(self, db: AsyncSession, note_id: UUID) -> Dict[str, Any]:
        """One published note with aggregates, else NotFoundError."""
        review_count = (
            select(func.count(Review.id))
            .where(Review.note_id == Note.id)
            .correlate(Note)
            .scalar_subquery()
        )
        row = (
            await db.execute(
                select(
                    Note,
                    User.username.label("seller_name"),
                    _purchase_count_expr().label("purchase_count"),
                    _avg_rating_expr().label("avg_rating"),
                    review_count.label("review_count"),
                )
                .join(User, User.id == Note.seller_id)
                .where(Note.id == note_id, Note.status == NOTE_PUBLISHED)
            )
        ).first()
        if row is None:
            raise NotFoundError(resource="Note", resource_id=str(note_id))
        note, seller_name, purchases, rating, reviews = row
        detail = note_summary(note, seller_name, purchases, rating)
        detail["review_count"] = int(reviews or 0)
        return detail

    # ── Seller side ───────────────────────────────────────────────────────

    async def upload_note(
        self,
        db: AsyncSession,
        seller: User,
        file: Any,
        title: Optional[str],
        description: Optional[str],
        subject: Optional[str],
        price_usd: Any,
        level: Optional[str] = None,
        tags: Optional[str] = None,
        country: Optional[str] = None,
    ) -> Note:
        """
        Validate a listing, store its file, and persist it as `pending`.

        The file is stored only after the metadata passes validation, and is
        removed again if the database insert fails.
        """
        if file is None or not getattr(file, "filename", None):
            raise ValidationError("No file uploaded", field="file")
        if not (title and description and subject) or price_usd in (None, ""):
            raise ValidationError("Missing required fields")
        price = parse_price(price_usd)
        tag_list = parse_tags(tags)

        relative_path = await self.files.store_upload(file.filename, file.content_type, file)
        try:
            note = Note(
                seller_id=seller.id,
                title=title.strip(),
                description=description.strip(),
                subject=subject.strip(),
                level=(level or "undergraduate").strip(),
                country=country,
                tags=tag_list,
                price_usd=price,
                file_path=relative_path,
                original_filename=file.filename,
                status=NOTE_PENDING,
            )
            db.add(note)
            await db.flush()
        except Exception:
            await self.files.cleanup_file(relative_path)
            raise

        logger.info("Note uploaded: id=%s seller=%s price=%s", note.id, seller.id, price)
        return note

    async def seller_notes(self, db: AsyncSession, seller: User) -> List[Dict[str, Any]]:
        sales_count = (
            select(func.count(Purchase.id))
            .where(Purchase.note_id == Note.id, Purchase.status == PURCHASE_COMPLETED)
            .correlate(Note)
            .scalar_subquery()
        )
        earnings = (
            select(func.coalesce(func.sum(Purchase.amount_usd - Purchase.fee_usd), 0))
            .where(Purchase.note_id == Note.id, Purchase.status == PURCHASE_COMPLETED)
            .correlate(Note)
            .scalar_subquery()
        )
        rows = (
            await db.execute(
                select(Note, sales_count.label("sales_count"), earnings.label("total_earnings"))
                .where(Note.seller_id == seller.id)
                .order_by(Note.created_at.desc())
            )
        ).all()
        return [
            {
                "id": note.id,
                "title": note.title,
                "subject": note.subject,
                "price_usd": _money(note.price_usd),
                "status": note.status,
                "views": note.views,
                "created_at": note.created_at,
                "sales_count": int(sales or 0),
                "total_earnings": round(_money(total), 2),
            }
            for note, sales, total in rows
        ]

    # ── Buyer side ────────────────────────────────────────────────────────

    async def _has_completed_purchase(self, db: AsyncSession, user: User, note_id: UUID) -> bool:
        purchase_id = await db.scalar(
            select(Purchase.id).where(
                Purchase.note_id == note_id,
                Purchase.buyer_id == user.id,
                Purchase.status == PURCHASE_COMPLETED,
            )
        )
        return purchase_id is not None

    async def download_note(self, db: AsyncSession, user: User, note_id: UUID):
        """
        Resolve the stored file of a purchased note.

        Returns:
            (absolute_path, download_filename, media_type)
        """
        if not await self._has_completed_purchase(db, user, note_id):
            raise ForbiddenError("Purchase required to download")

        note = await db.get(Note, note_id)
        if note is None:
            raise NotFoundError(resource="Note", resource_id=str(note_id))

        path = self.files.resolve(note.file_path)
        filename = note.original_filename or path.name
        return path, filename, self.files.media_type(path)

    async def add_review(
        self, db: AsyncSession, user: User, note_id: UUID, rating: int, comment: Optional[str] = None
    ) -> Review:
        if not 1 <= rating <= 5:
            raise ValidationError("Rating must be between 1 and 5", field="rating")
        if not await self._has_completed_purchase(db, user, note_id):
            raise ForbiddenError("Only buyers can review this note")

        existing = await db.scalar(
            select(Review.id).where(Review.note_id == note_id, Review.user_id == user.id)
        )
        if existing is not None:
            raise ConflictError("You have already reviewed this note")

        review = Review(note_id=note_id, user_id=user.id, rating=rating, comment=comment)
        db.add(review)
        try:
            await db.flush()
        except IntegrityError as e:
            raise ConflictError("You have already reviewed this note") from e
        return review
