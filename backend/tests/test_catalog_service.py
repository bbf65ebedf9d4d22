"""
NoteX Backend — Catalog Service Tests
=======================================

What:  Tests for listing, detail, upload, download and reviews.
How:   Notes and purchases are seeded through the conftest factories; the
       file store is a FileService on pytest's tmp_path.

Test Strategy:
    ✅ Only published notes are listed / shown
    ✅ Filters, search, allow-listed sorting, pagination totals
    ✅ A sort key outside the allow-list lists newest first
    ✅ Upload validates fields and price before storing the file
    ✅ Download / review require a completed purchase
    ✅ One review per buyer per note
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from notex.database import session_scope, utcnow
from notex.exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from notex.models.note import NOTE_PENDING, Note
from notex.models.payment import PURCHASE_PENDING
from notex.models.user import User
from notex.services.catalog_service import CatalogService, NoteSort, parse_price, parse_tags


class FakeUpload:
    """Minimal stand-in for starlette's UploadFile."""

    def __init__(self, filename, content: bytes, content_type="application/pdf"):
        self.filename = filename
        self.content_type = content_type
        self._content = content

    async def read(self, size=-1):
        if size < 0:
            size = len(self._content)
        chunk, self._content = self._content[:size], self._content[size:]
        return chunk


class TestParsing:

    def test_parse_price_bounds(self):
        assert parse_price("0.99") == Decimal("0.99")
        assert parse_price(99.99) == Decimal("99.99")
        with pytest.raises(ValidationError, match="Minimum price"):
            parse_price("0.50")
        with pytest.raises(ValidationError, match="Maximum price"):
            parse_price("100")
        with pytest.raises(ValidationError):
            parse_price("ten dollars")

    def test_parse_tags_accepts_json_and_csv(self):
        assert parse_tags('["calculus", " limits "]') == ["calculus", "limits"]
        assert parse_tags("calculus, limits,,") == ["calculus", "limits"]
        assert parse_tags(None) == []

    def test_unknown_sort_falls_back_to_created_at(self):
        assert NoteSort.parse("price") is NoteSort.PRICE
        assert NoteSort.parse("title; DROP TABLE notes") is NoteSort.CREATED_AT
        assert NoteSort.parse(None) is NoteSort.CREATED_AT


class TestListing:

    def setup_method(self):
        self.catalog = CatalogService()

    @pytest.mark.asyncio
    async def test_only_published_notes_listed(self, session_factory, make_user, make_note):
        seller = await make_user()
        await make_note(seller, title="Visible")
        await make_note(seller, title="Under review", status=NOTE_PENDING)

        async with session_scope(session_factory) as db:
            result = await self.catalog.list_notes(db)

        assert [n["title"] for n in result["notes"]] == ["Visible"]
        assert result["pagination"] == {"page": 1, "limit": 20, "total": 1, "pages": 1}
        assert result["notes"][0]["seller_name"] == seller.username

    @pytest.mark.asyncio
    async def test_filters_and_search(self, session_factory, make_user, make_note):
        seller = await make_user()
        await make_note(seller, title="Linear Algebra", subject="math", price_usd=Decimal("5.00"))
        await make_note(seller, title="Calculus II", subject="math", price_usd=Decimal("15.00"))
        await make_note(seller, title="Cell Biology", subject="biology", price_usd=Decimal("8.00"))

        async with session_scope(session_factory) as db:
            math = await self.catalog.list_notes(db, subject="math")
            cheap = await self.catalog.list_notes(db, max_price=Decimal("9.00"))
            searched = await self.catalog.list_notes(db, search="calc")

        assert {n["title"] for n in math["notes"]} == {"Linear Algebra", "Calculus II"}
        assert {n["title"] for n in cheap["notes"]} == {"Linear Algebra", "Cell Biology"}
        assert [n["title"] for n in searched["notes"]] == ["Calculus II"]

    @pytest.mark.asyncio
    async def test_sort_by_price_and_paginate(self, session_factory, make_user, make_note):
        seller = await make_user()
        for price in ("3.00", "1.00", "2.00"):
            await make_note(seller, title=f"Note {price}", price_usd=Decimal(price))

        async with session_scope(session_factory) as db:
            first = await self.catalog.list_notes(db, sort="price", order="asc", limit=2)
            second = await self.catalog.list_notes(db, sort="price", order="asc", limit=2, page=2)

        assert [n["price_usd"] for n in first["notes"]] == [1.0, 2.0]
        assert [n["price_usd"] for n in second["notes"]] == [3.0]
        assert first["pagination"]["pages"] == 2
        assert first["pagination"]["total"] == 3

    @pytest.mark.asyncio
    async def test_injected_sort_orders_by_newest(self, session_factory, make_user, make_note):
        seller = await make_user()
        start = utcnow() - timedelta(days=3)
        # Titles and prices both disagree with the creation order
        for offset, title, price in ((0, "Zoology", "1.00"), (1, "Anatomy", "9.00"), (2, "Music", "4.00")):
            await make_note(seller, title=title, price_usd=Decimal(price), created_at=start + timedelta(days=offset))

        async with session_scope(session_factory) as db:
            result = await self.catalog.list_notes(db, sort="title; DROP TABLE notes")
            surviving = await db.scalar(select(func.count(Note.id)))

        assert [n["title"] for n in result["notes"]] == ["Music", "Anatomy", "Zoology"]
        assert surviving == 3

    @pytest.mark.asyncio
    async def test_purchase_count_counts_completed_only(
        self, session_factory, make_user, make_note, make_purchase
    ):
        seller = await make_user()
        note = await make_note(seller)
        await make_purchase(await make_user(), note)
        await make_purchase(await make_user(), note, status=PURCHASE_PENDING)

        async with session_scope(session_factory) as db:
            detail = await self.catalog.get_note(db, note.id)

        assert detail["purchase_count"] == 1
        assert detail["review_count"] == 0

    @pytest.mark.asyncio
    async def test_unpublished_note_detail_not_found(self, session_factory, make_user, make_note):
        note = await make_note(await make_user(), status=NOTE_PENDING)
        async with session_scope(session_factory) as db:
            with pytest.raises(NotFoundError):
                await self.catalog.get_note(db, note.id)


class TestUpload:

    @pytest.mark.asyncio
    async def test_upload_creates_pending_note(self, session_factory, make_user, file_service):
        catalog = CatalogService(file_service)
        seeded = await make_user()
        async with session_scope(session_factory) as db:
            seller = await db.get(User, seeded.id)
            note = await catalog.upload_note(
                db, seller, FakeUpload("thermo.pdf", b"%PDF-1.4 notes"),
                title="Thermodynamics", description="Laws 0-3", subject="physics",
                price_usd="4.99", tags="heat,entropy",
            )

        assert note.status == NOTE_PENDING
        assert note.price_usd == Decimal("4.99")
        assert note.tags == ["heat", "entropy"]
        assert note.original_filename == "thermo.pdf"
        assert (file_service.files_dir / note.file_path).read_bytes() == b"%PDF-1.4 notes"

    @pytest.mark.asyncio
    async def test_bad_price_stores_nothing(self, session_factory, make_user, file_service):
        catalog = CatalogService(file_service)
        seeded = await make_user()
        async with session_scope(session_factory) as db:
            seller = await db.get(User, seeded.id)
            with pytest.raises(ValidationError, match="Minimum price"):
                await catalog.upload_note(
                    db, seller, FakeUpload("a.pdf", b"%PDF"),
                    title="T", description="D", subject="S", price_usd="0.10",
                )

        assert not any(p.is_file() for p in file_service.files_dir.rglob("*"))

    @pytest.mark.asyncio
    async def test_missing_fields_rejected(self, session_factory, make_user, file_service):
        catalog = CatalogService(file_service)
        seeded = await make_user()
        async with session_scope(session_factory) as db:
            seller = await db.get(User, seeded.id)
            with pytest.raises(ValidationError, match="Missing required fields"):
                await catalog.upload_note(
                    db, seller, FakeUpload("a.pdf", b"%PDF"),
                    title="T", description=None, subject="S", price_usd="5",
                )
            with pytest.raises(ValidationError, match="No file uploaded"):
                await catalog.upload_note(
                    db, seller, None, title="T", description="D", subject="S", price_usd="5",
                )

    @pytest.mark.asyncio
    async def test_seller_notes_include_earnings(
        self, session_factory, make_user, make_note, make_purchase
    ):
        seller = await make_user()
        note = await make_note(seller, price_usd=Decimal("10.00"))
        await make_note(seller, title="Draft", status=NOTE_PENDING)
        await make_purchase(await make_user(), note, fee_usd=Decimal("3.59"))

        async with session_scope(session_factory) as db:
            rows = await CatalogService().seller_notes(db, seller)

        assert len(rows) == 2
        sold = next(r for r in rows if r["id"] == note.id)
        assert sold["sales_count"] == 1
        assert sold["total_earnings"] == 6.41


class TestBuyerAccess:

    @pytest.mark.asyncio
    async def test_download_requires_purchase(self, session_factory, make_user, make_note, file_service):
        note = await make_note(await make_user())
        stranger = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ForbiddenError, match="Purchase required"):
                await CatalogService(file_service).download_note(db, stranger, note.id)

    @pytest.mark.asyncio
    async def test_download_after_purchase(
        self, session_factory, make_user, make_note, make_purchase, file_service
    ):
        stored = file_service.files_dir / "2025/01/15/sample.pdf"
        stored.parent.mkdir(parents=True, exist_ok=True)
        stored.write_bytes(b"%PDF-1.4")
        note = await make_note(await make_user(), file_path="2025/01/15/sample.pdf")
        buyer = await make_user()
        await make_purchase(buyer, note)

        async with session_scope(session_factory) as db:
            path, filename, media_type = await CatalogService(file_service).download_note(db, buyer, note.id)

        assert path == stored.resolve()
        assert filename == "orgo.pdf"
        assert media_type == "application/pdf"

    @pytest.mark.asyncio
    async def test_review_once_per_buyer(self, session_factory, make_user, make_note, make_purchase):
        catalog = CatalogService()
        note = await make_note(await make_user())
        buyer = await make_user()
        await make_purchase(buyer, note)

        async with session_scope(session_factory) as db:
            review = await catalog.add_review(db, buyer, note.id, 5, "Clear and complete")
        assert review.rating == 5

        async with session_scope(session_factory) as db:
            with pytest.raises(ConflictError):
                await catalog.add_review(db, buyer, note.id, 4)

        async with session_scope(session_factory) as db:
            detail = await catalog.get_note(db, note.id)
        assert detail["avg_rating"] == 5.0
        assert detail["review_count"] == 1

    @pytest.mark.asyncio
    async def test_review_requires_purchase_and_valid_rating(self, session_factory, make_user, make_note):
        catalog = CatalogService()
        note = await make_note(await make_user())
        stranger = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ForbiddenError):
                await catalog.add_review(db, stranger, note.id, 4)
            with pytest.raises(ValidationError):
                await catalog.add_review(db, stranger, note.id, 6)

    @pytest.mark.asyncio
    async def test_unknown_note_download_forbidden(self, session_factory, make_user):
        """Without a purchase the note's existence is not revealed."""
        user = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ForbiddenError):
                await CatalogService().download_note(db, user, uuid4())
            assert await db.scalar(select(func.count(Note.id))) == 0
