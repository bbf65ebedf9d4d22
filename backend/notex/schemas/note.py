"""
NoteX Backend — Marketplace Schemas
=====================================

What:  Pydantic models for the notes catalog API.
Why:   The catalog returns derived fields (seller_name, purchase_count,
       avg_rating) that are not columns, so responses are shaped here rather
       than serialized straight from the ORM.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class NoteSummary(BaseModel):
    """
    What:  One published note as shown in the marketplace grid.
    Who:   Returned in GET /api/notes and (with review_count) GET /api/notes/{id}.
    """
    id: uuid.UUID
    seller_id: uuid.UUID
    seller_name: Optional[str] = None
    title: str
    description: str
    subject: str
    level: str
    country: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    price_usd: float = Field(description="Listing price in USD (0.99 - 99.99)")
    status: str
    views: int = 0
    purchase_count: int = Field(default=0, description="Completed purchases")
    avg_rating: float = Field(default=0, description="Mean review rating, 0 when unrated")
    created_at: datetime


class NoteDetail(NoteSummary):
    review_count: int = 0


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class NoteListResponse(BaseModel):
    """
    Offset-paginated catalog page.

    The marketplace UI shows numbered pages with a total, so the catalog
    uses page/limit rather than a cursor.
    """
    success: bool = True
    notes: List[NoteSummary]
    pagination: Pagination


class NoteDetailResponse(BaseModel):
    success: bool = True
    note: NoteDetail


class UploadedNote(BaseModel):
    id: uuid.UUID
    title: str
    subject: str
    price_usd: float
    status: str
    created_at: datetime


class NoteUploadResponse(BaseModel):
    success: bool = True
    message: str = "Note uploaded successfully! Pending review."
    note: UploadedNote


class SellerNote(BaseModel):
    id: uuid.UUID
    title: str
    subject: str
    price_usd: float
    status: str
    views: int
    created_at: datetime
    sales_count: int
    total_earnings: float


class SellerNotesResponse(BaseModel):
    success: bool = True
    notes: List[SellerNote]


class ReviewCreate(BaseModel):
    # Range is checked by the catalog so the error uses the standard envelope
    rating: int
    comment: Optional[str] = Field(default=None, max_length=2000)


class ReviewResponse(BaseModel):
    id: uuid.UUID
    note_id: uuid.UUID
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}
