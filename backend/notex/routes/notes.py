"""
NoteX Backend — Marketplace Note Routes
=========================================

What:  Catalog listing/detail (public), upload, seller inventory, download
       and reviews (authenticated).
How:   Extracts query/form parameters, delegates to CatalogService.

Route order matters: /notes/seller/my-notes is declared before
/notes/{note_id} so "seller" is never parsed as a note id.

Caching Strategy:
    - GET /api/notes: short private cache; listings change as notes publish
    - GET /api/notes/{id}/download: no-store; access depends on the buyer
"""

import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Query, Response, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_catalog_service, get_current_user
from notex.models.user import User
from notex.schemas.common import ErrorResponse
from notex.schemas.note import (
    NoteDetailResponse,
    NoteListResponse,
    NoteUploadResponse,
    ReviewCreate,
    ReviewResponse,
    SellerNotesResponse,
)
from notex.services.catalog_service import CatalogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notes", tags=["Notes"])


@router.get(
    "",
    response_model=NoteListResponse,
    summary="Browse published notes",
    description=(
        "Filtered, sorted, paginated list of published notes. Unknown sort keys "
        "fall back to created_at."
    ),
)
async def list_notes(
    response: Response,
    search: Optional[str] = Query(default=None, max_length=200),
    subject: Optional[str] = Query(default=None),
    level: Optional[str] = Query(default=None),
    min_price: Optional[Decimal] = Query(default=None, ge=0),
    max_price: Optional[Decimal] = Query(default=None, ge=0),
    sort: Optional[str] = Query(
        default="created_at",
        description="created_at, price, purchase_count or avg_rating",
    ),
    order: str = Query(default="desc", description="asc or desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db_session),
    catalog: CatalogService = Depends(get_catalog_service),
):
    result = await catalog.list_notes(
        db,
        search=search,
        subject=subject,
        level=level,
        min_price=min_price,
        max_price=max_price,
        sort=sort,
        order=order,
        page=page,
        limit=limit,
    )
    response.headers["X-Total-Count"] = str(result["pagination"]["total"])
    response.headers["Cache-Control"] = "private, max-age=30"
    return {"success": True, **result}


@router.get(
    "/seller/my-notes",
    response_model=SellerNotesResponse,
    summary="The caller's own listings with sales figures",
)
async def my_notes(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    catalog: CatalogService = Depends(get_catalog_service),
):
    return {"success": True, "notes": await catalog.seller_notes(db, user)}


@router.post(
    "/upload",
    status_code=201,
    response_model=NoteUploadResponse,
    responses={
        400: {"description": "Missing fields, bad price or file type/size", "model": ErrorResponse},
        401: {"description": "Not authenticated", "model": ErrorResponse},
    },
    summary="List a note for sale",
    description="Multipart upload of a PDF/JPEG/PNG (max 25MB). New listings start as pending.",
)
async def upload_note(
    file: Optional[UploadFile] = File(default=None),
    title: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    subject: Optional[str] = Form(default=None),
    price_usd: Optional[str] = Form(default=None),
    level: Optional[str] = Form(default=None),
    tags: Optional[str] = Form(default=None),
    country: Optional[str] = Form(default=None),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    catalog: CatalogService = Depends(get_catalog_service),
):
    try:
        note = await catalog.upload_note(
            db,
            user,
            file,
            title=title,
            description=description,
            subject=subject,
            price_usd=price_usd,
            level=level,
            tags=tags,
            country=country,
        )
    finally:
        if file is not None:
            await file.close()
    return {
        "success": True,
        "note": {
            "id": note.id,
            "title": note.title,
            "subject": note.subject,
            "price_usd": float(note.price_usd),
            "status": note.status,
            "created_at": note.created_at,
        },
    }


@router.get(
    "/{note_id}",
    response_model=NoteDetailResponse,
    responses={404: {"description": "Note not found", "model": ErrorResponse}},
    summary="Published note detail",
)
async def get_note(
    note_id: UUID,
    db: AsyncSession = Depends(get_db_session),
    catalog: CatalogService = Depends(get_catalog_service),
):
    return {"success": True, "note": await catalog.get_note(db, note_id)}


@router.get(
    "/{note_id}/download",
    responses={
        200: {"description": "The note file"},
        403: {"description": "Purchase required", "model": ErrorResponse},
        404: {"description": "Note or file not found", "model": ErrorResponse},
    },
    summary="Download a purchased note",
)
async def download_note(
    note_id: UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    catalog: CatalogService = Depends(get_catalog_service),
) -> FileResponse:
    path, filename, media_type = await catalog.download_note(db, user, note_id)
    logger.info("Note %s downloaded by %s", note_id, user.id)
    return FileResponse(
        path=str(path),
        media_type=media_type,
        filename=filename,
        headers={"Cache-Control": "no-store"},
    )


@router.post(
    "/{note_id}/reviews",
    status_code=201,
    responses={
        403: {"description": "Only buyers can review", "model": ErrorResponse},
        409: {"description": "Already reviewed", "model": ErrorResponse},
    },
    summary="Rate a purchased note",
)
async def add_review(
    note_id: UUID,
    body: ReviewCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    catalog: CatalogService = Depends(get_catalog_service),
):
    review = await catalog.add_review(db, user, note_id, body.rating, body.comment)
    return {"success": True, "review": ReviewResponse.model_validate(review)}
