"""
NoteX Backend — AI Study Tool Routes
======================================

What:  POST /api/ai/{summarize,flashcards,quiz,explain}
Why:   Thin HTTP layer over AIJobRunner; credits, retries and job logging
       all happen in the service.

Error responses (handled by the global exception handler):
    HTTP 400: text too short/long, bad count
    HTTP 401: missing or expired session
    HTTP 403: free plan with no credits left (details.upgrade = true)
    HTTP 503: Gemini failed after retries, or circuit breaker open
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notex.database import get_db_session
from notex.dependencies import get_ai_runner, get_current_user
from notex.models.user import User
from notex.schemas.ai import CountedTextRequest, ExplainRequest, TextRequest
from notex.schemas.common import ErrorResponse
from notex.services.ai_service import AIJobRunner

router = APIRouter(
    prefix="/api/ai",
    tags=["AI"],
    responses={
        401: {"description": "Not authenticated", "model": ErrorResponse},
        403: {"description": "Out of credits", "model": ErrorResponse},
        503: {"description": "AI service unavailable", "model": ErrorResponse},
    },
)


@router.post("/summarize", summary="Summarize text as bullet points")
async def summarize(
    body: TextRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    runner: AIJobRunner = Depends(get_ai_runner),
):
    result = await runner.summarize(db, user, body.text)
    return {"success": True, **result}


@router.post("/flashcards", summary="Generate Q/A flashcards")
async def flashcards(
    body: CountedTextRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    runner: AIJobRunner = Depends(get_ai_runner),
):
    result = await runner.flashcards(db, user, body.text, body.count)
    return {"success": True, **result}


@router.post("/quiz", summary="Generate a multiple-choice / true-false quiz")
async def quiz(
    body: CountedTextRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    runner: AIJobRunner = Depends(get_ai_runner),
):
    result = await runner.quiz(db, user, body.text, body.count)
    return {"success": True, **result}


@router.post("/explain", summary="Explain a text or answer a question")
async def explain(
    body: ExplainRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    runner: AIJobRunner = Depends(get_ai_runner),
):
    result = await runner.explain(db, user, body.text, body.question)
    return {"success": True, **result}
