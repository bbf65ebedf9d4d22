"""
NoteX Backend — Referral Routes
=================================

What:  Redeem a referral code, read referral progress, get a shareable link.
Rules: see LedgerService (referrer +5, referred +3, 3 referrals → 7 days pro).
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from notex.config import settings
from notex.database import get_db_session
from notex.dependencies import get_current_user, get_ledger_service
from notex.models.user import User
from notex.schemas.account import ReferralApplyRequest
from notex.schemas.common import ErrorResponse
from notex.services.ledger_service import LedgerService

router = APIRouter(
    prefix="/api/referrals",
    tags=["Referrals"],
    responses={401: {"description": "Not authenticated", "model": ErrorResponse}},
)


@router.post(
    "/apply",
    responses={
        400: {"description": "Empty, own or unknown code", "model": ErrorResponse},
        409: {"description": "A code was already redeemed", "model": ErrorResponse},
    },
    summary="Redeem a referral code",
)
async def apply_referral(
    body: ReferralApplyRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    ledger: LedgerService = Depends(get_ledger_service),
):
    result = await ledger.apply_referral(db, user, body.referral_code)
    return {
        "success": True,
        "message": f"Referral applied successfully! +{result['bonus']} credits added.",
        **result,
    }


@router.get("/stats", summary="Referral progress towards free premium")
async def referral_stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session),
    ledger: LedgerService = Depends(get_ledger_service),
):
    return {"success": True, "stats": await ledger.referral_stats(db, user)}


@router.get("/link", summary="Shareable referral link")
async def referral_link(
    user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger_service),
):
    return {"success": True, **ledger.referral_link(user, settings.frontend_url)}
